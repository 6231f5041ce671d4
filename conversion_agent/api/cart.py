from fastapi import APIRouter, Depends

from conversion_agent.dependecies import get_cart
from conversion_agent.models.schemas import AddItemRequest, CartResponse, SetQuantityRequest
from conversion_agent.services.cart import CartAggregate

router = APIRouter(prefix="/api/cart", tags=["cart"])


@router.get("/{session_id}", response_model=CartResponse)
async def get_cart_summary(session_id: str, cart: CartAggregate = Depends(get_cart)):
    return CartResponse.of(await cart.summary(session_id))


@router.post("/{session_id}/items", response_model=CartResponse, status_code=201)
async def add_item(
    session_id: str,
    body: AddItemRequest,
    cart: CartAggregate = Depends(get_cart),
):
    summary = await cart.add_item(session_id, body.product_id, body.quantity)
    return CartResponse.of(summary)


@router.put("/{session_id}/items/{product_id}", response_model=CartResponse)
async def set_quantity(
    session_id: str,
    product_id: str,
    body: SetQuantityRequest,
    cart: CartAggregate = Depends(get_cart),
):
    summary = await cart.set_quantity(session_id, product_id, body.quantity)
    return CartResponse.of(summary)


@router.delete("/{session_id}", response_model=CartResponse)
async def clear_cart(session_id: str, cart: CartAggregate = Depends(get_cart)):
    return CartResponse.of(await cart.clear(session_id))
