"""Per-session cart with write-through persistence.

Each mutation builds the next cart, writes it to the store and only then
swaps it into memory, so a failed write leaves the visible cart unchanged
and a reload always rebuilds what the customer last saw.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from decimal import Decimal

from conversion_agent.errors import ValidationFailure
from conversion_agent.models.domain import Cart, CartItem, CartSummary, ProductInfo, utcnow
from conversion_agent.models.store import SqliteStore
from conversion_agent.services.locks import KeyedLocks

logger = logging.getLogger(__name__)

ProductLookup = Callable[[str], Awaitable[ProductInfo | None]]


class CartAggregate:
    def __init__(
        self,
        store: SqliteStore,
        catalog: ProductLookup | None = None,
        delivery_cost: Decimal = Decimal("0"),
    ):
        self.store = store
        self.catalog = catalog or store.get_product
        self.delivery_cost = delivery_cost
        self._carts: dict[str, Cart] = {}
        self._locks = KeyedLocks()

    async def _load(self, session_id: str) -> Cart:
        cart = self._carts.get(session_id)
        if cart is None:
            cart = await self.store.load_cart(session_id)
            if cart is None:
                cart = Cart(session_id=session_id, delivery_cost=self.delivery_cost)
            self._carts[session_id] = cart
        return cart

    async def _commit(self, cart: Cart) -> CartSummary:
        await self.store.save_cart(cart)
        self._carts[cart.session_id] = cart
        return CartSummary.of(cart)

    async def _product(self, product_id: str) -> ProductInfo:
        product = await self.catalog(product_id)
        if product is None:
            raise ValidationFailure(f"unknown product {product_id!r}")
        return product

    @staticmethod
    def _with_items(cart: Cart, items: list[CartItem]) -> Cart:
        return Cart(
            session_id=cart.session_id,
            items=items,
            delivery_cost=cart.delivery_cost,
            updated_at=utcnow(),
        )

    async def add_item(self, session_id: str, product_id: str, quantity: int = 1) -> CartSummary:
        """Add ``quantity`` units; a product already in the cart has its line incremented."""
        if quantity <= 0:
            raise ValidationFailure(f"quantity must be positive, got {quantity}")
        async with self._locks.get(session_id):
            product = await self._product(product_id)
            cart = await self._load(session_id)
            items = []
            found = False
            for item in cart.items:
                if item.product_id == product_id:
                    item = item.model_copy(update={"quantity": item.quantity + quantity})
                    found = True
                items.append(item)
            if not found:
                items.append(
                    CartItem(
                        product_id=product_id,
                        name=product.name,
                        quantity=quantity,
                        unit_price=product.price,
                    )
                )
            summary = await self._commit(self._with_items(cart, items))
        logger.info("Cart %s: added %d x %s", session_id, quantity, product_id)
        return summary

    async def set_quantity(self, session_id: str, product_id: str, quantity: int) -> CartSummary:
        """Set the quantity of one line; zero or less removes it."""
        async with self._locks.get(session_id):
            cart = await self._load(session_id)
            existing = cart.find(product_id)
            if quantity <= 0:
                if existing is None:
                    return CartSummary.of(cart)
                items = [item for item in cart.items if item.product_id != product_id]
            elif existing is None:
                product = await self._product(product_id)
                items = list(cart.items) + [
                    CartItem(product_id=product_id, name=product.name, quantity=quantity, unit_price=product.price)
                ]
            else:
                items = [
                    item.model_copy(update={"quantity": quantity}) if item.product_id == product_id else item
                    for item in cart.items
                ]
            summary = await self._commit(self._with_items(cart, items))
        logger.info("Cart %s: set %s to %d", session_id, product_id, quantity)
        return summary

    async def clear(self, session_id: str) -> CartSummary:
        async with self._locks.get(session_id):
            cart = await self._load(session_id)
            return await self._commit(self._with_items(cart, []))

    async def summary(self, session_id: str) -> CartSummary:
        async with self._locks.get(session_id):
            return CartSummary.of(await self._load(session_id))

    async def destroy(self, session_id: str):
        """Drop the cart everywhere; used when the session itself is destroyed."""
        async with self._locks.get(session_id):
            await self.store.delete_cart(session_id)
            self._carts.pop(session_id, None)
        self._locks.discard(session_id)

    def forget(self, session_id: str):
        """Drop the in-memory copy only; the next access reloads from the store."""
        self._carts.pop(session_id, None)
        self._locks.discard(session_id)
