from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field

from conversion_agent.models.domain import CartAction, CartSummary, Message


# --- Session schemas ---

class CreateSessionRequest(BaseModel):
    product_id: str | None = None


class CreateSessionResponse(BaseModel):
    session_id: str


class SessionInfo(BaseModel):
    session_id: str
    product_id: str | None = None
    current_phase: str
    created_at: str
    message_count: int
    last_active: str


# --- Chat schemas ---

class ChatRequest(BaseModel):
    session_id: str | None = None
    product_id: str | None = None
    message: str = Field(default="", max_length=2000)
    action: CartAction | None = None


class StartRequest(BaseModel):
    session_id: str | None = None
    product_id: str | None = None


class NavigateRequest(BaseModel):
    session_id: str
    product_id: str


class ChatResponse(BaseModel):
    session_id: str
    text: str
    choices: list[str]
    metadata: dict[str, Any]

    @classmethod
    def of(cls, session_id: str, message: Message) -> "ChatResponse":
        return cls(
            session_id=session_id,
            text=message.text,
            choices=list(message.choices),
            metadata=message.metadata,
        )


# --- Cart schemas ---

class AddItemRequest(BaseModel):
    product_id: str
    quantity: int = 1


class SetQuantityRequest(BaseModel):
    quantity: int


class CartLine(BaseModel):
    product_id: str
    name: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal


class CartResponse(BaseModel):
    session_id: str
    items: list[CartLine]
    item_count: int
    subtotal: Decimal
    delivery_cost: Decimal
    total: Decimal

    @classmethod
    def of(cls, summary: CartSummary) -> "CartResponse":
        return cls(
            session_id=summary.session_id,
            items=[
                CartLine(
                    product_id=item.product_id,
                    name=item.name,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    line_total=item.line_total,
                )
                for item in summary.items
            ],
            item_count=summary.item_count,
            subtotal=summary.subtotal,
            delivery_cost=summary.delivery_cost,
            total=summary.total,
        )
