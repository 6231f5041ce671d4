from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_session_id() -> str:
    return str(uuid.uuid4())


# --- Enums ---

class Role(str, Enum):
    CUSTOMER = "customer"
    ASSISTANT = "assistant"


class Phase(str, Enum):
    RAPPORT_BUILDING = "rapport_building"
    NEED_DISCOVERY = "need_discovery"
    SOLUTION_PRESENTATION = "solution_presentation"
    OBJECTION_HANDLING = "objection_handling"
    CLOSING = "closing"


class Confidence(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Recommendation(str, Enum):
    CONTINUE = "continue"
    NUDGE = "nudge"
    TRIGGER_PURCHASE = "trigger_purchase"


class MessageCategory(str, Enum):
    PURCHASE_INTENT = "purchase_intent"
    OBJECTION = "objection"
    PRICE_QUESTION = "price_question"
    DELIVERY_QUESTION = "delivery_question"
    PAYMENT_QUESTION = "payment_question"
    TESTIMONIALS_REQUEST = "testimonials_request"
    SUPPORT_REQUEST = "support_request"
    PRODUCT_INQUIRY = "product_inquiry"
    GREETING = "greeting"
    NAVIGATION = "navigation"
    GENERAL = "general"


class ObjectionType(str, Enum):
    PRICE = "price"
    EFFICACY = "efficacy"
    TIME = "time"
    COMPLEX = "complex"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ReplySource(str, Enum):
    TEMPLATE = "template"
    KNOWLEDGE = "knowledge"
    COMPLETION = "completion"
    FALLBACK = "fallback"
    CART = "cart"
    RECOVERY = "recovery"


# --- Conversation ---

class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Role
    text: str
    choices: tuple[str, ...] = ()
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


class Session(BaseModel):
    session_id: str = Field(default_factory=new_session_id)
    product_id: str | None = None
    customer_id: str | None = None
    messages: list[Message] = Field(default_factory=list)
    current_phase: Phase = Phase.RAPPORT_BUILDING
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    last_activity: datetime = Field(default_factory=utcnow)

    def customer_texts(self) -> list[str]:
        return [m.text for m in self.messages if m.role == Role.CUSTOMER]

    @property
    def intent_scores(self) -> list[int]:
        return list(self.metadata.get("intent_scores", []))


# --- Knowledge ---

class KnowledgeItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    category: str = "general"
    trigger_keywords: frozenset[str] = frozenset()
    question: str = ""
    answer_template: str = ""
    priority: int = 0
    suggested_follow_ups: tuple[str, ...] = ()

    @field_validator("trigger_keywords", mode="before")
    @classmethod
    def _normalize_keywords(cls, value):
        return frozenset(str(k).strip().lower() for k in (value or []) if str(k).strip())

    @classmethod
    def from_row(cls, row: dict) -> KnowledgeItem:
        return cls(
            id=str(row["id"]),
            category=row.get("category") or "general",
            trigger_keywords=row.get("trigger_keywords") or [],
            question=row.get("question") or "",
            answer_template=row.get("answer") or "",
            priority=int(row.get("priority") or 0),
            suggested_follow_ups=tuple(row.get("next_suggestions") or ()),
        )


class ScoredItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    item: KnowledgeItem
    score: float
    matched_keywords: tuple[str, ...] = ()


# --- Intent ---

class IntentContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    message_count: int = 0
    seconds_elapsed: float = 0
    previous_score: int = 0


class PurchaseIntent(BaseModel):
    model_config = ConfigDict(frozen=True)

    score: int = Field(ge=0, le=100)
    confidence: Confidence
    matched_signals: tuple[str, ...] = ()
    recommendation: Recommendation

    @property
    def has_blocking_signal(self) -> bool:
        return any(s.startswith("blocking:") for s in self.matched_signals)


# --- Catalog and cart ---

class ProductInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str | None = None
    name: str = ""
    price: Decimal = Decimal("0")
    description: str = ""

    @property
    def label(self) -> str:
        return f"le jeu {self.name}" if self.name else "nos jeux"


class CartItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: str
    name: str
    quantity: int = Field(ge=0)
    unit_price: Decimal = Field(ge=0)

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class Cart(BaseModel):
    session_id: str
    items: list[CartItem] = Field(default_factory=list)
    delivery_cost: Decimal = Field(default=Decimal("0"), ge=0)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def subtotal(self) -> Decimal:
        return sum((item.line_total for item in self.items), Decimal("0"))

    @property
    def total(self) -> Decimal:
        return self.subtotal + self.delivery_cost

    def find(self, product_id: str) -> CartItem | None:
        return next((item for item in self.items if item.product_id == product_id), None)


class CartSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: str
    items: tuple[CartItem, ...] = ()
    subtotal: Decimal
    delivery_cost: Decimal
    total: Decimal

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.items)

    @classmethod
    def of(cls, cart: Cart) -> CartSummary:
        return cls(
            session_id=cart.session_id,
            items=tuple(cart.items),
            subtotal=cart.subtotal,
            delivery_cost=cart.delivery_cost,
            total=cart.total,
        )

    def as_order_fragment(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "items": [
                {
                    "product_id": item.product_id,
                    "name": item.name,
                    "quantity": item.quantity,
                    "unit_price": str(item.unit_price),
                    "line_total": str(item.line_total),
                }
                for item in self.items
            ],
            "subtotal": str(self.subtotal),
            "delivery_cost": str(self.delivery_cost),
            "total": str(self.total),
        }


# --- Cart actions (tagged union) ---

class AddItemAction(BaseModel):
    type: Literal["add_item"] = "add_item"
    product_id: str
    quantity: int = 1


class SetQuantityAction(BaseModel):
    type: Literal["set_quantity"] = "set_quantity"
    product_id: str
    quantity: int


class ClearCartAction(BaseModel):
    type: Literal["clear"] = "clear"


class ShowCartAction(BaseModel):
    type: Literal["show_summary"] = "show_summary"


CartAction = Annotated[
    Union[AddItemAction, SetQuantityAction, ClearCartAction, ShowCartAction],
    Field(discriminator="type"),
]
