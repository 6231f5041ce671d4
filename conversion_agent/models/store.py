"""SQLite-backed persistent store used by the services.

Wraps the module-level functions in :mod:`conversion_agent.models.database`
behind one object bound to a database path, so services can be handed a
test double instead. Driver errors are translated into the pipeline's
error taxonomy here and nowhere else.
"""

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal

import aiosqlite

from conversion_agent.errors import KnowledgeRetrievalFailure, PersistenceFailure
from conversion_agent.models import database
from conversion_agent.models.domain import (
    Cart,
    CartItem,
    KnowledgeItem,
    Message,
    Phase,
    ProductInfo,
    Role,
    Session,
    utcnow,
)

logger = logging.getLogger(__name__)


def _parse_ts(raw: str) -> datetime:
    # rows written by sqlite's datetime('now') carry no offset
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SqliteStore:
    def __init__(self, db_path: str):
        self.db_path = db_path

    async def init(self):
        await database.init_db(self.db_path)

    # -- Conversations --

    async def save_session(self, session: Session, new_messages: list[tuple[int, Message]]):
        """Upsert the conversation row, then append the not-yet-persisted messages."""
        try:
            await database.upsert_conversation(
                self.db_path,
                {
                    "id": session.session_id,
                    "product_id": session.product_id,
                    "customer_id": session.customer_id,
                    "current_phase": session.current_phase.value,
                    "metadata": session.metadata,
                    "created_at": session.created_at.isoformat(),
                    "updated_at": session.last_activity.isoformat(),
                },
            )
            await database.insert_messages(
                self.db_path,
                session.session_id,
                [
                    {
                        "seq": seq,
                        "role": msg.role.value,
                        "text": msg.text,
                        "choices": list(msg.choices),
                        "metadata": msg.metadata,
                        "timestamp": msg.timestamp.isoformat(),
                    }
                    for seq, msg in new_messages
                ],
            )
        except (aiosqlite.Error, OSError) as exc:
            raise PersistenceFailure(f"could not save session {session.session_id}: {exc}") from exc

    async def load_session(self, session_id: str) -> Session | None:
        try:
            row = await database.get_conversation(self.db_path, session_id)
            if row is None or row.get("status") == "ended":
                return None
            messages = await database.get_messages(self.db_path, session_id)
        except (aiosqlite.Error, OSError) as exc:
            raise PersistenceFailure(f"could not load session {session_id}: {exc}") from exc

        return Session(
            session_id=row["id"],
            product_id=row.get("product_id"),
            customer_id=row.get("customer_id"),
            current_phase=Phase(row.get("current_phase") or Phase.RAPPORT_BUILDING.value),
            metadata=row.get("metadata") or {},
            created_at=_parse_ts(row["created_at"]),
            last_activity=_parse_ts(row["updated_at"]),
            messages=[
                Message(
                    role=Role(msg["role"]),
                    text=msg["text"],
                    choices=tuple(msg["choices"]),
                    metadata=msg["metadata"],
                    timestamp=_parse_ts(msg["created_at"]),
                )
                for msg in messages
            ],
        )

    async def clear_messages(self, session_id: str):
        try:
            await database.delete_messages(self.db_path, session_id)
        except (aiosqlite.Error, OSError) as exc:
            raise PersistenceFailure(f"could not reset session {session_id}: {exc}") from exc

    async def end_session(self, session_id: str):
        try:
            await database.end_conversation(self.db_path, session_id)
        except (aiosqlite.Error, OSError) as exc:
            raise PersistenceFailure(f"could not end session {session_id}: {exc}") from exc

    async def list_sessions(self, limit: int = 20, offset: int = 0) -> list[dict]:
        try:
            return await database.list_conversations(self.db_path, limit=limit, offset=offset)
        except (aiosqlite.Error, OSError) as exc:
            raise PersistenceFailure(f"could not list sessions: {exc}") from exc

    async def get_session_record(self, session_id: str) -> dict | None:
        """Raw conversation row plus its messages, for the session browsing routes."""
        try:
            row = await database.get_conversation(self.db_path, session_id)
            if row is None:
                return None
            row["messages"] = await database.get_messages(self.db_path, session_id)
        except (aiosqlite.Error, OSError) as exc:
            raise PersistenceFailure(f"could not load session {session_id}: {exc}") from exc
        return row

    # -- Cart --

    async def save_cart(self, cart: Cart):
        blob = {
            "items": [
                {
                    "product_id": item.product_id,
                    "name": item.name,
                    "quantity": item.quantity,
                    "unit_price": str(item.unit_price),
                }
                for item in cart.items
            ],
            "delivery_cost": str(cart.delivery_cost),
            "updated_at": cart.updated_at.isoformat(),
        }
        try:
            await database.save_cart(self.db_path, cart.session_id, blob, cart.updated_at.isoformat())
        except (aiosqlite.Error, OSError) as exc:
            raise PersistenceFailure(f"could not save cart {cart.session_id}: {exc}") from exc

    async def load_cart(self, session_id: str) -> Cart | None:
        try:
            blob = await database.load_cart(self.db_path, session_id)
        except (aiosqlite.Error, OSError) as exc:
            raise PersistenceFailure(f"could not load cart {session_id}: {exc}") from exc
        if blob is None:
            return None
        return Cart(
            session_id=session_id,
            items=[
                CartItem(
                    product_id=item["product_id"],
                    name=item["name"],
                    quantity=int(item["quantity"]),
                    unit_price=Decimal(item["unit_price"]),
                )
                for item in blob.get("items", [])
            ],
            delivery_cost=Decimal(blob.get("delivery_cost", "0")),
            updated_at=_parse_ts(blob["updated_at"]) if blob.get("updated_at") else utcnow(),
        )

    async def delete_cart(self, session_id: str):
        try:
            await database.save_cart(self.db_path, session_id, None, utcnow().isoformat())
        except (aiosqlite.Error, OSError) as exc:
            raise PersistenceFailure(f"could not delete cart {session_id}: {exc}") from exc

    # -- Knowledge --

    async def load_knowledge(self) -> list[KnowledgeItem]:
        try:
            rows = await database.load_knowledge(self.db_path)
        except (aiosqlite.Error, OSError) as exc:
            raise KnowledgeRetrievalFailure(f"knowledge base unreachable: {exc}") from exc

        items = []
        for row in rows:
            try:
                row["trigger_keywords"] = json.loads(row.get("trigger_keywords") or "[]")
                row["next_suggestions"] = json.loads(row.get("next_suggestions") or "[]")
                items.append(KnowledgeItem.from_row(row))
            except (ValueError, TypeError) as exc:
                logger.warning("Skipping malformed knowledge item %s: %s", row.get("id"), exc)
        return items

    # -- Catalog --

    async def get_product(self, product_id: str) -> ProductInfo | None:
        try:
            row = await database.get_product(self.db_path, product_id)
        except (aiosqlite.Error, OSError) as exc:
            raise PersistenceFailure(f"could not read product {product_id}: {exc}") from exc
        if row is None:
            return None
        return ProductInfo(
            id=row["id"],
            name=row["name"],
            price=Decimal(row["price"]),
            description=row.get("description") or "",
        )

    # -- Analytics --

    async def log_event(self, session_id: str, event_type: str, event_data: dict | None = None):
        try:
            await database.log_event(self.db_path, session_id, event_type, event_data)
        except (aiosqlite.Error, OSError):
            logger.warning("Could not record %s event for session %s", event_type, session_id)

    # -- Seeding --

    async def seed(self, data: dict) -> dict:
        """Load catalog and knowledge records from a seed document.

        Knowledge is only seeded into an empty table so curated edits made
        after the first start are never overwritten. Products are upserted.
        """
        seeded = {"knowledge": 0, "products": 0}
        try:
            knowledge = data.get("knowledge") or []
            if knowledge and await database.count_knowledge(self.db_path) == 0:
                await database.insert_knowledge(self.db_path, knowledge)
                seeded["knowledge"] = len(knowledge)
            for product in data.get("products") or []:
                await database.upsert_product(self.db_path, product)
                seeded["products"] += 1
        except (aiosqlite.Error, OSError) as exc:
            raise PersistenceFailure(f"could not seed the store: {exc}") from exc
        return seeded
