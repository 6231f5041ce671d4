import json
from pathlib import Path
import aiosqlite


async def init_db(db_path: str):
    """Create tables if they don't exist. Called once on app startup."""
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    async with aiosqlite.connect(db_path) as db:
        await db.executescript("""
            CREATE TABLE IF NOT EXISTS conversations (
                id            TEXT PRIMARY KEY,
                product_id    TEXT,
                customer_id   TEXT,
                current_phase TEXT NOT NULL DEFAULT 'rapport_building',
                metadata      TEXT,
                cart          TEXT,
                status        TEXT NOT NULL DEFAULT 'active',
                created_at    TEXT NOT NULL,
                updated_at    TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS chat_messages (
                id              INTEGER PRIMARY KEY AUTOINCREMENT,
                conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
                seq             INTEGER NOT NULL,
                role            TEXT NOT NULL,
                text            TEXT NOT NULL,
                choices         TEXT,
                metadata        TEXT,
                created_at      TEXT NOT NULL,
                UNIQUE (conversation_id, seq)
            );

            CREATE INDEX IF NOT EXISTS idx_chat_messages_conversation
                ON chat_messages(conversation_id, seq);

            CREATE TABLE IF NOT EXISTS knowledge_base (
                id               TEXT PRIMARY KEY,
                category         TEXT NOT NULL DEFAULT 'general',
                trigger_keywords TEXT NOT NULL DEFAULT '[]',
                question         TEXT NOT NULL DEFAULT '',
                answer           TEXT NOT NULL DEFAULT '',
                priority         INTEGER NOT NULL DEFAULT 0,
                next_suggestions TEXT NOT NULL DEFAULT '[]'
            );

            CREATE TABLE IF NOT EXISTS products (
                id          TEXT PRIMARY KEY,
                name        TEXT NOT NULL,
                price       TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                status      TEXT NOT NULL DEFAULT 'active'
            );

            CREATE TABLE IF NOT EXISTS events (
                id          INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id  TEXT NOT NULL,
                event_type  TEXT NOT NULL,
                event_data  TEXT,
                created_at  TEXT NOT NULL DEFAULT (datetime('now'))
            );

            CREATE INDEX IF NOT EXISTS idx_events_session
                ON events(session_id);

            CREATE INDEX IF NOT EXISTS idx_events_type
                ON events(event_type, created_at);
        """)
        await db.commit()


def _loads(raw: str | None, default):
    if not raw:
        return default
    return json.loads(raw)


# --- Conversation CRUD ---

async def upsert_conversation(db_path: str, conversation: dict):
    """Insert or update a conversation row keyed by its id. The cart column is left untouched."""
    async with aiosqlite.connect(db_path) as db:
        await db.execute(
            """
            INSERT INTO conversations
                (id, product_id, customer_id, current_phase, metadata, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                product_id = excluded.product_id,
                customer_id = excluded.customer_id,
                current_phase = excluded.current_phase,
                metadata = excluded.metadata,
                updated_at = excluded.updated_at,
                status = 'active'
            """,
            (
                conversation["id"],
                conversation.get("product_id"),
                conversation.get("customer_id"),
                conversation["current_phase"],
                json.dumps(conversation.get("metadata") or {}, default=str),
                conversation["created_at"],
                conversation["updated_at"],
            ),
        )
        await db.commit()


async def get_conversation(db_path: str, conversation_id: str) -> dict | None:
    """Fetch a conversation by ID. Returns None if not found."""
    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(
            "SELECT * FROM conversations WHERE id = ?",
            (conversation_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        conversation = dict(row)
        conversation["metadata"] = _loads(conversation["metadata"], {})
        conversation["cart"] = _loads(conversation["cart"], None)
        return conversation


async def list_conversations(db_path: str, limit: int = 20, offset: int = 0) -> list[dict]:
    """List active conversations with their message count, most recent first."""
    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(
            """
            SELECT c.id, c.product_id, c.current_phase, c.created_at, c.updated_at,
                   COUNT(m.id) AS message_count
            FROM conversations c
            LEFT JOIN chat_messages m ON m.conversation_id = c.id
            WHERE c.status = 'active'
            GROUP BY c.id
            ORDER BY c.updated_at DESC
            LIMIT ? OFFSET ?
            """,
            (limit, offset),
        )
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]


async def end_conversation(db_path: str, conversation_id: str):
    """Mark a conversation as ended and drop its cart."""
    async with aiosqlite.connect(db_path) as db:
        await db.execute(
            "UPDATE conversations SET status = 'ended', cart = NULL, updated_at = datetime('now') WHERE id = ?",
            (conversation_id,),
        )
        await db.commit()


# --- Message CRUD ---

async def insert_messages(db_path: str, conversation_id: str, messages: list[dict]):
    """Append messages to a conversation. Re-inserting an existing seq is a no-op."""
    if not messages:
        return
    async with aiosqlite.connect(db_path) as db:
        await db.executemany(
            """
            INSERT OR IGNORE INTO chat_messages
                (conversation_id, seq, role, text, choices, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    conversation_id,
                    msg["seq"],
                    msg["role"],
                    msg["text"],
                    json.dumps(msg.get("choices") or []),
                    json.dumps(msg.get("metadata") or {}, default=str),
                    msg["timestamp"],
                )
                for msg in messages
            ],
        )
        await db.commit()


async def get_messages(db_path: str, conversation_id: str) -> list[dict]:
    """Load all messages for a conversation, oldest first."""
    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(
            "SELECT * FROM chat_messages WHERE conversation_id = ? ORDER BY seq ASC",
            (conversation_id,),
        )
        rows = await cursor.fetchall()
        messages = []
        for row in rows:
            msg = dict(row)
            msg["choices"] = _loads(msg["choices"], [])
            msg["metadata"] = _loads(msg["metadata"], {})
            messages.append(msg)
        return messages


async def delete_messages(db_path: str, conversation_id: str):
    """Drop the message history of a conversation (used when a session is reset)."""
    async with aiosqlite.connect(db_path) as db:
        await db.execute(
            "DELETE FROM chat_messages WHERE conversation_id = ?",
            (conversation_id,),
        )
        await db.commit()


# --- Cart blob ---

async def save_cart(db_path: str, conversation_id: str, cart: dict | None, created_at: str):
    """Store the cart blob on the conversation row, creating the row if needed."""
    async with aiosqlite.connect(db_path) as db:
        await db.execute(
            """
            INSERT INTO conversations (id, cart, created_at, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                cart = excluded.cart,
                updated_at = excluded.updated_at
            """,
            (
                conversation_id,
                json.dumps(cart, default=str) if cart is not None else None,
                created_at,
                created_at,
            ),
        )
        await db.commit()


async def load_cart(db_path: str, conversation_id: str) -> dict | None:
    async with aiosqlite.connect(db_path) as db:
        cursor = await db.execute(
            "SELECT cart FROM conversations WHERE id = ?",
            (conversation_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return _loads(row[0], None)


# --- Knowledge base ---

async def load_knowledge(db_path: str) -> list[dict]:
    """Read every knowledge row, highest priority first. JSON columns are left encoded."""
    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(
            "SELECT * FROM knowledge_base ORDER BY priority DESC, id ASC"
        )
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]


async def count_knowledge(db_path: str) -> int:
    async with aiosqlite.connect(db_path) as db:
        cursor = await db.execute("SELECT COUNT(*) FROM knowledge_base")
        row = await cursor.fetchone()
        return row[0]


async def insert_knowledge(db_path: str, items: list[dict]):
    """Bulk insert knowledge items (startup seeding)."""
    async with aiosqlite.connect(db_path) as db:
        await db.executemany(
            """
            INSERT OR REPLACE INTO knowledge_base
                (id, category, trigger_keywords, question, answer, priority, next_suggestions)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    item["id"],
                    item.get("category", "general"),
                    json.dumps(item.get("trigger_keywords", []), ensure_ascii=False),
                    item.get("question", ""),
                    item.get("answer", ""),
                    int(item.get("priority", 0)),
                    json.dumps(item.get("next_suggestions", []), ensure_ascii=False),
                )
                for item in items
            ],
        )
        await db.commit()


# --- Products ---

async def get_product(db_path: str, product_id: str) -> dict | None:
    """Fetch an active product by ID. Returns None if not found."""
    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(
            "SELECT * FROM products WHERE id = ? AND status = 'active'",
            (product_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return dict(row)


async def upsert_product(db_path: str, product: dict):
    async with aiosqlite.connect(db_path) as db:
        await db.execute(
            """
            INSERT OR REPLACE INTO products (id, name, price, description, status)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                product["id"],
                product["name"],
                str(product["price"]),
                product.get("description", ""),
                product.get("status", "active"),
            ),
        )
        await db.commit()


# --- Event Logging ---

async def log_event(
    db_path: str,
    session_id: str,
    event_type: str,
    event_data: dict | None = None,
):
    """Log an analytics event (purchase_intent, cart_updated, etc.)."""
    async with aiosqlite.connect(db_path) as db:
        await db.execute(
            "INSERT INTO events (session_id, event_type, event_data) VALUES (?, ?, ?)",
            (session_id, event_type, json.dumps(event_data, default=str) if event_data else None),
        )
        await db.commit()


async def get_events(db_path: str, session_id: str) -> list[dict]:
    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(
            "SELECT * FROM events WHERE session_id = ? ORDER BY id ASC",
            (session_id,),
        )
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]
