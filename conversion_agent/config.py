from decimal import Decimal
from pathlib import Path
from pydantic_settings import BaseSettings

BASE_DIR = Path(__file__).resolve().parent.parent

class Settings(BaseSettings):
    ANTHROPIC_API_KEY: str = ""             # empty disables the completion service
    ANTHROPIC_API_URL: str = "https://api.anthropic.com/v1/messages"
    ANTHROPIC_VERSION: str = "2023-06-01"
    CLAUDE_MODEL: str = "claude-sonnet-4-20250514"
    SQLITE_DB_PATH: str = str(BASE_DIR / "data" / "store.db")
    MAX_CONVERSATION_TURNS: int = 50
    PROMPT_HISTORY_TURNS: int = 6

    # Completion service
    COMPLETION_TIMEOUT_SECONDS: float = 8.0
    COMPLETION_MAX_TOKENS: int = 600
    COMPLETION_MAX_CHARS: int = 1200

    # Knowledge base
    KNOWLEDGE_CACHE_TTL_SECONDS: float = 300.0
    KNOWLEDGE_CONFIDENCE_THRESHOLD: float = 1.5
    KNOWLEDGE_SEED_PATH: str = ""
    INTENT_SIGNALS_PATH: str = ""

    # Session cache
    SESSION_CACHE_CAPACITY: int = 1000
    SESSION_IDLE_TIMEOUT_SECONDS: float = 24 * 60 * 60
    SESSION_SWEEP_INTERVAL_SECONDS: float = 600.0
    PERSIST_RETRY_ATTEMPTS: int = 3
    PERSIST_RETRY_DELAY_SECONDS: float = 2.0

    # Shop
    DEFAULT_DELIVERY_COST: Decimal = Decimal("0")
    CURRENCY: str = "FCFA"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False
    LOG_DIR: str = str(BASE_DIR / "logs")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
