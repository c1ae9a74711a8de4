import math
from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Shared
    APP_ENV: str = "dev"
    APP_PORT: int = 8000
    LOG_LEVEL: str = "INFO"
    DATABASE_URL: str
    REDIS_URL: str
    APP_AUTH_BEARER_TOKENS: str = ""  # Comma-separated

    # Per-user serialization of inbound messages
    DRAFT_LOCK_TIMEOUT_SECONDS: int = 60
    DRAFT_LOCK_WAIT_SECONDS: float = 30.0

    # Free-form resolution provider (OpenAI-compatible)
    LLM_API_KEY: Optional[str] = None
    LLM_API_BASE_URL: str = "https://api.openai.com/v1"
    LLM_TIMEOUT_SECONDS: int = 15
    LLM_MAX_RETRIES: int = 1
    LLM_RETRY_BACKOFF_SECONDS: float = 0.5
    LLM_MODEL_RESOLVE: str = "gpt-4o-mini"
    LLM_MODEL_EXTRACT: str = "gpt-4o-mini"
    RESOLVER_CONTEXT_MESSAGES: int = 12

    # Identification pipeline (catalog image search)
    CATALOG_API_KEY: Optional[str] = None
    CATALOG_API_BASE: str = "https://api.trychannel3.com"
    CATALOG_RESULT_LIMIT: int = 9
    IDENTIFY_TIMEOUT_SECONDS: float = 18.0

    # Comparable listings (eBay Browse API)
    EBAY_CLIENT_ID: Optional[str] = None
    EBAY_CLIENT_SECRET: Optional[str] = None
    EBAY_API_BASE: str = "https://api.ebay.com"
    EBAY_MARKETPLACE_ID: str = "EBAY_US"
    COMPARABLES_LIMIT: int = 20
    COMPARABLES_TIMEOUT_SECONDS: float = 5.0

    # Telegram channel
    TELEGRAM_BOT_TOKEN: Optional[str] = None
    TELEGRAM_WEBHOOK_SECRET: Optional[str] = None
    TELEGRAM_API_BASE: str = "https://api.telegram.org"
    TELEGRAM_COMMAND_TIMEOUT_SECONDS: int = 20
    TELEGRAM_ALLOWED_CHAT_IDS: Optional[str] = None

    # In-app messaging rate limit
    RATE_LIMIT_WINDOW_SECONDS: int = 60
    RATE_LIMIT_MESSAGES_PER_WINDOW: int = 30

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def auth_tokens(self) -> List[str]:
        return [t.strip() for t in self.APP_AUTH_BEARER_TOKENS.split(",") if t.strip()]

    @property
    def llm_call_budget_seconds(self) -> float:
        retries = max(0, self.LLM_MAX_RETRIES)
        backoff = max(0.0, self.LLM_RETRY_BACKOFF_SECONDS) * sum(2 ** i for i in range(retries))
        return (retries + 1) * self.LLM_TIMEOUT_SECONDS + backoff

    @property
    def draft_lock_timeout_seconds(self) -> int:
        """Lock TTL covering the slowest turn: one identification, two LLM calls and a comparables search."""
        worst_turn = (
            self.IDENTIFY_TIMEOUT_SECONDS
            + 2 * self.llm_call_budget_seconds
            + self.COMPARABLES_TIMEOUT_SECONDS
        )
        return max(self.DRAFT_LOCK_TIMEOUT_SECONDS, int(math.ceil(worst_turn)) + 10)

    @property
    def telegram_allowed_chat_ids(self) -> List[str]:
        if not self.TELEGRAM_ALLOWED_CHAT_IDS:
            return []
        return [c.strip() for c in self.TELEGRAM_ALLOWED_CHAT_IDS.split(",") if c.strip()]

settings = Settings()
