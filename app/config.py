from pathlib import Path
from typing import Annotated

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    ANTHROPIC_API_KEY: str = ""
    CLAUDE_MODEL: str = "claude-sonnet-4-20250514"
    AI_MAX_TOKENS: int = 4096
    AI_MAX_RETRIES: int = 2

    WOOCOMMERCE_API_URL: str = ""           # e.g. https://shop.example/wp-json/wc/v3
    WOOCOMMERCE_CONSUMER_KEY: str = ""
    WOOCOMMERCE_CONSUMER_SECRET: str = ""

    TELEGRAM_BOT_TOKEN: str = ""
    TELEGRAM_WEBHOOK_SECRET: str = ""

    SQLITE_DB_PATH: str = str(BASE_DIR / "data" / "store.db")
    BUSINESS_SETTINGS_PATH: str = str(BASE_DIR / "data" / "settings.json")

    HTTP_TIMEOUT_SECONDS: float = 15.0
    TURN_TIMEOUT_SECONDS: float = 50.0
    CATEGORY_CACHE_TTL_SECONDS: float = 300.0

    REQUIRED_FACTS: Annotated[list[str], NoDecode] = ["product_name", "material", "price"]
    WATERMARK_BY_DEFAULT: bool = False
    LOG_LEVEL: str = "INFO"

    @field_validator("REQUIRED_FACTS", mode="before")
    @classmethod
    def split_facts(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            return [fact.strip() for fact in value.split(",") if fact.strip()]
        return value

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


settings = Settings()
