from decimal import Decimal
from functools import lru_cache
import logging
from pathlib import Path

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator, model_validator

_ENV_CANDIDATES = (
    Path(__file__).resolve().parent.parent.parent / ".env",
    Path(__file__).resolve().parent.parent / ".env",
    Path.cwd() / ".env",
)

for env_path in _ENV_CANDIDATES:
    if env_path.is_file():
        load_dotenv(env_path, override=False)
        break


class Settings(BaseSettings):
    """Application configuration sourced from environment variables."""

    environment: str = "development"
    log_level: str = "INFO"
    json_logs: bool = False
    host: str = "0.0.0.0"
    port: int = 3000

    database_url: str = "sqlite:///./expenses.db"

    webhook_verify_token: str | None = Field(default=None, alias="WEBHOOK_VERIFY_TOKEN")
    meta_app_secret: str | None = Field(default=None, alias="META_APP_SECRET")
    skip_signature_verification: bool = False

    meta_access_token: str | None = Field(default=None, alias="META_ACCESS_TOKEN")
    meta_phone_number_id: str | None = Field(default=None, alias="META_PHONE_NUMBER_ID")
    whatsapp_api_version: str = "v21.0"
    graph_base_url: str = "https://graph.facebook.com"
    transport_timeout_seconds: float = 15.0

    text_ai_api_key: str | None = Field(default=None, alias="GROQ_API_KEY")
    text_ai_base_url: str | None = "https://api.groq.com/openai/v1"
    text_ai_model: str = "llama-3.1-8b-instant"
    vision_ai_api_key: str | None = Field(default=None, alias="OPENAI_API_KEY")
    vision_ai_base_url: str | None = None
    vision_ai_model: str = "gpt-4o-mini"
    ai_timeout_seconds: float = 30.0

    max_amount: Decimal = Decimal("10000000")
    currency_symbol: str = "₹"
    default_timezone: str = "UTC"

    model_config = SettingsConfigDict(env_file=None, populate_by_name=True, extra="ignore")

    @field_validator("log_level", mode="before")
    @classmethod
    def parse_log_level(cls, value: object) -> str:
        level = str(value).strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level: {value!r}")
        return level

    @model_validator(mode="after")
    def normalise(self) -> "Settings":
        self.environment = self.environment.strip().lower()
        self.graph_base_url = self.graph_base_url.rstrip("/")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def missing_required_settings(self) -> list[str]:
        """Names of mandatory environment variables that are not set."""
        required = {
            "WEBHOOK_VERIFY_TOKEN": self.webhook_verify_token,
            "META_ACCESS_TOKEN": self.meta_access_token,
            "META_PHONE_NUMBER_ID": self.meta_phone_number_id,
        }
        if self.is_production:
            required["META_APP_SECRET"] = self.meta_app_secret
        return [name for name, value in required.items() if not value]


@lru_cache
def get_settings() -> Settings:
    """Return cached settings to avoid repeated environment parsing."""
    return Settings()
