"""Process configuration loaded from environment variables."""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from models.state import DEFAULT_MAX_TOKENS, DEFAULT_MODEL, DEFAULT_TEMPERATURE
from services.generation import DEFAULT_BASE_URL as DEFAULT_OPENAI_URL
from services.task_log import DEFAULT_TTL_SECONDS
from services.task_queue import DEFAULT_QSTASH_URL

WEBHOOK_PATH = "/api/qstash/webhook"


class AppConfig(BaseSettings):
    """Settings shared by the API server and the worker daemon.

    Each field is read from the upper-cased environment variable of the same
    name (``redis_url`` from ``REDIS_URL``). Unset or empty variables keep
    their defaults.
    """

    redis_url: str = "redis://localhost:6379"
    relay_transport: Literal["redis", "rest"] = "redis"
    upstash_redis_rest_url: str = ""
    upstash_redis_rest_token: str = ""
    queue_backend: Literal["qstash", "redis"] = "qstash"
    qstash_url: str = DEFAULT_QSTASH_URL
    qstash_token: str = ""
    qstash_current_signing_key: str = ""
    qstash_next_signing_key: str = ""
    openai_api_key: str = ""
    openai_base_url: str = DEFAULT_OPENAI_URL
    app_base_url: str = "http://localhost:8000"
    app_env: str = "development"
    task_ttl_seconds: int = Field(default=DEFAULT_TTL_SECONDS, gt=0)
    queue_retries: int = Field(default=3, ge=0)
    queue_delay_seconds: int = Field(default=0, ge=0)
    stream_grace_delay: float = Field(default=1.0, ge=0.0)
    exclusive_runs: bool = True
    default_model: str = DEFAULT_MODEL
    default_max_tokens: int = Field(default=DEFAULT_MAX_TOKENS, gt=0)
    default_temperature: float = Field(default=DEFAULT_TEMPERATURE, ge=0.0, le=2.0)

    model_config = SettingsConfigDict(
        frozen=True,
        extra="ignore",
        env_ignore_empty=True,
        env_file=".env",
        env_file_encoding="utf-8",
    )

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"

    @property
    def webhook_url(self) -> str:
        return f"{self.app_base_url.rstrip('/')}{WEBHOOK_PATH}"

    def missing_variables(self) -> list[str]:
        """Names of required environment variables that are not set."""
        required = ["openai_api_key"]
        if self.relay_transport == "rest":
            required += ["upstash_redis_rest_url", "upstash_redis_rest_token"]
        if self.queue_backend == "qstash":
            required.append("qstash_token")
        if self.is_production:
            required.append("qstash_current_signing_key")
        return [name.upper() for name in required if not getattr(self, name)]

    def check_required(self) -> None:
        """Raise ValueError listing any missing required variables."""
        missing = self.missing_variables()
        if missing:
            raise ValueError(
                f"Missing required environment variables: {', '.join(missing)}"
            )
