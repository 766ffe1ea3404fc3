"""
Config loading via Pydantic v2 and python-dotenv.

Identity, polling window and policies are read from the environment
(optionally pre-populated from .env) and validated once.

Загрузка конфигурации из .env и окружения, валидация окна дат и политик.
"""

from __future__ import annotations

from datetime import date
from enum import Enum
from functools import lru_cache
import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, model_validator

from .models import DateWindow


BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"

DEFAULT_API_BASE = "https://www.usvisaappt.com/visaappointmentapi"

if ENV_PATH.exists():
    load_dotenv(ENV_PATH, override=False)


class ConflictPolicy(str, Enum):
    SAME_SLOT = "same_slot"
    NEXT_CANDIDATE = "next_candidate"


class RacePolicy(str, Enum):
    FIRST_SETTLED = "first_settled"
    FIRST_SUCCESS = "first_success"


class IdentityConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    token: SecretStr
    applicant_id: str = Field(min_length=1)
    application_id: str = Field(min_length=1)
    post_user_id: int
    appointment_id: int
    visa_type: str = Field(min_length=1)
    visa_class: str = Field(min_length=1)


class SchedulerConfig(BaseModel):
    preferred_start_date: date
    preferred_end_date: date
    poll_interval_ms: int = Field(default=600, ge=50)
    parallel_attempts: int = Field(default=3, ge=1)
    max_retries: int = Field(default=3, ge=1)
    conflict_policy: ConflictPolicy = ConflictPolicy.SAME_SLOT
    race_policy: RacePolicy = RacePolicy.FIRST_SETTLED
    max_total_attempts: Optional[int] = Field(
        default=None,
        ge=1,
        description="Stop polling for good after this many reschedule requests. Empty: never.",
    )

    @model_validator(mode="after")
    def _check_window(self) -> "SchedulerConfig":
        if self.preferred_start_date > self.preferred_end_date:
            raise ValueError("preferred_start_date must not be after preferred_end_date")
        return self

    @property
    def poll_interval(self) -> float:
        return self.poll_interval_ms / 1000

    @property
    def window(self) -> DateWindow:
        return DateWindow(start=self.preferred_start_date, end=self.preferred_end_date)


class ApiConfig(BaseModel):
    base_url: str = DEFAULT_API_BASE
    request_timeout: float = Field(default=15.0, gt=0)


class BotConfig(BaseModel):
    token: str = Field(min_length=1)
    admin_chat_id: int


class LoggingConfig(BaseModel):
    logs_dir: Path = Field(default_factory=lambda: BASE_DIR / "logs")
    log_level: str = Field(default="INFO")
    max_bytes: int = Field(default=5 * 1024 * 1024)  # 5 MB
    backup_count: int = Field(default=5)


class Settings(BaseModel):
    identity: IdentityConfig
    scheduler: SchedulerConfig
    api: ApiConfig = ApiConfig()
    bot: Optional[BotConfig] = None
    logging: LoggingConfig = LoggingConfig()

    def public_view(self) -> Dict[str, Any]:
        """Configuration without credentials, safe to show to the operator."""
        return {
            "identity": self.identity.model_dump(mode="json", exclude={"token"}),
            "scheduler": self.scheduler.model_dump(mode="json"),
            "api": self.api.model_dump(mode="json"),
        }


@lru_cache
def get_settings() -> Settings:
    """
    Load and cache settings.

    Raises ValidationError if .env is incomplete or invalid.
    """
    env = os.environ

    def _optional_int(value: str | None) -> Optional[int]:
        if not value or not value.strip():
            return None
        return int(value)

    try:
        identity = IdentityConfig(
            token=env.get("TOKEN", ""),
            applicant_id=env.get("APPLICANT_ID", ""),
            application_id=env.get("APPLICATION_ID", ""),
            post_user_id=int(env.get("POST_USER_ID", "0") or "0"),
            appointment_id=int(env.get("APPOINTMENT_ID", "0") or "0"),
            visa_type=env.get("VISA_TYPE", ""),
            visa_class=env.get("VISA_CLASS", ""),
        )
        scheduler = SchedulerConfig(
            preferred_start_date=env.get("PREFERRED_START_DATE", ""),
            preferred_end_date=env.get("PREFERRED_END_DATE", ""),
            poll_interval_ms=int(env.get("POLL_INTERVAL_MS", "600")),
            parallel_attempts=int(env.get("PARALLEL_ATTEMPTS", "3")),
            max_retries=int(env.get("MAX_RETRIES", "3")),
            conflict_policy=env.get("CONFLICT_POLICY", ConflictPolicy.SAME_SLOT.value),
            race_policy=env.get("RACE_POLICY", RacePolicy.FIRST_SETTLED.value),
            max_total_attempts=_optional_int(env.get("MAX_TOTAL_ATTEMPTS")),
        )
        api = ApiConfig(
            base_url=env.get("API_BASE", DEFAULT_API_BASE).rstrip("/"),
            request_timeout=float(env.get("REQUEST_TIMEOUT", "15")),
        )
        bot = None
        if env.get("BOT_TOKEN"):
            bot = BotConfig(
                token=env["BOT_TOKEN"],
                admin_chat_id=int(env.get("ADMIN_CHAT_ID", "0") or "0"),
            )
        logging_cfg = LoggingConfig(log_level=env.get("LOG_LEVEL", "INFO"))
        return Settings(
            identity=identity,
            scheduler=scheduler,
            api=api,
            bot=bot,
            logging=logging_cfg,
        )
    except ValidationError:
        raise
    except ValueError as exc:
        # int()/float() on a malformed env value
        raise ValueError(f"Invalid numeric setting in environment: {exc}") from exc


__all__ = [
    "ApiConfig",
    "BotConfig",
    "ConflictPolicy",
    "IdentityConfig",
    "LoggingConfig",
    "RacePolicy",
    "SchedulerConfig",
    "Settings",
    "get_settings",
    "BASE_DIR",
]
