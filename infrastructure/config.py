from __future__ import annotations

from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from domain.models import LedgerPolicy
from domain.repositories import LedgerStore


class Settings(BaseSettings):
    """Process configuration read from the environment and `.env`."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        env_ignore_empty=True,
        extra="ignore",
        populate_by_name=True,
        frozen=True,
    )

    # Discord
    discord_token: Optional[str] = None
    admin_role_id: Optional[int] = None

    # Database
    db_backend: Literal["sqlite", "postgres"] = "sqlite"
    db_path: str = "bank.db"
    db_host: Optional[str] = None
    db_port: int = 5432
    db_user: Optional[str] = None
    db_password: Optional[str] = None
    db_database: Optional[str] = None

    # Ledger rules
    release_escrow_on_reject: bool = Field(True, validation_alias="LEDGER_RELEASE_ESCROW_ON_REJECT")
    currency_label: str = "NS"
    transfer_cooldown_seconds: int = Field(10, ge=0)

    # Logging
    log_level: str = "INFO"
    log_format: Literal["text", "json"] = "text"

    @field_validator("db_backend", "log_format", mode="before")
    @classmethod
    def _lowercase(cls, value):
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("log_level", mode="before")
    @classmethod
    def _uppercase(cls, value):
        return value.strip().upper() if isinstance(value, str) else value

    @property
    def ledger_policy(self) -> LedgerPolicy:
        return LedgerPolicy(release_escrow_on_reject=self.release_escrow_on_reject)

    @property
    def postgres_params(self) -> dict:
        return {
            "host": self.db_host,
            "port": self.db_port,
            "user": self.db_user,
            "password": self.db_password,
            "dbname": self.db_database,
        }


def load_settings(env_file: Optional[str] = ".env") -> Settings:
    """Read settings; bad values raise `pydantic.ValidationError`."""

    return Settings(_env_file=env_file)


def build_store(settings: Settings) -> LedgerStore:
    if settings.db_backend == "postgres":
        from infrastructure.db.ledger_store_postgres import PostgresLedgerStore

        return PostgresLedgerStore(settings.postgres_params)

    from infrastructure.db.ledger_store_sqlite import SqliteLedgerStore

    return SqliteLedgerStore(settings.db_path)
