"""Engine settings, read from ``MANIFEST_*`` environment variables or ``.env``."""

from __future__ import annotations

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="MANIFEST_", env_file=".env", extra="ignore")

    database_url: str = "sqlite:///.manifest/backend.db"
    # Explicit backend name; derived from the URL scheme when unset.
    db_connection: str | None = None
    sql_echo: bool = False

    default_results_per_page: int = 20
    password_hash_iterations: int = 100_000

    log_dir: str = ".manifest/logs"
    log_level: str = "INFO"

    @field_validator("database_url")
    @classmethod
    def normalize_postgres_scheme(cls, v: str) -> str:
        # Heroku style postgres:// is not accepted by SQLAlchemy.
        if v.startswith("postgres://"):
            return v.replace("postgres://", "postgresql://", 1)
        return v

    @property
    def backend_name(self) -> str:
        if self.db_connection:
            return self.db_connection
        scheme = self.database_url.split(":", 1)[0]
        return scheme.split("+", 1)[0]
