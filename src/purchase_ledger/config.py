"""Application configuration helpers."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path

_ENV_PREFIX = "PURCHASE_LEDGER_"


def _env(name: str, default: str) -> str:
    return os.environ.get(f"{_ENV_PREFIX}{name}", default)


def _env_flag(name: str, default: bool) -> bool:
    return _env(name, "true" if default else "false").strip().lower() in {"1", "true", "yes", "on"}


def _default_data_root() -> Path:
    """Return the directory used for persistent data."""

    override = os.environ.get(f"{_ENV_PREFIX}HOME")
    if override:
        return Path(override).expanduser()
    if os.name == "nt":
        base = Path(os.environ.get("LOCALAPPDATA", Path.home()))
        return base / "PurchaseLedger"
    return Path.home() / ".purchase_ledger"


def _default_database_path() -> Path:
    """Resolve the SQLite database path taking overrides into account."""

    override = os.environ.get(f"{_ENV_PREFIX}DB")
    if override:
        return Path(override).expanduser()
    return _default_data_root() / "ledger.sqlite3"


def resolve_log_dir() -> Path:
    """Return the directory holding the rotating log file."""

    override = os.environ.get(f"{_ENV_PREFIX}LOG_DIR")
    if override:
        return Path(override).expanduser()
    return _default_data_root() / "logs"


@dataclass(slots=True)
class Settings:
    """Runtime configuration loaded from environment variables."""

    app_name: str = field(default_factory=lambda: _env("APP_NAME", "Purchase Ledger"))
    host: str = field(default_factory=lambda: _env("HOST", "127.0.0.1"))
    port: int = field(default_factory=lambda: int(_env("PORT", "8000")))
    reload: bool = field(default_factory=lambda: _env_flag("RELOAD", False))
    log_level: str = field(default_factory=lambda: _env("LOG_LEVEL", "info"))
    database_path: Path = field(default_factory=_default_database_path)
    database_url: str | None = field(default_factory=lambda: os.environ.get(f"{_ENV_PREFIX}DATABASE_URL"))
    log_dir: Path = field(default_factory=resolve_log_dir)
    # Tombstone purchases on delete instead of purging their movements.
    retain_history_on_delete: bool = field(default_factory=lambda: _env_flag("RETAIN_HISTORY", True))
    enforce_return_limits: bool = field(default_factory=lambda: _env_flag("ENFORCE_RETURN_LIMITS", True))
    projection_retry_limit: int = field(default_factory=lambda: int(_env("PROJECTION_RETRIES", "5")))

    @property
    def sqlalchemy_url(self) -> str:
        return self.database_url or f"sqlite:///{self.database_path}"

    def ensure_storage(self) -> None:
        """Ensure that the database and log directories exist."""

        if not self.database_url:
            self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self.log_dir.mkdir(parents=True, exist_ok=True)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""

    settings = Settings()
    settings.ensure_storage()
    return settings
