"""Settings for both halves of the sync core.

Server and client read every knob from one :class:`Settings` dataclass built
by :func:`get_settings`.  Values come from the process environment, with a
``.env`` file at the repository root filling in whatever is not exported.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

# backend/sgisync/config/__init__.py -> repository root
_REPO_ROOT = Path(__file__).resolve().parents[3]

_DEFAULT_STATE_PATH = Path.home() / ".sgi" / "sync_state.json"


def _truthy(value: str | None) -> bool:  # noqa: D401 – small helper
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class Settings:  # noqa: D401 – simple data container
    """Everything the sync server and the sync client can be configured with."""

    # Runtime flags -----------------------------------------------------
    testing: bool

    # Bearer tokens -----------------------------------------------------
    jwt_secret: str
    jwt_algorithm: str
    access_token_minutes: int

    # Database ---------------------------------------------------------
    database_url: str

    # Server ------------------------------------------------------------
    log_level: str
    environment: Any
    allowed_cors_origins: str
    ws_send_timeout: float
    ws_queue_size: int

    # Client ------------------------------------------------------------
    sync_server_url: str
    sync_state_path: str
    sync_reconnect_delay: float
    sync_reconnect_max_delay: float

    def override(self, **kwargs: Any) -> None:  # pragma: no cover – test util
        """Replace fields in place; unknown names raise ``AttributeError``."""
        for key, value in kwargs.items():
            if not hasattr(self, key):
                raise AttributeError(f"Settings has no attribute '{key}'")
            setattr(self, key, value)

    @property
    def sync_ws_url(self) -> str:
        """``ws(s)://`` form of :attr:`sync_server_url` pointing at the sync socket."""

        base = self.sync_server_url.rstrip("/")
        for http, ws in (("https://", "wss://"), ("http://", "ws://")):
            if base.startswith(http):
                base = ws + base[len(http) :]
                break
        return base + "/api/ws"


def _env_file() -> Path:
    # ``.env.test`` wins under NODE_ENV=test, when present.
    if os.getenv("NODE_ENV", "development") == "test":
        candidate = _REPO_ROOT / ".env.test"
        if candidate.exists():
            return candidate
    return _REPO_ROOT / ".env"


def _load_settings() -> Settings:  # noqa: D401 – helper
    env_path = _env_file()
    if env_path.exists():
        # Exported variables take precedence over the file.
        load_dotenv(env_path, override=False)

    env = os.getenv
    return Settings(
        testing=_truthy(env("TESTING")),
        jwt_secret=env("JWT_SECRET", "dev-secret"),
        jwt_algorithm=env("JWT_ALGORITHM", "HS256"),
        access_token_minutes=int(env("ACCESS_TOKEN_MINUTES", "720")),
        database_url=env("DATABASE_URL", ""),
        log_level=env("LOG_LEVEL", "INFO"),
        environment=env("ENVIRONMENT"),
        allowed_cors_origins=env("ALLOWED_CORS_ORIGINS", ""),
        ws_send_timeout=float(env("WS_SEND_TIMEOUT", "1.0")),
        ws_queue_size=int(env("WS_QUEUE_SIZE", "100")),
        sync_server_url=env("SGI_SYNC_SERVER_URL", "http://localhost:3001"),
        sync_state_path=env("SGI_SYNC_STATE_PATH", str(_DEFAULT_STATE_PATH)),
        sync_reconnect_delay=float(env("SGI_SYNC_RECONNECT_DELAY", "1.0")),
        sync_reconnect_max_delay=float(env("SGI_SYNC_RECONNECT_MAX_DELAY", "30.0")),
    )


# ------------------------------------------------------------------
# Production guard
# ------------------------------------------------------------------


def _validate_required(settings: Settings) -> None:  # noqa: D401 – helper
    """Refuse to start a production server with no database or a guessable secret."""

    if settings.testing or settings.environment != "production":
        return

    problems = []
    if not settings.database_url:
        problems.append("DATABASE_URL is not set")
    if settings.jwt_secret.strip() in {"", "dev-secret"} or len(settings.jwt_secret) < 16:
        problems.append("JWT_SECRET must be at least 16 characters and not 'dev-secret'")

    if problems:
        raise RuntimeError("Invalid production configuration: " + "; ".join(problems))


def get_settings() -> Settings:  # noqa: D401 – public accessor
    """Build a fresh :class:`Settings` from the environment.

    Not cached: tests call it once per test and override fields freely.
    """

    settings = _load_settings()
    _validate_required(settings)
    return settings


__all__ = [
    "Settings",
    "get_settings",
]
