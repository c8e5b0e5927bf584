"""
Settings for the points ledger, read once from the environment (and .env).

Usage:
    from credit_ledger.config import config

    if config.USE_MEMORY_STORE:
        print("Ledger state is process-local")

Hosted Postgres URLs in the legacy ``postgres://`` form are rewritten to
``postgresql://`` for psycopg 3.
"""

import os
from typing import List
from dataclasses import dataclass, field
from dotenv import load_dotenv

# Existing environment variables win over .env entries
load_dotenv()

_DEV_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]


def _get_env(key: str, default: str = "") -> str:
    return os.getenv(key, default).strip()


def _get_env_bool(key: str, default: bool = False) -> bool:
    raw = _get_env(key).lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def _get_env_int(key: str, default: int = 0) -> int:
    try:
        return int(_get_env(key) or default)
    except ValueError:
        print(f"[CONFIG] {key} is not an integer, using {default}")
        return default


def _get_env_float(key: str, default: float = 0.0) -> float:
    try:
        return float(_get_env(key) or default)
    except ValueError:
        print(f"[CONFIG] {key} is not a number, using {default}")
        return default


def _normalize_database_url(url: str) -> str:
    if url.startswith("postgres://"):
        return "postgresql://" + url[len("postgres://"):]
    return url


@dataclass
class Config:
    """Ledger settings. Plain fields can be reassigned in tests."""

    # ─────────────────────────────────────────────────────────────
    # Runtime
    # ─────────────────────────────────────────────────────────────
    FLASK_ENV: str = field(default_factory=lambda: _get_env("FLASK_ENV", "production").lower())
    PORT: int = field(default_factory=lambda: _get_env_int("PORT", 5001))
    HOST: str = field(default_factory=lambda: _get_env("HOST", "0.0.0.0"))

    @property
    def IS_DEV(self) -> bool:
        return self.FLASK_ENV in ("development", "dev", "local")

    # ─────────────────────────────────────────────────────────────
    # Storage
    # ─────────────────────────────────────────────────────────────
    _DATABASE_URL_RAW: str = field(default_factory=lambda: _get_env("DATABASE_URL"))
    DB_CONNECT_TIMEOUT: int = field(default_factory=lambda: _get_env_int("DB_CONNECT_TIMEOUT", 10))
    LEDGER_SCHEMA: str = field(default_factory=lambda: _get_env("LEDGER_SCHEMA", "points_ledger"))

    # postgres | memory; unset means postgres whenever DATABASE_URL is present
    _LEDGER_BACKEND_RAW: str = field(default_factory=lambda: _get_env("LEDGER_BACKEND").lower())

    @property
    def DATABASE_URL(self) -> str:
        return _normalize_database_url(self._DATABASE_URL_RAW)

    @property
    def HAS_DATABASE(self) -> bool:
        return bool(self._DATABASE_URL_RAW)

    @property
    def LEDGER_BACKEND(self) -> str:
        if self._LEDGER_BACKEND_RAW in ("postgres", "memory"):
            return self._LEDGER_BACKEND_RAW
        return "postgres" if self.HAS_DATABASE else "memory"

    @property
    def USE_MEMORY_STORE(self) -> bool:
        return self.LEDGER_BACKEND == "memory"

    # ─────────────────────────────────────────────────────────────
    # Internal API
    # ─────────────────────────────────────────────────────────────
    # Shared secret for /internal/* (X-Admin-Token); empty disables the surface
    ADMIN_TOKEN: str = field(default_factory=lambda: _get_env("ADMIN_TOKEN"))

    @property
    def ADMIN_AUTH_CONFIGURED(self) -> bool:
        return bool(self.ADMIN_TOKEN)

    # ─────────────────────────────────────────────────────────────
    # Points
    # ─────────────────────────────────────────────────────────────
    SIGNUP_BONUS_POINTS: int = field(default_factory=lambda: _get_env_int("SIGNUP_BONUS_POINTS", 30))

    # ─────────────────────────────────────────────────────────────
    # Reconciliation
    # ─────────────────────────────────────────────────────────────
    # Tolerated gap in balance == earned - spent (legacy rounding)
    RECONCILE_INTEGRITY_EPSILON: int = field(
        default_factory=lambda: _get_env_int("RECONCILE_INTEGRITY_EPSILON", 1)
    )
    RECONCILE_MAX_ACCOUNTS: int = field(
        default_factory=lambda: _get_env_int("RECONCILE_MAX_ACCOUNTS", 10000)
    )
    ALERT_WEBHOOK_URL: str = field(default_factory=lambda: _get_env("ALERT_WEBHOOK_URL"))
    ALERT_TIMEOUT_SECONDS: float = field(
        default_factory=lambda: _get_env_float("ALERT_TIMEOUT_SECONDS", 5.0)
    )
    ALERT_ON_DRY_RUN: bool = field(default_factory=lambda: _get_env_bool("ALERT_ON_DRY_RUN", False))

    # ─────────────────────────────────────────────────────────────
    # CORS (public /api routes only)
    # ─────────────────────────────────────────────────────────────
    _ALLOWED_ORIGINS_RAW: str = field(default_factory=lambda: _get_env("ALLOWED_ORIGINS"))

    @property
    def ALLOW_ALL_ORIGINS(self) -> bool:
        return self._ALLOWED_ORIGINS_RAW == "*"

    @property
    def ALLOWED_ORIGINS(self) -> List[str]:
        """
        Comma-separated http(s) origins. Falls back to the local dev servers
        when unset in development, and to nothing otherwise.
        """
        if not self._ALLOWED_ORIGINS_RAW:
            return list(_DEV_ORIGINS) if self.IS_DEV else []
        if self.ALLOW_ALL_ORIGINS:
            return ["*"]
        candidates = (part.strip() for part in self._ALLOWED_ORIGINS_RAW.split(","))
        return [o for o in candidates if o.startswith(("http://", "https://"))]

    # ─────────────────────────────────────────────────────────────
    # Startup helpers
    # ─────────────────────────────────────────────────────────────

    def log_summary(self) -> None:
        """Print the effective settings, secrets masked."""
        print("=" * 60)
        print("[CONFIG] Points Ledger")
        print("=" * 60)
        print(f"  FLASK_ENV={self.FLASK_ENV} host={self.HOST} port={self.PORT}")
        print(f"  Ledger backend: {self.LEDGER_BACKEND} (schema {self.LEDGER_SCHEMA})")
        print(f"  Internal API: {'enabled' if self.ADMIN_AUTH_CONFIGURED else 'disabled (no ADMIN_TOKEN)'}")
        print(f"  Signup bonus: {self.SIGNUP_BONUS_POINTS} pts")
        print(f"  Integrity epsilon: {self.RECONCILE_INTEGRITY_EPSILON}")
        print(f"  Alert webhook: {'set' if self.ALERT_WEBHOOK_URL else '(not set)'}")
        print("=" * 60)

    def validate(self) -> List[str]:
        """Warnings for settings that are unsafe outside development."""
        if self.IS_DEV:
            return []

        warnings = []
        if not self.HAS_DATABASE:
            warnings.append("DATABASE_URL not set - ledger state will not survive a restart")
        elif self.USE_MEMORY_STORE:
            warnings.append("LEDGER_BACKEND=memory is overriding DATABASE_URL")
        if not self.ADMIN_AUTH_CONFIGURED:
            warnings.append("ADMIN_TOKEN not set - /internal endpoints are disabled")
        if self.ALLOW_ALL_ORIGINS:
            warnings.append("ALLOWED_ORIGINS=* - any site can call the credits API")
        return warnings


config = Config()
