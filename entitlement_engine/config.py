"""
Runtime configuration for the entitlement engine.

All settings come from environment variables. The two webhook trust-domain
secrets are independently optional, but at least one MUST be present or the
service refuses to start.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from entitlement_engine.billing.trust import TrustDomain

DEFAULT_TIER_CATALOG_PATH = Path(__file__).resolve().parent.parent / "config" / "tiers.json"
DEFAULT_DATABASE_URL = "sqlite:///./entitlement_engine.db"

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class ConfigurationError(RuntimeError):
    """Raised when the service cannot start with the given settings."""


def _env(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from exc


@dataclass(frozen=True)
class Settings:
    """Immutable service settings."""

    webhook_secret_sandbox: Optional[str] = None
    webhook_secret_production: Optional[str] = None
    database_url: str = DEFAULT_DATABASE_URL
    redis_url: Optional[str] = None
    tier_catalog_path: str = str(DEFAULT_TIER_CATALOG_PATH)
    max_webhook_payload_bytes: int = 256 * 1024
    verification_timeout_seconds: float = 2.0
    persistence_timeout_seconds: float = 10.0
    cache_timeout_seconds: float = 0.5
    snapshot_ttl_seconds: int = 15 * 60
    admin_api_token: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            webhook_secret_sandbox=_env("WEBHOOK_SECRET_SANDBOX"),
            webhook_secret_production=_env("WEBHOOK_SECRET_PRODUCTION"),
            database_url=_env("DATABASE_URL") or DEFAULT_DATABASE_URL,
            redis_url=_env("REDIS_URL"),
            tier_catalog_path=_env("TIER_CATALOG_PATH") or str(DEFAULT_TIER_CATALOG_PATH),
            max_webhook_payload_bytes=_env_int("MAX_WEBHOOK_PAYLOAD_BYTES", 256 * 1024),
            verification_timeout_seconds=_env_float("VERIFICATION_TIMEOUT_SECONDS", 2.0),
            persistence_timeout_seconds=_env_float("PERSISTENCE_TIMEOUT_SECONDS", 10.0),
            cache_timeout_seconds=_env_float("CACHE_TIMEOUT_SECONDS", 0.5),
            snapshot_ttl_seconds=_env_int("SNAPSHOT_TTL_SECONDS", 15 * 60),
            admin_api_token=_env("ADMIN_API_TOKEN"),
            log_level=(_env("LOG_LEVEL") or "INFO").upper(),
        )

    def webhook_secrets(self) -> Dict[TrustDomain, Optional[str]]:
        """Secrets keyed by trust domain, in verification order (sandbox first)."""
        return {
            TrustDomain.SANDBOX: self.webhook_secret_sandbox,
            TrustDomain.PRODUCTION: self.webhook_secret_production,
        }

    def validate(self) -> None:
        """Fail fast on settings the service cannot run with."""
        if not self.webhook_secret_sandbox and not self.webhook_secret_production:
            raise ConfigurationError(
                "At least one of WEBHOOK_SECRET_SANDBOX or WEBHOOK_SECRET_PRODUCTION must be set"
            )
        if self.max_webhook_payload_bytes <= 0:
            raise ConfigurationError("MAX_WEBHOOK_PAYLOAD_BYTES must be positive")
        if self.snapshot_ttl_seconds <= 0:
            raise ConfigurationError("SNAPSHOT_TTL_SECONDS must be positive")
        for name in ("verification_timeout_seconds", "persistence_timeout_seconds", "cache_timeout_seconds"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name.upper()} must be positive")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
