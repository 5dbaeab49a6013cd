"""
Central configuration for the LTI toolkit.

All settings are read from environment variables with the ``LTI_`` prefix
(e.g. ``LTI_DOMAIN_NAME=https://tool.example.edu``).  Pydantic validates and
casts values on startup.

Usage::

    from ltikit.settings import get_settings
    settings = get_settings()
    print(settings.launch_url)
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PrivacyLevel = Literal["public", "name_only", "email_only", "anonymous"]


class Settings(BaseSettings):
    """Toolkit settings loaded from ``LTI_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="LTI_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Environment ──────────────────────────────────────────────────
    env: Literal["local", "dev", "prod"] = "local"

    # ── Database ─────────────────────────────────────────────────────
    database_url: str = "sqlite+aiosqlite:///./ltikit.db"

    # ── Deployment ───────────────────────────────────────────────────
    # Absolute origin every generated URL is built from, no trailing slash.
    domain_name: str = "http://localhost:8000"
    admin_email: str = "admin@localhost"
    deployment_name: str = "ltikit"
    deployment_id: str = "ltikit-local"

    # ── Routing ──────────────────────────────────────────────────────
    route_prefix: str = "/lti/provider"
    consumer_route_prefix: str = "/lti/consumer"

    # ── Tool descriptor (provider side) ──────────────────────────────
    title: str = "LTI Tool"
    description: str = ""
    icon_url: str = ""
    tool_id: str = "ltikit"
    privacy_level: PrivacyLevel = "public"
    navigation: bool = False
    custom_params: dict[str, str] = {}

    # ── Platform descriptor (consumer side) ──────────────────────────
    product_name: str = "ltikit"
    product_version: str = "0.1.0"

    # ── Expiration ───────────────────────────────────────────────────
    nonce_ttl_seconds: int = 900
    sweep_interval_seconds: int = 300

    # ── Key material ─────────────────────────────────────────────────
    rsa_key_size: int = 4096

    # ── Outbound HTTP ────────────────────────────────────────────────
    http_timeout: float = 10.0

    # ── Security / Debug ─────────────────────────────────────────────
    debug: bool = False
    log_level: str = "INFO"

    # ── Derived URLs ─────────────────────────────────────────────────

    def url_for(self, path: str) -> str:
        """Return ``path`` as an absolute URL on ``domain_name``."""
        if path.startswith(("http://", "https://")):
            return path
        if not path.startswith("/"):
            path = "/" + path
        return self.domain_name.rstrip("/") + path

    @property
    def launch_url(self) -> str:
        return self.url_for(f"{self.route_prefix}/launch")

    @property
    def login_url(self) -> str:
        return self.url_for(f"{self.route_prefix}/login")

    @property
    def jwks_url(self) -> str:
        return self.url_for(f"{self.route_prefix}/jwks")

    @property
    def grade_url(self) -> str:
        return self.url_for(f"{self.consumer_route_prefix}/grade")

    # ── Startup validation ───────────────────────────────────────────

    @model_validator(mode="after")
    def _validate_config(self) -> Settings:
        """
        Fail fast if required settings are missing or misconfigured.

        All errors are collected before raising so a single startup failure
        reveals every bad variable at once.
        """
        errors: list[str] = []

        for name in ("route_prefix", "consumer_route_prefix"):
            value = getattr(self, name)
            if not value or not value.startswith("/") or value.endswith("/"):
                errors.append(
                    f"LTI_{name.upper()} must start with '/' and have no trailing slash "
                    f"(got {value!r})"
                )

        if not self.domain_name.startswith(("http://", "https://")):
            errors.append("LTI_DOMAIN_NAME must be an absolute http(s) origin")

        for name in ("admin_email", "deployment_name", "deployment_id"):
            if not getattr(self, name):
                errors.append(f"LTI_{name.upper()} is required")

        if self.nonce_ttl_seconds <= 0 or self.sweep_interval_seconds <= 0:
            errors.append("LTI_NONCE_TTL_SECONDS and LTI_SWEEP_INTERVAL_SECONDS must be positive")

        # ── Any deployed environment (dev or prod, not local) ─────────
        if self.env != "local":
            if not self.domain_name.startswith("https://"):
                errors.append(
                    f"LTI_DOMAIN_NAME must use https (env={self.env!r}, platforms reject "
                    "plain http launch URLs)"
                )
            if ":memory:" in self.database_url:
                errors.append(
                    f"LTI_DATABASE_URL must not be an in-memory database (env={self.env!r})"
                )
            if "localhost" in self.admin_email:
                errors.append("LTI_ADMIN_EMAIL must be a reachable address")
            if self.rsa_key_size < 2048:
                errors.append(f"LTI_RSA_KEY_SIZE must be at least 2048 (env={self.env!r})")

        if errors:
            raise ValueError(
                f"[ltikit env={self.env!r}] Configuration errors:\n  - "
                + "\n  - ".join(errors)
            )

        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the cached settings singleton."""
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (for testing)."""
    get_settings.cache_clear()
