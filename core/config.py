"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the identity provider happen here. No module
should call os.getenv() or os.environ.get() directly -- import get_settings()
instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. access_token_secret -> ACCESS_TOKEN_SECRET).

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Dev mode (DEBUG=true) generates missing signing secrets with a
      warning; production mode refuses to start without them.

Security notes:
  [S1] Signing secrets shorter than 32 chars are rejected outright.
  [S2] Access and refresh secrets must differ. A refresh token signed with the
       access secret could be replayed as an access token.

Layer rule: core/ is the kernel. This module may not import from auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("idprovider.config")

_MIN_SECRET_LENGTH = 32


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (as long as DEBUG=true).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    database_url: str = "sqlite:///idprovider.db"

    # ------------------------------------------------------------------
    # Token signing -- empty string is the "not configured" sentinel
    # ------------------------------------------------------------------

    access_token_secret: str = ""
    refresh_token_secret: str = ""
    recovery_token_secret: str = ""

    access_token_ttl_seconds: int = 10 * 60
    refresh_token_ttl_seconds: int = 7 * 24 * 60 * 60
    recovery_token_ttl_seconds: int = 10 * 60

    # ------------------------------------------------------------------
    # External tax-ID registries (empty string means lookup is disabled)
    # ------------------------------------------------------------------

    person_registry_url: str = ""
    company_registry_url: str = ""
    registry_timeout_seconds: int = 10

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the signing-secret policy [S1] [S2].

        Dev mode (DEBUG=true): auto-generate each missing secret with a
            warning. Issued tokens will not survive a restart.

        Production mode: refuse to start if any secret is missing.
        """
        for name in ("access_token_secret", "refresh_token_secret", "recovery_token_secret"):
            value = getattr(self, name)
            if not value:
                if not self.debug:
                    raise ValueError(
                        f"{name.upper()} is required in production mode. "
                        "Set it in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
                value = secrets.token_hex(32)
                setattr(self, name, value)
                logger.warning("Using auto-generated %s. Tokens will not persist across restarts.", name.upper())
            if len(value) < _MIN_SECRET_LENGTH:
                raise ValueError(f"{name.upper()} must be at least {_MIN_SECRET_LENGTH} characters.")
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET must differ.")
        for name in ("access_token_ttl_seconds", "refresh_token_ttl_seconds", "recovery_token_ttl_seconds"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name.upper()} must be positive.")
        return self

    @property
    def registry_endpoints(self) -> dict[str, str]:
        """Registry URLs in the shape AuthService.register() accepts."""
        return {"person": self.person_registry_url, "company": self.company_registry_url}


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
