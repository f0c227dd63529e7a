"""
Configuration module for the Graph BFF.

This module uses Pydantic Settings to load and validate environment variables
for the identity provider client, the downstream graph API, the session
cookie and the HTTP server.

Environment variables are loaded from .env file or system environment.
Settings are frozen once loaded and shared read-only by every request.
"""

import secrets
from functools import lru_cache
from typing import List, Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_GRAPH_SCOPE = "https://graph.microsoft.com/.default"
DEFAULT_DELEGATED_SCOPES = "openid,profile,offline_access,User.Read"


def _split_csv(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Covers the confidential client identity used against the identity
    provider, the downstream graph API, the frontend origin and the
    server-side session cookie.
    """

    # =========================================================================
    # Identity Provider (confidential client)
    # =========================================================================

    BFF_CLIENT_ID: str = Field(
        default="",
        description="Application (client) ID registered with the identity provider",
    )

    BFF_CLIENT_SECRET: str = Field(
        default="",
        description="Client secret for the confidential client",
    )

    BFF_TENANT_ID: str = Field(
        default="common",
        description="Tenant ID or 'common' for multi-tenant sign-in",
    )

    BFF_AUTHORITY: Optional[str] = Field(
        default=None,
        description="Explicit authority URL (e.g. https://login.microsoftonline.us/<tenant> for sovereign clouds)",
    )

    BFF_GRAPH_SCOPE: str = Field(
        default=DEFAULT_GRAPH_SCOPE,
        validation_alias=AliasChoices("BFF_GRAPH_SCOPE", "BFF_GRAPHSCOPES"),
        description="Comma-separated scopes for app-only, refresh and on-behalf-of tokens",
    )

    BFF_DELEGATED_SCOPES: str = Field(
        default=DEFAULT_DELEGATED_SCOPES,
        description="Comma-separated delegated scopes requested during interactive login",
    )

    BFF_REDIRECT_URI: Optional[str] = Field(
        default=None,
        description="Redirect URI registered for the authorization code flow",
    )

    # =========================================================================
    # Downstream Graph API
    # =========================================================================

    BFF_GRAPH_BASE: str = Field(
        default="https://graph.microsoft.com",
        description="Downstream graph API base URL",
    )

    BFF_GRAPH_VERSION: str = Field(
        default="v1.0",
        description="Downstream graph API version segment",
    )

    HTTP_TIMEOUT_SECONDS: float = Field(
        default=30.0,
        description="Timeout applied by the outbound HTTP clients",
        gt=0,
    )

    # =========================================================================
    # Frontend & Session Cookie
    # =========================================================================

    FRONTEND_REDIRECT_URI: str = Field(
        default="http://localhost:4000",
        validation_alias=AliasChoices("FRONTEND_REDIRECT_URI", "VITE_BFF_FRONTEND"),
        description="SPA origin; target of post-login redirects and the CORS allow-list",
    )

    BFF_SESSION_SECRET: str = Field(
        default_factory=lambda: secrets.token_hex(32),
        description="Secret used to sign the session cookie (random per process if unset)",
    )

    SESSION_COOKIE_NAME: str = Field(default="bff_session")

    SESSION_COOKIE_SECURE: bool = Field(
        default=False,
        description="Mark the session cookie Secure; enable for HTTPS deployments",
    )

    SESSION_TTL_SECONDS: int = Field(
        default=60 * 60 * 8,
        description="Idle lifetime of a server-side session",
        ge=60,
    )

    PENDING_LOGIN_TTL_SECONDS: int = Field(
        default=60 * 10,
        description="Idle lifetime of a session that started a login but holds no tokens",
        ge=30,
    )

    SESSION_PURGE_INTERVAL_SECONDS: float = Field(
        default=60,
        description="How often expired sessions are purged from memory",
        gt=0,
    )

    # =========================================================================
    # Server
    # =========================================================================

    BFF_HOST: str = Field(default="0.0.0.0")

    BFF_PORT: int = Field(default=3000, ge=1, le=65535)

    LOG_LEVEL: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        frozen=True,
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def authority(self) -> str:
        """
        Authority URL used for the authorize and token endpoints.

        Returns:
            BFF_AUTHORITY when set, otherwise the public cloud authority
            for BFF_TENANT_ID. Never ends with a slash.
        """
        if self.BFF_AUTHORITY:
            return self.BFF_AUTHORITY.rstrip("/")
        return f"https://login.microsoftonline.com/{self.BFF_TENANT_ID}"

    @property
    def graph_scopes_list(self) -> List[str]:
        """Scopes for app-only, refresh and on-behalf-of requests."""
        return _split_csv(self.BFF_GRAPH_SCOPE) or [DEFAULT_GRAPH_SCOPE]

    @property
    def delegated_scopes_list(self) -> List[str]:
        """Scopes requested at /auth/login."""
        return _split_csv(self.BFF_DELEGATED_SCOPES) or _split_csv(DEFAULT_DELEGATED_SCOPES)

    @property
    def redirect_uri(self) -> str:
        return self.BFF_REDIRECT_URI or f"http://localhost:{self.BFF_PORT}/auth/callback"

    @property
    def graph_api_root(self) -> str:
        """
        Versioned downstream API root.

        Returns:
            e.g. https://graph.microsoft.com/v1.0 (no trailing slash)
        """
        return f"{self.BFF_GRAPH_BASE.rstrip('/')}/{self.BFF_GRAPH_VERSION.strip('/')}"

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        level = v.upper()
        if level not in allowed:
            raise ValueError(f"LOG_LEVEL must be one of {allowed}, got: {v}")
        return level

    @field_validator("BFF_GRAPH_BASE", "FRONTEND_REDIRECT_URI")
    @classmethod
    def validate_http_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"Expected an http(s) URL, got: '{v}'")
        return v


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create the process-wide Settings instance.

    Cached so configuration is read once at startup. Request handlers do
    not call this; they receive settings through app.state.

    Raises:
        ValidationError: If an environment variable is present but invalid.
    """
    return Settings()


# =============================================================================
# Configuration Helpers
# =============================================================================

def validate_configuration(settings: Settings) -> dict:
    """
    Validate critical configuration settings and return a status report.

    Called during application startup; problems are logged, not raised,
    so the service can still serve /health and the claims endpoint.

    Returns:
        Dictionary with validation status, errors and warnings.
    """
    errors = []
    warnings = []

    if not settings.BFF_CLIENT_ID or not settings.BFF_CLIENT_SECRET:
        warnings.append(
            "BFF_CLIENT_ID and BFF_CLIENT_SECRET should be set. "
            "Client credentials flow will fail without them."
        )

    if "BFF_SESSION_SECRET" not in settings.model_fields_set:
        warnings.append(
            "BFF_SESSION_SECRET is not set; using a random per-process secret "
            "(sessions will not survive a restart)"
        )
    elif len(settings.BFF_SESSION_SECRET) < 32:
        errors.append("BFF_SESSION_SECRET is too short (minimum 32 characters)")

    if not settings.SESSION_COOKIE_SECURE and settings.redirect_uri.startswith("https://"):
        warnings.append("SESSION_COOKIE_SECURE is false while serving over HTTPS")

    if "offline_access" not in settings.delegated_scopes_list:
        warnings.append("offline_access is not requested; session tokens cannot be refreshed")

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
        "authority": settings.authority,
        "graph_scopes": settings.graph_scopes_list,
    }
