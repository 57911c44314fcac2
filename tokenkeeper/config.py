import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

DEFAULT_TOKEN_STORAGE_DB = str(Path.home() / ".tokenkeeper" / "tokens.db")


@dataclass
class Settings:
    """Application settings loaded from environment variables."""

    # Credential storage
    token_storage_db: str = DEFAULT_TOKEN_STORAGE_DB
    token_encryption_key: Optional[str] = field(default=None, repr=False)
    token_key_file: Optional[str] = None

    # Providers
    dropbox_app_key: Optional[str] = None
    google_client_id: Optional[str] = None
    google_client_secret: Optional[str] = field(default=None, repr=False)
    google_scopes: list[str] = field(default_factory=lambda: ["openid", "email"])

    # Authorization flow
    oauth_callback_host: str = "127.0.0.1"
    oauth_callback_port: int = 8089
    oauth_flow_timeout: float = 300
    pending_authorization_ttl: float = 600

    # Token refresh
    token_refresh_margin: float = 300
    refresh_enabled: bool = True
    refresh_check_interval: float = 1800
    refresh_sweep_margin: float = 900

    # HTTP
    http_timeout: float = 30

    # Logging
    log_format: str = "text"
    log_level: str = "INFO"

    def __post_init__(self):
        """Validate flow and refresh configuration."""
        logger = logging.getLogger(__name__)

        if not 0 <= self.oauth_callback_port <= 65535:
            raise ValueError(
                f"OAUTH_CALLBACK_PORT ({self.oauth_callback_port}) must be between 0 and 65535"
            )

        for name, value in (
            ("OAUTH_FLOW_TIMEOUT", self.oauth_flow_timeout),
            ("PENDING_AUTHORIZATION_TTL", self.pending_authorization_ttl),
            ("TOKEN_REFRESH_INTERVAL", self.refresh_check_interval),
            ("HTTP_TIMEOUT", self.http_timeout),
        ):
            if value <= 0:
                raise ValueError(f"{name} must be positive, got {value}")

        for name, value in (
            ("TOKEN_REFRESH_MARGIN", self.token_refresh_margin),
            ("TOKEN_REFRESH_SWEEP_MARGIN", self.refresh_sweep_margin),
        ):
            if value < 0:
                raise ValueError(f"{name} must not be negative, got {value}")

        if self.log_format.lower() not in ("json", "text"):
            raise ValueError(
                f"LOG_FORMAT must be 'json' or 'text', got {self.log_format!r}"
            )

        if self.refresh_sweep_margin < self.token_refresh_margin:
            logger.warning(
                f"TOKEN_REFRESH_SWEEP_MARGIN ({self.refresh_sweep_margin}s) is smaller than "
                f"TOKEN_REFRESH_MARGIN ({self.token_refresh_margin}s). "
                "Token sources will refresh on demand before the background sweep does."
            )


def _split_scopes(value: str) -> list[str]:
    return [scope for scope in value.replace(",", " ").split() if scope]


def get_settings() -> Settings:
    """Get application settings from environment variables.

    Returns:
        Settings object with configuration values
    """
    return Settings(
        # Credential storage
        token_storage_db=os.getenv("TOKEN_STORAGE_DB", DEFAULT_TOKEN_STORAGE_DB),
        token_encryption_key=os.getenv("TOKEN_ENCRYPTION_KEY"),
        token_key_file=os.getenv("TOKEN_KEY_FILE"),
        # Providers
        dropbox_app_key=os.getenv("DROPBOX_APP_KEY"),
        google_client_id=os.getenv("GOOGLE_CLIENT_ID"),
        google_client_secret=os.getenv("GOOGLE_CLIENT_SECRET"),
        google_scopes=_split_scopes(os.getenv("GOOGLE_SCOPES", "openid email")),
        # Authorization flow
        oauth_callback_host=os.getenv("OAUTH_CALLBACK_HOST", "127.0.0.1"),
        oauth_callback_port=int(os.getenv("OAUTH_CALLBACK_PORT", "8089")),
        oauth_flow_timeout=float(os.getenv("OAUTH_FLOW_TIMEOUT", "300")),
        pending_authorization_ttl=float(os.getenv("PENDING_AUTHORIZATION_TTL", "600")),
        # Token refresh
        token_refresh_margin=float(os.getenv("TOKEN_REFRESH_MARGIN", "300")),
        refresh_enabled=os.getenv("TOKEN_REFRESH_ENABLED", "true").lower() == "true",
        refresh_check_interval=float(os.getenv("TOKEN_REFRESH_INTERVAL", "1800")),
        refresh_sweep_margin=float(os.getenv("TOKEN_REFRESH_SWEEP_MARGIN", "900")),
        # HTTP
        http_timeout=float(os.getenv("HTTP_TIMEOUT", "30")),
        # Logging
        log_format=os.getenv("LOG_FORMAT", "text"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )
