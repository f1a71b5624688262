"""
Core configuration module for mail synchronization.

This module contains the configuration dataclass used by connectors,
authorization flows and the orchestrator. Values default to environment
variables so deployments can be configured without code changes.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


@dataclass
class Config:
    """
    Application configuration class.

    Centralizes all configuration settings with proper type hints
    and default values from environment variables.
    """

    # Google OAuth (authorization-code flow and Gmail API access)
    GOOGLE_OAUTH_CLIENT_ID: Optional[str] = os.getenv("GOOGLE_OAUTH_CLIENT_ID")
    GOOGLE_OAUTH_CLIENT_SECRET: Optional[str] = os.getenv("GOOGLE_OAUTH_CLIENT_SECRET")
    GOOGLE_OAUTH_REDIRECT_URI: Optional[str] = os.getenv("GOOGLE_OAUTH_REDIRECT_URI")
    GOOGLE_OAUTH_TOKEN_URI: str = os.getenv("GOOGLE_OAUTH_TOKEN_URI", "https://oauth2.googleapis.com/token")

    # Device authorization grant (RFC 8628)
    DEVICE_AUTHORIZATION_ENDPOINT: str = os.getenv(
        "DEVICE_AUTHORIZATION_ENDPOINT", "https://oauth2.googleapis.com/device/code"
    )
    DEVICE_TOKEN_ENDPOINT: str = os.getenv("DEVICE_TOKEN_ENDPOINT", "https://oauth2.googleapis.com/token")
    DEVICE_USERINFO_ENDPOINT: str = os.getenv(
        "DEVICE_USERINFO_ENDPOINT", "https://openidconnect.googleapis.com/v1/userinfo"
    )
    DEVICE_SCOPES: List[str] = field(
        default_factory=lambda: os.getenv(
            "DEVICE_SCOPES",
            "openid email https://www.googleapis.com/auth/gmail.readonly",
        ).split()
    )

    # Retry policy for provider calls
    RETRY_MAX_ATTEMPTS: int = int(os.getenv("RETRY_MAX_ATTEMPTS", "5"))
    RETRY_BASE_DELAY_SECONDS: float = float(os.getenv("RETRY_BASE_DELAY_SECONDS", "1.0"))
    RETRY_MAX_JITTER_SECONDS: float = float(os.getenv("RETRY_MAX_JITTER_SECONDS", "1.0"))

    # Provider paging and timeouts
    GMAIL_PAGE_SIZE: int = int(os.getenv("GMAIL_PAGE_SIZE", "500"))
    JMAP_BATCH_SIZE: int = int(os.getenv("JMAP_BATCH_SIZE", "50"))
    JMAP_HTTP_TIMEOUT_SECONDS: float = float(os.getenv("JMAP_HTTP_TIMEOUT_SECONDS", "60"))
    IMAP_TIMEOUT_SECONDS: float = float(os.getenv("IMAP_TIMEOUT_SECONDS", "60"))

    # Archive everything, including trash and junk mailboxes
    ALL_INCLUSIVE_ARCHIVE: bool = os.getenv("ALL_INCLUSIVE_ARCHIVE", "false").lower() == "true"

    # Local persistence used by the command-line runner
    SYNC_DB_PATH: str = os.getenv("SYNC_DB_PATH", "mailsync.db")
    ARCHIVE_DIR: str = os.getenv("ARCHIVE_DIR", "archive")
    LOG_DIR: str = os.getenv("LOG_DIR", "logs")

    @property
    def google_oauth_configured(self) -> bool:
        """Return ``True`` when both Google OAuth client id and secret are set."""
        return bool(self.GOOGLE_OAUTH_CLIENT_ID and self.GOOGLE_OAUTH_CLIENT_SECRET)
