"""Configuration management using Pydantic Settings."""

import os
from pathlib import Path
from typing import List, Optional

from pydantic import Field, validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import Provider, SyncConfiguration

CREDENTIAL_FIELDS = ('google_client_id', 'google_client_secret', 'outlook_client_id', 'outlook_client_secret')


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
        secrets_dir=os.getenv("SECRETS_DIR", "/run/secrets")
    )

    # Google Calendar OAuth application
    google_client_id: Optional[str] = Field(None, description="Google OAuth Client ID")
    google_client_secret: Optional[str] = Field(None, description="Google OAuth Client Secret")
    google_client_id_file: Optional[str] = Field(None, description="Path to file containing Google Client ID")
    google_client_secret_file: Optional[str] = Field(None, description="Path to file containing Google Client Secret")
    google_scopes: List[str] = Field(
        default=[
            "https://www.googleapis.com/auth/calendar",
            "https://www.googleapis.com/auth/calendar.events",
            "https://www.googleapis.com/auth/userinfo.email",
            "https://www.googleapis.com/auth/userinfo.profile",
        ],
        description="Google API scopes"
    )

    # Outlook (Microsoft identity platform) OAuth application
    outlook_client_id: Optional[str] = Field(None, description="Microsoft application (client) ID")
    outlook_client_secret: Optional[str] = Field(None, description="Microsoft client secret")
    outlook_client_id_file: Optional[str] = Field(None, description="Path to file containing Outlook Client ID")
    outlook_client_secret_file: Optional[str] = Field(None, description="Path to file containing Outlook Client Secret")
    outlook_tenant: str = Field(default="common", description="Microsoft identity tenant")
    outlook_scopes: List[str] = Field(
        default=[
            "openid", "email", "profile", "offline_access",
            "https://graph.microsoft.com/Calendars.ReadWrite",
            "https://graph.microsoft.com/User.Read",
        ],
        description="Microsoft Graph scopes"
    )

    # Public URLs
    public_base_url: str = Field(
        default="http://localhost:8080",
        description="Externally reachable base URL of this service"
    )
    app_calendar_url: str = Field(
        default="http://localhost:3000/calendar",
        description="Application page the OAuth callback redirects back to"
    )

    # Token encryption secrets
    secret_key: Optional[str] = Field(None, description="Site secret used to derive the token encryption key")
    secret_salt: str = Field(default="podcal-sync", description="Site salt used to derive the encryption IV")

    # Application Configuration
    app_name: str = Field(default="podcal-sync", description="Application name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")

    # Storage Configuration
    data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".podcal-sync",
        description="Application data directory"
    )
    database_url: str = Field(
        default="",
        description="Database URL (defaults to SQLite in data_dir)"
    )

    # Sync Configuration
    sync_config: SyncConfiguration = Field(
        default_factory=SyncConfiguration,
        description="Synchronization settings"
    )

    # HTTP Configuration
    max_concurrent_requests: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Maximum concurrent HTTP requests"
    )
    request_timeout_seconds: int = Field(
        default=30,
        ge=5,
        le=300,
        description="Timeout for sync traffic to providers"
    )
    crud_timeout_seconds: int = Field(
        default=15,
        ge=1,
        le=300,
        description="Timeout for single-event provider calls"
    )

    @validator('data_dir', pre=True)
    def expand_path(cls, v):
        """Expand user paths and convert to Path objects."""
        if isinstance(v, str):
            return Path(v).expanduser().absolute()
        return v.expanduser().absolute()

    @validator('database_url', always=True)
    def set_default_database_url(cls, v, values):
        """Set default SQLite database URL if not provided."""
        if not v and 'data_dir' in values:
            data_dir = values['data_dir']
            return f"sqlite:///{data_dir}/podcal_sync.db"
        return v

    @validator('log_level')
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @validator('public_base_url', 'app_calendar_url')
    def strip_trailing_slash(cls, v):
        return v.rstrip('/')

    @validator(*CREDENTIAL_FIELDS)
    def blank_is_unset(cls, v):
        """Treat empty credentials as not configured."""
        if v is None:
            return v
        v = v.strip()
        return v or None

    def __init__(self, **kwargs):
        """Resolve ``*_file`` credential variants before validation."""
        for name in CREDENTIAL_FIELDS:
            path = kwargs.get(f"{name}_file") or os.getenv(f"{name.upper()}_FILE")
            if path:
                kwargs[name] = self._read_secret_file(path)

        super().__init__(**kwargs)

    @staticmethod
    def _read_secret_file(path: str) -> str:
        """Return the stripped contents of a mounted credential.

        Raises:
            ValueError: If the file is missing, unreadable or blank
        """
        try:
            value = Path(path).expanduser().read_text().strip()
        except OSError as e:
            raise ValueError(f"Cannot read credential file {path}: {e.strerror or e}")
        if not value:
            raise ValueError(f"Credential file {path} is empty")
        return value

    def ensure_directories(self):
        """Create necessary directories with proper permissions."""
        self.data_dir.mkdir(parents=True, exist_ok=True, mode=0o700)

    def redirect_uri(self, provider: Provider) -> str:
        """OAuth redirect URI registered with the provider."""
        return f"{self.public_base_url}/calendar-sync/{provider.value}/callback"

    def provider_configured(self, provider: Provider) -> bool:
        if provider is Provider.GOOGLE:
            return bool(self.google_client_id and self.google_client_secret)
        return bool(self.outlook_client_id and self.outlook_client_secret)

    def validate_required_settings(self) -> List[str]:
        """Validate required settings and return list of missing fields."""
        missing = []

        if not self.secret_key:
            missing.append('SECRET_KEY')
        if not any(self.provider_configured(p) for p in Provider):
            missing.append('GOOGLE_CLIENT_ID/GOOGLE_CLIENT_SECRET or OUTLOOK_CLIENT_ID/OUTLOOK_CLIENT_SECRET')

        return missing


def load_settings(config_file: Optional[str] = None) -> Settings:
    """Load application settings.

    Args:
        config_file: Optional path to a .env style configuration file

    Returns:
        Settings instance
    """
    if config_file:
        settings = Settings(_env_file=config_file)
    else:
        settings = Settings()
    settings.ensure_directories()
    return settings


def create_example_config(path: Path) -> None:
    """Write a commented .env template listing every supported variable."""
    example_content = '''# podcal-sync configuration
# Values here are read from .env; real environment variables take precedence.

# Google Calendar OAuth application (leave empty to disable Google)
GOOGLE_CLIENT_ID=
GOOGLE_CLIENT_SECRET=
# GOOGLE_CLIENT_SECRET_FILE=/run/secrets/google_client_secret

# Microsoft identity platform application (leave empty to disable Outlook)
OUTLOOK_CLIENT_ID=
OUTLOOK_CLIENT_SECRET=
OUTLOOK_TENANT=common

# Public URLs
PUBLIC_BASE_URL=https://crm.example.com/api
APP_CALENDAR_URL=https://crm.example.com/calendar

# Token encryption (changing these invalidates stored tokens)
SECRET_KEY=change_me_to_a_long_random_string
SECRET_SALT=change_me_too

# Logging
DEBUG=false
LOG_LEVEL=INFO

# Sync Configuration
SYNC_CONFIG__SYNC_INTERVAL_MINUTES=15
SYNC_CONFIG__SYNC_PAST_DAYS=30
SYNC_CONFIG__SYNC_FUTURE_DAYS=365
SYNC_CONFIG__DEFAULT_TIMEZONE=America/Chicago
SYNC_CONFIG__CLEANUP_ENABLED=true
SYNC_CONFIG__CLEANUP_DAYS_OLD=90

# HTTP Configuration
MAX_CONCURRENT_REQUESTS=10
REQUEST_TIMEOUT_SECONDS=30
CRUD_TIMEOUT_SECONDS=15

# Storage (defaults shown)
# DATA_DIR=~/.podcal-sync
# DATABASE_URL=sqlite:///~/.podcal-sync/podcal_sync.db
'''

    Path(path).write_text(example_content)
