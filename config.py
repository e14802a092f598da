"""Configuration settings for the pastecdn server."""
import secrets
from typing import Annotated, Optional, Tuple

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from app.models.records import Role
from app.services.errors import ConfigurationError

# Storage limits (KiB, None means unlimited)
FILESIZE_LIMIT_KB: Optional[int] = 524288  # 512MB
ADMIN_FILESIZE_LIMIT_KB: Optional[int] = None

# Identifiers
FILENAME_LENGTH = 8
MIN_FILENAME_LENGTH = 5
RESERVATION_TTL_SECONDS = 60 * 60

# Retention (days)
RETENTION_ENABLED = False
RETENTION_MIN_AGE = 30
RETENTION_MAX_AGE = 180
RETENTION_SWEEP_HOUR = 0

# Blocklist
BLOCKED_EXTENSIONS = ("exe", "sh", "msi", "bat", "dll", "com")
BLOCKED_CONTENT_TYPES = (
    "text/x-sh",
    "text/x-msdos-batch",
    "application/x-dosexec",
    "application/x-msdownload",
    "application/vnd.microsoft.portable-executable",
    "application/x-msi",
    "application/x-msdos-program",
    "application/x-sh",
    "text/x-shellscript",
)

# Server
HOSTNAME = "127.0.0.1"
HOST = "127.0.0.1"
PORT = 6969
DEFAULT_ADMIN_PASSWORD = "PLEASE_CHANGE_THIS"
REDIS_URL = "redis://127.0.0.1:6379"
NOTIFIER_TIMEOUT_SECONDS = 10.0
PLAUSIBLE_ENDPOINT = "https://plausible.io"

# Directory paths
DATA_DIR = "./data"
TEMP_DIR = "./temp"
LOGS_DIR = "./logs"

ENV_PREFIX = "PASTECDN_"

CommaList = Annotated[Tuple[str, ...], NoDecode]


class Settings(BaseSettings):
    """Server settings; every field can be overridden by a ``PASTECDN_*`` variable."""

    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX, frozen=True, extra="ignore")

    hostname: str = HOSTNAME
    host: str = HOST
    port: int = PORT
    https_mode: bool = False
    data_dir: str = DATA_DIR
    temp_dir: str = TEMP_DIR
    admin_password: str = DEFAULT_ADMIN_PASSWORD
    filename_length: int = Field(default=FILENAME_LENGTH, ge=MIN_FILENAME_LENGTH)
    reservation_ttl: int = Field(default=RESERVATION_TTL_SECONDS, gt=0)
    redis_url: str = REDIS_URL
    filesize_limit_kb: Optional[int] = Field(default=FILESIZE_LIMIT_KB, ge=0)
    admin_filesize_limit_kb: Optional[int] = Field(default=ADMIN_FILESIZE_LIMIT_KB, ge=0)
    blocked_extensions: CommaList = BLOCKED_EXTENSIONS
    blocked_content_types: CommaList = BLOCKED_CONTENT_TYPES
    retention_enabled: bool = RETENTION_ENABLED
    retention_min_age: int = Field(default=RETENTION_MIN_AGE, ge=0)
    retention_max_age: int = Field(default=RETENTION_MAX_AGE, ge=0)
    retention_sweep_hour: int = Field(default=RETENTION_SWEEP_HOUR, ge=0, le=23)
    notifier_enabled: bool = False
    discord_webhook: Optional[str] = None
    notifier_timeout: float = NOTIFIER_TIMEOUT_SECONDS
    plausible_enabled: bool = False
    plausible_domain: Optional[str] = None
    plausible_endpoint: str = PLAUSIBLE_ENDPOINT

    @field_validator("filesize_limit_kb", "admin_filesize_limit_kb", mode="before")
    @classmethod
    def _unlimited(cls, value):
        # An empty value or "none" lifts the limit
        if isinstance(value, str) and value.strip().lower() in ("", "none"):
            return None
        return value

    @field_validator("blocked_extensions", "blocked_content_types", mode="before")
    @classmethod
    def _split_list(cls, value):
        if isinstance(value, str):
            return tuple(item.strip().lower() for item in value.split(",") if item.strip())
        return value

    @model_validator(mode="after")
    def _check_runnable(self) -> "Settings":
        if not self.hostname:
            raise ValueError("Hostname is empty")
        if not self.admin_password:
            raise ValueError("Admin password is empty")
        if self.retention_min_age > self.retention_max_age:
            raise ValueError("Retention min_age must not exceed max_age")
        return self

    @classmethod
    def from_env(cls) -> "Settings":
        """Load settings from the environment, raising ConfigurationError if unusable."""
        try:
            return cls()
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

    @property
    def scheme(self) -> str:
        return "https" if self.https_mode else "http"

    @property
    def plausible_active(self) -> bool:
        return self.plausible_enabled and bool(self.plausible_domain)

    def make_url(self, identifier: str) -> str:
        return f"{self.scheme}://{self.hostname}/{identifier}"

    def limit_bytes(self, role: Role) -> Optional[int]:
        """Size ceiling in bytes for the given role, None when unlimited."""
        limit = self.admin_filesize_limit_kb if role is Role.ADMIN else self.filesize_limit_kb
        if limit is None:
            return None
        return limit * 1024

    def verify_admin_password(self, secret: Optional[str]) -> bool:
        """Constant-time admin check; the shipped default never matches."""
        if not secret or self.admin_password == DEFAULT_ADMIN_PASSWORD:
            return False
        return secrets.compare_digest(secret.encode(), self.admin_password.encode())
