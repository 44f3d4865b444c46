"""Configuration management with validation.

Credentials and tuning knobs for the gateway are read from the environment
and validated once at startup so a misconfigured run fails before it touches
the control plane.
"""

from __future__ import annotations

import os
from dataclasses import dataclass


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_API_URL = "https://secure.sakura.ad.jp/cloud/api/apprun-dedicated/1.0"

DEFAULT_PAGE_SIZE = 30
MIN_PAGE_SIZE = 1
MAX_PAGE_SIZE = 100

DEFAULT_REQUEST_TIMEOUT_SECONDS = 60

# Asynchronous deletion polling: fixed interval bounded by an overall ceiling
DEFAULT_DELETION_POLL_INTERVAL_SECONDS = 3
DEFAULT_DELETION_TIMEOUT_SECONDS = 300
MAX_DELETION_TIMEOUT_SECONDS = 3600

MAX_CONFIG_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max cluster config
MAX_LEDGER_FILE_SIZE_BYTES = 1024 * 1024

LEDGER_FILE_SUFFIX = ".apprun-state.json"
LEDGER_FORMAT_VERSION = 1

# Credential environment variables, preferred name first
ACCESS_TOKEN_ENV_VARS = ("SAKURA_ACCESS_TOKEN", "SAKURACLOUD_ACCESS_TOKEN")
ACCESS_TOKEN_SECRET_ENV_VARS = ("SAKURA_ACCESS_TOKEN_SECRET", "SAKURACLOUD_ACCESS_TOKEN_SECRET")


@dataclass(frozen=True)
class Config:
    """Provisioner configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-apply.
    """

    access_token: str
    access_token_secret: str

    api_url: str = DEFAULT_API_URL
    page_size: int = DEFAULT_PAGE_SIZE
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS
    deletion_poll_interval_seconds: int = DEFAULT_DELETION_POLL_INTERVAL_SECONDS
    deletion_timeout_seconds: int = DEFAULT_DELETION_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.access_token:
            errors.append(f"{ACCESS_TOKEN_ENV_VARS[0]} (or {ACCESS_TOKEN_ENV_VARS[1]}) is required")
        if not self.access_token_secret:
            errors.append(
                f"{ACCESS_TOKEN_SECRET_ENV_VARS[0]} "
                f"(or {ACCESS_TOKEN_SECRET_ENV_VARS[1]}) is required"
            )

        if not self.api_url.startswith(("https://", "http://")):
            errors.append(f"APPRUN_API_URL must be an http(s) URL: {self.api_url}")

        if not (MIN_PAGE_SIZE <= self.page_size <= MAX_PAGE_SIZE):
            errors.append(f"APPRUN_PAGE_SIZE must be between {MIN_PAGE_SIZE} and {MAX_PAGE_SIZE}")

        if self.request_timeout_seconds < 1:
            errors.append("APPRUN_REQUEST_TIMEOUT must be at least 1 second")

        if self.deletion_poll_interval_seconds < 1:
            errors.append("APPRUN_DELETION_POLL_INTERVAL must be at least 1 second")

        if not (
            self.deletion_poll_interval_seconds
            <= self.deletion_timeout_seconds
            <= MAX_DELETION_TIMEOUT_SECONDS
        ):
            errors.append(
                "APPRUN_DELETION_TIMEOUT must be between the poll interval "
                f"and {MAX_DELETION_TIMEOUT_SECONDS} seconds"
            )

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            SAKURA_ACCESS_TOKEN: API access token (fallback: SAKURACLOUD_ACCESS_TOKEN)
            SAKURA_ACCESS_TOKEN_SECRET: API access token secret
                (fallback: SAKURACLOUD_ACCESS_TOKEN_SECRET)
            APPRUN_API_URL: Control-plane base URL (default: production endpoint)
            APPRUN_PAGE_SIZE: Items requested per list page (default: 30)
            APPRUN_REQUEST_TIMEOUT: Per-request timeout in seconds (default: 60)
            APPRUN_DELETION_POLL_INTERVAL: Seconds between deletion polls (default: 3)
            APPRUN_DELETION_TIMEOUT: Deletion wait ceiling in seconds (default: 300)
        """

        def get_first(keys: tuple[str, ...]) -> str:
            for key in keys:
                value = os.environ.get(key)
                if value:
                    return value
            return ""

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        return cls(
            access_token=get_first(ACCESS_TOKEN_ENV_VARS),
            access_token_secret=get_first(ACCESS_TOKEN_SECRET_ENV_VARS),
            api_url=os.environ.get("APPRUN_API_URL", DEFAULT_API_URL),
            page_size=get_int("APPRUN_PAGE_SIZE", DEFAULT_PAGE_SIZE),
            request_timeout_seconds=get_int(
                "APPRUN_REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_SECONDS
            ),
            deletion_poll_interval_seconds=get_int(
                "APPRUN_DELETION_POLL_INTERVAL", DEFAULT_DELETION_POLL_INTERVAL_SECONDS
            ),
            deletion_timeout_seconds=get_int(
                "APPRUN_DELETION_TIMEOUT", DEFAULT_DELETION_TIMEOUT_SECONDS
            ),
        )
