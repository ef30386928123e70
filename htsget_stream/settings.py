from __future__ import annotations

from pathlib import Path
from urllib.parse import unquote, urlsplit

import httpx
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_ENDPOINT_URL = "https://ega.ebi.ac.uk:8051/elixir/data/tickets/files/"
DEFAULT_VARIANTS_ENDPOINT_URL = (
    "https://ega.ebi.ac.uk:8051/elixir/data/tickets/variants/"
)


def resolve_secret(value: str | None) -> str | None:
    """Return ``value``, or the first line of the file it names.

    Values of the form ``file:///path/to/token`` (or ``file://relative``) are
    read from disk so secrets stay out of the process arguments.
    """
    if value is None or not value.lower().startswith("file://"):
        return value
    parts = urlsplit(value)
    path = Path(unquote(parts.netloc + parts.path))
    with path.open(encoding="utf-8") as handle:
        return handle.readline().strip()


class ClientSettings(BaseSettings):
    """Configuration for the htsget download client."""

    model_config = SettingsConfigDict(
        env_prefix="", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    endpoint_url: str = Field(
        default=DEFAULT_ENDPOINT_URL,
        validation_alias="HTSGET_ENDPOINT_URL",
    )
    variants_endpoint_url: str = Field(
        default=DEFAULT_VARIANTS_ENDPOINT_URL,
        validation_alias="HTSGET_VARIANTS_ENDPOINT_URL",
    )
    oauth_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices("HTSGET_OAUTH_TOKEN", "HTSGET_BEARER_TOKEN"),
    )
    proxy: str | None = Field(
        default=None,
        validation_alias="HTSGET_PROXY",
    )
    verify_tls: bool = Field(
        default=True,
        validation_alias="HTSGET_VERIFY_TLS",
    )
    buffer_size: int = Field(
        default=1024 * 1024,
        validation_alias="HTSGET_BUFFER_SIZE",
    )
    queue_size: int = Field(
        default=5,
        validation_alias="HTSGET_QUEUE_SIZE",
    )
    block_size: int = Field(
        default=32768,
        validation_alias="HTSGET_BLOCK_SIZE",
    )
    retries: int = Field(
        default=3,
        validation_alias="HTSGET_RETRIES",
    )
    ticket_attempts: int = Field(
        default=9,
        validation_alias="HTSGET_TICKET_ATTEMPTS",
    )
    open_attempts: int = Field(
        default=5,
        validation_alias="HTSGET_OPEN_ATTEMPTS",
    )
    open_pause: float = Field(
        default=0.5,
        validation_alias="HTSGET_OPEN_PAUSE",
    )
    resolve_attempts: int = Field(
        default=5,
        validation_alias="HTSGET_RESOLVE_ATTEMPTS",
    )
    resolve_pause: float = Field(
        default=2.0,
        validation_alias="HTSGET_RESOLVE_PAUSE",
    )
    connect_timeout: float = Field(
        default=120.0,
        validation_alias="HTSGET_CONNECT_TIMEOUT",
    )
    read_timeout: float = Field(
        default=180.0,
        validation_alias="HTSGET_READ_TIMEOUT",
    )
    staging_dir: Path | None = Field(
        default=None,
        validation_alias="HTSGET_STAGING_DIR",
    )

    @field_validator(
        "buffer_size",
        "queue_size",
        "block_size",
        "ticket_attempts",
        "open_attempts",
        "resolve_attempts",
    )
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        if value < 1:
            msg = "must be at least 1"
            raise ValueError(msg)
        return value

    @field_validator("retries")
    @classmethod
    def _not_negative(cls, value: int) -> int:
        if value < 0:
            msg = "must not be negative"
            raise ValueError(msg)
        return value

    @field_validator("oauth_token", mode="before")
    @classmethod
    def _read_token_file(cls, value: object) -> object:
        if isinstance(value, str):
            return resolve_secret(value.strip()) or None
        return value


def load_settings_from_env() -> ClientSettings:
    """Load client settings from environment variables.

    Returns:
        ClientSettings instance populated from environment variables.
    """
    return ClientSettings()


def build_http_client(
    settings: ClientSettings,
    transport: httpx.BaseTransport | None = None,
) -> httpx.Client:
    """Create the HTTP client used for tickets and data.

    Keep-alive is disabled, so every request opens and closes its own
    connection.
    """
    return httpx.Client(
        timeout=httpx.Timeout(settings.read_timeout, connect=settings.connect_timeout),
        limits=httpx.Limits(max_keepalive_connections=0),
        proxy=settings.proxy,
        verify=settings.verify_tls,
        follow_redirects=True,
        trust_env=False,
        transport=transport,
    )
