"""
Configuration — typed, validated settings loaded from environment/.env.

Uses pydantic-settings to:
  - Load from environment variables prefixed AFIP_
  - Fall back to .env file
  - Validate types and constraints at startup
  - Keep secrets (key passphrase) out of logs and source control

Only AppSettings is a BaseSettings instance. Sub-settings are plain
BaseModel classes populated via env_nested_delimiter="__", so
AFIP_CERTIFICATES__PATH maps to certificates.path, AFIP_RETRY__MAX_ATTEMPTS
to retry.max_attempts, etc.

Settings are read by the composition root (bootstrap) only; clients receive
plain constructor arguments.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from afip_client.adapters.soap_transport import AUTHENTICATION_URLS, INVOICING_URLS
from afip_client.domain import tenant
from afip_client.domain.models import Environment

_ENV_FILE = Path(__file__).parent.parent.parent / ".env"


class CertificateSettings(BaseModel):
    """
    Where the signing certificate and private key live.

    `path` holds the single-tenant pair; `base_path` holds one directory
    per tenant ({base_path}/{cuit}/certificate.crt + private.key), which
    wins when present.
    """

    path: Path | None = Field(default=None, description="Directory of the fixed certificate pair")
    certificate_file: str = Field(default="certificate.crt")
    key_file: str = Field(default="private_key.key")
    passphrase: SecretStr | None = Field(default=None, description="Private key passphrase")
    base_path: Path | None = Field(default=None, description="Root of per-tenant directories")
    tenant_certificate_file: str = Field(default="certificate.crt")
    tenant_key_file: str = Field(default="private.key")

    @property
    def certificate_path(self) -> Path | None:
        return self.path / self.certificate_file if self.path is not None else None

    @property
    def key_path(self) -> Path | None:
        return self.path / self.key_file if self.path is not None else None


class TokenCacheSettings(BaseModel):
    """Access ticket reuse."""

    enabled: bool = Field(default=True)
    prefix: str = Field(default="afip_sdk")
    ttl_seconds: int = Field(default=43200, ge=1)
    safety_margin_seconds: int = Field(default=300, ge=0)


class ParamCacheSettings(BaseModel):
    """Caching of invoice-type and point-of-sale parameter queries."""

    enabled: bool = Field(default=True)
    ttl_seconds: int = Field(default=21600, ge=1)


class RetrySettings(BaseModel):
    """Transport retries: base_delay_ms doubles per attempt, capped at max_delay_ms."""

    max_attempts: int = Field(default=3, ge=1, le=10)
    base_delay_ms: int = Field(default=1000, ge=0)
    max_delay_ms: int = Field(default=10000, ge=0)


class TransportSettings(BaseModel):
    """HTTP/TLS parameters for both remote services."""

    timeout_seconds: int = Field(default=30, ge=1)
    ciphers: str = Field(default="DEFAULT:!DH")
    security_level: int = Field(default=1, ge=0, le=5)
    user_agent: str = Field(default="afip-client")


class EndpointSettings(BaseModel):
    """Optional URL overrides; by default URLs follow the environment."""

    authentication_url: str | None = Field(default=None)
    invoicing_url: str | None = Field(default=None)


class AppSettings(BaseSettings):
    """
    Root settings — aggregates all sub-settings.

    Load order (highest priority first):
      1. Environment variables (AFIP_*)
      2. .env file
      3. Default values
    """

    model_config = SettingsConfigDict(
        env_prefix="AFIP_",
        env_file=_ENV_FILE,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    environment: Environment = Field(default=Environment.TESTING)
    tenant_id: str | None = Field(default=None, description="Default CUIT of the issuer")
    certificates: CertificateSettings = Field(default_factory=lambda: CertificateSettings())
    token_cache: TokenCacheSettings = Field(default_factory=lambda: TokenCacheSettings())
    param_cache: ParamCacheSettings = Field(default_factory=lambda: ParamCacheSettings())
    retry: RetrySettings = Field(default_factory=lambda: RetrySettings())
    transport: TransportSettings = Field(default_factory=lambda: TransportSettings())
    endpoints: EndpointSettings = Field(default_factory=lambda: EndpointSettings())

    request_validity_hours: int = Field(default=24, ge=1, le=24)
    default_point_of_sale: int = Field(default=1, ge=1)
    log_level: str = Field(default="INFO")

    @field_validator("tenant_id")
    @classmethod
    def validate_tenant_id(cls, value: str | None) -> str | None:
        """Accept dashed or bare CUITs; store the bare 11 digits."""
        if value is None or not value.strip():
            return None
        cleaned = tenant.clean(value)
        if not tenant.is_valid(cleaned):
            raise ValueError(f"Invalid CUIT: {value!r}")
        return cleaned

    @model_validator(mode="after")
    def check_delays(self) -> AppSettings:
        if self.retry.max_delay_ms < self.retry.base_delay_ms:
            raise ValueError("retry.max_delay_ms must not be lower than retry.base_delay_ms")
        return self

    @property
    def authentication_url(self) -> str:
        return self.endpoints.authentication_url or AUTHENTICATION_URLS[self.environment]

    @property
    def invoicing_url(self) -> str:
        return self.endpoints.invoicing_url or INVOICING_URLS[self.environment]
