"""
Client configuration using Pydantic Settings.
All configuration is loaded from environment variables with sensible defaults.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Self

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ksi.core.crypto.hashing import HashAlgorithm


class Settings(BaseSettings):
    """
    KSI client settings loaded from ``KSI_*`` environment variables.

    The embedding application provides endpoints and credentials; everything
    else has defaults matching the public Guardtime service.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="KSI_",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Runtime
    # ==========================================================================
    environment: Literal["development", "staging", "production"] = "development"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # ==========================================================================
    # Service endpoints
    # ==========================================================================
    aggregator_url: str = Field(default="", description="Aggregation (signing) service URL")
    extender_url: str = Field(default="", description="Extending service URL")
    publications_file_url: str = Field(
        default="http://verify.guardtime.com/ksi-publications.bin",
    )

    # ==========================================================================
    # Credentials
    # ==========================================================================
    login_id: str = Field(default="")
    login_key: SecretStr = Field(default=SecretStr(""))
    extender_login_id: str | None = Field(
        default=None,
        description="Extender login id, defaults to login_id",
    )
    extender_login_key: SecretStr | None = Field(
        default=None,
        description="Extender login key, defaults to login_key",
    )
    hmac_algorithm: str = Field(default="SHA-256")

    # ==========================================================================
    # Publications file trust
    # ==========================================================================
    publications_file_trust_store: Path | None = Field(
        default=None,
        description="PEM bundle of trusted roots; the certifi bundle is used when unset",
    )
    publications_file_subject: str = Field(default="E=publications@guardtime.com")
    calendar_certificate_subject: str | None = Field(
        default=None,
        description="Subject constraint for calendar signing certificates in key-based checks",
    )
    publications_file_cache_ttl: int = Field(
        default=8 * 3600,
        ge=0,
        description="Seconds a verified publications file is reused before refetching",
    )

    # ==========================================================================
    # Signing, transport and verification defaults
    # ==========================================================================
    default_hash_algorithm: str = Field(default="SHA-256")
    max_block_leaves: int = Field(default=1024, ge=1, le=65536)
    request_timeout: float = Field(default=30.0, gt=0)
    max_retries: int = Field(default=3, ge=1, le=10)
    retry_backoff: float = Field(default=0.5, ge=0)
    verify_on_read: bool = True
    extending_allowed: bool = False

    @field_validator("hmac_algorithm", "default_hash_algorithm")
    @classmethod
    def _validate_algorithm(cls, value: str) -> str:
        return HashAlgorithm.by_name(value).name

    @model_validator(mode="after")
    def _validate_endpoints(self) -> Self:
        """Require credentials whenever a service endpoint is configured."""
        if (self.aggregator_url or self.extender_url) and not self.login_id:
            raise ValueError("login_id must be set when a service endpoint is configured")
        return self

    @property
    def hash_algorithm(self) -> HashAlgorithm:
        return HashAlgorithm.by_name(self.default_hash_algorithm)


@lru_cache
def get_settings() -> Settings:
    """
    Get cached client settings.

    Using lru_cache ensures settings are loaded once and reused,
    avoiding repeated environment variable parsing.
    """
    return Settings()
