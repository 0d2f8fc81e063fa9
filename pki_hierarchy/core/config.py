"""
Configuration settings for the PKI hierarchy manager.
Uses pydantic-settings for environment variable management.
"""

from pathlib import Path
from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration settings."""

    # Application
    app_name: str = "PKI Hierarchy Manager"
    app_version: str = "2.1.0"

    # Storage
    pki_dir: Path = Path("./pki")

    # Location defaults offered during setup
    default_country: str = "DE"
    default_state: str = "Bavaria"
    default_locality: str = "Munich"

    # Top-level domain used for the generated CA contact addresses
    email_tld: str = "de"

    # Keys and digests
    ca_key_curve: str = "secp384r1"
    leaf_key_curve: str = "prime256v1"
    ca_digest: str = "sha384"
    leaf_digest: str = "sha256"

    # Validity periods (days)
    root_ca_validity_days: int = 7300
    intermediate_ca_validity_days: int = 3650
    domain_server_cert_validity_days: int = 1460
    generic_server_cert_validity_days: int = 1460
    user_cert_validity_days: int = 1460
    device_cert_validity_days: int = 1460

    # What happens to the ledger entry of a bundle replaced by a re-issue:
    # "retain" keeps its status, "revoke" marks it revoked.
    overwrite_policy: str = "retain"

    # Logging
    log_level: str = "INFO"
    log_format: str = "console"  # "console", "json"

    @field_validator('default_country', mode='before')
    @classmethod
    def normalize_country(cls, v: str) -> str:
        """Country codes are two upper-case letters."""
        v = str(v).strip().upper()
        if len(v) != 2 or not v.isalpha():
            raise ValueError("country must be a two-letter code")
        return v

    @field_validator('overwrite_policy', mode='before')
    @classmethod
    def validate_overwrite_policy(cls, v: str) -> str:
        v = str(v).strip().lower()
        if v not in ("retain", "revoke"):
            raise ValueError('overwrite_policy must be "retain" or "revoke"')
        return v

    @field_validator('log_format', mode='before')
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v = str(v).strip().lower()
        if v not in ("console", "json"):
            raise ValueError('log_format must be "console" or "json"')
        return v

    @field_validator('log_level', mode='before')
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return str(v).strip().upper()

    @field_validator(
        'root_ca_validity_days',
        'intermediate_ca_validity_days',
        'domain_server_cert_validity_days',
        'generic_server_cert_validity_days',
        'user_cert_validity_days',
        'device_cert_validity_days',
    )
    @classmethod
    def validate_positive_days(cls, v: int) -> int:
        if v < 1:
            raise ValueError("validity must be at least one day")
        return v

    model_config = SettingsConfigDict(
        env_prefix="PKI_",
        env_file=".env",
        case_sensitive=False,
    )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
