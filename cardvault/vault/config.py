"""
Vault Configuration — Validated settings for key derivation, sessions and storage.

Reads overrides from environment variables prefixed with ``CARDVAULT_``:
    CARDVAULT_PBKDF2_ITERATIONS = <int, >= 100000>
    CARDVAULT_HKDF_INFO = <domain-separation label>
    CARDVAULT_SESSION_TTL = <seconds>
    CARDVAULT_ROOT_FOLDER = <root folder name in the blob store>
    CARDVAULT_API_BASE / CARDVAULT_UPLOAD_BASE = <object store endpoints>
    CARDVAULT_REQUEST_TIMEOUT = <seconds>
    CARDVAULT_MAX_CONCURRENCY = <int>

Security Note:
    Never log passphrases or key material. Only log settings.
"""
import os
import logging

from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger("cardvault.vault")

MIN_PBKDF2_ITERATIONS = 100_000
DEFAULT_PBKDF2_ITERATIONS = 100_000
DEFAULT_HKDF_INFO = "CardVault-v1"
DEFAULT_SESSION_TTL = 5 * 60

ROOT_FOLDER_NAME = "CardVault"
RECORDS_FOLDER_NAME = "records"
INDEX_FOLDER_NAME = "metadata"
PREFERENCES_FOLDER_NAME = "config"

DRIVE_API_BASE = "https://www.googleapis.com/drive/v3"
DRIVE_UPLOAD_BASE = "https://www.googleapis.com/upload/drive/v3"

_ENV_PREFIX = "CARDVAULT_"


class VaultConfig(BaseModel):
    """Validated vault configuration."""

    pbkdf2_iterations: int = Field(
        default=DEFAULT_PBKDF2_ITERATIONS, ge=MIN_PBKDF2_ITERATIONS
    )
    hkdf_info: str = Field(default=DEFAULT_HKDF_INFO, min_length=1)
    session_ttl: int = Field(default=DEFAULT_SESSION_TTL, ge=1)
    session_sliding: bool = False
    root_folder: str = Field(default=ROOT_FOLDER_NAME, min_length=1)
    records_folder: str = Field(default=RECORDS_FOLDER_NAME, min_length=1)
    index_folder: str = Field(default=INDEX_FOLDER_NAME, min_length=1)
    preferences_folder: str = Field(default=PREFERENCES_FOLDER_NAME, min_length=1)
    api_base: str = DRIVE_API_BASE
    upload_base: str = DRIVE_UPLOAD_BASE
    request_timeout: float = Field(default=30.0, gt=0)
    max_concurrency: int = Field(default=8, ge=1, le=64)
    page_size: int = Field(default=100, ge=1, le=1000)

    @field_validator("api_base", "upload_base")
    @classmethod
    def validate_endpoint(cls, v: str) -> str:
        """Endpoints must be HTTPS (plain HTTP only for loopback testing)."""
        if not v.startswith(("https://", "http://127.0.0.1", "http://localhost")):
            raise ValueError(f"Object store endpoint must use https: {v}")
        return v.rstrip("/")

    @model_validator(mode="after")
    def validate_folder_names(self) -> "VaultConfig":
        """Subfolder names must be distinct, they are looked up by name."""
        names = [self.records_folder, self.index_folder, self.preferences_folder]
        if len(set(names)) != len(names):
            raise ValueError(f"Vault subfolder names must be distinct: {names}")
        return self

    @classmethod
    def from_env(cls) -> "VaultConfig":
        """Create VaultConfig from ``CARDVAULT_*`` environment variables.

        Unset variables fall back to the field defaults.

        Returns:
            Populated VaultConfig instance.
        """
        values = {}
        for field in cls.model_fields:
            raw = os.environ.get(f"{_ENV_PREFIX}{field.upper()}")
            if raw is not None:
                values[field] = raw
        if values:
            logger.debug("Vault config overrides from env: %s", sorted(values))
        return cls(**values)
