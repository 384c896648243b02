from pathlib import Path
from typing import List, Literal, Optional

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parents[1]

DEFAULT_REGISTRY_URL = "https://registry.cantonconnect.xyz"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CANTONCONNECT_",
        env_file=BASE_DIR / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application identity
    app_name: str = Field(default="CantonConnect dApp", description="Application name shown to wallets")
    origin: str = Field(default="http://localhost", description="Origin the dApp is served from")
    network: Literal["mainnet", "testnet", "devnet"] = Field(default="devnet", description="Canton network")
    log_level: str = Field(default="INFO", description="Logging level")

    # Registry
    registry_url: str = Field(default=DEFAULT_REGISTRY_URL, description="Base URL of the wallet registry")
    registry_channel: Literal["stable", "beta"] = Field(default="stable", description="Registry distribution channel")
    registry_public_keys: List[str] = Field(
        default_factory=list,
        description="Base64 Ed25519 public keys trusted to sign the registry manifest",
    )
    registry_required_signatures: int = Field(
        default=1,
        ge=1,
        description="Number of distinct trusted keys that must sign the manifest",
    )
    registry_ttl_seconds: int = Field(default=3600, ge=1, description="Validity window of a verified registry")
    registry_stale_ceiling_seconds: int = Field(
        default=86400,
        ge=1,
        description="Age after which an unrefreshed registry fails closed",
    )
    registry_stale_policy: Literal["serve_stale", "fail_closed"] = Field(
        default="serve_stale",
        description="What connect does when an expired registry cannot be refreshed",
    )
    registry_fetch_timeout_seconds: float = Field(default=10.0, gt=0, description="Manifest fetch timeout")
    registry_background_refresh: bool = Field(
        default=True,
        description="Refresh the registry in the background once its validity window elapses",
    )

    # Adapter call timeouts
    connect_timeout_seconds: float = Field(default=120.0, gt=0, description="Wallet connect timeout (user interaction)")
    restore_timeout_seconds: float = Field(default=15.0, gt=0, description="Session restore timeout")
    disconnect_timeout_seconds: float = Field(default=10.0, gt=0, description="Wallet disconnect timeout")

    # Session persistence
    session_storage_dir: Optional[Path] = Field(
        default=None,
        description="Directory for file-backed session storage (in-memory when unset)",
    )
    session_encryption_key: Optional[SecretStr] = Field(
        default=None,
        description="Base64 AES-256 key used to encrypt persisted sessions",
    )
    session_key_dir: Optional[Path] = Field(
        default=None,
        description="Directory for the generated session key, kept apart from session storage",
    )
    auto_expire: bool = Field(default=True, description="Schedule expiry of the live session at expires_at")

    @field_validator("origin")
    @classmethod
    def _strip_origin(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("registry_url")
    @classmethod
    def _strip_registry_url(cls, value: str) -> str:
        return value.rstrip("/")

    @model_validator(mode="after")
    def _check_stale_ceiling(self) -> "Settings":
        if self.registry_stale_ceiling_seconds < self.registry_ttl_seconds:
            raise ValueError(
                "registry_stale_ceiling_seconds must be >= registry_ttl_seconds"
            )
        return self

    @property
    def has_registry_keys(self) -> bool:
        return bool(self.registry_public_keys)

    @property
    def has_encryption_key(self) -> bool:
        return self.session_encryption_key is not None

    def manifest_url(self, channel: Optional[str] = None) -> str:
        return f"{self.registry_url}/v1/{channel or self.registry_channel}/registry.json"


# Global settings instance
settings = Settings()
