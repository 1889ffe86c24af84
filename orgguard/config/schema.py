"""
Pydantic configuration schema for orgguard.

A deployment is described by a single settings file (see
config/orgguard.yaml) that conforms to these models. The settings are
frozen once loaded: the deployment mode in particular is fixed at
process start and only ever read afterwards.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class DeploymentMode(str, Enum):
    HOSTED = "hosted"
    SELF_HOSTED = "self_hosted"


class BillingProvider(str, Enum):
    MOCK = "mock"
    STRIPE = "stripe"


# ---------------------------------------------------------------------------
# Sub-models
# ---------------------------------------------------------------------------

class GuardConfig(BaseModel):
    """Sensitive-operation guard parameters."""
    model_config = ConfigDict(frozen=True)

    failure_delay_seconds: float = Field(
        2.0, ge=0.0, description="Fixed delay consumed on every failed credential check"
    )


class ImportConfig(BaseModel):
    """Bulk directory import limits."""
    model_config = ConfigDict(frozen=True)

    max_batch_size: int = Field(
        2000,
        ge=1,
        description="Max groups / non-deleted users per hosted import without the large-import flag",
    )


class LicensingConfig(BaseModel):
    """License issuance (hosted) and consumption (self-hosted)."""
    model_config = ConfigDict(frozen=True)

    installation_id: Optional[str] = Field(
        None, description="This installation's id (self-hosted only)"
    )
    grace_period_days: int = Field(
        60, ge=0, description="Days a generated license outlives the billing period"
    )
    signing_key_path: Optional[str] = Field(
        None, description="PEM Ed25519 private key used to sign licenses (hosted)"
    )
    verify_key_path: Optional[str] = Field(
        None, description="PEM Ed25519 public key used to verify licenses"
    )

    @field_validator("installation_id")
    @classmethod
    def validate_installation_id(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        try:
            return str(UUID(v))
        except ValueError as e:
            raise ValueError("installation_id must be a UUID") from e


class BillingConfig(BaseModel):
    """Payment gateway selection."""
    model_config = ConfigDict(frozen=True)

    provider: BillingProvider = BillingProvider.MOCK
    api_key_env: str = Field(
        "STRIPE_SECRET_KEY", description="Environment variable holding the Stripe secret key"
    )


class StorageConfig(BaseModel):
    """Persistence backend selection."""
    model_config = ConfigDict(frozen=True)

    backend: str = Field("memory", description="'memory' or 'supabase'")

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        v = v.lower().strip()
        if v not in {"memory", "supabase"}:
            raise ValueError("storage backend must be 'memory' or 'supabase'")
        return v


# ---------------------------------------------------------------------------
# Top-level settings
# ---------------------------------------------------------------------------

class Settings(BaseModel):
    """Complete, immutable process configuration."""
    model_config = ConfigDict(frozen=True)

    mode: DeploymentMode = DeploymentMode.HOSTED
    guard: GuardConfig = Field(default_factory=GuardConfig)
    imports: ImportConfig = Field(default_factory=ImportConfig)
    licensing: LicensingConfig = Field(default_factory=LicensingConfig)
    billing: BillingConfig = Field(default_factory=BillingConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    api_key_length: int = Field(30, ge=16, le=128)

    @property
    def self_hosted(self) -> bool:
        return self.mode == DeploymentMode.SELF_HOSTED
