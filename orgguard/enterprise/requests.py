"""
Typed command payloads.

Each command in the policy table names the payload model it expects;
the HTTP adapter parses request bodies into these models and the
dispatcher rejects a payload of the wrong type before anything else
runs.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field, field_validator

from orgguard.enterprise.models import (
    License,
    PaymentMethodType,
    PlanTier,
    TaxInfo,
)


class SecretVerificationRequest(BaseModel):
    """Carries the re-verified credential for sensitive commands."""
    master_password_hash: str = Field(default="", repr=False)


class OrganizationCreateRequest(BaseModel):
    """Hosted signup of a new organization."""
    name: str
    billing_email: str
    business_name: Optional[str] = None
    plan_tier: PlanTier = PlanTier.FREE
    additional_seats: int = Field(default=0, ge=0)
    additional_storage_gb: int = Field(default=0, ge=0)
    payment_token: Optional[str] = Field(default=None, repr=False)
    payment_method_type: Optional[PaymentMethodType] = None
    tax_info: Optional[TaxInfo] = None
    owner_key: str
    collection_name: Optional[str] = None
    public_key: Optional[str] = None
    encrypted_private_key: Optional[str] = None


class OrganizationLicenseCreateRequest(BaseModel):
    """Self-hosted signup from an uploaded license."""
    license: License
    key: str
    collection_name: Optional[str] = None
    public_key: Optional[str] = None
    encrypted_private_key: Optional[str] = None


class OrganizationUpdateRequest(BaseModel):
    name: str
    business_name: Optional[str] = None
    billing_email: str


class PaymentRequest(BaseModel):
    payment_token: str = Field(repr=False)
    payment_method_type: PaymentMethodType
    tax_info: TaxInfo = Field(default_factory=TaxInfo)


class UpgradeRequest(BaseModel):
    plan_tier: PlanTier
    additional_seats: int = Field(default=0, ge=0)
    additional_storage_gb: int = Field(default=0, ge=0)
    business_name: Optional[str] = None


class SeatRequest(BaseModel):
    seat_adjustment: int


class StorageRequest(BaseModel):
    storage_gb_adjustment: int


class VerifyBankRequest(BaseModel):
    """Micro-deposit amounts in minor units (cents)."""
    amount1: int = Field(strict=True)
    amount2: int = Field(strict=True)


class LicenseRequest(BaseModel):
    installation_id: str


class LicenseUpdateRequest(BaseModel):
    license: License


class OrganizationKeysRequest(BaseModel):
    public_key: str
    encrypted_private_key: str

    @field_validator("public_key", "encrypted_private_key")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Key material cannot be empty")
        return v
