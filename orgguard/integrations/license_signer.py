"""
License signing for self-hosted installations.

Licenses are signed with Ed25519 over `License.canonical_bytes()`. The
hosted service holds the private key; self-hosted installations ship
only the public key and can verify but never issue.

Usage:
    signer = Ed25519LicenseSigner.from_files(private_path, public_path)
    signed = signer.sign(license)
    assert signer.verify(signed)
"""

from __future__ import annotations

import base64
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from orgguard.enterprise.models import License

logger = logging.getLogger(__name__)


class LicenseSigner(ABC):
    """Signs and verifies license documents."""

    @abstractmethod
    def sign(self, license: License) -> License:
        """Return a copy of `license` carrying a signature."""
        ...

    @abstractmethod
    def verify(self, license: License) -> bool:
        ...


class Ed25519LicenseSigner(LicenseSigner):
    """Ed25519 signer. Verify-only when constructed without a private key."""

    def __init__(
        self,
        public_key: Ed25519PublicKey,
        private_key: Optional[Ed25519PrivateKey] = None,
    ):
        self._public_key = public_key
        self._private_key = private_key

    @classmethod
    def generate(cls) -> Ed25519LicenseSigner:
        private_key = Ed25519PrivateKey.generate()
        return cls(private_key.public_key(), private_key)

    @classmethod
    def from_files(
        cls,
        verify_key_path: str | Path,
        signing_key_path: Optional[str | Path] = None,
    ) -> Ed25519LicenseSigner:
        """Load PEM keys. The signing key is optional."""
        public_key = serialization.load_pem_public_key(
            Path(verify_key_path).read_bytes()
        )
        if not isinstance(public_key, Ed25519PublicKey):
            raise ValueError(f"Not an Ed25519 public key: {verify_key_path}")

        private_key = None
        if signing_key_path is not None:
            private_key = serialization.load_pem_private_key(
                Path(signing_key_path).read_bytes(), password=None,
            )
            if not isinstance(private_key, Ed25519PrivateKey):
                raise ValueError(f"Not an Ed25519 private key: {signing_key_path}")
        return cls(public_key, private_key)

    @property
    def can_sign(self) -> bool:
        return self._private_key is not None

    def public_pem(self) -> bytes:
        return self._public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )

    def private_pem(self) -> bytes:
        if self._private_key is None:
            raise ValueError("Signer has no private key")
        return self._private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def sign(self, license: License) -> License:
        if self._private_key is None:
            raise ValueError("This installation can verify licenses but not issue them")
        signature = self._private_key.sign(license.canonical_bytes())
        return license.model_copy(
            update={"signature": base64.b64encode(signature).decode("ascii")}
        )

    def verify(self, license: License) -> bool:
        if not license.signature:
            return False
        try:
            signature = base64.b64decode(license.signature, validate=True)
            self._public_key.verify(signature, license.canonical_bytes())
        except (InvalidSignature, ValueError):
            logger.warning(
                "license_signature_invalid",
                extra={"org_id": license.organization_id},
            )
            return False
        return True
