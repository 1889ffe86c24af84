"""
Credential verification for sensitive commands.

The client never sends a raw master password: it sends a client-side
hash (`master_password_hash`). The server stores a bcrypt hash of that
value, SHA-256 pre-hashed so inputs longer than bcrypt's 72-byte limit
behave consistently.
"""

from __future__ import annotations

import base64
import hashlib
from abc import ABC, abstractmethod

import bcrypt

from orgguard.enterprise.models import User


def _prehash(secret: str) -> bytes:
    digest = hashlib.sha256(secret.encode("utf-8")).digest()
    return base64.b64encode(digest)


def hash_password(master_password_hash: str) -> str:
    """Hash a client-supplied master password hash for storage."""
    return bcrypt.hashpw(_prehash(master_password_hash), bcrypt.gensalt()).decode("utf-8")


class CredentialVerifier(ABC):
    """Checks a user's re-supplied credential."""

    @abstractmethod
    def check_password(self, user: User, supplied_hash: str) -> bool:
        ...


class BcryptCredentialVerifier(CredentialVerifier):
    """Verifies against the bcrypt hash stored on the user record."""

    def check_password(self, user: User, supplied_hash: str) -> bool:
        if not supplied_hash or not user.master_password_hash:
            return False
        try:
            return bcrypt.checkpw(
                _prehash(supplied_hash),
                user.master_password_hash.encode("utf-8"),
            )
        except ValueError:
            # Stored value is not a bcrypt hash
            return False
