"""
Organization API credential lifecycle.

Each organization has at most one long-lived API key for machine
access. It is issued lazily, rotated by a single compare-and-swap in
storage (so the old and new keys are never both valid and the key is
never unset), and compared in constant time.
"""

from __future__ import annotations

import hmac
import logging
import secrets
import string

from orgguard.enterprise.models import Organization
from orgguard.exceptions import ConflictError, NotFoundError
from orgguard.integrations.storage import Storage

logger = logging.getLogger(__name__)

_ALPHABET = string.ascii_letters + string.digits


def generate_api_key(length: int = 30) -> str:
    """Random alphanumeric key from the OS CSPRNG."""
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


class ApiCredentialManager:
    """Issues, rotates and checks organization API keys."""

    def __init__(self, storage: Storage, key_length: int = 30):
        self.storage = storage
        self.key_length = key_length

    async def issue_or_return(self, org: Organization) -> str:
        """Return the current key, issuing one if the organization has none."""
        if org.api_key:
            return org.api_key

        new_key = generate_api_key(self.key_length)
        if await self.storage.replace_api_key(org.id, None, new_key):
            org.api_key = new_key
            logger.info("api_key_issued", extra={"org_id": org.id})
            return new_key

        # Another request issued a key first; return that one.
        current = await self.storage.get_organization(org.id)
        if current is None or not current.api_key:
            raise NotFoundError()
        org.api_key = current.api_key
        return current.api_key

    async def rotate(self, org: Organization) -> str:
        """Replace the key. Raises ConflictError if it changed since `org` was loaded."""
        new_key = generate_api_key(self.key_length)
        if not await self.storage.replace_api_key(org.id, org.api_key, new_key):
            logger.warning("api_key_rotation_conflict", extra={"org_id": org.id})
            raise ConflictError("The API key was changed by another request. Try again.")

        org.api_key = new_key
        logger.info("api_key_rotated", extra={"org_id": org.id})
        return new_key

    async def authenticate(self, org_id: str, presented: str) -> bool:
        if not presented:
            return False
        org = await self.storage.get_organization(org_id)
        if org is None or not org.enabled or not org.use_api or not org.api_key:
            return False
        return hmac.compare_digest(
            org.api_key.encode("utf-8"), presented.encode("utf-8"),
        )
