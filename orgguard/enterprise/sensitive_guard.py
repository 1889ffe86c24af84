"""
Sensitive operation guard.

Destructive or secret-revealing commands require the caller to
re-supply their credential. A failed check costs a fixed delay before
it is reported, which throttles online guessing. The delay is awaited
on the requesting task only, and the credential check itself runs in a
worker thread so a slow hash never stalls the event loop.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from orgguard.enterprise.models import User
from orgguard.exceptions import SensitiveCheckFailed
from orgguard.integrations.credentials import CredentialVerifier

logger = logging.getLogger(__name__)

T = TypeVar("T")

SensitiveAction = Callable[[], Awaitable[T]]


class SensitiveOperationGuard:
    """Re-verifies the caller's credential before a sensitive action runs."""

    def __init__(
        self,
        verifier: CredentialVerifier,
        failure_delay_seconds: float = 2.0,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        if failure_delay_seconds < 0:
            raise ValueError("failure_delay_seconds must be non-negative")
        self.verifier = verifier
        self.failure_delay_seconds = failure_delay_seconds
        self._sleep = sleep or asyncio.sleep

    async def verify(self, user: User, supplied_credential: Optional[str]) -> bool:
        """
        Check the supplied credential.

        Returns True immediately on success. On failure (an empty
        credential included) returns False only after the full delay.
        """
        if supplied_credential and await asyncio.to_thread(
            self.verifier.check_password, user, supplied_credential,
        ):
            return True

        logger.warning(
            "sensitive_check_failed",
            extra={"user_id": user.id, "delay_s": self.failure_delay_seconds},
        )
        await self._sleep(self.failure_delay_seconds)
        return False

    async def run(
        self,
        user: User,
        supplied_credential: Optional[str],
        action: SensitiveAction[T],
    ) -> T:
        """Run `action` only if the credential checks out."""
        if not await self.verify(user, supplied_credential):
            raise SensitiveCheckFailed()
        return await action()
