"""
Tests for the sensitive operation guard and role resolver.
"""

from __future__ import annotations

import asyncio
import threading
import time

import pytest

from orgguard.enterprise.models import MembershipStatus, OrgRole, User
from orgguard.enterprise.roles import RoleResolver
from orgguard.enterprise.sensitive_guard import SensitiveOperationGuard
from orgguard.exceptions import SensitiveCheckFailed

from .conftest import PASSWORD, PlainVerifier, add_member, make_org


class SlowVerifier(PlainVerifier):
    """Blocks like a real hash would and records the calling thread."""

    def __init__(self, seconds: float):
        super().__init__()
        self.seconds = seconds
        self.threads: list[int] = []

    def check_password(self, user: User, supplied_hash: str) -> bool:
        self.threads.append(threading.get_ident())
        time.sleep(self.seconds)
        return super().check_password(user, supplied_hash)


class RecordingSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def user():
    return User(email="u@acme.test", master_password_hash=PASSWORD)


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def guard(sleep):
    return SensitiveOperationGuard(PlainVerifier(), 2.0, sleep=sleep)


class TestSensitiveOperationGuard:
    @pytest.mark.asyncio
    async def test_success_has_no_delay(self, guard, sleep, user):
        assert await guard.verify(user, PASSWORD) is True
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_failure_waits_full_delay(self, guard, sleep, user):
        assert await guard.verify(user, "wrong") is False
        assert sleep.delays == [2.0]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("credential", [None, ""])
    async def test_missing_credential_fails(self, guard, sleep, user, credential):
        assert await guard.verify(user, credential) is False
        assert sleep.delays == [2.0]

    @pytest.mark.asyncio
    async def test_run_executes_action_on_success(self, guard, user):
        calls = []

        async def action():
            calls.append("ran")
            return "done"

        assert await guard.run(user, PASSWORD, action) == "done"
        assert calls == ["ran"]

    @pytest.mark.asyncio
    async def test_run_skips_action_on_failure(self, guard, user):
        calls = []

        async def action():
            calls.append("ran")

        with pytest.raises(SensitiveCheckFailed):
            await guard.run(user, "wrong", action)
        assert calls == []

    def test_negative_delay_rejected(self):
        with pytest.raises(ValueError):
            SensitiveOperationGuard(PlainVerifier(), -0.1)

    @pytest.mark.asyncio
    async def test_real_delay_does_not_block_other_tasks(self, user):
        guard = SensitiveOperationGuard(PlainVerifier(), 0.2)
        started = time.monotonic()

        failed, succeeded = await asyncio.gather(
            guard.verify(user, "wrong"),
            guard.verify(user, PASSWORD),
        )

        assert failed is False and succeeded is True
        assert 0.2 <= time.monotonic() - started < 1.0

    @pytest.mark.asyncio
    async def test_credential_check_runs_off_the_event_loop(self, user):
        verifier = SlowVerifier(0.2)
        guard = SensitiveOperationGuard(verifier, 0.0)
        ticks = 0

        async def ticker():
            nonlocal ticks
            for _ in range(5):
                await asyncio.sleep(0.01)
                ticks += 1

        async def checked():
            ok = await guard.verify(user, PASSWORD)
            return ok, ticks

        (ok, ticks_during_check), _ = await asyncio.gather(checked(), ticker())

        assert ok is True
        assert verifier.checks == 1
        assert verifier.threads != [threading.get_ident()]
        assert ticks_during_check == 5


class TestRoleResolver:
    @pytest.mark.asyncio
    async def test_confirmed_role(self, storage, owner):
        org = await make_org(storage)
        await add_member(storage, org, owner, OrgRole.ADMIN)
        roles = RoleResolver(storage)
        assert await roles.resolve(owner.id, org.id) == OrgRole.ADMIN
        assert await roles.has_role(owner.id, org.id, OrgRole.MEMBER)
        assert not await roles.has_role(owner.id, org.id, OrgRole.OWNER)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [
        MembershipStatus.INVITED,
        MembershipStatus.ACCEPTED,
        MembershipStatus.REVOKED,
    ])
    async def test_unconfirmed_has_no_role(self, storage, owner, status):
        org = await make_org(storage)
        await add_member(storage, org, owner, OrgRole.OWNER, status)
        assert await RoleResolver(storage).resolve(owner.id, org.id) is None

    @pytest.mark.asyncio
    async def test_unknown_org(self, storage, owner):
        assert await RoleResolver(storage).resolve(owner.id, "missing") is None
