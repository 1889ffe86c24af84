"""
Tests for SupabaseStorage query construction and failure handling.

The Supabase client is replaced by a MagicMock chain; every builder
method returns the same chain so the final execute() result can be set
once per test.
"""

from __future__ import annotations

from unittest.mock import MagicMock, call

import pytest

from orgguard.enterprise.models import Membership, MembershipStatus, Organization, OrgRole
from orgguard.exceptions import StorageUnavailable
from orgguard.integrations.storage import InMemoryStorage
from orgguard.integrations.supabase_store import SupabaseStorage, create_storage


def _chain(rows=None):
    chain = MagicMock()
    for method in ("select", "eq", "neq", "is_", "limit", "order",
                   "update", "upsert", "insert", "delete"):
        getattr(chain, method).return_value = chain
    result = MagicMock()
    result.data = rows
    chain.execute.return_value = result
    return chain


def _store(rows=None):
    client = MagicMock()
    chain = _chain(rows)
    client.table.return_value = chain
    return SupabaseStorage(client), client, chain


def _org_row(**fields) -> dict:
    fields.setdefault("name", "Acme")
    fields.setdefault("billing_email", "billing@acme.test")
    return Organization(**fields).model_dump(mode="json")


class TestOrganizations:
    @pytest.mark.asyncio
    async def test_get_found(self):
        row = _org_row()
        store, client, chain = _store([row])

        org = await store.get_organization(row["id"])

        assert org.id == row["id"]
        client.table.assert_called_with("organizations")
        chain.eq.assert_called_with("id", row["id"])

    @pytest.mark.asyncio
    async def test_get_missing(self):
        store, _, _ = _store([])
        assert await store.get_organization("nope") is None

    @pytest.mark.asyncio
    async def test_none_data_is_empty(self):
        store, _, _ = _store(None)
        assert await store.get_organization("nope") is None

    @pytest.mark.asyncio
    async def test_save_upserts_json(self):
        store, _, chain = _store([])
        org = Organization(name="Acme", billing_email="billing@acme.test")

        await store.save_organization(org)

        payload = chain.upsert.call_args.args[0]
        assert payload["id"] == org.id
        assert chain.upsert.call_args.kwargs == {"on_conflict": "id"}

    @pytest.mark.asyncio
    async def test_delete_cascades(self):
        store, client, _ = _store([])
        await store.delete_organization("org-1")
        tables = [c.args[0] for c in client.table.call_args_list]
        assert tables == ["org_members", "org_groups", "org_collections", "organizations"]

    @pytest.mark.asyncio
    async def test_license_lookup_only_enabled(self):
        store, _, chain = _store([])
        await store.find_organization_by_license_key("lk")
        chain.eq.assert_has_calls([call("license_key", "lk"), call("enabled", True)])


class TestReplaceApiKey:
    @pytest.mark.asyncio
    async def test_first_issue_matches_null(self):
        store, _, chain = _store([{"id": "org-1"}])
        assert await store.replace_api_key("org-1", None, "new")
        chain.is_.assert_called_once_with("api_key", "null")

    @pytest.mark.asyncio
    async def test_rotation_matches_expected(self):
        store, _, chain = _store([])
        assert not await store.replace_api_key("org-1", "old", "new")
        chain.eq.assert_any_call("api_key", "old")
        assert chain.update.call_args.args[0]["api_key"] == "new"


class TestMemberships:
    @pytest.mark.asyncio
    async def test_get_membership(self):
        row = Membership(
            org_id="org-1", user_id="u-1", email="a@acme.test", role=OrgRole.ADMIN,
        ).model_dump(mode="json")
        store, _, chain = _store([row])

        membership = await store.get_membership("u-1", "org-1")

        assert membership.role == OrgRole.ADMIN
        chain.eq.assert_has_calls([call("org_id", "org-1"), call("user_id", "u-1")])

    @pytest.mark.asyncio
    async def test_confirmed_for_user(self):
        store, _, chain = _store([])
        assert await store.list_confirmed_memberships_for_user("u-1") == []
        chain.eq.assert_any_call("status", MembershipStatus.CONFIRMED.value)

    @pytest.mark.asyncio
    async def test_seat_count_excludes_revoked(self):
        store, _, chain = _store([{"id": "a"}, {"id": "b"}])
        assert await store.count_occupied_seats("org-1") == 2
        chain.neq.assert_called_once_with("status", MembershipStatus.REVOKED.value)

    @pytest.mark.asyncio
    async def test_soft_delete_revokes(self):
        store, _, chain = _store([])
        await store.soft_delete_membership("m-1")
        chain.update.assert_called_once_with({"status": MembershipStatus.REVOKED.value})


class TestFailures:
    @pytest.mark.asyncio
    async def test_client_error_becomes_storage_unavailable(self):
        store, _, chain = _store([])
        chain.execute.side_effect = Exception("connection reset")

        with pytest.raises(StorageUnavailable) as exc:
            await store.get_membership("u-1", "org-1")
        assert exc.value.operation == "get_membership"


class TestFactory:
    def test_memory_backend(self):
        assert isinstance(create_storage("memory"), InMemoryStorage)

    def test_supabase_requires_env(self, monkeypatch):
        monkeypatch.delenv("SUPABASE_URL", raising=False)
        monkeypatch.delenv("SUPABASE_SERVICE_KEY", raising=False)
        with pytest.raises(EnvironmentError):
            create_storage("supabase")
