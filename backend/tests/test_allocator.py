"""
Allocator Tests

Tests for:
- allocate: org pool -> member, InsufficientOrgPool leaves nothing changed
- bulk_allocate: all-or-nothing reservation, per-student failures
- transfer / transfer_many: family pool -> child wallet with parent sync
- transfer_personal: wallet <-> organization
- Rollback when the second write of an operation fails (ledger or storage error)
"""

import asyncio
import pytest
import sys
from pathlib import Path
from unittest.mock import AsyncMock, patch

sys.path.insert(0, str(Path(__file__).parent.parent))

from pymongo.errors import AutoReconnect

from credit_ledger.allocator import Allocator
from credit_ledger.errors import (
    EmptyClass,
    InsufficientOrgPool,
    InsufficientPersonalCredit,
    InvalidAmount,
    LedgerInconsistency,
    NotFound,
    OrganizationInactive,
    PermissionDenied,
    PoolContention,
)

from conftest import make_family, make_school


@pytest.fixture
def allocator(db, store, transactions, locks):
    return Allocator(db, store=store, transactions=transactions, locks=locks)


class TestAllocate:

    @pytest.mark.asyncio
    async def test_allocate_moves_unallocated_to_member(self, allocator, store, transactions):
        org, _, members = await make_school(store, balance=10.0)
        alice = members["alice"]

        result = await allocator.allocate(org["id"], alice["id"], 3.0, allocated_by="owner")

        assert result.previous_allocation == 0.0
        assert result.new_allocation == 3.0
        org_after = await store.get_organization(org["id"])
        assert org_after["credit_balance"] == 10.0
        assert org_after["credit_allocated"] == 3.0

        entry = await transactions.get(result.transaction_id)
        assert entry["type"] == "credit_allocated"
        assert entry["pool"] == "member"
        assert entry["pool_id"] == alice["id"]
        assert entry["amount"] == 3.0
        assert entry["details"] == {"allocated_by": "owner"}

    @pytest.mark.asyncio
    async def test_allocate_more_than_unallocated(self, allocator, store, db):
        org, _, members = await make_school(store, balance=10.0)
        await allocator.allocate(org["id"], members["alice"]["id"], 8.0)

        with pytest.raises(InsufficientOrgPool) as exc_info:
            await allocator.allocate(org["id"], members["bob"]["id"], 5.0)

        assert exc_info.value.available == 2.0
        assert exc_info.value.requested == 5.0
        bob = await store.get_member(members["bob"]["id"])
        assert bob["credit_allocated"] == 0.0
        org_after = await store.get_organization(org["id"])
        assert org_after["credit_allocated"] == 8.0
        assert await db.organization_transactions.count_documents({"type": "credit_allocated"}) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -1.5])
    async def test_allocate_rejects_non_positive(self, allocator, store, amount):
        org, _, members = await make_school(store)
        with pytest.raises(InvalidAmount):
            await allocator.allocate(org["id"], members["alice"]["id"], amount)

    @pytest.mark.asyncio
    async def test_allocate_to_member_of_other_org(self, allocator, store):
        org, _, members = await make_school(store)
        other = await store.create_organization("Autre", "business", opening_balance=5.0)
        with pytest.raises(NotFound):
            await allocator.allocate(other["id"], members["alice"]["id"], 1.0)

    @pytest.mark.asyncio
    async def test_allocate_in_suspended_org(self, allocator, store):
        org, _, members = await make_school(store)
        await store.set_organization_status(org["id"], "suspended")
        with pytest.raises(OrganizationInactive):
            await allocator.allocate(org["id"], members["alice"]["id"], 1.0)

    @pytest.mark.asyncio
    async def test_concurrent_allocations_never_overdraw(self, allocator, store):
        org, _, members = await make_school(store, balance=5.0)

        results = await asyncio.gather(
            allocator.allocate(org["id"], members["alice"]["id"], 3.0),
            allocator.allocate(org["id"], members["bob"]["id"], 3.0),
            return_exceptions=True,
        )

        assert sum(1 for r in results if isinstance(r, InsufficientOrgPool)) == 1
        org_after = await store.get_organization(org["id"])
        assert org_after["credit_allocated"] == 3.0
        assert await store.verify_invariants(org["id"]) == []


class TestBulkAllocate:

    @pytest.mark.asyncio
    async def test_bulk_allocate_whole_class(self, allocator, store, db):
        org, klass, members = await make_school(store, balance=10.0)

        result = await allocator.bulk_allocate(org["id"], klass["id"], 2.5, update_default=True)

        assert result.success is True
        assert sorted(result.succeeded) == sorted([members["alice"]["id"], members["bob"]["id"]])
        assert result.total_allocated == 5.0
        org_after = await store.get_organization(org["id"])
        assert org_after["credit_allocated"] == 5.0
        klass_after = await store.get_class(klass["id"])
        assert klass_after["settings"]["default_credit_per_student"] == 2.5
        assert await db.organization_transactions.count_documents({"type": "credit_allocated"}) == 2

    @pytest.mark.asyncio
    async def test_bulk_allocate_is_all_or_nothing(self, allocator, store, db):
        org, klass, members = await make_school(store, balance=3.0)

        with pytest.raises(InsufficientOrgPool) as exc_info:
            await allocator.bulk_allocate(org["id"], klass["id"], 2.0)

        assert exc_info.value.requested == 4.0
        for name in ("alice", "bob"):
            member = await store.get_member(members[name]["id"])
            assert member["credit_allocated"] == 0.0
        assert await db.organization_transactions.count_documents({}) == 0

    @pytest.mark.asyncio
    async def test_bulk_allocate_empty_class(self, allocator, store):
        org, _, _ = await make_school(store)
        empty = await store.create_class(org["id"], "Vide")
        with pytest.raises(EmptyClass):
            await allocator.bulk_allocate(org["id"], empty["id"], 1.0)

    @pytest.mark.asyncio
    async def test_bulk_allocate_unknown_class(self, allocator, store):
        org, _, _ = await make_school(store)
        with pytest.raises(NotFound):
            await allocator.bulk_allocate(org["id"], "no-such-class", 1.0)

    @pytest.mark.asyncio
    async def test_bulk_allocate_skips_archived_students(self, allocator, store):
        org, klass, members = await make_school(store, balance=10.0)
        await store.archive_member(members["bob"]["id"])

        result = await allocator.bulk_allocate(org["id"], klass["id"], 1.0)

        assert result.succeeded == [members["alice"]["id"]]
        org_after = await store.get_organization(org["id"])
        assert org_after["credit_allocated"] == 1.0


class TestFamilyTransfer:

    @pytest.mark.asyncio
    async def test_transfer_to_child_syncs_parent(self, allocator, store, transactions):
        org, parent, child = await make_family(store, balance=10.0)

        result = await allocator.transfer(org["id"], "kid", 3.0, parent_user_id="parent")

        assert result.child_balance == 3.0
        assert result.org_unallocated == 7.0
        kid = await store.get_profile("kid")
        assert kid["credits_balance"] == 3.0
        assert kid["credits_allocated"] == 3.0
        parent_profile = await store.get_profile("parent")
        assert parent_profile["credits_balance"] == 7.0

        entry = await transactions.get(result.transaction_id)
        assert entry["type"] == "transfer"
        assert entry["pool"] == "organization"
        assert entry["amount"] == -3.0
        assert entry["counter_pool"] == "personal"
        assert entry["counter_pool_id"] == "kid"

        adjustments = await transactions.list_for_user("parent")
        assert [a["amount"] for a in adjustments if a["type"] == "adjustment"] == [-3.0]

    @pytest.mark.asyncio
    async def test_transfer_more_than_pool(self, allocator, store):
        org, _, _ = await make_family(store, balance=2.0)
        with pytest.raises(InsufficientOrgPool):
            await allocator.transfer(org["id"], "kid", 5.0, parent_user_id="parent")
        kid = await store.get_profile("kid")
        assert kid["credits_balance"] == 0.0

    @pytest.mark.asyncio
    async def test_transfer_outside_family(self, allocator, store):
        org, _, _ = await make_school(store)
        with pytest.raises(PermissionDenied):
            await allocator.transfer(org["id"], "alice", 1.0)

    @pytest.mark.asyncio
    async def test_transfer_many_validates_total_first(self, allocator, store, db):
        org, _, _ = await make_family(store, balance=4.0)
        await store.create_profile(user_id="kid2")
        await store.add_member(org["id"], "kid2", "student")

        with pytest.raises(InsufficientOrgPool):
            await allocator.transfer_many(org["id"], [("kid", 3.0), ("kid2", 3.0)], parent_user_id="parent")
        assert await db.organization_transactions.count_documents({"type": "transfer"}) == 0

        results = await allocator.transfer_many(org["id"], [("kid", 1.0), ("kid2", 2.0)], parent_user_id="parent")
        assert [r.amount for r in results] == [1.0, 2.0]
        assert results[-1].org_unallocated == 1.0

    @pytest.mark.asyncio
    async def test_transfer_many_unknown_child(self, allocator, store):
        org, _, _ = await make_family(store, balance=4.0)
        with pytest.raises(NotFound):
            await allocator.transfer_many(org["id"], [("stranger", 1.0)])


    @pytest.mark.asyncio
    async def test_transfer_many_reports_completed_on_failure(self, allocator, store):
        org, _, _ = await make_family(store, balance=4.0)
        await store.create_profile(user_id="kid2")
        await store.add_member(org["id"], "kid2", "student")
        change_personal = allocator._change_personal

        async def flaky(user_id, delta, received=0.0):
            if user_id == "kid2":
                raise AutoReconnect("connection reset")
            return await change_personal(user_id, delta, received=received)

        with patch.object(allocator, "_change_personal", AsyncMock(side_effect=flaky)):
            with pytest.raises(LedgerInconsistency) as exc_info:
                await allocator.transfer_many(org["id"], [("kid", 1.0), ("kid2", 2.0)], parent_user_id="parent")

        completed = exc_info.value.details["completed"]
        assert [(c["child_user_id"], c["amount"]) for c in completed] == [("kid", 1.0)]
        assert (await store.get_profile("kid"))["credits_balance"] == 1.0
        assert (await store.get_profile("kid2"))["credits_balance"] == 0.0
        org_after = await store.get_organization(org["id"])
        assert org_after["credit_balance"] == 3.0
        assert (await store.reconcile_organization(org["id"])).consistent is True


class TestPersonalTransfer:

    @pytest.mark.asyncio
    async def test_wallet_to_org_and_back(self, allocator, store, db):
        org, _, _ = await make_school(store, balance=1.0)
        await db.profiles.update_one({"id": "owner"}, {"$set": {"credits_balance": 5.0, "opening_balance": 5.0}})

        result = await allocator.transfer_personal("owner", org["id"], "to_org", 4.0)
        assert result.personal_balance == 1.0
        assert result.org_balance == 5.0
        assert result.org_available == 5.0

        result = await allocator.transfer_personal("owner", org["id"], "to_personal", 2.0)
        assert result.personal_balance == 3.0
        assert result.org_balance == 3.0

        report = await store.reconcile_organization(org["id"])
        assert report.consistent is True
        assert (await store.reconcile_personal("owner")).consistent is True

    @pytest.mark.asyncio
    async def test_wallet_to_org_without_funds(self, allocator, store):
        org, _, _ = await make_school(store, balance=1.0)
        with pytest.raises(InsufficientPersonalCredit):
            await allocator.transfer_personal("owner", org["id"], "to_org", 4.0)
        org_after = await store.get_organization(org["id"])
        assert org_after["credit_balance"] == 1.0

    @pytest.mark.asyncio
    async def test_to_personal_cannot_take_allocated_credit(self, allocator, store):
        org, _, members = await make_school(store, balance=5.0)
        await allocator.allocate(org["id"], members["alice"]["id"], 4.0)

        with pytest.raises(InsufficientOrgPool):
            await allocator.transfer_personal("owner", org["id"], "to_personal", 2.0)

    @pytest.mark.asyncio
    async def test_non_member_cannot_transfer(self, allocator, store):
        org, _, _ = await make_school(store)
        await store.create_profile(user_id="outsider", opening_balance=5.0)
        with pytest.raises(NotFound):
            await allocator.transfer_personal("outsider", org["id"], "to_org", 1.0)


def storage_down():
    return AutoReconnect("primary stepped down")


class TestRollback:
    """Second write fails after the first landed: the first is undone and nothing is logged."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failure", [storage_down, lambda: PoolContention(operation="credit_member")])
    async def test_allocate_releases_reservation(self, allocator, store, db, failure):
        org, _, members = await make_school(store, balance=10.0)
        alice = members["alice"]

        with patch.object(allocator, "_credit_member", AsyncMock(side_effect=failure())):
            with pytest.raises(LedgerInconsistency) as exc_info:
                await allocator.allocate(org["id"], alice["id"], 3.0)

        assert exc_info.value.operation == "allocate"
        org_after = await store.get_organization(org["id"])
        assert org_after["credit_allocated"] == 0.0
        assert (await store.get_member(alice["id"]))["credit_allocated"] == 0.0
        assert await db.organization_transactions.count_documents({}) == 0

    @pytest.mark.asyncio
    async def test_allocate_reports_failed_compensation(self, allocator, store):
        org, _, members = await make_school(store, balance=10.0)

        with patch.object(allocator, "_credit_member", AsyncMock(side_effect=storage_down())), \
                patch.object(allocator, "_release_allocation", AsyncMock(side_effect=storage_down())):
            with pytest.raises(LedgerInconsistency) as exc_info:
                await allocator.allocate(org["id"], members["alice"]["id"], 3.0)

        assert "AutoReconnect" in exc_info.value.detail
        assert "compensation failed" in exc_info.value.detail

    @pytest.mark.asyncio
    async def test_bulk_allocate_storage_error_on_one_student(self, allocator, store, db):
        org, klass, members = await make_school(store, balance=10.0)
        credit_member = allocator._credit_member

        async def flaky(member_id, amount):
            if member_id == members["bob"]["id"]:
                raise storage_down()
            return await credit_member(member_id, amount)

        with patch.object(allocator, "_credit_member", AsyncMock(side_effect=flaky)):
            result = await allocator.bulk_allocate(org["id"], klass["id"], 2.0)

        assert result.succeeded == [members["alice"]["id"]]
        assert [(f.member_id, f.reason) for f in result.failed] == [(members["bob"]["id"], "AutoReconnect")]
        org_after = await store.get_organization(org["id"])
        assert org_after["credit_allocated"] == 2.0
        assert (await store.get_member(members["bob"]["id"]))["credit_allocated"] == 0.0
        assert await db.organization_transactions.count_documents({"type": "credit_allocated"}) == 1
        assert await store.verify_invariants(org["id"]) == []

    @pytest.mark.asyncio
    async def test_bulk_allocate_abort_releases_unused_reservation(self, allocator, store):
        org, klass, members = await make_school(store, balance=10.0)

        with patch.object(allocator.transactions, "append", AsyncMock(side_effect=storage_down())):
            with pytest.raises(AutoReconnect):
                await allocator.bulk_allocate(org["id"], klass["id"], 2.0)

        # The first student was credited before the log write failed; the rest of the batch is released
        credited = [
            (await store.get_member(members[name]["id"]))["credit_allocated"] for name in ("alice", "bob")
        ]
        org_after = await store.get_organization(org["id"])
        assert org_after["credit_allocated"] == sum(credited) == 2.0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failure", [storage_down, lambda: InsufficientPersonalCredit()])
    async def test_family_transfer_restores_pool(self, allocator, store, db, failure):
        org, _, _ = await make_family(store, balance=10.0)

        with patch.object(allocator, "_change_personal", AsyncMock(side_effect=failure())):
            with pytest.raises(LedgerInconsistency) as exc_info:
                await allocator.transfer(org["id"], "kid", 3.0, parent_user_id="parent")

        assert exc_info.value.operation == "family_transfer"
        org_after = await store.get_organization(org["id"])
        assert org_after["credit_balance"] == 10.0
        assert (await store.get_profile("kid"))["credits_balance"] == 0.0
        assert (await store.get_profile("parent"))["credits_balance"] == 10.0
        assert await db.organization_transactions.count_documents({}) == 0

    @pytest.mark.asyncio
    async def test_wallet_to_org_restores_wallet(self, allocator, store, db):
        org, _, _ = await make_school(store, balance=1.0)
        await db.profiles.update_one({"id": "owner"}, {"$set": {"credits_balance": 5.0, "opening_balance": 5.0}})

        with patch.object(allocator, "_change_org_balance", AsyncMock(side_effect=storage_down())):
            with pytest.raises(LedgerInconsistency):
                await allocator.transfer_personal("owner", org["id"], "to_org", 4.0)

        assert (await store.get_profile("owner"))["credits_balance"] == 5.0
        assert (await store.get_organization(org["id"]))["credit_balance"] == 1.0
        assert await db.organization_transactions.count_documents({}) == 0

    @pytest.mark.asyncio
    async def test_org_to_wallet_restores_org(self, allocator, store, db):
        org, _, _ = await make_school(store, balance=5.0)

        with patch.object(allocator, "_change_personal", AsyncMock(side_effect=storage_down())):
            with pytest.raises(LedgerInconsistency):
                await allocator.transfer_personal("owner", org["id"], "to_personal", 2.0)

        assert (await store.get_organization(org["id"]))["credit_balance"] == 5.0
        assert (await store.get_profile("owner"))["credits_balance"] == 0.0
        assert await db.organization_transactions.count_documents({}) == 0
        assert (await store.reconcile_organization(org["id"])).consistent is True
