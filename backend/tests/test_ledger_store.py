"""
Ledger Store Tests

Tests for:
- compare_and_set retries on concurrent writers and gives up with PoolContention
- claim_event idempotency and takeover of abandoned claims
- Membership lookups (active org, family child)
- Reconciliation and counter invariants detect drift
"""

import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from credit_ledger.allocator import Allocator
from credit_ledger.debiter import UsageDebiter
from credit_ledger.errors import NotFound, PoolContention

from conftest import make_family, make_school


class TestCompareAndSet:

    @pytest.mark.asyncio
    async def test_retries_after_concurrent_write(self, store, raw_db):
        org, _, _ = await make_school(store, balance=10.0)
        attempts = []

        def add_one(current):
            attempts.append(current["credit_balance"])
            if len(attempts) == 1:
                # Another writer lands between our read and our write
                raw_db.organizations.update_one({"id": org["id"]}, {"$inc": {"credit_balance": 5.0}})
            return {"credit_balance": current["credit_balance"] + 1}

        before, changes = await store.compare_and_set(
            "organizations", org["id"], ["credit_balance"], add_one, operation="test"
        )

        assert attempts == [10.0, 15.0]
        assert before["credit_balance"] == 15.0
        assert changes == {"credit_balance": 16.0}
        assert (await store.get_organization(org["id"]))["credit_balance"] == 16.0

    @pytest.mark.asyncio
    async def test_gives_up_under_constant_contention(self, store, raw_db):
        org, _, _ = await make_school(store, balance=10.0)

        def always_beaten(current):
            raw_db.organizations.update_one({"id": org["id"]}, {"$inc": {"credit_balance": 1.0}})
            return {"credit_balance": 0.0}

        with pytest.raises(PoolContention):
            await store.compare_and_set(
                "organizations", org["id"], ["credit_balance"], always_beaten,
                operation="test", max_retries=3,
            )
        assert (await store.get_organization(org["id"]))["credit_balance"] == 13.0

    @pytest.mark.asyncio
    async def test_missing_document(self, store):
        with pytest.raises(NotFound):
            await store.compare_and_set("organizations", "nope", ["credit_balance"], lambda d: {}, operation="test")


class TestEvents:

    @pytest.mark.asyncio
    async def test_claim_event_once(self, store):
        assert await store.claim_event("pi_1") is True
        assert await store.claim_event("pi_1") is False

        await store.mark_event_processed("pi_1", "tx-1")
        event = await store.get_event("pi_1")
        assert event["processed"] is True
        assert event["transaction_id"] == "tx-1"

    @pytest.mark.asyncio
    async def test_reclaim_only_stale_unprocessed_claims(self, store):
        await store.claim_event("pi_1")

        assert await store.reclaim_event("pi_1", stale_after=300) is False
        assert await store.reclaim_event("pi_1", stale_after=0) is True
        assert (await store.get_event("pi_1"))["attempts"] == 1

        await store.mark_event_processed("pi_1", "tx-1")
        assert await store.reclaim_event("pi_1", stale_after=0) is False


class TestMemberships:

    @pytest.mark.asyncio
    async def test_active_membership_and_family_child(self, store):
        org, _, child = await make_family(store)

        member, found = await store.get_active_membership("kid")
        assert member["id"] == child["id"]
        assert found["id"] == org["id"]

        member, found = await store.get_family_child_membership("kid")
        assert found["type"] == "family"
        assert await store.get_family_child_membership("parent") == (None, None)

    @pytest.mark.asyncio
    async def test_managers_and_credit_preference(self, store):
        org, _, _ = await make_school(store)
        managers = await store.list_managers(org["id"])
        assert {m["user_id"] for m in managers} == {"owner"}

        await store.set_credit_preference("alice", "personal_first")
        assert (await store.get_profile("alice"))["credit_preference"] == "personal_first"
        with pytest.raises(NotFound):
            await store.set_credit_preference("ghost", "auto")


class TestReconciliation:

    @pytest.mark.asyncio
    async def test_full_lifecycle_reconciles(self, db, store, transactions, locks):
        org, klass, members = await make_school(store, balance=20.0)
        allocator = Allocator(db, store=store, transactions=transactions, locks=locks)
        debiter = UsageDebiter(db, store=store, transactions=transactions, locks=locks)

        await allocator.bulk_allocate(org["id"], klass["id"], 3.0)
        await debiter.debit("organization", members["alice"]["id"], 1.25)
        await debiter.debit("organization", members["teacher"]["id"], 2.0)
        usage = await debiter.debit("organization", members["bob"]["id"], 0.5)
        await debiter.refund(usage.transaction_id)

        report = await store.reconcile_organization(org["id"])

        assert report.consistent is True
        assert report.invariant_violations == []
        org_pool = next(p for p in report.pools if p.pool_id == org["id"])
        assert org_pool.stored_balance == 18.0
        assert org_pool.ledger_balance == -2.0

    @pytest.mark.asyncio
    async def test_drift_is_reported(self, db, store, transactions, locks):
        org, _, members = await make_school(store, balance=10.0)
        allocator = Allocator(db, store=store, transactions=transactions, locks=locks)
        await allocator.allocate(org["id"], members["alice"]["id"], 2.0)

        # Balance edited behind the ledger's back
        await db.organization_members.update_one(
            {"id": members["alice"]["id"]}, {"$set": {"credit_used": 0.5}}
        )

        report = await store.reconcile_organization(org["id"])

        assert report.consistent is False
        drifted = [p.pool_id for p in report.pools if not p.consistent]
        assert drifted == [members["alice"]["id"]]

    @pytest.mark.asyncio
    async def test_invariant_violations(self, db, store):
        org, _, members = await make_school(store, balance=1.0)
        await db.organizations.update_one({"id": org["id"]}, {"$set": {"credit_allocated": 2.0}})
        await db.organization_members.update_one(
            {"id": members["bob"]["id"]}, {"$set": {"credit_used": 1.0}}
        )

        violations = await store.verify_invariants(org["id"])

        assert len(violations) == 2
        assert any("credit_allocated" in v and org["id"] in v for v in violations)
        assert any(members["bob"]["id"] in v for v in violations)
