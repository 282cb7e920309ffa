"""
Precondition Gate Tests

Tests for:
- Quiet hours (wrapping midnight, organization timezone)
- Daily credit limit, with and without rolled-over allowance
- Trial expiry of the family subscription
- Check order: quiet hours before daily limit before trial
"""

import pytest
from datetime import datetime, timedelta, timezone
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from credit_ledger.debiter import UsageDebiter
from credit_ledger.errors import DailyLimitReached, QuietHours, TrialExpired
from credit_ledger.gate import PreconditionGate, in_quiet_hours, trial_has_expired
from credit_ledger.parental_controls import ParentalControlsService

from conftest import make_family, make_school

# 2026-06-15 is a Monday; Paris is UTC+2 in June
LATE_EVENING = datetime(2026, 6, 15, 21, 30, tzinfo=timezone.utc)    # 23:30 Paris
AFTERNOON = datetime(2026, 6, 15, 13, 0, tzinfo=timezone.utc)        # 15:00 Paris


@pytest.fixture
def controls(db):
    return ParentalControlsService(db)


@pytest.fixture
def gate(db, store, controls, transactions):
    return PreconditionGate(db, store=store, controls=controls, transactions=transactions)


class TestQuietHoursWindow:

    def test_window_wrapping_midnight(self):
        assert in_quiet_hours(datetime(2026, 1, 1, 23, 30), "22:00", "07:00") is True
        assert in_quiet_hours(datetime(2026, 1, 1, 6, 59), "22:00", "07:00") is True
        assert in_quiet_hours(datetime(2026, 1, 1, 7, 0), "22:00", "07:00") is False
        assert in_quiet_hours(datetime(2026, 1, 1, 12, 0), "22:00", "07:00") is False

    def test_same_day_window(self):
        assert in_quiet_hours(datetime(2026, 1, 1, 13, 0), "12:00", "14:00") is True
        assert in_quiet_hours(datetime(2026, 1, 1, 14, 0), "12:00", "14:00") is False

    def test_equal_bounds_disable_window(self):
        assert in_quiet_hours(datetime(2026, 1, 1, 3, 0), "00:00", "00:00") is False
        assert in_quiet_hours(datetime(2026, 1, 1, 3, 0), None, "07:00") is False


class TestTrialExpiry:

    def test_explicit_expired_status(self):
        assert trial_has_expired({"status": "trial_expired"}, AFTERNOON) is True

    def test_trial_end_in_the_past(self):
        sub = {"status": "trialing", "trial_ends_at": (AFTERNOON - timedelta(days=1)).isoformat()}
        assert trial_has_expired(sub, AFTERNOON) is True

    def test_running_trial_and_active_subscription(self):
        sub = {"status": "trialing", "trial_ends_at": (AFTERNOON + timedelta(days=3)).isoformat()}
        assert trial_has_expired(sub, AFTERNOON) is False
        assert trial_has_expired({"status": "active"}, AFTERNOON) is False
        assert trial_has_expired(None, AFTERNOON) is False


class TestPreconditionGate:

    @pytest.mark.asyncio
    async def test_quiet_hours_rejects(self, gate, store, controls):
        org, parent, child = await make_family(store)
        await controls.initialize(org["id"], "kid", "guided", parent_user_id="parent")

        result = await gate.check("kid", now=LATE_EVENING)

        assert result.allowed is False
        assert result.reason == "quiet_hours"
        assert result.quiet_hours_end == "07:00"

        with pytest.raises(QuietHours) as exc_info:
            await gate.enforce("kid", now=LATE_EVENING)
        assert exc_info.value.to_dict()["reason"] == "quiet_hours"

    @pytest.mark.asyncio
    async def test_outside_quiet_hours_allows(self, gate, store, controls):
        org, _, _ = await make_family(store)
        await controls.initialize(org["id"], "kid", "guided")

        result = await gate.check("kid", now=AFTERNOON)
        assert result.allowed is True

    @pytest.mark.asyncio
    async def test_adults_and_school_students_skip_gate(self, gate, store, controls):
        org, _, _ = await make_family(store)
        await controls.initialize(org["id"], "kid", "guided")
        await make_school(store)

        assert (await gate.check("parent", now=LATE_EVENING)).allowed is True
        assert (await gate.check("alice", now=LATE_EVENING)).allowed is True

    @pytest.mark.asyncio
    async def test_child_without_controls_only_checks_trial(self, gate, store):
        await make_family(store, subscription={"status": "trial_expired"})

        result = await gate.check("kid", now=LATE_EVENING)
        assert result.reason == "trial_expired"

    @pytest.mark.asyncio
    async def test_daily_limit_reached(self, gate, store, controls, db, transactions, locks):
        org, _, _ = await make_family(store)
        await controls.upsert(org["id"], "kid", {
            "daily_credit_limit": 0.5,
            "quiet_hours_start": "00:00",
            "quiet_hours_end": "00:00",
        })
        await db.profiles.update_one({"id": "kid"}, {"$set": {"credits_balance": 2.0}})
        debiter = UsageDebiter(db, store=store, transactions=transactions, locks=locks)

        await debiter.debit("personal", "kid", 0.3, user_id="kid")
        assert (await gate.check("kid")).allowed is True

        await debiter.debit("personal", "kid", 0.2, user_id="kid")
        result = await gate.check("kid")

        assert result.allowed is False
        assert result.reason == "daily_limit_reached"
        assert result.limit == 0.5
        assert result.used == 0.5
        assert result.resets_at is not None

        with pytest.raises(DailyLimitReached) as exc_info:
            await gate.enforce("kid")
        body = exc_info.value.to_dict()
        assert body["error_code"] == "DAILY_LIMIT_REACHED"
        assert body["limit"] == 0.5

    @pytest.mark.asyncio
    async def test_refund_frees_daily_allowance(self, gate, store, controls, db, transactions, locks):
        org, _, _ = await make_family(store)
        await controls.upsert(org["id"], "kid", {
            "daily_credit_limit": 0.5,
            "quiet_hours_start": "00:00",
            "quiet_hours_end": "00:00",
        })
        await db.profiles.update_one({"id": "kid"}, {"$set": {"credits_balance": 2.0}})
        debiter = UsageDebiter(db, store=store, transactions=transactions, locks=locks)

        debit = await debiter.debit("personal", "kid", 0.5, user_id="kid")
        assert (await gate.check("kid")).allowed is False

        await debiter.refund(debit.transaction_id)
        assert (await gate.check("kid")).allowed is True

    @pytest.mark.asyncio
    async def test_cumulative_allowance_rolls_over(self, gate, store, controls, db):
        org, _, _ = await make_family(store)
        await controls.upsert(org["id"], "kid", {
            "daily_credit_limit": 0.5,
            "quiet_hours_start": "00:00",
            "quiet_hours_end": "00:00",
        })
        # Rollover enabled two days ago: three days of allowance
        await db.parental_controls.update_one(
            {"child_user_id": "kid"},
            {"$set": {
                "cumulative_credits": True,
                "cumulative_since": (AFTERNOON - timedelta(days=2)).isoformat(),
            }}
        )
        await db.organization_transactions.insert_one({
            "id": "usage-1",
            "type": "usage",
            "pool": "personal",
            "pool_id": "kid",
            "user_id": "kid",
            "amount": -1.2,
            "created_at": (AFTERNOON - timedelta(days=1)).isoformat(),
        })

        result = await gate.check("kid", now=AFTERNOON)
        assert result.allowed is True

        await db.organization_transactions.insert_one({
            "id": "usage-2",
            "type": "usage",
            "pool": "personal",
            "pool_id": "kid",
            "user_id": "kid",
            "amount": -0.3,
            "created_at": (AFTERNOON - timedelta(hours=1)).isoformat(),
        })
        result = await gate.check("kid", now=AFTERNOON)
        assert result.allowed is False
        assert result.limit == 1.5
        assert result.used == 1.5

    @pytest.mark.asyncio
    async def test_trial_expired_rejects(self, gate, store, controls):
        subscription = {"status": "trialing", "trial_ends_at": (AFTERNOON - timedelta(hours=1)).isoformat()}
        org, _, _ = await make_family(store, subscription=subscription)
        await controls.initialize(org["id"], "kid", "trusted")

        with pytest.raises(TrialExpired):
            await gate.enforce("kid", now=AFTERNOON)

    @pytest.mark.asyncio
    async def test_quiet_hours_reported_before_trial(self, gate, store, controls):
        org, _, _ = await make_family(store, subscription={"status": "trial_expired"})
        await controls.initialize(org["id"], "kid", "guided")

        result = await gate.check("kid", now=LATE_EVENING)
        assert result.reason == "quiet_hours"
