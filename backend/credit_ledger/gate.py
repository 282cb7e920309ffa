"""
Precondition Gate - Family checks before any provider call

Applies only to active children (role student) of family organizations.
Checks run in order and the first failure is reported:
1. Quiet hours (organization local time, window may wrap midnight)
2. Daily credit limit (optionally with rolled-over allowance)
3. Trial state of the family subscription

daily_time_limit_minutes is stored with the controls but not enforced here:
no session-time data flows through the ledger.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

from .config import (
    CUMULATIVE_MAX_DAYS,
    SUBSCRIPTION_EXPIRED_TRIAL_STATUS,
    SUBSCRIPTION_TRIAL_STATUSES,
    round_credits,
)
from .errors import DailyLimitReached, QuietHours, TrialExpired
from .ledger_store import LedgerStore
from .models import GateResult
from .parental_controls import ParentalControlsService
from .resolver import org_timezone
from .transaction_log import TransactionLogger

logger = logging.getLogger(__name__)


def parse_timestamp(value) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def in_quiet_hours(local: datetime, start: Optional[str], end: Optional[str]) -> bool:
    """True if local time is in [start, end). Equal bounds mean no quiet window."""
    if not start or not end or start == end:
        return False
    current = local.hour * 60 + local.minute
    start_min, end_min = _minutes(start), _minutes(end)
    if start_min < end_min:
        return start_min <= current < end_min
    return current >= start_min or current < end_min


def trial_has_expired(subscription: Optional[Dict[str, Any]], now: datetime) -> bool:
    if not subscription:
        return False
    status = (subscription.get("status") or "").lower()
    if status == SUBSCRIPTION_EXPIRED_TRIAL_STATUS:
        return True
    if status in SUBSCRIPTION_TRIAL_STATUSES:
        ends_at = parse_timestamp(subscription.get("trial_ends_at"))
        return ends_at is not None and ends_at <= now
    return False


class PreconditionGate:
    """Rejects a child's request before it reaches the provider."""

    def __init__(
        self,
        db,
        store: Optional[LedgerStore] = None,
        controls: Optional[ParentalControlsService] = None,
        transactions: Optional[TransactionLogger] = None,
    ):
        self.db = db
        self.store = store or LedgerStore(db)
        self.controls = controls or ParentalControlsService(db)
        self.transactions = transactions or TransactionLogger(db)

    def _daily_allowance(self, controls: Dict[str, Any], local: datetime):
        """
        Returns:
            Tuple of (window_start, allowance, next_reset) for the daily limit
        """
        limit = float(controls["daily_credit_limit"])
        day_start = local.replace(hour=0, minute=0, second=0, microsecond=0)
        next_reset = day_start + timedelta(days=1)

        since = parse_timestamp(controls.get("cumulative_since")) if controls.get("cumulative_credits") else None
        if since is None:
            return day_start, limit, next_reset

        days = (local.date() - since.astimezone(local.tzinfo).date()).days + 1
        days = max(1, min(days, CUMULATIVE_MAX_DAYS))
        return day_start - timedelta(days=days - 1), round_credits(limit * days), next_reset

    async def check(self, user_id: str, now: Optional[datetime] = None) -> GateResult:
        """Evaluate every precondition; never raises for a rejection."""
        now = now or datetime.now(timezone.utc)
        member, org = await self.store.get_family_child_membership(user_id)
        if not member:
            return GateResult(allowed=True)

        local = now.astimezone(org_timezone(org))
        controls = await self.controls.get(org["id"], user_id)

        if controls:
            start, end = controls.get("quiet_hours_start"), controls.get("quiet_hours_end")
            if in_quiet_hours(local, start, end):
                logger.info(f"LEDGER_GATE | user={user_id} | reason=quiet_hours | until={end}")
                return GateResult(
                    allowed=False,
                    reason="quiet_hours",
                    detail=f"AI use is paused until {end}.",
                    quiet_hours_end=end,
                )

            if controls.get("daily_credit_limit") is not None:
                window_start, allowance, next_reset = self._daily_allowance(controls, local)
                used = await self.transactions.sum_usage(window_start, user_id=user_id)
                if used >= allowance:
                    logger.info(
                        f"LEDGER_GATE | user={user_id} | reason=daily_limit_reached | "
                        f"used={used} | allowance={allowance}"
                    )
                    return GateResult(
                        allowed=False,
                        reason="daily_limit_reached",
                        detail=f"Daily credit limit of {allowance} reached ({used} used).",
                        resets_at=next_reset.isoformat(),
                        limit=allowance,
                        used=used,
                    )

        if trial_has_expired(org.get("subscription"), now):
            logger.info(f"LEDGER_GATE | user={user_id} | reason=trial_expired | org={org['id']}")
            return GateResult(allowed=False, reason="trial_expired", detail="The family trial has ended.")

        return GateResult(allowed=True)

    async def enforce(self, user_id: str, now: Optional[datetime] = None) -> GateResult:
        """
        Same as check() but raises the typed rejection.

        Raises:
            QuietHours, DailyLimitReached, TrialExpired
        """
        result = await self.check(user_id, now)
        if result.allowed:
            return result

        if result.reason == "quiet_hours":
            raise QuietHours(result.quiet_hours_end)
        if result.reason == "daily_limit_reached":
            raise DailyLimitReached(limit=result.limit, used=result.used, resets_at=result.resets_at)
        raise TrialExpired()
