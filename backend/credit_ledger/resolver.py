"""
Credit Resolver - Which pool pays for the next unit of usage

Resolution order (first match wins):
- no usable membership    -> personal
- org_only                -> organization, or InsufficientOrgCredit
- personal_only           -> personal, or InsufficientPersonalCredit
- org_first / auto        -> organization if remainder > 0, else personal
- personal_first          -> personal if balance > 0, else organization
Both pools empty always raises NoCreditAvailable.

Trainers (owner/admin/teacher) are always org_only and spend the organization's
unallocated pool. Students' org remainder is capped by the organization's
per-student daily/weekly/monthly limits.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, Tuple
from zoneinfo import ZoneInfo

from .config import (
    DEFAULT_CREDIT_PREFERENCE,
    DEFAULT_TIMEZONE,
    POOL_ORGANIZATION,
    POOL_PERSONAL,
    TRAINER_ROLES,
    round_credits,
)
from .errors import (
    InsufficientCredit,
    InsufficientOrgCredit,
    InsufficientPersonalCredit,
    NoCreditAvailable,
)
from .ledger_store import LedgerStore, member_remainder, unallocated
from .models import CreditSummary, LimitUsage, PoolResolution
from .transaction_log import TransactionLogger

logger = logging.getLogger(__name__)

LIMIT_SETTINGS = {
    "daily": "daily_limit_per_student",
    "weekly": "weekly_limit_per_student",
    "monthly": "monthly_limit_per_student",
}


def choose_pool(preference: str, org_remainder: Optional[float], personal_balance: float) -> str:
    """
    Pure pool decision.

    Args:
        preference: The profile's credit_preference
        org_remainder: Spendable org credit, or None without a usable membership
        personal_balance: The profile's credits_balance

    Returns:
        "organization" or "personal"

    Raises:
        NoCreditAvailable: both pools are empty
        InsufficientOrgCredit: org_only with an empty org remainder
        InsufficientPersonalCredit: personal_only with an empty personal balance
    """
    has_org = org_remainder is not None and org_remainder > 0
    has_personal = personal_balance > 0

    if org_remainder is None:
        if not has_personal:
            raise NoCreditAvailable()
        return POOL_PERSONAL

    if not has_org and not has_personal:
        raise NoCreditAvailable()

    if preference == "org_only":
        if not has_org:
            raise InsufficientOrgCredit()
        return POOL_ORGANIZATION

    if preference == "personal_only":
        if not has_personal:
            raise InsufficientPersonalCredit()
        return POOL_PERSONAL

    if preference == "personal_first":
        return POOL_PERSONAL if has_personal else POOL_ORGANIZATION

    # org_first and auto
    return POOL_ORGANIZATION if has_org else POOL_PERSONAL


def is_trainer(member: Optional[Dict[str, Any]]) -> bool:
    return bool(member) and member.get("role") in TRAINER_ROLES


def org_timezone(org: Optional[Dict[str, Any]]) -> ZoneInfo:
    tz_name = ((org or {}).get("settings") or {}).get("timezone") or DEFAULT_TIMEZONE
    return ZoneInfo(tz_name)


def window_starts(now: datetime, tz: ZoneInfo) -> Dict[str, datetime]:
    """Local start of the current day, ISO week (Monday) and month."""
    local = now.astimezone(tz)
    day = local.replace(hour=0, minute=0, second=0, microsecond=0)
    return {
        "daily": day,
        "weekly": day - timedelta(days=day.weekday()),
        "monthly": day.replace(day=1),
    }


class CreditResolver:
    """Loads balances and applies choose_pool. Never writes."""

    def __init__(self, db, store: Optional[LedgerStore] = None, transactions: Optional[TransactionLogger] = None):
        self.db = db
        self.store = store or LedgerStore(db)
        self.transactions = transactions or TransactionLogger(db)

    async def limit_usage(
        self,
        member: Dict[str, Any],
        org: Dict[str, Any],
        now: Optional[datetime] = None,
    ) -> Dict[str, LimitUsage]:
        """Usage against each per-student limit configured on the organization."""
        if is_trainer(member):
            return {}

        settings = org.get("settings") or {}
        configured = {name: settings.get(key) for name, key in LIMIT_SETTINGS.items() if settings.get(key)}
        if not configured:
            return {}

        starts = window_starts(now or datetime.now(timezone.utc), org_timezone(org))
        limits = {}
        for name, limit in configured.items():
            used = await self.transactions.sum_usage(starts[name], member_id=member["id"])
            limits[name] = LimitUsage(
                used=used,
                limit=float(limit),
                remaining=round_credits(max(0.0, float(limit) - used)),
            )
        return limits

    async def org_remainder(
        self,
        member: Dict[str, Any],
        org: Dict[str, Any],
        now: Optional[datetime] = None,
    ) -> Tuple[float, Dict[str, LimitUsage]]:
        """Spendable org credit for a member, after per-student limits."""
        if is_trainer(member):
            return max(0.0, unallocated(org)), {}

        remainder = max(0.0, member_remainder(member))
        limits = await self.limit_usage(member, org, now)
        for usage in limits.values():
            remainder = min(remainder, usage.remaining)
        return round_credits(remainder), limits

    async def resolve_pool(
        self,
        user_id: str,
        requested_org_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PoolResolution:
        """
        Decide which pool pays for the user's next request.

        Args:
            user_id: Profile id of the caller
            requested_org_id: Organization context of the request, if any

        Returns:
            PoolResolution

        Raises:
            NotFound: unknown profile
            InsufficientCredit: see choose_pool
        """
        profile = await self.store.require_profile(user_id)
        preference = profile.get("credit_preference") or DEFAULT_CREDIT_PREFERENCE
        personal_balance = round_credits(profile.get("credits_balance", 0))

        member, org = await self.store.get_active_membership(user_id, requested_org_id)

        org_remainder = None
        trainer = False
        if member and org:
            trainer = is_trainer(member)
            if trainer:
                preference = "org_only"
            org_remainder, _ = await self.org_remainder(member, org, now)

        pool = choose_pool(preference, org_remainder, personal_balance)

        if pool == POOL_ORGANIZATION:
            resolution = PoolResolution(
                pool=POOL_ORGANIZATION,
                available_amount=org_remainder,
                pool_id=member["id"],
                user_id=user_id,
                organization_id=org["id"],
                member_id=member["id"],
                preference=preference,
                draws_unallocated=trainer,
            )
        else:
            resolution = PoolResolution(
                pool=POOL_PERSONAL,
                available_amount=personal_balance,
                pool_id=user_id,
                user_id=user_id,
                organization_id=org["id"] if org else None,
                member_id=member["id"] if member else None,
                preference=preference,
            )

        logger.debug(
            f"LEDGER_RESOLVE | user={user_id} | preference={preference} | "
            f"pool={resolution.pool} | available={resolution.available_amount}"
        )
        return resolution

    async def summary(self, user_id: str, now: Optional[datetime] = None) -> CreditSummary:
        """Both balances, the pool that would pay next and limit usage."""
        profile = await self.store.require_profile(user_id)
        preference = profile.get("credit_preference") or DEFAULT_CREDIT_PREFERENCE
        personal_balance = round_credits(profile.get("credits_balance", 0))

        member, org = await self.store.get_active_membership(user_id)
        summary = CreditSummary(
            user_id=user_id,
            preference=preference,
            personal_balance=personal_balance,
        )

        org_remainder = None
        if member and org:
            org_remainder, limits = await self.org_remainder(member, org, now)
            summary.org_balance = org_remainder
            summary.organization_id = org["id"]
            summary.member_id = member["id"]
            summary.role = member.get("role")
            summary.is_trainer = is_trainer(member)
            summary.limits = limits
            if summary.is_trainer:
                preference = "org_only"

        try:
            summary.active_pool = choose_pool(preference, org_remainder, personal_balance)
        except InsufficientCredit:
            summary.active_pool = None
        return summary
