"""
Usage Debiter - Atomic charge of a resolved pool

CRITICAL: Two concurrent requests must never spend the same credit.
- personal pool: a single conditional update (credits_balance >= amount)
- member / organization pool: compare-and-set on the counters that were read
In-process callers on the same pool are additionally serialized by PoolLocks.

A usage row is appended after every successful debit. The debiter knows
nothing about pricing; callers pass the final amount.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from .config import (
    CAS_MAX_RETRIES,
    EVENT_CLAIM_TIMEOUT_SECONDS,
    ORG_STATUS_ACTIVE,
    POOL_MEMBER,
    POOL_ORGANIZATION,
    POOL_PERSONAL,
    round_credits,
)
from .errors import (
    DuplicateTransaction,
    InsufficientOrgCredit,
    InsufficientPersonalCredit,
    InvalidAmount,
    LedgerInconsistency,
    NotFound,
    OrganizationInactive,
)
from .ledger_store import LedgerStore, member_remainder, unallocated
from .locks import PoolLocks, get_pool_locks, pool_key
from .models import DebitResult
from .resolver import is_trainer
from .transaction_log import TransactionLogger

logger = logging.getLogger(__name__)


class UsageDebiter:
    """Charges usage to personal, member or organization pools."""

    def __init__(
        self,
        db,
        store: Optional[LedgerStore] = None,
        transactions: Optional[TransactionLogger] = None,
        locks: Optional[PoolLocks] = None,
        max_retries: int = CAS_MAX_RETRIES,
        claim_timeout: float = EVENT_CLAIM_TIMEOUT_SECONDS,
    ):
        self.db = db
        self.store = store or LedgerStore(db)
        self.transactions = transactions or TransactionLogger(db)
        self.locks = locks or get_pool_locks()
        self.max_retries = max_retries
        self.claim_timeout = claim_timeout

    async def debit(
        self,
        pool: str,
        pool_id: str,
        amount: float,
        *,
        user_id: Optional[str] = None,
        description: str = "AI usage",
        request_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> DebitResult:
        """
        Charge `amount` to a pool.

        Args:
            pool: "personal" (pool_id = user id) or "organization" (pool_id = member id)
            amount: Positive credit amount, markup already applied

        Returns:
            DebitResult with the pool's remaining balance

        Raises:
            InvalidAmount: amount <= 0
            InsufficientCredit: the pool cannot cover the amount; nothing was written
        """
        amount = round_credits(amount)
        if amount <= 0:
            raise InvalidAmount()

        if pool == POOL_PERSONAL:
            return await self._debit_personal(pool_id, amount, description, request_id, details)
        if pool == POOL_ORGANIZATION:
            return await self._debit_member(pool_id, amount, user_id, description, request_id, details)
        raise InvalidAmount(f"Unknown pool: {pool}")

    # ==================== PERSONAL ====================

    async def _debit_personal(self, user_id, amount, description, request_id, details) -> DebitResult:
        async with self.locks.hold(pool_key(POOL_PERSONAL, user_id)):
            result = await self.db.profiles.update_one(
                {"id": user_id, "credits_balance": {"$gte": amount}},
                {
                    "$inc": {"credits_balance": -amount},
                    "$set": {"updated_at": datetime.now(timezone.utc).isoformat()}
                }
            )

            if result.modified_count == 0:
                profile = await self.store.require_profile(user_id)
                available = round_credits(profile.get("credits_balance", 0))
                logger.info(
                    f"LEDGER_DEBIT_REJECTED | pool=personal:{user_id} | amount={amount} | available={available}"
                )
                raise InsufficientPersonalCredit(available=available, requested=amount)

            profile = await self.store.get_profile(user_id)
            entry = await self.transactions.append(
                type="usage",
                pool=POOL_PERSONAL,
                pool_id=user_id,
                amount=-amount,
                description=description,
                user_id=user_id,
                request_id=request_id,
                details=details,
            )

        new_balance = round_credits(profile.get("credits_balance", 0))
        logger.info(f"LEDGER_DEBIT | pool=personal:{user_id} | amount={amount} | balance={new_balance}")
        return DebitResult(
            pool=POOL_PERSONAL,
            pool_id=user_id,
            amount=amount,
            new_balance=new_balance,
            transaction_id=entry["id"],
        )

    # ==================== ORGANIZATION ====================

    async def _load_member(self, member_id: str):
        member = await self.store.get_member(member_id)
        if not member or member.get("status") != "active":
            raise NotFound(f"Active member not found: {member_id}")
        org = await self.store.require_organization(member["organization_id"])
        if org.get("status", ORG_STATUS_ACTIVE) != ORG_STATUS_ACTIVE:
            raise OrganizationInactive()
        return member, org

    async def _debit_member(self, member_id, amount, user_id, description, request_id, details) -> DebitResult:
        member, org = await self._load_member(member_id)
        user_id = user_id or member["user_id"]

        if is_trainer(member):
            return await self._debit_unallocated(member, org, amount, user_id, description, request_id, details)

        def take(current: Dict[str, Any]) -> Dict[str, Any]:
            available = member_remainder(current)
            if available < amount:
                raise InsufficientOrgCredit(available=available, requested=amount)
            return {"credit_used": round_credits(current.get("credit_used", 0) + amount)}

        async with self.locks.hold(pool_key(POOL_MEMBER, member_id)):
            before, changes = await self.store.compare_and_set(
                "organization_members",
                member_id,
                ["credit_used", "credit_allocated"],
                take,
                operation="debit_member",
                max_retries=self.max_retries,
                extra_filter={"status": "active"},
            )
            entry = await self.transactions.append(
                type="usage",
                pool=POOL_MEMBER,
                pool_id=member_id,
                amount=-amount,
                description=description,
                organization_id=org["id"],
                member_id=member_id,
                user_id=user_id,
                request_id=request_id,
                details=details,
            )

        new_balance = round_credits(before.get("credit_allocated", 0) - changes["credit_used"])
        logger.info(f"LEDGER_DEBIT | pool=member:{member_id} | amount={amount} | remaining={new_balance}")
        return DebitResult(
            pool=POOL_ORGANIZATION,
            pool_id=member_id,
            amount=amount,
            new_balance=new_balance,
            transaction_id=entry["id"],
        )

    async def _debit_unallocated(self, member, org, amount, user_id, description, request_id, details) -> DebitResult:
        """Trainers spend the organization's unallocated pool directly."""
        org_id = org["id"]

        def take(current: Dict[str, Any]) -> Dict[str, Any]:
            available = unallocated(current)
            if available < amount:
                raise InsufficientOrgCredit(available=available, requested=amount)
            return {"credit_balance": round_credits(current.get("credit_balance", 0) - amount)}

        async with self.locks.hold(pool_key(POOL_ORGANIZATION, org_id)):
            before, changes = await self.store.compare_and_set(
                "organizations",
                org_id,
                ["credit_balance", "credit_allocated"],
                take,
                operation="debit_unallocated",
                max_retries=self.max_retries,
            )
            entry = await self.transactions.append(
                type="usage",
                pool=POOL_ORGANIZATION,
                pool_id=org_id,
                amount=-amount,
                description=description,
                organization_id=org_id,
                member_id=member["id"],
                user_id=user_id,
                request_id=request_id,
                details=details,
            )

        new_balance = round_credits(changes["credit_balance"] - before.get("credit_allocated", 0))
        logger.info(f"LEDGER_DEBIT | pool=org:{org_id} | member={member['id']} | amount={amount} | unallocated={new_balance}")
        return DebitResult(
            pool=POOL_ORGANIZATION,
            pool_id=member["id"],
            amount=amount,
            new_balance=new_balance,
            transaction_id=entry["id"],
        )

    # ==================== REFUND ====================

    async def refund(self, transaction_id: str, reason: str = "", request_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Reverse a usage debit exactly once.

        Returns:
            The reversal transaction

        Raises:
            NotFound: unknown transaction
            InvalidAmount: the transaction is not a usage debit
            DuplicateTransaction: already reversed, or a refund is in progress
        """
        original = await self.transactions.get(transaction_id)
        if not original:
            raise NotFound(f"Transaction not found: {transaction_id}")
        if original["type"] != "usage":
            raise InvalidAmount("Only usage transactions can be reversed")

        dedup_key = f"reversal:{transaction_id}"
        if not await self.store.claim_event(dedup_key, {"reverses": transaction_id}):
            # A refund that failed before logging its reversal may be retried
            if await self.store.settle_logged_event(dedup_key, dedup_key):
                raise DuplicateTransaction(dedup_key=dedup_key)
            if not await self.store.reclaim_event(dedup_key, self.claim_timeout):
                raise DuplicateTransaction("A refund for this transaction is already in progress", dedup_key=dedup_key)
            logger.warning(f"LEDGER_REFUND_RETRY | reverses={transaction_id}")

        amount = round_credits(-original["amount"])
        pool, pool_id = original["pool"], original["pool_id"]

        async with self.locks.hold(pool_key(pool, pool_id)):
            if pool == POOL_PERSONAL:
                result = await self.db.profiles.update_one(
                    {"id": pool_id},
                    {
                        "$inc": {"credits_balance": amount},
                        "$set": {"updated_at": datetime.now(timezone.utc).isoformat()}
                    }
                )
                if result.matched_count == 0:
                    raise NotFound(f"Profile not found: {pool_id}")
            elif pool == POOL_MEMBER:
                def give_back(current: Dict[str, Any]) -> Dict[str, Any]:
                    used = round_credits(current.get("credit_used", 0) - amount)
                    if used < 0:
                        raise LedgerInconsistency(
                            "refund", "credit_used would go negative",
                            member_id=pool_id, transaction_id=transaction_id,
                        )
                    return {"credit_used": used}

                await self.store.compare_and_set(
                    "organization_members", pool_id, ["credit_used"], give_back,
                    operation="refund_member", max_retries=self.max_retries,
                )
            else:
                def restore(current: Dict[str, Any]) -> Dict[str, Any]:
                    return {"credit_balance": round_credits(current.get("credit_balance", 0) + amount)}

                await self.store.compare_and_set(
                    "organizations", pool_id, ["credit_balance"], restore,
                    operation="refund_unallocated", max_retries=self.max_retries,
                )

            entry = await self.transactions.append(
                type="reversal",
                pool=pool,
                pool_id=pool_id,
                amount=amount,
                description=reason or "Usage refund",
                organization_id=original.get("organization_id"),
                member_id=original.get("member_id"),
                user_id=original.get("user_id"),
                dedup_key=dedup_key,
                reverses=transaction_id,
                request_id=request_id,
            )

        await self.store.mark_event_processed(dedup_key, entry["id"])
        logger.info(f"LEDGER_REFUND | pool={pool}:{pool_id} | amount={amount} | reverses={transaction_id}")
        return entry
