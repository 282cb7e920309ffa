"""
Purchase Service - Idempotent funding of personal and organization pools

CRITICAL: Payment processors retry webhooks. The external payment id is
stored in `payment_events` BEFORE any credit is applied; a replay finds it
and becomes a no-op. The purchase row also carries the payment id as its
dedup_key.

Flow:
1. Validate the target exists (a bad target must not consume the event)
2. Claim the payment id (upsert with $setOnInsert)
3. Credit the target pool
4. Append the purchase row
5. Mark the event processed

A replay of a claimed but unprocessed payment id is retried only when no
purchase row exists for it and the claim is older than the claim timeout;
otherwise it is reported as a duplicate.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from .config import (
    EVENT_CLAIM_TIMEOUT_SECONDS,
    FAMILY_WELCOME_CREDIT_PER_CHILD,
    POOL_ORGANIZATION,
    POOL_PERSONAL,
    round_credits,
)
from .errors import InvalidAmount, PermissionDenied
from .allocator import Allocator
from .ledger_store import LedgerStore, unallocated
from .locks import PoolLocks, get_pool_locks, pool_key
from .models import PurchaseResult
from .transaction_log import TransactionLogger

logger = logging.getLogger(__name__)


class PurchaseService:

    def __init__(
        self,
        db,
        store: Optional[LedgerStore] = None,
        transactions: Optional[TransactionLogger] = None,
        locks: Optional[PoolLocks] = None,
        claim_timeout: float = EVENT_CLAIM_TIMEOUT_SECONDS,
    ):
        self.db = db
        self.store = store or LedgerStore(db)
        self.transactions = transactions or TransactionLogger(db)
        self.locks = locks or get_pool_locks()
        self.claim_timeout = claim_timeout
        self.allocator = Allocator(db, store=self.store, transactions=self.transactions, locks=self.locks)

    async def _credit_target(self, target_type: str, target_id: str, amount: float) -> float:
        """Add funds and return the new balance."""
        if target_type == POOL_PERSONAL:
            await self.db.profiles.update_one(
                {"id": target_id},
                {
                    "$inc": {"credits_balance": amount},
                    "$set": {"updated_at": datetime.now(timezone.utc).isoformat()}
                }
            )
            profile = await self.store.get_profile(target_id)
            return round_credits(profile.get("credits_balance", 0))

        def add(org: Dict[str, Any]) -> Dict[str, Any]:
            return {"credit_balance": round_credits(org.get("credit_balance", 0) + amount)}

        _, changes = await self.store.compare_and_set(
            "organizations", target_id, ["credit_balance"], add, operation="purchase",
        )
        return changes["credit_balance"]

    async def _resume_claim(self, event_id: str, dedup_key: str) -> Optional[Dict[str, Any]]:
        """
        Decide what to do with an event id that was claimed before.

        Returns:
            None if this call took the claim over and should apply the credit,
            otherwise the payment event (with the transaction id when known)
        """
        entry = await self.store.settle_logged_event(event_id, dedup_key)
        if entry:
            logger.info(f"Payment {event_id} already processed, skipping")
            return {"transaction_id": entry["id"]}

        if await self.store.reclaim_event(event_id, self.claim_timeout):
            logger.warning(f"PURCHASE_RETRY | payment_id={event_id} | reason=earlier delivery did not complete")
            return None

        # Held by a delivery that is still in flight
        logger.warning(f"PURCHASE_PENDING | payment_id={event_id}")
        return await self.store.get_event(event_id) or {}

    async def record_purchase(
        self,
        target_type: str,
        target_id: str,
        amount: float,
        external_payment_id: str,
        user_id: Optional[str] = None,
        description: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> PurchaseResult:
        """
        Credit a completed payment to a personal wallet or an organization pool.

        Args:
            target_type: "personal" (target_id = user id) or "organization"
            external_payment_id: Processor id (e.g. Stripe payment_intent), the idempotency key

        Returns:
            PurchaseResult; duplicate=True when the payment id was already seen
        """
        amount = round_credits(amount)
        if amount <= 0:
            raise InvalidAmount()
        if target_type not in (POOL_PERSONAL, POOL_ORGANIZATION):
            raise InvalidAmount(f"Unknown purchase target: {target_type}")

        if target_type == POOL_PERSONAL:
            await self.store.require_profile(target_id)
        else:
            await self.store.require_organization(target_id)

        dedup_key = f"purchase:{external_payment_id}"
        if not await self.store.claim_event(external_payment_id, details):
            event = await self._resume_claim(external_payment_id, dedup_key)
            if event is not None:
                return PurchaseResult(
                    duplicate=True,
                    target_type=target_type,
                    target_id=target_id,
                    amount=amount,
                    transaction_id=event.get("transaction_id"),
                )

        async with self.locks.hold(pool_key(target_type, target_id)):
            new_balance = await self._credit_target(target_type, target_id, amount)
            entry = await self.transactions.append(
                type="purchase",
                pool=target_type,
                pool_id=target_id,
                amount=amount,
                description=description or "Credit purchase",
                organization_id=target_id if target_type == POOL_ORGANIZATION else None,
                user_id=user_id or (target_id if target_type == POOL_PERSONAL else None),
                dedup_key=dedup_key,
                details={"payment_id": external_payment_id, **(details or {})},
            )

        await self.store.mark_event_processed(external_payment_id, entry["id"])
        logger.info(
            f"LEDGER_PURCHASE | target={target_type}:{target_id} | amount={amount} | "
            f"payment_id={external_payment_id} | balance={new_balance}"
        )
        return PurchaseResult(
            target_type=target_type,
            target_id=target_id,
            amount=amount,
            new_balance=new_balance,
            transaction_id=entry["id"],
        )

    async def grant_welcome_credit(
        self,
        organization_id: str,
        parent_user_id: str,
        child_count: int,
    ) -> PurchaseResult:
        """
        One-time family welcome credit (per child) into the family pool.

        The parent's wallet is then synced to the family pool like after a transfer.
        """
        org = await self.store.require_organization(organization_id)
        if org.get("type") != "family":
            raise PermissionDenied("Welcome credit is only granted to family organizations")

        amount = round_credits(FAMILY_WELCOME_CREDIT_PER_CHILD * max(1, child_count))
        dedup_key = f"welcome:{organization_id}"

        if not await self.store.claim_event(dedup_key, {"child_count": child_count}):
            event = await self._resume_claim(dedup_key, dedup_key)
            if event is not None:
                return PurchaseResult(
                    duplicate=True,
                    target_type=POOL_ORGANIZATION,
                    target_id=organization_id,
                    amount=amount,
                    transaction_id=event.get("transaction_id"),
                )

        async with self.locks.hold(
            pool_key(POOL_ORGANIZATION, organization_id),
            pool_key(POOL_PERSONAL, parent_user_id),
        ):
            new_balance = await self._credit_target(POOL_ORGANIZATION, organization_id, amount)
            entry = await self.transactions.append(
                type="grant",
                pool=POOL_ORGANIZATION,
                pool_id=organization_id,
                amount=amount,
                description=f"Family welcome credit ({amount} for {child_count} child{'ren' if child_count > 1 else ''})",
                organization_id=organization_id,
                user_id=parent_user_id,
                dedup_key=dedup_key,
                details={"child_count": child_count},
            )
            org = await self.store.require_organization(organization_id)
            await self.allocator.sync_parent_balance(organization_id, parent_user_id, unallocated(org))

        await self.store.mark_event_processed(dedup_key, entry["id"])
        logger.info(f"LEDGER_WELCOME_GRANT | org={organization_id} | amount={amount} | children={child_count}")
        return PurchaseResult(
            target_type=POOL_ORGANIZATION,
            target_id=organization_id,
            amount=amount,
            new_balance=new_balance,
            transaction_id=entry["id"],
        )
