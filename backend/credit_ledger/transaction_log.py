"""
Transaction Logger - Append-only ledger writes

Every balance-affecting operation appends exactly one row to
`organization_transactions` after its mutation succeeds.

CRITICAL: A balance change with no audit record is the failure this module
exists to prevent. Writes are retried with exponential backoff until they land.
The row id is fixed before the first attempt, so an attempt that landed but
reported an error is detected on retry through the unique id index.

There is deliberately no update or delete API.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

from pymongo.errors import DuplicateKeyError, PyMongoError

from .config import (
    LOG_MAX_ATTEMPTS,
    LOG_RETRY_BASE_DELAY,
    LOG_RETRY_MAX_DELAY,
    round_credits,
)
from .errors import DuplicateTransaction
from .models import LedgerTransaction

logger = logging.getLogger(__name__)


class TransactionLogger:
    """Writer and reader for the immutable transaction log."""

    def __init__(
        self,
        db,
        max_attempts: Optional[int] = LOG_MAX_ATTEMPTS,
        base_delay: float = LOG_RETRY_BASE_DELAY,
    ):
        self.db = db
        self.max_attempts = max_attempts
        self.base_delay = base_delay

    async def append(
        self,
        *,
        type: str,
        pool: str,
        pool_id: str,
        amount: float,
        description: str = "",
        organization_id: Optional[str] = None,
        member_id: Optional[str] = None,
        user_id: Optional[str] = None,
        counter_pool: Optional[str] = None,
        counter_pool_id: Optional[str] = None,
        dedup_key: Optional[str] = None,
        reverses: Optional[str] = None,
        request_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Append one immutable transaction.

        Args:
            type: purchase, grant, credit_allocated, usage, transfer, reversal, adjustment
            pool: Pool whose balance `amount` applies to (organization, member, personal)
            pool_id: Organization, member or user id of that pool
            amount: Signed amount from the pool's perspective (usage is negative)
            counter_pool: Optional second pool that receives -amount (transfers)
            dedup_key: Optional idempotency key, unique across the log

        Returns:
            The stored transaction document (without _id)

        Raises:
            DuplicateTransaction: dedup_key was already recorded
        """
        entry = LedgerTransaction(
            id=str(uuid.uuid4()),
            organization_id=organization_id,
            member_id=member_id,
            user_id=user_id,
            type=type,
            pool=pool,
            pool_id=pool_id,
            counter_pool=counter_pool,
            counter_pool_id=counter_pool_id,
            amount=round_credits(amount),
            description=description,
            dedup_key=dedup_key,
            reverses=reverses,
            request_id=request_id,
            details=details or {},
            created_at=datetime.now(timezone.utc).isoformat(),
        ).model_dump()

        # Sparse unique index: omit the key instead of storing null
        if entry["dedup_key"] is None:
            del entry["dedup_key"]

        await self._insert_with_retry(entry)
        entry.pop("_id", None)
        return entry

    async def _insert_with_retry(self, entry: Dict[str, Any]):
        attempt = 0
        while True:
            try:
                await self.db.organization_transactions.insert_one(dict(entry))
                if attempt:
                    logger.info(f"LEDGER_LOG_RECOVERED | id={entry['id']} | attempts={attempt + 1}")
                return
            except DuplicateKeyError as e:
                if await self._already_written(entry["id"]):
                    return
                logger.warning(f"Duplicate dedup_key on transaction: {entry.get('dedup_key')}")
                raise DuplicateTransaction(dedup_key=entry.get("dedup_key")) from e
            except PyMongoError as e:
                attempt += 1
                if self.max_attempts is not None and attempt >= self.max_attempts:
                    logger.critical(
                        f"LEDGER_LOG_FAILED | id={entry['id']} | type={entry['type']} | "
                        f"pool={entry['pool']}:{entry['pool_id']} | amount={entry['amount']} | error={e}"
                    )
                    raise
                wait_time = min(self.base_delay * (2 ** (attempt - 1)), LOG_RETRY_MAX_DELAY)
                logger.warning(
                    f"LEDGER_LOG_RETRY | id={entry['id']} | attempt={attempt} | "
                    f"wait={wait_time}s | error={e}"
                )
                await asyncio.sleep(wait_time)

    async def _already_written(self, transaction_id: str) -> bool:
        existing = await self.db.organization_transactions.find_one(
            {"id": transaction_id}, {"_id": 0, "id": 1}
        )
        return existing is not None

    # ==================== READS ====================

    async def get(self, transaction_id: str) -> Optional[Dict[str, Any]]:
        return await self.db.organization_transactions.find_one({"id": transaction_id}, {"_id": 0})

    async def find_by_dedup_key(self, dedup_key: str) -> Optional[Dict[str, Any]]:
        return await self.db.organization_transactions.find_one({"dedup_key": dedup_key}, {"_id": 0})

    async def list_for_user(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Recent transactions touching a user, newest first."""
        cursor = self.db.organization_transactions.find(
            {"user_id": user_id},
            {"_id": 0}
        ).sort("created_at", -1).limit(limit)
        return await cursor.to_list(length=limit)

    async def list_for_organization(
        self,
        organization_id: str,
        limit: int = 100,
        type: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"organization_id": organization_id}
        if type:
            query["type"] = type
        cursor = self.db.organization_transactions.find(query, {"_id": 0}).sort("created_at", -1).limit(limit)
        return await cursor.to_list(length=limit)

    async def sum_usage(
        self,
        since: datetime,
        user_id: Optional[str] = None,
        member_id: Optional[str] = None,
    ) -> float:
        """
        Total credits spent since `since` (positive number).

        Usage rows are negative; reversals of usage are netted out.
        """
        match: Dict[str, Any] = {
            "type": {"$in": ["usage", "reversal"]},
            "created_at": {"$gte": since.astimezone(timezone.utc).isoformat()},
        }
        if user_id:
            match["user_id"] = user_id
        if member_id:
            match["member_id"] = member_id

        pipeline = [
            {"$match": match},
            {"$group": {"_id": None, "total": {"$sum": "$amount"}}},
        ]
        result = await self.db.organization_transactions.aggregate(pipeline).to_list(1)
        total = result[0]["total"] if result else 0.0
        return round_credits(max(0.0, -total))
