"""
Allocator - Moves credit out of an organization's unallocated pool

Operations:
- allocate:          org pool -> one member's allocation
- bulk_allocate:     org pool -> every active student of a class, all-or-nothing reservation
- transfer:          family org pool -> a child's personal wallet
- transfer_personal: personal wallet <-> organization balance

Every write is conditional. When a second write fails after the first landed,
the first is compensated and LedgerInconsistency is raised; no transaction
row is written for a change that did not stick.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Tuple

from pymongo.errors import PyMongoError

from .config import (
    CAS_MAX_RETRIES,
    CHILD_ROLE,
    MANAGER_ROLES,
    ORG_STATUS_ACTIVE,
    POOL_MEMBER,
    POOL_ORGANIZATION,
    POOL_PERSONAL,
    round_credits,
)
from .errors import (
    EmptyClass,
    InsufficientOrgPool,
    InsufficientPersonalCredit,
    InvalidAmount,
    LedgerError,
    LedgerInconsistency,
    NotFound,
    OrganizationInactive,
    PermissionDenied,
)
from .ledger_store import LedgerStore, unallocated
from .locks import PoolLocks, get_pool_locks, pool_key
from .models import (
    AllocationResult,
    BulkAllocationFailure,
    BulkAllocationResult,
    PersonalTransferResult,
    TransferResult,
)
from .transaction_log import TransactionLogger

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _require_positive(amount: float) -> float:
    amount = round_credits(amount)
    if amount <= 0:
        raise InvalidAmount()
    return amount


def _failure_code(error: Exception) -> str:
    if isinstance(error, LedgerError):
        return error.code
    return type(error).__name__


class Allocator:
    """Organization pool distribution."""

    def __init__(
        self,
        db,
        store: Optional[LedgerStore] = None,
        transactions: Optional[TransactionLogger] = None,
        locks: Optional[PoolLocks] = None,
        max_retries: int = CAS_MAX_RETRIES,
    ):
        self.db = db
        self.store = store or LedgerStore(db)
        self.transactions = transactions or TransactionLogger(db)
        self.locks = locks or get_pool_locks()
        self.max_retries = max_retries

    async def _require_active_org(self, organization_id: str) -> Dict[str, Any]:
        org = await self.store.require_organization(organization_id)
        if org.get("status", ORG_STATUS_ACTIVE) != ORG_STATUS_ACTIVE:
            raise OrganizationInactive()
        return org

    # ==================== ORG COUNTER HELPERS ====================

    async def _reserve_allocation(self, organization_id: str, amount: float) -> Dict[str, Any]:
        """credit_allocated += amount, only while the unallocated pool covers it."""
        def reserve(org: Dict[str, Any]) -> Dict[str, Any]:
            available = unallocated(org)
            if available < amount:
                raise InsufficientOrgPool(available=available, requested=amount)
            return {"credit_allocated": round_credits(org.get("credit_allocated", 0) + amount)}

        before, _ = await self.store.compare_and_set(
            "organizations",
            organization_id,
            ["credit_balance", "credit_allocated"],
            reserve,
            operation="reserve_allocation",
            max_retries=self.max_retries,
            extra_filter={"status": ORG_STATUS_ACTIVE},
        )
        return before

    async def _release_allocation(self, organization_id: str, amount: float, operation: str):
        def release(org: Dict[str, Any]) -> Dict[str, Any]:
            allocated = round_credits(org.get("credit_allocated", 0) - amount)
            if allocated < 0:
                raise LedgerInconsistency(
                    operation, "credit_allocated would go negative",
                    organization_id=organization_id, amount=amount,
                )
            return {"credit_allocated": allocated}

        await self.store.compare_and_set(
            "organizations",
            organization_id,
            ["credit_allocated"],
            release,
            operation=f"{operation}_release",
            max_retries=self.max_retries,
        )

    async def _change_org_balance(self, organization_id: str, delta: float, operation: str) -> Dict[str, Any]:
        """credit_balance += delta; a withdrawal must leave credit_allocated covered."""
        def change(org: Dict[str, Any]) -> Dict[str, Any]:
            if delta < 0:
                available = unallocated(org)
                if available < -delta:
                    raise InsufficientOrgPool(available=available, requested=-delta)
            return {"credit_balance": round_credits(org.get("credit_balance", 0) + delta)}

        before, changes = await self.store.compare_and_set(
            "organizations",
            organization_id,
            ["credit_balance", "credit_allocated"],
            change,
            operation=operation,
            max_retries=self.max_retries,
        )
        return {**before, **changes}

    async def _credit_member(self, member_id: str, amount: float) -> Dict[str, Any]:
        def add(member: Dict[str, Any]) -> Dict[str, Any]:
            return {"credit_allocated": round_credits(member.get("credit_allocated", 0) + amount)}

        before, changes = await self.store.compare_and_set(
            "organization_members",
            member_id,
            ["credit_allocated"],
            add,
            operation="credit_member",
            max_retries=self.max_retries,
            extra_filter={"status": "active"},
        )
        return {**before, **changes}

    async def _change_personal(self, user_id: str, delta: float, received: float = 0.0) -> Dict[str, Any]:
        """credits_balance += delta (conditional on funds for a withdrawal)."""
        query: Dict[str, Any] = {"id": user_id}
        if delta < 0:
            query["credits_balance"] = {"$gte": -delta}

        inc = {"credits_balance": delta}
        if received:
            inc["credits_allocated"] = received

        result = await self.db.profiles.update_one(query, {"$inc": inc, "$set": {"updated_at": _now()}})
        if result.modified_count == 0:
            profile = await self.store.require_profile(user_id)
            raise InsufficientPersonalCredit(
                available=round_credits(profile.get("credits_balance", 0)),
                requested=round_credits(-delta),
            )
        return await self.store.get_profile(user_id)

    async def _compensate(self, undo, operation: str, detail: str, error: Exception, **context) -> LedgerInconsistency:
        """
        Undo the first write of a two-write operation whose second write failed.

        Args:
            undo: Un-awaited coroutine reversing the first write
            error: Failure of the second write

        Returns:
            The LedgerInconsistency for the caller to raise
        """
        detail = f"{detail}: {_failure_code(error)}"
        try:
            await undo
        except (LedgerError, PyMongoError) as undo_error:
            detail = f"{detail}; compensation failed: {_failure_code(undo_error)}"
        return LedgerInconsistency(operation, detail, **context)

    # ==================== ALLOCATE ====================

    async def allocate(
        self,
        organization_id: str,
        member_id: str,
        amount: float,
        allocated_by: Optional[str] = None,
    ) -> AllocationResult:
        """
        Add credit to a member's allocation from the unallocated pool.

        Raises:
            InvalidAmount: amount <= 0
            InsufficientOrgPool: unallocated pool < amount (nothing changed)
            LedgerInconsistency: member update failed after the org reservation
        """
        amount = _require_positive(amount)
        await self._require_active_org(organization_id)

        member = await self.store.get_member(member_id)
        if not member or member.get("organization_id") != organization_id or member.get("status") != "active":
            raise NotFound(f"Member not found: {member_id}")

        async with self.locks.hold(
            pool_key(POOL_ORGANIZATION, organization_id),
            pool_key(POOL_MEMBER, member_id),
        ):
            await self._reserve_allocation(organization_id, amount)
            try:
                updated = await self._credit_member(member_id, amount)
            except (LedgerError, PyMongoError) as e:
                raise await self._compensate(
                    self._release_allocation(organization_id, amount, "allocate"),
                    "allocate", "member update failed after reservation", e,
                    organization_id=organization_id, member_id=member_id, amount=amount,
                ) from e

            entry = await self.transactions.append(
                type="credit_allocated",
                pool=POOL_MEMBER,
                pool_id=member_id,
                amount=amount,
                description="Credit allocation",
                organization_id=organization_id,
                member_id=member_id,
                user_id=member["user_id"],
                details={"allocated_by": allocated_by} if allocated_by else None,
            )

        previous = round_credits(updated["credit_allocated"] - amount)
        logger.info(
            f"LEDGER_ALLOCATE | org={organization_id} | member={member_id} | amount={amount} | "
            f"allocation={updated['credit_allocated']}"
        )
        return AllocationResult(
            member_id=member_id,
            previous_allocation=previous,
            new_allocation=updated["credit_allocated"],
            amount_added=amount,
            transaction_id=entry["id"],
        )

    async def bulk_allocate(
        self,
        organization_id: str,
        class_id: str,
        amount_per_student: float,
        update_default: bool = False,
        allocated_by: Optional[str] = None,
    ) -> BulkAllocationResult:
        """
        Allocate the same amount to every active student of a class.

        The batch total is reserved in one conditional update. Students whose
        update fails are listed in `failed`; whatever part of the reservation
        was not credited to a student is released, even when the loop aborts.

        Raises:
            InsufficientOrgPool: unallocated < amount_per_student * students (nothing changed)
            EmptyClass: the class has no active students
        """
        amount = _require_positive(amount_per_student)
        await self._require_active_org(organization_id)

        klass = await self.store.get_class(class_id)
        if not klass or klass.get("organization_id") != organization_id:
            raise NotFound(f"Class not found: {class_id}")

        students = [
            s for s in await self.store.list_class_students(class_id)
            if s.get("organization_id") == organization_id
        ]
        if not students:
            raise EmptyClass()

        total = round_credits(amount * len(students))
        result = BulkAllocationResult(class_id=class_id, amount_per_student=amount)
        credited = 0.0

        keys = [pool_key(POOL_ORGANIZATION, organization_id)]
        keys.extend(pool_key(POOL_MEMBER, s["id"]) for s in students)

        async with self.locks.hold(*keys):
            await self._reserve_allocation(organization_id, total)

            try:
                for student in students:
                    try:
                        await self._credit_member(student["id"], amount)
                    except (LedgerError, PyMongoError) as e:
                        reason = _failure_code(e)
                        logger.warning(
                            f"LEDGER_BULK_SKIP | org={organization_id} | member={student['id']} | reason={reason}"
                        )
                        result.failed.append(BulkAllocationFailure(
                            member_id=student["id"],
                            user_id=student.get("user_id"),
                            reason=reason,
                        ))
                        continue

                    credited = round_credits(credited + amount)
                    await self.transactions.append(
                        type="credit_allocated",
                        pool=POOL_MEMBER,
                        pool_id=student["id"],
                        amount=amount,
                        description="Class credit allocation",
                        organization_id=organization_id,
                        member_id=student["id"],
                        user_id=student["user_id"],
                        details={"class_id": class_id, "allocated_by": allocated_by},
                    )
                    result.succeeded.append(student["id"])
            finally:
                unused = round_credits(total - credited)
                if unused:
                    await self._release_allocation(organization_id, unused, "bulk_allocate")

        if update_default:
            await self.db.organization_classes.update_one(
                {"id": class_id},
                {"$set": {"settings.default_credit_per_student": amount, "updated_at": _now()}}
            )

        result.total_allocated = round_credits(amount * len(result.succeeded))
        result.success = not result.failed
        logger.info(
            f"LEDGER_BULK_ALLOCATE | org={organization_id} | class={class_id} | "
            f"succeeded={len(result.succeeded)} | failed={len(result.failed)} | total={result.total_allocated}"
        )
        return result

    # ==================== FAMILY TRANSFER ====================

    async def _require_child(self, organization_id: str, child_user_id: str) -> Dict[str, Any]:
        child = await self.store.get_member_by_user(organization_id, child_user_id)
        if not child or child.get("role") != CHILD_ROLE:
            raise NotFound(f"Child not found in this family: {child_user_id}")
        return child

    async def transfer(
        self,
        organization_id: str,
        child_user_id: str,
        amount: float,
        parent_user_id: Optional[str] = None,
        note: Optional[str] = None,
    ) -> TransferResult:
        """
        Move family pool credit into a child's personal wallet.

        After the transfer the parent's personal balance is re-synced to the
        family's new unallocated total (audited as an adjustment).

        Raises:
            InsufficientOrgPool: unallocated pool < amount (nothing changed)
            LedgerInconsistency: child credit failed after the org debit
        """
        amount = _require_positive(amount)
        org = await self._require_active_org(organization_id)
        if org.get("type") != "family":
            raise PermissionDenied("Transfers to personal wallets are only available in family organizations")

        child = await self._require_child(organization_id, child_user_id)
        await self.store.require_profile(child_user_id)

        keys = [pool_key(POOL_ORGANIZATION, organization_id), pool_key(POOL_PERSONAL, child_user_id)]
        if parent_user_id:
            keys.append(pool_key(POOL_PERSONAL, parent_user_id))

        async with self.locks.hold(*keys):
            org_after = await self._change_org_balance(organization_id, -amount, "family_transfer")
            try:
                child_profile = await self._change_personal(child_user_id, amount, received=amount)
            except (LedgerError, PyMongoError) as e:
                raise await self._compensate(
                    self._change_org_balance(organization_id, amount, "family_transfer_compensate"),
                    "family_transfer", "child credit failed after org debit", e,
                    organization_id=organization_id, child_user_id=child_user_id, amount=amount,
                ) from e

            entry = await self.transactions.append(
                type="transfer",
                pool=POOL_ORGANIZATION,
                pool_id=organization_id,
                amount=-amount,
                counter_pool=POOL_PERSONAL,
                counter_pool_id=child_user_id,
                description=note or "Family transfer",
                organization_id=organization_id,
                member_id=child["id"],
                user_id=child_user_id,
                details={"parent_user_id": parent_user_id} if parent_user_id else None,
            )

            org_unallocated = unallocated(org_after)
            if parent_user_id:
                try:
                    await self.sync_parent_balance(organization_id, parent_user_id, org_unallocated)
                except LedgerError as e:
                    # The transfer itself is complete and logged
                    logger.error(
                        f"LEDGER_PARENT_SYNC_FAILED | org={organization_id} | parent={parent_user_id} | error={e.code}"
                    )

        logger.info(
            f"LEDGER_FAMILY_TRANSFER | org={organization_id} | child={child_user_id} | "
            f"amount={amount} | unallocated={org_unallocated}"
        )
        return TransferResult(
            child_user_id=child_user_id,
            amount=amount,
            child_balance=round_credits(child_profile.get("credits_balance", 0)),
            org_unallocated=org_unallocated,
            transaction_id=entry["id"],
        )

    async def sync_parent_balance(self, organization_id: str, parent_user_id: str, org_unallocated: float):
        """Mirror the family's unallocated pool onto the parent's personal balance."""
        parent = await self.store.get_member_by_user(organization_id, parent_user_id)
        if not parent or parent.get("role") not in MANAGER_ROLES:
            return

        def mirror(profile: Dict[str, Any]) -> Dict[str, Any]:
            return {"credits_balance": org_unallocated}

        before, _ = await self.store.compare_and_set(
            "profiles", parent_user_id, ["credits_balance"], mirror,
            operation="family_parent_sync", max_retries=self.max_retries,
        )
        delta = round_credits(org_unallocated - before.get("credits_balance", 0))
        if delta:
            await self.transactions.append(
                type="adjustment",
                pool=POOL_PERSONAL,
                pool_id=parent_user_id,
                amount=delta,
                description="Family pool balance sync",
                organization_id=organization_id,
                member_id=parent["id"],
                user_id=parent_user_id,
                details={"reason": "family_pool_sync", "org_unallocated": org_unallocated},
            )

    async def transfer_many(
        self,
        organization_id: str,
        transfers: List[Tuple[str, float]],
        parent_user_id: Optional[str] = None,
    ) -> List[TransferResult]:
        """
        Several family transfers, validated together before any is applied.

        The up-front pool check is advisory; each transfer is then applied on
        its own under the pool locks. If one fails, the ones before it stay
        committed: they are logged and attached to the raised LedgerError as
        `details["completed"]`.

        Args:
            transfers: (child_user_id, amount) pairs
        """
        if not transfers:
            raise InvalidAmount("No transfers given")

        org = await self._require_active_org(organization_id)
        total = 0.0
        for child_user_id, amount in transfers:
            total += _require_positive(amount)
            await self._require_child(organization_id, child_user_id)

        total = round_credits(total)
        available = unallocated(org)
        if available < total:
            raise InsufficientOrgPool(available=available, requested=total)

        results = []
        for child_user_id, amount in transfers:
            try:
                results.append(await self.transfer(organization_id, child_user_id, amount, parent_user_id))
            except (LedgerError, PyMongoError) as e:
                if results:
                    logger.error(
                        f"LEDGER_FAMILY_TRANSFER_PARTIAL | org={organization_id} | completed={len(results)} | "
                        f"failed_child={child_user_id} | error={_failure_code(e)}"
                    )
                    if isinstance(e, LedgerError):
                        e.details["completed"] = [r.model_dump() for r in results]
                raise
        return results

    # ==================== PERSONAL <-> ORGANIZATION ====================

    async def transfer_personal(
        self,
        user_id: str,
        organization_id: str,
        direction: str,
        amount: float,
        note: Optional[str] = None,
    ) -> PersonalTransferResult:
        """
        Move credit between a member's wallet and the organization balance.

        Args:
            direction: "to_org" (wallet -> org) or "to_personal" (unallocated org -> wallet)
        """
        amount = _require_positive(amount)
        if direction not in ("to_org", "to_personal"):
            raise InvalidAmount(f"Unknown direction: {direction}")

        await self._require_active_org(organization_id)
        member = await self.store.get_member_by_user(organization_id, user_id)
        if not member:
            raise NotFound("You are not a member of this organization")

        async with self.locks.hold(
            pool_key(POOL_ORGANIZATION, organization_id),
            pool_key(POOL_PERSONAL, user_id),
        ):
            if direction == "to_org":
                profile = await self._change_personal(user_id, -amount)
                try:
                    org_after = await self._change_org_balance(organization_id, amount, "personal_to_org")
                except (LedgerError, PyMongoError) as e:
                    raise await self._compensate(
                        self._change_personal(user_id, amount),
                        "personal_to_org", "org credit failed after wallet debit", e,
                        organization_id=organization_id, user_id=user_id, amount=amount,
                    ) from e
                org_amount = amount
            else:
                org_after = await self._change_org_balance(organization_id, -amount, "org_to_personal")
                try:
                    profile = await self._change_personal(user_id, amount)
                except (LedgerError, PyMongoError) as e:
                    raise await self._compensate(
                        self._change_org_balance(organization_id, amount, "org_to_personal_compensate"),
                        "org_to_personal", "wallet credit failed after org debit", e,
                        organization_id=organization_id, user_id=user_id, amount=amount,
                    ) from e
                org_amount = -amount

            entry = await self.transactions.append(
                type="transfer",
                pool=POOL_ORGANIZATION,
                pool_id=organization_id,
                amount=org_amount,
                counter_pool=POOL_PERSONAL,
                counter_pool_id=user_id,
                description=note or ("Transfer to organization" if direction == "to_org" else "Transfer to personal"),
                organization_id=organization_id,
                member_id=member["id"],
                user_id=user_id,
                details={"direction": direction},
            )

        logger.info(
            f"LEDGER_PERSONAL_TRANSFER | org={organization_id} | user={user_id} | "
            f"direction={direction} | amount={amount}"
        )
        return PersonalTransferResult(
            direction=direction,
            transferred=amount,
            personal_balance=round_credits(profile.get("credits_balance", 0)),
            org_balance=round_credits(org_after.get("credit_balance", 0)),
            org_available=unallocated(org_after),
            transaction_id=entry["id"],
        )
