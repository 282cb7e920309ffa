"""
Ledger Store - Organizations, members, profiles and ledger audits

Reads and lifecycle writes for the documents every other component uses.
Balance-changing writes live in the allocator, debiter and purchase service;
this module only creates rows, changes status and audits.

Audits:
- verify_invariants: credit_allocated <= credit_balance (orgs), credit_used <= credit_allocated (members)
- reconcile_*: the sum of transactions for a pool equals its balance minus its opening value
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple, Dict, Any, List, Callable

from .config import (
    CAS_MAX_RETRIES,
    CHILD_ROLE,
    EVENT_CLAIM_TIMEOUT_SECONDS,
    MANAGER_ROLES,
    ORG_STATUS_ACTIVE,
    POOL_MEMBER,
    POOL_ORGANIZATION,
    POOL_PERSONAL,
    round_credits,
)
from .errors import NotFound, PoolContention
from .models import Organization, OrganizationMember, Profile, PoolReconciliation, ReconciliationReport

logger = logging.getLogger(__name__)

# Float noise tolerated when comparing stored balances to ledger sums
RECONCILE_TOLERANCE = 1e-6


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def unallocated(org: Dict[str, Any]) -> float:
    """An organization's unallocated pool: credit_balance - credit_allocated."""
    return round_credits(org.get("credit_balance", 0) - org.get("credit_allocated", 0))


def member_remainder(member: Dict[str, Any]) -> float:
    """A member's remaining org credit: credit_allocated - credit_used."""
    return round_credits(member.get("credit_allocated", 0) - member.get("credit_used", 0))


class LedgerStore:
    """Access to ledger documents."""

    def __init__(self, db):
        self.db = db

    # ==================== CREATION (signup / invite time) ====================

    async def create_organization(
        self,
        name: str,
        org_type: str,
        opening_balance: float = 0.0,
        settings: Optional[Dict[str, Any]] = None,
        subscription: Optional[Dict[str, Any]] = None,
        organization_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        now = _now()
        org = Organization(
            id=organization_id or str(uuid.uuid4()),
            name=name,
            type=org_type,
            credit_balance=round_credits(opening_balance),
            settings=settings or {},
            subscription=subscription,
            created_at=now,
            updated_at=now,
        ).model_dump()
        org["opening_balance"] = org["credit_balance"]
        await self.db.organizations.insert_one(dict(org))
        logger.info(f"Created organization {org['id']} ({org_type})")
        return org

    async def create_profile(
        self,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
        opening_balance: float = 0.0,
        credit_preference: str = "auto",
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        now = _now()
        profile = Profile(
            id=user_id or str(uuid.uuid4()),
            email=email,
            display_name=display_name,
            credits_balance=round_credits(opening_balance),
            credit_preference=credit_preference,
            created_at=now,
            updated_at=now,
        ).model_dump()
        profile["opening_balance"] = profile["credits_balance"]
        await self.db.profiles.insert_one(dict(profile))
        return profile

    async def add_member(
        self,
        organization_id: str,
        user_id: str,
        role: str,
        class_id: Optional[str] = None,
        can_manage_credits: bool = False,
        supervision_mode: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create a membership with an empty allocation."""
        await self.require_organization(organization_id)
        now = _now()
        member = OrganizationMember(
            id=str(uuid.uuid4()),
            organization_id=organization_id,
            user_id=user_id,
            role=role,
            class_id=class_id,
            can_manage_credits=can_manage_credits,
            supervision_mode=supervision_mode,
            created_at=now,
            updated_at=now,
        ).model_dump()
        await self.db.organization_members.insert_one(dict(member))
        logger.info(f"Added {role} {user_id} to organization {organization_id}")
        return member

    async def create_class(self, organization_id: str, name: str) -> Dict[str, Any]:
        now = _now()
        doc = {
            "id": str(uuid.uuid4()),
            "organization_id": organization_id,
            "name": name,
            "settings": {},
            "created_at": now,
            "updated_at": now,
        }
        await self.db.organization_classes.insert_one(dict(doc))
        return doc

    # ==================== STATUS (soft delete only) ====================

    async def archive_member(self, member_id: str) -> bool:
        result = await self.db.organization_members.update_one(
            {"id": member_id},
            {"$set": {"status": "archived", "updated_at": _now()}}
        )
        return result.modified_count > 0

    async def set_organization_status(self, organization_id: str, status: str) -> bool:
        result = await self.db.organizations.update_one(
            {"id": organization_id},
            {"$set": {"status": status, "updated_at": _now()}}
        )
        return result.modified_count > 0

    async def set_credit_preference(self, user_id: str, preference: str) -> bool:
        result = await self.db.profiles.update_one(
            {"id": user_id},
            {"$set": {"credit_preference": preference, "updated_at": _now()}}
        )
        if result.matched_count == 0:
            raise NotFound(f"Profile not found: {user_id}")
        return True

    async def update_subscription(self, organization_id: str, subscription: Dict[str, Any]) -> bool:
        result = await self.db.organizations.update_one(
            {"id": organization_id},
            {"$set": {"subscription": subscription, "updated_at": _now()}}
        )
        return result.matched_count > 0

    # ==================== CONDITIONAL WRITES ====================

    async def compare_and_set(
        self,
        collection_name: str,
        doc_id: str,
        watched: List[str],
        compute: Callable[[Dict[str, Any]], Dict[str, Any]],
        operation: str,
        max_retries: int = CAS_MAX_RETRIES,
        extra_filter: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """
        Read a document, compute new counter values, write them only if the
        watched fields still hold the values that were read.

        Args:
            collection_name: organizations, organization_members or profiles
            doc_id: Document id
            watched: Fields that must be unchanged for the write to apply
            compute: Returns the fields to $set; raises to abort (e.g. InsufficientCredit)
            operation: Name used in contention logs

        Returns:
            Tuple of (document as read, fields written)

        Raises:
            NotFound: no such document
            PoolContention: every attempt lost to a concurrent writer
        """
        collection = self.db[collection_name]
        for attempt in range(1, max_retries + 1):
            doc = await collection.find_one({"id": doc_id, **(extra_filter or {})}, {"_id": 0})
            if not doc:
                raise NotFound(f"{collection_name} document not found: {doc_id}")

            changes = compute(doc)
            query = {"id": doc_id, **(extra_filter or {}), **{field: doc.get(field) for field in watched}}
            result = await collection.update_one(
                query,
                {"$set": {**changes, "updated_at": _now()}}
            )
            if result.modified_count > 0:
                return doc, changes

            logger.warning(
                f"LEDGER_CAS_RETRY | operation={operation} | {collection_name}={doc_id} | attempt={attempt}"
            )

        logger.error(f"LEDGER_CAS_EXHAUSTED | operation={operation} | {collection_name}={doc_id}")
        raise PoolContention(operation=operation)

    async def claim_event(self, payment_id: str, details: Optional[Dict[str, Any]] = None) -> bool:
        """
        Record an external event id before acting on it.

        Returns:
            True if this call stored it first, False if it was already known
        """
        now = _now()
        result = await self.db.payment_events.update_one(
            {"payment_id": payment_id},
            {"$setOnInsert": {
                "payment_id": payment_id,
                "processed": False,
                "details": details or {},
                "created_at": now,
                "claimed_at": now,
            }},
            upsert=True
        )
        return result.upserted_id is not None

    async def reclaim_event(self, payment_id: str, stale_after: float = EVENT_CLAIM_TIMEOUT_SECONDS) -> bool:
        """
        Take over an unprocessed claim whose delivery stopped before finishing.

        Only a claim older than `stale_after` seconds can be taken over, so a
        delivery that is still in flight keeps it.

        Returns:
            True if this call now holds the claim
        """
        now = datetime.now(timezone.utc)
        cutoff = (now - timedelta(seconds=stale_after)).isoformat()
        result = await self.db.payment_events.update_one(
            {"payment_id": payment_id, "processed": False, "claimed_at": {"$lte": cutoff}},
            {"$set": {"claimed_at": now.isoformat()}, "$inc": {"attempts": 1}}
        )
        return result.modified_count == 1

    async def settle_logged_event(self, payment_id: str, dedup_key: str) -> Optional[Dict[str, Any]]:
        """
        Ledger row already written for a claimed event, if any.

        A delivery that logged its row but stopped before marking the event
        leaves it unprocessed; it is marked here.
        """
        entry = await self.db.organization_transactions.find_one({"dedup_key": dedup_key}, {"_id": 0})
        if entry:
            event = await self.get_event(payment_id)
            if event and not event.get("processed"):
                await self.mark_event_processed(payment_id, entry["id"])
        return entry

    async def mark_event_processed(self, payment_id: str, transaction_id: Optional[str] = None):
        await self.db.payment_events.update_one(
            {"payment_id": payment_id},
            {"$set": {
                "processed": True,
                "transaction_id": transaction_id,
                "processed_at": _now(),
            }}
        )

    async def get_event(self, payment_id: str) -> Optional[Dict[str, Any]]:
        return await self.db.payment_events.find_one({"payment_id": payment_id}, {"_id": 0})

    # ==================== LOOKUPS ====================

    async def get_organization(self, organization_id: str) -> Optional[Dict[str, Any]]:
        return await self.db.organizations.find_one({"id": organization_id}, {"_id": 0})

    async def require_organization(self, organization_id: str) -> Dict[str, Any]:
        org = await self.get_organization(organization_id)
        if not org:
            raise NotFound(f"Organization not found: {organization_id}")
        return org

    async def get_member(self, member_id: str) -> Optional[Dict[str, Any]]:
        return await self.db.organization_members.find_one({"id": member_id}, {"_id": 0})

    async def get_member_by_user(self, organization_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        return await self.db.organization_members.find_one(
            {"organization_id": organization_id, "user_id": user_id, "status": "active"},
            {"_id": 0}
        )

    async def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        return await self.db.profiles.find_one({"id": user_id}, {"_id": 0})

    async def require_profile(self, user_id: str) -> Dict[str, Any]:
        profile = await self.get_profile(user_id)
        if not profile:
            raise NotFound(f"Profile not found: {user_id}")
        return profile

    async def get_class(self, class_id: str) -> Optional[Dict[str, Any]]:
        return await self.db.organization_classes.find_one({"id": class_id}, {"_id": 0})

    async def get_active_membership(
        self,
        user_id: str,
        organization_id: Optional[str] = None,
    ) -> Tuple[Optional[Dict[str, Any]], Optional[Dict[str, Any]]]:
        """
        Find the user's active membership in an active organization.

        Returns:
            Tuple of (member, organization), or (None, None)
        """
        query: Dict[str, Any] = {"user_id": user_id, "status": "active"}
        if organization_id:
            query["organization_id"] = organization_id

        members = await self.db.organization_members.find(query, {"_id": 0}).sort(
            "created_at", -1
        ).to_list(length=20)

        for member in members:
            org = await self.get_organization(member["organization_id"])
            if org and org.get("status", ORG_STATUS_ACTIVE) == ORG_STATUS_ACTIVE:
                return member, org
        return None, None

    async def get_family_child_membership(
        self, user_id: str
    ) -> Tuple[Optional[Dict[str, Any]], Optional[Dict[str, Any]]]:
        """The user's active child membership in a family organization, if any."""
        members = await self.db.organization_members.find(
            {"user_id": user_id, "status": "active", "role": CHILD_ROLE},
            {"_id": 0}
        ).to_list(length=20)
        for member in members:
            org = await self.get_organization(member["organization_id"])
            if org and org.get("type") == "family":
                return member, org
        return None, None

    async def list_class_students(self, class_id: str) -> List[Dict[str, Any]]:
        return await self.db.organization_members.find(
            {"class_id": class_id, "role": "student", "status": "active"},
            {"_id": 0}
        ).sort("created_at", 1).to_list(length=None)

    async def list_managers(self, organization_id: str) -> List[Dict[str, Any]]:
        """Owners and admins (parents, for a family)."""
        return await self.db.organization_members.find(
            {"organization_id": organization_id, "role": {"$in": MANAGER_ROLES}, "status": "active"},
            {"_id": 0}
        ).to_list(length=None)

    async def list_members(self, organization_id: str) -> List[Dict[str, Any]]:
        return await self.db.organization_members.find(
            {"organization_id": organization_id},
            {"_id": 0}
        ).to_list(length=None)

    # ==================== AUDITS ====================

    async def verify_invariants(self, organization_id: str) -> List[str]:
        """Return human-readable counter invariant violations for one organization."""
        org = await self.require_organization(organization_id)
        violations = []

        if round_credits(org.get("credit_allocated", 0)) > round_credits(org.get("credit_balance", 0)):
            violations.append(
                f"organization {organization_id}: credit_allocated {org.get('credit_allocated')} "
                f"> credit_balance {org.get('credit_balance')}"
            )
        if round_credits(org.get("credit_allocated", 0)) < 0:
            violations.append(f"organization {organization_id}: negative credit_allocated")

        for member in await self.list_members(organization_id):
            if round_credits(member.get("credit_used", 0)) > round_credits(member.get("credit_allocated", 0)):
                violations.append(
                    f"member {member['id']}: credit_used {member.get('credit_used')} "
                    f"> credit_allocated {member.get('credit_allocated')}"
                )

        for violation in violations:
            logger.critical(f"LEDGER_INVARIANT_VIOLATION | {violation}")
        return violations

    async def ledger_balance(self, pool: str, pool_id: str) -> float:
        """Net effect of every transaction on one pool."""
        direct = await self._sum_amount({"pool": pool, "pool_id": pool_id})
        countered = await self._sum_amount({"counter_pool": pool, "counter_pool_id": pool_id})
        return round_credits(direct - countered)

    async def _sum_amount(self, match: Dict[str, Any]) -> float:
        pipeline = [
            {"$match": match},
            {"$group": {"_id": None, "total": {"$sum": "$amount"}}},
        ]
        result = await self.db.organization_transactions.aggregate(pipeline).to_list(1)
        return result[0]["total"] if result else 0.0

    def _compare(self, pool: str, pool_id: str, stored: float, initial: float, ledger: float) -> PoolReconciliation:
        return PoolReconciliation(
            pool=pool,
            pool_id=pool_id,
            stored_balance=round_credits(stored),
            ledger_balance=round_credits(ledger),
            initial_balance=round_credits(initial),
            consistent=abs((stored - initial) - ledger) <= RECONCILE_TOLERANCE,
        )

    async def reconcile_personal(self, user_id: str) -> PoolReconciliation:
        profile = await self.require_profile(user_id)
        ledger = await self.ledger_balance(POOL_PERSONAL, user_id)
        return self._compare(
            POOL_PERSONAL,
            user_id,
            profile.get("credits_balance", 0),
            profile.get("opening_balance", 0),
            ledger,
        )

    async def reconcile_member(self, member: Dict[str, Any]) -> List[PoolReconciliation]:
        """Check both the remainder and the allocation counter of one member."""
        member_id = member["id"]
        remainder_ledger = await self.ledger_balance(POOL_MEMBER, member_id)
        allocated_ledger = await self._sum_amount(
            {"pool": POOL_MEMBER, "pool_id": member_id, "type": "credit_allocated"}
        )
        return [
            self._compare(POOL_MEMBER, member_id, member_remainder(member), 0.0, remainder_ledger),
            self._compare(
                POOL_MEMBER,
                f"{member_id}:allocated",
                member.get("credit_allocated", 0),
                0.0,
                allocated_ledger,
            ),
        ]

    async def reconcile_organization(self, organization_id: str) -> ReconciliationReport:
        """
        Reconcile an organization's balance, its allocation counter and every member.

        Returns:
            ReconciliationReport with one entry per checked pool
        """
        org = await self.require_organization(organization_id)
        pools: List[PoolReconciliation] = []

        balance_ledger = await self.ledger_balance(POOL_ORGANIZATION, organization_id)
        pools.append(self._compare(
            POOL_ORGANIZATION,
            organization_id,
            org.get("credit_balance", 0),
            org.get("opening_balance", 0),
            balance_ledger,
        ))

        allocated_ledger = await self._sum_amount(
            {"organization_id": organization_id, "pool": POOL_MEMBER, "type": "credit_allocated"}
        )
        pools.append(self._compare(
            POOL_ORGANIZATION,
            f"{organization_id}:allocated",
            org.get("credit_allocated", 0),
            0.0,
            allocated_ledger,
        ))

        for member in await self.list_members(organization_id):
            pools.extend(await self.reconcile_member(member))

        violations = await self.verify_invariants(organization_id)
        consistent = all(p.consistent for p in pools) and not violations

        if not consistent:
            mismatched = [f"{p.pool}:{p.pool_id}" for p in pools if not p.consistent]
            logger.critical(
                f"LEDGER_RECONCILE_MISMATCH | organization={organization_id} | pools={mismatched}"
            )

        return ReconciliationReport(
            organization_id=organization_id,
            consistent=consistent,
            pools=pools,
            invariant_violations=violations,
        )
