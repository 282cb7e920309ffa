"""
Authorization guard for ledger entry points

Checked by the routes before any Allocator or parental-controls call.
"""

import logging
from typing import Dict, Any, List, Tuple

from .config import MANAGER_ROLES, TRAINER_ROLES
from .errors import NotFound, PermissionDenied
from .ledger_store import LedgerStore

logger = logging.getLogger(__name__)


async def require_org_role(
    store: LedgerStore,
    organization_id: str,
    user_id: str,
    roles: List[str],
) -> Dict[str, Any]:
    """
    Active membership of the caller with one of `roles`.

    Raises:
        PermissionDenied: not a member, or the wrong role
    """
    member = await store.get_member_by_user(organization_id, user_id)
    if not member or member.get("role") not in roles:
        logger.warning(f"AUTHZ_DENIED | org={organization_id} | user={user_id} | required={roles}")
        raise PermissionDenied()
    return member


async def can_manage_class(store: LedgerStore, class_id: str, user_id: str) -> bool:
    """Trainers of the class's organization manage the class."""
    klass = await store.get_class(class_id)
    if not klass:
        return False
    member = await store.get_member_by_user(klass["organization_id"], user_id)
    return bool(member) and member.get("role") in TRAINER_ROLES


async def can_transfer_credits(store: LedgerStore, organization_id: str, user_id: str) -> bool:
    """
    Owners and admins may always transfer. Training centers restrict it to
    owners; elsewhere members flagged can_manage_credits may too.
    """
    member = await store.get_member_by_user(organization_id, user_id)
    if not member:
        return False

    org = await store.get_organization(organization_id)
    if not org:
        return False

    role = member.get("role")
    if org.get("type") == "training_center":
        return role == "owner"
    if role in MANAGER_ROLES:
        return True
    return bool(member.get("can_manage_credits"))


async def require_can_transfer(store: LedgerStore, organization_id: str, user_id: str):
    if not await can_transfer_credits(store, organization_id, user_id):
        raise PermissionDenied("You do not have permission to transfer credits in this organization")


async def require_family_parent(
    store: LedgerStore,
    organization_id: str,
    user_id: str,
) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """
    Caller must be an owner/admin (parent) of a family organization.

    Returns:
        Tuple of (member, organization)
    """
    org = await store.get_organization(organization_id)
    if not org:
        raise NotFound("Organization not found")
    if org.get("type") != "family":
        raise PermissionDenied("Not a family organization")

    member = await require_org_role(store, organization_id, user_id, MANAGER_ROLES)
    return member, org
