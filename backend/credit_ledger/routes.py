"""
Credit Ledger API Routes

Endpoints (mounted under /api):
- GET  /credits                                        - Balances, active pool and limits
- GET  /credits/history                                - Caller's transactions
- PUT  /credits/preference                             - Change credit preference
- POST /organizations/{org_id}/members/{member_id}/allocate
- POST /organizations/{org_id}/classes/{class_id}/allocate
- POST /organizations/{org_id}/credits/transfer        - Personal <-> organization
- GET  /organizations/{org_id}/transactions            - Organization ledger history
- POST /organizations/{org_id}/family/transfer         - Family pool -> children
- GET  /organizations/{org_id}/family/children         - Children with controls
- GET  /organizations/{org_id}/family/children/{child_user_id}/controls
- PUT  /organizations/{org_id}/family/children/{child_user_id}/controls
- POST /family/request-credits                         - Child asks parents for credits
- POST /webhooks/stripe                                - Stripe webhook
- GET  /admin/organizations/{org_id}/reconcile         - Ledger audit
- POST /admin/transactions/{transaction_id}/refund     - Reverse a usage debit
- PUT  /admin/pricing/markup                           - New markup version
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Query

from database import get_db
from utils.auth import get_current_user, get_admin_user

from .allocator import Allocator
from .authz import can_manage_class, require_can_transfer, require_family_parent, require_org_role
from .config import TRAINER_ROLES
from .debiter import UsageDebiter
from .errors import LedgerError, NotFound, PermissionDenied
from .ledger_store import LedgerStore
from .models import (
    AllocateRequest,
    BulkAllocateRequest,
    CreditPreferenceRequest,
    FamilyTransferRequest,
    MarkupUpdateRequest,
    ParentalControlsUpdate,
    PersonalTransferRequest,
)
from .notifier import ParentNotifier
from .parental_controls import ParentalControlsService
from .pricing import PricingRepository
from .resolver import CreditResolver
from .stripe_webhook import StripeWebhookHandler
from .transaction_log import TransactionLogger

logger = logging.getLogger(__name__)

ledger_router = APIRouter(tags=["Credit Ledger"])


def ledger_http_error(error: LedgerError) -> HTTPException:
    """Typed ledger failure -> HTTP error with a {error_code, message, ...} body."""
    return HTTPException(status_code=error.http_status, detail=error.to_dict())


# ==================== CREDITS ====================

@ledger_router.get("/credits")
async def get_credits(user: dict = Depends(get_current_user), db=Depends(get_db)):
    """Personal and organization balances, the pool that pays next and limit usage."""
    try:
        summary = await CreditResolver(db).summary(user["id"])
    except LedgerError as e:
        raise ledger_http_error(e)
    return {"success": True, **summary.model_dump()}


@ledger_router.get("/credits/history")
async def get_history(
    limit: int = Query(50, ge=1, le=200),
    user: dict = Depends(get_current_user),
    db=Depends(get_db),
):
    entries = await TransactionLogger(db).list_for_user(user["id"], limit)
    return {"success": True, "entries": entries, "count": len(entries)}


@ledger_router.put("/credits/preference")
async def update_preference(
    request: CreditPreferenceRequest,
    user: dict = Depends(get_current_user),
    db=Depends(get_db),
):
    try:
        await LedgerStore(db).set_credit_preference(user["id"], request.credit_preference)
    except LedgerError as e:
        raise ledger_http_error(e)
    return {"success": True, "credit_preference": request.credit_preference}


# ==================== ALLOCATION ====================

@ledger_router.post("/organizations/{org_id}/members/{member_id}/allocate")
async def allocate_member_credits(
    org_id: str,
    member_id: str,
    request: AllocateRequest,
    user: dict = Depends(get_current_user),
    db=Depends(get_db),
):
    store = LedgerStore(db)
    try:
        await require_can_transfer(store, org_id, user["id"])
        result = await Allocator(db, store=store).allocate(org_id, member_id, request.amount, allocated_by=user["id"])
    except LedgerError as e:
        raise ledger_http_error(e)
    return result.model_dump()


@ledger_router.post("/organizations/{org_id}/classes/{class_id}/allocate")
async def allocate_class_credits(
    org_id: str,
    class_id: str,
    request: BulkAllocateRequest,
    user: dict = Depends(get_current_user),
    db=Depends(get_db),
):
    store = LedgerStore(db)
    try:
        if not await can_manage_class(store, class_id, user["id"]):
            raise PermissionDenied()
        result = await Allocator(db, store=store).bulk_allocate(
            org_id,
            class_id,
            request.amount_per_student,
            update_default=request.update_default,
            allocated_by=user["id"],
        )
    except LedgerError as e:
        raise ledger_http_error(e)
    return result.model_dump()


@ledger_router.post("/organizations/{org_id}/credits/transfer")
async def transfer_personal_credits(
    org_id: str,
    request: PersonalTransferRequest,
    user: dict = Depends(get_current_user),
    db=Depends(get_db),
):
    store = LedgerStore(db)
    try:
        await require_can_transfer(store, org_id, user["id"])
        result = await Allocator(db, store=store).transfer_personal(
            user["id"], org_id, request.direction, request.amount, request.note
        )
    except LedgerError as e:
        raise ledger_http_error(e)
    return result.model_dump()


@ledger_router.get("/organizations/{org_id}/transactions")
async def list_organization_transactions(
    org_id: str,
    limit: int = Query(100, ge=1, le=500),
    type: Optional[str] = Query(None),
    user: dict = Depends(get_current_user),
    db=Depends(get_db),
):
    """Ledger history of an organization, for its trainers."""
    try:
        await require_org_role(LedgerStore(db), org_id, user["id"], TRAINER_ROLES)
    except LedgerError as e:
        raise ledger_http_error(e)
    entries = await TransactionLogger(db).list_for_organization(org_id, limit, type=type)
    return {"success": True, "entries": entries, "count": len(entries)}


# ==================== FAMILY ====================

@ledger_router.post("/organizations/{org_id}/family/transfer")
async def family_transfer(
    org_id: str,
    request: FamilyTransferRequest,
    user: dict = Depends(get_current_user),
    db=Depends(get_db),
):
    store = LedgerStore(db)
    try:
        await require_family_parent(store, org_id, user["id"])
        results = await Allocator(db, store=store).transfer_many(
            org_id,
            [(item.user_id, item.amount) for item in request.transfers],
            parent_user_id=user["id"],
        )
    except LedgerError as e:
        raise ledger_http_error(e)

    return {
        "success": True,
        "transfers": [r.model_dump() for r in results],
        "org_unallocated": results[-1].org_unallocated,
    }


@ledger_router.get("/organizations/{org_id}/family/children")
async def list_family_children(org_id: str, user: dict = Depends(get_current_user), db=Depends(get_db)):
    try:
        await require_family_parent(LedgerStore(db), org_id, user["id"])
    except LedgerError as e:
        raise ledger_http_error(e)
    children = await ParentalControlsService(db).list_children(org_id)
    return {"success": True, "children": children}


@ledger_router.get("/organizations/{org_id}/family/children/{child_user_id}/controls")
async def get_child_controls(
    org_id: str,
    child_user_id: str,
    user: dict = Depends(get_current_user),
    db=Depends(get_db),
):
    try:
        await require_family_parent(LedgerStore(db), org_id, user["id"])
        controls = await ParentalControlsService(db).get(org_id, child_user_id)
        if not controls:
            raise NotFound("No parental controls for this child")
    except LedgerError as e:
        raise ledger_http_error(e)
    return {"success": True, "controls": controls}


@ledger_router.put("/organizations/{org_id}/family/children/{child_user_id}/controls")
async def update_child_controls(
    org_id: str,
    child_user_id: str,
    request: ParentalControlsUpdate,
    user: dict = Depends(get_current_user),
    db=Depends(get_db),
):
    store = LedgerStore(db)
    try:
        await require_family_parent(store, org_id, user["id"])
        child = await store.get_member_by_user(org_id, child_user_id)
        if not child or child.get("role") != "student":
            raise NotFound("Child not found in this family")
        controls = await ParentalControlsService(db).upsert(org_id, child_user_id, request, updated_by=user["id"])
    except LedgerError as e:
        raise ledger_http_error(e)
    return {"success": True, "controls": controls}


@ledger_router.post("/family/request-credits")
async def request_credits(user: dict = Depends(get_current_user), db=Depends(get_db)):
    """A child asks their parents for credits; delivery happens in the background."""
    try:
        result = await ParentNotifier(db).request_credits(user["id"])
    except LedgerError as e:
        raise ledger_http_error(e)
    return {"success": True, **result}


# ==================== WEBHOOKS ====================

@ledger_router.post("/webhooks/stripe")
async def stripe_webhook(request: Request, db=Depends(get_db)):
    handler = StripeWebhookHandler(db)
    event = await handler.verify_webhook(request)
    try:
        result = await handler.handle_event(event)
    except LedgerError as e:
        logger.error(f"Stripe webhook {event.get('type')} failed: {e.code}")
        raise ledger_http_error(e)
    return {"received": True, **result}


# ==================== ADMIN ====================

@ledger_router.get("/admin/organizations/{org_id}/reconcile")
async def reconcile_organization(org_id: str, admin: dict = Depends(get_admin_user), db=Depends(get_db)):
    try:
        report = await LedgerStore(db).reconcile_organization(org_id)
    except LedgerError as e:
        raise ledger_http_error(e)
    return report.model_dump()


@ledger_router.post("/admin/transactions/{transaction_id}/refund")
async def refund_transaction(
    transaction_id: str,
    reason: str = Query("", max_length=500),
    admin: dict = Depends(get_admin_user),
    db=Depends(get_db),
):
    try:
        entry = await UsageDebiter(db).refund(transaction_id, reason=reason)
    except LedgerError as e:
        raise ledger_http_error(e)
    return {"success": True, "transaction": entry}


@ledger_router.put("/admin/pricing/markup")
async def update_markup(request: MarkupUpdateRequest, admin: dict = Depends(get_admin_user), db=Depends(get_db)):
    """New markup applies to requests authorized after this call."""
    settings = await PricingRepository(db).set_markup(request.markup_percentage)
    return {"success": True, "markup_percentage": settings.markup_percentage, "version": settings.version}
