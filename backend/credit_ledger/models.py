"""
Credit Ledger Data Models

Pydantic models for ledger documents and service results.
Stored documents are plain dicts in MongoDB; these models define their shape.
"""

import re
from typing import Optional, List, Literal, Dict, Any

from pydantic import BaseModel, Field, field_validator


PoolName = Literal["organization", "personal"]
LedgerPool = Literal["organization", "member", "personal"]
CreditPreference = Literal["auto", "org_first", "personal_first", "org_only", "personal_only"]
OrgType = Literal["school", "university", "business", "training_center", "family"]
MemberRole = Literal["owner", "admin", "teacher", "student"]
SupervisionMode = Literal["guided", "trusted", "adult"]
TransactionType = Literal[
    "purchase", "grant", "credit_allocated", "usage", "transfer", "reversal", "adjustment"
]

_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


# ==================== STORED DOCUMENTS ====================

class Organization(BaseModel):
    """Organization credit pool"""
    id: str
    name: str
    type: OrgType
    credit_balance: float = 0.0
    credit_allocated: float = 0.0
    status: Literal["active", "suspended"] = "active"
    settings: Dict[str, Any] = Field(default_factory=dict)
    subscription: Optional[Dict[str, Any]] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class OrganizationMember(BaseModel):
    """A profile's membership and allocation within one organization"""
    id: str
    organization_id: str
    user_id: str
    role: MemberRole
    status: Literal["active", "archived"] = "active"
    credit_allocated: float = 0.0
    credit_used: float = 0.0
    class_id: Optional[str] = None
    can_manage_credits: bool = False
    supervision_mode: Optional[SupervisionMode] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class Profile(BaseModel):
    """Personal wallet"""
    id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    credits_balance: float = 0.0
    credits_allocated: float = 0.0  # Total received from a family pool (display only)
    credit_preference: CreditPreference = "auto"
    push_tokens: List[str] = Field(default_factory=list)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class ParentalControls(BaseModel):
    """Supervision settings for one child in one family organization"""
    organization_id: str
    child_user_id: str
    supervision_mode: SupervisionMode = "guided"
    daily_credit_limit: Optional[float] = None
    daily_time_limit_minutes: Optional[int] = None
    quiet_hours_start: Optional[str] = None
    quiet_hours_end: Optional[str] = None
    cumulative_credits: bool = False
    cumulative_since: Optional[str] = None
    notification_on_flagged_content: bool = True
    updated_by: Optional[str] = None
    updated_at: Optional[str] = None

    @field_validator("quiet_hours_start", "quiet_hours_end")
    @classmethod
    def _check_hhmm(cls, value):
        if value is not None and not _HHMM.match(value):
            raise ValueError("must be HH:MM")
        return value


class LedgerTransaction(BaseModel):
    """Immutable transaction log entry"""
    id: str
    organization_id: Optional[str] = None
    member_id: Optional[str] = None
    user_id: Optional[str] = None
    type: TransactionType
    pool: LedgerPool
    pool_id: str
    counter_pool: Optional[LedgerPool] = None
    counter_pool_id: Optional[str] = None
    amount: float
    description: str = ""
    dedup_key: Optional[str] = None
    reverses: Optional[str] = None
    request_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: str


# ==================== RESOLVER ====================

class PoolResolution(BaseModel):
    """Which pool pays for the next unit of usage"""
    pool: PoolName
    available_amount: float
    pool_id: str
    user_id: str
    organization_id: Optional[str] = None
    member_id: Optional[str] = None
    preference: CreditPreference = "auto"
    draws_unallocated: bool = False


class LimitUsage(BaseModel):
    used: float
    limit: float
    remaining: float


class CreditSummary(BaseModel):
    """Both balances plus the active pool, for display"""
    user_id: str
    preference: CreditPreference
    personal_balance: float
    org_balance: Optional[float] = None
    organization_id: Optional[str] = None
    member_id: Optional[str] = None
    role: Optional[MemberRole] = None
    is_trainer: bool = False
    active_pool: Optional[PoolName] = None
    limits: Dict[str, LimitUsage] = Field(default_factory=dict)


# ==================== ALLOCATOR ====================

class AllocationResult(BaseModel):
    success: bool = True
    member_id: str
    previous_allocation: float
    new_allocation: float
    amount_added: float
    transaction_id: str


class BulkAllocationFailure(BaseModel):
    member_id: str
    user_id: Optional[str] = None
    reason: str


class BulkAllocationResult(BaseModel):
    success: bool = True
    class_id: str
    amount_per_student: float
    succeeded: List[str] = Field(default_factory=list)
    failed: List[BulkAllocationFailure] = Field(default_factory=list)
    total_allocated: float = 0.0


class TransferResult(BaseModel):
    success: bool = True
    child_user_id: str
    amount: float
    child_balance: float
    org_unallocated: float
    transaction_id: str


class PersonalTransferResult(BaseModel):
    success: bool = True
    direction: Literal["to_org", "to_personal"]
    transferred: float
    personal_balance: float
    org_balance: float
    org_available: float
    transaction_id: str


# ==================== DEBITER ====================

class DebitResult(BaseModel):
    success: bool = True
    pool: PoolName
    pool_id: str
    amount: float
    new_balance: float
    transaction_id: str


# ==================== GATE ====================

class GateResult(BaseModel):
    allowed: bool
    reason: Optional[Literal["quiet_hours", "daily_limit_reached", "trial_expired"]] = None
    detail: Optional[str] = None
    quiet_hours_end: Optional[str] = None
    resets_at: Optional[str] = None
    limit: Optional[float] = None
    used: Optional[float] = None


# ==================== PURCHASES ====================

class PurchaseResult(BaseModel):
    success: bool = True
    duplicate: bool = False
    target_type: PoolName
    target_id: str
    amount: float
    new_balance: Optional[float] = None
    transaction_id: Optional[str] = None


# ==================== AUDIT ====================

class PoolReconciliation(BaseModel):
    pool: LedgerPool
    pool_id: str
    stored_balance: float
    ledger_balance: float
    initial_balance: float = 0.0
    consistent: bool


class ReconciliationReport(BaseModel):
    organization_id: str
    consistent: bool
    pools: List[PoolReconciliation] = Field(default_factory=list)
    invariant_violations: List[str] = Field(default_factory=list)


# ==================== REQUEST BODIES ====================

class AllocateRequest(BaseModel):
    amount: float = Field(..., description="Credits to add to the member's allocation")


class BulkAllocateRequest(BaseModel):
    amount_per_student: float
    update_default: bool = False


class FamilyTransferItem(BaseModel):
    user_id: str = Field(..., alias="userId")
    amount: float

    model_config = {"populate_by_name": True}


class FamilyTransferRequest(BaseModel):
    transfers: List[FamilyTransferItem]


class PersonalTransferRequest(BaseModel):
    direction: Literal["to_org", "to_personal"]
    amount: float
    note: Optional[str] = None


class CreditPreferenceRequest(BaseModel):
    credit_preference: CreditPreference


class MarkupUpdateRequest(BaseModel):
    markup_percentage: float = Field(..., ge=0, le=500)


class ParentalControlsUpdate(BaseModel):
    supervision_mode: Optional[SupervisionMode] = None
    daily_credit_limit: Optional[float] = None
    daily_time_limit_minutes: Optional[int] = None
    quiet_hours_start: Optional[str] = None
    quiet_hours_end: Optional[str] = None
    cumulative_credits: Optional[bool] = None
    notification_on_flagged_content: Optional[bool] = None

    @field_validator("quiet_hours_start", "quiet_hours_end")
    @classmethod
    def _check_hhmm(cls, value):
        if value is not None and not _HHMM.match(value):
            raise ValueError("must be HH:MM")
        return value
