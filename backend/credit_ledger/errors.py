"""
Credit Ledger Errors

Typed failures raised by the resolver, allocator, debiter and gate.
Routes translate them with `to_dict()` and `http_status`.

LedgerInconsistency indicates a bug, not user error: it is logged loudly
and never shown verbatim to end users.
"""

import logging
from typing import Any, Dict, Optional

from .config import ERROR_CODES

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Base class for every ledger failure."""

    code = "LEDGER_ERROR"
    http_status = 400

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or ERROR_CODES.get(self.code, self.code)
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to API response format."""
        body = {"error_code": self.code, "message": self.message}
        body.update({k: v for k, v in self.details.items() if v is not None})
        return body


# ==================== CREDIT ====================

class InsufficientCredit(LedgerError):
    """Resolved pool cannot cover the amount."""
    code = "INSUFFICIENT_CREDIT"
    http_status = 402

    def __init__(
        self,
        message: Optional[str] = None,
        available: Optional[float] = None,
        requested: Optional[float] = None,
        **details: Any,
    ):
        super().__init__(message, available=available, requested=requested, **details)
        self.available = available
        self.requested = requested


class InsufficientOrgCredit(InsufficientCredit):
    code = "INSUFFICIENT_ORG_CREDIT"


class InsufficientPersonalCredit(InsufficientCredit):
    code = "INSUFFICIENT_PERSONAL_CREDIT"


class NoCreditAvailable(InsufficientCredit):
    """Every pool is exhausted regardless of preference."""
    code = "NO_CREDIT_AVAILABLE"


class InsufficientOrgPool(LedgerError):
    """Allocator cannot fund a request from the organization's unallocated balance."""
    code = "INSUFFICIENT_ORG_POOL"

    def __init__(self, available: float, requested: float, message: Optional[str] = None):
        super().__init__(message, available=available, requested=requested)
        self.available = available
        self.requested = requested


# ==================== GATE ====================

class GateRejection(LedgerError):
    """Family precondition rejected the request before the provider call."""
    code = "GATE_REJECTED"
    reason = "rejected"
    http_status = 403

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["reason"] = self.reason
        return body


class QuietHours(GateRejection):
    code = "QUIET_HOURS"
    reason = "quiet_hours"

    def __init__(self, quiet_hours_end: str, message: Optional[str] = None):
        message = message or f"AI use is paused until {quiet_hours_end}."
        super().__init__(message, quiet_hours_end=quiet_hours_end)
        self.quiet_hours_end = quiet_hours_end


class DailyLimitReached(GateRejection):
    code = "DAILY_LIMIT_REACHED"
    reason = "daily_limit_reached"

    def __init__(self, limit: float, used: float, resets_at: Optional[str] = None):
        super().__init__(None, limit=limit, used=used, resets_at=resets_at)
        self.limit = limit
        self.used = used
        self.resets_at = resets_at


class TrialExpired(GateRejection):
    code = "TRIAL_EXPIRED"
    reason = "trial_expired"


# ==================== INTEGRITY ====================

class LedgerInconsistency(LedgerError):
    """A counter invariant would be violated; the operation was aborted."""
    code = "LEDGER_INCONSISTENCY"
    http_status = 500

    def __init__(self, operation: str, detail: str, **context: Any):
        super().__init__(None, **context)
        self.operation = operation
        self.detail = detail
        context_str = " | ".join(f"{k}={v}" for k, v in context.items())
        logger.critical(
            f"LEDGER_INCONSISTENCY | operation={operation} | detail={detail}"
            + (f" | {context_str}" if context_str else "")
        )

    def __str__(self) -> str:
        return f"{self.operation}: {self.detail}"

    def to_dict(self) -> Dict[str, Any]:
        # Never expose internals to end users
        return {"error_code": self.code, "message": ERROR_CODES[self.code]}


class DuplicateTransaction(LedgerError):
    code = "DUPLICATE_TRANSACTION"
    http_status = 409


class PoolContention(LedgerError):
    """Compare-and-set kept losing to concurrent writers on one pool."""
    code = "POOL_CONTENTION"
    http_status = 409


# ==================== REQUEST ====================

class InvalidAmount(LedgerError):
    code = "INVALID_AMOUNT"


class EmptyClass(LedgerError):
    """Bulk allocation target has no active students."""
    code = "EMPTY_CLASS"


class NotFound(LedgerError):
    code = "NOT_FOUND"
    http_status = 404


class PermissionDenied(LedgerError):
    code = "PERMISSION_DENIED"
    http_status = 403


class OrganizationInactive(LedgerError):
    code = "ORGANIZATION_INACTIVE"
    http_status = 409
