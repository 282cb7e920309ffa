"""
Credit Ledger Configuration and Constants

Pool preferences, roles, pricing defaults and parental control defaults are defined here.
All amounts are in EUR credits.
"""

import os

# ==================== PRECISION ====================
# Amounts are stored as floats rounded to this many decimals
CREDIT_PRECISION = 6


def round_credits(amount: float) -> float:
    """Round a credit amount to ledger precision."""
    return round(float(amount or 0), CREDIT_PRECISION)


# ==================== POOLS & PREFERENCES ====================
POOL_ORGANIZATION = "organization"
POOL_PERSONAL = "personal"
POOL_MEMBER = "member"  # Ledger-only: a member's allocation remainder

CREDIT_PREFERENCES = ["auto", "org_first", "personal_first", "org_only", "personal_only"]
DEFAULT_CREDIT_PREFERENCE = "auto"

# ==================== ORGANIZATIONS ====================
ORG_TYPES = ["school", "university", "business", "training_center", "family"]
ORG_STATUS_ACTIVE = "active"
ORG_STATUS_SUSPENDED = "suspended"

MEMBER_ROLES = ["owner", "admin", "teacher", "student"]
# Trainers spend directly from the organization's unallocated pool
TRAINER_ROLES = ["owner", "admin", "teacher"]
MANAGER_ROLES = ["owner", "admin"]
CHILD_ROLE = "student"

# ==================== TRANSACTIONS ====================
TRANSACTION_TYPES = [
    "purchase",
    "grant",
    "credit_allocated",
    "usage",
    "transfer",
    "reversal",
    "adjustment",
]

# ==================== SUBSCRIPTIONS ====================
SUBSCRIPTION_ACTIVE_STATUSES = ["active"]
SUBSCRIPTION_TRIAL_STATUSES = ["trial", "trialing"]
SUBSCRIPTION_EXPIRED_TRIAL_STATUS = "trial_expired"

# ==================== PRICING ====================
# Markup applied to raw provider cost (percentage, 50 => x1.5)
DEFAULT_MARKUP_PERCENTAGE = 50

# Per-million-token prices, used when a model is missing from ai_models
DEFAULT_MODEL_PRICING = {
    "claude-opus-4-5-20250514": {"input": 5.0, "output": 25.0},
    "claude-sonnet-4-20250514": {"input": 3.0, "output": 15.0},
    "claude-3-5-haiku-20241022": {"input": 0.8, "output": 4.0},
    "gpt-5": {"input": 1.25, "output": 10.0},
    "gpt-4.1": {"input": 2.0, "output": 8.0},
    "gpt-4o": {"input": 2.5, "output": 10.0},
    "gpt-4o-mini": {"input": 0.15, "output": 0.6},
    "gemini-2.5-pro": {"input": 1.25, "output": 10.0},
    "gemini-2.5-flash": {"input": 0.15, "output": 0.6},
    "gemini-2.0-flash": {"input": 0.1, "output": 0.4},
    "mistral-large-latest": {"input": 2.0, "output": 6.0},
}

TOKENS_PER_PRICE_UNIT = 1_000_000

# ==================== FAMILY (MIFA) ====================
FAMILY_WELCOME_CREDIT_PER_CHILD = 1.0

DEFAULT_TIMEZONE = os.environ.get("LEDGER_DEFAULT_TIMEZONE", "Europe/Paris")

# Defaults applied when a child joins a family, keyed by supervision mode
PARENTAL_CONTROL_DEFAULTS = {
    "guided": {
        "daily_time_limit_minutes": 60,
        "daily_credit_limit": 0.5,
    },
    "trusted": {
        "daily_time_limit_minutes": None,
        "daily_credit_limit": 1.0,
    },
    "adult": {
        "daily_time_limit_minutes": None,
        "daily_credit_limit": 1.0,
    },
}
DEFAULT_QUIET_HOURS_START = "22:00"
DEFAULT_QUIET_HOURS_END = "07:00"
SUPERVISION_MODES = list(PARENTAL_CONTROL_DEFAULTS.keys())

# Rolled-over allowance never reaches further back than this
CUMULATIVE_MAX_DAYS = 7

# ==================== CONCURRENCY & RETRIES ====================
# Compare-and-set retries on a contended pool before giving up
CAS_MAX_RETRIES = int(os.environ.get("LEDGER_CAS_MAX_RETRIES", "5"))

# Transaction log writes retry until they land; 0 means no cap
_log_attempts = int(os.environ.get("LEDGER_LOG_MAX_ATTEMPTS", "0"))
LOG_MAX_ATTEMPTS = _log_attempts if _log_attempts > 0 else None
LOG_RETRY_BASE_DELAY = float(os.environ.get("LEDGER_LOG_RETRY_BASE_DELAY", "0.5"))
LOG_RETRY_MAX_DELAY = 30.0

# An unprocessed payment/reversal claim older than this is treated as abandoned
# by its delivery and may be taken over by a retry
EVENT_CLAIM_TIMEOUT_SECONDS = float(os.environ.get("LEDGER_EVENT_CLAIM_TIMEOUT_SECONDS", "300"))

# ==================== NOTIFICATIONS ====================
EXPO_PUSH_URL = "https://exp.host/--/api/v2/push/send"
NOTIFICATION_TIMEOUT_SECONDS = 10

# ==================== ERROR CODES ====================
ERROR_CODES = {
    "INSUFFICIENT_CREDIT": "Not enough credits in the selected pool. Add funds or change your credit preference.",
    "INSUFFICIENT_ORG_CREDIT": "Your organization allocation is used up. Ask an administrator for more credits.",
    "INSUFFICIENT_PERSONAL_CREDIT": "Your personal balance is empty. Purchase credits to continue.",
    "NO_CREDIT_AVAILABLE": "No credits available in any pool. Purchase credits or ask your organization.",
    "INSUFFICIENT_ORG_POOL": "Not enough unallocated credits in the organization pool.",
    "QUIET_HOURS": "AI use is paused during quiet hours.",
    "DAILY_LIMIT_REACHED": "Daily credit limit reached. Ask a parent for more credits.",
    "TRIAL_EXPIRED": "The trial period has ended. Ask a parent to subscribe.",
    "LEDGER_INCONSISTENCY": "The operation could not be completed. Please try again later.",
    "INVALID_AMOUNT": "Amount must be a positive number.",
    "EMPTY_CLASS": "This class has no active students.",
    "NOT_FOUND": "Resource not found.",
    "PERMISSION_DENIED": "You do not have permission to perform this action.",
    "ORGANIZATION_INACTIVE": "This organization is not active.",
    "DUPLICATE_TRANSACTION": "This operation has already been recorded.",
    "POOL_CONTENTION": "Too many simultaneous operations on this balance. Please retry.",
}
