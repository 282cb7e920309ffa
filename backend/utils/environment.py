"""
Environment Configuration Utility

ENVIRONMENT values:
- production: Stripe webhook secret required, notifications delivered for real
- development: Notifications are logged instead of sent unless keys are configured
- test: Notifications are never sent
"""
import os
import logging

VALID_ENVIRONMENTS = {"production", "development", "test"}

# Default to development for safety
ENVIRONMENT = os.environ.get("ENVIRONMENT", "development").lower()

if ENVIRONMENT not in VALID_ENVIRONMENTS:
    logging.warning(f"Invalid ENVIRONMENT '{ENVIRONMENT}', defaulting to 'development'")
    ENVIRONMENT = "development"


def is_production() -> bool:
    return ENVIRONMENT == "production"


def is_development() -> bool:
    return ENVIRONMENT == "development"


def is_test() -> bool:
    return ENVIRONMENT == "test"


def notifications_enabled() -> bool:
    """
    Whether parent notifications (email, push) are actually delivered.

    Always in production; in development only with a Resend key; never in test.
    """
    if is_test():
        return False
    if is_production():
        return True
    return bool(os.environ.get("RESEND_API_KEY"))


def get_stripe_webhook_secret() -> str:
    return os.environ.get("STRIPE_WEBHOOK_SECRET", "")


class ConfigurationError(Exception):
    """Raised at startup when production is missing required settings."""


def validate_production_settings():
    """
    Fail fast when production lacks settings the ledger cannot run without.

    Raises:
        ConfigurationError in production only
    """
    if not is_production():
        return

    missing = [name for name in ("STRIPE_WEBHOOK_SECRET", "JWT_SECRET") if not os.environ.get(name)]
    if missing:
        logging.warning(f"PRODUCTION_CONFIG_MISSING | vars={missing}")
        raise ConfigurationError(f"Missing production settings: {', '.join(missing)}")


logging.info(f"Environment: {ENVIRONMENT} | Notifications enabled: {notifications_enabled()}")
