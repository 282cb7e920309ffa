"""
Stripe Webhook Handler - Credit purchases and family subscription state

- checkout.session.completed (mode=payment): credit pack, routed to PurchaseService
  with the payment_intent as idempotency key
- customer.subscription.*: organization subscription status read by the gate
"""

import json
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any

import stripe
from fastapi import Request, HTTPException

from utils.environment import get_stripe_webhook_secret

from .config import POOL_ORGANIZATION, POOL_PERSONAL
from .ledger_store import LedgerStore
from .purchases import PurchaseService

logger = logging.getLogger(__name__)

# Stripe statuses that end a trial without a paid subscription
LAPSED_STATUSES = ["canceled", "incomplete_expired", "unpaid", "past_due"]


def _epoch_to_iso(value) -> Optional[str]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).isoformat()


def subscription_state(subscription: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """Organization.subscription document for a Stripe subscription object."""
    now = now or datetime.now(timezone.utc)
    status = subscription.get("status", "")
    trial_end = subscription.get("trial_end")

    if status in LAPSED_STATUSES and trial_end and int(trial_end) <= now.timestamp():
        status = "trial_expired"

    return {
        "status": status,
        "trial_ends_at": _epoch_to_iso(trial_end),
        "stripe_subscription_id": subscription.get("id"),
        "stripe_customer_id": subscription.get("customer"),
        "updated_at": now.isoformat(),
    }


class StripeWebhookHandler:
    """Handle Stripe webhook events"""

    def __init__(self, db, purchases: Optional[PurchaseService] = None, webhook_secret: Optional[str] = None):
        self.db = db
        self.store = LedgerStore(db)
        self.purchases = purchases or PurchaseService(db, store=self.store)
        self.webhook_secret = webhook_secret

    async def verify_webhook(self, request: Request) -> dict:
        """Verify and parse webhook payload"""
        secret = self.webhook_secret or get_stripe_webhook_secret()
        if not secret:
            raise HTTPException(status_code=500, detail="Stripe webhook not configured")

        payload = await request.body()
        sig_header = request.headers.get("stripe-signature")

        try:
            stripe.Webhook.construct_event(payload, sig_header, secret)
            return json.loads(payload)
        except ValueError as e:
            logger.error(f"Invalid payload: {e}")
            raise HTTPException(status_code=400, detail="Invalid payload")
        except stripe.SignatureVerificationError as e:
            logger.error(f"Invalid signature: {e}")
            raise HTTPException(status_code=400, detail="Invalid signature")

    async def handle_event(self, event: dict) -> dict:
        """Route event to appropriate handler"""
        event_type = event.get("type")
        data = event.get("data", {}).get("object", {})

        handlers = {
            "checkout.session.completed": self._handle_checkout_completed,
            "customer.subscription.created": self._handle_subscription_changed,
            "customer.subscription.updated": self._handle_subscription_changed,
            "customer.subscription.deleted": self._handle_subscription_changed,
        }

        handler = handlers.get(event_type)
        if not handler:
            logger.info(f"Unhandled event type: {event_type}")
            return {"status": "ignored", "event_type": event_type}

        result = await handler(data)
        await self._log_event(event.get("id"), event_type, data, result)
        return result

    async def _log_event(self, event_id: Optional[str], event_type: str, data: dict, result: dict):
        """Log webhook event for audit"""
        await self.db.webhook_logs.insert_one({
            "event_id": event_id,
            "event_type": event_type,
            "stripe_customer_id": data.get("customer"),
            "object_id": data.get("id"),
            "result": result,
            "timestamp": datetime.now(timezone.utc).isoformat()
        })

    async def _handle_checkout_completed(self, data: dict) -> dict:
        """Credit pack purchase"""
        if data.get("mode") != "payment":
            return {"status": "ignored", "reason": "not a credit purchase"}
        if data.get("payment_status") not in (None, "paid"):
            return {"status": "ignored", "reason": f"payment_status={data.get('payment_status')}"}

        metadata = data.get("metadata") or {}
        organization_id = metadata.get("organization_id")
        user_id = metadata.get("user_id") or data.get("client_reference_id")

        if organization_id:
            target_type, target_id = POOL_ORGANIZATION, organization_id
        elif user_id:
            target_type, target_id = POOL_PERSONAL, user_id
        else:
            logger.error(f"Checkout {data.get('id')} has no credit target in metadata")
            return {"status": "error", "reason": "No credit target"}

        if metadata.get("credits"):
            amount = float(metadata["credits"])
        else:
            amount = (data.get("amount_total") or 0) / 100

        payment_id = data.get("payment_intent") or data.get("id")
        result = await self.purchases.record_purchase(
            target_type,
            target_id,
            amount,
            payment_id,
            user_id=user_id,
            description="Stripe credit purchase",
            details={"checkout_session_id": data.get("id")},
        )
        return {
            "status": "duplicate" if result.duplicate else "credited",
            "target": f"{target_type}:{target_id}",
            "amount": result.amount,
            "transaction_id": result.transaction_id,
        }

    async def _handle_subscription_changed(self, data: dict) -> dict:
        organization_id = (data.get("metadata") or {}).get("organization_id")
        if not organization_id:
            org = await self.db.organizations.find_one(
                {"subscription.stripe_subscription_id": data.get("id")},
                {"_id": 0, "id": 1}
            )
            organization_id = org["id"] if org else None

        if not organization_id:
            logger.warning(f"Subscription {data.get('id')} does not match an organization")
            return {"status": "ignored", "reason": "No organization"}

        state = subscription_state(data)
        await self.store.update_subscription(organization_id, state)
        logger.info(f"Organization {organization_id} subscription -> {state['status']}")
        return {"status": "updated", "organization_id": organization_id, "subscription_status": state["status"]}
