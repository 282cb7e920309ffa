"""
Parent Notifier - Credit requests and flagged content

Deciding that parents must be told is synchronous and can fail the request
(not a family child, no parent). Delivery (Resend email, Expo push) runs as a
fire-and-forget task: failures are logged and recorded in email_logs, never
raised to the caller.
"""

import asyncio
import logging
import os
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Set

import httpx
import resend

from utils.environment import notifications_enabled

from .config import EXPO_PUSH_URL, NOTIFICATION_TIMEOUT_SECONDS, round_credits
from .errors import NotFound
from .ledger_store import LedgerStore

logger = logging.getLogger(__name__)

# Strong references to in-flight deliveries until they finish
_pending_deliveries: Set[asyncio.Task] = set()


async def drain_deliveries():
    if _pending_deliveries:
        await asyncio.gather(*list(_pending_deliveries), return_exceptions=True)


CREDIT_REQUEST_HTML = """
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
    <h2 style="color: #1f2937;">Credit request</h2>
    <p><strong>{child_name}</strong> is running out of credits in <strong>{family_name}</strong> and asks you to add more.</p>
    <p style="background: #FFF7ED; border: 1px solid #FDBA74; border-radius: 12px; padding: 16px;">
        Current balance: <strong>{balance:.2f} &euro;</strong>
    </p>
    <p><a href="{dashboard_url}">Open the family dashboard</a></p>
</div>
"""

FLAGGED_CONTENT_HTML = """
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
    <h2 style="color: #1f2937;">A conversation was flagged</h2>
    <p>A conversation by <strong>{child_name}</strong> was flagged ({flag_type}).</p>
    <p>{reason}</p>
    <p><a href="{dashboard_url}">Review it on the family dashboard</a></p>
</div>
"""


class ParentNotifier:

    def __init__(self, db, store: Optional[LedgerStore] = None, http_client: Optional[httpx.AsyncClient] = None):
        self.db = db
        self.store = store or LedgerStore(db)
        self.http_client = http_client
        self.sender_email = os.environ.get("SENDER_EMAIL", "onboarding@resend.dev")
        self.base_url = os.environ.get("APP_URL", "http://localhost:3000")

    # ==================== DECISIONS ====================

    async def _family_context(self, child_user_id: str):
        member, org = await self.store.get_family_child_membership(child_user_id)
        if not member:
            raise NotFound("Not a child of a family organization")

        parents = [
            p for p in await self.store.list_managers(org["id"])
            if p["user_id"] != child_user_id
        ]
        if not parents:
            raise NotFound("No parent found for this family")

        profiles = []
        for parent in parents:
            profile = await self.store.get_profile(parent["user_id"])
            if profile:
                profiles.append(profile)

        child = await self.store.get_profile(child_user_id) or {}
        return org, child, profiles

    async def request_credits(self, child_user_id: str) -> Dict[str, Any]:
        """
        A child asks the parents of their family for more credits.

        Returns:
            {"notified_parents": n}

        Raises:
            NotFound: not a family child, or the family has no parent
        """
        org, child, parents = await self._family_context(child_user_id)
        child_name = child.get("display_name") or "Your child"
        balance = round_credits(child.get("credits_balance", 0))

        emails = [p["email"] for p in parents if p.get("email")]
        tokens = [t for p in parents for t in p.get("push_tokens") or []]

        html = CREDIT_REQUEST_HTML.format(
            child_name=child_name,
            family_name=org.get("name", ""),
            balance=balance,
            dashboard_url=f"{self.base_url}/mifa/dashboard",
        )
        self._dispatch(self._deliver(
            "credit_request",
            emails,
            f"{child_name} needs credits",
            html,
            tokens,
            f"{child_name} needs credits",
            f"Current balance: {balance:.2f} EUR. Open the app to transfer credits.",
            {"type": "credit_request", "childId": child_user_id},
        ))

        logger.info(f"NOTIFY_CREDIT_REQUEST | child={child_user_id} | org={org['id']} | parents={len(parents)}")
        return {"notified_parents": len(parents)}

    async def flag_content(
        self,
        organization_id: str,
        child_user_id: str,
        conversation_id: str,
        flag_type: str,
        reason: str,
    ) -> Dict[str, Any]:
        """Record a flagged conversation and tell parents if their controls ask for it."""
        flag = {
            "organization_id": organization_id,
            "user_id": child_user_id,
            "conversation_id": conversation_id,
            "flag_type": flag_type,
            "flag_reason": reason,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        await self.db.conversation_flags.insert_one(dict(flag))

        controls = await self.db.parental_controls.find_one(
            {"organization_id": organization_id, "child_user_id": child_user_id},
            {"_id": 0, "notification_on_flagged_content": 1}
        )
        if controls is not None and not controls.get("notification_on_flagged_content", True):
            return {"flagged": True, "notified_parents": 0}

        try:
            org, child, parents = await self._family_context(child_user_id)
        except NotFound:
            logger.warning(f"Flagged content for {child_user_id} but no family parent to notify")
            return {"flagged": True, "notified_parents": 0}

        child_name = child.get("display_name") or "Your child"
        html = FLAGGED_CONTENT_HTML.format(
            child_name=child_name,
            flag_type=flag_type,
            reason=reason,
            dashboard_url=f"{self.base_url}/mifa/dashboard/{child_user_id}",
        )
        self._dispatch(self._deliver(
            "flagged_content",
            [p["email"] for p in parents if p.get("email")],
            f"Conversation flagged for {child_name}",
            html,
            [t for p in parents for t in p.get("push_tokens") or []],
            "Conversation flagged",
            f"A conversation by {child_name} needs your attention.",
            {"type": "flagged_content", "childId": child_user_id, "conversationId": conversation_id},
        ))
        return {"flagged": True, "notified_parents": len(parents)}

    # ==================== DELIVERY ====================

    def _dispatch(self, coro):
        task = asyncio.create_task(coro)
        _pending_deliveries.add(task)
        task.add_done_callback(_pending_deliveries.discard)

    async def drain(self):
        """Wait for in-flight deliveries (shutdown, tests)."""
        await drain_deliveries()

    async def _deliver(
        self,
        kind: str,
        emails: List[str],
        subject: str,
        html: str,
        tokens: List[str],
        title: str,
        body: str,
        data: Dict[str, Any],
    ):
        if not notifications_enabled():
            logger.info(f"NOTIFY_SKIPPED | kind={kind} | emails={len(emails)} | devices={len(tokens)}")
            return

        try:
            if emails:
                await self.send_email(kind, emails, subject, html)
            if tokens:
                await self.send_push(tokens, title, body, data)
        except Exception as e:
            logger.error(f"NOTIFY_FAILED | kind={kind} | error={e}")

    async def send_email(self, kind: str, to: List[str], subject: str, html: str) -> dict:
        params = {
            "from": self.sender_email,
            "to": to,
            "subject": subject,
            "html": html,
        }
        resend.api_key = os.environ.get("RESEND_API_KEY")

        try:
            email_result = await asyncio.to_thread(resend.Emails.send, params)
            await self.db.email_logs.insert_one({
                "to": to,
                "template": kind,
                "subject": subject,
                "status": "sent",
                "email_id": email_result.get("id"),
                "sent_at": datetime.now(timezone.utc).isoformat()
            })
            return {"status": "success", "email_id": email_result.get("id")}
        except Exception as e:
            logger.error(f"Failed to send email: {e}")
            await self.db.email_logs.insert_one({
                "to": to,
                "template": kind,
                "subject": subject,
                "status": "failed",
                "error": str(e),
                "sent_at": datetime.now(timezone.utc).isoformat()
            })
            return {"status": "error", "reason": str(e)}

    async def send_push(self, tokens: List[str], title: str, body: str, data: Dict[str, Any]) -> bool:
        """Batch Expo push; one message per device token."""
        messages = [
            {"to": token, "title": title, "body": body, "data": data, "sound": "default"}
            for token in tokens
        ]
        try:
            if self.http_client:
                response = await self.http_client.post(EXPO_PUSH_URL, json=messages)
            else:
                async with httpx.AsyncClient(timeout=NOTIFICATION_TIMEOUT_SECONDS) as client:
                    response = await client.post(EXPO_PUSH_URL, json=messages)
            response.raise_for_status()
            logger.info(f"Push sent to {len(tokens)} device(s): {title}")
            return True
        except httpx.HTTPError as e:
            logger.error(f"Push notification failed for {len(tokens)} device(s): {e}")
            return False
