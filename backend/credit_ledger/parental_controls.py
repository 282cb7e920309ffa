"""
Parental Controls - Per-child supervision settings in a family

One document per (organization_id, child_user_id). The gate reads these;
parents edit them through the routes.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Union

from .config import (
    CHILD_ROLE,
    DEFAULT_QUIET_HOURS_END,
    DEFAULT_QUIET_HOURS_START,
    PARENTAL_CONTROL_DEFAULTS,
)
from .errors import InvalidAmount
from .models import ParentalControls, ParentalControlsUpdate

logger = logging.getLogger(__name__)


def default_controls(supervision_mode: str) -> Dict[str, Any]:
    """Settings applied when a child joins a family."""
    defaults = PARENTAL_CONTROL_DEFAULTS.get(supervision_mode, PARENTAL_CONTROL_DEFAULTS["guided"])
    return {
        "supervision_mode": supervision_mode,
        "daily_time_limit_minutes": defaults["daily_time_limit_minutes"],
        "daily_credit_limit": defaults["daily_credit_limit"],
        "cumulative_credits": False,
        "quiet_hours_start": DEFAULT_QUIET_HOURS_START,
        "quiet_hours_end": DEFAULT_QUIET_HOURS_END,
    }


class ParentalControlsService:

    def __init__(self, db):
        self.db = db

    async def get(self, organization_id: str, child_user_id: str) -> Optional[Dict[str, Any]]:
        return await self.db.parental_controls.find_one(
            {"organization_id": organization_id, "child_user_id": child_user_id},
            {"_id": 0}
        )

    async def upsert(
        self,
        organization_id: str,
        child_user_id: str,
        settings: Union[ParentalControlsUpdate, Dict[str, Any]],
        updated_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create or update a child's controls. Only the given fields change.

        Turning cumulative credits on starts the rollover window now;
        turning it off clears it.
        """
        if isinstance(settings, ParentalControlsUpdate):
            settings = settings.model_dump(exclude_none=True)
        changes = {k: v for k, v in settings.items() if v is not None}

        if changes.get("daily_credit_limit") is not None and changes["daily_credit_limit"] < 0:
            raise InvalidAmount("daily_credit_limit must not be negative")

        now = datetime.now(timezone.utc).isoformat()
        existing = await self.get(organization_id, child_user_id)

        if "cumulative_credits" in changes:
            if not changes["cumulative_credits"]:
                changes["cumulative_since"] = None
            elif not (existing or {}).get("cumulative_credits"):
                changes["cumulative_since"] = now

        merged = {**(existing or {}), **changes}
        merged.update({
            "organization_id": organization_id,
            "child_user_id": child_user_id,
            "updated_by": updated_by,
            "updated_at": now,
        })
        controls = ParentalControls(**merged).model_dump()

        await self.db.parental_controls.update_one(
            {"organization_id": organization_id, "child_user_id": child_user_id},
            {"$set": controls},
            upsert=True
        )

        # Mirrored on the membership for quick lookups
        if changes.get("supervision_mode"):
            await self.db.organization_members.update_one(
                {"organization_id": organization_id, "user_id": child_user_id},
                {"$set": {"supervision_mode": changes["supervision_mode"], "updated_at": now}}
            )

        logger.info(f"Parental controls updated for child {child_user_id} in {organization_id} by {updated_by}")
        return controls

    async def initialize(
        self,
        organization_id: str,
        child_user_id: str,
        supervision_mode: str = "guided",
        parent_user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await self.upsert(
            organization_id,
            child_user_id,
            default_controls(supervision_mode),
            updated_by=parent_user_id,
        )

    async def list_children(self, organization_id: str) -> List[Dict[str, Any]]:
        """Active children of a family with their controls attached."""
        members = await self.db.organization_members.find(
            {"organization_id": organization_id, "status": "active", "role": CHILD_ROLE},
            {"_id": 0}
        ).to_list(length=None)

        children = []
        for member in members:
            member["controls"] = await self.get(organization_id, member["user_id"])
            children.append(member)
        return children
