"""
Pricing - Token usage to credit cost

Cost = (input_tokens * input_price + output_tokens * output_price) / 1,000,000 * markup_multiplier

Prices come from `ai_models` (per million tokens) with DEFAULT_MODEL_PRICING as
fallback. The markup is read once per request from `app_settings` into an
immutable PricingSettings snapshot, so a settings change mid-request never
changes what that request is charged.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any

from pymongo import ReturnDocument

from .config import (
    DEFAULT_MARKUP_PERCENTAGE,
    DEFAULT_MODEL_PRICING,
    TOKENS_PER_PRICE_UNIT,
    round_credits,
)
from .errors import NotFound

logger = logging.getLogger(__name__)

# Output tokens assumed when estimating before the provider call
ESTIMATED_OUTPUT_TOKENS = 500


@dataclass(frozen=True)
class PricingSettings:
    markup_percentage: float = DEFAULT_MARKUP_PERCENTAGE
    version: int = 0

    @property
    def markup_multiplier(self) -> float:
        return 1 + self.markup_percentage / 100


@dataclass(frozen=True)
class ModelPrice:
    model_id: str
    input_price: float
    output_price: float


def compute_cost(
    price: ModelPrice,
    tokens_input: int,
    tokens_output: int,
    settings: PricingSettings,
) -> float:
    """Credit cost of one provider call, markup included."""
    base_cost = (
        tokens_input * price.input_price + tokens_output * price.output_price
    ) / TOKENS_PER_PRICE_UNIT
    return round_credits(base_cost * settings.markup_multiplier)


def estimate_input_tokens(text: str) -> int:
    """Rough token estimate: four characters per token."""
    return -(-len(text or "") // 4)


class PricingRepository:
    """Loads markup settings and model prices."""

    def __init__(self, db):
        self.db = db

    async def get_settings(self) -> PricingSettings:
        doc = await self.db.app_settings.find_one({"key": "markup"}, {"_id": 0})
        if not doc:
            return PricingSettings()

        value = doc.get("value") or {}
        percentage = value.get("percentage")
        if percentage is None:
            percentage = DEFAULT_MARKUP_PERCENTAGE
        return PricingSettings(markup_percentage=float(percentage), version=int(doc.get("version", 0)))

    async def set_markup(self, percentage: float) -> PricingSettings:
        """Bump the markup, incrementing the settings version."""
        doc = await self.db.app_settings.find_one_and_update(
            {"key": "markup"},
            {"$set": {"value": {"percentage": percentage}}, "$inc": {"version": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
            projection={"_id": 0},
        )
        logger.info(f"Markup set to {percentage}% (version {doc.get('version')})")
        return PricingSettings(markup_percentage=float(percentage), version=int(doc.get("version", 0)))

    async def get_model_price(self, model_id: str) -> ModelPrice:
        """
        Per-million-token prices for a model.

        Raises:
            NotFound: model is neither active in ai_models nor in the default table
        """
        doc = await self.db.ai_models.find_one({"id": model_id, "is_active": True}, {"_id": 0})
        if doc:
            return ModelPrice(model_id, float(doc["input_price"]), float(doc["output_price"]))

        fallback: Optional[Dict[str, Any]] = DEFAULT_MODEL_PRICING.get(model_id)
        if fallback:
            logger.debug(f"Using default pricing for {model_id}")
            return ModelPrice(model_id, fallback["input"], fallback["output"])

        raise NotFound(f"Model not found: {model_id}")
