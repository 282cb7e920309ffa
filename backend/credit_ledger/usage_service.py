"""
Usage Service - Single entry point for metered AI calls

Flow:
1. authorize: gate (family children) -> resolve pool -> pricing snapshot -> estimate check
2. provider call (external, supplied by the caller)
3. settle: actual token cost -> debit of the resolved pool (fallback to the
   other pool when the preference allows it)

Nothing is written before the provider returns token counts. A cancelled,
timed-out or failed provider call leaves the ledger untouched.

Usage:
    service = UsageService(db)
    outcome = await service.run(
        user_id=user["id"],
        model_id="gpt-4o-mini",
        provider_call=lambda: adapter.chat(messages),
        prompt=message,
    )
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Optional, Dict, Any, Awaitable, Callable, Union

from .config import POOL_ORGANIZATION, POOL_PERSONAL
from .debiter import UsageDebiter
from .errors import InsufficientCredit, InsufficientOrgCredit, InsufficientPersonalCredit
from .gate import PreconditionGate
from .ledger_store import LedgerStore
from .models import DebitResult, PoolResolution
from .pricing import (
    ESTIMATED_OUTPUT_TOKENS,
    ModelPrice,
    PricingRepository,
    PricingSettings,
    compute_cost,
    estimate_input_tokens,
)
from .resolver import CreditResolver
from .transaction_log import TransactionLogger

logger = logging.getLogger(__name__)

# Preferences that never fall back to the other pool
STRICT_PREFERENCES = ["org_only", "personal_only"]


@dataclass(frozen=True)
class ProviderUsage:
    tokens_input: int
    tokens_output: int

    @classmethod
    def from_response(cls, response: Union["ProviderUsage", Dict[str, Any]]) -> "ProviderUsage":
        if isinstance(response, ProviderUsage):
            return response
        return cls(int(response.get("tokens_input", 0)), int(response.get("tokens_output", 0)))


@dataclass(frozen=True)
class UsageAuthorization:
    request_id: str
    user_id: str
    model_id: str
    resolution: PoolResolution
    pricing: PricingSettings
    price: ModelPrice
    estimated_cost: float


class UsageService:

    def __init__(self, db, debiter: Optional[UsageDebiter] = None):
        self.db = db
        self.store = LedgerStore(db)
        self.transactions = TransactionLogger(db)
        self.gate = PreconditionGate(db, store=self.store, transactions=self.transactions)
        self.resolver = CreditResolver(db, store=self.store, transactions=self.transactions)
        self.pricing = PricingRepository(db)
        self.debiter = debiter or UsageDebiter(db, store=self.store, transactions=self.transactions)

    async def authorize(
        self,
        user_id: str,
        model_id: str,
        prompt: str = "",
        organization_id: Optional[str] = None,
    ) -> UsageAuthorization:
        """
        Everything that must pass before the provider is called.

        Raises:
            GateRejection: quiet hours, daily limit, expired trial
            InsufficientCredit: no pool can cover the estimated cost
            NotFound: unknown profile or model
        """
        await self.gate.enforce(user_id)
        resolution = await self.resolver.resolve_pool(user_id, organization_id)

        settings = await self.pricing.get_settings()
        price = await self.pricing.get_model_price(model_id)
        estimated = compute_cost(price, estimate_input_tokens(prompt), ESTIMATED_OUTPUT_TOKENS, settings)

        if resolution.available_amount < estimated:
            error = InsufficientOrgCredit if resolution.pool == POOL_ORGANIZATION else InsufficientPersonalCredit
            raise error(available=resolution.available_amount, requested=estimated)

        return UsageAuthorization(
            request_id=str(uuid.uuid4()),
            user_id=user_id,
            model_id=model_id,
            resolution=resolution,
            pricing=settings,
            price=price,
            estimated_cost=estimated,
        )

    def _fallback_pool(self, resolution: PoolResolution):
        """The other pool, if this resolution may fall back to it."""
        if resolution.draws_unallocated or resolution.preference in STRICT_PREFERENCES:
            return None
        if resolution.pool == POOL_ORGANIZATION:
            return POOL_PERSONAL, resolution.user_id
        if resolution.member_id:
            return POOL_ORGANIZATION, resolution.member_id
        return None

    async def settle(
        self,
        authorization: UsageAuthorization,
        usage: ProviderUsage,
        description: Optional[str] = None,
    ) -> Optional[DebitResult]:
        """
        Charge the actual cost of a completed provider call.

        Returns:
            DebitResult, or None when the call cost nothing
        """
        cost = compute_cost(authorization.price, usage.tokens_input, usage.tokens_output, authorization.pricing)
        if cost <= 0:
            return None

        resolution = authorization.resolution
        details = {
            "model": authorization.model_id,
            "tokens_input": usage.tokens_input,
            "tokens_output": usage.tokens_output,
            "markup_percentage": authorization.pricing.markup_percentage,
            "pricing_version": authorization.pricing.version,
        }
        description = description or f"AI usage ({authorization.model_id})"

        try:
            return await self.debiter.debit(
                resolution.pool,
                resolution.pool_id,
                cost,
                user_id=authorization.user_id,
                description=description,
                request_id=authorization.request_id,
                details=details,
            )
        except InsufficientCredit as e:
            fallback = self._fallback_pool(resolution)
            if not fallback:
                logger.error(
                    f"LEDGER_UNCOLLECTED_USAGE | user={authorization.user_id} | pool={resolution.pool} | "
                    f"cost={cost} | request_id={authorization.request_id}"
                )
                raise

            pool, pool_id = fallback
            logger.info(f"LEDGER_DEBIT_FALLBACK | user={authorization.user_id} | from={resolution.pool} | to={pool} | reason={e.code}")
            return await self.debiter.debit(
                pool,
                pool_id,
                cost,
                user_id=authorization.user_id,
                description=description,
                request_id=authorization.request_id,
                details={**details, "fallback_from": resolution.pool},
            )

    async def run(
        self,
        user_id: str,
        model_id: str,
        provider_call: Callable[[], Awaitable[Any]],
        prompt: str = "",
        organization_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Authorize, call the provider, settle.

        The provider result must expose tokens_input and tokens_output.
        Exceptions from the provider (including cancellation) propagate and
        nothing is charged.
        """
        authorization = await self.authorize(user_id, model_id, prompt, organization_id)

        response = await provider_call()

        usage = ProviderUsage.from_response(response)
        debit = await self.settle(authorization, usage)
        return {
            "success": True,
            "response": response,
            "request_id": authorization.request_id,
            "pool": debit.pool if debit else authorization.resolution.pool,
            "cost": debit.amount if debit else 0.0,
            "remaining_balance": debit.new_balance if debit else authorization.resolution.available_amount,
            "transaction_id": debit.transaction_id if debit else None,
        }
