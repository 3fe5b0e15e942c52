"""TryOnService: the composition behind POST /api/tryon.

validate -> balance pre-check -> orchestrate providers -> debit + record generation.

A request that fails in the orchestrator never reaches the debit, so users
are not charged for failed generations. Two concurrent requests racing for
the last credit may both generate; the serialized debit lets exactly one
through and the other gets NoBalance.
"""

from dataclasses import dataclass

import structlog

from tryon.core.exceptions import InvalidInput
from tryon.db.models.generation import Generation
from tryon.providers.base import Category, GenerationRequest, ImageInput
from tryon.services.credit_ledger import CreditLedger, DebitResult
from tryon.services.orchestrator import GenerationOrchestrator, GenerationOutcome

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class TryOnResult:
    generation_id: str
    outcome: GenerationOutcome
    debit: DebitResult

    def to_dict(self) -> dict:
        return {
            "generation_id": self.generation_id,
            "result_url": self.outcome.result_locator,
            "provider": self.outcome.provider,
            "fallback": self.outcome.fallback,
            "processing_ms": self.outcome.processing_ms,
            "used_free_trial": self.debit.used_free_trial,
            "credits_used": self.debit.amount,
            "credits_remaining": self.debit.new_balance,
            "free_trials_remaining": self.debit.free_trials_remaining,
        }


class TryOnService:
    def __init__(self, orchestrator: GenerationOrchestrator, ledger: CreditLedger):
        self.orchestrator = orchestrator
        self.ledger = ledger

    async def process(
        self,
        user_id: str,
        category: str,
        person: ImageInput,
        garment: ImageInput,
        provider: str | None = None,
        style: str | None = None,
    ) -> TryOnResult:
        if not user_id:
            raise InvalidInput("user_id is required")
        request = GenerationRequest(
            user_id=user_id,
            category=Category.parse(category),
            person_image=person,
            garment_image=garment,
            provider=provider or None,
            style=style or None,
        )

        await self.ledger.ensure_can_debit(user_id)

        outcome = await self.orchestrator.process(request)

        generation = Generation(
            provider=outcome.provider,
            category=request.category.value,
            result_locator=outcome.result_locator,
            fallback=outcome.fallback,
            processing_ms=outcome.processing_ms,
        )
        try:
            debit = await self.ledger.debit_for_generation(user_id, generation)
        except Exception:
            # The image exists but could not be paid for; it is not returned
            logger.warning(
                "generation_discarded_unpaid",
                account_id=user_id,
                provider=outcome.provider,
                exc_info=True,
            )
            raise

        logger.info(
            "tryon_completed",
            account_id=user_id,
            generation_id=generation.id,
            provider=outcome.provider,
            fallback=outcome.fallback,
            used_free_trial=debit.used_free_trial,
        )
        return TryOnResult(generation_id=generation.id, outcome=outcome, debit=debit)
