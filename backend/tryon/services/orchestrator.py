"""GenerationOrchestrator: run a try-on request against ranked providers.

Architecture:
- Candidate order comes from ProviderRegistry.select_candidates (auto mode)
  or is the single provider the caller named (manual mode)
- One bounded attempt per candidate: asyncio.wait_for(provider.invoke, timeout)
- Timeouts, provider exceptions and unrecognized output are all attempt
  failures; auto mode moves on to the next candidate, manual mode stops
- No retry on the same provider and no backoff
- Stateless: safe to share across concurrent requests
"""

import asyncio
import time
from dataclasses import dataclass

import structlog

from tryon.core.exceptions import AllProvidersFailed, ProviderCallFailed, ProviderTimeout
from tryon.providers.base import GenerationRequest
from tryon.providers.registry import ProviderRegistry

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class GenerationOutcome:
    provider: str
    result_locator: str
    fallback: bool
    processing_ms: int
    attempts: tuple[str, ...] = ()


class GenerationOrchestrator:
    def __init__(self, registry: ProviderRegistry):
        self.registry = registry

    async def process(self, request: GenerationRequest) -> GenerationOutcome:
        """Serve ``request``, honouring an explicit provider override if present."""
        if request.provider:
            return await self.process_with_specific_provider(request.provider, request)

        candidates = await self.registry.select_candidates(request.category)
        logger.info("provider_candidates_selected", category=request.category.value, candidates=candidates)
        return await self._run_candidates(candidates, request, allow_fallback=True)

    async def process_with_specific_provider(self, name: str, request: GenerationRequest) -> GenerationOutcome:
        """Bypass ranking; the named provider must still be enabled. No fallback."""
        await self.registry.require_enabled(name)
        logger.info("provider_manual_selection", provider=name, category=request.category.value)
        return await self._run_candidates([name], request, allow_fallback=False)

    async def _run_candidates(
        self,
        candidates: list[str],
        request: GenerationRequest,
        allow_fallback: bool,
    ) -> GenerationOutcome:
        started = time.monotonic()
        failures: list[ProviderCallFailed] = []

        for index, name in enumerate(candidates):
            try:
                locator = await self._attempt(name, request)
            except ProviderCallFailed as exc:
                failures.append(exc)
                logger.warning(
                    "provider_attempt_failed",
                    provider=name,
                    category=request.category.value,
                    reason=exc.reason,
                    error_type=type(exc).__name__,
                    remaining=len(candidates) - index - 1 if allow_fallback else 0,
                )
                if not allow_fallback:
                    break
                continue

            outcome = GenerationOutcome(
                provider=name,
                result_locator=locator,
                fallback=index > 0,
                processing_ms=int((time.monotonic() - started) * 1000),
                attempts=tuple(f.provider for f in failures) + (name,),
            )
            logger.info(
                "generation_succeeded",
                provider=name,
                category=request.category.value,
                fallback=outcome.fallback,
                processing_ms=outcome.processing_ms,
            )
            return outcome

        logger.error(
            "all_providers_failed",
            category=request.category.value,
            attempts=[f.provider for f in failures],
            last_error=failures[-1].reason if failures else None,
        )
        raise AllProvidersFailed(failures)

    async def _attempt(self, name: str, request: GenerationRequest) -> str:
        provider = self.registry.get(name)
        timeout = self.registry.config(name).timeout_seconds
        try:
            return await asyncio.wait_for(provider.invoke(request), timeout=timeout)
        except ProviderCallFailed:
            raise
        except TimeoutError:
            raise ProviderTimeout(name, timeout) from None
        except Exception as exc:
            raise ProviderCallFailed(name, f"{type(exc).__name__}: {exc}") from exc
