"""Provider registry with runtime enable/active overrides.

Static configuration comes from Settings at process start. An external
configuration process may flip ``enabled``/``active`` through the Redis hash
``tryon:provider:{name}``; every read goes back to Redis so a toggle takes
effect on the next request without a restart.
"""

from typing import Any

import redis.asyncio as redis
import structlog

from tryon.core.exceptions import InvalidInput, ProviderDisabled
from tryon.providers import selector
from tryon.providers.base import Provider, ProviderConfig
from tryon.providers.selector import ProviderState

logger = structlog.get_logger(__name__)

_TRUTHY = {"1", "true", "yes", "on"}


class ProviderRegistry:
    OVERRIDE_PREFIX = "tryon:provider:"

    def __init__(self, redis_client: redis.Redis | None = None):
        self.redis = redis_client
        self._providers: dict[str, Provider] = {}
        self._configs: dict[str, ProviderConfig] = {}

    def register(self, provider: Provider, config: ProviderConfig) -> None:
        if not provider.name:
            raise ValueError("Provider must declare a name")
        if provider.name in self._providers:
            raise ValueError(f"Provider already registered: {provider.name}")
        self._providers[provider.name] = provider
        self._configs[provider.name] = config

    def names(self) -> list[str]:
        return list(self._providers)

    def get(self, name: str) -> Provider:
        try:
            return self._providers[name]
        except KeyError:
            raise InvalidInput(f"Unknown provider: {name}") from None

    def config(self, name: str) -> ProviderConfig:
        self.get(name)
        return self._configs[name]

    def _override_key(self, name: str) -> str:
        return f"{self.OVERRIDE_PREFIX}{name}"

    async def _read_overrides(self, name: str) -> dict[str, str]:
        if self.redis is None:
            return {}
        try:
            return await self.redis.hgetall(self._override_key(name))
        except redis.RedisError as exc:
            logger.warning("provider_override_read_failed", provider=name, error=str(exc))
            return {}

    async def state(self, name: str) -> ProviderState:
        """Current flags for one provider (defaults overlaid with Redis overrides)."""
        config = self.config(name)
        overrides = await self._read_overrides(name)
        enabled = config.enabled
        active = config.active
        if "enabled" in overrides:
            enabled = overrides["enabled"].lower() in _TRUTHY
        if "active" in overrides:
            active = overrides["active"].lower() in _TRUTHY
        return ProviderState(
            name=name,
            enabled=enabled,
            active=active,
            order=self.names().index(name),
            priority=dict(config.priority),
        )

    async def snapshot(self) -> list[ProviderState]:
        return [await self.state(name) for name in self._providers]

    async def select_candidates(self, category: str) -> list[str]:
        return selector.select_candidates(category, await self.snapshot())

    async def require_enabled(self, name: str) -> Provider:
        """Return the named provider, bypassing ranking but not the enabled flag."""
        provider = self.get(name)
        if not (await self.state(name)).enabled:
            raise ProviderDisabled(name)
        return provider

    async def set_override(self, name: str, *, enabled: bool | None = None, active: bool | None = None) -> None:
        self.get(name)
        if self.redis is None:
            raise RuntimeError("Provider overrides require Redis")
        mapping = {}
        if enabled is not None:
            mapping["enabled"] = "1" if enabled else "0"
        if active is not None:
            mapping["active"] = "1" if active else "0"
        if mapping:
            await self.redis.hset(self._override_key(name), mapping=mapping)
            logger.info("provider_override_set", provider=name, **mapping)

    async def clear_override(self, name: str) -> None:
        if self.redis is not None:
            await self.redis.delete(self._override_key(name))

    async def health_check(self) -> dict[str, dict[str, Any]]:
        """Per-provider status; disabled providers are not queried."""
        results: dict[str, dict[str, Any]] = {}
        for name, provider in self._providers.items():
            config = self._configs[name]
            state = await self.state(name)
            if not state.enabled:
                results[name] = {"status": "disabled", "message": "Provider is disabled in config"}
                continue
            try:
                details = await provider.health()
            except Exception as exc:
                logger.warning("provider_health_check_failed", provider=name, error=str(exc))
                results[name] = {"status": "error", "message": str(exc)}
                continue
            results[name] = {
                **details,
                "status": "active" if state.active else "inactive",
                "model": config.model,
                "estimated_seconds": config.estimated_seconds,
                "cost_per_image": config.cost_per_image,
            }
        return results
