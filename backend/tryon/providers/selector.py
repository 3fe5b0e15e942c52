"""Candidate ranking for a try-on category.

Pure functions over a snapshot of provider state: no I/O, no caching.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from tryon.core.exceptions import NoProviderAvailable
from tryon.providers.base import DEFAULT_CATEGORY

UNRANKED = 999


@dataclass(frozen=True)
class ProviderState:
    """Point-in-time view of one provider; ``order`` is its registration index."""

    name: str
    enabled: bool
    active: bool
    order: int
    priority: Mapping[str, int] = field(default_factory=dict)

    @property
    def available(self) -> bool:
        return self.enabled and self.active


def rank_for(state: ProviderState, category: str) -> int:
    """Lower is preferred. Missing categories fall back to the default category's rank."""
    if category in state.priority:
        return state.priority[category]
    return state.priority.get(DEFAULT_CATEGORY, UNRANKED)


def select_candidates(category: str, states: Iterable[ProviderState]) -> list[str]:
    """Return available provider names, best first; ties keep registration order.

    Raises:
        NoProviderAvailable: if no provider is both enabled and active
    """
    available = [s for s in states if s.available]
    if not available:
        raise NoProviderAvailable("No active provider available")
    ranked = sorted(available, key=lambda s: (rank_for(s, category), s.order))
    return [s.name for s in ranked]
