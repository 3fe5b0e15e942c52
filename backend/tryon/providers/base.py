"""Provider contract and request types shared by every image backend."""

import base64
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from tryon.core.exceptions import InvalidInput
from tryon.providers.output import extract_locator


class Category(StrEnum):
    """Garment placement. Drives provider ranking and prompt shape."""

    UPPER_BODY = "upper_body"
    LOWER_BODY = "lower_body"
    DRESSES = "dresses"

    @classmethod
    def parse(cls, value: str) -> "Category":
        """Validate a raw category string; unknown values are caller errors."""
        try:
            return cls(value)
        except ValueError:
            allowed = ", ".join(c.value for c in cls)
            raise InvalidInput(f"Invalid category: {value}. Must be one of: {allowed}") from None


# Rank lookup falls back to this category when a provider has no entry for the requested one
DEFAULT_CATEGORY = Category.UPPER_BODY


@dataclass(frozen=True)
class ImageInput:
    data: bytes
    content_type: str = "image/jpeg"
    filename: str | None = None

    def to_data_url(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.content_type};base64,{encoded}"


@dataclass(frozen=True)
class GenerationRequest:
    """A single try-on request. Transient; never persisted as-is."""

    user_id: str
    category: Category
    person_image: ImageInput
    garment_image: ImageInput
    provider: str | None = None
    style: str | None = None

    def __post_init__(self):
        if not self.user_id:
            raise InvalidInput("user_id is required")
        if not isinstance(self.category, Category):
            raise InvalidInput(f"Invalid category: {self.category}")
        if not self.person_image.data or not self.garment_image.data:
            raise InvalidInput("Both photos must be uploaded")


@dataclass
class ProviderConfig:
    """Static configuration for one provider.

    ``enabled``/``active`` are defaults; the registry overlays runtime
    overrides on every read.
    """

    enabled: bool = True
    active: bool = True
    priority: dict[str, int] = field(default_factory=dict)
    timeout_seconds: float = 120.0
    model: str = ""
    estimated_seconds: int = 60
    cost_per_image: float = 0.0


class Provider(ABC):
    """An external image-generation backend with a single try-on capability."""

    name: str = ""
    display_name: str = ""

    @abstractmethod
    async def run(self, request: GenerationRequest) -> Any:
        """Call the backend and return its raw output (any shape)."""

    async def invoke(self, request: GenerationRequest) -> str:
        """Run the backend and normalize its output to a result locator."""
        raw = await self.run(request)
        return await extract_locator(self.name, raw)

    async def health(self) -> dict[str, Any]:
        """Backend-specific health details; override to query the remote side."""
        return {"service": self.display_name or self.name}
