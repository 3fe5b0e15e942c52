"""Image-generation providers, registry and candidate selection."""

from tryon.providers.base import Category, GenerationRequest, ImageInput, Provider, ProviderConfig
from tryon.providers.registry import ProviderRegistry

__all__ = [
    "Category",
    "GenerationRequest",
    "ImageInput",
    "Provider",
    "ProviderConfig",
    "ProviderRegistry",
]
