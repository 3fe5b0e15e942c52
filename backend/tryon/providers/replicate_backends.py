"""Replicate-hosted try-on backends.

Both models run on Replicate and share one ``replicate.Client``, which the
application builds at startup and passes in.
"""

import random
from abc import abstractmethod
from typing import Any

import replicate

from tryon.core.config import Settings
from tryon.providers.base import Category, GenerationRequest, Provider, ProviderConfig
from tryon.providers.prompts import build_prompt


class ReplicateProvider(Provider):
    def __init__(self, client: replicate.Client, config: ProviderConfig):
        self.client = client
        self.config = config

    @abstractmethod
    def build_input(self, request: GenerationRequest) -> dict[str, Any]:
        """Model-specific input payload."""

    async def run(self, request: GenerationRequest) -> Any:
        return await self.client.async_run(
            self.config.model,
            input=self.build_input(request),
            use_file_output=False,
        )

    async def health(self) -> dict[str, Any]:
        return {"service": self.display_name, "backend": "replicate"}


class IdmVtonProvider(ReplicateProvider):
    """Mask-based garment transfer (IDM-VTON)."""

    name = "idm-vton"
    display_name = "IDM-VTON"

    def build_input(self, request: GenerationRequest) -> dict[str, Any]:
        return {
            "human_img": request.person_image.to_data_url(),
            "garm_img": request.garment_image.to_data_url(),
            "category": request.category.value,
            "garment_des": f"{request.category.value.replace('_', ' ')} clothing item",
            "crop": False,
            "seed": random.randint(0, 999_999),
            "steps": 30,
            "mask_only": False,
            "force_dc": False,
        }


class NanoBananaProvider(ReplicateProvider):
    """Prompt-driven image editing (Gemini 2.5 Flash Image).

    Image order matters: the person first, then the garment; the category
    prompt refers to them as "first" and "second" image.
    """

    name = "nano-banana"
    display_name = "Nano Banana"

    def build_input(self, request: GenerationRequest) -> dict[str, Any]:
        return {
            "prompt": build_prompt(request.category, request.style).prompt,
            "image_input": [
                request.person_image.to_data_url(),
                request.garment_image.to_data_url(),
            ],
            "aspect_ratio": "match_input_image",
            "output_format": "jpg",
        }


def build_replicate_client(settings: Settings) -> replicate.Client:
    return replicate.Client(api_token=settings.replicate_api_token or None)


def build_default_providers(
    client: replicate.Client,
    settings: Settings,
) -> list[tuple[Provider, ProviderConfig]]:
    """Providers in registration order (used as the ranking tie-breaker)."""
    idm_vton = ProviderConfig(
        enabled=settings.idm_vton_enabled,
        active=settings.idm_vton_active,
        priority={Category.UPPER_BODY: 2, Category.LOWER_BODY: 2, Category.DRESSES: 2},
        timeout_seconds=settings.provider_timeout_seconds,
        model=settings.idm_vton_model,
        estimated_seconds=60,
        cost_per_image=0.01,
    )
    nano_banana = ProviderConfig(
        enabled=settings.nano_banana_enabled,
        active=settings.nano_banana_active,
        priority={Category.UPPER_BODY: 1, Category.LOWER_BODY: 1, Category.DRESSES: 1},
        timeout_seconds=settings.provider_timeout_seconds,
        model=settings.nano_banana_model,
        estimated_seconds=45,
        cost_per_image=0.005,
    )
    return [
        (IdmVtonProvider(client, idm_vton), idm_vton),
        (NanoBananaProvider(client, nano_banana), nano_banana),
    ]
