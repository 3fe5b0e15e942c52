"""Try-on routes: generate, list providers, provider health."""

import structlog
from fastapi import APIRouter, Depends, File, Form, UploadFile

from tryon.api.deps import get_registry, get_tryon_service
from tryon.core.config import get_settings
from tryon.core.exceptions import InvalidInput
from tryon.providers.base import ImageInput
from tryon.providers.registry import ProviderRegistry
from tryon.services.tryon_service import TryOnService

logger = structlog.get_logger(__name__)

router = APIRouter()

ALLOWED_CONTENT_TYPES = {"image/jpeg", "image/jpg", "image/png", "image/webp"}


async def _read_image(upload: UploadFile, field: str) -> ImageInput:
    """Buffer one uploaded photo, rejecting unsupported types and oversized files."""
    content_type = (upload.content_type or "").lower()
    if content_type not in ALLOWED_CONTENT_TYPES:
        raise InvalidInput(f"Unsupported format for {field}: {content_type or 'unknown'}")

    limit = get_settings().max_upload_bytes
    data = await upload.read(limit + 1)
    if len(data) > limit:
        raise InvalidInput(f"{field} exceeds {limit // (1024 * 1024)} MB")
    if not data:
        raise InvalidInput(f"{field} is empty")
    # image/jpg is not a registered type; providers expect image/jpeg in data URLs
    if content_type == "image/jpg":
        content_type = "image/jpeg"
    return ImageInput(data=data, content_type=content_type, filename=upload.filename)


@router.post("/tryon")
async def create_tryon(
    user_id: str = Form(...),
    category: str = Form(...),
    person_image: UploadFile = File(...),
    garment_image: UploadFile = File(...),
    provider: str | None = Form(None),
    style: str | None = Form(None),
    service: TryOnService = Depends(get_tryon_service),
):
    """Generate one try-on image and charge a free trial or a credit for it."""
    person = await _read_image(person_image, "person_image")
    garment = await _read_image(garment_image, "garment_image")

    result = await service.process(user_id, category, person, garment, provider=provider, style=style)
    return {"success": True, **result.to_dict()}


@router.get("/providers")
async def list_providers(registry: ProviderRegistry = Depends(get_registry)):
    """Current provider flags and per-category priorities."""
    providers = []
    for state in await registry.snapshot():
        config = registry.config(state.name)
        providers.append(
            {
                "name": state.name,
                "display_name": registry.get(state.name).display_name,
                "enabled": state.enabled,
                "active": state.active,
                "available": state.available,
                "priority": {str(category): rank for category, rank in state.priority.items()},
                "estimated_seconds": config.estimated_seconds,
            }
        )
    return {"providers": providers}


@router.get("/providers/health")
async def providers_health(registry: ProviderRegistry = Depends(get_registry)):
    return {"providers": await registry.health_check()}
