from __future__ import annotations

from fastapi import APIRouter

from prism.api.deps import get_available_models
from prism.config import settings
from prism.models.results import ModelChoice, ResearchDepth
from prism.models.schemas import ModelInfo, ModelsResponse

router = APIRouter(prefix="/api/models", tags=["models"])


@router.get("", response_model=ModelsResponse)
async def list_models():
    """Selectable models and research depths for the input form."""
    return ModelsResponse(
        models=[ModelInfo(**m) for m in get_available_models()],
        default_model=ModelChoice.FAST,
        research_depths=[depth.value for depth in ResearchDepth],
        gemini_configured=bool(settings.gemini_api_key),
    )
