from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from prism.api.deps import INVALID_REQUEST, error_response, read_json_body, require_persistence
from prism.api.routes.analyze import build_prompt_set
from prism.errors import InputValidationError
from prism.models.results import CustomPrompts
from prism.services import supabase as db
from prism.services.prompt_store import get_default_prompts

router = APIRouter(prefix="/api/prompts", tags=["prompts"])


@router.get("/defaults")
async def default_prompts():
    """Built-in system prompt and phase templates, for resetting the editor."""
    return get_default_prompts().to_wire()


@router.get("", dependencies=[Depends(require_persistence)])
async def get_prompts():
    stored = await db.get_custom_prompts()
    return {"prompts": stored.to_wire() if stored else None}


@router.put("", dependencies=[Depends(require_persistence)])
async def save_prompts(request: Request):
    try:
        prompts = CustomPrompts.model_validate(await read_json_body(request))
        build_prompt_set(prompts)
    except InputValidationError as e:
        return error_response(e.message)
    except ValueError:
        return error_response(INVALID_REQUEST)
    saved = await db.save_custom_prompts(prompts)
    return {"prompts": saved.to_wire()}


@router.delete("", dependencies=[Depends(require_persistence)])
async def reset_prompts():
    await db.reset_custom_prompts()
    return {"status": "reset"}
