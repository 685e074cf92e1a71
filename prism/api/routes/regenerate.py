from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import ValidationError
from sse_starlette.sse import EventSourceResponse

from prism.agents.regeneration import RegenerationController
from prism.api.deps import INVALID_REQUEST, error_response, get_llm_client, read_json_body
from prism.api.routes.analyze import build_prompt_set
from prism.errors import InputValidationError
from prism.llm_client import LanguageModelClient
from prism.models.schemas import AddLanguagesResponse, RegenerateAction, RegenerateRequest
from prism.services.logger import logger

router = APIRouter(prefix="/api/regenerate", tags=["regenerate"])

MISSING_DATA = "必要なデータが不足しています。"
UNKNOWN_ACTION = "不明なアクションです。"
ADD_LANGUAGES_FAILED = "社会言語の追加生成に失敗しました: {detail}"


@router.post("")
async def regenerate(request: Request, llm: LanguageModelClient = Depends(get_llm_client)):
    """Add social language candidates, or re-run phases 3-4 for a new selection."""
    try:
        body = RegenerateRequest.model_validate(await read_json_body(request))
    except (ValidationError, InputValidationError):
        return error_response(INVALID_REQUEST)

    if not body.input.product_name or not body.phase1_summary:
        return error_response(MISSING_DATA)

    try:
        prompts = build_prompt_set(body.custom_prompts)
    except InputValidationError as e:
        return error_response(e.message)

    data = body.input.model_copy(update={"model": body.model})
    controller = RegenerationController(llm)

    if body.action == RegenerateAction.ADD_LANGUAGES:
        try:
            languages = await controller.add_language_candidates(
                data,
                prompts,
                body.phase1_summary,
                body.existing_keywords,
                body.direction,
            )
        except Exception as e:
            logger.exception(f"add-languages failed: {e}")
            return error_response(ADD_LANGUAGES_FAILED.format(detail=e), status_code=500)
        return AddLanguagesResponse(languages=languages).to_wire()

    if body.action == RegenerateAction.REGENERATE_PHASES:
        try:
            selected = controller.check_selection(body.selected_languages)
        except InputValidationError as e:
            return error_response(e.message)

        async def event_generator():
            async for event in controller.regenerate_phases(
                data,
                prompts,
                selected,
                body.phase1_summary,
                body.market_redefinition,
            ):
                yield {"data": event.to_json()}

        return EventSourceResponse(event_generator(), sep="\n")

    return error_response(UNKNOWN_ACTION)
