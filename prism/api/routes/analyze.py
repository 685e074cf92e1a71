from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import ValidationError
from sse_starlette.sse import EventSourceResponse

from prism.agents.orchestrator import PipelineOrchestrator
from prism.api.deps import INVALID_REQUEST, error_response, get_llm_client, read_json_body
from prism.config import settings
from prism.errors import InputValidationError, PromptTemplateError
from prism.llm_client import LanguageModelClient
from prism.models.results import AnalysisInput, ResearchDepth
from prism.models.schemas import AnalyzeRequest
from prism.services import logger as log_service
from prism.services import supabase as db
from prism.services.prompt_store import PromptSet

router = APIRouter(prefix="/api/analyze", tags=["analyze"])

MISSING_FIELDS = "商材名、カテゴリ、特徴・課題をすべて入力してください。"
MISSING_RESEARCH_DATA = "手動リサーチモードではリサーチデータを入力してください。"
INVALID_TEMPLATE = "カスタムプロンプトが不正です: {detail}"


def check_input(data: AnalysisInput) -> None:
    if data.missing_fields():
        raise InputValidationError(MISSING_FIELDS)
    if data.research_depth == ResearchDepth.MANUAL and not (data.manual_research_data or "").strip():
        raise InputValidationError(MISSING_RESEARCH_DATA)


def build_prompt_set(body_prompts) -> PromptSet:
    prompts = PromptSet.from_custom(body_prompts)
    try:
        prompts.validate()
    except PromptTemplateError as e:
        raise InputValidationError(INVALID_TEMPLATE.format(detail=e)) from e
    return prompts


@router.post("")
async def analyze(request: Request, llm: LanguageModelClient = Depends(get_llm_client)):
    """Run the four-phase analysis and stream its progress as SSE."""
    try:
        body = AnalyzeRequest.model_validate(await read_json_body(request))
        check_input(body.input)
        prompts = build_prompt_set(body.custom_prompts)
    except ValidationError:
        return error_response(INVALID_REQUEST)
    except InputValidationError as e:
        return error_response(e.message)

    data = body.input
    orchestrator = PipelineOrchestrator(llm, debug=body.debug or settings.emit_debug_events)

    async def event_generator():
        async for event in orchestrator.run(data, prompts):
            yield {"data": event.to_json()}

        if orchestrator.result is None or not db.is_configured():
            return
        try:
            await db.save_run(data, orchestrator.result)
        except Exception as e:
            log_service.log_event(
                event_type="db_error",
                message="Failed to save analysis history",
                error=str(e),
            )

    return EventSourceResponse(event_generator(), sep="\n")
