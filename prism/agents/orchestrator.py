from __future__ import annotations

import time
from typing import AsyncGenerator

import httpx

from prism.agents.phases import SELECTED_LANGUAGE_COUNT, OutputPhases, summarize_phase1
from prism.agents.strategies import strategy_for
from prism.config import settings
from prism.llm_client import LanguageModelClient
from prism.models.events import SSEEvent
from prism.models.results import AnalysisInput, DeepListeningResult, PrismResult, SocialLanguage
from prism.services import logger as log_service
from prism.services import streaming
from prism.services.logger import logger
from prism.services.progress import plan_for
from prism.services.prompt_store import PromptSet, build_phase2_prompt
from prism.services.source_resolver import (
    apply_resolved_titles,
    fetch_actual_titles,
    validate_result_urls,
)


def _source_urls(result: DeepListeningResult) -> list[str]:
    return [voice.source_url for voice in (*result.positive_hacks, *result.negative_pains)]


def stripped_urls(before: DeepListeningResult, after: DeepListeningResult) -> list[str]:
    """URLs that validation removed, in voice order."""
    return [
        old
        for old, new in zip(_source_urls(before), _source_urls(after))
        if old and not new
    ]


class PipelineOrchestrator:
    """Runs the four-phase analysis for one input.

    Flow:
      1. Deep Listening via the research strategy chosen by ``researchDepth``,
         then title resolution and citation validation
      2. Social language development
      3. Survey design over the first three languages
      4. Report summary, press release, positioning and headline

    ``run`` yields SSEEvents and always ends with exactly one ``result`` or
    ``error`` event. On success ``result`` holds the PrismResult.
    """

    def __init__(
        self,
        llm: LanguageModelClient,
        *,
        debug: bool | None = None,
        title_client: httpx.AsyncClient | None = None,
    ):
        self.llm = llm
        self.debug = settings.emit_debug_events if debug is None else debug
        self.title_client = title_client
        self.result: PrismResult | None = None

    async def run(self, data: AnalysisInput, prompts: PromptSet) -> AsyncGenerator[SSEEvent, None]:
        t0 = time.monotonic()
        log_service.log_event(
            event_type="analysis_started",
            message="Analysis started",
            product=data.product_name[:100],
            depth=data.research_depth.value,
            model=data.model.value,
        )
        try:
            async for event in self._run_phases(data, prompts):
                yield event
        except Exception as exc:
            logger.exception(f"Analysis failed: {exc}")
            log_service.log_event(
                event_type="analysis_failed",
                message="Analysis failed",
                error=str(exc),
                depth=data.research_depth.value,
            )
            yield streaming.error(str(exc) or type(exc).__name__)
            return

        log_service.log_event(
            event_type="analysis_completed",
            message="Analysis completed",
            duration_ms=int((time.monotonic() - t0) * 1000),
            sources=len(self.result.grounding_sources) if self.result else 0,
        )

    async def _run_phases(self, data: AnalysisInput, prompts: PromptSet) -> AsyncGenerator[SSEEvent, None]:
        plan = plan_for(data.research_depth)

        # --- Phase 1 ---
        strategy = strategy_for(data.research_depth)(self.llm, prompts, data, debug=self.debug)
        async for event in strategy.run():
            yield event
        outcome = strategy.outcome

        sources = await fetch_actual_titles(outcome.sources, client=self.title_client)
        phase1 = validate_result_urls(outcome.phase1, outcome.known_urls)
        removed = stripped_urls(outcome.phase1, phase1)
        if removed and self.debug:
            yield streaming.debug_log("未検証の出典URLを除外", removed)
        phase1 = apply_resolved_titles(phase1, sources)

        yield streaming.progress(1, plan.phase1_done, "Deep Listening が完了しました")
        yield streaming.phase_result(1, phase1, grounding_sources=sources)

        # --- Phase 2 ---
        phase1_summary = summarize_phase1(phase1)
        yield streaming.progress(2, plan.phase2_start, "社会言語を開発中...")
        languages: list[SocialLanguage] = await self.llm.generate_json(
            build_phase2_prompt(prompts, data, phase1_summary),
            model=data.model,
            system_prompt=prompts.system_prompt,
            response_type=list[SocialLanguage],
            caller="phase2",
        )
        yield streaming.progress(2, plan.phase2_done, f"{len(languages)}つの社会言語を開発しました")
        yield streaming.phase_result(2, languages)

        # --- Phases 3-4 ---
        outputs = OutputPhases(self.llm, prompts, data, plan)
        async for event in outputs.run(
            phase1_summary,
            phase1.market_redefinition,
            languages[:SELECTED_LANGUAGE_COUNT],
        ):
            yield event

        self.result = PrismResult(
            input=data,
            phase1=phase1,
            phase2=languages,
            phase3=outputs.survey,
            phase4=outputs.output,
            grounding_sources=sources,
        )
        yield streaming.result(self.result)
