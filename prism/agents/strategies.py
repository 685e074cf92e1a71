from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import AsyncGenerator

from pydantic import ValidationError

from prism.config import settings
from prism.errors import InputValidationError, ResearchAgentError
from prism.llm_client import AgentUpdate, LanguageModelClient, parse_json_payload
from prism.models.events import SSEEvent
from prism.models.results import (
    AnalysisInput,
    DeepListeningResult,
    GroundingSegment,
    GroundingSource,
    ResearchDepth,
)
from prism.services import streaming
from prism.services.logger import logger
from prism.services.progress import ProgressEstimator, plan_for
from prism.services.prompt_store import (
    PromptSet,
    build_agent_research_prompt,
    build_phase1_prompt,
    build_restructure_prompt,
    build_search_queries,
)
from prism.services.source_resolver import known_url_set

NONE_LISTED = "（なし）"


@dataclass
class ResearchOutcome:
    """Phase-1 result plus the ground truth used to check its citations.

    ``known_urls`` is empty for strategies that have no verifiable source list.
    """

    phase1: DeepListeningResult
    sources: list[GroundingSource] = field(default_factory=list)
    known_urls: set[str] = field(default_factory=set)


def format_source_hints(segments: list[GroundingSegment], limit: int | None = None) -> str:
    limit = settings.max_segment_hints if limit is None else limit
    lines = []
    for segment in segments[:limit]:
        text = " ".join(segment.text.split())
        if len(text) > 120:
            text = text[:120] + "…"
        urls = ", ".join(source.url for source in segment.sources)
        lines.append(f"- 「{text}」 → {urls}")
    return "\n".join(lines) or NONE_LISTED


def format_known_urls(sources: list[GroundingSource], limit: int | None = None) -> str:
    limit = settings.max_known_urls_in_prompt if limit is None else limit
    lines = [
        f"- {source.url}（{source.title}）" if source.title else f"- {source.url}"
        for source in sources[:limit]
    ]
    return "\n".join(lines) or NONE_LISTED


class ResearchStrategy:
    """One way of producing the Phase-1 Deep Listening result.

    ``run`` is an async generator of progress events. When it finishes the
    strategy's ``outcome`` holds the structured result and its sources.
    """

    depth: ResearchDepth

    def __init__(
        self,
        llm: LanguageModelClient,
        prompts: PromptSet,
        data: AnalysisInput,
        *,
        debug: bool = False,
    ):
        self.llm = llm
        self.prompts = prompts
        self.data = data
        self.debug = debug
        self.plan = plan_for(self.depth)
        self._outcome: ResearchOutcome | None = None

    async def run(self) -> AsyncGenerator[SSEEvent, None]:
        raise NotImplementedError
        yield  # pragma: no cover

    @property
    def outcome(self) -> ResearchOutcome:
        if self._outcome is None:
            raise RuntimeError(f"{type(self).__name__} has not finished running")
        return self._outcome

    async def _structure(self, prompt: str, *, max_retries: int | None = None) -> DeepListeningResult:
        return await self.llm.generate_json(
            prompt,
            model=self.data.model,
            system_prompt=self.prompts.system_prompt,
            response_type=DeepListeningResult,
            max_retries=max_retries,
            caller=f"phase1.{self.depth.value}",
        )


class StandardResearch(ResearchStrategy):
    """Multi-angle grounded search, then a JSON structuring call."""

    depth = ResearchDepth.STANDARD

    async def run(self) -> AsyncGenerator[SSEEvent, None]:
        queries = build_search_queries(self.data)
        yield streaming.progress(
            1, self.plan.research_start, f"Google検索で生活者の声を{len(queries)}つの観点から調査中..."
        )
        if self.debug:
            yield streaming.debug_log("検索クエリ", queries)

        research = await self.llm.multi_grounded_research(
            queries, model=self.data.model, system_prompt=self.prompts.system_prompt
        )
        yield streaming.progress(
            1,
            self.plan.research_done,
            f"{len(research.all_sources)}件の出典を発見しました。インサイトを分析中...",
        )
        if self.debug:
            yield streaming.debug_log("検索結果", research.combined_text)

        prompt = build_phase1_prompt(
            self.prompts,
            self.data,
            self.depth.value,
            researchData=research.combined_text,
            sourceHints=format_source_hints(research.all_segments),
            knownUrls=format_known_urls(research.all_sources),
            sourceCount=len(research.all_sources),
        )
        phase1 = await self._structure(prompt)
        self._outcome = ResearchOutcome(
            phase1=phase1,
            sources=research.all_sources,
            known_urls=known_url_set(research.all_sources),
        )


class DeepResearch(ResearchStrategy):
    """Search for pages, have the model read them, and parse its JSON."""

    depth = ResearchDepth.DEEP

    async def run(self) -> AsyncGenerator[SSEEvent, None]:
        queries = build_search_queries(self.data)
        yield streaming.progress(
            1, self.plan.research_start, "Google検索で調査対象のWebページを探索中..."
        )

        def build_analysis_prompt(targets: list[GroundingSource], search_text: str) -> str:
            return build_phase1_prompt(
                self.prompts,
                self.data,
                self.depth.value,
                knownUrls=format_known_urls(targets, limit=len(targets)),
                researchData=search_text,
            )

        research = await self.llm.deep_research_content(
            queries,
            build_analysis_prompt,
            model=self.data.model,
            system_prompt=self.prompts.system_prompt,
            max_urls=settings.deep_research_max_urls,
        )
        yield streaming.progress(
            1,
            self.plan.research_done,
            f"{len(research.all_sources)}件のWebページを読み込みました。結果を整理中...",
        )

        try:
            phase1 = DeepListeningResult.model_validate(parse_json_payload(research.combined_text))
        except (json.JSONDecodeError, ValidationError) as exc:
            logger.warning(f"Deep research output was not valid JSON, restructuring once: {exc}")
            if self.debug:
                yield streaming.debug_log("JSON解析失敗（再構成）", str(exc))
            raw_text = research.combined_text.strip() or research.search_text
            phase1 = await self._structure(build_restructure_prompt(raw_text), max_retries=0)

        self._outcome = ResearchOutcome(
            phase1=phase1,
            sources=research.all_sources,
            known_urls=known_url_set(research.all_sources),
        )


class ManualResearch(ResearchStrategy):
    """Structure research text the user pasted in; no network research."""

    depth = ResearchDepth.MANUAL

    async def run(self) -> AsyncGenerator[SSEEvent, None]:
        research_data = (self.data.manual_research_data or "").strip()
        if not research_data:
            raise InputValidationError("リサーチデータを入力してください。")

        yield streaming.progress(1, self.plan.research_start, "リサーチデータを読み込み中...")
        prompt = build_phase1_prompt(
            self.prompts, self.data, self.depth.value, researchData=research_data
        )
        yield streaming.progress(1, self.plan.research_done, "リサーチデータからインサイトを分析中...")
        phase1 = await self._structure(prompt)
        self._outcome = ResearchOutcome(phase1=phase1)


class AgentResearch(ResearchStrategy):
    """Delegate research to the long-running agent, then structure its report."""

    depth = ResearchDepth.AGENT

    async def run(self) -> AsyncGenerator[SSEEvent, None]:
        yield streaming.progress(
            1, self.plan.research_start, "Deep Research エージェントを起動中（数分〜数十分かかります）..."
        )
        estimator = ProgressEstimator(
            self.plan.research_start,
            self.plan.research_done,
            settings.agent_expected_seconds,
        )
        loop = asyncio.get_running_loop()
        started = loop.time()
        message = "Deep Research エージェントが調査中..."

        updates = self.llm.interactions_deep_research(build_agent_research_prompt(self.data))
        pending = asyncio.ensure_future(anext(updates, None))
        report: AgentUpdate | None = None
        try:
            while report is None:
                done, _ = await asyncio.wait({pending}, timeout=settings.agent_progress_tick_seconds)
                if not done:
                    yield streaming.progress(1, estimator.percent_at(loop.time() - started), message)
                    continue
                update = pending.result()
                if update is None:
                    raise ResearchAgentError("Research agent stream ended without a report")
                if update.kind == "complete":
                    report = update
                    break
                message = f"調査中: {_first_line(update.text)}"
                yield streaming.progress(1, estimator.percent_at(loop.time() - started), message)
                pending = asyncio.ensure_future(anext(updates, None))
        finally:
            if not pending.done():
                pending.cancel()
                await asyncio.wait({pending})
            await updates.aclose()

        logger.info(
            f"Research agent finished: {len(report.text)} chars, "
            f"{len(report.thought_summaries)} thought summaries"
        )
        yield streaming.progress(1, self.plan.research_done, "調査レポートを構造化中...")
        if self.debug:
            yield streaming.debug_log("調査レポート", report.text)

        prompt = build_phase1_prompt(
            self.prompts, self.data, self.depth.value, researchData=report.text
        )
        phase1 = await self._structure(prompt)
        self._outcome = ResearchOutcome(phase1=phase1)


def _first_line(text: str, limit: int = 80) -> str:
    line = next((part.strip(" #*") for part in text.splitlines() if part.strip(" #*")), "")
    return line if len(line) <= limit else line[:limit] + "…"


STRATEGIES: dict[ResearchDepth, type[ResearchStrategy]] = {
    ResearchDepth.STANDARD: StandardResearch,
    ResearchDepth.DEEP: DeepResearch,
    ResearchDepth.MANUAL: ManualResearch,
    ResearchDepth.AGENT: AgentResearch,
}


def strategy_for(depth: ResearchDepth) -> type[ResearchStrategy]:
    return STRATEGIES[depth]
