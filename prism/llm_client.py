"""Gemini client: structured JSON, search grounding, page fetching, research agent.

JSON calls go through Gemini's OpenAI-compatible endpoint with the OpenAI SDK.
Tool-backed calls (Google Search grounding, URL context) use the google-genai
SDK, and the long-running research agent is driven over its SSE job API.
"""
from __future__ import annotations

import asyncio
import json
import time
import typing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable

import httpx
from google.genai import types as genai_types
from pydantic import TypeAdapter

from prism.config import settings
from prism.errors import ConfigurationError, GenerationError, ResearchAgentError
from prism.models.results import GroundingSegment, GroundingSource, ModelChoice
from prism.services import logger as log_service
from prism.services.logger import logger
from prism.services.source_resolver import dedupe_sources

AGENT_FAILED_STATUSES = frozenset({"failed", "cancelled", "canceled", "expired"})
URL_RETRIEVAL_SUCCESS = "URL_RETRIEVAL_STATUS_SUCCESS"


@dataclass
class GroundedContent:
    text: str
    sources: list[GroundingSource] = field(default_factory=list)
    segments: list[GroundingSegment] = field(default_factory=list)


@dataclass
class MultiGroundedResearch:
    combined_text: str
    all_sources: list[GroundingSource] = field(default_factory=list)
    all_segments: list[GroundingSegment] = field(default_factory=list)


@dataclass
class DeepResearchContent:
    combined_text: str
    all_sources: list[GroundingSource] = field(default_factory=list)
    search_text: str = ""


@dataclass
class AgentUpdate:
    """One item from the research agent stream.

    ``kind`` is ``"thought"`` for a progress summary and ``"complete"`` for the
    final item, which carries the full report and every thought summary.
    """

    kind: str
    text: str
    thought_summaries: list[str] = field(default_factory=list)


def parse_json_payload(raw_text: str) -> Any:
    """Parse a model completion as JSON, tolerating code fences and chatter."""
    text = (raw_text or "").strip()
    if text.startswith("```"):
        parts = text.split("```")
        if len(parts) >= 2:
            text = parts[1]
        if text.startswith("json"):
            text = text[4:]
        text = text.strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    starts = [idx for idx in (text.find("{"), text.find("[")) if idx >= 0]
    if not starts:
        raise json.JSONDecodeError("JSON value not found", text, 0)
    start = min(starts)
    end = text.rfind("}" if text[start] == "{" else "]")
    if end <= start:
        raise json.JSONDecodeError("JSON value not found", text, 0)
    return json.loads(text[start : end + 1])


def _unwrap_list(parsed: Any, response_type: Any) -> Any:
    # Models sometimes wrap an expected array in {"items": [...]}.
    if typing.get_origin(response_type) is list and isinstance(parsed, dict):
        lists = [value for value in parsed.values() if isinstance(value, list)]
        if len(lists) == 1:
            return lists[0]
    return parsed


def extract_grounding(response: Any) -> GroundedContent:
    """Pull text, cited sources and span-to-source mappings from a response."""
    text = getattr(response, "text", None) or ""
    candidates = getattr(response, "candidates", None) or []
    metadata = getattr(candidates[0], "grounding_metadata", None) if candidates else None
    if metadata is None:
        return GroundedContent(text=text)

    chunk_sources: list[GroundingSource | None] = []
    for chunk in getattr(metadata, "grounding_chunks", None) or []:
        web = getattr(chunk, "web", None)
        uri = getattr(web, "uri", None) if web is not None else None
        if uri:
            chunk_sources.append(GroundingSource(title=getattr(web, "title", None) or "", url=uri))
        else:
            chunk_sources.append(None)

    segments: list[GroundingSegment] = []
    for support in getattr(metadata, "grounding_supports", None) or []:
        segment = getattr(support, "segment", None)
        segment_text = (getattr(segment, "text", None) or "") if segment is not None else ""
        linked = dedupe_sources(
            chunk_sources[idx]
            for idx in getattr(support, "grounding_chunk_indices", None) or []
            if 0 <= idx < len(chunk_sources) and chunk_sources[idx] is not None
        )
        if segment_text and linked:
            segments.append(GroundingSegment(text=segment_text, sources=linked))

    sources = dedupe_sources(source for source in chunk_sources if source is not None)
    return GroundedContent(text=text, sources=sources, segments=segments)


def extract_fetched_urls(response: Any) -> list[str]:
    candidates = getattr(response, "candidates", None) or []
    metadata = getattr(candidates[0], "url_context_metadata", None) if candidates else None
    urls: list[str] = []
    for item in getattr(metadata, "url_metadata", None) or []:
        url = getattr(item, "retrieved_url", None)
        status = getattr(item, "url_retrieval_status", None)
        status_name = getattr(status, "value", status)
        if url and (status_name is None or str(status_name) == URL_RETRIEVAL_SUCCESS):
            urls.append(url)
    return urls


async def _iter_sse_payloads(response: httpx.Response) -> AsyncIterator[dict[str, Any]]:
    data_lines: list[str] = []
    async for line in response.aiter_lines():
        if line.startswith("data:"):
            data_lines.append(line[5:].strip())
            continue
        if line.strip() or not data_lines:
            continue
        raw = "\n".join(data_lines)
        data_lines = []
        if raw == "[DONE]":
            return
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Skipping malformed research agent event: {raw[:200]}")
            continue
        if isinstance(payload, dict):
            yield payload
    if data_lines:
        try:
            payload = json.loads("\n".join(data_lines))
        except json.JSONDecodeError:
            return
        if isinstance(payload, dict):
            yield payload


class LanguageModelClient:
    """Explicitly constructed Gemini client shared by one app instance."""

    def __init__(
        self,
        api_key: str | None = None,
        *,
        openai_base_url: str | None = None,
        interactions_base_url: str | None = None,
        openai_client: Any | None = None,
        genai_client: Any | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        retry_backoff_seconds: float | None = None,
    ):
        self.api_key = settings.gemini_api_key if api_key is None else api_key
        self.openai_base_url = (openai_base_url or settings.gemini_openai_base_url).strip()
        self.interactions_base_url = (
            interactions_base_url or settings.interactions_base_url
        ).rstrip("/")
        self.retry_backoff_seconds = (
            settings.retry_backoff_seconds
            if retry_backoff_seconds is None
            else retry_backoff_seconds
        )
        self._openai = openai_client
        self._genai = genai_client
        self._transport = transport

    @classmethod
    def from_settings(cls) -> LanguageModelClient:
        return cls(settings.gemini_api_key)

    def _require_key(self) -> str:
        if not self.api_key:
            raise ConfigurationError("GEMINI_API_KEY environment variable is not set")
        return self.api_key

    @property
    def openai(self) -> Any:
        if self._openai is None:
            from openai import AsyncOpenAI

            self._openai = AsyncOpenAI(api_key=self._require_key(), base_url=self.openai_base_url)
        return self._openai

    @property
    def genai(self) -> Any:
        if self._genai is None:
            from google import genai

            self._genai = genai.Client(api_key=self._require_key())
        return self._genai

    async def aclose(self) -> None:
        if self._openai is not None:
            await self._openai.close()

    @staticmethod
    def resolve_model(model: ModelChoice | str) -> str:
        if model == ModelChoice.ACCURATE:
            return settings.accurate_model
        if model == ModelChoice.FAST:
            return settings.fast_model
        return str(model)

    @staticmethod
    def _log_genai_usage(model_id: str, caller: str, response: Any, elapsed_ms: int) -> None:
        usage = getattr(response, "usage_metadata", None)
        log_service.log_llm_call(
            model=model_id,
            caller=caller,
            input_tokens=getattr(usage, "prompt_token_count", 0) or 0,
            output_tokens=getattr(usage, "candidates_token_count", 0) or 0,
            duration_ms=elapsed_ms,
        )

    async def generate_json(
        self,
        prompt: str,
        *,
        model: ModelChoice | str = ModelChoice.FAST,
        system_prompt: str,
        response_type: Any = None,
        max_retries: int | None = None,
        caller: str = "generate_json",
    ) -> Any:
        """Generate a JSON completion, retrying with linear backoff.

        Network errors, unparseable JSON and shape validation failures are all
        retried. ``max_retries`` counts additional attempts after the first.
        """
        retries = settings.json_max_retries if max_retries is None else max(max_retries, 0)
        model_id = self.resolve_model(model)
        adapter = TypeAdapter(response_type) if response_type is not None else None
        last_error: Exception | None = None
        client = self.openai

        for attempt in range(retries + 1):
            t0 = time.monotonic()
            try:
                response = await client.chat.completions.create(
                    model=model_id,
                    messages=[
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": prompt},
                    ],
                    response_format={"type": "json_object"},
                )
                text = response.choices[0].message.content or ""
                parsed = parse_json_payload(text)
                value = adapter.validate_python(_unwrap_list(parsed, response_type)) if adapter else parsed
            except Exception as exc:
                last_error = exc
                elapsed_ms = int((time.monotonic() - t0) * 1000)
                log_service.log_llm_call(
                    model=model_id,
                    caller=caller,
                    duration_ms=elapsed_ms,
                    status="retry" if attempt < retries else "failed",
                    error=str(exc),
                )
                logger.warning(f"Gemini JSON attempt {attempt + 1}/{retries + 1} failed: {exc}")
                if attempt < retries:
                    await asyncio.sleep(self.retry_backoff_seconds * (attempt + 1))
                continue

            usage = getattr(response, "usage", None)
            log_service.log_llm_call(
                model=model_id,
                caller=caller,
                input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                output_tokens=getattr(usage, "completion_tokens", 0) or 0,
                duration_ms=int((time.monotonic() - t0) * 1000),
            )
            return value

        raise GenerationError(
            f"Failed after {retries + 1} attempts: {last_error}",
            attempts=retries + 1,
        )

    async def generate_grounded_content(
        self,
        prompt: str,
        *,
        model: ModelChoice | str = ModelChoice.FAST,
        system_prompt: str,
        caller: str = "grounded_search",
    ) -> GroundedContent:
        """Generate with Google Search grounding. Output is plain text, never JSON."""
        model_id = self.resolve_model(model)
        config = genai_types.GenerateContentConfig(
            system_instruction=system_prompt,
            tools=[genai_types.Tool(google_search=genai_types.GoogleSearch())],
        )
        t0 = time.monotonic()
        response = await self.genai.aio.models.generate_content(
            model=model_id,
            contents=prompt,
            config=config,
        )
        self._log_genai_usage(model_id, caller, response, int((time.monotonic() - t0) * 1000))
        return extract_grounding(response)

    async def multi_grounded_research(
        self,
        queries: list[str],
        *,
        model: ModelChoice | str = ModelChoice.FAST,
        system_prompt: str,
    ) -> MultiGroundedResearch:
        """Run one grounded generation per query concurrently and merge them.

        A failed angle is dropped; the round fails only when every angle fails.
        """
        raw_results = await asyncio.gather(
            *(
                self.generate_grounded_content(
                    query,
                    model=model,
                    system_prompt=system_prompt,
                    caller=f"grounded_search.{idx + 1}",
                )
                for idx, query in enumerate(queries)
            ),
            return_exceptions=True,
        )

        sections: list[str] = []
        sources: list[GroundingSource] = []
        segments: list[GroundingSegment] = []
        errors: list[str] = []
        for idx, item in enumerate(raw_results):
            if isinstance(item, BaseException):
                if isinstance(item, asyncio.CancelledError):
                    raise item
                errors.append(str(item))
                logger.warning(f"Grounded search angle {idx + 1} failed: {item}")
                continue
            sections.append(f"【調査{idx + 1}】\n{item.text.strip()}")
            sources.extend(item.sources)
            segments.extend(item.segments)

        if queries and not sections:
            raise GenerationError(f"All {len(queries)} grounded searches failed: {errors[-1]}")

        return MultiGroundedResearch(
            combined_text="\n\n".join(sections),
            all_sources=dedupe_sources(sources),
            all_segments=segments,
        )

    async def deep_research_content(
        self,
        search_queries: list[str],
        build_analysis_prompt: Callable[[list[GroundingSource], str], str],
        *,
        model: ModelChoice | str = ModelChoice.FAST,
        system_prompt: str,
        max_urls: int | None = None,
    ) -> DeepResearchContent:
        """Search to discover URLs, then have the model read those pages.

        ``build_analysis_prompt`` receives the discovered sources (capped at
        ``max_urls``) and the combined search text. The page-fetching call
        runs in JSON mode, so ``combined_text`` is normally a JSON document.
        """
        max_urls = settings.deep_research_max_urls if max_urls is None else max_urls
        research = await self.multi_grounded_research(
            search_queries, model=model, system_prompt=system_prompt
        )
        targets = research.all_sources[:max_urls]

        model_id = self.resolve_model(model)
        config = genai_types.GenerateContentConfig(
            system_instruction=system_prompt,
            tools=[genai_types.Tool(url_context=genai_types.UrlContext())],
            response_mime_type="application/json",
        )
        t0 = time.monotonic()
        response = await self.genai.aio.models.generate_content(
            model=model_id,
            contents=build_analysis_prompt(targets, research.combined_text),
            config=config,
        )
        self._log_genai_usage(model_id, "url_context", response, int((time.monotonic() - t0) * 1000))

        fetched = [GroundingSource(title="", url=url) for url in extract_fetched_urls(response)]
        return DeepResearchContent(
            combined_text=getattr(response, "text", None) or "",
            all_sources=dedupe_sources([*research.all_sources, *fetched]),
            search_text=research.combined_text,
        )

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self._transport,
            timeout=httpx.Timeout(settings.agent_timeout_seconds, connect=30.0),
        )

    async def interactions_deep_research(self, prompt: str) -> AsyncIterator[AgentUpdate]:
        """Run the autonomous research agent and stream its progress.

        Yields a ``thought`` update per thought-summary delta, then one
        ``complete`` update with the accumulated report.
        """
        headers = {
            "x-goog-api-key": self._require_key(),
            "Accept": "text/event-stream",
        }
        body = {
            "input": prompt,
            "agent": settings.deep_research_agent,
            "background": True,
            "stream": True,
            "agent_config": {"type": "deep-research", "thinking_summaries": "auto"},
        }
        report_parts: list[str] = []
        thoughts: list[str] = []
        final_outputs: list[Any] = []
        t0 = time.monotonic()

        async with self._http_client() as client:
            try:
                async with client.stream(
                    "POST",
                    f"{self.interactions_base_url}/interactions",
                    params={"alt": "sse"},
                    json=body,
                    headers=headers,
                ) as response:
                    if not response.is_success:
                        detail = (await response.aread()).decode("utf-8", errors="replace")
                        raise ResearchAgentError(
                            f"Research agent request failed ({response.status_code}): {detail[:300]}"
                        )
                    async for payload in _iter_sse_payloads(response):
                        event_type = payload.get("event_type") or payload.get("type")
                        if event_type == "content.delta":
                            delta = payload.get("delta") or {}
                            if delta.get("type") == "text":
                                report_parts.append(delta.get("text") or "")
                            elif delta.get("type") == "thought_summary":
                                content = delta.get("content")
                                text = content.get("text") if isinstance(content, dict) else None
                                text = (text or delta.get("text") or "").strip()
                                if text:
                                    thoughts.append(text)
                                    yield AgentUpdate(kind="thought", text=text)
                        elif event_type == "error":
                            error = payload.get("error") or {}
                            message = error.get("message") if isinstance(error, dict) else str(error)
                            raise ResearchAgentError(f"Research agent failed: {message or 'unknown error'}")
                        elif event_type == "interaction.status_update":
                            if str(payload.get("status", "")).lower() in AGENT_FAILED_STATUSES:
                                raise ResearchAgentError(
                                    f"Research agent ended with status {payload.get('status')}"
                                )
                        elif event_type == "interaction.complete":
                            interaction = payload.get("interaction") or {}
                            status = str(interaction.get("status", "")).lower()
                            if status in AGENT_FAILED_STATUSES:
                                raise ResearchAgentError(f"Research agent ended with status {status}")
                            final_outputs = interaction.get("outputs") or []
                            break
            except httpx.HTTPError as exc:
                raise ResearchAgentError(f"Research agent stream failed: {exc}") from exc

        report = "".join(report_parts).strip()
        if not report:
            texts = [item.get("text", "") for item in final_outputs if isinstance(item, dict)]
            report = "\n".join(text for text in texts if text).strip()
        log_service.log_llm_call(
            model=settings.deep_research_agent,
            caller="research_agent",
            duration_ms=int((time.monotonic() - t0) * 1000),
            status="success" if report else "failed",
            error=None if report else "empty report",
        )
        if not report:
            raise ResearchAgentError("Research agent completed with an empty report")
        yield AgentUpdate(kind="complete", text=report, thought_summaries=thoughts)
