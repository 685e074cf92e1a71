"""Shared fixtures: a scripted LanguageModelClient and canned phase payloads."""
from __future__ import annotations

import copy
import json
from typing import Any

import httpx
import pytest
import pytest_asyncio
from pydantic import TypeAdapter

from prism.llm_client import AgentUpdate, DeepResearchContent, MultiGroundedResearch
from prism.models.results import AnalysisInput, GroundingSegment, GroundingSource

TRUSTED_URL = "https://vertexaisearch.cloud.google.com/grounding-api-redirect/AbC123"

PHASE1 = {
    "positiveHacks": [
        {"text": "詰め替えボトルがシンデレラフィットして気分が上がる", "sourceUrl": "https://example.com/a/", "sourceTitle": "guess"},
        {"text": "安いから気兼ねなく掃除に使い倒せる", "sourceUrl": TRUSTED_URL, "sourceTitle": "redirect"},
        "ラベルを剥がして自分仕様にしている",
    ],
    "negativePains": [
        {"text": "仕方なく買っている感じがする", "sourceUrl": "https://evil.example/fake", "sourceTitle": "Fake"},
        {"text": "香りが選べないのが残念", "sourceUrl": None, "sourceTitle": None},
    ],
    "marketRedefinition": "現在の市場は『節約』という認識だが、実態は『攻略』で動いている",
}

PHASE2 = [
    {"keyword": "攻略家事", "story": "安さを攻略する快感", "fact": "詰め替え投稿の増加"},
    {"keyword": "ラベルレス美学", "story": "生活感を消す工夫", "fact": "ラベル剥がし動画"},
    {"keyword": "使い倒し主義", "story": "気兼ねなく使える自由", "fact": "大容量の購買増"},
    {"keyword": "第四の候補", "story": "予備", "fact": "予備"},
]

PHASE3 = {
    "quantitative": ["詰め替えに工夫をしていますか", "安さを楽しんでいますか", "ラベルを剥がしますか"],
    "qualitative": ["最近一番うまくいった家事の工夫を教えてください"],
}

PHASE4A = {"reportSummary": "# 調査レポート\n73%が攻略を楽しんでいる"}
PHASE4B = {"pressRelease": "# 消費者は節約を求めているのではない"}
PHASE4C = {"positioning": "御社は今後『攻略の道具』と名乗るべきである", "newsHeadline": "「攻略家事」が広がる"}
PHASE4 = {**PHASE4A, **PHASE4B, **PHASE4C}


def default_responses() -> dict[str, Any]:
    return copy.deepcopy(
        {
            "phase1.standard": PHASE1,
            "phase1.deep": PHASE1,
            "phase1.manual": PHASE1,
            "phase1.agent": PHASE1,
            "phase2": PHASE2,
            "phase2.additional": {"languages": PHASE2[:3]},
            "phase3": PHASE3,
            "phase4.report_summary": PHASE4A,
            "phase4.press_release": PHASE4B,
            "phase4.positioning": PHASE4C,
            "phase4": PHASE4,
        }
    )


def default_sources() -> list[GroundingSource]:
    return [
        GroundingSource(title="example.com", url="https://example.com/a"),
        GroundingSource(title="vertexaisearch.cloud.google.com", url=TRUSTED_URL),
        GroundingSource(title="blog.example.jp", url="https://blog.example.jp/post"),
    ]


class FakeLLM:
    """Scripted stand-in for LanguageModelClient.

    ``responses`` maps a caller name to the raw JSON value to return, or to an
    exception to raise. Every call is recorded in ``calls``.
    """

    api_key = "test-key"

    def __init__(
        self,
        responses: dict[str, Any] | None = None,
        *,
        research: MultiGroundedResearch | None = None,
        deep: DeepResearchContent | None = None,
        agent_updates: list[AgentUpdate | Exception] | None = None,
    ):
        self.responses = default_responses() if responses is None else responses
        sources = default_sources()
        self.research = research or MultiGroundedResearch(
            combined_text="【調査1】\n詰め替えが楽しいという声",
            all_sources=sources,
            all_segments=[GroundingSegment(text="詰め替えが楽しい", sources=sources[:1])],
        )
        self.deep = deep or DeepResearchContent(
            combined_text=json.dumps(PHASE1, ensure_ascii=False),
            all_sources=sources,
            search_text="【調査1】\n詰め替えが楽しいという声",
        )
        self.agent_updates = agent_updates if agent_updates is not None else [
            AgentUpdate(kind="thought", text="## レビューサイトを調査しています"),
            AgentUpdate(
                kind="complete",
                text="# 調査レポート\n詰め替えが楽しいという声が多い。",
                thought_summaries=["レビューサイトを調査しています"],
            ),
        ]
        self.calls: list[dict[str, Any]] = []

    def callers(self) -> list[str]:
        return [call["caller"] for call in self.calls]

    def prompt_for(self, caller: str) -> str:
        return next(call["prompt"] for call in self.calls if call["caller"] == caller)

    async def generate_json(
        self,
        prompt: str,
        *,
        model=None,
        system_prompt: str,
        response_type: Any = None,
        max_retries: int | None = None,
        caller: str = "generate_json",
    ) -> Any:
        self.calls.append(
            {
                "caller": caller,
                "prompt": prompt,
                "model": model,
                "system_prompt": system_prompt,
                "max_retries": max_retries,
            }
        )
        value = self.responses[caller]
        if isinstance(value, Exception):
            raise value
        if isinstance(value, dict) and response_type is not None and getattr(response_type, "__origin__", None) is list:
            value = next(v for v in value.values() if isinstance(v, list))
        return TypeAdapter(response_type).validate_python(value) if response_type else value

    async def multi_grounded_research(self, queries, *, model=None, system_prompt: str):
        self.calls.append({"caller": "multi_grounded_research", "prompt": "\n".join(queries)})
        return self.research

    async def deep_research_content(
        self,
        search_queries,
        build_analysis_prompt,
        *,
        model=None,
        system_prompt: str,
        max_urls: int | None = None,
    ):
        prompt = build_analysis_prompt(self.deep.all_sources, self.deep.search_text)
        self.calls.append({"caller": "deep_research_content", "prompt": prompt})
        return self.deep

    async def interactions_deep_research(self, prompt: str):
        self.calls.append({"caller": "interactions_deep_research", "prompt": prompt})
        for update in self.agent_updates:
            if isinstance(update, Exception):
                raise update
            yield update

    async def aclose(self) -> None:
        return None


@pytest.fixture
def fake_llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def make_llm():
    return FakeLLM


@pytest.fixture
def analysis_input() -> AnalysisInput:
    return AnalysisInput(
        product_name="業務用洗剤",
        category="日用品",
        challenges="安さ以外の価値が伝わらない",
    )


def _title_handler(request: httpx.Request) -> httpx.Response:
    if request.url.host == "example.com":
        return httpx.Response(
            200,
            html="<html><head><title> Resolved &amp; Real </title></head><body></body></html>",
        )
    return httpx.Response(404)


@pytest_asyncio.fixture
async def title_client():
    client = httpx.AsyncClient(transport=httpx.MockTransport(_title_handler))
    yield client
    await client.aclose()
