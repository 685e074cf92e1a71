from __future__ import annotations

import asyncio
from unittest.mock import patch

import httpx
import pytest

from prism.models.results import DeepListeningResult, GroundingSource, VoiceItem
from prism.services import source_resolver
from prism.services.source_resolver import (
    apply_resolved_titles,
    dedupe_sources,
    extract_title,
    fetch_actual_titles,
    validate_result_urls,
    validate_urls,
)

TRUSTED = "https://vertexaisearch.cloud.google.com/grounding-api-redirect/xyz"


def _voice(url: str, title: str = "t") -> VoiceItem:
    return VoiceItem(text="声", source_url=url, source_title=title)


class TestValidateUrls:
    def test_unknown_url_is_stripped(self):
        voices = validate_urls([_voice("https://evil.example/fake", "Fake")], {"https://real.example/a"})
        assert voices[0].source_url == ""
        assert voices[0].source_title == ""
        assert voices[0].text == "声"

    def test_known_url_matches_modulo_trailing_slash(self):
        known = {"https://real.example/a", "https://real.example/b/"}
        voices = validate_urls(
            [_voice("https://real.example/a/"), _voice("https://real.example/b"), _voice("https://real.example/a")],
            known,
        )
        assert [v.source_url for v in voices] == [
            "https://real.example/a/",
            "https://real.example/b",
            "https://real.example/a",
        ]

    def test_trusted_redirect_survives_without_known_urls(self):
        voices = validate_urls([_voice(TRUSTED), _voice("https://real.example/a")], set())
        assert voices[0].source_url == TRUSTED
        assert voices[1].source_url == ""

    def test_empty_url_is_left_alone(self):
        voice = VoiceItem(text="出典なし")
        assert validate_urls([voice], {"https://real.example/a"}) == [voice]

    def test_every_outcome_is_known_trusted_or_empty(self):
        known = {"https://real.example/a", "https://real.example/b"}
        candidates = [
            "https://real.example/a",
            "https://real.example/a/",
            "https://real.example/b//",
            "http://real.example/a",
            "https://real.example/c",
            TRUSTED,
            "https://vertexaisearch.cloud.google.com/other",
            "",
        ]
        for known_set in (known, set()):
            for voice in validate_urls([_voice(url) for url in candidates], known_set):
                url = voice.source_url
                assert (
                    url == ""
                    or url.rstrip("/") in known_set
                    or url in known_set
                    or url.startswith("https://vertexaisearch.cloud.google.com/grounding-api-redirect/")
                )

    def test_validate_result_urls_covers_both_voice_lists(self):
        result = DeepListeningResult(
            positive_hacks=[_voice("https://evil.example/1")],
            negative_pains=[_voice("https://evil.example/2"), _voice("https://real.example/a")],
            market_redefinition="m",
        )
        validated = validate_result_urls(result, {"https://real.example/a"})
        assert [v.source_url for v in validated.positive_hacks] == [""]
        assert [v.source_url for v in validated.negative_pains] == ["", "https://real.example/a"]
        assert validated.market_redefinition == "m"


class TestDedupe:
    def test_first_seen_wins(self):
        sources = [
            GroundingSource(title="first", url="https://a"),
            GroundingSource(title="second", url="https://a"),
            GroundingSource(title="b", url="https://b"),
        ]
        deduped = dedupe_sources(sources)
        assert [(s.title, s.url) for s in deduped] == [("first", "https://a"), ("b", "https://b")]

    def test_idempotent(self):
        sources = [GroundingSource(url=f"https://{i % 3}") for i in range(9)]
        once = dedupe_sources(sources)
        assert dedupe_sources(once) == once


class TestTitles:
    def test_extract_title_unescapes_and_collapses_whitespace(self):
        assert extract_title("<html><TITLE lang='ja'>\n  A &amp;  B\n</TITLE>") == "A & B"

    def test_extract_title_rejects_missing_empty_and_overlong(self):
        assert extract_title("<html><body>no title</body>") is None
        assert extract_title("<title>   </title>") is None
        assert extract_title(f"<title>{'x' * 200}</title>") is None
        assert extract_title(f"<title>{'x' * 199}</title>") == "x" * 199

    def test_apply_resolved_titles_rewrites_matching_voices(self):
        result = DeepListeningResult(
            positive_hacks=[_voice("https://real.example/a/", "guess"), _voice("", "")],
            negative_pains=[_voice("https://other.example", "kept")],
        )
        retitled = apply_resolved_titles(
            result, [GroundingSource(title="Real Title", url="https://real.example/a")]
        )
        assert retitled.positive_hacks[0].source_title == "Real Title"
        assert retitled.positive_hacks[1].source_title == ""
        assert retitled.negative_pains[0].source_title == "kept"

    @pytest.mark.asyncio
    async def test_fetch_actual_titles_is_best_effort(self):
        requested: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requested.append(str(request.url))
            if request.url.host == "ok.example":
                return httpx.Response(200, html="<head><title>本当のタイトル</title></head>")
            if request.url.host == "down.example":
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(500, html="<title>error page</title>")

        sources = [
            GroundingSource(title="ok.example", url="https://ok.example/"),
            GroundingSource(title="down.example", url="https://down.example/"),
            GroundingSource(title="broken.example", url="https://broken.example/"),
            GroundingSource(title="malformed", url="http://[::1"),
            GroundingSource(title="skipped.example", url="https://skipped.example/"),
        ]
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            resolved = await fetch_actual_titles(sources, timeout_ms=1000, limit=4, client=client)

        assert [s.title for s in resolved] == [
            "本当のタイトル",
            "down.example",
            "broken.example",
            "malformed",
            "skipped.example",
        ]
        assert "https://skipped.example/" not in requested
        assert sources[0].title == "ok.example"

    @pytest.mark.asyncio
    async def test_title_beyond_read_cap_is_ignored(self):
        padding = "<meta name=\"x\">" * 20

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, html=f"<html><head>{padding}<title>遠すぎるタイトル</title></head>")

        sources = [GroundingSource(title="元のタイトル", url="https://long.example/")]
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with patch.object(source_resolver.settings, "title_fetch_max_bytes", 64):
                resolved = await fetch_actual_titles(sources, timeout_ms=1000, client=client)

        assert resolved[0].title == "元のタイトル"

    @pytest.mark.asyncio
    async def test_reading_stops_at_closing_title_tag(self):
        async def body():
            yield b"<html><head><title>Early</title>"
            raise RuntimeError("read past </title>")

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, headers={"content-type": "text/html"}, content=body())

        sources = [GroundingSource(title="t", url="https://early.example/")]
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            resolved = await fetch_actual_titles(sources, timeout_ms=1000, client=client)

        assert resolved[0].title == "Early"

    @pytest.mark.asyncio
    async def test_fetch_actual_titles_abandons_slow_sources(self):
        class SlowTransport(httpx.AsyncBaseTransport):
            async def handle_async_request(self, request):
                if request.url.host == "slow.example":
                    await asyncio.sleep(5)
                return httpx.Response(200, html="<title>fast</title>")

        sources = [
            GroundingSource(title="slow", url="https://slow.example"),
            GroundingSource(title="quick", url="https://fast.example"),
        ]
        async with httpx.AsyncClient(transport=SlowTransport()) as client:
            resolved = await fetch_actual_titles(sources, timeout_ms=50, client=client)

        assert [s.title for s in resolved] == ["slow", "fast"]

    @pytest.mark.asyncio
    async def test_fetch_actual_titles_with_no_sources(self):
        assert await fetch_actual_titles([]) == []
