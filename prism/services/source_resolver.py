"""Source URL bookkeeping: title resolution, dedup, and the hallucination guard."""
from __future__ import annotations

import asyncio
import html
import re
from typing import Iterable

import httpx

from prism.config import settings
from prism.models.results import DeepListeningResult, GroundingSource, VoiceItem
from prism.services.logger import logger

# Redirect links minted by the search-grounding infrastructure. The model
# cannot fabricate these meaningfully, so they survive validation even when
# no ground-truth URL list exists.
TRUSTED_REDIRECT_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^https://vertexaisearch\.cloud\.google\.com/grounding-api-redirect/"),
)

TITLE_PATTERN = re.compile(r"<title[^>]*>([\s\S]*?)</title>", re.IGNORECASE)
TITLE_CLOSE = re.compile(rb"</title>", re.IGNORECASE)
MAX_TITLE_LENGTH = 199

FETCH_HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; PrismBot/1.0; +https://example.invalid/bot)",
    "Accept": "text/html,application/xhtml+xml",
    "Accept-Language": "ja,en;q=0.8",
}


def normalize_url(url: str) -> str:
    url = url.strip()
    return url[:-1] if url.endswith("/") else url


def is_trusted_redirect(url: str) -> bool:
    return any(pattern.match(url) for pattern in TRUSTED_REDIRECT_PATTERNS)


def dedupe_sources(sources: Iterable[GroundingSource]) -> list[GroundingSource]:
    """Deduplicate by URL; the first occurrence wins."""
    seen: set[str] = set()
    deduped: list[GroundingSource] = []
    for source in sources:
        if not source.url or source.url in seen:
            continue
        seen.add(source.url)
        deduped.append(source)
    return deduped


def known_url_set(sources: Iterable[GroundingSource]) -> set[str]:
    return {source.url for source in sources if source.url}


def _is_known(url: str, known_urls: set[str]) -> bool:
    if url in known_urls:
        return True
    normalized = normalize_url(url)
    return any(normalize_url(known) == normalized for known in known_urls)


def validate_urls(voices: list[VoiceItem], known_urls: set[str]) -> list[VoiceItem]:
    """Strip any sourceUrl that is neither discovered this run nor trusted.

    With an empty ``known_urls`` only trusted redirect links survive.
    """
    validated: list[VoiceItem] = []
    for voice in voices:
        url = voice.source_url.strip()
        if not url:
            validated.append(voice)
            continue
        if (known_urls and _is_known(url, known_urls)) or is_trusted_redirect(url):
            validated.append(voice)
            continue
        logger.warning(f"Stripped unverified source URL: {url}")
        validated.append(voice.model_copy(update={"source_url": "", "source_title": ""}))
    return validated


def validate_result_urls(result: DeepListeningResult, known_urls: set[str]) -> DeepListeningResult:
    return result.model_copy(
        update={
            "positive_hacks": validate_urls(result.positive_hacks, known_urls),
            "negative_pains": validate_urls(result.negative_pains, known_urls),
        }
    )


def apply_resolved_titles(
    result: DeepListeningResult, sources: list[GroundingSource]
) -> DeepListeningResult:
    """Rewrite each voice's sourceTitle with the resolved title for its URL."""
    titles = {normalize_url(source.url): source.title for source in sources if source.title}

    def retitle(voices: list[VoiceItem]) -> list[VoiceItem]:
        updated: list[VoiceItem] = []
        for voice in voices:
            title = titles.get(normalize_url(voice.source_url)) if voice.source_url else None
            updated.append(voice.model_copy(update={"source_title": title}) if title else voice)
        return updated

    return result.model_copy(
        update={
            "positive_hacks": retitle(result.positive_hacks),
            "negative_pains": retitle(result.negative_pains),
        }
    )


def extract_title(raw_html: str) -> str | None:
    match = TITLE_PATTERN.search(raw_html)
    if not match:
        return None
    title = " ".join(html.unescape(match.group(1)).split())
    if not 1 <= len(title) <= MAX_TITLE_LENGTH:
        return None
    return title


async def _read_head(client: httpx.AsyncClient, url: str, max_bytes: int) -> str | None:
    async with client.stream("GET", url) as response:
        if not response.is_success:
            return None
        buffer = bytearray()
        async for chunk in response.aiter_bytes():
            buffer.extend(chunk)
            if len(buffer) >= max_bytes or TITLE_CLOSE.search(buffer):
                break
        encoding = response.encoding or "utf-8"
        return bytes(buffer[:max_bytes]).decode(encoding, errors="replace")


async def fetch_actual_titles(
    sources: list[GroundingSource],
    timeout_ms: int | None = None,
    limit: int | None = None,
    *,
    client: httpx.AsyncClient | None = None,
) -> list[GroundingSource]:
    """Replace source titles with each page's <title>, best effort.

    Only the first ``limit`` sources are fetched, all concurrently. Any
    failure leaves that source's title unchanged.
    """
    timeout_ms = settings.title_fetch_timeout_ms if timeout_ms is None else timeout_ms
    limit = settings.title_fetch_limit if limit is None else limit
    max_bytes = settings.title_fetch_max_bytes
    timeout = timeout_ms / 1000
    if not sources or limit <= 0:
        return list(sources)

    owns_client = client is None
    active_client = client or httpx.AsyncClient(
        timeout=timeout,
        follow_redirects=True,
        headers=FETCH_HEADERS,
    )

    async def resolve(source: GroundingSource) -> GroundingSource:
        try:
            raw = await asyncio.wait_for(
                _read_head(active_client, source.url, max_bytes), timeout=timeout
            )
        except (httpx.HTTPError, httpx.InvalidURL, asyncio.TimeoutError, UnicodeError, LookupError) as exc:
            logger.debug(f"Title fetch failed for {source.url}: {exc!r}")
            return source
        title = extract_title(raw) if raw else None
        return source.model_copy(update={"title": title}) if title else source

    try:
        head = sources[:limit]
        resolved = await asyncio.gather(*(resolve(source) for source in head))
    finally:
        if owns_client:
            await active_client.aclose()
    return [*resolved, *sources[limit:]]
