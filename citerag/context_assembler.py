"""Turn retrieved passages into a numbered context window and a Source registry."""

from __future__ import annotations

import re
from typing import List, Optional, Sequence
from urllib.parse import unquote, urlparse

from citerag.models import AssembledContext, Passage, Source

MAX_SOURCES = 10
EXCERPT_LIMIT = 150
ELLIPSIS = "…"

_WHITESPACE = re.compile(r"\s+")


def url_basename(url: Optional[str]) -> Optional[str]:
    """Last non-empty path segment of a URL, percent-decoded."""
    if not url:
        return None
    try:
        path = urlparse(url).path
    except ValueError:
        return None
    segments = [s for s in path.split("/") if s]
    return unquote(segments[-1]) if segments else None


def derive_title(passage: Passage, number: int) -> str:
    """Explicit title, then file name, then the URL's last path segment, then ``Source N``."""
    for candidate in (passage.title, passage.file_name, url_basename(passage.source_url)):
        if candidate and candidate.strip():
            return candidate.strip()
    return f"Source {number}"


def make_excerpt(text: str, limit: int = EXCERPT_LIMIT) -> str:
    """Whitespace-collapsed preview of at most ``limit`` characters, ellipsis-suffixed when cut."""
    flat = _WHITESPACE.sub(" ", text or "").strip()
    if len(flat) <= limit:
        return flat
    return flat[: limit - len(ELLIPSIS)].rstrip() + ELLIPSIS


def build_sources(passages: Sequence[Passage], max_sources: int = MAX_SOURCES) -> List[Source]:
    """Number the first ``max_sources`` passages 1..k in retrieval order."""
    return [
        Source(
            number=idx,
            title=derive_title(passage, idx),
            url=passage.source_url or "",
            page=passage.page,
            excerpt=make_excerpt(passage.text),
        )
        for idx, passage in enumerate(passages[:max_sources], start=1)
    ]


def build_context_block(passages: Sequence[Passage]) -> str:
    """``[n] <text>`` blocks separated by blank lines."""
    return "\n\n".join(f"[{idx}] {p.text}" for idx, p in enumerate(passages, start=1))


def assemble(
    passages: Sequence[Passage],
    context_text: Optional[str] = None,
    max_sources: int = MAX_SOURCES,
) -> AssembledContext:
    """
    Build the LLM context and the parallel Source list.

    A backend-supplied context is used verbatim; otherwise the context is
    synthesized from the capped passage list so its numbers match the sources.

    Args:
        passages: Passages in retrieval order
        context_text: Pre-assembled context from the retrieval backend, if any
        max_sources: Cap on citable sources

    Returns:
        AssembledContext; ``is_empty`` when there is neither evidence nor context
    """
    sources = build_sources(passages, max_sources=max_sources)
    if context_text and context_text.strip():
        context = context_text
    else:
        context = build_context_block(passages[:max_sources])
    return AssembledContext(context=context, sources=sources)


def format_sources_listing(sources: Sequence[Source]) -> str:
    """Citable-sources listing for the prompt: ``n. title (p. page) — url``."""
    lines = []
    for src in sources:
        page = f" (p. {src.page})" if src.page else ""
        url = f" — {src.url}" if src.url else ""
        lines.append(f"{src.number}. {src.title}{page}{url}")
    return "\n".join(lines)
