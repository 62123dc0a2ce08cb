"""
Citation rendering for generated answers

Rewrites ``[n]`` markers into presentation encodings using the numbered
Source list. One generic substitution pass serves every encoding; an
encoding only supplies a marker template and, optionally, a trailing
"Sources" block.

Encodings:
- markdown: ``[n](url)`` plus a reference-style Sources block
- hover:    ``[n](url "title (p.N)\\n\\nexcerpt")`` plus the same block
- html:     ``<a href=... title=...>&#91;n&#93;</a>`` plus an ordered list
- clean:    ``[n: short title (p.N)](url)`` with no Sources block

Markers whose number has no Source are left exactly as written.
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional, Sequence, Union
from urllib.parse import unquote

from citerag.citation_validator import CITATION_PATTERN
from citerag.models import RenderedOutput, Source

CLEAN_TITLE_LIMIT = 30

_FILE_EXTENSION = re.compile(
    r"\.(pdf|docx?|pptx?|xlsx?|txt|md|markdown|html?|csv|rtf|odt|json|epub)$", re.IGNORECASE
)
_WHITESPACE = re.compile(r"\s+")

# UTF-8 text that was decoded as cp1252 somewhere upstream
_MOJIBAKE = {
    "â€™": "’",
    "â€˜": "‘",
    "â€œ": "“",
    "â€\x9d": "”",
    "â€“": "–",
    "â€”": "—",
    "â€¦": "…",
    "Ã©": "é",
    "Ã¨": "è",
    "Ã¶": "ö",
    "Ã¼": "ü",
    "Ã¤": "ä",
    "\u00c2\u00a0": " ",
    "\ufffd": "",
}


# ============================================================================
# Title / text helpers
# ============================================================================


def clean_title(title: str) -> str:
    """Title without file extension or encoding artifacts."""
    text = title or ""
    if "%" in text:
        text = unquote(text)
    for bad, good in _MOJIBAKE.items():
        text = text.replace(bad, good)
    text = _FILE_EXTENSION.sub("", text.strip())
    text = text.replace("_", " ").replace("+", " ")
    text = _WHITESPACE.sub(" ", text).strip()
    return text or (title or "").strip()


def truncate(text: str, limit: int = CLEAN_TITLE_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 1].rstrip() + "…"


def page_suffix(source: Source, label: str = "p.") -> str:
    return f" ({label}{source.page})" if source.page else ""


def tooltip_text(source: Source) -> str:
    """``title (p.N)`` followed by the excerpt after a blank line."""
    text = f"{clean_title(source.title)}{page_suffix(source)}"
    if source.excerpt:
        text += f"\n\n{source.excerpt}"
    return text


def _link(source: Source) -> str:
    return source.url or "#"


def _md_url(url: str) -> str:
    return url.replace(" ", "%20").replace("(", "%28").replace(")", "%29")


def _md_title(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"')


def _html(text: str) -> str:
    # Brackets become entities so no literal [n] survives in HTML output
    return html.escape(text, quote=True).replace("[", "&#91;").replace("]", "&#93;")


# ============================================================================
# Encodings
# ============================================================================


@dataclass(frozen=True)
class CitationEncoding:
    """Marker template plus optional trailing Sources block."""

    name: str
    marker: Callable[[Source], str]
    sources_block: Optional[Callable[[Sequence[Source]], str]] = None


def _markdown_marker(src: Source) -> str:
    return f"[{src.number}]({_md_url(_link(src))})"


def _hover_marker(src: Source) -> str:
    return f'[{src.number}]({_md_url(_link(src))} "{_md_title(tooltip_text(src))}")'


def _html_marker(src: Source) -> str:
    return (
        f'<a href="{_html(_link(src))}" title="{_html(tooltip_text(src))}" '
        f'class="citation" target="_blank" rel="noopener noreferrer">&#91;{src.number}&#93;</a>'
    )


def _clean_marker(src: Source) -> str:
    short = truncate(clean_title(src.title)).replace("[", "(").replace("]", ")")
    return f"[{src.number}: {short}{page_suffix(src)}]({_md_url(_link(src))})"


def _markdown_sources_block(sources: Sequence[Source]) -> str:
    lines = [
        f'[{s.number}]: {_md_url(_link(s))} "{_md_title(s.title)}"{page_suffix(s)}'
        for s in sources
    ]
    return "\n\n---\n**Sources**\n" + "\n".join(lines)


def _html_sources_block(sources: Sequence[Source]) -> str:
    items = [
        f'<li id="source-{s.number}"><a href="{_html(_link(s))}" target="_blank" '
        f'rel="noopener noreferrer">{_html(clean_title(s.title))}</a>{_html(page_suffix(s, "p. "))}</li>'
        for s in sources
    ]
    return (
        "\n\n<hr>\n<p><strong>Sources</strong></p>\n<ol class=\"sources\">\n"
        + "\n".join(items)
        + "\n</ol>"
    )


MARKDOWN = CitationEncoding("markdown", _markdown_marker, _markdown_sources_block)
HOVER = CitationEncoding("hover", _hover_marker, _markdown_sources_block)
HTML = CitationEncoding("html", _html_marker, _html_sources_block)
CLEAN = CitationEncoding("clean", _clean_marker, None)

ENCODINGS: Dict[str, CitationEncoding] = {e.name: e for e in (MARKDOWN, HOVER, HTML, CLEAN)}


# ============================================================================
# Rendering
# ============================================================================


def render_encoding(answer: str, sources: Sequence[Source], encoding: CitationEncoding) -> str:
    """
    Substitute every resolvable ``[n]`` in ``answer`` and append the encoding's block.

    The block is appended once: text that already ends with it is not extended.
    """
    by_number = {s.number: s for s in sources}

    def _substitute(match: re.Match) -> str:
        src = by_number.get(int(match.group(1)))
        return encoding.marker(src) if src is not None else match.group(0)

    body = CITATION_PATTERN.sub(_substitute, answer)

    if encoding.sources_block is not None and sources:
        block = encoding.sources_block(sources)
        if not body.endswith(block):
            body += block
    return body


def render(
    answer: str,
    sources: Sequence[Source],
    encodings: Optional[Iterable[Union[str, CitationEncoding]]] = None,
) -> RenderedOutput:
    """
    Render ``answer`` into each requested encoding from the same original text.

    Args:
        answer: Raw generated answer with ``[n]`` markers
        sources: Numbered Source list
        encodings: Encoding names or objects (default: all registered encodings)

    Returns:
        RenderedOutput keyed by encoding name

    Raises:
        ValueError: unknown encoding name
    """
    selected = []
    for enc in encodings if encodings is not None else ENCODINGS.values():
        if isinstance(enc, str):
            if enc not in ENCODINGS:
                raise ValueError(f"Unknown citation encoding: {enc}")
            enc = ENCODINGS[enc]
        selected.append(enc)

    return RenderedOutput(
        encodings={enc.name: render_encoding(answer, sources, enc) for enc in selected}
    )
