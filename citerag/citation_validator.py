"""
Citation checks for generated answers

Compares the ``[n]`` markers in an answer with the numbered Source list:
- citations that reference no source (left as literal text by the renderer)
- sources that were never cited

The check only reports; it never alters the answer.
"""

from __future__ import annotations

import re
from typing import List, Set, Sequence
from dataclasses import dataclass
from loguru import logger

from citerag.models import Source

CITATION_PATTERN = re.compile(r"\[([1-9][0-9]*)\]")


@dataclass
class CitationValidationResult:
    """Result of citation validation."""
    is_valid: bool
    cited_indices: Set[int]  # Citation numbers found in the answer
    available_indices: Set[int]  # Source numbers available
    missing_citations: Set[int]  # Citations without sources
    unused_sources: Set[int]  # Sources not cited
    total_citations: int  # Total citation occurrences


def extract_citation_numbers(text: str) -> List[int]:
    """
    Extract all citation numbers from text like [1], [2], [3].

    Examples:
        >>> extract_citation_numbers("According to [1], the answer is [2].")
        [1, 2]
        >>> extract_citation_numbers("See [1] and [2] for details. Also [1].")
        [1, 2, 1]
    """
    return [int(m) for m in CITATION_PATTERN.findall(text or "")]


def validate_citations(answer: str, sources: Sequence[Source]) -> CitationValidationResult:
    """
    Validate that answer citations match available sources.

    Args:
        answer: Raw generated answer
        sources: Numbered sources given to the generator

    Returns:
        CitationValidationResult
    """
    all_citations = extract_citation_numbers(answer)
    cited_indices = set(all_citations)
    available_indices = {s.number for s in sources}

    missing_citations = cited_indices - available_indices
    unused_sources = available_indices - cited_indices

    result = CitationValidationResult(
        is_valid=not missing_citations,
        cited_indices=cited_indices,
        available_indices=available_indices,
        missing_citations=missing_citations,
        unused_sources=unused_sources,
        total_citations=len(all_citations),
    )

    if missing_citations:
        logger.warning(
            f"Answer cites unknown sources {sorted(missing_citations)} "
            f"(available: {sorted(available_indices) or 'none'}); leaving them as literal text"
        )
    elif sources and not all_citations:
        logger.debug("Answer contains no citations despite having sources")

    return result
