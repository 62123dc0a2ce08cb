"""
Pydantic Data Models for the cited-answer pipeline

Provides structured, type-safe data definitions for:
- Retrieved passages and their citable Source projection
- Retrieval and context-assembly results
- Rendered answer encodings
- API request and response payloads
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, List, Dict


# ============================================================================
# Retrieval Models
# ============================================================================


class Passage(BaseModel):
    """One retrieved evidence unit with text and provenance metadata."""

    model_config = ConfigDict(frozen=True)

    text: str = Field(default="", description="Passage text (may be empty)")
    source_url: Optional[str] = Field(default=None, description="Link back to the source document")
    title: Optional[str] = Field(default=None, description="Explicit document title")
    file_name: Optional[str] = Field(default=None, description="Source file name")
    page: Optional[int] = Field(default=None, gt=0, description="1-based page number")
    score: Optional[float] = Field(default=None, description="Backend confidence score")
    document_id: Optional[str] = Field(default=None, description="Opaque backend document id")


class RetrievalResult(BaseModel):
    """Normalized retrieval output."""

    model_config = ConfigDict(frozen=True)

    passages: List[Passage] = Field(default_factory=list)
    context_text: Optional[str] = Field(default=None, description="Pre-assembled context from the backend")


# ============================================================================
# Citation Models
# ============================================================================


class Source(BaseModel):
    """Numbered, citable projection of a Passage."""

    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "example": {
                "number": 1,
                "title": "Intro.pdf",
                "url": "https://example.com/docs/Intro.pdf",
                "page": 3,
                "excerpt": "Osteoarthritis is a degenerative joint disease...",
            }
        },
    )

    number: int = Field(ge=1, description="1-based citation number")
    title: str = Field(description="Display title")
    url: str = Field(default="", description="Source URL (empty when unknown)")
    page: Optional[int] = Field(default=None, gt=0)
    excerpt: str = Field(default="", max_length=150, description="Short preview of the passage text")


class AssembledContext(BaseModel):
    """Numbered context window plus its parallel Source registry."""

    context: str = ""
    sources: List[Source] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        """No citable evidence and no backend-supplied context."""
        return not self.sources and not self.context.strip()


class RenderedOutput(BaseModel):
    """Parallel encodings of one answer, keyed by encoding name."""

    encodings: Dict[str, str] = Field(default_factory=dict)

    def __getitem__(self, name: str) -> str:
        return self.encodings[name]

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.encodings.get(name, default)


# ============================================================================
# API Models
# ============================================================================


class AskRequest(BaseModel):
    """Body of POST /api/chat."""

    model_config = ConfigDict(json_schema_extra={
        "example": {"query": "What is osteoarthritis?"}
    })

    query: str = Field(..., min_length=1, description="Natural-language question")

    @field_validator("query", mode="before")
    @classmethod
    def strip_query(cls, v):
        if isinstance(v, str):
            return v.strip()
        return v


class AnswerResponse(BaseModel):
    """Successful answer with every citation encoding and the sources used."""

    answer: str = Field(description="Markdown answer with linked citations and a Sources block")
    answer_html: str = Field(description="Answer with HTML anchor citations and tooltips")
    answer_hover: str = Field(description="Markdown answer with hover-title citations")
    answer_clean: str = Field(description="Answer with short inline citations and no Sources block")
    sources: List[Source] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    """Error body returned for every failure."""

    error: str
