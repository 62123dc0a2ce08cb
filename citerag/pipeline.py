from __future__ import annotations

"""
Request orchestration: validate, retrieve, assemble, generate, render.

One AnswerPipeline is built per process from Settings; every request gets its
own HTTP client and runs its upstream calls one at a time. Failures are typed
by the component that raised them and mapped to a JSON error body here, at
the top level only.
"""

import html
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4

import httpx
from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from citerag.citation_renderer import render
from citerag.citation_validator import validate_citations
from citerag.config import Settings
from citerag.context_assembler import assemble
from citerag.errors import CiteRAGError, ValidationError, format_error_for_logging
from citerag.generation_client import GenerationClient
from citerag.logging_config import log_error, log_structured
from citerag.metrics import track_empty_evidence, track_request
from citerag.models import AnswerResponse, AskRequest, ErrorResponse, Source
from citerag.retrieval_client import RetrievalClient

EMPTY_EVIDENCE_TEMPLATE = "I couldn’t find relevant passages for “{query}”."

# Encoding name -> response field
ANSWER_FIELDS = {
    "markdown": "answer",
    "html": "answer_html",
    "hover": "answer_hover",
    "clean": "answer_clean",
}


class Stage(str, Enum):
    VALIDATING = "validating"
    RETRIEVING = "retrieving"
    SHORT_CIRCUIT_EMPTY = "short_circuit_empty"
    ASSEMBLING = "assembling"
    GENERATING = "generating"
    RENDERING = "rendering"
    RESPONDING = "responding"
    ERROR = "error"


@dataclass
class PipelineResponse:
    """Transport-neutral result of one request."""
    status: int
    payload: Optional[Dict[str, Any]] = None
    headers: Dict[str, str] = field(default_factory=dict)


def parse_request(method: str, raw_body: bytes) -> str:
    """
    Validate method and body, returning the trimmed query.

    Raises:
        ValidationError: wrong method (405), undecodable JSON or missing query (400)
    """
    if method.upper() != "POST":
        raise ValidationError("Method not allowed", status_code=405, context={"method": method})

    try:
        text = raw_body.decode("utf-8") if raw_body else ""
        body = json.loads(text) if text.strip() else {}
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValidationError("Invalid JSON body", cause=e) from e

    try:
        return AskRequest.model_validate(body if isinstance(body, dict) else {}).query
    except PydanticValidationError as e:
        raise ValidationError("Missing 'query' string", field="query", cause=e) from e


def build_answer_response(answer: str, sources: list[Source]) -> AnswerResponse:
    rendered = render(answer, sources, encodings=ANSWER_FIELDS.keys())
    fields = {ANSWER_FIELDS[name]: text for name, text in rendered.encodings.items()}
    return AnswerResponse(sources=list(sources), **fields)


def build_empty_evidence_response(query: str) -> AnswerResponse:
    """Canned no-evidence answer; the query is HTML-escaped in ``answer_html``."""
    response = build_answer_response(EMPTY_EVIDENCE_TEMPLATE.format(query=query), [])
    safe = html.escape(query, quote=True).replace("[", "&#91;").replace("]", "&#93;")
    return response.model_copy(update={"answer_html": EMPTY_EVIDENCE_TEMPLATE.format(query=safe)})


class AnswerPipeline:
    """Query in, cited answer out."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.settings = settings
        self.transport = transport

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.settings.http_timeout_seconds),
            transport=self.transport,
            follow_redirects=True,
        )

    async def answer(self, query: str, request_id: Optional[str] = None) -> AnswerResponse:
        """
        Run retrieval, assembly, generation and rendering for an accepted query.

        Raises:
            ConfigurationError: required settings missing (before any outbound call)
            RetrievalFailure: retrieval backend could not be used
            GenerationFailure: generation backend returned an error
        """
        request_id = request_id or str(uuid4())
        self.settings.require_complete()

        async with self._http_client() as http:
            logger.debug(f"[{request_id}] stage={Stage.RETRIEVING.value}")
            retrieval = RetrievalClient(self.settings, http, request_id=request_id)
            result = await retrieval.search(query)

            assembled = assemble(result.passages, result.context_text, max_sources=self.settings.max_sources)
            if assembled.is_empty:
                logger.debug(f"[{request_id}] stage={Stage.SHORT_CIRCUIT_EMPTY.value}")
                track_empty_evidence()
                log_structured("pipeline_short_circuit", {"request_id": request_id, "query": query[:100]})
                return build_empty_evidence_response(query)

            logger.debug(f"[{request_id}] stage={Stage.GENERATING.value} sources={len(assembled.sources)}")
            generation = GenerationClient(self.settings, http, request_id=request_id)
            answer = await generation.generate(query, assembled.context, assembled.sources)

        logger.debug(f"[{request_id}] stage={Stage.RENDERING.value}")
        validate_citations(answer, assembled.sources)
        return build_answer_response(answer, assembled.sources)

    async def handle(self, method: str, raw_body: bytes, request_id: Optional[str] = None) -> PipelineResponse:
        """Full request lifecycle; never raises, always returns a JSON-able response."""
        request_id = request_id or str(uuid4())
        if method.upper() == "OPTIONS":
            return PipelineResponse(status=204)

        t0 = time.time()
        try:
            query = parse_request(method, raw_body)
            response = await self.answer(query, request_id=request_id)
            result = PipelineResponse(status=200, payload=response.model_dump())
        except CiteRAGError as e:
            log_error(type(e).__name__, e.message, request_id=request_id, details=format_error_for_logging(e))
            headers = {"Allow": "POST"} if e.status_code == 405 else {}
            body = ErrorResponse(error=e.message).model_dump()
            result = PipelineResponse(status=e.status_code, payload=body, headers=headers)
        except Exception as e:
            logger.exception(f"[{request_id}] Handler error: {e}")
            body = ErrorResponse(error=str(e) or "Server error").model_dump()
            result = PipelineResponse(status=500, payload=body)

        logger.info(
            f"[{request_id}] stage={Stage.RESPONDING.value if result.status < 400 else Stage.ERROR.value} "
            f"status={result.status} latency_ms={int((time.time() - t0) * 1000)}"
        )
        track_request(result.status)
        return result
