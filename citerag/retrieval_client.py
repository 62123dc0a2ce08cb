from __future__ import annotations

"""
Retrieval client with attempt-matrix negotiation.

The search backend's wire contract (endpoint path, auth header, identifier
field, response envelope) differs between deployments. Instead of hardcoding
one shape, the client walks an ordered list of attempt descriptors and stops
at the first success. Auth/identifier-shaped errors move on to the next
attempt; anything else aborts immediately.
"""

import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union
from urllib.parse import quote

import httpx
from loguru import logger

from citerag.config import Settings
from citerag.errors import RetrievalFailure
from citerag.logging_config import log_retrieval, log_retrieval_attempt, redact_secrets
from citerag.metrics import track_retrieval_attempt, track_upstream_latency
from citerag.models import Passage, RetrievalResult

PATH_ID = "path"

# (id_field, auth_style) pairs tried before the rest of the product for each host:
# the documented shape, then the shape older deployments were built against
PREFERRED_SHAPES = (
    (PATH_ID, "api_key"),
    ("bucketId", "bearer"),
)

# Case-insensitive signatures of an auth or identifier-shape mismatch
SHAPE_MISMATCH_PATTERNS = [
    re.compile(r"api[\s_-]?key", re.IGNORECASE),
    re.compile(r"unauthori[sz]ed", re.IGNORECASE),
    re.compile(r"authori[sz]ation", re.IGNORECASE),
    re.compile(r"authenticat", re.IGNORECASE),
    re.compile(r"invalid\s+(token|credentials?)", re.IGNORECASE),
    re.compile(
        r"\b(missing|invalid|unknown|required)\b[^.\n]{0,40}?\b(bucket|project|group)[\s_-]?(id|identifier)\b",
        re.IGNORECASE,
    ),
    re.compile(
        r"\b(bucket([\s_-]?id)?|(project|group)[\s_-]?id)\b[^.\n]{0,40}?\b(missing|invalid|required|not\s+found|does\s+not\s+exist)\b",
        re.IGNORECASE,
    ),
]


class AuthStyle(str, Enum):
    """How the retrieval API key is presented."""
    API_KEY = "api_key"
    BEARER = "bearer"
    TOKEN = "token"


@dataclass(frozen=True)
class RetrievalAttempt:
    """One (endpoint, auth style, body shape) combination of the attempt matrix."""

    base_url: str
    auth_style: str
    id_field: str = PATH_ID

    def url(self, identifier: str) -> str:
        base = self.base_url.rstrip("/")
        if self.id_field == PATH_ID:
            return f"{base}/v1/search/{quote(str(identifier), safe='')}"
        return f"{base}/v1/search"

    def headers(self, api_key: str) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.auth_style == AuthStyle.API_KEY.value:
            headers["X-API-Key"] = api_key
        elif self.auth_style == AuthStyle.BEARER.value:
            headers["Authorization"] = f"Bearer {api_key}"
        elif self.auth_style == AuthStyle.TOKEN.value:
            headers["Authorization"] = f"Token {api_key}"
        else:
            raise ValueError(f"Unsupported auth style: {self.auth_style}")
        return headers

    def body(self, query: str, identifier: str, num_results: int) -> Dict[str, Any]:
        if self.id_field == PATH_ID:
            return {"query": query, "n": num_results}
        return {
            self.id_field: coerce_identifier(identifier),
            "query": query,
            "numResults": num_results,
        }

    @property
    def label(self) -> str:
        return f"{self.base_url} [{self.id_field}/{self.auth_style}]"


def coerce_identifier(raw: str) -> Union[int, str]:
    """Numeric identifiers are sent as JSON numbers, anything else as strings."""
    text = str(raw).strip()
    return int(text) if text.isdigit() else text


def build_attempt_matrix(settings: Settings) -> List[RetrievalAttempt]:
    """
    Ordered attempt matrix: host, then identifier shape, then auth style.

    Within each host the preferred shapes come first when both of their axes
    are enabled. The list is truncated to ``retrieval_max_attempts`` when set.
    """
    attempts: List[RetrievalAttempt] = []
    for base_url in settings.retrieval_base_urls():
        combos = [
            (id_field, auth)
            for id_field, auth in PREFERRED_SHAPES
            if id_field in settings.retrieval_id_fields and auth in settings.retrieval_auth_styles
        ]
        for id_field in settings.retrieval_id_fields:
            for auth in settings.retrieval_auth_styles:
                if (id_field, auth) not in combos:
                    combos.append((id_field, auth))
        attempts.extend(RetrievalAttempt(base_url, auth, id_field) for id_field, auth in combos)

    if settings.retrieval_max_attempts:
        attempts = attempts[: settings.retrieval_max_attempts]
    return attempts


def is_shape_mismatch(error_text: str) -> bool:
    """True when an error body looks like a wrong auth scheme or identifier shape."""
    if not error_text:
        return False
    return any(p.search(error_text) for p in SHAPE_MISMATCH_PATTERNS)


# ============================================================================
# Response normalization
# ============================================================================


def _first_str(raw: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        val = raw.get(key)
        if isinstance(val, str) and val.strip():
            return val.strip()
    return None


def _positive_int(val: Any) -> Optional[int]:
    try:
        num = int(val)
    except (TypeError, ValueError, OverflowError):
        return None
    return num if num > 0 else None


def _extract_page(raw: Dict[str, Any]) -> Optional[int]:
    for key in ("pageNumber", "page"):
        page = _positive_int(raw.get(key))
        if page:
            return page
    boxes = raw.get("boundingBoxes")
    if isinstance(boxes, list):
        for box in boxes:
            if isinstance(box, dict):
                page = _positive_int(box.get("pageNumber"))
                if page:
                    return page
    return None


def _parse_passage(raw: Any) -> Optional[Passage]:
    if not isinstance(raw, dict):
        return None

    search_data = raw.get("searchData") if isinstance(raw.get("searchData"), dict) else {}
    score = raw.get("score")
    doc_id = raw.get("documentId", raw.get("id"))

    return Passage(
        text=_first_str(raw, "text", "suggestedText") or "",
        source_url=_first_str(raw, "multimodalUrl", "sourceUrl", "url"),
        title=_first_str(search_data, "title") or _first_str(raw, "title"),
        file_name=_first_str(raw, "fileName", "filename"),
        page=_extract_page(raw),
        score=float(score) if isinstance(score, (int, float)) else None,
        document_id=str(doc_id) if doc_id is not None else None,
    )


def normalize_search_response(payload: Any) -> RetrievalResult:
    """
    Extract passages and optional pre-assembled context from a search response.

    Known envelopes, in order: ``search.results``, top-level ``results``,
    ``data.results``. An empty results array is a valid "no evidence" result.

    Raises:
        ValueError: payload matches none of the known envelopes
    """
    if not isinstance(payload, dict):
        raise ValueError(f"unexpected search response type: {type(payload).__name__}")

    envelopes = [payload.get("search"), payload, payload.get("data")]
    for envelope in envelopes:
        if not isinstance(envelope, dict):
            continue
        results = envelope.get("results")
        if not isinstance(results, list):
            continue

        passages = [p for p in (_parse_passage(r) for r in results) if p is not None]
        context_text = _first_str(envelope, "text", "context") or _first_str(payload, "text", "context")
        return RetrievalResult(passages=passages, context_text=context_text)

    raise ValueError(f"no results array in search response (keys: {sorted(payload.keys())})")


# ============================================================================
# Client
# ============================================================================


class RetrievalClient:
    """Search the document index, probing the attempt matrix sequentially."""

    def __init__(
        self,
        settings: Settings,
        http: httpx.AsyncClient,
        attempts: Optional[Sequence[RetrievalAttempt]] = None,
        request_id: str = "-",
    ) -> None:
        self.settings = settings
        self.http = http
        self.attempts = list(attempts) if attempts is not None else build_attempt_matrix(settings)
        self.request_id = request_id

    async def search(self, query: str) -> RetrievalResult:
        """
        Run the attempt matrix until one attempt succeeds or a hard failure occurs.

        Args:
            query: Accepted, trimmed user query

        Returns:
            Normalized RetrievalResult (possibly with zero passages)

        Raises:
            RetrievalFailure: hard failure, malformed success body, or matrix exhausted
        """
        if not self.attempts:
            raise RetrievalFailure("Retrieval search failed: no retrieval attempts configured")

        total = len(self.attempts)
        last_error = ""
        last_status: Optional[int] = None
        t0 = time.time()

        for idx, attempt in enumerate(self.attempts, start=1):
            identifier = self.settings.retrieval_bucket_id
            url = attempt.url(identifier)
            body = attempt.body(query, identifier, self.settings.retrieval_num_results)
            headers = attempt.headers(self.settings.retrieval_api_key)

            t1 = time.time()
            try:
                resp = await self.http.post(url, json=body, headers=headers)
            except httpx.HTTPError as e:
                track_retrieval_attempt("hard_failure")
                log_retrieval_attempt(
                    self.request_id, idx, total, url, attempt.auth_style, attempt.id_field, "transport_error"
                )
                raise RetrievalFailure(
                    f"Retrieval search failed: {redact_secrets(e) or type(e).__name__}",
                    attempts=idx,
                ) from e
            finally:
                track_upstream_latency("retrieval", time.time() - t1)

            if resp.is_success:
                track_retrieval_attempt("success")
                log_retrieval_attempt(
                    self.request_id, idx, total, url, attempt.auth_style, attempt.id_field,
                    "success", resp.status_code,
                )
                try:
                    result = normalize_search_response(resp.json())
                except ValueError as e:
                    # Malformed success body is not retried
                    raise RetrievalFailure(
                        f"Retrieval search failed: malformed response from {attempt.label}: {e}",
                        attempts=idx,
                        upstream_status=resp.status_code,
                        upstream_body=resp.text[:500],
                    ) from e

                log_retrieval(
                    self.request_id,
                    query,
                    int((time.time() - t0) * 1000),
                    len(result.passages),
                    idx,
                    bool(result.context_text),
                )
                return result

            last_error = resp.text
            last_status = resp.status_code

            if not is_shape_mismatch(last_error):
                track_retrieval_attempt("hard_failure")
                log_retrieval_attempt(
                    self.request_id, idx, total, url, attempt.auth_style, attempt.id_field,
                    "hard_failure", resp.status_code,
                )
                raise RetrievalFailure(
                    f"Retrieval search failed: {last_error}",
                    attempts=idx,
                    upstream_status=last_status,
                    upstream_body=last_error,
                )

            track_retrieval_attempt("shape_mismatch")
            log_retrieval_attempt(
                self.request_id, idx, total, url, attempt.auth_style, attempt.id_field,
                "shape_mismatch", resp.status_code,
            )
            logger.debug(f"Retrieval attempt {idx}/{total} rejected ({attempt.label}); trying next shape")

        raise RetrievalFailure(
            f"Retrieval search failed: {last_error}",
            attempts=total,
            upstream_status=last_status,
            upstream_body=last_error,
        )
