from __future__ import annotations

import re
import time
from typing import Optional, Dict, List, Any, Sequence
from urllib.parse import urlparse, parse_qs

import httpx
from loguru import logger

from citerag.config import Settings
from citerag.errors import GenerationFailure
from citerag.logging_config import log_generation
from citerag.metrics import track_upstream_latency
from citerag.models import Source
from citerag.prompt import RAGPrompt

NO_ANSWER = "No answer."


def _sanitize_url(url: str) -> str:
    """Remove or mask sensitive query parameters from URL for logging."""
    try:
        parsed = urlparse(url)
        if not parsed.query:
            return url
        params = parse_qs(parsed.query, keep_blank_values=True)
        for sensitive_key in ("token", "key", "api_key", "password", "secret"):
            if sensitive_key in params:
                params[sensitive_key] = ["***"]
        sanitized_qs = "&".join(f"{k}={v[0]}" for k, v in params.items())
        return f"{parsed.scheme}://{parsed.netloc}{parsed.path}?{sanitized_qs}" if sanitized_qs else f"{parsed.scheme}://{parsed.netloc}{parsed.path}"
    except (ValueError, AttributeError) as e:
        logger.warning(f"Failed to sanitize URL: {e}")
        return url


def _redact_token(text: str) -> str:
    """Redact Bearer token values from log text."""
    return re.sub(r'Bearer\s+[^\s]+', 'Bearer ***', text, flags=re.IGNORECASE)


def _cap_response(text: str, max_len: int = 200) -> str:
    """Cap response body length for logging."""
    if len(text) > max_len:
        return text[:max_len] + f"... ({len(text)-max_len} more bytes)"
    return text


def extract_answer(data: Any) -> str:
    """Pull ``choices[0].message.content``; missing or blank content becomes ``No answer.``"""
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        return NO_ANSWER
    if not isinstance(content, str) or not content.strip():
        return NO_ANSWER
    return content.strip()


class GenerationClient:
    """Single-turn, citation-aware chat completion against an OpenAI-compatible API."""

    def __init__(self, settings: Settings, http: httpx.AsyncClient, request_id: str = "-") -> None:
        self.settings = settings
        self.http = http
        self.request_id = request_id
        self.model = settings.generation_model
        self.chat_url = f"{settings.generation_base_url.rstrip('/')}/chat/completions"

    def build_payload(self, query: str, context: str, sources: Sequence[Source]) -> Dict[str, Any]:
        messages: List[Dict[str, str]] = RAGPrompt.build_messages(query, context, sources)
        return {
            "model": self.model,
            "temperature": self.settings.generation_temperature,
            "messages": messages,
        }

    async def generate(self, query: str, context: str, sources: Sequence[Source]) -> str:
        """
        Ask the generation backend for a grounded, cited answer.

        Args:
            query: Accepted user query
            context: Numbered context window
            sources: Citable sources listed in the prompt

        Returns:
            Raw answer text (``No answer.`` when the backend returns nothing)

        Raises:
            GenerationFailure: non-success status, transport error or undecodable body
        """
        payload = self.build_payload(query, context, sources)
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.settings.generation_api_key}",
        }
        sanitized_url = _sanitize_url(self.chat_url)

        t0 = time.time()
        try:
            resp = await self.http.post(self.chat_url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            error_msg = _redact_token(str(e)) or type(e).__name__
            logger.error(f"Generation POST to {sanitized_url} failed: {error_msg}")
            raise GenerationFailure(f"Generation call failed: {error_msg}", model=self.model) from e
        finally:
            track_upstream_latency("generation", time.time() - t0)

        if not resp.is_success:
            err_text = resp.text
            logger.warning(
                f"Generation POST to {sanitized_url} returned HTTP {resp.status_code}: "
                f"{_redact_token(_cap_response(err_text))}"
            )
            raise GenerationFailure(
                f"Generation call failed: {err_text}",
                model=self.model,
                upstream_status=resp.status_code,
                upstream_body=err_text,
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise GenerationFailure(
                f"Generation call failed: undecodable response: {_cap_response(resp.text)}",
                model=self.model,
                upstream_status=resp.status_code,
                upstream_body=resp.text,
            ) from e

        answer = extract_answer(data)
        log_generation(
            self.request_id,
            self.model,
            int((time.time() - t0) * 1000),
            len(answer),
            len(sources),
        )
        return answer
