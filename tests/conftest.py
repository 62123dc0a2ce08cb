"""Pytest configuration and fixtures for citerag tests."""

import json
from typing import Any, Callable, Dict, List, Optional, Union

import httpx
import pytest

from citerag.config import Settings

TEST_ENV = {
    "GROUNDX_API_KEY": "gx-test-key-0000-1234",
    "GROUNDX_BUCKET_ID": "4242",
    "OPENAI_API_KEY": "sk-test-key-abcdefgh",
    "OPENAI_MODEL": "gpt-4o-mini",
}

GENERATION_HOST = "api.openai.com"


def pytest_configure(config):
    """Register custom pytest markers for test categorization."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (skip with '-m \"not integration\"')"
    )


def search_payload(results: List[Dict[str, Any]], text: Optional[str] = None) -> Dict[str, Any]:
    """Search response in the nested ``search.results`` envelope."""
    search: Dict[str, Any] = {"results": results}
    if text is not None:
        search["text"] = text
    return {"search": search}


def completion_payload(content: Optional[str]) -> Dict[str, Any]:
    return {"choices": [{"index": 0, "message": {"role": "assistant", "content": content}}]}


ScriptedReply = Union[httpx.Response, Callable[[httpx.Request], httpx.Response]]


class FakeUpstreams:
    """Scripted retrieval and generation backends behind one MockTransport.

    Search responses are consumed in order, one per retrieval attempt. Every
    request is recorded so tests can assert on call counts and payloads.
    """

    def __init__(self, search: Optional[List[ScriptedReply]] = None, completion: Optional[ScriptedReply] = None):
        self.search = list(search or [])
        self.completion = completion
        self.search_calls: List[httpx.Request] = []
        self.completion_calls: List[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == GENERATION_HOST:
            self.completion_calls.append(request)
            reply = self.completion
        else:
            self.search_calls.append(request)
            reply = self.search.pop(0) if self.search else None

        if reply is None:
            return httpx.Response(500, text="unexpected upstream call")
        if callable(reply):
            return reply(request)
        return reply

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    @property
    def total_calls(self) -> int:
        return len(self.search_calls) + len(self.completion_calls)


def request_json(request: httpx.Request) -> Dict[str, Any]:
    return json.loads(request.content)


@pytest.fixture
def settings() -> Settings:
    return Settings.from_env(dict(TEST_ENV))


@pytest.fixture
def make_settings():
    """Settings factory: test credentials plus overrides (None removes a key)."""
    def _make(**overrides: Optional[str]) -> Settings:
        env = dict(TEST_ENV)
        for key, value in overrides.items():
            if value is None:
                env.pop(key, None)
            else:
                env[key] = value
        return Settings.from_env(env)
    return _make


@pytest.fixture
def osteo_results() -> List[Dict[str, Any]]:
    """Two GroundX-style results with file names and pages."""
    return [
        {
            "documentId": "doc-1",
            "fileName": "Intro.pdf",
            "sourceUrl": "https://docs.test/Intro.pdf",
            "text": "Osteoarthritis is the most common form of arthritis, affecting the joints.",
            "pageNumber": 3,
            "score": 0.91,
        },
        {
            "documentId": "doc-2",
            "fileName": "Guide.docx",
            "multimodalUrl": "https://docs.test/Guide.docx",
            "text": "It develops when the protective cartilage on the ends of bones wears down.",
            "boundingBoxes": [{"pageNumber": 7}],
            "score": 0.84,
        },
    ]
