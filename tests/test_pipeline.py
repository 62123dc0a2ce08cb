#!/usr/bin/env python3
"""End-to-end tests for the answer pipeline with scripted upstreams."""

import json

import httpx
import pytest

from citerag.errors import ConfigurationError, ValidationError
from citerag.models import ErrorResponse
from citerag.pipeline import EMPTY_EVIDENCE_TEMPLATE, AnswerPipeline, parse_request
from conftest import FakeUpstreams, completion_payload, request_json, search_payload

QUERY = "What is osteoarthritis?"
ANSWER = "Osteoarthritis is the most common form of arthritis [1]. It develops as cartilage wears down [2]."


def _body(payload) -> bytes:
    return json.dumps(payload).encode("utf-8")


async def _post(settings, upstreams, payload=None, raw=None):
    pipeline = AnswerPipeline(settings, transport=upstreams.transport)
    raw_body = raw if raw is not None else _body(payload if payload is not None else {"query": QUERY})
    return await pipeline.handle("POST", raw_body, request_id="test-req")


class TestHappyPath:
    """Cited answer with every encoding and the source list."""

    @pytest.mark.asyncio
    async def test_osteoarthritis_answer(self, settings, osteo_results):
        upstreams = FakeUpstreams(
            search=[httpx.Response(200, json=search_payload(osteo_results))],
            completion=httpx.Response(200, json=completion_payload(ANSWER)),
        )
        result = await _post(settings, upstreams)

        assert result.status == 200
        body = result.payload
        assert "[1](https://docs.test/Intro.pdf)" in body["answer"]
        assert "[2](https://docs.test/Guide.docx)" in body["answer"]
        assert "**Sources**" in body["answer"]
        assert '[1]: https://docs.test/Intro.pdf "Intro.pdf" (p.3)' in body["answer"]

        assert [s["number"] for s in body["sources"]] == [1, 2]
        assert body["sources"][0]["title"] == "Intro.pdf"
        assert body["sources"][1]["page"] == 7

        assert "&#91;1&#93;</a>" in body["answer_html"]
        assert '"Intro (p.3)' in body["answer_hover"]
        assert "[1: Intro (p.3)](https://docs.test/Intro.pdf)" in body["answer_clean"]
        assert "**Sources**" not in body["answer_clean"]

    @pytest.mark.asyncio
    async def test_adjacent_citations_resolve_to_distinct_links(self, settings, osteo_results):
        upstreams = FakeUpstreams(
            search=[httpx.Response(200, json=search_payload(osteo_results))],
            completion=httpx.Response(200, json=completion_payload("It is a joint condition [1][2].")),
        )
        result = await _post(settings, upstreams)

        answer = result.payload["answer"]
        assert answer.startswith(
            "It is a joint condition [1](https://docs.test/Intro.pdf)[2](https://docs.test/Guide.docx)."
        )
        assert '[1]: https://docs.test/Intro.pdf "Intro.pdf" (p.3)' in answer
        assert '[2]: https://docs.test/Guide.docx "Guide.docx" (p.7)' in answer

    @pytest.mark.asyncio
    async def test_upstream_requests(self, settings, osteo_results):
        upstreams = FakeUpstreams(
            search=[httpx.Response(200, json=search_payload(osteo_results))],
            completion=httpx.Response(200, json=completion_payload(ANSWER)),
        )
        await _post(settings, upstreams, {"query": f"  {QUERY}  "})

        assert len(upstreams.search_calls) == 1
        search = upstreams.search_calls[0]
        assert search.url.path == "/api/v1/search/4242"
        assert search.headers["X-API-Key"] == "gx-test-key-0000-1234"
        assert request_json(search) == {"query": QUERY, "n": 5}

        user_prompt = request_json(upstreams.completion_calls[0])["messages"][1]["content"]
        assert "[1] Osteoarthritis is the most common form of arthritis" in user_prompt
        assert "[2] It develops when the protective cartilage" in user_prompt
        assert user_prompt.endswith(f"Question: {QUERY}")

    @pytest.mark.asyncio
    async def test_out_of_range_citation_left_literal(self, settings, osteo_results):
        upstreams = FakeUpstreams(
            search=[httpx.Response(200, json=search_payload(osteo_results))],
            completion=httpx.Response(200, json=completion_payload("Known [1], invented [5].")),
        )
        result = await _post(settings, upstreams)
        assert result.status == 200
        for field in ("answer", "answer_html", "answer_hover", "answer_clean"):
            assert "invented [5]." in result.payload[field]

    @pytest.mark.asyncio
    async def test_backend_context_without_passages_still_generates(self, settings):
        upstreams = FakeUpstreams(
            search=[httpx.Response(200, json=search_payload([], text="Pre-built context"))],
            completion=httpx.Response(200, json=completion_payload("From context.")),
        )
        result = await _post(settings, upstreams)
        assert result.status == 200
        assert result.payload["answer"] == "From context."
        assert result.payload["sources"] == []
        assert "Pre-built context" in request_json(upstreams.completion_calls[0])["messages"][1]["content"]

    @pytest.mark.asyncio
    async def test_empty_completion(self, settings, osteo_results):
        upstreams = FakeUpstreams(
            search=[httpx.Response(200, json=search_payload(osteo_results))],
            completion=httpx.Response(200, json=completion_payload("")),
        )
        result = await _post(settings, upstreams)
        assert result.payload["answer"].startswith("No answer.")


class TestEmptyEvidence:
    @pytest.mark.asyncio
    async def test_no_passages_short_circuits(self, settings):
        upstreams = FakeUpstreams(search=[httpx.Response(200, json=search_payload([]))])
        result = await _post(settings, upstreams)

        expected = EMPTY_EVIDENCE_TEMPLATE.format(query=QUERY)
        assert result.status == 200
        assert result.payload["answer"] == expected
        assert QUERY in result.payload["answer"]
        assert result.payload["answer_clean"] == expected
        assert result.payload["sources"] == []
        assert upstreams.completion_calls == []

    @pytest.mark.asyncio
    async def test_query_markup_escaped_in_html_answer(self, settings):
        query = "<img src=x onerror=alert(1)> [1]"
        upstreams = FakeUpstreams(search=[httpx.Response(200, json=search_payload([]))])
        result = await _post(settings, upstreams, {"query": query})

        assert result.status == 200
        assert "<img" not in result.payload["answer_html"]
        assert "&lt;img src=x onerror=alert(1)&gt; &#91;1&#93;" in result.payload["answer_html"]
        assert result.payload["answer"] == EMPTY_EVIDENCE_TEMPLATE.format(query=query)


class TestValidation:
    """Rejected requests never reach an upstream."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw,error", [
        (b"{not json", "Invalid JSON body"),
        (b"\xff\xfe", "Invalid JSON body"),
        (b"", "Missing 'query' string"),
        (b"{}", "Missing 'query' string"),
        (b'{"query": "   "}', "Missing 'query' string"),
        (b'{"query": 42}', "Missing 'query' string"),
        (b'["What is osteoarthritis?"]', "Missing 'query' string"),
    ])
    async def test_bad_body(self, settings, raw, error):
        upstreams = FakeUpstreams()
        result = await _post(settings, upstreams, raw=raw)
        assert result.status == 400
        assert result.payload == {"error": error}
        assert ErrorResponse.model_validate(result.payload).error == error
        assert upstreams.total_calls == 0

    @pytest.mark.asyncio
    async def test_wrong_method(self, settings):
        upstreams = FakeUpstreams()
        pipeline = AnswerPipeline(settings, transport=upstreams.transport)
        result = await pipeline.handle("GET", b"")
        assert result.status == 405
        assert result.headers["Allow"] == "POST"
        assert result.payload == {"error": "Method not allowed"}
        assert upstreams.total_calls == 0

    @pytest.mark.asyncio
    async def test_preflight(self, settings):
        upstreams = FakeUpstreams()
        result = await AnswerPipeline(settings, transport=upstreams.transport).handle("OPTIONS", b"")
        assert result.status == 204
        assert result.payload is None
        assert upstreams.total_calls == 0

    def test_parse_request(self):
        assert parse_request("post", _body({"query": " hi "})) == "hi"
        with pytest.raises(ValidationError) as exc_info:
            parse_request("PUT", b"")
        assert exc_info.value.status_code == 405


class TestConfiguration:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("missing", ["GROUNDX_API_KEY", "GROUNDX_BUCKET_ID", "OPENAI_API_KEY"])
    async def test_missing_setting_reported_without_calls(self, make_settings, missing):
        upstreams = FakeUpstreams()
        result = await _post(make_settings(**{missing: None}), upstreams)
        assert result.status == 500
        assert result.payload == {"error": f"Missing {missing}"}
        assert upstreams.total_calls == 0

    @pytest.mark.asyncio
    async def test_validation_precedes_configuration(self, make_settings):
        upstreams = FakeUpstreams()
        result = await _post(make_settings(GROUNDX_API_KEY=None), upstreams, raw=b"{}")
        assert result.status == 400

    @pytest.mark.asyncio
    async def test_answer_raises_configuration_error(self, make_settings):
        pipeline = AnswerPipeline(make_settings(OPENAI_API_KEY=None), transport=FakeUpstreams().transport)
        with pytest.raises(ConfigurationError, match="OPENAI_API_KEY"):
            await pipeline.answer(QUERY)


class TestUpstreamFailures:
    @pytest.mark.asyncio
    async def test_retrieval_hard_failure(self, settings):
        upstreams = FakeUpstreams(search=[httpx.Response(429, text="rate limit exceeded")])
        result = await _post(settings, upstreams)
        assert result.status == 502
        assert result.payload["error"].startswith("Retrieval search failed:")
        assert "rate limit exceeded" in result.payload["error"]
        assert upstreams.completion_calls == []

    @pytest.mark.asyncio
    async def test_retrieval_negotiates_past_auth_mismatch(self, settings, osteo_results):
        upstreams = FakeUpstreams(
            search=[
                httpx.Response(401, json={"message": "Invalid API key"}),
                httpx.Response(200, json=search_payload(osteo_results)),
            ],
            completion=httpx.Response(200, json=completion_payload(ANSWER)),
        )
        result = await _post(settings, upstreams)
        assert result.status == 200
        assert len(upstreams.search_calls) == 2

    @pytest.mark.asyncio
    async def test_generation_failure(self, settings, osteo_results):
        upstreams = FakeUpstreams(
            search=[httpx.Response(200, json=search_payload(osteo_results))],
            completion=httpx.Response(500, text="model overloaded"),
        )
        result = await _post(settings, upstreams)
        assert result.status == 502
        assert result.payload == {"error": "Generation call failed: model overloaded"}

    @pytest.mark.asyncio
    async def test_unexpected_error_is_500(self, settings, osteo_results):
        def explode(request):
            raise RuntimeError("boom")

        upstreams = FakeUpstreams(
            search=[httpx.Response(200, json=search_payload(osteo_results))],
            completion=explode,
        )
        result = await _post(settings, upstreams)
        assert result.status == 500
        assert result.payload == {"error": "boom"}
