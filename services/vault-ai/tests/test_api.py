"""Tests for the HTTP routes."""

import json
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

import main
from conftest import FakeProvider, RecordingSleep, extraction_json, rate_limit_error, sse
from extraction import ExtractionEngine
from models import ChatContext, ChatStreamRequest, RetryPolicy
from retry import RetryExecutor


class StaticStream:
    def __init__(self, body: bytes):
        self.body = body

    async def aiter_bytes(self):
        yield self.body

    async def aclose(self):
        pass


class StaticTransport:
    def __init__(self, body: bytes):
        self.body = body

    async def open(self, payload):
        return StaticStream(self.body)


@pytest.fixture
def client():
    with TestClient(main.app) as test_client:
        yield test_client


def engine_with(*responses) -> tuple[ExtractionEngine, FakeProvider]:
    provider = FakeProvider(*responses)
    policy = RetryPolicy(max_attempts=1, initial_delay_ms=10)
    return ExtractionEngine(provider, RetryExecutor(policy, sleep=RecordingSleep()), policy), provider


EXTRACT_BODY = {
    "document": {"id": "doc-1", "name": "MSA", "text": "This Agreement is effective as of March 1, 2024"},
    "field": {
        "id": "field-date",
        "name": "Effective Date",
        "type": "date",
        "promptInstruction": "What is the effective date?",
    },
}


class TestHealth:
    def test_health(self, client: TestClient):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"


class TestExtractRoute:
    def test_unconfigured_provider_returns_503(self, client: TestClient):
        with patch.object(main, "_provider", FakeProvider()) as provider:
            provider.configured = False
            resp = client.post("/api/v1/extract", json=EXTRACT_BODY)
        assert resp.status_code == 503

    def test_extract_returns_camel_case_result(self, client: TestClient):
        engine, provider = engine_with(extraction_json(quote="effective as of March 1, 2024"))
        with patch.object(main, "_engine", engine), patch.object(main, "_provider", provider):
            resp = client.post("/api/v1/extract", json=EXTRACT_BODY)

        assert resp.status_code == 200
        data = resp.json()
        assert data["fieldId"] == "field-date"
        assert data["documentId"] == "doc-1"
        assert data["confidence"] == "High"
        assert data["status"] == "needs_review"

    def test_malformed_response_returns_422(self, client: TestClient):
        engine, provider = engine_with("not json")
        with patch.object(main, "_engine", engine), patch.object(main, "_provider", provider):
            resp = client.post("/api/v1/extract", json=EXTRACT_BODY)
        assert resp.status_code == 422

    def test_exhausted_retries_return_503(self, client: TestClient):
        engine, provider = engine_with(rate_limit_error(), rate_limit_error())
        with patch.object(main, "_engine", engine), patch.object(main, "_provider", provider):
            resp = client.post("/api/v1/extract", json=EXTRACT_BODY)
        assert resp.status_code == 503

    def test_bulk_reports_failed_cells(self, client: TestClient):
        engine, provider = engine_with(extraction_json(), "garbage")
        body = {
            "runId": "run-1",
            "documents": [
                {"id": "doc-1", "text": "first"},
                {"id": "doc-2", "text": "second"},
            ],
            "fields": [EXTRACT_BODY["field"]],
        }
        with patch.object(main, "_engine", engine), patch.object(main, "_provider", provider):
            resp = client.post("/api/v1/extract/bulk", json=body)

        assert resp.status_code == 200
        data = resp.json()
        assert data["attempted"] == 2
        assert list(data["results"]) == ["doc-1"]
        assert data["errors"][0]["documentId"] == "doc-2"
        assert data["errors"][0]["value"] == "[Error]"

    def test_cancel_unknown_bulk_run(self, client: TestClient):
        assert client.post("/api/v1/extract/bulk/missing/cancel").status_code == 404


class TestHighlightRoute:
    def test_highlight(self, client: TestClient):
        resp = client.post(
            "/api/v1/citations/highlight",
            json={"sourceText": "The cat sat.\n  on the mat.", "quote": "cat sat on the mat"},
        )
        data = resp.json()
        assert data["matched"] is True
        assert data["matchCount"] == 1
        assert [s["isMatch"] for s in data["segments"]] == [False, True, False]


class TestChatStreamRoute:
    def test_streams_snapshots_then_done(self, client: TestClient):
        transport = StaticTransport(sse({"kind": "content", "text": "Hi"}, "[DONE]"))
        body = {"sessionId": "s-1", "message": "hello", "context": {"projectId": "p-1"}}

        with patch.object(main, "_chat_transport", transport):
            resp = client.post("/api/v1/chat/stream", json=body)

        assert resp.status_code == 200
        records = [line[len("data: "):] for line in resp.text.split("\n\n") if line.startswith("data: ")]
        assert records[-1] == "[DONE]"
        final = json.loads(records[-2])
        assert final["state"] == "completed"
        assert final["message"]["parts"][0]["text"] == "Hi"

    def test_empty_message_rejected(self, client: TestClient):
        body = {"message": "", "context": {"projectId": "p-1"}}
        assert client.post("/api/v1/chat/stream", json=body).status_code == 422

    def test_cancel_unknown_session(self, client: TestClient):
        assert client.post("/api/v1/chat/sessions/nope/cancel").status_code == 404

    @pytest.mark.asyncio
    async def test_unread_response_does_not_hold_session(self):
        transport = StaticTransport(sse({"kind": "content", "text": "Hi"}, "[DONE]"))
        request = ChatStreamRequest(session_id="s-2", message="hello", context=ChatContext(project_id="p-1"))

        with patch.object(main, "_chat_transport", transport):
            await main.chat_stream(request)
            assert "s-2" not in main._chat_sessions

            # A retry for the same session is not rejected as still streaming
            response = await main.chat_stream(request)
            body = [chunk async for chunk in response.body_iterator]

        assert body[-1] == "data: [DONE]\n\n"
        assert "s-2" not in main._chat_sessions
