"""Shared test fixtures for vault AI tests."""

import json
import sys
from pathlib import Path

import pytest

# Add parent directory to path so we can import the modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from models import Document, ExtractionField, FieldType, RetryPolicy  # noqa: E402
from provider_client import ProviderError  # noqa: E402
from retry import RetryExecutor  # noqa: E402


class FakeProvider:
    """Stands in for ProviderClient; replays queued responses or errors."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls: list[dict] = []
        self.configured = True

    async def generate_content(self, model, contents, system_instruction=None, response_schema=None):
        self.calls.append(
            {
                "model": model,
                "contents": contents,
                "system_instruction": system_instruction,
                "response_schema": response_schema,
            }
        )
        if not self.responses:
            raise AssertionError("FakeProvider has no more responses queued")
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response


class RecordingSleep:
    """Replacement for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def rate_limit_error() -> ProviderError:
    return ProviderError("Provider HTTP 429: RESOURCE_EXHAUSTED: quota exceeded", status_code=429)


def extraction_json(**overrides) -> str:
    payload = {
        "value": "2024-03-01",
        "confidence": "High",
        "quote": "This Agreement is effective as of March 1, 2024",
        "page": 1,
        "reasoning": "The effective date is stated in the opening paragraph.",
    }
    payload.update(overrides)
    return json.dumps(payload)


def sse(*frames) -> bytes:
    """Encode frames (dicts or raw payload strings) as a stream body."""
    lines = []
    for frame in frames:
        payload = frame if isinstance(frame, str) else json.dumps(frame)
        lines.append(f"data: {payload}\n\n")
    return "".join(lines).encode("utf-8")


@pytest.fixture
def sample_document() -> Document:
    return Document(
        id="doc-1",
        name="Master Services Agreement.pdf",
        text=(
            "MASTER SERVICES AGREEMENT\n"
            "This Agreement is effective as of March 1, 2024 between Acme Corp\n"
            "and Globex Inc. The total fee is $12,500 payable in\n"
            "  two installments."
        ),
    )


@pytest.fixture
def date_field() -> ExtractionField:
    return ExtractionField(
        id="field-date",
        name="Effective Date",
        type=FieldType.DATE,
        prompt_instruction="What is the effective date of the agreement?",
    )


@pytest.fixture
def fee_field() -> ExtractionField:
    return ExtractionField(
        id="field-fee",
        name="Total Fee",
        type=FieldType.NUMBER,
        prompt_instruction="What is the total fee?",
    )


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def fast_retry(recording_sleep: RecordingSleep) -> RetryExecutor:
    """Retry executor that never actually sleeps."""
    return RetryExecutor(RetryPolicy(max_attempts=2, initial_delay_ms=10), sleep=recording_sleep)
