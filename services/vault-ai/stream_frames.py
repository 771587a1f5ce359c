"""Stream protocol for the vault chat backend.

The response body is a sequence of ``data: <payload>`` records separated by
newlines. A payload is either the literal ``[DONE]`` terminator or one
JSON-encoded StreamFrame. Chunks from the transport may split records (and
UTF-8 sequences) anywhere, so decoding is incremental.
"""

import codecs
import json
import logging
import re

from pydantic import TypeAdapter, ValidationError

from models import DoneFrame, ReasoningDetails, StreamFrame

logger = logging.getLogger(__name__)

STREAM_TERMINATOR = "[DONE]"
DATA_PREFIX = "data:"

_FRAME_ADAPTER: TypeAdapter[StreamFrame] = TypeAdapter(StreamFrame)

_LABELLED_LINE = re.compile(
    r"^\s*(action|confidence|result|next(?:\s*action)?)\s*:\s*(.*?)\s*$",
    re.IGNORECASE,
)


class FrameParseError(ValueError):
    """A stream record could not be parsed into a StreamFrame."""


class SSEDecoder:
    """Splits incoming byte chunks into record payloads."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes | str) -> list[str]:
        """Add a chunk and return the payloads of every completed record."""
        text = chunk if isinstance(chunk, str) else self._decoder.decode(chunk)
        self._buffer += text
        *lines, self._buffer = self._buffer.split("\n")
        return [p for p in map(_record_payload, lines) if p is not None]

    def flush(self) -> list[str]:
        """Return the payload of a trailing record without a final newline."""
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        payload = _record_payload(tail)
        return [payload] if payload is not None else []


def _record_payload(line: str) -> str | None:
    line = line.strip()
    if not line.startswith(DATA_PREFIX):
        # blank separators, comments, event:/id: lines
        return None
    payload = line[len(DATA_PREFIX):].strip()
    return payload or None


def parse_payload(payload: str) -> StreamFrame:
    """Parse one record payload. The terminator maps to a ``done`` frame."""
    if payload == STREAM_TERMINATOR:
        return DoneFrame(kind="done")

    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise FrameParseError(f"invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise FrameParseError(f"expected a JSON object, got {type(data).__name__}")

    try:
        return _FRAME_ADAPTER.validate_python(data)
    except ValidationError as e:
        raise FrameParseError(f"invalid frame: {e.error_count()} validation error(s)") from e


def parse_reasoning(
    text: str,
    title: str | None = None,
    action: str | None = None,
    confidence: float | None = None,
) -> ReasoningDetails:
    """Recover title/action/confidence metadata from a reasoning blob.

    Structured values sent with the frame take precedence. Otherwise the
    first line is the title (unless the text opens with a blank line), lines
    labelled ``Action:``, ``Confidence:``, ``Result:`` or ``Next:`` are
    extracted, and whatever remains is the explanation.
    """
    lines = text.splitlines()
    parsed_title: str | None = None
    labelled: dict[str, str] = {}
    explanation: list[str] = []

    if lines and lines[0].strip() and not _LABELLED_LINE.match(lines[0]):
        parsed_title = lines[0].strip()
        lines = lines[1:]

    for line in lines:
        match = _LABELLED_LINE.match(line)
        if match:
            label = match.group(1).lower()
            key = "next" if label.startswith("next") else label
            labelled[key] = match.group(2)
        else:
            explanation.append(line)

    return ReasoningDetails(
        title=title or parsed_title,
        action=action or labelled.get("action") or None,
        result=labelled.get("result") or None,
        next_action=labelled.get("next") or None,
        confidence=confidence if confidence is not None else parse_confidence(labelled.get("confidence")),
        explanation="\n".join(explanation).strip(),
    )


def parse_confidence(raw: str | None) -> float | None:
    """Parse ``0.8``, ``80%`` or ``80`` into a 0..1 score."""
    if not raw:
        return None
    match = re.match(r"^\s*(\d+(?:\.\d+)?)\s*(%?)", raw)
    if not match:
        return None
    value = float(match.group(1))
    if match.group(2) or value > 1:
        value /= 100
    return max(0.0, min(1.0, value))
