"""Pydantic models for extraction results, stream frames and chat messages.

Wire names are camelCase (matching the dashboard payloads); Python attributes
stay snake_case. Both spellings are accepted on input.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


class FieldType(str, Enum):
    SHORT_TEXT = "short-text"
    LONG_TEXT = "long-text"
    NUMBER = "number"
    DATE = "date"
    BOOLEAN = "boolean"
    LIST = "list"
    FILE = "file"


class Confidence(str, Enum):
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


class ExtractionStatus(str, Enum):
    PENDING = "pending"
    NEEDS_REVIEW = "needs_review"
    VERIFIED = "verified"


class ExtractionField(_WireModel):
    """A named, typed piece of information to pull out of a document."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    name: str
    type: FieldType = FieldType.SHORT_TEXT
    prompt_instruction: str = ""


class Document(_WireModel):
    """Document text as returned by the document store."""

    id: str
    name: str | None = None
    text: str = ""
    # Base64-encoded markdown, as uploaded by the dashboard; decoded into `text`.
    content: str | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.id


class ExtractionResult(_WireModel):
    field_id: str
    document_id: str
    value: str
    confidence: Confidence = Confidence.LOW
    quote: str = ""
    page: int | None = 1
    reasoning: str = ""
    status: ExtractionStatus = ExtractionStatus.NEEDS_REVIEW


class RetryPolicy(_WireModel):
    """Rate-limit retry configuration: retries after the first attempt and the first delay."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    max_attempts: int = Field(default=5, ge=0)
    initial_delay_ms: int = Field(default=1000, gt=0)


# ---------------------------------------------------------------------------
# Citations
# ---------------------------------------------------------------------------


class HighlightSegment(_WireModel):
    text: str
    is_match: bool


class HighlightResult(_WireModel):
    matched: bool
    segments: list[HighlightSegment]
    match_count: int = 0


# ---------------------------------------------------------------------------
# Stream frames
# ---------------------------------------------------------------------------


class ToolCallState(str, Enum):
    PARTIAL_CALL = "partial-call"
    CALL = "call"
    RESULT = "result"

    @property
    def rank(self) -> int:
        return _TOOL_STATE_ORDER.index(self)


_TOOL_STATE_ORDER = [ToolCallState.PARTIAL_CALL, ToolCallState.CALL, ToolCallState.RESULT]


class ContentFrame(_WireModel):
    kind: Literal["content"]
    text: str = ""


class ToolCallFrame(_WireModel):
    kind: Literal["tool-call"]
    tool_call_id: str | None = None
    tool_name: str
    args: dict[str, Any] = Field(default_factory=dict)
    state: ToolCallState = ToolCallState.CALL
    result: Any = None


class ReasoningFrame(_WireModel):
    kind: Literal["reasoning"]
    text: str = ""
    # Optional structured metadata; when absent it is recovered from `text`.
    title: str | None = None
    action: str | None = None
    confidence: float | None = None


class TitleFrame(_WireModel):
    kind: Literal["title"]
    title: str


class DoneFrame(_WireModel):
    kind: Literal["done"]


class ErrorFrame(_WireModel):
    kind: Literal["error"]
    message: str = ""


StreamFrame = Annotated[
    Union[ContentFrame, ToolCallFrame, ReasoningFrame, TitleFrame, DoneFrame, ErrorFrame],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Chat messages
# ---------------------------------------------------------------------------


class ReasoningDetails(_WireModel):
    title: str | None = None
    action: str | None = None
    result: str | None = None
    next_action: str | None = None
    confidence: float | None = None
    explanation: str = ""


class ToolInvocation(_WireModel):
    tool_call_id: str
    tool_name: str
    args: dict[str, Any] = Field(default_factory=dict)
    state: ToolCallState
    result: Any = None


class TextPart(_WireModel):
    type: Literal["text"] = "text"
    text: str = ""


class ReasoningPart(_WireModel):
    type: Literal["reasoning"] = "reasoning"
    reasoning: str
    details: ReasoningDetails


class ToolInvocationPart(_WireModel):
    type: Literal["tool-invocation"] = "tool-invocation"
    tool_invocation: ToolInvocation


MessagePart = Annotated[
    Union[TextPart, ReasoningPart, ToolInvocationPart],
    Field(discriminator="type"),
]


class ChatMessage(_WireModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    role: Literal["user", "assistant"]
    parts: list[MessagePart] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def content(self) -> str:
        """Concatenated text of all text parts."""
        return "".join(part.text for part in self.parts if isinstance(part, TextPart))


class SessionState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERRORED = "errored"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.CANCELLED, SessionState.ERRORED)


class ChatContext(_WireModel):
    project_id: str
    parent_folder_id: str | None = None
    file_ids: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# API payloads
# ---------------------------------------------------------------------------


class ExtractRequest(_WireModel):
    document: Document
    field: ExtractionField
    model: str | None = None


class BulkExtractRequest(_WireModel):
    run_id: str = Field(default_factory=lambda: str(uuid4()))
    documents: list[Document]
    fields: list[ExtractionField]
    model: str | None = None


class PromptHintRequest(_WireModel):
    field_name: str
    field_type: FieldType = FieldType.SHORT_TEXT
    draft_prompt: str | None = None
    model: str | None = None


class PromptHintResponse(_WireModel):
    prompt: str


class HistoryTurn(_WireModel):
    role: Literal["user", "model", "assistant"]
    text: str


class DataQuestionRequest(_WireModel):
    question: str
    documents: list[Document]
    fields: list[ExtractionField]
    # document_id -> field_id -> result
    results: dict[str, dict[str, ExtractionResult]] = Field(default_factory=dict)
    history: list[HistoryTurn] = Field(default_factory=list)
    model: str | None = None


class DataQuestionResponse(_WireModel):
    answer: str


class HighlightRequest(_WireModel):
    source_text: str
    quote: str


class ChatStreamRequest(_WireModel):
    session_id: str = Field(default_factory=lambda: str(uuid4()))
    message: str = Field(min_length=1)
    context: ChatContext
    reasoning: bool = False
