"""Extraction engine: structured field extraction, prompt hints and data Q&A.

One provider request per (document, field) pair, constrained by a response
schema, wrapped in RetryExecutor and normalized into an ExtractionResult that
always starts in ``needs_review``.
"""

import json
import logging
import re
from typing import Any

from pydantic import BaseModel, ValidationError, field_validator

from citations import quote_in_source
from config import settings
from models import (
    Confidence,
    Document,
    ExtractionField,
    ExtractionResult,
    ExtractionStatus,
    FieldType,
    HistoryTurn,
    RetryPolicy,
)
from prompts import (
    DOCUMENT_CONTENT_PREFIX,
    EXTRACTION_RESPONSE_SCHEMA,
    EXTRACTION_SYSTEM_INSTRUCTION,
    data_analyst_instruction,
    extraction_task,
    fallback_prompt_hint,
    prompt_hint_task,
)
from provider_client import ProviderClient, user_content
from retry import RetryExecutor

logger = logging.getLogger(__name__)

DATA_QUESTION_APOLOGY = (
    "I apologize, but I encountered an error while analyzing the data. Please try again."
)
NO_RESPONSE_TEXT = "No response generated."


class MalformedExtractionError(Exception):
    """Provider response is empty or does not match the extraction schema."""


class _RawExtraction(BaseModel):
    value: str
    confidence: Any = None
    quote: str
    page: Any = None
    reasoning: str

    @field_validator("value", mode="before")
    @classmethod
    def _stringify_scalar(cls, v: Any) -> Any:
        if isinstance(v, bool):
            return "true" if v else "false"
        if isinstance(v, (int, float)):
            return str(v)
        return v

    @field_validator("page", mode="before")
    @classmethod
    def _coerce_page(cls, v: Any) -> int | None:
        if isinstance(v, bool):
            return None
        if isinstance(v, (int, float)):
            return int(v)
        if isinstance(v, str) and v.strip().isdigit():
            return int(v.strip())
        return None


class DataQuestionContext(BaseModel):
    documents: list[Document]
    fields: list[ExtractionField]
    results: dict[str, dict[str, ExtractionResult]] = {}


class ExtractionEngine:
    """Runs schema-constrained extraction calls against the model provider."""

    def __init__(
        self,
        provider: ProviderClient,
        retry_executor: RetryExecutor | None = None,
        policy: RetryPolicy | None = None,
    ):
        self._provider = provider
        self._policy = policy or RetryPolicy(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            initial_delay_ms=settings.RETRY_INITIAL_DELAY_MS,
        )
        self._retry = retry_executor or RetryExecutor(self._policy)

    async def extract(
        self,
        document: Document,
        field: ExtractionField,
        model: str | None = None,
    ) -> ExtractionResult:
        """Extract one field from one document.

        Raises MalformedExtractionError for empty / off-schema responses and
        ExhaustedRetriesError when the provider keeps rate limiting.
        """
        model = model or settings.DEFAULT_MODEL
        contents = [
            user_content(
                f"{DOCUMENT_CONTENT_PREFIX}{document.text}",
                extraction_task(field.name, field.prompt_instruction, field.type),
            )
        ]

        # Ids and sizes only; document text is never logged
        logger.info(
            "Extracting field=%s type=%s document=%s chars=%d model=%s",
            field.id,
            field.type.value,
            document.id,
            len(document.text),
            model,
        )

        raw_text = await self._retry.execute(
            lambda: self._provider.generate_content(
                model,
                contents,
                system_instruction=EXTRACTION_SYSTEM_INSTRUCTION,
                response_schema=EXTRACTION_RESPONSE_SCHEMA,
            ),
            self._policy,
        )

        result = parse_extraction_response(raw_text, document_id=document.id, field_id=field.id)
        if result.quote and not quote_in_source(document.text, result.quote):
            logger.warning(
                "Quote for field=%s not found in document=%s; evidence needs review",
                field.id,
                document.id,
            )
        return result

    async def generate_prompt_hint(
        self,
        field_name: str,
        field_type: FieldType | str,
        draft_prompt: str | None = None,
        model: str | None = None,
    ) -> str:
        """Ask the model to write or refine an extraction instruction.

        Never raises: any failure yields the templated instruction.
        """
        model = model or settings.DEFAULT_MODEL
        type_name = field_type.value if isinstance(field_type, FieldType) else str(field_type)
        contents = [user_content(prompt_hint_task(field_name, type_name, draft_prompt))]

        try:
            text = await self._retry.execute(
                lambda: self._provider.generate_content(model, contents),
                self._policy,
            )
        except Exception as e:
            logger.warning("Prompt hint generation failed for field %r: %s", field_name, e)
            return fallback_prompt_hint(field_name)

        text = text.strip()
        if not text:
            logger.warning("Prompt hint generation returned no text for field %r", field_name)
            return fallback_prompt_hint(field_name)
        return text

    async def answer_data_question(
        self,
        question: str,
        context: DataQuestionContext,
        history: list[HistoryTurn] | None = None,
        model: str | None = None,
    ) -> str:
        """Answer a question strictly from the extracted data table.

        Never raises: errors yield a fixed apology string.
        """
        model = model or settings.DEFAULT_MODEL
        instruction = data_analyst_instruction(question, build_data_context(context))
        contents = [_history_content(turn) for turn in history or [] if turn.text.strip()]
        contents.append(user_content(question))

        try:
            text = await self._retry.execute(
                lambda: self._provider.generate_content(
                    model,
                    contents,
                    system_instruction=instruction,
                ),
                self._policy,
            )
        except Exception as e:
            logger.error("Data question failed: %s", e)
            return DATA_QUESTION_APOLOGY

        return text.strip() or NO_RESPONSE_TEXT


def parse_extraction_response(raw: str, document_id: str, field_id: str) -> ExtractionResult:
    """Validate and normalize a provider extraction response."""
    if not raw or not raw.strip():
        raise MalformedExtractionError("Empty response from model")

    parsed = try_parse_json(raw)
    if parsed is None:
        raise MalformedExtractionError("Model response is not a JSON object")

    try:
        payload = _RawExtraction.model_validate(parsed)
    except ValidationError as e:
        raise MalformedExtractionError(f"Model response failed validation: {e}") from e

    page = payload.page if payload.page is not None and payload.page >= 1 else 1

    return ExtractionResult(
        field_id=field_id,
        document_id=document_id,
        value=payload.value,
        confidence=normalize_confidence(payload.confidence),
        quote=payload.quote,
        page=page,
        reasoning=payload.reasoning,
        status=ExtractionStatus.NEEDS_REVIEW,
    )


def normalize_confidence(value: Any) -> Confidence:
    if isinstance(value, str) and value.strip():
        wanted = value.strip().lower()
        for level in Confidence:
            if level.value.lower() == wanted:
                return level
    return Confidence.LOW


def try_parse_json(raw: str) -> dict | None:
    """Parse a JSON object from model output, tolerating markdown code fences."""
    cleaned = raw.strip()

    try:
        result = json.loads(cleaned)
        if isinstance(result, dict):
            return result
    except json.JSONDecodeError:
        pass

    match = re.search(r"```(?:json)?\s*\n?(.*?)\n?```", cleaned, re.DOTALL)
    if match:
        try:
            result = json.loads(match.group(1).strip())
            if isinstance(result, dict):
                return result
        except json.JSONDecodeError:
            pass

    logger.warning("Could not parse JSON from model response (%d chars)", len(cleaned))
    return None


def build_data_context(context: DataQuestionContext) -> str:
    """Serialize documents, fields and results into a CSV-like table."""
    lines = [
        "CURRENT EXTRACTION DATA:",
        "Documents: " + ", ".join(d.display_name for d in context.documents),
        "Columns: " + ", ".join(f.name for f in context.fields),
        "",
        "DATA TABLE (CSV Format):",
        ",".join(["Document Name", *(_csv_cell(f.name) for f in context.fields)]),
    ]
    for document in context.documents:
        row_results = context.results.get(document.id, {})
        row = [_csv_cell(document.display_name)]
        for field in context.fields:
            cell = row_results.get(field.id)
            row.append(_csv_cell(cell.value) if cell is not None else "N/A")
        lines.append(",".join(row))
    return "\n".join(lines) + "\n"


def _csv_cell(value: str) -> str:
    return re.sub(r"[,\r\n]+", " ", value)


def _history_content(turn: HistoryTurn) -> dict[str, Any]:
    role = "user" if turn.role == "user" else "model"
    return {"role": role, "parts": [{"text": turn.text}]}
