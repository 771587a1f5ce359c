"""Bulk column extraction over a document grid.

Rows (documents) and columns (fields) are processed sequentially. A
CancellationToken is polled before each row and each field; calls already in
flight finish normally. A failing cell is recorded with an error placeholder
and the run moves on to the next cell.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from extraction import ExtractionEngine
from models import Document, ExtractionField, ExtractionResult

logger = logging.getLogger(__name__)

ERROR_PLACEHOLDER = "[Error]"


class CancellationToken:
    """Cooperative cancellation flag owned by a single bulk run."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass
class CellOutcome:
    document_id: str
    field_id: str
    result: ExtractionResult | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.result is not None

    @property
    def display_value(self) -> str:
        return self.result.value if self.result is not None else ERROR_PLACEHOLDER


@dataclass
class BulkExtractionReport:
    results: dict[str, dict[str, ExtractionResult]] = field(default_factory=dict)
    errors: list[CellOutcome] = field(default_factory=list)
    attempted: int = 0
    cancelled: bool = False

    def record(self, outcome: CellOutcome) -> None:
        self.attempted += 1
        if outcome.result is not None:
            self.results.setdefault(outcome.document_id, {})[outcome.field_id] = outcome.result
        else:
            self.errors.append(outcome)


async def run_bulk_extraction(
    engine: ExtractionEngine,
    documents: list[Document],
    fields: list[ExtractionField],
    model: str | None = None,
    token: CancellationToken | None = None,
    on_cell: Callable[[CellOutcome], None] | None = None,
) -> BulkExtractionReport:
    """Extract every field from every document, continuing past failed cells."""
    token = token or CancellationToken()
    report = BulkExtractionReport()
    active_fields = [f for f in fields if f.prompt_instruction.strip()]

    logger.info(
        "Bulk extraction: %d documents x %d fields (%d skipped without instructions)",
        len(documents),
        len(active_fields),
        len(fields) - len(active_fields),
    )

    for document in documents:
        if token.cancelled:
            break
        if not document.text.strip():
            logger.info("Skipping document=%s with no text", document.id)
            continue

        for extraction_field in active_fields:
            if token.cancelled:
                break

            try:
                result = await engine.extract(document, extraction_field, model)
                outcome = CellOutcome(document.id, extraction_field.id, result=result)
            except Exception as e:
                logger.error(
                    "Extraction failed for document=%s field=%s: %s",
                    document.id,
                    extraction_field.id,
                    e,
                )
                outcome = CellOutcome(document.id, extraction_field.id, error=str(e) or type(e).__name__)

            report.record(outcome)
            if on_cell is not None:
                on_cell(outcome)

    report.cancelled = token.cancelled
    if report.cancelled:
        logger.info("Bulk extraction cancelled after %d cells", report.attempted)
    return report
