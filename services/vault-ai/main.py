"""FastAPI vault AI service: column extraction, prompt hints, data Q&A and chat streaming.

Document text is never logged; only ids and sizes.
"""

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse

from bulk import CancellationToken, run_bulk_extraction
from chat_session import HttpChatTransport, StreamingChatSession
from citations import highlight
from config import settings
from extraction import DataQuestionContext, ExtractionEngine, MalformedExtractionError
from models import (
    BulkExtractRequest,
    ChatStreamRequest,
    DataQuestionRequest,
    DataQuestionResponse,
    ExtractionResult,
    ExtractRequest,
    HighlightRequest,
    HighlightResult,
    PromptHintRequest,
    PromptHintResponse,
)
from preprocessing import prepare_document
from provider_client import ProviderClient, ProviderError
from retry import ExhaustedRetriesError
from stream_frames import STREAM_TERMINATOR

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

_provider: ProviderClient | None = None
_engine: ExtractionEngine | None = None
_chat_transport: HttpChatTransport | None = None

# In-flight work that can be cancelled from another request
_bulk_runs: dict[str, CancellationToken] = {}
_chat_sessions: dict[str, StreamingChatSession] = {}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create provider and chat clients on startup."""
    global _provider, _engine, _chat_transport

    _provider = ProviderClient()
    _engine = ExtractionEngine(_provider)
    _chat_transport = HttpChatTransport()

    if _provider.configured:
        logger.info("Model provider configured at %s (default model %s)", settings.PROVIDER_BASE_URL, settings.DEFAULT_MODEL)
    else:
        logger.info("PROVIDER_API_KEY is empty; AI extraction disabled")

    yield

    for session in list(_chat_sessions.values()):
        session.cancel()
    for token in list(_bulk_runs.values()):
        token.cancel()
    await _chat_transport.aclose()
    await _provider.aclose()


app = FastAPI(title="Vault AI Service", version="1.0.0", lifespan=lifespan)


def _require_engine() -> ExtractionEngine:
    if _engine is None or _provider is None or not _provider.configured:
        raise HTTPException(status_code=503, detail="AI extraction is not available - no model provider configured")
    return _engine


@app.post("/api/v1/extract", response_model=ExtractionResult)
async def extract(payload: ExtractRequest):
    """Extract one field from one document."""
    engine = _require_engine()
    document = prepare_document(payload.document)
    if not document.text.strip():
        raise HTTPException(status_code=400, detail="Document has no text")

    try:
        return await engine.extract(document, payload.field, payload.model)
    except MalformedExtractionError as e:
        raise HTTPException(status_code=422, detail=f"Malformed extraction response: {e}") from e
    except ExhaustedRetriesError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    except ProviderError as e:
        raise HTTPException(status_code=502, detail=str(e)) from e


@app.post("/api/v1/extract/bulk")
async def extract_bulk(payload: BulkExtractRequest):
    """Run every field over every document; failed cells are reported, not fatal."""
    engine = _require_engine()
    if payload.run_id in _bulk_runs:
        raise HTTPException(status_code=409, detail=f"Bulk run {payload.run_id} is already running")

    token = CancellationToken()
    _bulk_runs[payload.run_id] = token
    try:
        report = await run_bulk_extraction(
            engine,
            [prepare_document(d) for d in payload.documents],
            payload.fields,
            payload.model,
            token=token,
        )
    finally:
        _bulk_runs.pop(payload.run_id, None)

    return {
        "runId": payload.run_id,
        "cancelled": report.cancelled,
        "attempted": report.attempted,
        "results": {
            doc_id: {field_id: r.model_dump(by_alias=True, mode="json") for field_id, r in row.items()}
            for doc_id, row in report.results.items()
        },
        "errors": [
            {"documentId": e.document_id, "fieldId": e.field_id, "value": e.display_value, "error": e.error}
            for e in report.errors
        ],
    }


@app.post("/api/v1/extract/bulk/{run_id}/cancel")
async def cancel_bulk(run_id: str):
    token = _bulk_runs.get(run_id)
    if token is None:
        raise HTTPException(status_code=404, detail=f"No running bulk extraction {run_id}")
    token.cancel()
    return {"runId": run_id, "cancelled": True}


@app.post("/api/v1/prompt-hint", response_model=PromptHintResponse)
async def prompt_hint(payload: PromptHintRequest):
    engine = _require_engine()
    prompt = await engine.generate_prompt_hint(
        payload.field_name,
        payload.field_type,
        payload.draft_prompt,
        payload.model,
    )
    return PromptHintResponse(prompt=prompt)


@app.post("/api/v1/data-question", response_model=DataQuestionResponse)
async def data_question(payload: DataQuestionRequest):
    engine = _require_engine()
    context = DataQuestionContext(
        documents=payload.documents,
        fields=payload.fields,
        results=payload.results,
    )
    answer = await engine.answer_data_question(payload.question, context, payload.history, payload.model)
    return DataQuestionResponse(answer=answer)


@app.post("/api/v1/citations/highlight", response_model=HighlightResult)
async def citation_highlight(payload: HighlightRequest):
    return highlight(payload.source_text, payload.quote)


@app.post("/api/v1/chat/stream")
async def chat_stream(payload: ChatStreamRequest):
    """Relay one vault chat exchange as SSE snapshots of the assistant message."""
    if _chat_transport is None:
        raise HTTPException(status_code=503, detail="Chat is not available")

    active = _chat_sessions.get(payload.session_id)
    if active is not None and not active.state.is_terminal:
        raise HTTPException(status_code=409, detail="A response is still streaming for this session; cancel it first")

    session = StreamingChatSession(_chat_transport, session_id=payload.session_id, reasoning=payload.reasoning)
    try:
        snapshots = session.start(payload.message, payload.context)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e

    async def events() -> AsyncIterator[str]:
        # Registered only while the body is being streamed
        _chat_sessions[payload.session_id] = session
        try:
            async for snapshot in snapshots:
                yield _sse_event({"state": session.state.value, "message": snapshot.model_dump(by_alias=True, mode="json")})
            final = session.assistant_message
            yield _sse_event(
                {
                    "state": session.state.value,
                    "title": session.title,
                    "error": session.error,
                    "message": final.model_dump(by_alias=True, mode="json") if final else None,
                }
            )
            yield f"data: {STREAM_TERMINATOR}\n\n"
        finally:
            await snapshots.aclose()
            if _chat_sessions.get(payload.session_id) is session:
                del _chat_sessions[payload.session_id]

    return StreamingResponse(events(), media_type="text/event-stream")


@app.post("/api/v1/chat/sessions/{session_id}/cancel")
async def cancel_chat(session_id: str):
    session = _chat_sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"No active chat session {session_id}")
    session.cancel()
    return {"sessionId": session_id, "state": session.state.value}


@app.get("/health")
async def health():
    """Return service status and provider availability."""
    return {
        "status": "healthy",
        "provider_configured": bool(_provider and _provider.configured),
        "active_chat_sessions": len(_chat_sessions),
        "active_bulk_runs": len(_bulk_runs),
    }


def _sse_event(data: dict) -> str:
    return f"data: {json.dumps(data)}\n\n"


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
