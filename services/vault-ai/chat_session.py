"""Streaming chat session for vault conversations.

A StreamingChatSession owns one exchange: it sends the user message, opens the
backend's SSE stream, assembles frames into ordered assistant message parts
and publishes a snapshot after each change. States:

    idle -> sending -> streaming -> completed | cancelled | errored

Cancellation keeps whatever the assistant has produced so far. An ``error``
frame ends the session but the assistant message stays in the conversation
with a user-facing failure text.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import aclosing
from typing import Any, Protocol
from uuid import uuid4

import httpx

from config import settings
from models import (
    ChatContext,
    ChatMessage,
    ContentFrame,
    DoneFrame,
    ErrorFrame,
    ReasoningFrame,
    ReasoningPart,
    RetryPolicy,
    SessionState,
    TextPart,
    TitleFrame,
    ToolCallFrame,
    ToolInvocation,
    ToolInvocationPart,
)
from provider_client import ProviderError
from retry import RetryExecutor
from stream_frames import FrameParseError, SSEDecoder, parse_payload, parse_reasoning

logger = logging.getLogger(__name__)

FAILURE_TEXT = "Sorry, there was an error processing your vault request."


class SessionStateError(RuntimeError):
    """Operation is not allowed in the session's current state."""


class ChatStream(Protocol):
    """Streamed response body (``httpx.Response`` opened with ``stream=True``)."""

    def aiter_bytes(self) -> AsyncIterator[bytes]: ...

    async def aclose(self) -> None: ...


class ChatTransport(Protocol):
    async def open(self, payload: dict[str, Any]) -> ChatStream: ...


class HttpChatTransport:
    """POSTs a chat turn to the vault chat backend and returns the open SSE response."""

    def __init__(
        self,
        url: str | None = None,
        token: str | None = None,
        timeout: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._url = url or settings.CHAT_API_URL
        self._token = token if token is not None else settings.CHAT_API_TOKEN
        read_timeout = timeout if timeout is not None else settings.CHAT_TIMEOUT_SECONDS

        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(
                connect=float(settings.PROVIDER_CONNECT_TIMEOUT),
                read=float(read_timeout),
                write=30.0,
                pool=30.0,
            ),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def open(self, payload: dict[str, Any]) -> httpx.Response:
        headers = {"Accept": "text/event-stream"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        request = self._client.build_request("POST", self._url, json=payload, headers=headers)
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            logger.error("Chat backend connection failed: %s", e)
            raise ProviderError(f"Chat backend request failed: {e}") from e

        if response.status_code != 200:
            body = (await response.aread()).decode("utf-8", errors="replace")
            await response.aclose()
            logger.error("Chat backend error %d: %s", response.status_code, body[:200])
            raise ProviderError(
                f"Chat backend HTTP {response.status_code}: {body[:200]}",
                status_code=response.status_code,
            )
        return response


async def _next_or_none(chunks: AsyncIterator[bytes]) -> bytes | None:
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return None


class StreamingChatSession:
    """Single-use state machine for one user message and its streamed reply."""

    def __init__(
        self,
        transport: ChatTransport,
        session_id: str | None = None,
        retry_executor: RetryExecutor | None = None,
        reasoning: bool = False,
    ):
        self.session_id = session_id or str(uuid4())
        self.title: str | None = None
        self.error: str | None = None

        self._transport = transport
        self._retry = retry_executor or RetryExecutor(
            RetryPolicy(
                max_attempts=settings.RETRY_MAX_ATTEMPTS,
                initial_delay_ms=settings.RETRY_INITIAL_DELAY_MS,
            )
        )
        self._reasoning = reasoning
        self._state = SessionState.IDLE
        self._user_message: ChatMessage | None = None
        self._assistant: ChatMessage | None = None
        self._tool_parts: dict[str, int] = {}
        self._cancel_event = asyncio.Event()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def user_message(self) -> ChatMessage | None:
        return self._user_message

    @property
    def assistant_message(self) -> ChatMessage | None:
        """Copy of the assistant message (partial while the session is active)."""
        return self._snapshot() if self._assistant is not None else None

    def start(self, message: str, context: ChatContext) -> AsyncIterator[ChatMessage]:
        """Send ``message`` and return an async iterator of assistant snapshots."""
        if self._state is not SessionState.IDLE:
            raise SessionStateError(f"Session {self.session_id} already {self._state.value}")
        if not message.strip():
            raise ValueError("Message content cannot be empty.")

        self._user_message = ChatMessage(role="user", parts=[TextPart(text=message)])
        self._assistant = ChatMessage(id=f"assistant-{uuid4()}", role="assistant")
        self._state = SessionState.SENDING

        payload = {
            "project_id": context.project_id,
            "folder_id": context.parent_folder_id,
            "file_ids": list(context.file_ids),
            "message": message,
            "session_id": self.session_id,
            "reasoning": self._reasoning,
        }
        return self._run(payload)

    def cancel(self) -> None:
        """Stop streaming; partial assistant output is kept."""
        if self._state.is_terminal:
            return
        logger.info("Chat session %s cancelled in state %s", self.session_id, self._state.value)
        self._state = SessionState.CANCELLED
        self._cancel_event.set()

    async def _run(self, payload: dict[str, Any]) -> AsyncIterator[ChatMessage]:
        stream: ChatStream | None = None
        try:
            try:
                stream = await self._retry.execute(lambda: self._transport.open(payload))
            except Exception as e:
                if self._state is SessionState.SENDING:
                    logger.error("Opening chat stream for session %s failed: %s", self.session_id, e)
                    self._fail(str(e))
                    yield self._snapshot()
                return

            if self._state is not SessionState.SENDING:
                return
            self._state = SessionState.STREAMING
            decoder = SSEDecoder()
            chunks = stream.aiter_bytes().__aiter__()

            try:
                while True:
                    chunk = await self._next_chunk(chunks)
                    if chunk is None:
                        break
                    for record in decoder.feed(chunk):
                        snapshot = self._handle_record(record)
                        if snapshot is not None:
                            yield snapshot
                        if self._state.is_terminal:
                            return
            except Exception as e:
                if self._state is SessionState.STREAMING:
                    logger.error("Chat stream for session %s failed: %s", self.session_id, e)
                    self._fail(str(e))
                    yield self._snapshot()
                return

            if self._state is not SessionState.STREAMING:
                return
            for record in decoder.flush():
                snapshot = self._handle_record(record)
                if snapshot is not None:
                    yield snapshot
            if self._state is SessionState.STREAMING:
                # End of input without a done frame still completes the exchange
                self._state = SessionState.COMPLETED
        except asyncio.CancelledError:
            self.cancel()
            raise
        finally:
            if not self._state.is_terminal:
                # Consumer stopped iterating early
                self.cancel()
            if stream is not None:
                await stream.aclose()
            logger.info(
                "Chat session %s finished: state=%s parts=%d",
                self.session_id,
                self._state.value,
                len(self._assistant.parts) if self._assistant else 0,
            )

    async def _next_chunk(self, chunks: AsyncIterator[bytes]) -> bytes | None:
        """Read the next body chunk, or None at end of input or on cancel()."""
        if self._cancel_event.is_set():
            return None

        read = asyncio.ensure_future(_next_or_none(chunks))
        cancelled = asyncio.ensure_future(self._cancel_event.wait())
        try:
            await asyncio.wait({read, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            pending = [t for t in (read, cancelled) if not t.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        if self._cancel_event.is_set():
            return None
        return read.result()

    def _handle_record(self, record: str) -> ChatMessage | None:
        """Apply one stream record. Returns a snapshot when the message changed."""
        try:
            frame = parse_payload(record)
        except FrameParseError as e:
            logger.warning("Skipping malformed stream frame in session %s: %s", self.session_id, e)
            return None

        if isinstance(frame, ContentFrame):
            if not frame.text:
                return None
            self._append_text(frame.text)
        elif isinstance(frame, ToolCallFrame):
            if not self._apply_tool_call(frame):
                return None
        elif isinstance(frame, ReasoningFrame):
            details = parse_reasoning(frame.text, frame.title, frame.action, frame.confidence)
            self._assistant.parts.append(ReasoningPart(reasoning=frame.text, details=details))
        elif isinstance(frame, TitleFrame):
            self.title = frame.title
            return None
        elif isinstance(frame, DoneFrame):
            self._state = SessionState.COMPLETED
            return None
        elif isinstance(frame, ErrorFrame):
            logger.error("Chat backend reported an error in session %s: %s", self.session_id, frame.message)
            self._fail(frame.message)

        return self._snapshot()

    def _append_text(self, text: str) -> None:
        parts = self._assistant.parts
        if parts and isinstance(parts[-1], TextPart):
            parts[-1].text += text
        else:
            parts.append(TextPart(text=text))

    def _apply_tool_call(self, frame: ToolCallFrame) -> bool:
        key = frame.tool_call_id or frame.tool_name
        parts = self._assistant.parts
        index = self._tool_parts.get(key)

        if index is None:
            invocation = ToolInvocation(
                tool_call_id=key,
                tool_name=frame.tool_name,
                args=frame.args,
                state=frame.state,
                result=frame.result,
            )
            parts.append(ToolInvocationPart(tool_invocation=invocation))
            self._tool_parts[key] = len(parts) - 1
            return True

        invocation = parts[index].tool_invocation
        if frame.state.rank < invocation.state.rank:
            logger.warning(
                "Ignoring tool call %s moving back from %s to %s",
                key,
                invocation.state.value,
                frame.state.value,
            )
            return False

        invocation.state = frame.state
        invocation.tool_name = frame.tool_name
        if frame.args:
            invocation.args = frame.args
        if frame.result is not None:
            invocation.result = frame.result
        return True

    def _fail(self, detail: str) -> None:
        self.error = detail or "Unknown error"
        self._state = SessionState.ERRORED
        text = FAILURE_TEXT if not self._assistant.content.strip() else f"\n\n{FAILURE_TEXT}"
        self._assistant.parts.append(TextPart(text=text))

    def _snapshot(self) -> ChatMessage:
        return self._assistant.model_copy(deep=True)


class ChatConversation:
    """Conversation history with at most one active session at a time."""

    def __init__(
        self,
        transport: ChatTransport,
        conversation_id: str | None = None,
        retry_executor: RetryExecutor | None = None,
        reasoning: bool = False,
    ):
        self.conversation_id = conversation_id or f"vault_{uuid4()}"
        self.title: str | None = None
        self._transport = transport
        self._retry = retry_executor
        self._reasoning = reasoning
        self._history: list[ChatMessage] = []
        self._active: StreamingChatSession | None = None

    @property
    def active_session(self) -> StreamingChatSession | None:
        if self._active is not None and not self._active.state.is_terminal:
            return self._active
        return None

    @property
    def messages(self) -> list[ChatMessage]:
        """Finished messages plus the in-progress exchange, in order."""
        messages = list(self._history)
        session = self.active_session
        if session is not None and session.user_message is not None:
            messages.append(session.user_message)
            messages.append(session.assistant_message)
        return messages

    def new_session(self) -> StreamingChatSession:
        """Create the session for the next exchange.

        Raises SessionStateError while the previous session is still running;
        it has to be cancelled first.
        """
        if self.active_session is not None:
            raise SessionStateError(
                f"Conversation {self.conversation_id} already has an active session; cancel it first"
            )
        self._collect()
        self._active = StreamingChatSession(
            self._transport,
            session_id=self.conversation_id,
            retry_executor=self._retry,
            reasoning=self._reasoning,
        )
        return self._active

    async def send(self, message: str, context: ChatContext) -> AsyncIterator[ChatMessage]:
        """Run one exchange, yielding assistant snapshots, then record it in history."""
        session = self.new_session()
        try:
            async with aclosing(session.start(message, context)) as snapshots:
                async for snapshot in snapshots:
                    yield snapshot
        finally:
            self._collect()

    def _collect(self) -> None:
        session = self._active
        if session is None or not session.state.is_terminal or session.user_message is None:
            return
        self._history.append(session.user_message)
        self._history.append(session.assistant_message)
        if session.title:
            self.title = session.title
        self._active = None
