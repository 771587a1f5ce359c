"""HTTP client for the LLM provider (Gemini-style generateContent API).

Uses an async httpx client with configurable timeouts. Retry is not done
here; callers wrap calls in RetryExecutor, which retries 429 / quota errors.
"""

import logging
from typing import Any

import httpx

from config import settings

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Provider request failed. ``status_code`` is set for HTTP error responses."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


def user_content(*texts: str) -> dict[str, Any]:
    """Build one user turn from text parts."""
    return {"role": "user", "parts": [{"text": t} for t in texts]}


class ProviderClient:
    """Async client for structured and conversational model calls."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: int | None = None,
        connect_timeout: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = (base_url or settings.PROVIDER_BASE_URL).rstrip("/")
        self._api_key = api_key if api_key is not None else settings.PROVIDER_API_KEY

        read_timeout = timeout if timeout is not None else settings.PROVIDER_TIMEOUT_SECONDS
        conn_timeout = connect_timeout if connect_timeout is not None else settings.PROVIDER_CONNECT_TIMEOUT

        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(
                connect=float(conn_timeout),
                read=float(read_timeout),
                write=30.0,
                pool=30.0,
            ),
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def generate_content(
        self,
        model: str,
        contents: list[dict[str, Any]],
        system_instruction: str | None = None,
        response_schema: dict[str, Any] | None = None,
    ) -> str:
        """Send one generateContent request and return the concatenated response text.

        Returns an empty string when the provider produced no text.
        Raises ProviderError on transport failures and non-200 responses.
        """
        payload: dict[str, Any] = {"contents": contents}
        if system_instruction:
            payload["systemInstruction"] = {"parts": [{"text": system_instruction}]}
        if response_schema is not None:
            payload["generationConfig"] = {
                "responseMimeType": "application/json",
                "responseSchema": response_schema,
            }

        try:
            resp = await self._client.post(
                f"/v1beta/models/{model}:generateContent",
                json=payload,
                headers={"x-goog-api-key": self._api_key},
            )
        except httpx.HTTPError as e:
            logger.error("Provider request failed: %s", e)
            raise ProviderError(f"Provider request failed: {e}") from e

        if resp.status_code != 200:
            detail = _error_detail(resp)
            if resp.status_code == 429:
                logger.warning("Provider returned 429: %s", detail)
            else:
                logger.error("Provider error %d: %s", resp.status_code, detail)
            raise ProviderError(f"Provider HTTP {resp.status_code}: {detail}", status_code=resp.status_code)

        return _response_text(resp.json())


def _error_detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text or f"HTTP {resp.status_code}"
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        status = error.get("status")
        message = error.get("message", "")
        return f"{status}: {message}" if status else message
    return str(body)


def _response_text(data: dict[str, Any]) -> str:
    candidates = data.get("candidates") or []
    if not candidates:
        return ""
    parts = (candidates[0].get("content") or {}).get("parts") or []
    return "".join(p.get("text", "") for p in parts if isinstance(p, dict))
