"""Chat completion client with streaming, retry and cancellation."""

import asyncio
import json
import logging
import os
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, TypeVar

import httpx

from nexus_chat.models import ChatRole, Turn

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://text.pollinations.ai/openai/chat/completions"
DEFAULT_MODEL = "openai"

# Retry configuration: linear backoff of attempt * RETRY_DELAY
MAX_ATTEMPTS = 3
RETRY_DELAY = 0.9  # seconds

CONNECT_TIMEOUT = 20.0  # seconds
READ_TIMEOUT = 60.0  # seconds without any response data

# Upstream proxies sometimes answer with a plain-text gateway page
GATEWAY_ERROR_SIGNATURE = "502 Bad Gateway"
STREAM_DONE = "[DONE]"

T = TypeVar("T")
DeltaCallback = Callable[[str], None]


class TransportError(Exception):
    """Network, HTTP or protocol failure talking to the completion endpoint."""

    def __init__(self, message: str, status_code: int | None = None, retriable: bool = True):
        super().__init__(message)
        self.status_code = status_code
        self.retriable = retriable


def _error_message(error: Any) -> str:
    """Pull the human-readable message out of an API error object."""
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, str) and message:
            return message
    elif isinstance(error, str) and error:
        return error
    return "API error"


def parse_completion_body(body: str) -> str:
    """Parse the completion text out of a non-streaming response body.

    Raises:
        TransportError: If the body carries an API error or no content.
    """
    try:
        data = json.loads(body)
    except json.JSONDecodeError as e:
        raise TransportError(f"Malformed completion response: {e}") from e

    if not isinstance(data, dict):
        raise TransportError("Malformed completion response")
    if data.get("error"):
        raise TransportError(_error_message(data["error"]))

    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as e:
        raise TransportError("Completion response has no content") from e
    if not isinstance(content, str):
        raise TransportError("Completion response has no content")
    return content


def parse_delta_content(payload: str) -> str:
    """Return the delta text carried by one stream event payload.

    Events that cannot be decoded, or that carry no delta, yield an empty
    string and are skipped by the caller.

    Raises:
        TransportError: If the event is an API error or a gateway error page.
    """
    if payload.startswith(GATEWAY_ERROR_SIGNATURE):
        raise TransportError(GATEWAY_ERROR_SIGNATURE, status_code=502)

    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        logger.debug(f"Skipping undecodable stream event: {payload[:200]}")
        return ""

    if not isinstance(data, dict):
        return ""
    if data.get("error"):
        raise TransportError(_error_message(data["error"]))

    choices = data.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return ""
    delta = choices[0].get("delta")
    if not isinstance(delta, dict):
        return ""
    content = delta.get("content")
    return content if isinstance(content, str) else ""


class CompletionClient:
    """Client for an OpenAI-compatible chat completion endpoint.

    Holds no conversation state. At most one request is in flight at a time
    per client, and that request can be cancelled with ``cancel_active()``.
    """

    def __init__(
        self,
        api_url: str | None = None,
        api_key: str | None = None,
        model: str | None = None,
        temperature: float = 0.8,
        top_p: float = 0.9,
        max_attempts: int = MAX_ATTEMPTS,
        retry_delay: float = RETRY_DELAY,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize the client.

        Args:
            api_url: Endpoint URL. Defaults to COMPLETION_API_URL env var.
            api_key: Optional bearer token. Defaults to COMPLETION_API_KEY env var.
            model: Model name. Defaults to COMPLETION_MODEL env var.
            temperature: Sampling temperature.
            top_p: Nucleus sampling cutoff.
            max_attempts: Total attempts per request, including the first.
            retry_delay: Base delay; attempt N waits N * retry_delay before retrying.
            http_client: Optional preconfigured httpx client (used by tests).
            sleep: Coroutine used for backoff waits.
        """
        self.api_url = api_url or os.getenv("COMPLETION_API_URL", DEFAULT_API_URL)
        self.api_key = api_key or os.getenv("COMPLETION_API_KEY")
        self.model = model or os.getenv("COMPLETION_MODEL", DEFAULT_MODEL)
        self.temperature = temperature
        self.top_p = top_p
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self._sleep = sleep
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(READ_TIMEOUT, connect=CONNECT_TIMEOUT)
        )
        self._active_task: asyncio.Task | None = None
        self._cancel_requested = False

    @property
    def is_busy(self) -> bool:
        """Whether a request is currently in flight."""
        return self._active_task is not None and not self._active_task.done()

    def build_payload(self, turns: Sequence[Turn], stream: bool) -> dict[str, Any]:
        """Build the JSON request body for a list of turns."""
        return {
            "model": self.model,
            "temperature": self.temperature,
            "top_p": self.top_p,
            "stream": stream,
            "messages": [
                {"role": ChatRole(turn.role).value, "content": turn.content}
                for turn in turns
            ],
        }

    def _headers(self, stream: bool) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if stream:
            headers["Accept"] = "text/event-stream"
            headers["Cache-Control"] = "no-cache"
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def cancel_active(self) -> bool:
        """Abort the in-flight request, if any.

        The task awaiting ``complete()`` or ``stream()`` receives
        ``asyncio.CancelledError`` and the underlying connection is closed.

        Returns:
            True if a request was cancelled.
        """
        task = self._active_task
        if task is None or task.done():
            return False
        self._cancel_requested = True
        task.cancel()
        logger.info("Cancelled in-flight completion request")
        return True

    async def complete(self, turns: Sequence[Turn]) -> str:
        """Request a full completion and return its text.

        Raises:
            TransportError: If every attempt fails.
        """
        payload = self.build_payload(turns, stream=False)
        return await self._run_tracked(
            lambda attempt: self._complete_once(payload), "Completion"
        )

    async def stream(self, turns: Sequence[Turn], on_delta: DeltaCallback) -> None:
        """Stream a completion, calling ``on_delta`` for every text delta.

        Deltas are delivered synchronously in arrival order. Once a delta has
        been delivered, a later failure is raised without retrying so already
        delivered text is never repeated.

        Raises:
            TransportError: If every attempt fails, or an attempt fails after
                delivering output.
        """
        payload = self.build_payload(turns, stream=True)
        await self._run_tracked(
            lambda attempt: self._stream_once(payload, on_delta), "Streaming completion"
        )

    async def _run_tracked(self, operation: Callable[[int], Awaitable[T]], label: str) -> T:
        """Run an operation with retries while registered as the active request."""
        task = asyncio.current_task()
        self._active_task = task
        self._cancel_requested = False
        try:
            return await self._call_with_retry(operation, label)
        finally:
            if self._active_task is task:
                self._active_task = None

    async def _call_with_retry(self, operation: Callable[[int], Awaitable[T]], label: str) -> T:
        """Call an operation with linear backoff retry.

        Raises:
            TransportError: The last error once attempts are exhausted, or the
                first non-retriable one.
        """
        last_error: TransportError | None = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                return await operation(attempt)
            except TransportError as e:
                last_error = e
                if not e.retriable or attempt == self.max_attempts:
                    break
                delay = attempt * self.retry_delay
                logger.warning(
                    f"{label} failed (attempt {attempt}/{self.max_attempts}), "
                    f"retrying in {delay:.1f}s: {e}"
                )
                await self._sleep(delay)

        raise last_error or TransportError("Request failed")

    async def _complete_once(self, payload: dict[str, Any]) -> str:
        try:
            response = await self._http.post(
                self.api_url, json=payload, headers=self._headers(stream=False)
            )
        except httpx.HTTPError as e:
            raise TransportError(f"Network error: {e}") from e

        body = response.text
        if body.startswith(GATEWAY_ERROR_SIGNATURE):
            raise TransportError(GATEWAY_ERROR_SIGNATURE, status_code=502)
        if not response.is_success:
            raise TransportError(f"HTTP {response.status_code}", status_code=response.status_code)
        if not body.strip():
            raise TransportError("Empty response", status_code=response.status_code)
        return parse_completion_body(body)

    async def _stream_once(self, payload: dict[str, Any], on_delta: DeltaCallback) -> None:
        delivered = 0
        try:
            async with self._http.stream(
                "POST", self.api_url, json=payload, headers=self._headers(stream=True)
            ) as response:
                if not response.is_success:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    if body.startswith(GATEWAY_ERROR_SIGNATURE):
                        raise TransportError(GATEWAY_ERROR_SIGNATURE, status_code=502)
                    raise TransportError(
                        f"HTTP {response.status_code}", status_code=response.status_code
                    )

                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if not data:
                        continue
                    if data == STREAM_DONE:
                        break

                    content = parse_delta_content(data)
                    if content and not self._cancel_requested:
                        on_delta(content)
                        delivered += 1

        except httpx.HTTPError as e:
            raise TransportError(f"Network error: {e}", retriable=delivered == 0) from e
        except TransportError as e:
            if delivered:
                e.retriable = False
            raise

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> "CompletionClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
