"""Retry, streaming and error classification around capability invocations.

Classification is a fixed table: known overloaded/unavailable kinds and
network codes are retried, known invalid-input/forbidden/not-found kinds are
not, and anything unrecognized is treated as fatal.
"""

import asyncio
import codecs
import logging
import random
import time
import uuid
from dataclasses import dataclass
from typing import Any, AsyncIterable, Awaitable, Callable, TypeVar

from ..errors import (
    FatalInfrastructureError,
    InvocationError,
    StreamInterruptedError,
    TransientInfrastructureError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_ERROR_KINDS = frozenset({
    "throttled",
    "too_many_requests",
    "service_unavailable",
    "internal_server_error",
    "request_timeout",
    "networking_error",
})

FATAL_ERROR_KINDS = frozenset({
    "validation_error",
    "access_denied",
    "resource_not_found",
    "invalid_request",
})

NETWORK_ERROR_CODES = frozenset({"ECONNRESET", "ETIMEDOUT", "ENOTFOUND"})

GENERIC_ERROR_MESSAGE = "An error occurred processing your request. Please try again."

_KIND_MESSAGES = {
    "validation_error": "Your request could not be processed. Please check your input and try again.",
    "invalid_request": "Your request could not be processed. Please check your input and try again.",
    "access_denied": "You do not have permission to perform this action.",
    "resource_not_found": "The requested resource could not be found. Please try again later.",
    "throttled": "The system is currently busy. Please wait a moment and try again.",
    "too_many_requests": "The system is currently busy. Please wait a moment and try again.",
    "service_unavailable": "The service is temporarily unavailable. Please try again in a few moments.",
    "internal_server_error": "The service is temporarily unavailable. Please try again in a few moments.",
    "request_timeout": "Your request timed out. Please try again.",
}


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30_000
    timeout_ms: int = 60_000

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_retries=settings.invocation_max_retries,
            base_delay_ms=settings.invocation_retry_base_ms,
            max_delay_ms=settings.invocation_retry_cap_ms,
            timeout_ms=settings.invocation_timeout_ms,
        )


def error_kind(error: BaseException | None) -> str | None:
    """Classification kind of an error, following wrapped causes."""
    seen = set()
    while error is not None and id(error) not in seen:
        seen.add(id(error))
        kind = getattr(error, "kind", None)
        if kind:
            return kind
        if getattr(error, "code", None) in NETWORK_ERROR_CODES:
            return "networking_error"
        if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
            return "request_timeout"
        if isinstance(error, ConnectionResetError):
            return "networking_error"
        error = getattr(error, "cause", None) or error.__cause__
    return None


def is_retryable_error(error: BaseException | None) -> bool:
    if error is None:
        return False
    if isinstance(error, TransientInfrastructureError):
        return True
    if isinstance(error, FatalInfrastructureError):
        return False
    if getattr(error, "code", None) in NETWORK_ERROR_CODES:
        return True
    kind = error_kind(error)
    if kind in RETRYABLE_ERROR_KINDS:
        return True
    # FATAL_ERROR_KINDS and anything unrecognized fail closed
    return False


def calculate_backoff_delay(attempt: int, base_delay_ms: int = 1000,
                            max_delay_ms: int = 30_000) -> int:
    """``min(cap, base * 2**(attempt-1))`` plus up to 25% jitter, in ms."""
    exponential = min(max_delay_ms, base_delay_ms * (2 ** (attempt - 1)))
    jitter = random.uniform(0, exponential * 0.25)
    return int(exponential + jitter)


def user_friendly_error_message(error: BaseException | None) -> str:
    """Generic sentence for an invocation failure; never leaks internals."""
    if error is None:
        return GENERIC_ERROR_MESSAGE
    return _KIND_MESSAGES.get(error_kind(error), GENERIC_ERROR_MESSAGE)


async def _run_with_timeout(operation: Callable[[], Awaitable[T]], timeout_s: float) -> T:
    """Race ``operation`` against a timeout without cancelling it.

    A timed-out call keeps running in the background; its eventual result or
    error is collected and dropped.
    """
    task = asyncio.ensure_future(operation())
    try:
        return await asyncio.wait_for(asyncio.shield(task), timeout_s)
    except asyncio.TimeoutError:
        task.add_done_callback(_discard_late_result)
        raise TimeoutError("Request timeout") from None


def _discard_late_result(task: asyncio.Future) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Discarded late failure of abandoned attempt: %s", task.exception())


async def invoke_with_retry(
    operation: Callable[[], Awaitable[T]],
    capability: str,
    policy: RetryPolicy | None = None,
    on_attempt: Callable[[int], None] | None = None,
) -> T:
    """Call ``operation`` until it succeeds, fails fatally, or attempts run out.

    Raises:
        InvocationError: carrying the capability name, whether the last
            failure was retryable, and the underlying cause.
    """
    policy = policy or RetryPolicy()
    trace_id = f"trace-{uuid.uuid4().hex[:12]}"
    started = time.monotonic()
    attempt = 0
    last_error: BaseException | None = None

    while attempt < policy.max_retries:
        attempt += 1
        if on_attempt:
            on_attempt(attempt)
        logger.info("Invoking capability=%s attempt=%d/%d trace=%s",
                    capability, attempt, policy.max_retries, trace_id)
        attempt_started = time.monotonic()
        try:
            result = await _run_with_timeout(operation, policy.timeout_ms / 1000.0)
        except Exception as e:
            last_error = e
            retryable = is_retryable_error(e)
            elapsed_ms = int((time.monotonic() - started) * 1000)
            logger.warning("Invocation failed capability=%s attempt=%d retryable=%s "
                           "elapsed_ms=%d trace=%s error=%s",
                           capability, attempt, retryable, elapsed_ms, trace_id, e)

            if not retryable:
                logger.error("Invocation failed with non-retryable error capability=%s trace=%s",
                             capability, trace_id)
                raise InvocationError(f"Invocation failed: {e}", capability, False, e) from e

            if attempt >= policy.max_retries:
                logger.error("Invocation retries exhausted capability=%s attempts=%d trace=%s",
                             capability, attempt, trace_id)
                raise InvocationError(
                    f"Invocation failed after {attempt} attempts: {e}", capability, True, e,
                ) from e

            delay_ms = calculate_backoff_delay(attempt, policy.base_delay_ms, policy.max_delay_ms)
            logger.info("Retrying capability=%s next_attempt=%d delay_ms=%d trace=%s",
                        capability, attempt + 1, delay_ms, trace_id)
            await asyncio.sleep(delay_ms / 1000.0)
            continue

        logger.info("Invocation succeeded capability=%s attempt=%d duration_ms=%d trace=%s",
                    capability, attempt,
                    int((time.monotonic() - attempt_started) * 1000), trace_id)
        return result

    raise InvocationError(f"Invocation failed after {attempt} attempts", capability, True, last_error)


async def process_stream(
    chunks: AsyncIterable[bytes],
    on_chunk: Callable[[str], Awaitable[None]] | None = None,
    on_error: Callable[[BaseException], Awaitable[None]] | None = None,
    capability: str | None = None,
) -> str:
    """Decode and accumulate a byte stream into the full response text.

    A failing ``on_chunk`` is logged and the stream keeps going. A failing
    source calls ``on_error`` and raises ``StreamInterruptedError`` with the
    chunk count and the text received so far.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    parts: list[str] = []
    chunk_count = 0
    started = time.monotonic()
    logger.debug("Stream started capability=%s", capability)

    try:
        async for raw in chunks:
            text = decoder.decode(raw)
            parts.append(text)
            chunk_count += 1
            if on_chunk and text:
                try:
                    await on_chunk(text)
                except Exception as e:
                    logger.error("Error processing chunk capability=%s chunk=%d: %s",
                                 capability, chunk_count, e)
        parts.append(decoder.decode(b"", final=True))
    except Exception as e:
        partial = "".join(parts)
        logger.warning("Stream interrupted capability=%s chunks=%d partial_len=%d error=%s",
                       capability, chunk_count, len(partial), e)
        if on_error:
            try:
                await on_error(e)
            except Exception as handler_error:
                logger.error("Error in stream error handler capability=%s: %s",
                             capability, handler_error)
        raise StreamInterruptedError(chunk_count, partial, e) from e

    response = "".join(parts)
    logger.debug("Stream complete capability=%s chunks=%d length=%d duration_ms=%d",
                 capability, chunk_count, len(response),
                 int((time.monotonic() - started) * 1000))
    return response


async def invoke_with_graceful_degradation(
    invocation: Callable[[], Awaitable[T]],
    fallback: Any = None,
) -> T | Any:
    """Best-effort call: any failure returns ``fallback``. Not for primary responses."""
    try:
        return await invocation()
    except Exception as e:
        logger.warning("Invocation failed, using fallback (has_fallback=%s): %s",
                       fallback is not None, e)
        return fallback
