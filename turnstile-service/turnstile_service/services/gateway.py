import asyncio
import logging
import time
from typing import Awaitable, Callable

from ..db.kv_store import now_ms
from ..errors import AuthenticationError, FatalInfrastructureError, InvocationError, PolicyViolation
from ..models.gateway import QueryRequest, QueryResponse, ResponseMetadata
from ..models.identity import UserIdentity
from ..models.policy import EnforcementRequest, Policy
from ..models.session import Message, Session
from .identity_service import IdentityResolver
from .invocation import (
    RetryPolicy,
    calculate_backoff_delay,
    invoke_with_graceful_degradation,
    invoke_with_retry,
    process_stream,
    user_friendly_error_message,
)
from .policy_service import PolicyService
from .session_service import SessionStore

logger = logging.getLogger(__name__)

DEFAULT_CAPABILITY = "orchestrator"
RETRYABLE_MARKER = "[retryable]"

RATE_LIMIT_MESSAGE = "You have exceeded your request limit. Please try again later."
EXPIRED_TOKEN_MESSAGE = "Your session has expired. Please log in again."
INVALID_IDENTITY_MESSAGE = "Authentication failed. Please log in again."
PERMISSION_MESSAGE = "You do not have permission to perform this action."
ISOLATION_MESSAGE = "You can only access your own data."
GENERIC_MESSAGE = "An error occurred while processing your request. Please try again."

_RETRYABLE_KEYWORDS = (
    "timeout",
    "throttl",
    "rate limit",
    "service unavailable",
    "internal server error",
    "connection",
    "network",
    RETRYABLE_MARKER,
)

StreamCallback = Callable[[str], Awaitable[None]]


def user_message_for(error: BaseException) -> str:
    """Fixed user-facing text for a failure; internal detail never leaks."""
    if isinstance(error, AuthenticationError):
        text = str(error).lower()
        if "invalid or expired token" in text:
            return EXPIRED_TOKEN_MESSAGE
        return INVALID_IDENTITY_MESSAGE
    if isinstance(error, PolicyViolation):
        reason = error.reason.lower()
        if "rate limit" in reason:
            return RATE_LIMIT_MESSAGE
        if "not permitted" in reason:
            return PERMISSION_MESSAGE
        if "isolation" in reason:
            return ISOLATION_MESSAGE
        return GENERIC_MESSAGE
    if isinstance(error, InvocationError):
        message = user_friendly_error_message(error.cause)
        return f"{message} {RETRYABLE_MARKER}" if error.retryable else message
    return GENERIC_MESSAGE


def is_retryable_outcome(error_text: str | None) -> bool:
    if not error_text:
        return False
    text = error_text.lower()
    return any(keyword in text for keyword in _RETRYABLE_KEYWORDS)


def strip_retryable_marker(error_text: str | None) -> str | None:
    if error_text is None:
        return None
    return error_text.replace(RETRYABLE_MARKER, "").strip()


class Gateway:
    """Admits, routes and records one query end to end.

    Every failure comes back as ``success=False`` with a message from the
    fixed table above; nothing raises out of ``handle_request``.
    """

    def __init__(self, identity: IdentityResolver, policies: PolicyService,
                 sessions: SessionStore, client, settings):
        self.identity = identity
        self.policies = policies
        self.sessions = sessions
        self.client = client
        self.settings = settings
        self.retry_policy = RetryPolicy.from_settings(settings)

    async def handle_request(self, request: QueryRequest,
                             stream_callback: StreamCallback | None = None) -> QueryResponse:
        started = time.monotonic()
        capability = request.capability or DEFAULT_CAPABILITY
        logger.info("Handling request request=%s user=%s session=%s capability=%s",
                    request.request_id, request.user_id, request.session_id, capability)

        try:
            identity = await self._resolve_identity(request)
            policy = await self.policies.get_policy(identity.user_id)

            decision = await self.policies.enforce(policy, EnforcementRequest(
                user_id=identity.user_id,
                capability=capability,
                target_user_id=request.target_user_id,
            ))
            if not decision.allowed:
                logger.warning("Request denied request=%s user=%s reason=%s",
                               request.request_id, identity.user_id, decision.reason)
                raise PolicyViolation(decision.reason or "request denied")

            session = await self.sessions.load(identity.user_id, request.session_id)
            payload = _build_payload(request.query, identity, session, capability, policy)
            live = {"attempt": None}
            try:
                content = await invoke_with_retry(
                    lambda: self._invoke(payload, capability,
                                         _attempt_callback(stream_callback, live)),
                    capability,
                    self.retry_policy,
                    on_attempt=lambda n: live.update(attempt=n),
                )
            finally:
                live["attempt"] = None
        except Exception as e:
            duration_ms = _elapsed_ms(started)
            logger.error("Request failed request=%s user=%s capability=%s duration_ms=%d: %s",
                         request.request_id, request.user_id, capability, duration_ms, e)
            return QueryResponse(
                content="",
                request_id=request.request_id,
                success=False,
                error=user_message_for(e),
                metadata=ResponseMetadata(capability=capability, duration_ms=duration_ms),
            )

        await invoke_with_graceful_degradation(
            lambda: self._remember(identity.user_id, request.session_id, request.query, content),
            fallback=False,
        )

        duration_ms = _elapsed_ms(started)
        logger.info("Request complete request=%s user=%s capability=%s duration_ms=%d",
                    request.request_id, identity.user_id, capability, duration_ms)
        return QueryResponse(
            content=content,
            request_id=request.request_id,
            success=True,
            metadata=ResponseMetadata(capability=capability, duration_ms=duration_ms),
        )

    async def handle_request_with_retry(self, request: QueryRequest,
                                        stream_callback: StreamCallback | None = None,
                                        max_retries: int | None = None) -> QueryResponse:
        """Re-run the whole request while the outcome reads as transient."""
        if max_retries is None:
            max_retries = self.settings.gateway_max_retries

        attempt = 0
        while True:
            response = await self.handle_request(request, stream_callback)
            if response.success or attempt >= max_retries or not is_retryable_outcome(response.error):
                return response

            attempt += 1
            delay_ms = calculate_backoff_delay(
                attempt, self.settings.invocation_retry_base_ms, self.settings.gateway_retry_cap_ms,
            )
            logger.info("Retrying request request=%s attempt=%d/%d delay_ms=%d",
                        request.request_id, attempt, max_retries, delay_ms)
            await asyncio.sleep(delay_ms / 1000.0)

    async def _resolve_identity(self, request: QueryRequest) -> UserIdentity:
        if request.token:
            identity = await self.identity.get_user_identity_from_token(request.token)
        else:
            identity = await self.identity.get_user_identity(request.user_id)
        if not await self.identity.validate_identity(identity):
            raise AuthenticationError("Invalid user identity")
        return identity

    async def _invoke(self, payload: dict, capability: str,
                      stream_callback: StreamCallback | None) -> str:
        if stream_callback is not None:
            content = await process_stream(
                self.client.stream(payload), stream_callback, capability=capability,
            )
        else:
            reply = await self.client.invoke(payload)
            content = reply.get("content") if isinstance(reply, dict) else None
        if not content:
            raise FatalInfrastructureError(f"Empty response from capability {capability}")
        return content

    async def _remember(self, user_id: str, session_id: str, query: str, content: str) -> bool:
        await self.sessions.append(user_id, session_id,
                                   Message(role="user", content=query, timestamp=now_ms()))
        await self.sessions.append(user_id, session_id,
                                   Message(role="assistant", content=content, timestamp=now_ms()))
        return True


def _attempt_callback(callback: StreamCallback | None, live: dict) -> StreamCallback | None:
    """Forward chunks only while the attempt that created it is the current one.

    A timed-out attempt keeps streaming in the background; once a retry starts
    or the request finishes, its chunks are dropped.
    """
    if callback is None:
        return None
    attempt = live["attempt"]

    async def forward(text: str) -> None:
        if live["attempt"] == attempt:
            await callback(text)
    return forward


def _build_payload(query: str, identity: UserIdentity, session: Session,
                   capability: str, policy: Policy) -> dict:
    return {
        "query": query,
        "identity": identity.model_dump(),
        "memory": {
            "messages": [m.model_dump() for m in session.messages],
            "summary": session.summary,
        },
        "context": {
            "capability": capability,
            "policy": policy.model_dump(),
        },
    }


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
