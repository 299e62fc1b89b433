"""Error taxonomy for the Turnstile service.

Only the gateway converts these into user-facing text; everything below it
raises and propagates the typed errors.
"""


class TurnstileError(Exception):
    """Base class for all service errors."""


class AuthenticationError(TurnstileError):
    """Invalid, expired or missing caller identity."""


class PolicyViolation(TurnstileError):
    """Capability, isolation or rate-limit denial."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class TransientInfrastructureError(TurnstileError):
    """Network, timeout or overloaded-service failure. Retryable."""


class FatalInfrastructureError(TurnstileError):
    """Malformed input, transport-level permission denial, not-found. Not retried."""


class TransportError(TurnstileError):
    """Failure reported by the inference transport.

    ``kind`` is one of the classification kinds understood by
    ``services.invocation``; ``code`` carries a network-level code such as
    ``ETIMEDOUT`` when the failure happened below HTTP.
    """

    def __init__(self, message: str, kind: str, code: str | None = None,
                 status_code: int | None = None):
        self.kind = kind
        self.code = code
        self.status_code = status_code
        super().__init__(message)


class NetworkTransportError(TransportError, TransientInfrastructureError):
    """Connection, DNS or timeout failure below HTTP. Always retryable."""


class InvocationError(TurnstileError):
    """Terminal failure of a capability invocation after classification/retries."""

    def __init__(self, message: str, capability: str, retryable: bool,
                 cause: BaseException | None = None):
        self.capability = capability
        self.retryable = retryable
        self.cause = cause
        super().__init__(message)


class StreamInterruptedError(TurnstileError):
    """The chunk source failed mid-stream. Keeps what was received so far."""

    def __init__(self, chunk_count: int, partial_response: str,
                 cause: BaseException | None = None):
        self.chunk_count = chunk_count
        self.partial_response = partial_response
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Stream interrupted after {chunk_count} chunks{detail}")


class StoreError(TurnstileError):
    """The durable key-value store rejected or failed an operation."""


class SessionStoreError(TurnstileError):
    """A session write (append, compact, delete) failed."""


class PolicyStoreError(TurnstileError):
    """A policy or rate-limit write failed."""
