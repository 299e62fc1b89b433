from .gateway import QueryBody, QueryRequest, QueryResponse, ResponseMetadata
from .identity import UserIdentity
from .policy import EnforcementRequest, EnforcementResult, Policy, RateLimitCounter
from .session import AppendMessageRequest, AppendOptions, LoadOptions, Message, Session

__all__ = [
    "QueryBody",
    "QueryRequest",
    "QueryResponse",
    "ResponseMetadata",
    "UserIdentity",
    "EnforcementRequest",
    "EnforcementResult",
    "Policy",
    "RateLimitCounter",
    "AppendMessageRequest",
    "AppendOptions",
    "LoadOptions",
    "Message",
    "Session",
]
