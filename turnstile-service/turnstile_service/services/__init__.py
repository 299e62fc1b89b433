from .gateway import Gateway
from .identity_service import IdentityService
from .policy_service import PolicyService
from .session_service import SessionStore

__all__ = [
    "Gateway",
    "IdentityService",
    "PolicyService",
    "SessionStore",
]
