import logging
import time
from typing import Protocol

from ..errors import AuthenticationError
from ..models.identity import UserIdentity

logger = logging.getLogger(__name__)


class IdentityResolver(Protocol):
    async def get_user_identity(self, user_id: str) -> UserIdentity: ...

    async def get_user_identity_from_token(self, token: str) -> UserIdentity: ...

    async def validate_identity(self, identity: UserIdentity) -> bool: ...


class IdentityService:
    """Resolves callers from bearer tokens issued out of band.

    Tokens map to claim sets in ``settings.identity_tokens``; claims follow
    the usual access-token layout (``sub``, ``username``, ``email``,
    ``groups``, ``exp`` in epoch seconds, ``custom:*`` attributes).
    """

    def __init__(self, settings):
        self.tokens = settings.identity_tokens

    async def get_user_identity(self, user_id: str) -> UserIdentity:
        """Minimal identity for a bare user id; nothing is verified."""
        logger.info("Getting user identity user=%s", user_id)
        return UserIdentity(user_id=user_id, username=user_id, groups=["users"])

    async def get_user_identity_from_token(self, token: str) -> UserIdentity:
        claims = self.tokens.get(token)
        if not claims or not claims.get("sub"):
            logger.warning("Token verification failed: unknown token")
            raise AuthenticationError("Invalid or expired token")

        exp = claims.get("exp")
        if exp is not None and float(exp) <= time.time():
            logger.warning("Token verification failed: expired token for user=%s", claims["sub"])
            raise AuthenticationError("Invalid or expired token")

        identity = UserIdentity(
            user_id=str(claims["sub"]),
            username=str(claims.get("username") or claims["sub"]),
            email=claims["email"] if isinstance(claims.get("email"), str) else None,
            groups=_extract_groups(claims),
            attributes=_extract_attributes(claims),
        )
        logger.info("User identity extracted from token user=%s groups=%d",
                    identity.user_id, len(identity.groups))
        return identity

    async def validate_identity(self, identity: UserIdentity) -> bool:
        if not identity.user_id or not identity.username:
            logger.warning("Invalid identity: missing required fields")
            return False
        return True


def _extract_groups(claims: dict) -> list[str]:
    groups = claims.get("groups")
    if isinstance(groups, list):
        return [str(g) for g in groups]
    return ["users"]


def _extract_attributes(claims: dict) -> dict[str, str]:
    return {
        key[len("custom:"):]: value
        for key, value in claims.items()
        if key.startswith("custom:") and isinstance(value, str)
    }
