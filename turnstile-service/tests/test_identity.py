"""Tests for IdentityService token resolution."""

import time

import pytest

from turnstile_service.errors import AuthenticationError
from turnstile_service.models.identity import UserIdentity
from turnstile_service.services.identity_service import IdentityService


pytestmark = pytest.mark.asyncio


@pytest.fixture
def identity(settings_factory):
    return IdentityService(settings_factory(identity_tokens={
        "tok-alice": {
            "sub": "alice",
            "username": "alice.smith",
            "email": "alice@example.com",
            "groups": ["users", "admins"],
            "custom:tenant": "acme",
            "custom:tier": "gold",
            "exp": time.time() + 3600,
        },
        "tok-bare": {"sub": "bob"},
        "tok-expired": {"sub": "carol", "exp": time.time() - 10},
        "tok-nosub": {"username": "ghost"},
    }))


async def test_identity_from_user_id(identity):
    result = await identity.get_user_identity("user-1")
    assert result.user_id == "user-1"
    assert result.username == "user-1"
    assert result.groups == ["users"]
    assert result.attributes == {}


async def test_identity_from_token(identity):
    result = await identity.get_user_identity_from_token("tok-alice")
    assert result.user_id == "alice"
    assert result.username == "alice.smith"
    assert result.email == "alice@example.com"
    assert result.groups == ["users", "admins"]
    assert result.attributes == {"tenant": "acme", "tier": "gold"}


async def test_token_defaults(identity):
    result = await identity.get_user_identity_from_token("tok-bare")
    assert result.username == "bob"
    assert result.email is None
    assert result.groups == ["users"]


@pytest.mark.parametrize("token", ["unknown", "tok-expired", "tok-nosub"])
async def test_invalid_tokens_rejected(identity, token):
    with pytest.raises(AuthenticationError, match="Invalid or expired token"):
        await identity.get_user_identity_from_token(token)


async def test_validate_identity(identity):
    assert await identity.validate_identity(UserIdentity(user_id="u", username="u")) is True
    assert await identity.validate_identity(UserIdentity(user_id="", username="u")) is False
    assert await identity.validate_identity(UserIdentity(user_id="u", username="")) is False
