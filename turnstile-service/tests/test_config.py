"""Tests for TurnstileSettings configuration."""

import pytest

from turnstile_service.config import TurnstileSettings


def test_default_settings():
    """Settings have sensible defaults."""
    s = TurnstileSettings(oracle_password="test")
    assert s.store_backend == "oracle"
    assert s.oracle_mode == "freepdb"
    assert s.oracle_user == "turnstile"
    assert s.oracle_port == 1521
    assert s.oracle_pool_min == 2
    assert s.oracle_pool_max == 10
    assert s.turnstile_service_port == 8100
    assert s.auto_init is False
    assert s.compaction_threshold == 50
    assert s.compaction_retain == 10
    assert s.rate_limit_window_ms == 3_600_000
    assert s.default_capabilities == ["orchestrator", "query", "theory", "profile"]
    assert s.default_isolation_mode == "strict"
    assert s.default_request_budget == 100
    assert s.invocation_max_retries == 3
    assert s.gateway_max_retries == 2


def test_retention_ms():
    s = TurnstileSettings(session_retention_days=2)
    assert s.retention_ms == 2 * 24 * 60 * 60 * 1000


def test_dsn_freepdb():
    """FreePDB DSN is constructed from host:port/service."""
    s = TurnstileSettings(oracle_password="x", oracle_host="db.example.com", oracle_port=1522, oracle_service="PDB1")
    assert s.get_dsn() == "db.example.com:1522/PDB1"


def test_dsn_adb():
    """ADB mode uses oracle_dsn if provided."""
    s = TurnstileSettings(
        oracle_mode="adb",
        oracle_password="x",
        oracle_dsn="(description=(address=...))",
    )
    assert s.get_dsn() == "(description=(address=...))"
    assert s.uses_tls is True
    assert s.uses_wallet is False


def test_uses_wallet_property():
    """uses_wallet is True only in adb mode with wallet_path."""
    s = TurnstileSettings(oracle_password="x", oracle_wallet_path="/some/path")
    assert s.uses_wallet is False

    s = TurnstileSettings(
        oracle_mode="adb", oracle_password="x",
        oracle_dsn="(desc...)", oracle_wallet_path="/wallet",
    )
    assert s.uses_wallet is True
    assert s.uses_tls is False


def test_oracle_user_rejects_sql_injection():
    with pytest.raises(Exception):
        TurnstileSettings(oracle_user="admin; DROP TABLE users--")


def test_compaction_retain_must_be_below_threshold():
    with pytest.raises(Exception):
        TurnstileSettings(compaction_threshold=10, compaction_retain=10)


def test_zero_retain_is_allowed():
    s = TurnstileSettings(compaction_threshold=5, compaction_retain=0)
    assert s.compaction_retain == 0


@pytest.mark.parametrize("field", [
    "rate_limit_window_ms",
    "default_request_budget",
    "session_retention_days",
    "invocation_timeout_ms",
    "invocation_max_retries",
])
def test_positive_fields_reject_zero(field):
    with pytest.raises(Exception):
        TurnstileSettings(**{field: 0})


def test_identity_tokens_from_env(monkeypatch):
    monkeypatch.setenv("IDENTITY_TOKENS", '{"tok-1": {"sub": "user-1"}}')
    s = TurnstileSettings()
    assert s.identity_tokens == {"tok-1": {"sub": "user-1"}}
