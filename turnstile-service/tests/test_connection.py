"""Tests for Oracle pool parameter construction."""

from turnstile_service.db.connection import OracleConnectionManager


def test_freepdb_params(settings_factory):
    params = OracleConnectionManager(settings_factory(oracle_host="db", oracle_port=1522)).pool_params()
    assert params["dsn"] == "db:1522/FREEPDB1"
    assert params["min"] == 1
    assert params["max"] == 2
    assert "config_dir" not in params


def test_adb_wallet_params(settings_factory):
    params = OracleConnectionManager(settings_factory(
        oracle_mode="adb",
        oracle_dsn="(description=...)",
        oracle_wallet_path="/wallet",
        oracle_wallet_password="pw",
    )).pool_params()
    assert params["dsn"] == "(description=...)"
    assert params["config_dir"] == "/wallet"
    assert params["wallet_password"] == "pw"
    assert params["ssl_server_dn_match"] is True


def test_adb_tls_params(settings_factory):
    params = OracleConnectionManager(settings_factory(
        oracle_mode="adb", oracle_dsn="(description=(protocol=tcps))",
    )).pool_params()
    assert "config_dir" not in params
    assert params["dsn"] == "(description=(protocol=tcps))"
