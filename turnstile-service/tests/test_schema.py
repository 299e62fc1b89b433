"""Tests for the database schema module."""

import pytest

from turnstile_service.db.schema import (
    SCHEMA_VERSION,
    ALL_TABLES,
    DDL_STATEMENTS,
    INDEX_STATEMENTS,
    RECORD_TABLES,
    check_tables_exist,
    init_schema,
    _extract_table_name,
    _extract_index_name,
)


def test_schema_version():
    """Schema version follows semver."""
    assert SCHEMA_VERSION == "0.1.0"
    parts = SCHEMA_VERSION.split(".")
    assert len(parts) == 3
    assert all(p.isdigit() for p in parts)


def test_all_tables():
    assert set(ALL_TABLES) == {
        "TURNSTILE_META", "TURNSTILE_SESSIONS",
        "TURNSTILE_POLICIES", "TURNSTILE_RATE_LIMITS",
    }


def test_ddl_count_matches_tables():
    """Each table has a DDL statement."""
    assert len(DDL_STATEMENTS) == len(ALL_TABLES)
    assert [_extract_table_name(d) for d in DDL_STATEMENTS] == ALL_TABLES


def test_record_tables_have_expiry_index():
    indexed = {stmt.split(" ON ")[1].split("(")[0] for stmt in INDEX_STATEMENTS}
    assert indexed == set(RECORD_TABLES)


def test_record_table_ddl_columns():
    for ddl in DDL_STATEMENTS[1:]:
        for column in ("partition_key", "sort_key", "record_data", "expires_at"):
            assert column in ddl
        assert "PRIMARY KEY (partition_key, sort_key)" in ddl


def test_extract_table_name():
    """Table name extraction from DDL works."""
    ddl = "CREATE TABLE TURNSTILE_TEST (\n    id NUMBER PRIMARY KEY\n)"
    assert _extract_table_name(ddl) == "TURNSTILE_TEST"


def test_extract_index_name():
    """Index name extraction from DDL works."""
    ddl = "CREATE INDEX IDX_TEST ON TURNSTILE_TEST(col1)"
    assert _extract_index_name(ddl) == "IDX_TEST"


@pytest.mark.asyncio
async def test_init_schema_reports_created_objects(mock_pool):
    result = await init_schema(mock_pool)
    assert result["tables_created"] == ALL_TABLES
    assert len(result["indexes_created"]) == len(INDEX_STATEMENTS)
    assert result["errors"] == []


@pytest.mark.asyncio
async def test_check_tables_exist_without_tables(mock_pool):
    result = await check_tables_exist(mock_pool)
    assert result == {t: False for t in ALL_TABLES}
