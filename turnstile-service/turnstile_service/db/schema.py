import logging

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "0.1.0"

SESSIONS_TABLE = "TURNSTILE_SESSIONS"
POLICIES_TABLE = "TURNSTILE_POLICIES"
RATE_LIMITS_TABLE = "TURNSTILE_RATE_LIMITS"

# Tables that hold key-value records (partition key + sort key + JSON document)
RECORD_TABLES = [SESSIONS_TABLE, POLICIES_TABLE, RATE_LIMITS_TABLE]


def _record_table_ddl(table: str) -> str:
    return f"""
    CREATE TABLE {table} (
        partition_key VARCHAR2(200)  NOT NULL,
        sort_key      VARCHAR2(400)  NOT NULL,
        record_data   CLOB,
        expires_at    NUMBER(20),
        updated_at    NUMBER(20)     NOT NULL,
        CONSTRAINT PK_{table} PRIMARY KEY (partition_key, sort_key)
    )
    """


DDL_STATEMENTS = [
    # ---- TURNSTILE_META ----
    """
    CREATE TABLE TURNSTILE_META (
        meta_key   VARCHAR2(100)  PRIMARY KEY,
        meta_value VARCHAR2(4000) NOT NULL,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    # ---- TURNSTILE_SESSIONS ----
    _record_table_ddl(SESSIONS_TABLE),
    # ---- TURNSTILE_POLICIES ----
    _record_table_ddl(POLICIES_TABLE),
    # ---- TURNSTILE_RATE_LIMITS ----
    _record_table_ddl(RATE_LIMITS_TABLE),
]

INDEX_STATEMENTS = [
    f"CREATE INDEX IDX_SESSIONS_EXPIRES ON {SESSIONS_TABLE}(expires_at)",
    f"CREATE INDEX IDX_POLICIES_EXPIRES ON {POLICIES_TABLE}(expires_at)",
    f"CREATE INDEX IDX_RATE_LIMITS_EXPIRES ON {RATE_LIMITS_TABLE}(expires_at)",
]

ALL_TABLES = [
    "TURNSTILE_META",
    SESSIONS_TABLE,
    POLICIES_TABLE,
    RATE_LIMITS_TABLE,
]


async def init_schema(pool) -> dict:
    """Create all tables and indexes idempotently. Returns status dict."""
    tables_created = []
    indexes_created = []
    errors = []

    async with pool.acquire() as conn:
        # Create tables
        for ddl in DDL_STATEMENTS:
            table_name = _extract_table_name(ddl)
            try:
                cursor = conn.cursor()
                await cursor.execute(ddl)
                tables_created.append(table_name)
                logger.info("Created table %s", table_name)
            except Exception as e:
                if "ORA-00955" in str(e):
                    logger.debug("Table %s already exists", table_name)
                else:
                    logger.error("Error creating table %s: %s", table_name, e)
                    errors.append({"table": table_name, "error": str(e)})

        # Create expiry indexes
        for idx_ddl in INDEX_STATEMENTS:
            idx_name = _extract_index_name(idx_ddl)
            try:
                cursor = conn.cursor()
                await cursor.execute(idx_ddl)
                indexes_created.append(idx_name)
                logger.info("Created index %s", idx_name)
            except Exception as e:
                if "ORA-00955" in str(e) or "ORA-01408" in str(e):
                    logger.debug("Index %s already exists", idx_name)
                else:
                    logger.error("Error creating index %s: %s", idx_name, e)
                    errors.append({"index": idx_name, "error": str(e)})

        # Set schema version
        await set_schema_version(pool, SCHEMA_VERSION)

        await conn.commit()

    return {
        "tables_created": tables_created,
        "indexes_created": indexes_created,
        "errors": errors,
    }


async def check_tables_exist(pool) -> dict[str, bool]:
    """Check which tables exist."""
    result = {}
    async with pool.acquire() as conn:
        cursor = conn.cursor()
        await cursor.execute(
            "SELECT table_name FROM user_tables WHERE table_name LIKE 'TURNSTILE_%'"
        )
        rows = await cursor.fetchall()
        existing = {row[0] for row in rows}
        for table in ALL_TABLES:
            result[table] = table in existing
    return result


async def get_schema_version(pool) -> str:
    """Get current schema version from TURNSTILE_META."""
    try:
        async with pool.acquire() as conn:
            cursor = conn.cursor()
            await cursor.execute(
                "SELECT meta_value FROM TURNSTILE_META WHERE meta_key = 'schema_version'"
            )
            row = await cursor.fetchone()
            return row[0] if row else "unknown"
    except Exception:
        return "unknown"


async def set_schema_version(pool, version: str):
    """Set schema version in TURNSTILE_META."""
    async with pool.acquire() as conn:
        cursor = conn.cursor()
        await cursor.execute(
            """
            MERGE INTO TURNSTILE_META m
            USING (SELECT 'schema_version' AS meta_key FROM DUAL) s
            ON (m.meta_key = s.meta_key)
            WHEN MATCHED THEN
                UPDATE SET meta_value = :val, updated_at = CURRENT_TIMESTAMP
            WHEN NOT MATCHED THEN
                INSERT (meta_key, meta_value) VALUES ('schema_version', :val)
            """,
            {"val": version},
        )
        await conn.commit()


def _extract_table_name(ddl: str) -> str:
    """Extract table name from CREATE TABLE statement."""
    parts = ddl.strip().split()
    for i, p in enumerate(parts):
        if p.upper() == "TABLE" and i + 1 < len(parts):
            return parts[i + 1].strip("(").upper()
    return "UNKNOWN"


def _extract_index_name(ddl: str) -> str:
    """Extract index name from CREATE INDEX statement."""
    parts = ddl.strip().split()
    for i, p in enumerate(parts):
        if p.upper() == "INDEX" and i + 1 < len(parts):
            name = parts[i + 1].strip().upper()
            if name == "IF":
                continue
            return name
    return "UNKNOWN"
