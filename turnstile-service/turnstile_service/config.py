import re

from pydantic_settings import BaseSettings
from pydantic import field_validator, model_validator
from typing import Optional, Literal


class TurnstileSettings(BaseSettings):
    """Turnstile service configuration.

    Supports two durable store backends:
      oracle – Oracle Database (FreePDB container or Autonomous Database)
      memory – in-process store for local development and tests

    Oracle itself supports two modes:
      freepdb – local Docker container (host:port/service)
      adb     – Autonomous Database on OCI (full DSN descriptor, wallet-less or mTLS)
    """

    store_backend: Literal["oracle", "memory"] = "oracle"
    oracle_mode: Literal["freepdb", "adb"] = "freepdb"
    oracle_user: str = "turnstile"
    oracle_password: str = ""
    oracle_host: str = "localhost"
    oracle_port: int = 1521
    oracle_service: str = "FREEPDB1"
    oracle_dsn: Optional[str] = None
    oracle_wallet_path: Optional[str] = None
    oracle_wallet_password: Optional[str] = None
    oracle_pool_min: int = 2
    oracle_pool_max: int = 10
    turnstile_service_port: int = 8100
    turnstile_service_token: Optional[str] = None
    auto_init: bool = False

    # Session memory
    session_retention_days: int = 90
    compaction_threshold: int = 50
    compaction_retain: int = 10
    summary_excerpt_chars: int = 100
    summary_excerpt_count: int = 3

    # Policy / admission
    rate_limit_window_ms: int = 3_600_000
    default_capabilities: list[str] = ["orchestrator", "query", "theory", "profile"]
    default_isolation_mode: Literal["strict", "shared"] = "strict"
    default_request_budget: int = 100
    default_token_budget: int = 2048

    # Inference transport
    inference_base_url: str = "http://localhost:8200"
    inference_api_key: Optional[str] = None
    invocation_timeout_ms: int = 60_000
    invocation_max_retries: int = 3
    invocation_retry_base_ms: int = 1000
    invocation_retry_cap_ms: int = 30_000

    # Gateway
    gateway_max_retries: int = 2
    gateway_retry_cap_ms: int = 5000

    # Identity: bearer token -> claims
    identity_tokens: dict[str, dict] = {}

    model_config = {"env_prefix": "", "case_sensitive": False}

    @field_validator("oracle_user")
    @classmethod
    def validate_oracle_user(cls, v: str) -> str:
        if not re.match(r"^[A-Za-z0-9_$#]+$", v):
            raise ValueError(f"Invalid Oracle user name: {v!r}")
        return v

    @field_validator(
        "rate_limit_window_ms",
        "default_request_budget",
        "session_retention_days",
        "invocation_timeout_ms",
        "invocation_max_retries",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"Value must be positive, got {v}")
        return v

    @model_validator(mode="after")
    def validate_compaction_window(self):
        if self.compaction_retain < 0 or self.compaction_retain >= self.compaction_threshold:
            raise ValueError(
                "compaction_retain must be non-negative and smaller than compaction_threshold "
                f"(got retain={self.compaction_retain}, threshold={self.compaction_threshold})"
            )
        return self

    @property
    def is_adb(self) -> bool:
        return self.oracle_mode == "adb"

    @property
    def uses_wallet(self) -> bool:
        """True if ADB mode with a wallet path (mTLS)."""
        return self.is_adb and bool(self.oracle_wallet_path)

    @property
    def uses_tls(self) -> bool:
        """True if ADB mode with a long DSN descriptor (wallet-less TLS)."""
        return self.is_adb and bool(self.oracle_dsn) and not self.uses_wallet

    @property
    def retention_ms(self) -> int:
        return self.session_retention_days * 24 * 60 * 60 * 1000

    def get_dsn(self) -> str:
        """Return the DSN for oracledb connection.

        ADB mode: full DSN descriptor.
        FreePDB mode: simple host:port/service format.
        """
        if self.is_adb and self.oracle_dsn:
            return self.oracle_dsn
        return f"{self.oracle_host}:{self.oracle_port}/{self.oracle_service}"
