from pydantic import BaseModel, Field
from typing import Literal, Optional


IsolationMode = Literal["strict", "shared"]


class Policy(BaseModel):
    user_id: str
    allowed_capabilities: list[str]
    isolation_mode: IsolationMode = "strict"
    request_budget: int = Field(gt=0)
    token_budget: int = Field(gt=0)
    custom_permissions: Optional[dict[str, bool]] = None
    created_at: Optional[int] = None
    updated_at: Optional[int] = None


class EnforcementRequest(BaseModel):
    user_id: str
    capability: Optional[str] = None
    target_user_id: Optional[str] = None


class EnforcementResult(BaseModel):
    allowed: bool
    reason: Optional[str] = None
    remaining: Optional[int] = None


class RateLimitCounter(BaseModel):
    user_id: str
    window_start: int
    count: int
    expires_at: int
