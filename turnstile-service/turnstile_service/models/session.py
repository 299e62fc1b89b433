from pydantic import BaseModel, Field
from typing import Any, Literal, Optional


class Message(BaseModel):
    role: Literal["user", "assistant"]
    content: str
    timestamp: int
    metadata: Optional[dict[str, Any]] = None


class Session(BaseModel):
    user_id: str
    session_id: str
    messages: list[Message] = Field(default_factory=list)
    summary: Optional[str] = None
    created_at: int
    last_accessed: int
    expires_at: int
    metadata: Optional[dict[str, Any]] = None


class LoadOptions(BaseModel):
    max_messages: Optional[int] = Field(default=None, ge=1)
    include_summary: bool = True


class AppendOptions(BaseModel):
    auto_compact: bool = True
    compaction_threshold: Optional[int] = Field(default=None, ge=1)


class AppendMessageRequest(BaseModel):
    role: Literal["user", "assistant"]
    content: str
    metadata: Optional[dict[str, Any]] = None
    auto_compact: bool = True
    compaction_threshold: Optional[int] = Field(default=None, ge=1)
