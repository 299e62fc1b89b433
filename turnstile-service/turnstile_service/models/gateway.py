from pydantic import BaseModel
from typing import Optional


class QueryRequest(BaseModel):
    query: str
    user_id: str
    session_id: str
    request_id: str
    token: Optional[str] = None
    capability: Optional[str] = None
    target_user_id: Optional[str] = None


class QueryBody(BaseModel):
    """HTTP body for /api/query; ids are generated when omitted."""

    query: Optional[str] = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    request_id: Optional[str] = None
    capability: Optional[str] = None
    target_user_id: Optional[str] = None


class ResponseMetadata(BaseModel):
    capability: Optional[str] = None
    duration_ms: Optional[int] = None


class QueryResponse(BaseModel):
    content: str
    request_id: str
    success: bool
    error: Optional[str] = None
    metadata: Optional[ResponseMetadata] = None
