from pydantic import BaseModel, Field
from typing import Optional


class UserIdentity(BaseModel):
    user_id: str
    username: str
    email: Optional[str] = None
    groups: list[str] = Field(default_factory=list)
    attributes: dict[str, str] = Field(default_factory=dict)
