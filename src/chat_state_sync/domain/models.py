"""Domain models for the chat state."""

from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

Role = Literal["user", "assistant"]
ROLES = ("user", "assistant")


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


class Message(BaseModel):
    """Message model."""

    id: str
    role: Role
    content: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
    is_loading: bool = False
    sources: Optional[List[str]] = None

    @field_validator("sources")
    @classmethod
    def _empty_sources_are_absent(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        return value or None


class Conversation(BaseModel):
    """Conversation model."""

    id: str
    title: str
    messages: List[Message] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class User(BaseModel):
    """Authenticated user as reported by the auth provider."""

    id: str
    email: Optional[str] = None
