"""Persistent record shapes exchanged with the remote store.

Every field is optional: a record coming back from the store is untrusted
until it passes the transform layer.
"""

from datetime import datetime
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict


class ConversationRecord(BaseModel):
    """Flat conversation row."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    user_id: Optional[str] = None
    title: Optional[str] = None
    # Unusable dates fall back to now in the transform, so accept anything here.
    created_at: Any = None
    updated_at: Any = None


class MessageRecord(BaseModel):
    """Flat message row. ``sources`` holds a JSON array string or None."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    conversation_id: Optional[str] = None
    user_id: Optional[str] = None
    role: Optional[str] = None
    content: Optional[str] = None
    timestamp: Union[str, datetime, None] = None
    sources: Any = None
