"""
Message Models - Defines chat messages and the per-session chat log.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .session import utc_now


class MessageType(str, Enum):
    """Who produced a message."""
    USER = "user"
    AGENT = "agent"
    SYSTEM = "system"


class Message(BaseModel):
    """A single message in a chat log."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    sender_id: str
    content: str
    timestamp: datetime = Field(default_factory=utc_now)
    type: MessageType = MessageType.USER
    images: List[str] = Field(default_factory=list)  # opaque blobs (URLs or base64)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class MessageCreate(BaseModel):
    """Inbound message payload; id and timestamp are optional."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: Optional[str] = None
    sender_id: str = Field(..., min_length=1)
    content: str
    timestamp: Optional[datetime] = None
    type: MessageType = MessageType.USER
    images: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def to_message(self) -> Message:
        data = self.model_dump(exclude_none=True)
        return Message(**data)


class ChatLog(BaseModel):
    """Ordered, append-only message history for one session."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    messages: List[Message] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    last_message_at: Optional[datetime] = None
