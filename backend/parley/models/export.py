"""
Export Models - The versioned payload produced by export and consumed by import.
"""

from typing import List
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .session import Session
from .message import ChatLog

EXPORT_VERSION = 1


class ExportPayload(BaseModel):
    """{"version": 1, "exportedAt": <epoch-ms>, "sessions": [...], "chatLogs": [...]}"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    version: int = EXPORT_VERSION
    exported_at: int = 0  # epoch milliseconds
    sessions: List[Session] = Field(default_factory=list)
    chat_logs: List[ChatLog] = Field(default_factory=list)
