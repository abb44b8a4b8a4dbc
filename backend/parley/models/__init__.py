"""Models module."""

from .session import (
    Participant, Session, SessionState, SessionSummary, TitleGenerationState, utc_now
)
from .message import ChatLog, Message, MessageCreate, MessageType
from .export import EXPORT_VERSION, ExportPayload

__all__ = [
    'Participant', 'Session', 'SessionState', 'SessionSummary', 'TitleGenerationState', 'utc_now',
    'ChatLog', 'Message', 'MessageCreate', 'MessageType',
    'EXPORT_VERSION', 'ExportPayload',
]
