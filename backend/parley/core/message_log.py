"""
Message Log - Append-only message history for one session, addressed by chat log id.

Unknown chat log ids behave as empty logs; the log record is created on the
first write.
"""

import logging
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from ..models import ChatLog, Message, MessageCreate
from ..storage.session_store import SessionStore
from .errors import ValidationError

logger = logging.getLogger(__name__)

MessageInput = Union[Message, MessageCreate, Dict[str, Any]]


class MessageLog:
    """Reads and appends chat log messages through the session store."""

    def __init__(self, store: SessionStore):
        self.store = store

    @staticmethod
    def _coerce(message: MessageInput) -> Message:
        if isinstance(message, Message):
            return message
        try:
            if isinstance(message, MessageCreate):
                return message.to_message()
            return MessageCreate.model_validate(message).to_message()
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid message: {e.errors()[0]['msg']}") from e

    async def _messages(self, chat_log_id: str) -> List[Message]:
        chat_log = await self.store.get_chat_log(chat_log_id)
        return chat_log.messages if chat_log else []

    async def add_message(self, chat_log_id: str, message: MessageInput) -> Message:
        """
        Append a message to the log.

        Args:
            chat_log_id: Target chat log
            message: Message, MessageCreate or a dict with the same fields;
                id and timestamp are assigned when absent

        Returns:
            Message: The stored message including its assigned id and timestamp
        """
        stored = await self.store.append_message(chat_log_id, self._coerce(message))
        logger.debug(f"Appended message {stored.id} to chat log {chat_log_id}")
        return stored

    async def get_messages(
        self,
        chat_log_id: str,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[Message]:
        """Return a slice of the log; ``limit=None`` returns everything from ``offset`` on."""
        if offset < 0:
            raise ValidationError("offset must not be negative")
        if limit is not None and limit < 0:
            raise ValidationError("limit must not be negative")

        messages = await self._messages(chat_log_id)
        end = None if limit is None else offset + limit
        return messages[offset:end]

    async def get_recent_messages(self, chat_log_id: str, count: int = 10) -> List[Message]:
        """Return the last ``count`` messages in log order."""
        if count <= 0:
            return []
        messages = await self._messages(chat_log_id)
        return messages[-count:]

    async def search_messages(self, chat_log_id: str, term: str) -> List[Message]:
        """Case-insensitive substring match over message content, in log order."""
        needle = (term or "").lower()
        if not needle:
            return []
        return [m for m in await self._messages(chat_log_id) if needle in m.content.lower()]

    async def get_message_count(self, chat_log_id: str) -> int:
        return len(await self._messages(chat_log_id))

    async def clear_log(self, chat_log_id: str) -> int:
        """Remove every message; the owning session's count drops to zero."""
        removed = await self.store.clear_chat_log(chat_log_id)
        if removed:
            logger.info(f"Cleared {removed} messages from chat log {chat_log_id}")
        return removed

    async def export_log(self, chat_log_id: str) -> Dict[str, Any]:
        chat_log = await self.store.get_chat_log(chat_log_id) or ChatLog(id=chat_log_id)
        return chat_log.model_dump(mode="json", by_alias=True)
