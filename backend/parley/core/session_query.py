"""
Session queries - recency listing, search and bulk deletion.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from ..models import Session, utc_now
from ..storage.session_store import SessionStore
from .errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


class SessionQuery:
    """History, search and deletion over all stored sessions."""

    def __init__(self, store: SessionStore):
        self.store = store

    async def list_recent(self, limit: Optional[int] = None) -> List[Session]:
        """Sessions ordered by last activity, newest first."""
        if limit is not None and limit < 0:
            raise ValidationError("limit must not be negative")
        sessions = SessionStore.sort_by_recency(await self.store.get_all_sessions())
        return sessions if limit is None else sessions[:limit]

    async def search(self, query: str) -> List[Session]:
        return await self.store.search_sessions(query)

    async def delete_session(self, session_id: str) -> Session:
        return await self.store.delete_session(session_id)

    async def _delete_many(self, sessions: List[Session]) -> int:
        deleted = 0
        for session in sessions:
            try:
                await self.store.delete_session(session.id)
            except NotFoundError:
                # Removed by someone else since the snapshot was taken
                continue
            deleted += 1
        return deleted

    async def delete_range(
        self,
        start: int,
        end: int,
        sessions: Optional[List[Session]] = None
    ) -> int:
        """
        Delete sessions ``start`` through ``end`` (1-based, inclusive) of the recency list.

        Args:
            start: First position to delete
            end: Last position to delete; clamped to the list length
            sessions: Listing the positions refer to (defaults to the current one)

        Returns:
            int: Number of sessions deleted
        """
        if start < 1 or end < start:
            raise ValidationError(f"Invalid range: {start}-{end}")
        if sessions is None:
            sessions = await self.list_recent()

        # Positions past the end of the listing are ignored
        deleted = await self._delete_many(sessions[start - 1:end])
        logger.info(f"Deleted {deleted} sessions in range {start}-{end}")
        return deleted

    async def delete_older_than(self, days: int, now: Optional[datetime] = None) -> int:
        """Delete sessions whose last activity is more than ``days`` days old."""
        if days < 1:
            raise ValidationError("days must be at least 1")
        cutoff = (now or utc_now()) - timedelta(days=days)
        stale = SessionStore.older_than(await self.store.get_all_sessions(), cutoff)

        deleted = await self._delete_many(stale)
        logger.info(f"Deleted {deleted} sessions older than {days} days")
        return deleted

    async def delete_all(self) -> int:
        deleted = await self._delete_many(await self.store.get_all_sessions())
        logger.info(f"Deleted all sessions ({deleted})")
        return deleted
