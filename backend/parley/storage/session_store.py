"""
Session Store - Persistent storage for sessions and chat logs using StorageInterface.

Each session and each chat log is a JSON document (``sessions/<id>.json`` and
``chat_logs/<id>.json``). The store keeps the authoritative in-memory copy of
every record plus two secondary indexes (chat log -> owning session and
participant -> sessions); callers only ever receive deep copies.
"""

import asyncio
import logging
import time
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Union

from pydantic import ValidationError as PydanticValidationError

from ..core.errors import NotFoundError, PersistenceError, ValidationError
from ..models import (
    EXPORT_VERSION,
    ChatLog,
    ExportPayload,
    Message,
    Session,
    TitleGenerationState,
)
from .interface import StorageInterface

logger = logging.getLogger(__name__)


def check_record_id(kind: str, record_id: str) -> None:
    """Record ids become file names, so each must be a single path segment."""
    if (
        not record_id
        or record_id in (".", "..")
        or any(sep in record_id for sep in ("/", "\\", "\x00"))
    ):
        raise ValidationError(f"Invalid {kind} id: {record_id!r}")


class SessionStore:
    """
    Durable CRUD for sessions and chat logs.

    Writes that touch both a session and its chat log are ordered so a failure
    midway never leaves a dangling reference: creation writes the session
    before its log, deletion removes the log before the session, and any
    failure rolls back both the cache and the records already written.
    """

    def __init__(self, storage: StorageInterface):
        """
        Initialize the session store.

        Args:
            storage: StorageInterface implementation (typically LocalStorage)
        """
        self.storage = storage
        self.sessions_dir = "sessions"
        self.chat_logs_dir = "chat_logs"

        self._sessions: Dict[str, Session] = {}
        self._chat_logs: Dict[str, ChatLog] = {}
        self._log_owner: Dict[str, str] = {}
        self._by_participant: Dict[str, Set[str]] = defaultdict(set)

        self._locks: Dict[str, asyncio.Lock] = {}
        self._load_lock = asyncio.Lock()
        self._loaded = False

    # ------------------------------------------------------------------
    # Loading and indexing
    # ------------------------------------------------------------------

    @property
    def loaded(self) -> bool:
        return self._loaded

    async def load(self) -> None:
        """Read every persisted record into memory and rebuild the indexes."""
        async with self._load_lock:
            if self._loaded:
                return

            for path in await self.storage.list(self.sessions_dir, pattern="*.json"):
                session = await self._read(path, Session)
                if session is None:
                    continue
                # A crash mid-generation must not leave the mutex held
                if session.title_generation == TitleGenerationState.GENERATING:
                    session.title_generation = TitleGenerationState.IDLE
                self._apply_session(session)

            for path in await self.storage.list(self.chat_logs_dir, pattern="*.json"):
                chat_log = await self._read(path, ChatLog)
                if chat_log is not None:
                    self._chat_logs[chat_log.id] = chat_log

            self._loaded = True
            logger.info(
                f"Session store loaded: {len(self._sessions)} sessions, "
                f"{len(self._chat_logs)} chat logs"
            )

    async def _ensure_loaded(self) -> None:
        if not self._loaded:
            await self.load()

    async def _read(self, path: str, model: type) -> Optional[Any]:
        content = await self.storage.load(path)
        if content is None:
            return None
        try:
            return model.model_validate_json(content)
        except PydanticValidationError as e:
            logger.warning(f"Skipping unreadable record {path}: {e.error_count()} validation errors")
            return None

    def _apply_session(self, session: Session) -> None:
        previous = self._sessions.get(session.id)
        if previous is not None:
            self._unindex(previous)
        self._sessions[session.id] = session
        self._log_owner[session.chat_log_id] = session.id
        for participant_id in session.participants:
            self._by_participant[participant_id].add(session.id)

    def _unindex(self, session: Session) -> None:
        if self._log_owner.get(session.chat_log_id) == session.id:
            del self._log_owner[session.chat_log_id]
        for participant_id in session.participants:
            ids = self._by_participant.get(participant_id)
            if ids is not None:
                ids.discard(session.id)
                if not ids:
                    del self._by_participant[participant_id]

    def _reindex(self) -> None:
        self._log_owner.clear()
        self._by_participant.clear()
        for session in list(self._sessions.values()):
            self._apply_session(session)

    def _restore_session(self, session_id: str, previous: Optional[Session]) -> None:
        if previous is not None:
            self._apply_session(previous)
            return
        current = self._sessions.pop(session_id, None)
        if current is not None:
            self._unindex(current)

    def _restore_chat_log(self, chat_log_id: str, previous: Optional[ChatLog]) -> None:
        if previous is not None:
            self._chat_logs[chat_log_id] = previous
        else:
            self._chat_logs.pop(chat_log_id, None)

    def _lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _lock_for_chat_log(self, chat_log_id: str) -> asyncio.Lock:
        """Chat logs owned by a session share the session's lock."""
        return self._lock(self._log_owner.get(chat_log_id, chat_log_id))

    # ------------------------------------------------------------------
    # Raw record I/O
    # ------------------------------------------------------------------

    def _session_path(self, session_id: str) -> str:
        return f"{self.sessions_dir}/{session_id}.json"

    def _chat_log_path(self, chat_log_id: str) -> str:
        return f"{self.chat_logs_dir}/{chat_log_id}.json"

    async def _write(self, path: str, record: Union[Session, ChatLog]) -> None:
        content = record.model_dump_json(by_alias=True, indent=2)
        try:
            saved = await self.storage.save(path, content)
        except ValueError as e:
            raise PersistenceError(f"Failed to write {path}: {e}", path=path) from e
        if not saved:
            raise PersistenceError(f"Failed to write {path}", path=path)

    async def _remove(self, path: str) -> None:
        try:
            deleted = await self.storage.delete(path)
        except ValueError as e:
            raise PersistenceError(f"Failed to delete {path}: {e}", path=path) from e
        if not deleted:
            raise PersistenceError(f"Failed to delete {path}", path=path)

    async def _commit_session(self, session: Session, owns_generation: bool = False) -> None:
        """
        Cache and persist a session, restoring the previous copy on failure.

        Unless ``owns_generation`` is set the title generation fields are taken
        from the cached copy, so a stale snapshot can never release or reset
        a claim made in the meantime.
        """
        check_record_id("session", session.id)
        check_record_id("chat log", session.chat_log_id)
        previous = self._sessions.get(session.id)
        if previous is not None and not owns_generation:
            session.title_generation = previous.title_generation
            session.title_generation_attempted = previous.title_generation_attempted
        session.reused = False
        self._apply_session(session)
        try:
            await self._write(self._session_path(session.id), session)
        except PersistenceError:
            self._restore_session(session.id, previous)
            raise

    async def _commit_chat_log(self, chat_log: ChatLog) -> None:
        check_record_id("chat log", chat_log.id)
        previous = self._chat_logs.get(chat_log.id)
        self._chat_logs[chat_log.id] = chat_log
        try:
            await self._write(self._chat_log_path(chat_log.id), chat_log)
        except PersistenceError:
            self._restore_chat_log(chat_log.id, previous)
            raise

    async def _rewrite_chat_log(self, chat_log_id: str, previous: Optional[ChatLog]) -> None:
        """Best-effort undo of a chat log write after a later step failed."""
        try:
            if previous is None:
                await self._remove(self._chat_log_path(chat_log_id))
            else:
                await self._write(self._chat_log_path(chat_log_id), previous)
        except PersistenceError as e:
            logger.error(f"Rollback of chat log {chat_log_id} failed: {e}")

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def save_session(self, session: Session) -> Session:
        """Insert or replace a session record."""
        await self._ensure_loaded()
        async with self._lock(session.id):
            stored = session.model_copy(deep=True)
            if session.id not in self._sessions:
                stored.title_generation = (
                    TitleGenerationState.DONE if stored.title_generation_attempted
                    else TitleGenerationState.IDLE
                )
            await self._commit_session(stored)
            return stored.model_copy(deep=True)

    async def load_session(self, session_id: str) -> Session:
        await self._ensure_loaded()
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError("Session", session_id)
        return session.model_copy(deep=True)

    async def get_all_sessions(self) -> List[Session]:
        """Snapshot of every session; safe to iterate while the store changes."""
        await self._ensure_loaded()
        return [s.model_copy(deep=True) for s in self._sessions.values()]

    async def get_sessions_by_participant(self, participant_id: str) -> List[Session]:
        await self._ensure_loaded()
        ids = sorted(self._by_participant.get(participant_id, ()))
        return [self._sessions[i].model_copy(deep=True) for i in ids]

    async def get_session_for_chat_log(self, chat_log_id: str) -> Optional[Session]:
        await self._ensure_loaded()
        owner_id = self._log_owner.get(chat_log_id)
        return self._sessions[owner_id].model_copy(deep=True) if owner_id else None

    async def mutate_session(self, session_id: str, mutate: Callable[[Session], None]) -> Session:
        """
        Apply ``mutate`` to a copy of the session under its lock and persist it.

        Args:
            session_id: Session to change
            mutate: Callable that edits the session copy in place

        Returns:
            Session: The persisted session
        """
        await self._ensure_loaded()
        async with self._lock(session_id):
            current = self._sessions.get(session_id)
            if current is None:
                raise NotFoundError("Session", session_id)
            updated = current.model_copy(deep=True)
            try:
                mutate(updated)
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid session update: {e.errors()[0]['msg']}") from e
            await self._commit_session(updated)
            return updated.model_copy(deep=True)

    async def update_session_title(
        self,
        session_id: str,
        title: str,
        keywords: Optional[List[str]] = None
    ) -> Session:
        """Set a session title and optionally replace its keywords."""
        title = (title or "").strip()
        if not title:
            raise ValidationError("Title must not be empty")

        def apply(session: Session) -> None:
            session.title = title
            if keywords is not None:
                session.keywords = [k for k in keywords if k]

        return await self.mutate_session(session_id, apply)

    async def create_session_records(self, session: Session, chat_log: ChatLog) -> Session:
        """Persist a new session and its empty chat log as one logical operation."""
        await self._ensure_loaded()
        if session.chat_log_id != chat_log.id:
            raise ValidationError("Chat log id does not match the session")

        async with self._lock(session.id):
            if session.id in self._sessions:
                raise ValidationError(f"Session already exists: {session.id}")
            if chat_log.id in self._log_owner:
                raise ValidationError(f"Chat log already owned: {chat_log.id}")

            stored = session.model_copy(deep=True)
            await self._commit_session(stored, owns_generation=True)
            try:
                await self._commit_chat_log(chat_log.model_copy(deep=True))
            except PersistenceError:
                self._restore_session(stored.id, None)
                try:
                    await self._remove(self._session_path(stored.id))
                except PersistenceError as e:
                    logger.error(f"Rollback of session {stored.id} failed: {e}")
                raise

            logger.debug(f"Created session {stored.id} with chat log {chat_log.id}")
            return stored.model_copy(deep=True)

    async def delete_session(self, session_id: str) -> Session:
        """
        Delete a session and, in the same operation, its chat log.

        Returns:
            Session: The deleted session
        """
        await self._ensure_loaded()
        async with self._lock(session_id):
            session = self._sessions.get(session_id)
            if session is None:
                raise NotFoundError("Session", session_id)

            chat_log = self._chat_logs.get(session.chat_log_id)
            await self._remove(self._chat_log_path(session.chat_log_id))
            self._chat_logs.pop(session.chat_log_id, None)

            try:
                await self._remove(self._session_path(session_id))
            except PersistenceError:
                self._restore_chat_log(session.chat_log_id, chat_log)
                if chat_log is not None:
                    await self._rewrite_chat_log(chat_log.id, chat_log)
                raise

            self._restore_session(session_id, None)
            self._locks.pop(session_id, None)
            logger.info(f"Deleted session {session_id} and chat log {session.chat_log_id}")
            return session.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Chat logs
    # ------------------------------------------------------------------

    async def get_chat_log(self, chat_log_id: str) -> Optional[ChatLog]:
        await self._ensure_loaded()
        chat_log = self._chat_logs.get(chat_log_id)
        return chat_log.model_copy(deep=True) if chat_log else None

    async def load_chat_log(self, chat_log_id: str) -> ChatLog:
        chat_log = await self.get_chat_log(chat_log_id)
        if chat_log is None:
            raise NotFoundError("Chat log", chat_log_id)
        return chat_log

    async def save_chat_log(self, chat_log: ChatLog) -> ChatLog:
        """Insert or replace a chat log, keeping the owning session's count in step."""
        await self._ensure_loaded()
        async with self._lock_for_chat_log(chat_log.id):
            stored = chat_log.model_copy(deep=True)
            owner_id = self._log_owner.get(stored.id)
            session = None
            if owner_id is not None:
                session = self._sessions[owner_id].model_copy(deep=True)
                session.message_count = len(stored.messages)
            await self._commit_log_and_session(stored, session)
            return stored.model_copy(deep=True)

    async def delete_chat_log(self, chat_log_id: str) -> None:
        """Delete a chat log that no session owns."""
        await self._ensure_loaded()
        owner_id = self._log_owner.get(chat_log_id)
        if owner_id is not None:
            raise ValidationError(
                f"Chat log {chat_log_id} belongs to session {owner_id}; delete the session instead"
            )
        if chat_log_id not in self._chat_logs:
            raise NotFoundError("Chat log", chat_log_id)
        async with self._lock(chat_log_id):
            await self._remove(self._chat_log_path(chat_log_id))
            self._chat_logs.pop(chat_log_id, None)

    async def append_message(self, chat_log_id: str, message: Message) -> Message:
        """
        Append a message, creating the chat log if it does not exist yet.

        The owning session's ``message_count`` and ``last_activity_at`` are
        updated together with the log; appends to one log are applied in call order.
        """
        await self._ensure_loaded()
        async with self._lock_for_chat_log(chat_log_id):
            current = self._chat_logs.get(chat_log_id)
            chat_log = current.model_copy(deep=True) if current else ChatLog(id=chat_log_id)
            stored = message.model_copy(deep=True)
            chat_log.messages.append(stored)
            chat_log.last_message_at = stored.timestamp

            session = None
            owner_id = self._log_owner.get(chat_log_id)
            if owner_id is not None:
                session = self._sessions[owner_id].model_copy(deep=True)
                session.message_count = len(chat_log.messages)
                session.touch()

            await self._commit_log_and_session(chat_log, session)
            return stored.model_copy(deep=True)

    async def clear_chat_log(self, chat_log_id: str) -> int:
        """Remove every message from a chat log. Returns the number removed."""
        await self._ensure_loaded()
        async with self._lock_for_chat_log(chat_log_id):
            current = self._chat_logs.get(chat_log_id)
            if current is None or not current.messages:
                return 0
            chat_log = current.model_copy(deep=True)
            removed = len(chat_log.messages)
            chat_log.messages = []
            chat_log.last_message_at = None

            session = None
            owner_id = self._log_owner.get(chat_log_id)
            if owner_id is not None:
                session = self._sessions[owner_id].model_copy(deep=True)
                session.message_count = 0

            await self._commit_log_and_session(chat_log, session)
            return removed

    async def _commit_log_and_session(self, chat_log: ChatLog, session: Optional[Session]) -> None:
        previous_log = self._chat_logs.get(chat_log.id)
        await self._commit_chat_log(chat_log)
        if session is None:
            return
        try:
            await self._commit_session(session)
        except PersistenceError:
            self._restore_chat_log(chat_log.id, previous_log)
            await self._rewrite_chat_log(chat_log.id, previous_log)
            raise

    # ------------------------------------------------------------------
    # Title generation claim
    # ------------------------------------------------------------------

    def begin_title_generation(
        self,
        session_id: str,
        force: bool = False,
        min_messages: int = 3
    ) -> bool:
        """
        Claim a session for title generation (idle -> generating).

        The check and the transition happen without yielding to the event
        loop, so of any number of interleaved callers exactly one wins.

        Args:
            session_id: Session to claim
            force: Manual re-trigger; any non-empty session not currently generating
            min_messages: Message threshold for automatic generation

        Returns:
            bool: True if this caller now owns the claim
        """
        session = self._sessions.get(session_id)
        if session is None:
            return False
        if force:
            allowed = not session.is_generating_title and session.message_count > 0
        else:
            allowed = session.is_title_eligible(min_messages)
        if not allowed:
            return False
        session.title_generation = TitleGenerationState.GENERATING
        return True

    async def finish_title_generation(
        self,
        session_id: str,
        title: Optional[str] = None,
        keywords: Optional[List[str]] = None
    ) -> Session:
        """
        Record the outcome of a title generation attempt (generating -> done).

        Without a title only the attempt is recorded.
        """
        await self._ensure_loaded()
        async with self._lock(session_id):
            current = self._sessions.get(session_id)
            if current is None:
                raise NotFoundError("Session", session_id)

            # The in-memory claim is released even if persisting fails below
            current.title_generation = TitleGenerationState.DONE
            current.title_generation_attempted = True

            updated = current.model_copy(deep=True)
            if title:
                updated.title = title
                updated.keywords = list(keywords or [])
            await self._commit_session(updated, owns_generation=True)
            return updated.model_copy(deep=True)

    def release_title_generation(self, session_id: str) -> None:
        """Ensure no claim outlives its attempt."""
        session = self._sessions.get(session_id)
        if session is not None and session.is_generating_title:
            session.title_generation = TitleGenerationState.DONE
            session.title_generation_attempted = True

    # ------------------------------------------------------------------
    # Search, flush, export, import
    # ------------------------------------------------------------------

    async def search_sessions(self, query: str) -> List[Session]:
        """
        Case-insensitive search over titles and keywords.

        The whole query is matched against titles; each query term longer than
        two characters is matched against keywords. Results are unique and
        ordered by most recent activity.
        """
        await self._ensure_loaded()
        needle = (query or "").strip().lower()
        if not needle:
            return []
        terms = [term for term in needle.split() if len(term) > 2]

        results = []
        for session in sorted(
            self._sessions.values(), key=lambda s: s.last_activity_at, reverse=True
        ):
            title_match = bool(session.title) and needle in session.title.lower()
            keyword_match = any(
                term in keyword.lower() for keyword in session.keywords for term in terms
            )
            if title_match or keyword_match:
                results.append(session.model_copy(deep=True))
        return results

    async def flush(self) -> int:
        """Rewrite every cached record to storage. Returns the number of sessions saved."""
        await self._ensure_loaded()
        for chat_log in list(self._chat_logs.values()):
            await self._write(self._chat_log_path(chat_log.id), chat_log)
        sessions = list(self._sessions.values())
        for session in sessions:
            await self._write(self._session_path(session.id), session)
        logger.info(f"Flushed {len(sessions)} sessions to storage")
        return len(sessions)

    async def export_all(self) -> Dict[str, Any]:
        """Export every session and chat log as a versioned JSON-ready dict."""
        await self._ensure_loaded()
        payload = ExportPayload(
            version=EXPORT_VERSION,
            exported_at=int(time.time() * 1000),
            sessions=[s.model_copy(deep=True) for s in self._sessions.values()],
            chat_logs=[c.model_copy(deep=True) for c in self._chat_logs.values()],
        )
        return payload.model_dump(mode="json", by_alias=True)

    async def import_all(self, payload: Union[Dict[str, Any], ExportPayload]) -> int:
        """
        Upsert sessions and chat logs from an export payload.

        Args:
            payload: Dict in export format, or a parsed ExportPayload

        Returns:
            int: Number of sessions imported
        """
        await self._ensure_loaded()
        if not isinstance(payload, ExportPayload):
            if not isinstance(payload, dict):
                raise ValidationError("Import payload must be a JSON object")
            version = payload.get("version")
            if version != EXPORT_VERSION:
                raise ValidationError(f"Unsupported data format version: {version}")
            try:
                payload = ExportPayload.model_validate(payload)
            except PydanticValidationError as e:
                raise ValidationError(
                    f"Malformed import payload: {e.error_count()} validation errors"
                ) from e
        elif payload.version != EXPORT_VERSION:
            raise ValidationError(f"Unsupported data format version: {payload.version}")

        for session in payload.sessions:
            check_record_id("session", session.id)
            check_record_id("chat log", session.chat_log_id)
        for chat_log in payload.chat_logs:
            check_record_id("chat log", chat_log.id)

        chat_logs = {c.id: c for c in payload.chat_logs}
        session_backup: Dict[str, Optional[Session]] = {}
        log_backup: Dict[str, Optional[ChatLog]] = {}
        imported = 0
        try:
            for session in payload.sessions:
                async with self._lock(session.id):
                    stored = session.model_copy(deep=True)
                    if stored.title_generation == TitleGenerationState.GENERATING:
                        stored.title_generation = TitleGenerationState.IDLE
                    chat_log = chat_logs.pop(stored.chat_log_id, None) or self._chat_logs.get(
                        stored.chat_log_id
                    ) or ChatLog(id=stored.chat_log_id, created_at=stored.created_at)
                    stored.message_count = len(chat_log.messages)

                    self._backup(session_backup, self._sessions, stored.id)
                    self._backup(log_backup, self._chat_logs, chat_log.id)
                    await self._commit_session(stored, owns_generation=True)
                    await self._commit_chat_log(chat_log.model_copy(deep=True))
                    imported += 1

            # Logs with no session in the payload are kept as-is
            for chat_log in chat_logs.values():
                async with self._lock_for_chat_log(chat_log.id):
                    self._backup(log_backup, self._chat_logs, chat_log.id)
                    if chat_log.id in self._log_owner:
                        owner_id = self._log_owner[chat_log.id]
                        self._backup(session_backup, self._sessions, owner_id)
                        owner = self._sessions[owner_id].model_copy(deep=True)
                        owner.message_count = len(chat_log.messages)
                        await self._commit_log_and_session(chat_log.model_copy(deep=True), owner)
                    else:
                        await self._commit_chat_log(chat_log.model_copy(deep=True))
        except PersistenceError:
            await self._undo_import(session_backup, log_backup)
            raise

        logger.info(f"Imported {imported} sessions and {len(payload.chat_logs)} chat logs")
        return imported

    @staticmethod
    def _backup(backup: Dict[str, Any], records: Dict[str, Any], record_id: str) -> None:
        if record_id not in backup:
            current = records.get(record_id)
            backup[record_id] = current.model_copy(deep=True) if current is not None else None

    async def _undo_import(
        self,
        sessions: Dict[str, Optional[Session]],
        chat_logs: Dict[str, Optional[ChatLog]]
    ) -> None:
        """Put every record an aborted import touched back to its prior state."""
        for session_id, previous in sessions.items():
            self._restore_session(session_id, previous)
            try:
                if previous is None:
                    await self._remove(self._session_path(session_id))
                else:
                    await self._write(self._session_path(session_id), previous)
            except PersistenceError as e:
                logger.error(f"Rollback of session {session_id} failed: {e}")
        for chat_log_id, previous in chat_logs.items():
            self._restore_chat_log(chat_log_id, previous)
            await self._rewrite_chat_log(chat_log_id, previous)
        self._reindex()
        logger.warning(
            f"Import aborted; restored {len(sessions)} sessions and {len(chat_logs)} chat logs"
        )

    # ------------------------------------------------------------------
    # Helpers for callers that need recency ordering
    # ------------------------------------------------------------------

    @staticmethod
    def sort_by_recency(sessions: List[Session]) -> List[Session]:
        return sorted(sessions, key=lambda s: s.last_activity_at, reverse=True)

    @staticmethod
    def older_than(sessions: List[Session], cutoff: datetime) -> List[Session]:
        return [s for s in sessions if s.last_activity_at < cutoff]
