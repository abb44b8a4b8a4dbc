"""
Session Lifecycle Manager - Creates, reuses, activates and sweeps sessions.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from ..models import (
    ChatLog,
    Message,
    MessageCreate,
    MessageType,
    Participant,
    Session,
    SessionState,
    utc_now,
)
from ..storage.session_store import SessionStore
from .errors import ParleyError, ValidationError
from .message_log import MessageLog

logger = logging.getLogger(__name__)

ParticipantInput = Union[Participant, Dict[str, Any]]


class _SessionInUse(Exception):
    """A reuse candidate changed before it could be claimed."""


def default_title(a: Participant, b: Participant) -> str:
    return f"{a.display_tag} ⟷ {b.display_tag}"


def _is_reusable(session: Session) -> bool:
    """Empty and untouched by title generation; a cleared titled session stays retired."""
    return (
        session.message_count == 0
        and not session.title_generation_attempted
        and not session.is_generating_title
    )


def _coerce_participant(value: ParticipantInput) -> Participant:
    if isinstance(value, Participant):
        return value
    try:
        return Participant.model_validate(value)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid participant: {e.errors()[0]['msg']}") from e


class SessionLifecycleManager:
    """
    Owns session creation and state transitions.

    ``find_or_create_session`` calls are serialized, so concurrent requests
    for the same pair never produce two sessions.
    """

    def __init__(
        self,
        store: SessionStore,
        message_log: Optional[MessageLog] = None,
        inactivity_timeout: float = 300.0
    ):
        """
        Initialize the lifecycle manager.

        Args:
            store: Session store holding sessions and chat logs
            message_log: Message log used by send_message (built from the store if omitted)
            inactivity_timeout: Seconds without activity before the sweep deactivates a session
        """
        self.store = store
        self.message_log = message_log or MessageLog(store)
        self.inactivity_timeout = inactivity_timeout
        self._find_lock = asyncio.Lock()

    def _pair(self, a: ParticipantInput, b: ParticipantInput) -> tuple:
        a, b = _coerce_participant(a), _coerce_participant(b)
        if a.id == b.id:
            raise ValidationError("A session needs two distinct participants")
        return a, b

    async def find_or_create_session(self, a: ParticipantInput, b: ParticipantInput) -> Session:
        """
        Return a reusable empty session for the pair, or create a new one.

        Only empty sessions that never had a title attempt are candidates.
        They are scanned newest first: one whose title names both participants
        wins; failing that, any candidate is relabelled to the new pair.
        Reused sessions are reactivated and flagged ``reused``.
        """
        a, b = self._pair(a, b)
        async with self._find_lock:
            sessions = sorted(
                await self.store.get_all_sessions(), key=lambda s: s.created_at, reverse=True
            )
            empty = [s for s in sessions if _is_reusable(s)]

            tags = (a.display_tag.lower(), b.display_tag.lower())
            for candidate in empty:
                title = (candidate.title or "").lower()
                if all(tag in title for tag in tags):
                    session = await self._reuse(candidate.id, a, b, relabel=False)
                    if session is not None:
                        logger.info(f"Reusing session {session.id} for {a.id} and {b.id}")
                        return session

            for candidate in empty:
                session = await self._reuse(candidate.id, a, b, relabel=True)
                if session is not None:
                    logger.info(
                        f"Relabelled empty session {session.id} for {a.id} and {b.id}"
                    )
                    return session

            return await self._create(a, b)

    async def _reuse(
        self,
        session_id: str,
        a: Participant,
        b: Participant,
        relabel: bool
    ) -> Optional[Session]:
        def apply(session: Session) -> None:
            if not _is_reusable(session):
                raise _SessionInUse(session.id)
            session.participants = [a.id, b.id]
            session.participant_tags = {a.id: a.display_tag, b.id: b.display_tag}
            if relabel:
                session.title = session.default_title = default_title(a, b)
                session.keywords = []
            session.state = SessionState.ACTIVE
            session.touch()

        try:
            session = await self.store.mutate_session(session_id, apply)
        except _SessionInUse:
            return None
        session.reused = True
        return session

    async def create_session(self, a: ParticipantInput, b: ParticipantInput) -> Session:
        """Create a new active session and its empty chat log."""
        a, b = self._pair(a, b)
        return await self._create(a, b)

    async def _create(self, a: Participant, b: Participant) -> Session:
        now = utc_now()
        title = default_title(a, b)
        session = Session(
            id=str(uuid.uuid4()),
            participants=[a.id, b.id],
            participant_tags={a.id: a.display_tag, b.id: b.display_tag},
            state=SessionState.ACTIVE,
            created_at=now,
            last_activity_at=now,
            title=title,
            default_title=title,
            chat_log_id=str(uuid.uuid4()),
        )
        chat_log = ChatLog(id=session.chat_log_id, created_at=now)

        created = await self.store.create_session_records(session, chat_log)
        logger.info(f"Created session {created.id}: {title}")
        return created

    async def activate_session(self, session_id: str) -> Session:
        def apply(session: Session) -> None:
            session.state = SessionState.ACTIVE
            session.touch()

        return await self.store.mutate_session(session_id, apply)

    async def deactivate_session(self, session_id: str) -> Session:
        """Mark a session inactive. The session and its log are kept."""
        def apply(session: Session) -> None:
            session.state = SessionState.INACTIVE

        return await self.store.mutate_session(session_id, apply)

    async def send_message(
        self,
        session_id: str,
        sender_id: str,
        content: str,
        type: MessageType = MessageType.USER,
        images: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Message:
        """
        Append a message from one of the session's participants.

        An inactive session becomes active again.
        """
        session = await self.store.load_session(session_id)
        if not session.involves(sender_id):
            raise ValidationError(f"{sender_id} is not a participant of session {session_id}")
        if not (content or "").strip() and not images:
            raise ValidationError("Message content must not be empty")

        message = await self.message_log.add_message(
            session.chat_log_id,
            MessageCreate(
                sender_id=sender_id,
                content=content or "",
                type=type,
                images=images or [],
                metadata=metadata or {},
            ),
        )
        if session.state == SessionState.INACTIVE:
            await self.activate_session(session_id)
            logger.info(f"Session {session_id} resumed by {sender_id}")
        return message

    async def sweep(
        self,
        now: Optional[datetime] = None,
        inactivity_timeout: Optional[float] = None
    ) -> List[str]:
        """
        Deactivate active sessions idle for longer than the timeout.

        Works on a snapshot of the active sessions; each candidate is checked
        again under its lock before it changes.

        Returns:
            List[str]: Ids of the sessions that were deactivated
        """
        now = now or utc_now()
        timeout = timedelta(
            seconds=self.inactivity_timeout if inactivity_timeout is None else inactivity_timeout
        )
        snapshot = [
            s for s in await self.store.get_all_sessions() if s.state == SessionState.ACTIVE
        ]

        deactivated = []
        for candidate in snapshot:
            if now - candidate.last_activity_at <= timeout:
                continue

            changed = []

            def apply(session: Session) -> None:
                if session.state == SessionState.ACTIVE and now - session.last_activity_at > timeout:
                    session.state = SessionState.INACTIVE
                    changed.append(session.id)

            try:
                await self.store.mutate_session(candidate.id, apply)
            except ParleyError as e:
                logger.error(f"Sweep failed for session {candidate.id}: {e}")
                continue
            deactivated.extend(changed)

        if deactivated:
            logger.info(f"Sweep deactivated {len(deactivated)} idle sessions")
        return deactivated

    async def get_sessions_for_participant(
        self,
        participant_id: str,
        active_only: bool = False
    ) -> List[Session]:
        sessions = await self.store.get_sessions_by_participant(participant_id)
        if active_only:
            sessions = [s for s in sessions if s.state == SessionState.ACTIVE]
        return SessionStore.sort_by_recency(sessions)
