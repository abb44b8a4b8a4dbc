"""
Session Models - Defines structures for conversational sessions.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SessionState(str, Enum):
    """Stored session states. Archival is modelled as deletion."""
    ACTIVE = "active"
    INACTIVE = "inactive"


class TitleGenerationState(str, Enum):
    """Per-session title generation state machine: idle -> generating -> done."""
    IDLE = "idle"
    GENERATING = "generating"
    DONE = "done"


class Participant(BaseModel):
    """Participant reference supplied by the host's entity registry."""
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    id: str = Field(..., min_length=1)
    display_tag: str = Field(..., min_length=1)


class Session(BaseModel):
    """Conversation context between exactly two participants."""
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, validate_assignment=True
    )

    id: str
    participants: List[str]
    participant_tags: Dict[str, str] = Field(default_factory=dict)
    state: SessionState = SessionState.ACTIVE
    created_at: datetime = Field(default_factory=utc_now)
    last_activity_at: datetime = Field(default_factory=utc_now)
    message_count: int = Field(default=0, ge=0)
    title: Optional[str] = None
    default_title: Optional[str] = None  # "{A} ⟷ {B}" label written at creation
    keywords: List[str] = Field(default_factory=list)
    chat_log_id: str
    title_generation: TitleGenerationState = TitleGenerationState.IDLE
    title_generation_attempted: bool = False  # latches to True, never reset

    # Set by find_or_create_session; never persisted
    reused: bool = Field(default=False, exclude=True)

    @field_validator("participants")
    @classmethod
    def _two_distinct_participants(cls, value: List[str]) -> List[str]:
        if len(value) != 2 or len(set(value)) != 2:
            raise ValueError("a session needs exactly two distinct participants")
        return list(value)

    @property
    def is_generating_title(self) -> bool:
        return self.title_generation == TitleGenerationState.GENERATING

    def is_title_eligible(self, min_messages: int = 3) -> bool:
        """Automatic title generation runs once, after enough messages arrived."""
        return (
            not self.has_generated_title
            and self.message_count >= min_messages
            and self.title_generation == TitleGenerationState.IDLE
            and not self.title_generation_attempted
        )

    @property
    def has_generated_title(self) -> bool:
        """True once the title differs from the participant label."""
        return self.title is not None and self.title != self.default_title

    def involves(self, participant_id: str) -> bool:
        return participant_id in self.participants

    def tag_for(self, participant_id: str) -> str:
        return self.participant_tags.get(participant_id, participant_id)

    def touch(self, now: Optional[datetime] = None) -> None:
        """Advance last_activity_at, never moving it backwards."""
        now = now or utc_now()
        if now > self.last_activity_at:
            self.last_activity_at = now


class SessionSummary(BaseModel):
    """Compact session view used by history and search listings."""
    id: str
    title: str
    state: SessionState
    message_count: int
    last_activity_at: datetime
    keywords: List[str] = Field(default_factory=list)

    @classmethod
    def from_session(cls, session: Session) -> "SessionSummary":
        return cls(
            id=session.id,
            title=session.title or f"Session {session.id[:8]}",
            state=session.state,
            message_count=session.message_count,
            last_activity_at=session.last_activity_at,
            keywords=list(session.keywords),
        )
