"""
Title Generator - Derives a session title and keywords from its first messages.

Generation runs at most once per session automatically; a manual re-trigger
(``force=True``) is available for sessions that are not generating right now.
"""

import asyncio
import logging
import re
from typing import List, Optional, Tuple

from ..llm.text_generator import TextGenerator
from ..storage.session_store import SessionStore
from .errors import GenerationError, ParleyError

logger = logging.getLogger(__name__)

TITLE_PROMPT = "Summarize this conversation in one short sentence (max 8 words):\n{context}"
KEYWORD_PROMPT = "List 3-5 keywords from this conversation (comma separated):\n{context}"

MAX_KEYWORDS = 5

_TITLE_PREFIX = re.compile(r"^\s*title\s*:\s*", re.IGNORECASE)
_QUOTES = "\"'“”‘’`"


def clean_title(raw: str, max_length: int = 60) -> str:
    """Strip quotes and a leading ``Title:`` label; keep the first line only."""
    lines = [line for line in (raw or "").strip().splitlines() if line.strip()]
    title = lines[0] if lines else ""
    title = _TITLE_PREFIX.sub("", title).strip().strip(_QUOTES).strip()
    if len(title) > max_length:
        title = title[:max_length].rstrip()
    return title


def parse_keywords(raw: str, limit: int = MAX_KEYWORDS) -> List[str]:
    """Split a comma or newline separated keyword list, dropping blanks and repeats."""
    keywords: List[str] = []
    seen = set()
    for part in re.split(r"[,\n]", raw or ""):
        keyword = part.strip().strip(_QUOTES).strip(" .-*").strip()
        if keyword and keyword.lower() not in seen:
            seen.add(keyword.lower())
            keywords.append(keyword)
    return keywords[:limit]


class TitleGenerator:
    """Runs title generation for eligible sessions."""

    def __init__(
        self,
        store: SessionStore,
        generator: TextGenerator,
        min_messages: int = 3,
        context_messages: int = 6,
        max_title_length: int = 60,
        temperature: float = 0.3
    ):
        self.store = store
        self.generator = generator
        self.min_messages = min_messages
        self.context_messages = context_messages
        self.max_title_length = max_title_length
        self.temperature = temperature

    async def _build_context(self, session_id: str) -> Optional[str]:
        session = await self.store.load_session(session_id)
        chat_log = await self.store.get_chat_log(session.chat_log_id)
        messages = chat_log.messages[:self.context_messages] if chat_log else []
        if not messages:
            return None
        return "\n".join(f"{session.tag_for(m.sender_id)}: {m.content}" for m in messages)

    async def generate_for_session(self, session_id: str, force: bool = False) -> bool:
        """
        Generate and store a title and keywords for one session.

        The claim is taken synchronously, so a concurrent caller for the same
        session gets False straight away. Collaborator failures are logged
        and recorded as an attempt; they do not propagate.

        Args:
            session_id: Session to title
            force: Manual re-trigger, allowed for any non-empty session not generating

        Returns:
            bool: True if a new title was stored
        """
        if not self.store.begin_title_generation(
            session_id, force=force, min_messages=self.min_messages
        ):
            return False

        try:
            context = await self._build_context(session_id)
            if context is None:
                await self.store.finish_title_generation(session_id)
                return False

            raw_title = await self.generator.generate(
                TITLE_PROMPT.format(context=context), temperature=self.temperature
            )
            raw_keywords = await self.generator.generate(
                KEYWORD_PROMPT.format(context=context), temperature=self.temperature
            )

            title = clean_title(raw_title, self.max_title_length)
            if not title:
                raise GenerationError("Generated title was empty")
            keywords = parse_keywords(raw_keywords)

            await self.store.finish_title_generation(session_id, title, keywords)
            logger.info(
                f"Generated title for session {session_id}: {title}",
                extra={"extra_fields": {"session_id": session_id, "keywords": keywords}}
            )
            return True

        except GenerationError as e:
            logger.warning(f"Title generation failed for session {session_id}: {e}")
            await self._record_attempt(session_id)
        except ParleyError as e:
            logger.error(f"Title generation aborted for session {session_id}: {e}")
            await self._record_attempt(session_id)
        except asyncio.CancelledError:
            logger.warning(f"Title generation cancelled for session {session_id}")
            await asyncio.shield(self._record_attempt(session_id))
            raise
        except Exception as e:
            logger.error(
                f"Unexpected error generating title for session {session_id}: {e}", exc_info=True
            )
            await self._record_attempt(session_id)
        finally:
            self.store.release_title_generation(session_id)
        return False

    async def _record_attempt(self, session_id: str) -> None:
        try:
            await self.store.finish_title_generation(session_id)
        except ParleyError as e:
            logger.error(f"Could not record title attempt for session {session_id}: {e}")

    async def eligible_session_ids(self) -> List[str]:
        return [
            s.id for s in await self.store.get_all_sessions()
            if s.is_title_eligible(self.min_messages)
        ]

    async def run_tick(self) -> int:
        """Generate titles for every eligible session. Returns the number of successes."""
        session_ids = await self.eligible_session_ids()
        if not session_ids:
            return 0
        results = await asyncio.gather(*(self.generate_for_session(i) for i in session_ids))
        return sum(1 for ok in results if ok)

    async def regenerate_missing_titles(self) -> Tuple[int, int]:
        """
        Re-trigger generation for every non-empty session without a generated title.

        Returns:
            Tuple[int, int]: (succeeded, failed)
        """
        sessions = [
            s for s in await self.store.get_all_sessions()
            if not s.has_generated_title and s.message_count > 0
        ]
        results = await asyncio.gather(
            *(self.generate_for_session(s.id, force=True) for s in sessions)
        )
        succeeded = sum(1 for ok in results if ok)
        return succeeded, len(results) - succeeded
