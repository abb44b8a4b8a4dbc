"""
Shared test fixtures and configuration.
"""

import asyncio
import os
from typing import List, Optional

import pytest

# Set test environment variables before importing app modules
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOCAL_STORAGE_PATH", "/tmp/parley_test_data")
os.environ.setdefault("LOG_FILE_ENABLED", "false")
os.environ.setdefault("TICKER_ENABLED", "false")

from parley.core.errors import GenerationError  # noqa: E402
from parley.core.lifecycle import SessionLifecycleManager  # noqa: E402
from parley.core.message_log import MessageLog  # noqa: E402
from parley.models import Participant  # noqa: E402
from parley.storage import LocalStorage, SessionStore  # noqa: E402


class StubGenerator:
    """Text generator double: answers title and keyword prompts, records every prompt."""

    def __init__(
        self,
        title: str = "Launch Status Check",
        keywords: str = "rocket, launch, status",
        delay: float = 0.0,
        fail: bool = False
    ):
        self.title = title
        self.keywords = keywords
        self.delay = delay
        self.fail = fail
        self.prompts: List[str] = []

    @property
    def calls(self) -> int:
        return len(self.prompts)

    async def generate(self, prompt: str, **options) -> str:
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise GenerationError("collaborator unavailable")
        if prompt.startswith("List 3-5 keywords"):
            return self.keywords
        return self.title


class FlakyStorage(LocalStorage):
    """LocalStorage whose writes and deletes can be switched off."""

    def __init__(self, base_dir: str):
        super().__init__(base_dir)
        self.fail_saves = False
        self.fail_deletes = False
        self.fail_paths: Optional[str] = None  # only fail paths starting with this prefix

    def _should_fail(self, path: str) -> bool:
        return self.fail_paths is None or path.startswith(self.fail_paths)

    async def save(self, path, content):
        if self.fail_saves and self._should_fail(path):
            return False
        return await super().save(path, content)

    async def delete(self, path):
        if self.fail_deletes and self._should_fail(path):
            return False
        return await super().delete(path)


@pytest.fixture
def storage(tmp_path):
    return FlakyStorage(str(tmp_path / "data"))


@pytest.fixture
def store(storage):
    return SessionStore(storage)


@pytest.fixture
def message_log(store):
    return MessageLog(store)


@pytest.fixture
def lifecycle(store, message_log):
    return SessionLifecycleManager(store, message_log, inactivity_timeout=300)


@pytest.fixture
def generator():
    return StubGenerator()


@pytest.fixture
def player():
    return Participant(id="player-1", display_tag="Player")


@pytest.fixture
def origin():
    return Participant(id="origin-1", display_tag="Origin")


@pytest.fixture
def scout():
    return Participant(id="scout-1", display_tag="Scout")


async def chat(lifecycle, session, a: Participant, b: Participant, pairs: int = 3) -> None:
    """Append ``pairs`` user/agent message pairs to a session."""
    from parley.models import MessageType

    for i in range(pairs):
        await lifecycle.send_message(session.id, a.id, f"Is the rocket ready for launch {i}?")
        await lifecycle.send_message(
            session.id, b.id, f"Launch status {i}: all systems nominal.", type=MessageType.AGENT
        )
