"""
Tests for TitleGenerator, including the single-generation guarantee under concurrent ticks.
"""

import asyncio

import pytest

from conftest import StubGenerator, chat
from parley.core.title_generator import TitleGenerator, clean_title, parse_keywords
from parley.models import TitleGenerationState
from parley.storage import SessionStore


class TestCleaning:

    def test_clean_title_strips_quotes_and_label(self):
        assert clean_title('"Launch Status Check"') == "Launch Status Check"
        assert clean_title("Title: Rocket prep") == "Rocket prep"
        assert clean_title("  'Weather talk'\nextra line") == "Weather talk"

    def test_clean_title_caps_length(self):
        assert len(clean_title("x" * 100, max_length=60)) == 60
        assert clean_title("") == ""

    def test_parse_keywords(self):
        assert parse_keywords("rocket, launch, status") == ["rocket", "launch", "status"]
        assert parse_keywords("a,\nb, A, , c, d, e, f") == ["a", "b", "c", "d", "e"]
        assert parse_keywords("") == []


class TestGeneration:

    @pytest.mark.asyncio
    async def test_player_origin_scenario(self, lifecycle, store, player, origin):
        generator = StubGenerator("Launch Status Check", "rocket, launch, status")
        titles = TitleGenerator(store, generator)
        session = await lifecycle.create_session(player, origin)
        await chat(lifecycle, session, player, origin, pairs=3)

        assert await titles.run_tick() == 1

        stored = await store.load_session(session.id)
        assert stored.title == "Launch Status Check"
        assert stored.keywords == ["rocket", "launch", "status"]
        assert stored.title_generation_attempted is True
        assert stored.title_generation == TitleGenerationState.DONE
        assert generator.calls == 2
        assert "Player: Is the rocket ready for launch 0?" in generator.prompts[0]
        assert "max 8 words" in generator.prompts[0]
        assert generator.prompts[1].startswith("List 3-5 keywords")

    @pytest.mark.asyncio
    async def test_context_uses_first_six_messages(self, lifecycle, store, player, origin, generator):
        titles = TitleGenerator(store, generator, context_messages=6)
        session = await lifecycle.create_session(player, origin)
        await chat(lifecycle, session, player, origin, pairs=4)

        await titles.generate_for_session(session.id)

        context_lines = generator.prompts[0].splitlines()[1:]
        assert len(context_lines) == 6
        assert context_lines[-1] == "Origin: Launch status 2: all systems nominal."

    @pytest.mark.asyncio
    async def test_not_eligible_below_threshold(self, lifecycle, store, player, origin, generator):
        titles = TitleGenerator(store, generator)
        session = await lifecycle.create_session(player, origin)
        await lifecycle.send_message(session.id, player.id, "one")
        await lifecycle.send_message(session.id, origin.id, "two")

        assert await titles.run_tick() == 0
        assert generator.calls == 0
        assert (await store.load_session(session.id)).title_generation_attempted is False

    @pytest.mark.asyncio
    async def test_concurrent_ticks_generate_once(self, lifecycle, store, player, origin):
        generator = StubGenerator(delay=0.05)
        titles = TitleGenerator(store, generator)
        session = await lifecycle.create_session(player, origin)
        await chat(lifecycle, session, player, origin, pairs=3)

        results = await asyncio.gather(titles.run_tick(), titles.run_tick(), titles.run_tick())

        assert sum(results) == 1
        assert generator.calls == 2
        assert await titles.run_tick() == 0
        assert generator.calls == 2

    @pytest.mark.asyncio
    async def test_failure_is_recorded_and_not_retried(self, lifecycle, store, player, origin):
        generator = StubGenerator(fail=True)
        titles = TitleGenerator(store, generator)
        session = await lifecycle.create_session(player, origin)
        await chat(lifecycle, session, player, origin, pairs=2)

        assert await titles.run_tick() == 0

        stored = await store.load_session(session.id)
        assert stored.title == "Player ⟷ Origin"
        assert stored.title_generation == TitleGenerationState.DONE
        assert stored.title_generation_attempted is True
        assert generator.calls == 1

        await titles.run_tick()
        assert generator.calls == 1

    @pytest.mark.asyncio
    async def test_manual_retrigger_after_failure(self, lifecycle, store, player, origin):
        titles = TitleGenerator(store, StubGenerator(fail=True))
        session = await lifecycle.create_session(player, origin)
        await chat(lifecycle, session, player, origin, pairs=2)
        await titles.run_tick()

        titles.generator = StubGenerator("Rocket Readiness")
        assert await titles.generate_for_session(session.id, force=True) is True

        stored = await store.load_session(session.id)
        assert stored.title == "Rocket Readiness"
        assert stored.title_generation_attempted is True

    @pytest.mark.asyncio
    async def test_unexpected_error_releases_claim(self, lifecycle, store, player, origin):
        class Broken:
            async def generate(self, prompt, **options):
                raise RuntimeError("boom")

        titles = TitleGenerator(store, Broken())
        session = await lifecycle.create_session(player, origin)
        await chat(lifecycle, session, player, origin, pairs=2)

        assert await titles.generate_for_session(session.id) is False
        stored = await store.load_session(session.id)
        assert not stored.is_generating_title
        assert stored.title_generation_attempted is True

    @pytest.mark.asyncio
    async def test_cancelled_generation_is_recorded_on_disk(
        self, lifecycle, store, storage, player, origin
    ):
        generator = StubGenerator(delay=10)
        titles = TitleGenerator(store, generator)
        session = await lifecycle.create_session(player, origin)
        await chat(lifecycle, session, player, origin)

        task = asyncio.create_task(titles.generate_for_session(session.id))
        while generator.calls == 0:
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        reloaded = SessionStore(storage)
        await reloaded.load()
        stored = await reloaded.load_session(session.id)
        assert stored.title_generation_attempted is True
        assert stored.title_generation == TitleGenerationState.DONE
        assert not stored.is_title_eligible()

    @pytest.mark.asyncio
    async def test_renamed_session_is_not_eligible(self, lifecycle, store, player, origin, generator):
        titles = TitleGenerator(store, generator)
        session = await lifecycle.create_session(player, origin)
        await chat(lifecycle, session, player, origin, pairs=2)
        await store.update_session_title(session.id, "My own title")

        assert await titles.run_tick() == 0
        assert generator.calls == 0

    @pytest.mark.asyncio
    async def test_regenerate_missing_titles(self, lifecycle, store, player, origin, scout):
        titles = TitleGenerator(store, StubGenerator(fail=True))
        first = await lifecycle.create_session(player, origin)
        await chat(lifecycle, first, player, origin, pairs=1)
        second = await lifecycle.create_session(player, scout)
        await chat(lifecycle, second, player, scout, pairs=1)
        await lifecycle.create_session(origin, scout)

        assert await titles.regenerate_missing_titles() == (0, 2)

        titles.generator = StubGenerator("Fixed")
        assert await titles.regenerate_missing_titles() == (2, 0)
        assert await titles.regenerate_missing_titles() == (0, 0)
