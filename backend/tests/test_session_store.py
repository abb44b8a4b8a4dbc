"""
Tests for SessionStore: persistence, cascading delete, search, export/import.
"""

import json

import pytest

from parley.core.errors import NotFoundError, PersistenceError, ValidationError
from parley.models import ChatLog, Message, Session, SessionState, TitleGenerationState
from parley.storage import SessionStore


def make_session(session_id: str, a: str = "a", b: str = "b", **fields) -> Session:
    return Session(id=session_id, participants=[a, b], chat_log_id=f"log-{session_id}", **fields)


async def create(store: SessionStore, session_id: str, **fields) -> Session:
    session = make_session(session_id, **fields)
    return await store.create_session_records(session, ChatLog(id=session.chat_log_id))


class TestSessionRecords:

    @pytest.mark.asyncio
    async def test_create_writes_session_and_log(self, store, storage):
        await create(store, "s1", title="A ⟷ B")

        assert await storage.exists("sessions/s1.json")
        assert await storage.exists("chat_logs/log-s1.json")
        raw = json.loads(await storage.load("sessions/s1.json"))
        assert raw["chatLogId"] == "log-s1"
        assert raw["messageCount"] == 0
        assert "reused" not in raw

    @pytest.mark.asyncio
    async def test_records_survive_reload(self, store, storage):
        await create(store, "s1", title="A ⟷ B")
        await store.append_message("log-s1", Message(sender_id="a", content="hello"))

        reloaded = SessionStore(storage)
        session = await reloaded.load_session("s1")
        assert session.title == "A ⟷ B"
        assert session.message_count == 1
        chat_log = await reloaded.load_chat_log("log-s1")
        assert [m.content for m in chat_log.messages] == ["hello"]

    @pytest.mark.asyncio
    async def test_load_unknown_session(self, store):
        with pytest.raises(NotFoundError):
            await store.load_session("nope")

    @pytest.mark.asyncio
    async def test_returned_sessions_are_copies(self, store):
        await create(store, "s1")
        session = await store.load_session("s1")
        session.title = "changed locally"
        assert (await store.load_session("s1")).title is None

    @pytest.mark.asyncio
    async def test_create_rolls_back_when_log_write_fails(self, store, storage):
        storage.fail_saves = True
        storage.fail_paths = "chat_logs/"

        with pytest.raises(PersistenceError):
            await create(store, "s1")

        assert await store.get_all_sessions() == []
        assert not await storage.exists("sessions/s1.json")

    @pytest.mark.asyncio
    async def test_update_title_rejects_empty(self, store):
        await create(store, "s1")
        with pytest.raises(ValidationError):
            await store.update_session_title("s1", "   ")

    @pytest.mark.asyncio
    async def test_update_title_and_keywords(self, store):
        await create(store, "s1")
        updated = await store.update_session_title("s1", "Mission brief", ["mission", "brief"])
        assert updated.title == "Mission brief"
        assert updated.keywords == ["mission", "brief"]

    @pytest.mark.asyncio
    async def test_participant_index(self, store):
        await create(store, "s1", a="p", b="q")
        await create(store, "s2", a="p", b="r")
        await create(store, "s3", a="q", b="r")

        ids = [s.id for s in await store.get_sessions_by_participant("p")]
        assert ids == ["s1", "s2"]
        await store.delete_session("s1")
        assert [s.id for s in await store.get_sessions_by_participant("p")] == ["s2"]

    @pytest.mark.asyncio
    async def test_load_skips_corrupt_records_and_releases_claims(self, storage):
        seeded = make_session("s1", title_generation=TitleGenerationState.GENERATING)
        await storage.save("sessions/s1.json", seeded.model_dump_json(by_alias=True))
        await storage.save("sessions/broken.json", "{not json")

        store = SessionStore(storage)
        sessions = await store.get_all_sessions()
        assert [s.id for s in sessions] == ["s1"]
        assert sessions[0].title_generation == TitleGenerationState.IDLE


class TestMessages:

    @pytest.mark.asyncio
    async def test_append_keeps_count_in_step(self, store):
        await create(store, "s1")
        before = (await store.load_session("s1")).last_activity_at

        for i in range(4):
            await store.append_message("log-s1", Message(sender_id="a", content=f"m{i}"))

        session = await store.load_session("s1")
        chat_log = await store.load_chat_log("log-s1")
        assert session.message_count == len(chat_log.messages) == 4
        assert session.last_activity_at >= before
        assert chat_log.last_message_at == chat_log.messages[-1].timestamp

    @pytest.mark.asyncio
    async def test_failed_append_changes_nothing(self, store, storage):
        await create(store, "s1")
        await store.append_message("log-s1", Message(sender_id="a", content="kept"))

        storage.fail_saves = True
        storage.fail_paths = "sessions/"
        with pytest.raises(PersistenceError):
            await store.append_message("log-s1", Message(sender_id="a", content="lost"))
        storage.fail_saves = False

        assert (await store.load_session("s1")).message_count == 1
        assert [m.content for m in (await store.load_chat_log("log-s1")).messages] == ["kept"]
        on_disk = ChatLog.model_validate_json(await storage.load("chat_logs/log-s1.json"))
        assert [m.content for m in on_disk.messages] == ["kept"]

    @pytest.mark.asyncio
    async def test_save_chat_log_syncs_owner_count(self, store):
        await create(store, "s1")
        chat_log = ChatLog(
            id="log-s1",
            messages=[Message(sender_id="a", content="x"), Message(sender_id="b", content="y")],
        )
        await store.save_chat_log(chat_log)
        assert (await store.load_session("s1")).message_count == 2

    @pytest.mark.asyncio
    async def test_clear_chat_log(self, store):
        await create(store, "s1")
        await store.append_message("log-s1", Message(sender_id="a", content="x"))
        assert await store.clear_chat_log("log-s1") == 1
        assert (await store.load_session("s1")).message_count == 0
        assert await store.clear_chat_log("log-s1") == 0


class TestDelete:

    @pytest.mark.asyncio
    async def test_delete_cascades_to_chat_log(self, store, storage):
        await create(store, "s1")
        await store.append_message("log-s1", Message(sender_id="a", content="x"))

        deleted = await store.delete_session("s1")

        assert deleted.id == "s1"
        assert await store.get_chat_log("log-s1") is None
        assert await store.get_session_for_chat_log("log-s1") is None
        assert not await storage.exists("sessions/s1.json")
        assert not await storage.exists("chat_logs/log-s1.json")

    @pytest.mark.asyncio
    async def test_delete_unknown_session(self, store):
        with pytest.raises(NotFoundError):
            await store.delete_session("ghost")

    @pytest.mark.asyncio
    async def test_failed_session_delete_restores_log(self, store, storage):
        await create(store, "s1")
        await store.append_message("log-s1", Message(sender_id="a", content="x"))

        storage.fail_deletes = True
        storage.fail_paths = "sessions/"
        with pytest.raises(PersistenceError):
            await store.delete_session("s1")

        assert (await store.load_session("s1")).message_count == 1
        assert len((await store.load_chat_log("log-s1")).messages) == 1
        assert await storage.exists("chat_logs/log-s1.json")

    @pytest.mark.asyncio
    async def test_owned_chat_log_cannot_be_deleted_alone(self, store):
        await create(store, "s1")
        with pytest.raises(ValidationError):
            await store.delete_chat_log("log-s1")

    @pytest.mark.asyncio
    async def test_delete_orphan_chat_log(self, store):
        await store.append_message("orphan", Message(sender_id="a", content="x"))
        await store.delete_chat_log("orphan")
        assert await store.get_chat_log("orphan") is None
        with pytest.raises(NotFoundError):
            await store.delete_chat_log("orphan")


class TestSearch:

    @pytest.mark.asyncio
    async def test_keyword_search_is_precise(self, store):
        await create(store, "rocket", keywords=["rocket", "launch"])
        await create(store, "weather", keywords=["weather", "forecast"])

        results = await store.search_sessions("rocket")
        assert [s.id for s in results] == ["rocket"]

    @pytest.mark.asyncio
    async def test_title_search_is_case_insensitive(self, store):
        await create(store, "s1", title="Launch Status Check")
        await create(store, "s2", title="Weather report")
        assert [s.id for s in await store.search_sessions("status CHECK")] == ["s1"]

    @pytest.mark.asyncio
    async def test_short_terms_do_not_match_keywords(self, store):
        await create(store, "s1", keywords=["go"])
        assert await store.search_sessions("go") == []

    @pytest.mark.asyncio
    async def test_results_are_unique_and_by_recency(self, store):
        await create(store, "old", title="rocket talk", keywords=["rocket"])
        await create(store, "new", keywords=["rocket"])
        await store.append_message("log-new", Message(sender_id="a", content="x"))

        assert [s.id for s in await store.search_sessions("rocket")] == ["new", "old"]

    @pytest.mark.asyncio
    async def test_blank_query(self, store):
        await create(store, "s1", title="anything")
        assert await store.search_sessions("  ") == []


class TestTitleClaim:

    @pytest.mark.asyncio
    async def test_only_one_claim_wins(self, store):
        await create(store, "s1", message_count=0)
        for i in range(3):
            await store.append_message("log-s1", Message(sender_id="a", content=f"m{i}"))

        assert store.begin_title_generation("s1") is True
        assert store.begin_title_generation("s1") is False
        assert store.begin_title_generation("s1", force=True) is False

        await store.finish_title_generation("s1", "Title", ["k"])
        session = await store.load_session("s1")
        assert session.title_generation == TitleGenerationState.DONE
        assert session.title_generation_attempted is True
        assert store.begin_title_generation("s1") is False

    @pytest.mark.asyncio
    async def test_claim_survives_concurrent_session_update(self, store):
        await create(store, "s1")
        for i in range(3):
            await store.append_message("log-s1", Message(sender_id="a", content=f"m{i}"))
        assert store.begin_title_generation("s1") is True

        await store.mutate_session("s1", lambda s: setattr(s, "state", SessionState.INACTIVE))

        assert (await store.load_session("s1")).is_generating_title
        store.release_title_generation("s1")
        assert (await store.load_session("s1")).title_generation == TitleGenerationState.DONE


class TestExportImport:

    @pytest.mark.asyncio
    async def test_round_trip_into_empty_store(self, store, tmp_path):
        from conftest import FlakyStorage

        await create(store, "s1", title="Launch Status Check", keywords=["rocket"])
        await create(store, "s2")
        for i in range(3):
            await store.append_message("log-s1", Message(sender_id="a", content=f"m{i}"))

        exported = await store.export_all()
        assert exported["version"] == 1
        assert isinstance(exported["exportedAt"], int)
        assert set(exported) == {"version", "exportedAt", "sessions", "chatLogs"}

        target = SessionStore(FlakyStorage(str(tmp_path / "other")))
        assert await target.import_all(exported) == 2
        again = await target.export_all()

        def by_id(records):
            return sorted(records, key=lambda r: r["id"])

        assert by_id(again["sessions"]) == by_id(exported["sessions"])
        assert by_id(again["chatLogs"]) == by_id(exported["chatLogs"])

    @pytest.mark.asyncio
    async def test_rejects_unknown_version(self, store):
        with pytest.raises(ValidationError):
            await store.import_all({"version": 2, "sessions": [], "chatLogs": []})

    @pytest.mark.asyncio
    async def test_rejects_malformed_payload(self, store):
        payload = {"version": 1, "sessions": [{"id": "x", "participants": ["only-one"]}]}
        with pytest.raises(ValidationError):
            await store.import_all(payload)
        assert await store.get_all_sessions() == []

    @pytest.mark.asyncio
    async def test_import_reconciles_message_count(self, store):
        session = make_session("s1", message_count=7)
        payload = {
            "version": 1,
            "sessions": [session.model_dump(mode="json", by_alias=True)],
            "chatLogs": [ChatLog(
                id="log-s1", messages=[Message(sender_id="a", content="only one")]
            ).model_dump(mode="json", by_alias=True)],
        }
        await store.import_all(payload)
        assert (await store.load_session("s1")).message_count == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad_id", ["a/b", "../../escape", "..", "a\\b"])
    async def test_rejects_ids_that_are_not_file_names(self, store, storage, bad_id):
        await create(store, "s1")
        payload = {
            "version": 1,
            "sessions": [
                make_session("s2").model_dump(mode="json", by_alias=True),
                make_session(bad_id).model_dump(mode="json", by_alias=True),
            ],
            "chatLogs": [],
        }
        with pytest.raises(ValidationError, match="Invalid session id"):
            await store.import_all(payload)

        assert [s.id for s in await store.get_all_sessions()] == ["s1"]
        assert await storage.list("sessions", pattern="*.json") == ["sessions/s1.json"]

    @pytest.mark.asyncio
    async def test_rejects_bad_chat_log_id(self, store, storage):
        payload = {
            "version": 1,
            "sessions": [],
            "chatLogs": [ChatLog(id="../escape").model_dump(mode="json", by_alias=True)],
        }
        with pytest.raises(ValidationError, match="Invalid chat log id"):
            await store.import_all(payload)
        assert await storage.list("chat_logs") == []

    @pytest.mark.asyncio
    async def test_failed_import_restores_prior_state(self, store, storage):
        await create(store, "s1", title="Old title")
        payload = {
            "version": 1,
            "sessions": [
                make_session(i, title="Imported").model_dump(mode="json", by_alias=True)
                for i in ("s1", "s2", "s3")
            ],
            "chatLogs": [],
        }
        storage.fail_saves = True
        storage.fail_paths = "sessions/s3"

        with pytest.raises(PersistenceError):
            await store.import_all(payload)

        assert [s.id for s in await store.get_all_sessions()] == ["s1"]
        assert (await store.load_session("s1")).title == "Old title"
        assert await store.get_chat_log("log-s2") is None

        reloaded = SessionStore(storage)
        await reloaded.load()
        assert [s.id for s in await reloaded.get_all_sessions()] == ["s1"]
        assert (await reloaded.load_session("s1")).title == "Old title"
        assert sorted(await storage.list("chat_logs")) == ["chat_logs/log-s1.json"]

    @pytest.mark.asyncio
    async def test_storage_path_errors_become_persistence_errors(self, store):
        with pytest.raises(PersistenceError):
            await store._remove("../../escape.json")


class TestFlush:

    @pytest.mark.asyncio
    async def test_flush_rewrites_every_session(self, store, storage):
        await create(store, "s1")
        await create(store, "s2")
        await storage.delete("sessions/s2.json")

        assert await store.flush() == 2
        assert await storage.exists("sessions/s2.json")
