"""Tests for the sync engine."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Callable

import pytest

from senja_sync.core.cache import LocalCache, MemoryBackend
from senja_sync.core.engine import SyncEngine
from senja_sync.core.schema import Collection, default_admin
from senja_sync.core.state import CollectionState, SyncStatus

from conftest import FakeSheet

EngineFactory = Callable[..., SyncEngine]


async def settle(engine: SyncEngine) -> None:
    """Let scheduled pushes run, then close the engine."""
    await engine.wait_idle()
    await engine.close()


class TestRefresh:
    """Test read-through refresh."""

    def test_pull_decodes_and_sanitizes(
        self, make_engine: EngineFactory, fake_sheet: FakeSheet
    ) -> None:
        """Test that a pull reassembles chunks and normalizes records."""
        cover = "data:image/png;base64," + "A" * 90
        background = "B" * 70
        questions = [{"id": "q1", "text": "Apa pesan moralnya?"}]
        fake_sheet.data = {
            "accounts": [],
            "roster": [{"nisn": 12345, "name": "Budi", "classGrade": ""}],
            "contentitems": [
                {
                    "id": "c1",
                    "title": "Kancil",
                    "hasTask": "TRUE",
                    "reflectionQuestions": json.dumps(questions),
                    "coverImage_chunk_2": cover[80:],
                    "coverImage_chunk_0": cover[:40],
                    "coverImage_chunk_1": cover[40:80],
                }
            ],
            "submissions": [{"id": "s1", "status": "Approved "}],
            "settings": {"certBg_chunk_1": background[35:], "certBg_chunk_0": background[:35]},
        }
        engine = make_engine()

        async def run():
            result = await engine.refresh()
            await settle(engine)
            return result

        result = asyncio.run(run())

        assert result.ok
        assert not result.degraded
        assert result.errors == {}
        assert engine.get_all(Collection.ACCOUNTS) == [default_admin()]

        student = engine.get(Collection.ROSTER, "12345")
        assert student is not None
        assert student["classGrade"] == "1"

        item = engine.get(Collection.CONTENT_ITEMS, "c1")
        assert item is not None
        assert item["coverImage"] == cover
        assert item["hasTask"] is True
        assert item["reflectionQuestions"][0]["text"] == "Apa pesan moralnya?"
        assert "coverImage_chunk_0" not in item

        assert engine.get(Collection.SUBMISSIONS, "s1")["status"] == "approved"
        assert engine.get_settings() == {"certBackground": background}
        assert result.counts[Collection.ROSTER] == 1

    def test_failed_pull_keeps_cache(
        self, make_engine: EngineFactory, fake_sheet: FakeSheet
    ) -> None:
        """Test that a failed pull leaves the cache untouched and flags degraded mode."""
        cache = LocalCache(MemoryBackend())
        cache.upsert(Collection.ROSTER, {"nisn": "1", "name": "Cached"})
        before = {c: cache.get_all(c) for c in Collection}
        fake_sheet.fail_pull = True
        engine = make_engine(cache=cache)

        async def run():
            result = await engine.refresh()
            await settle(engine)
            return result

        result = asyncio.run(run())

        assert not result.ok
        assert result.degraded
        assert result.error
        assert engine.degraded
        assert {c: engine.get_all(c) for c in Collection} == before
        assert all(s.status is SyncStatus.IDLE for s in engine.statuses())
        assert fake_sheet.pushes == []

    def test_degraded_cleared_by_next_pull(
        self, make_engine: EngineFactory, fake_sheet: FakeSheet
    ) -> None:
        """Test that a successful pull leaves degraded mode."""
        engine = make_engine()

        async def run():
            fake_sheet.fail_pull = True
            await engine.refresh()
            assert engine.degraded
            fake_sheet.fail_pull = False
            await engine.refresh()
            await settle(engine)

        asyncio.run(run())
        assert not engine.degraded
        assert engine.state_mgr.last_pull_error is None

    def test_malformed_collection_isolated(
        self, make_engine: EngineFactory, fake_sheet: FakeSheet
    ) -> None:
        """Test that one bad collection does not affect the others."""
        cache = LocalCache(MemoryBackend())
        cache.upsert(Collection.ROSTER, {"nisn": "1"})
        fake_sheet.data = {
            "accounts": [{"id": "t1", "username": "guru", "role": "TEACHER"}],
            "roster": "oops",
            "contentitems": [{"id": "c1", "title": "Bab 1"}],
            "settings": {},
        }
        engine = make_engine(cache=cache)

        async def run():
            result = await engine.refresh()
            await settle(engine)
            return result

        result = asyncio.run(run())

        assert result.ok
        assert set(result.errors) == {Collection.ROSTER, Collection.SUBMISSIONS}
        assert engine.get_all(Collection.ROSTER) == []
        assert engine.get_all(Collection.SUBMISSIONS) == []
        assert [r["id"] for r in engine.get_all(Collection.CONTENT_ITEMS)] == ["c1"]
        assert [r["username"] for r in engine.get_all(Collection.ACCOUNTS)] == ["guru", "admin"]

    def test_truncated_chunks_reported(
        self, make_engine: EngineFactory, fake_sheet: FakeSheet
    ) -> None:
        """Test that a chunk gap keeps the prefix and is reported."""
        fake_sheet.data["submissions"] = [
            {"id": "s1", "taskFile_chunk_0": "abc", "taskFile_chunk_2": "ghi"}
        ]
        engine = make_engine()

        async def run():
            result = await engine.refresh()
            await settle(engine)
            return result

        result = asyncio.run(run())

        assert result.truncated == {Collection.SUBMISSIONS: {"taskFile"}}
        assert engine.get(Collection.SUBMISSIONS, "s1")["taskFile"] == "abc"
        assert engine.status(Collection.SUBMISSIONS).truncated_fields == {"taskFile"}

    def test_blank_chunk_columns_from_other_rows(
        self, make_engine: EngineFactory, fake_sheet: FakeSheet
    ) -> None:
        """Test that rows sharing a chunked row's headers keep their own values."""
        cover = "data:image/png;base64," + "A" * 90
        fake_sheet.data["contentitems"] = [
            {
                "id": "m1",
                "coverImage": "",
                "coverImage_chunk_0": cover[:50],
                "coverImage_chunk_1": cover[50:],
            },
            {
                "id": "m2",
                "coverImage": "https://x/img.png",
                "coverImage_chunk_0": "",
                "coverImage_chunk_1": "",
            },
        ]
        engine = make_engine()

        async def run():
            result = await engine.refresh()
            await settle(engine)
            return result

        result = asyncio.run(run())

        assert result.ok
        assert result.truncated == {}
        assert engine.get(Collection.CONTENT_ITEMS, "m1")["coverImage"] == cover
        assert engine.get(Collection.CONTENT_ITEMS, "m2")["coverImage"] == "https://x/img.png"

    def test_concurrent_refresh_coalesced(
        self, make_engine: EngineFactory, fake_sheet: FakeSheet
    ) -> None:
        """Test that a refresh during a refresh shares its result."""
        engine = make_engine()

        async def run():
            fake_sheet.pull_gate = asyncio.Event()
            first = asyncio.create_task(engine.refresh())
            second = asyncio.create_task(engine.refresh())
            await asyncio.sleep(0.01)
            fake_sheet.pull_gate.set()
            results = await asyncio.gather(first, second)
            await settle(engine)
            return results

        first, second = asyncio.run(run())
        assert first is second
        assert fake_sheet.gets == 1

    def test_pull_waits_for_inflight_push(
        self, make_engine: EngineFactory, fake_sheet: FakeSheet
    ) -> None:
        """Test that a pull starts only after a running push finishes."""
        engine = make_engine()

        async def run():
            fake_sheet.push_gate = asyncio.Event()
            fake_sheet.push_started = asyncio.Event()
            engine.save(Collection.ROSTER, {"nisn": "1", "name": "Budi"})
            await fake_sheet.push_started.wait()

            refresh = asyncio.create_task(engine.refresh())
            await asyncio.sleep(0.01)
            gets_while_pushing = fake_sheet.gets

            fake_sheet.push_gate.set()
            await refresh
            await settle(engine)
            return gets_while_pushing

        assert asyncio.run(run()) == 0
        assert fake_sheet.gets == 1

    def test_pull_on_enter(self, make_engine: EngineFactory, fake_sheet: FakeSheet) -> None:
        """Test that entering the engine pulls when configured to."""
        engine = make_engine(sync={"pull_on_start": True})

        async def run():
            async with engine:
                pass

        asyncio.run(run())
        assert fake_sheet.gets == 1


class TestWrites:
    """Test write-through saves and deletes."""

    def test_save_pushes_whole_collection(
        self, make_engine: EngineFactory, fake_sheet: FakeSheet
    ) -> None:
        """Test that a save updates the cache at once and pushes the collection."""
        engine = make_engine()

        async def run():
            engine.save(Collection.ROSTER, {"nisn": "1", "name": "A"})
            stored = engine.save(Collection.ROSTER, {"nisn": "2", "name": "B"})
            assert engine.get(Collection.ROSTER, "2") == stored
            await settle(engine)

        asyncio.run(run())

        pushes = fake_sheet.pushes_for("Roster")
        assert pushes
        assert [r["nisn"] for r in pushes[-1]] == ["1", "2"]
        assert engine.status(Collection.ROSTER).status is SyncStatus.IDLE
        assert not engine.status(Collection.ROSTER).has_pending

    def test_save_sanitizes_and_generates_key(
        self, make_engine: EngineFactory, fake_sheet: FakeSheet
    ) -> None:
        """Test that saved records are normalized and keyed."""
        engine = make_engine()

        async def run():
            stored = engine.save(
                Collection.SUBMISSIONS,
                {"studentNisn": 99, "status": "REJECTED ", "bogus": 1},
            )
            await settle(engine)
            return stored

        stored = asyncio.run(run())
        assert len(stored["id"]) == 32
        assert stored["studentNisn"] == "99"
        assert stored["status"] == "rejected"
        assert "bogus" not in stored

    def test_push_failure_keeps_local_write(
        self, make_engine: EngineFactory, fake_sheet: FakeSheet
    ) -> None:
        """Test that a failed push never rolls back the local write."""
        fake_sheet.fail_push = True
        engine = make_engine()

        async def run():
            engine.save(Collection.ROSTER, {"nisn": "7", "name": "Siti"})
            await settle(engine)

        asyncio.run(run())

        assert engine.get(Collection.ROSTER, "7")["name"] == "Siti"
        state = engine.status(Collection.ROSTER)
        assert state.status is SyncStatus.FAILED
        assert state.last_error
        assert state.pushes_failed == 1
        assert state.has_pending

    def test_failed_write_pushed_by_flush(
        self, make_engine: EngineFactory, fake_sheet: FakeSheet
    ) -> None:
        """Test that flush retries collections with unconfirmed writes."""
        engine = make_engine()

        async def run():
            fake_sheet.fail_push = True
            engine.save(Collection.ROSTER, {"nisn": "7"})
            await engine.wait_idle()
            fake_sheet.fail_push = False
            results = await engine.flush()
            await settle(engine)
            return results

        results = asyncio.run(run())
        assert results == {Collection.ROSTER: True}
        assert engine.status(Collection.ROSTER).status is SyncStatus.IDLE
        assert not engine.status(Collection.ROSTER).has_pending

    def test_write_during_push_triggers_second_push(
        self, make_engine: EngineFactory, fake_sheet: FakeSheet
    ) -> None:
        """Test that a write while a push is in flight is pushed afterwards."""
        engine = make_engine()

        async def run():
            fake_sheet.push_gate = asyncio.Event()
            fake_sheet.push_started = asyncio.Event()
            engine.save(Collection.ROSTER, {"nisn": "1"})
            await fake_sheet.push_started.wait()

            engine.save(Collection.ROSTER, {"nisn": "2"})
            engine.save(Collection.ROSTER, {"nisn": "3"})
            fake_sheet.push_gate.set()
            await settle(engine)

        asyncio.run(run())

        pushes = fake_sheet.pushes_for("Roster")
        assert len(pushes) == 2
        assert [r["nisn"] for r in pushes[0]] == ["1"]
        assert [r["nisn"] for r in pushes[1]] == ["1", "2", "3"]

    def test_chunked_push_payload(
        self, make_engine: EngineFactory, fake_sheet: FakeSheet
    ) -> None:
        """Test that long fields leave as numbered chunk columns."""
        engine = make_engine(limits={"max_cell_chars": 100, "chunk_safety_margin": 0.5})
        background = "x" * 120

        async def run():
            engine.save_settings(certBackground=background)
            await settle(engine)

        asyncio.run(run())

        (row,) = fake_sheet.pushes_for("Settings")[-1]
        assert row == {
            "certBackground_chunk_0": "x" * 50,
            "certBackground_chunk_1": "x" * 50,
            "certBackground_chunk_2": "x" * 20,
        }
        assert engine.get_settings() == {"certBackground": background}

    def test_nested_values_pushed_as_json(
        self, make_engine: EngineFactory, fake_sheet: FakeSheet
    ) -> None:
        """Test that nested fields are flattened to JSON text on push."""
        engine = make_engine()

        async def run():
            engine.save(
                Collection.SUBMISSIONS,
                {"id": "s1", "answers": {"q1": "Senang"}},
            )
            await settle(engine)

        asyncio.run(run())

        (row,) = fake_sheet.pushes_for("Submissions")[-1]
        assert json.loads(row["answers"]) == {"q1": "Senang"}

    def test_large_payload_warns(
        self,
        make_engine: EngineFactory,
        fake_sheet: FakeSheet,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """Test that an oversized payload is logged but still pushed."""
        engine = make_engine(limits={"max_payload_chars": 10})

        async def run():
            engine.save(Collection.ROSTER, {"nisn": "1", "name": "Budi Santoso"})
            await settle(engine)

        with caplog.at_level(logging.WARNING, logger="senja_sync"):
            asyncio.run(run())

        assert "payload" in caplog.text
        assert fake_sheet.pushes_for("Roster")

    def test_delete_pushes(self, make_engine: EngineFactory, fake_sheet: FakeSheet) -> None:
        """Test that a delete removes locally and pushes the remainder."""
        cache = LocalCache(MemoryBackend())
        cache.upsert(Collection.CONTENT_ITEMS, {"id": "c1"})
        cache.upsert(Collection.CONTENT_ITEMS, {"id": "c2"})
        engine = make_engine(cache=cache)

        async def run():
            removed = engine.delete(Collection.CONTENT_ITEMS, "c1")
            missing = engine.delete(Collection.CONTENT_ITEMS, "nope")
            await settle(engine)
            return removed, missing

        assert asyncio.run(run()) == (True, False)
        assert [r["id"] for r in fake_sheet.pushes_for("ContentItems")[-1]] == ["c2"]

    def test_admin_delete_refused(
        self, make_engine: EngineFactory, fake_sheet: FakeSheet
    ) -> None:
        """Test that the administrator account cannot be deleted."""
        engine = make_engine()

        async def run():
            refused = engine.delete(Collection.ACCOUNTS, "u1")
            await settle(engine)
            return refused

        assert asyncio.run(run()) is False
        assert engine.get(Collection.ACCOUNTS, "u1") == default_admin()
        assert fake_sheet.pushes == []

    def test_import_records_single_push(
        self, make_engine: EngineFactory, fake_sheet: FakeSheet
    ) -> None:
        """Test that a bulk import is pushed once."""
        engine = make_engine()
        rows = [{"nisn": str(n), "name": f"Siswa {n}"} for n in range(5)]

        async def run():
            stored = engine.import_records(Collection.ROSTER, rows)
            await settle(engine)
            return stored

        stored = asyncio.run(run())
        assert len(stored) == 5
        pushes = fake_sheet.pushes_for("Roster")
        assert len(pushes) == 1
        assert len(pushes[0]) == 5

    def test_save_without_loop_deferred_until_flush(
        self, make_engine: EngineFactory, fake_sheet: FakeSheet
    ) -> None:
        """Test that writes made outside an event loop are pushed by flush()."""
        engine = make_engine()
        engine.save(Collection.ROSTER, {"nisn": "1"})
        assert fake_sheet.pushes == []

        async def run():
            results = await engine.flush()
            await settle(engine)
            return results

        assert asyncio.run(run()) == {Collection.ROSTER: True}
        assert len(fake_sheet.pushes_for("Roster")) == 1

    def test_save_settings_by_field_name(
        self, make_engine: EngineFactory, fake_sheet: FakeSheet
    ) -> None:
        """Test that a settings update by Python field name replaces the stored value."""
        engine = make_engine()

        async def run():
            engine.save_settings(certBackground="old")
            engine.save_settings(cert_background="new")
            await settle(engine)

        asyncio.run(run())

        assert engine.get_settings() == {"certBackground": "new"}
        assert fake_sheet.pushes_for("Settings")[-1] == [{"certBackground": "new"}]

    def test_save_update_by_field_name(self, make_engine: EngineFactory) -> None:
        """Test that a snake_case key updates the matching camelCase field."""
        engine = make_engine()
        old = engine.save(Collection.ROSTER, {"nisn": "1", "name": "Budi", "classGrade": "1"})

        stored = engine.save(Collection.ROSTER, {**old, "class_grade": "3"})

        assert stored["classGrade"] == "3"
        assert "class_grade" not in stored
        assert engine.get(Collection.ROSTER, "1")["classGrade"] == "3"

    def test_save_rejects_non_mapping(self, make_engine: EngineFactory) -> None:
        """Test that a non-mapping record is a caller error."""
        engine = make_engine()
        with pytest.raises(TypeError):
            engine.save(Collection.ROSTER, ["nisn", "1"])  # type: ignore[arg-type]

    def test_push_without_task_raises(
        self, make_engine: EngineFactory, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test that push() fails loudly when no push task could be scheduled."""
        engine = make_engine()
        monkeypatch.setattr(engine, "_schedule_push", lambda collection: None)

        with pytest.raises(RuntimeError):
            asyncio.run(engine.push(Collection.ROSTER))

    def test_status_callback(self, make_engine: EngineFactory) -> None:
        """Test that status changes are reported to the callback."""
        seen: list[tuple[Collection, SyncStatus]] = []

        def on_status(state: CollectionState) -> None:
            seen.append((state.collection, state.status))

        engine = make_engine()
        engine.on_status = on_status

        async def run():
            engine.save(Collection.ROSTER, {"nisn": "1"})
            await settle(engine)

        asyncio.run(run())
        assert seen == [
            (Collection.ROSTER, SyncStatus.PUSHING),
            (Collection.ROSTER, SyncStatus.IDLE),
        ]


class TestPendingWrites:
    """Test how unconfirmed writes interact with pulls."""

    def test_unpushed_write_survives_pull(
        self, make_engine: EngineFactory, fake_sheet: FakeSheet
    ) -> None:
        """Test that a write whose push failed is re-applied after a pull."""
        engine = make_engine()

        async def run():
            fake_sheet.fail_push = True
            engine.save(Collection.ROSTER, {"nisn": "9", "name": "Local"})
            await engine.wait_idle()

            fake_sheet.fail_push = False
            fake_sheet.data["roster"] = [{"nisn": "1", "name": "Remote"}]
            result = await engine.refresh()
            await settle(engine)
            return result

        result = asyncio.run(run())

        assert result.reapplied == {Collection.ROSTER: 1}
        assert [r["nisn"] for r in engine.get_all(Collection.ROSTER)] == ["1", "9"]
        assert [r["nisn"] for r in fake_sheet.pushes_for("Roster")[-1]] == ["1", "9"]
        assert not engine.status(Collection.ROSTER).has_pending

    def test_unpushed_delete_survives_pull(
        self, make_engine: EngineFactory, fake_sheet: FakeSheet
    ) -> None:
        """Test that a delete whose push failed is re-applied after a pull."""
        cache = LocalCache(MemoryBackend())
        cache.upsert(Collection.ROSTER, {"nisn": "1"})
        engine = make_engine(cache=cache)

        async def run():
            fake_sheet.fail_push = True
            engine.delete(Collection.ROSTER, "1")
            await engine.wait_idle()

            fake_sheet.fail_push = False
            fake_sheet.data["roster"] = [{"nisn": "1"}, {"nisn": "2"}]
            await engine.refresh()
            await settle(engine)

        asyncio.run(run())
        assert [r["nisn"] for r in engine.get_all(Collection.ROSTER)] == ["2"]

    def test_dropped_when_not_kept(
        self, make_engine: EngineFactory, fake_sheet: FakeSheet
    ) -> None:
        """Test that failed writes are lost to a pull when not kept."""
        engine = make_engine(sync={"keep_unpushed_writes": False})

        async def run():
            fake_sheet.fail_push = True
            engine.save(Collection.ROSTER, {"nisn": "9"})
            await engine.wait_idle()

            fake_sheet.fail_push = False
            fake_sheet.data["roster"] = [{"nisn": "1"}]
            result = await engine.refresh()
            await settle(engine)
            return result

        result = asyncio.run(run())
        assert result.reapplied == {}
        assert [r["nisn"] for r in engine.get_all(Collection.ROSTER)] == ["1"]

    def test_confirmed_write_not_reapplied(
        self, make_engine: EngineFactory, fake_sheet: FakeSheet
    ) -> None:
        """Test that a pushed write is not replayed over newer remote data."""
        engine = make_engine()

        async def run():
            engine.save(Collection.ROSTER, {"nisn": "1", "name": "Old"})
            await engine.wait_idle()

            fake_sheet.data["roster"] = [{"nisn": "1", "name": "Edited elsewhere"}]
            result = await engine.refresh()
            await settle(engine)
            return result

        result = asyncio.run(run())
        assert result.reapplied == {}
        assert engine.get(Collection.ROSTER, "1")["name"] == "Edited elsewhere"

    def test_state_summary(self, make_engine: EngineFactory) -> None:
        """Test the summary used by the CLI."""
        engine = make_engine()
        engine.save(Collection.ROSTER, {"nisn": "1"})

        summary = engine.get_state_summary()
        roster = summary["collections"]["Roster"]
        assert roster["records"] == 1
        assert roster["pending_writes"] == 1
        assert summary["collections"]["Accounts"]["records"] == 1
        assert summary["degraded"] is False
