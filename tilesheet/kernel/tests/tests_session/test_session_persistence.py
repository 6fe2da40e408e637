"""
Tilesheet Session -- Persistence Tests

Saves are debounced: a burst of edits inside one window costs one write, and
that write carries the final state. Background save failures are logged; a
direct save() raises.
"""

import asyncio

import pytest

from tilesheet.kernel.persistence import PersistenceService
from tilesheet.kernel.session import DocumentSession, SessionOptions
from tilesheet.kernel.storage import FileBackupStore, FileStorage, MemoryStorage


class BrokenStorage(MemoryStorage):
    fail_writes = True

    async def write(self, identity, text):
        if self.fail_writes:
            raise OSError("read-only volume")
        await super().write(identity, text)


async def open_session(storage, identity: str = "tasks.md", debounce_ms: int = 20) -> DocumentSession:
    session = DocumentSession(storage, options=SessionOptions(save_debounce_ms=debounce_ms))
    await session.open(identity)
    return session


# ============================================================================
# Debounce
# ============================================================================


class TestDebounce:
    @pytest.mark.asyncio
    async def test_burst_costs_one_write(self, tasks_doc):
        storage = MemoryStorage({"tasks.md": tasks_doc})
        session = await open_session(storage)

        for value in ["a", "b", "c", "d", "e"]:
            await session.apply_edit("cell.set", {"row": 0, "field": "Status", "value": value})
        await asyncio.sleep(0.1)

        assert len(storage.writes) == 1
        assert "Status: e" in storage.writes[0][1]
        await session.close()

    @pytest.mark.asyncio
    async def test_written_text_matches_store(self, tasks_doc):
        storage = MemoryStorage({"tasks.md": tasks_doc})
        session = await open_session(storage)
        await session.apply_edit("row.add", {})
        await asyncio.sleep(0.1)

        assert storage.documents["tasks.md"] == session.store.blocks_to_markdown()
        assert "## Task: Row 4" in storage.documents["tasks.md"]
        await session.close()

    @pytest.mark.asyncio
    async def test_close_flushes_pending_save(self, tasks_doc):
        storage = MemoryStorage({"tasks.md": tasks_doc})
        session = await open_session(storage, debounce_ms=60_000)
        await session.apply_edit("cell.set", {"row": 0, "field": "Status", "value": "done"})
        assert session.persistence.has_pending_save

        await session.close()

        assert len(storage.writes) == 1

    @pytest.mark.asyncio
    async def test_explicit_save(self, tasks_doc):
        storage = MemoryStorage({"tasks.md": tasks_doc})
        session = await open_session(storage, debounce_ms=60_000)
        await session.apply_edit("cell.set", {"row": 0, "field": "Status", "value": "done"})

        await session.save()

        assert len(storage.writes) == 1
        assert not session.persistence.has_pending_save
        await session.close()
        assert len(storage.writes) == 1

    @pytest.mark.asyncio
    async def test_round_trip_keeps_values(self, tasks_doc):
        storage = MemoryStorage({"tasks.md": tasks_doc})
        session = await open_session(storage)
        await session.save()
        before = [r.to_display() for r in session.rows()]

        rows = await session.open("tasks.md")

        assert [r.to_display() for r in rows] == [
            {**row, "__row_id": r.row_id} for row, r in zip(before, rows)
        ]
        await session.close()


# ============================================================================
# Failures
# ============================================================================


class TestSaveFailures:
    @pytest.mark.asyncio
    async def test_background_failure_is_logged(self, tasks_doc, caplog):
        storage = BrokenStorage({"tasks.md": tasks_doc})
        session = await open_session(storage)

        result = await session.apply_edit("cell.set", {"row": 0, "field": "Status", "value": "done"})
        await asyncio.sleep(0.1)

        assert result.applied
        assert "save of tasks.md failed" in caplog.text
        assert session.rows()[0]["Status"] == "done"
        storage.fail_writes = False
        await session.close()

    @pytest.mark.asyncio
    async def test_direct_save_raises(self, tasks_doc):
        storage = BrokenStorage({"tasks.md": tasks_doc})
        session = await open_session(storage)

        with pytest.raises(OSError):
            await session.save()
        await session.close()


class TestPersistenceService:
    @pytest.mark.asyncio
    async def test_unbound_save_is_a_no_op(self):
        storage = MemoryStorage()
        service = PersistenceService(storage, lambda: "text", debounce_ms=10)

        await service.save()

        assert storage.writes == []

    @pytest.mark.asyncio
    async def test_rebind_drops_pending_save(self):
        storage = MemoryStorage()
        service = PersistenceService(storage, lambda: "text", debounce_ms=10)
        service.bind("a.md")
        service.schedule_save()

        service.bind("b.md")
        await asyncio.sleep(0.05)

        assert storage.writes == []

    @pytest.mark.asyncio
    async def test_flush_without_pending_save(self):
        storage = MemoryStorage()
        service = PersistenceService(storage, lambda: "text")
        service.bind("a.md")

        await service.flush()

        assert service.save_count == 0


# ============================================================================
# Filesystem backends
# ============================================================================


class TestFileBackends:
    @pytest.mark.asyncio
    async def test_file_storage(self, tmp_path):
        storage = FileStorage(tmp_path)

        assert await storage.read("missing.md") is None
        await storage.write("nested/doc.md", "## Name: x\n")

        assert (tmp_path / "nested" / "doc.md").read_text(encoding="utf-8") == "## Name: x\n"
        assert await storage.read("nested/doc.md") == "## Name: x\n"

    @pytest.mark.asyncio
    async def test_backup_is_written_once(self, tmp_path):
        backups = FileBackupStore(tmp_path / "backups")

        assert await backups.ensure_initial_backup("notes/My Notes.md", "first") is True
        assert await backups.ensure_initial_backup("notes/My Notes.md", "second") is False

        path = backups.path_for("notes/My Notes.md")
        assert path.name.startswith("My_Notes-")
        assert path.read_text(encoding="utf-8") == "first"

    def test_backup_names_differ_per_identity(self, tmp_path):
        backups = FileBackupStore(tmp_path)

        assert backups.path_for("a/doc.md") != backups.path_for("b/doc.md")
