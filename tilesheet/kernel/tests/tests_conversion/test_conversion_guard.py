"""
Tilesheet Conversion Guard -- Baseline Restore Tests

An untouched conversion is reverted on close. The first user mutation backs
the baseline up once and makes the conversion permanent. Storage failures are
logged and reported as "nothing restored", never raised.
"""

import pytest

from tilesheet.kernel.conversion import ConversionSessionGuard
from tilesheet.kernel.storage import MemoryBackupStore, MemoryStorage

ORIGINAL = "plain notes\nnothing tabular here\n"
CONVERTED = "## Note: plain notes\n"


class FailingStorage(MemoryStorage):
    def __init__(self, documents=None, fail_read=False, fail_write=False):
        super().__init__(documents)
        self.fail_read = fail_read
        self.fail_write = fail_write

    async def read(self, identity):
        if self.fail_read:
            raise OSError("read failed")
        return await super().read(identity)

    async def write(self, identity, text):
        if self.fail_write:
            raise OSError("write failed")
        await super().write(identity, text)


class FailingBackups(MemoryBackupStore):
    async def ensure_initial_backup(self, identity, text):
        raise OSError("disk full")


def make_guard(storage=None, backups=None, cancel=None) -> ConversionSessionGuard:
    storage = storage if storage is not None else MemoryStorage({"notes.md": CONVERTED})
    guard = ConversionSessionGuard(storage, backups or MemoryBackupStore(), cancel)
    guard.prepare("notes.md")
    guard.capture_baseline(ORIGINAL)
    return guard


# ============================================================================
# Restore
# ============================================================================


class TestRestore:
    @pytest.mark.asyncio
    async def test_untouched_conversion_is_restored(self):
        guard = make_guard()

        restored = await guard.restore_baseline_if_eligible()

        assert restored is True
        assert guard.storage.documents["notes.md"] == ORIGINAL
        assert guard.baseline is None

    @pytest.mark.asyncio
    async def test_restore_cancels_pending_save(self):
        cancelled = []
        guard = make_guard(cancel=lambda: cancelled.append(True))

        await guard.restore_baseline_if_eligible()

        assert cancelled == [True]

    @pytest.mark.asyncio
    async def test_equal_content_is_not_rewritten(self):
        storage = MemoryStorage({"notes.md": ORIGINAL})
        guard = make_guard(storage)

        assert await guard.restore_baseline_if_eligible() is False
        assert storage.writes == []

    @pytest.mark.asyncio
    async def test_other_identity_is_not_restored(self):
        guard = make_guard()

        assert await guard.restore_baseline_if_eligible("other.md") is False
        assert guard.storage.documents["notes.md"] == CONVERTED

    @pytest.mark.asyncio
    async def test_restore_happens_once(self):
        guard = make_guard()
        await guard.restore_baseline_if_eligible()

        assert await guard.restore_baseline_if_eligible() is False

    @pytest.mark.asyncio
    async def test_without_baseline_nothing_happens(self):
        storage = MemoryStorage({"notes.md": CONVERTED})
        guard = ConversionSessionGuard(storage, MemoryBackupStore())
        guard.prepare("notes.md")

        assert await guard.restore_baseline_if_eligible() is False
        assert storage.writes == []

    @pytest.mark.asyncio
    async def test_unreadable_document_is_still_restored(self):
        storage = FailingStorage({"notes.md": CONVERTED}, fail_read=True)
        guard = make_guard(storage)

        assert await guard.restore_baseline_if_eligible() is True
        assert storage.documents["notes.md"] == ORIGINAL

    @pytest.mark.asyncio
    async def test_write_failure_is_logged_not_raised(self, caplog):
        storage = FailingStorage({"notes.md": CONVERTED}, fail_write=True)
        guard = make_guard(storage)

        assert await guard.restore_baseline_if_eligible() is False
        assert "restore of notes.md failed" in caplog.text
        assert guard.baseline is None


# ============================================================================
# Mutation
# ============================================================================


class TestMutation:
    @pytest.mark.asyncio
    async def test_mutation_blocks_restore(self):
        guard = make_guard()

        await guard.mark_user_mutation("cell.set")

        assert await guard.restore_baseline_if_eligible() is False
        assert guard.storage.documents["notes.md"] == CONVERTED

    @pytest.mark.asyncio
    async def test_mutation_backs_up_baseline_once(self):
        backups = MemoryBackupStore()
        guard = make_guard(backups=backups)

        await guard.mark_user_mutation("cell.set")
        await guard.mark_user_mutation("row.add")

        assert backups.backups == {"notes.md": ORIGINAL}
        assert guard.baseline_persisted is True
        assert guard.baseline is None

    @pytest.mark.asyncio
    async def test_backup_failure_is_logged(self, caplog):
        guard = make_guard(backups=FailingBackups())

        await guard.mark_user_mutation("cell.set")

        assert guard.user_mutated is True
        assert guard.baseline_persisted is False
        assert "backup of notes.md failed" in caplog.text

    @pytest.mark.asyncio
    async def test_existing_backup_is_kept(self):
        backups = MemoryBackupStore()
        backups.backups["notes.md"] = "older copy"
        guard = make_guard(backups=backups)

        await guard.mark_user_mutation("cell.set")

        assert backups.backups["notes.md"] == "older copy"

    @pytest.mark.asyncio
    async def test_mutation_without_baseline_only_sets_flag(self):
        backups = MemoryBackupStore()
        guard = ConversionSessionGuard(MemoryStorage(), backups)
        guard.prepare("notes.md")

        await guard.mark_user_mutation("cell.set")

        assert guard.user_mutated is True
        assert backups.backups == {}


# ============================================================================
# Session boundaries
# ============================================================================


class TestPrepare:
    def test_new_identity_drops_baseline(self):
        guard = make_guard()

        guard.prepare("other.md")

        assert guard.baseline is None
        assert guard.identity == "other.md"

    def test_same_identity_keeps_baseline(self):
        guard = make_guard()

        guard.prepare("notes.md")

        assert guard.baseline == ORIGINAL

    def test_baseline_is_captured_once(self):
        guard = make_guard()

        guard.capture_baseline("later text")

        assert guard.baseline == ORIGINAL

    def test_no_identity_no_baseline(self):
        guard = ConversionSessionGuard(MemoryStorage(), MemoryBackupStore())

        guard.capture_baseline(ORIGINAL)

        assert guard.baseline is None
