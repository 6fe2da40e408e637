"""
Tilesheet Kernel — Storage

Host I/O collaborators. The kernel only ever talks to these protocols:

    DocumentStorage   read / write document text by identity
    BackupStore       keep one initial copy of a document before conversion

In-memory implementations back the tests; filesystem implementations back the
CLI. Filesystem calls run in a worker thread so the event loop never blocks.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
from pathlib import Path

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Document storage
# ---------------------------------------------------------------------------


class DocumentStorage:
    """
    Abstract storage interface.
    Implement with the host's file API, or in-memory for tests.
    """

    async def read(self, identity: str) -> str | None:
        """Fetch document text. Returns None if not found."""
        raise NotImplementedError

    async def write(self, identity: str, text: str) -> None:
        """Replace document text."""
        raise NotImplementedError


class MemoryStorage(DocumentStorage):
    """In-memory storage for testing."""

    def __init__(self, documents: dict[str, str] | None = None) -> None:
        self.documents: dict[str, str] = dict(documents or {})
        self.writes: list[tuple[str, str]] = []

    async def read(self, identity: str) -> str | None:
        return self.documents.get(identity)

    async def write(self, identity: str, text: str) -> None:
        self.documents[identity] = text
        self.writes.append((identity, text))


class FileStorage(DocumentStorage):
    """Documents as UTF-8 files. Identities are paths relative to `root`."""

    def __init__(self, root: str | Path | None = None) -> None:
        self.root = Path(root) if root is not None else None

    def path_for(self, identity: str) -> Path:
        path = Path(identity)
        return path if self.root is None or path.is_absolute() else self.root / path

    async def read(self, identity: str) -> str | None:
        path = self.path_for(identity)
        return await asyncio.to_thread(_read_text, path)

    async def write(self, identity: str, text: str) -> None:
        path = self.path_for(identity)
        await asyncio.to_thread(_write_text, path, text)


# ---------------------------------------------------------------------------
# Backups
# ---------------------------------------------------------------------------


class BackupStore:
    """One-shot backup of a document's text taken before it is first mutated."""

    async def ensure_initial_backup(self, identity: str, text: str) -> bool:
        """Store `text` unless a backup already exists. Returns True when one was written."""
        raise NotImplementedError


class MemoryBackupStore(BackupStore):
    def __init__(self) -> None:
        self.backups: dict[str, str] = {}

    async def ensure_initial_backup(self, identity: str, text: str) -> bool:
        if identity in self.backups:
            return False
        self.backups[identity] = text
        return True


class FileBackupStore(BackupStore):
    """Backups as files under `root`, one per document identity."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def path_for(self, identity: str) -> Path:
        stem = re.sub(r"[^\w.-]+", "_", Path(identity).stem).strip("_") or "document"
        digest = hashlib.sha1(identity.encode("utf-8")).hexdigest()[:8]
        return self.root / f"{stem}-{digest}.md"

    async def ensure_initial_backup(self, identity: str, text: str) -> bool:
        path = self.path_for(identity)
        return await asyncio.to_thread(_write_if_absent, path, text)


# ---------------------------------------------------------------------------
# Internal helpers (run in worker threads)
# ---------------------------------------------------------------------------


def _read_text(path: Path) -> str | None:
    if not path.exists():
        return None
    return path.read_text(encoding="utf-8")


def _write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def _write_if_absent(path: Path, text: str) -> bool:
    if path.exists():
        return False
    _write_text(path, text)
    logger.info("storage: initial backup written to %s", path)
    return True
