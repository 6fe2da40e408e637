"""
Tilesheet Kernel — Persistence

Debounced saves of the row store back to document storage. Edits call
schedule_save(); only the last call inside the debounce window writes.
`save()` is the direct path and re-raises storage failures; the background
save logs them instead.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from tilesheet.kernel.storage import DocumentStorage

logger = logging.getLogger(__name__)

DEFAULT_SAVE_DEBOUNCE_MS = 500


class PersistenceService:
    def __init__(
        self,
        storage: DocumentStorage,
        render_text: Callable[[], str],
        debounce_ms: int = DEFAULT_SAVE_DEBOUNCE_MS,
    ) -> None:
        self.storage = storage
        self.render_text = render_text
        self.debounce_ms = debounce_ms
        self.identity: str | None = None
        self.save_count = 0
        self._timer: asyncio.Task | None = None

    def bind(self, identity: str | None) -> None:
        """Point at a (new) document. Any pending save for the old one is dropped."""
        self.cancel_scheduled_save()
        self.identity = identity

    @property
    def has_pending_save(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def schedule_save(self) -> None:
        """Restart the debounce window. Must be called from the event loop."""
        self.cancel_scheduled_save()
        self._timer = asyncio.get_running_loop().create_task(self._delayed_save())

    def cancel_scheduled_save(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    async def save(self) -> None:
        if self.identity is None:
            return
        identity = self.identity
        text = self.render_text()
        try:
            await self.storage.write(identity, text)
        except Exception as e:
            logger.warning("persistence: save of %s failed: %s", identity, e)
            raise
        self.save_count += 1
        logger.debug("persistence: saved %s (%s chars)", identity, len(text))

    async def flush(self) -> None:
        """Write now if a save is pending."""
        if not self.has_pending_save:
            return
        self.cancel_scheduled_save()
        await self.save()

    async def _delayed_save(self) -> None:
        await asyncio.sleep(self.debounce_ms / 1000)
        self._timer = None
        try:
            await self.save()
        except Exception:
            # already logged by save()
            pass
