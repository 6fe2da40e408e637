"""
Tilesheet Kernel — Conversion Session Guard

Opening a plain document as a table may rewrite it into the block format.
The guard remembers the pre-conversion text (the baseline) so the rewrite
can be reverted silently if the user never touched the table:

    prepare(identity)             new open → fresh session
    capture_baseline(text)        remember the text once per identity
    mark_user_mutation(reason)    sticky; backs the baseline up, then drops it
    restore_baseline_if_eligible  untouched → write the baseline back

A mutation makes the conversion the user's own: from then on nothing is
restored. Storage failures are logged, never raised.
"""

from __future__ import annotations

import logging
from typing import Callable

from tilesheet.kernel.storage import BackupStore, DocumentStorage

logger = logging.getLogger(__name__)


class ConversionSessionGuard:
    def __init__(
        self,
        storage: DocumentStorage,
        backups: BackupStore,
        cancel_scheduled_save: Callable[[], None] | None = None,
    ) -> None:
        self.storage = storage
        self.backups = backups
        self.cancel_scheduled_save = cancel_scheduled_save
        self.identity: str | None = None
        self.baseline: str | None = None
        self.user_mutated = False
        self.baseline_persisted = False

    def prepare(self, identity: str | None) -> None:
        if identity != self.identity:
            self.baseline = None
            self.baseline_persisted = False
            self.identity = identity
        self.user_mutated = False

    def capture_baseline(self, raw_text: str) -> None:
        if self.identity is None or self.baseline is not None:
            return
        self.baseline = raw_text
        self.user_mutated = False
        self.baseline_persisted = False

    async def mark_user_mutation(self, reason: str) -> None:
        if self.user_mutated:
            return
        self.user_mutated = True
        logger.debug("conversion: first user mutation (%s) on %s", reason, self.identity)

        if self.baseline is None or self.identity is None or self.baseline_persisted:
            return
        # TODO: keep the baseline when the backup fails so a later mutation can retry it
        try:
            await self.backups.ensure_initial_backup(self.identity, self.baseline)
            self.baseline_persisted = True
        except Exception as e:
            logger.warning("conversion: backup of %s failed: %s", self.identity, e)
        finally:
            self.baseline = None

    async def restore_baseline_if_eligible(self, identity: str | None = None) -> bool:
        """Write the baseline back when nothing was mutated. True when a write happened."""
        if self.baseline is None or self.user_mutated or self.identity is None:
            return False
        if identity is not None and identity != self.identity:
            return False

        target, baseline = self.identity, self.baseline
        try:
            if self.cancel_scheduled_save is not None:
                self.cancel_scheduled_save()
            try:
                current = await self.storage.read(target)
            except Exception as e:
                logger.warning("conversion: could not read %s before restore: %s", target, e)
                current = None
            if current == baseline:
                return False
            try:
                await self.storage.write(target, baseline)
            except Exception as e:
                logger.warning("conversion: restore of %s failed: %s", target, e)
                return False
            logger.info("conversion: restored untouched baseline of %s", target)
            return True
        finally:
            self.baseline = None
            self.baseline_persisted = False
