"""
Offline Location Queue

Bounded ring buffer of sent location updates, tagged synced=False until a
replay through the realtime channel succeeds. Optionally persisted to a JSON
file so unsent updates survive a restart.
"""

import asyncio
import json
import logging
from collections import deque
from pathlib import Path
from typing import Awaitable, Callable, Deque, List, Optional

from pydantic import ValidationError

from trackpro.schemas.tracking import LocationUpdate, OfflineQueueEntry

logger = logging.getLogger(__name__)


class OfflineLocationQueue:
    """
    Capture-ordered buffer shared by the live-send path and the replay path.

    append() never awaits, so entries keep capture order. replay() holds a
    lock for its whole pass so no entry is sent or marked twice.
    """

    def __init__(self, capacity: int = 100, path: Optional[str] = None):
        self.capacity = capacity
        self.path = Path(path) if path else None
        self._entries: Deque[OfflineQueueEntry] = deque(maxlen=capacity)
        self._replay_lock = asyncio.Lock()
        self._load()

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> List[OfflineQueueEntry]:
        return list(self._entries)

    @property
    def unsynced_count(self) -> int:
        return sum(1 for entry in self._entries if not entry.synced)

    def append(self, update: LocationUpdate) -> OfflineQueueEntry:
        """Store an update as unsynced; the oldest entry drops when full."""
        entry = OfflineQueueEntry(update=update, synced=False)
        if len(self._entries) == self.capacity:
            dropped = self._entries[0]
            if not dropped.synced:
                logger.warning(
                    f"Offline queue full, dropping unsynced update for job "
                    f"{dropped.update.job_id} captured at {dropped.update.captured_at}"
                )
        self._entries.append(entry)
        self._save()
        return entry

    def unsynced(self) -> List[OfflineQueueEntry]:
        return [entry for entry in self._entries if not entry.synced]

    async def replay(self, send: Callable[[LocationUpdate], Awaitable[bool]]) -> int:
        """
        Send unsynced entries in capture order, marking each synced on success.

        Stops at the first failure so later entries are not delivered ahead of
        earlier ones. Returns the number of entries synced.
        """
        async with self._replay_lock:
            pending = self.unsynced()
            if not pending:
                return 0

            logger.info(f"Syncing {len(pending)} offline locations")
            synced = 0
            try:
                for entry in pending:
                    if entry.synced:
                        continue
                    if not await send(entry.update):
                        break
                    entry.synced = True
                    synced += 1
            finally:
                if synced:
                    self._save()
            return synced

    def clear(self) -> None:
        self._entries.clear()
        self._save()

    def _load(self) -> None:
        if not self.path or not self.path.exists():
            return
        try:
            raw = json.loads(self.path.read_text())
            for item in raw[-self.capacity:]:
                self._entries.append(OfflineQueueEntry.model_validate(item))
            logger.info(f"Loaded {len(self._entries)} offline locations from {self.path}")
        except (OSError, ValueError, ValidationError) as e:
            logger.warning(f"Failed to load offline locations: {e}")

    def _save(self) -> None:
        if not self.path:
            return
        try:
            payload = [entry.model_dump(by_alias=True, mode="json") for entry in self._entries]
            self.path.write_text(json.dumps(payload))
        except OSError as e:
            logger.warning(f"Failed to store offline locations: {e}")
