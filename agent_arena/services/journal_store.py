"""Durable, bounded journal of agent activity.

Entries are held in memory per agent and written to a single JSON array on
disk. Writes are coalesced: ``add_entry`` only marks the store dirty and the
``journal_flush`` scheduler job drains it on a fixed tick.
"""

import asyncio
import json
import logging
import os
import threading
import time
from collections import defaultdict, deque
from pathlib import Path

from pydantic import ValidationError

from agent_arena.models.journal import EntryType, JournalEntry

logger = logging.getLogger(__name__)


class JournalStore:
    def __init__(self, path: Path | str, max_entries_per_agent: int = 100, max_persisted: int = 500):
        self.path = Path(path)
        self.max_entries_per_agent = max_entries_per_agent
        self.max_persisted = max_persisted
        self._entries: dict[int, deque[JournalEntry]] = defaultdict(
            lambda: deque(maxlen=self.max_entries_per_agent)
        )
        self._dirty = False
        self._write_lock = threading.Lock()
        self._load()

    @property
    def dirty(self) -> bool:
        return self._dirty

    def _load(self):
        if not self.path.exists():
            logger.info(f"No journal file at {self.path}, starting empty")
            return
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(raw, list):
                raise ValueError("journal file is not a JSON array")
            entries = [JournalEntry.model_validate(item) for item in raw]
        except (OSError, ValueError, ValidationError) as e:
            logger.error(f"Failed to load journal from {self.path}: {e}; starting empty")
            return

        # the file is written in timestamp order; append keeps that order per agent
        for entry in entries:
            self._entries[entry.agent_id].append(entry)
        logger.info(f"Loaded {len(entries)} journal entries for {len(self._entries)} agents")

    def add_entry(self, agent_id: int, type: EntryType | str, **fields) -> JournalEntry:
        """Append an entry stamped with the current time; the oldest is evicted past the cap."""
        entry = JournalEntry(
            timestamp=int(time.time() * 1000),
            agent_id=agent_id,
            type=EntryType(type),
            **fields,
        )
        self._entries[agent_id].append(entry)
        self._dirty = True
        return entry

    def get_entries(self, agent_id: int, limit: int | None = None) -> list[JournalEntry]:
        entries = list(self._entries.get(agent_id, ()))
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    def get_all_entries(self) -> list[JournalEntry]:
        """All entries across agents, oldest first (stable for equal timestamps)."""
        flat = [entry for agent_id in sorted(self._entries) for entry in self._entries[agent_id]]
        return sorted(flat, key=lambda e: e.timestamp)

    def clear_entries(self, agent_id: int | None = None):
        if agent_id is None:
            self._entries.clear()
        else:
            self._entries.pop(agent_id, None)
        self._dirty = True
        logger.info(f"Journal cleared{f' for agent {agent_id}' if agent_id is not None else ''}")

    def _snapshot(self) -> list[dict]:
        return [entry.to_record() for entry in self.get_all_entries()[-self.max_persisted:]]

    def _write(self, records: list[dict]):
        with self._write_lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(records, f, indent=2)
            os.replace(tmp_path, self.path)

    def flush(self) -> bool:
        """Write the journal if anything changed since the last flush."""
        if not self._dirty:
            return False
        self._dirty = False
        records = self._snapshot()
        try:
            self._write(records)
        except OSError:
            self._dirty = True
            raise
        logger.debug(f"Journal flushed: {len(records)} entries")
        return True

    async def flush_async(self) -> bool:
        """Snapshot on the event loop, write in a worker thread."""
        if not self._dirty:
            return False
        self._dirty = False
        records = self._snapshot()
        try:
            await asyncio.to_thread(self._write, records)
        except OSError as e:
            self._dirty = True
            logger.error(f"Journal flush to {self.path} failed: {e}")
            return False
        return True
