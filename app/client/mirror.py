"""
Local Block Mirror

Degraded fallback for the table-block signal when the live channel is
down. Every block/release is also written to a small JSON file shared by
the screens on one machine; a poller diffs the file every couple of
seconds and emits the same table_blocked/table_released events the live
channel would have delivered.

Acceptable only because blocks are advisory. Nothing server-side reads
the mirror.

File format:
    {"3": {"table_label": "A3", "blocked_at": 1760000000000}, ...}
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Callable, Optional, Union

from filelock import FileLock

from app.core.config import get_settings
from app.services.events.messages import (
    TableBlockedEvent,
    TableReleasedEvent,
    now_ms,
)

logger = logging.getLogger(__name__)
settings = get_settings()

MirrorEvent = Union[TableBlockedEvent, TableReleasedEvent]


class LocalBlockMirror:
    """Lock-guarded JSON map of table number -> block entry."""

    LOCK_TIMEOUT = 5

    def __init__(self, path: Union[str, Path, None] = None):
        self.path = Path(path or settings.block_mirror_path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.lock = FileLock(str(self.path) + ".lock", timeout=self.LOCK_TIMEOUT)

    def _load(self) -> dict[str, dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except ValueError:
            logger.warning(f"Corrupt block mirror at {self.path}, starting empty")
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: dict[str, dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data), encoding="utf-8")

    def block(self, table_id: int, table_label: str = "") -> None:
        with self.lock:
            data = self._load()
            data[str(int(table_id))] = {"table_label": table_label, "blocked_at": now_ms()}
            self._save(data)

    def release(self, table_id: int) -> None:
        with self.lock:
            data = self._load()
            if data.pop(str(int(table_id)), None) is not None:
                self._save(data)

    def read(self) -> dict[int, dict[str, Any]]:
        with self.lock:
            data = self._load()
        blocks = {}
        for key, entry in data.items():
            try:
                blocks[int(key)] = entry if isinstance(entry, dict) else {}
            except ValueError:
                continue
        return blocks

    def clear(self) -> None:
        with self.lock:
            self._save({})


class BlockMirrorPoller:
    """
    Poll a LocalBlockMirror and report changes as events.

    The first poll reports every existing block. A block whose timestamp
    changed (refreshed by another session) is reported again.
    """

    def __init__(
        self,
        mirror: LocalBlockMirror,
        on_change: Callable[[MirrorEvent], Any],
        interval: Optional[float] = None,
    ):
        self.mirror = mirror
        self.on_change = on_change
        self.interval = interval if interval is not None else settings.block_mirror_poll_seconds
        self._seen: dict[int, dict[str, Any]] = {}
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def poll_once(self) -> list[MirrorEvent]:
        current = self.mirror.read()
        events: list[MirrorEvent] = []

        for table_id, entry in sorted(current.items()):
            if self._seen.get(table_id) != entry:
                events.append(TableBlockedEvent(
                    table_id=table_id,
                    table_label=str(entry.get("table_label", "")),
                ))
        for table_id in sorted(set(self._seen) - set(current)):
            events.append(TableReleasedEvent(
                table_id=table_id,
                table_label=str(self._seen[table_id].get("table_label", "")),
            ))

        self._seen = current
        for event in events:
            try:
                self.on_change(event)
            except Exception:
                logger.exception(f"Mirror listener failed on {event.type}")
        return events

    async def _run(self) -> None:
        while True:
            try:
                self.poll_once()
            except Exception as e:
                logger.error(f"Block mirror poll failed: {e}")
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if not self.running:
            self._task = asyncio.get_running_loop().create_task(self._run())
            logger.info(f"Block mirror polling {self.mirror.path} every {self.interval}s")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None


class MirroredBlocker:
    """
    Block/release through the coordinator and record each call in the
    local mirror, so screens without a live channel still converge.

    The mirror is written first; a coordinator failure still propagates
    to the caller. Mirror I/O failures are logged and never block the
    live path.
    """

    def __init__(self, coordinator: Any, mirror: Optional[LocalBlockMirror] = None):
        self.coordinator = coordinator
        self.mirror = mirror if mirror is not None else LocalBlockMirror()

    async def block(self, table_id: int, table_label: str = "") -> Any:
        try:
            self.mirror.block(table_id, table_label)
        except OSError as e:
            logger.warning(f"Could not mirror block of table {table_id}: {e}")
        return await self.coordinator.block(table_id, table_label)

    async def release(self, table_id: int, reason: str = "manual") -> Any:
        try:
            self.mirror.release(table_id)
        except OSError as e:
            logger.warning(f"Could not mirror release of table {table_id}: {e}")
        return await self.coordinator.release(table_id, reason=reason)
