"""Observable progress as an atomically swapped, immutable snapshot.

Writers go through :class:`ProgressTracker` methods, which serialize on one
lock, compute the next :class:`ProgressSnapshot` and publish it by
replacing a single reference.  Readers just read ``tracker.snapshot`` at
any time.  Subscribers receive every published snapshot in order.

Within one room extraction the published value never decreases.  During a
building run the value is (finished rooms + Σ in-flight room progress) /
room count, which is non-decreasing as well.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from packages.core.types import ProcessingStage

logger = logging.getLogger(__name__)

Subscriber = Callable[["ProgressSnapshot"], None]


@dataclass(frozen=True)
class ProgressSnapshot:
    progress: float = 0.0
    is_processing: bool = False
    stage: ProcessingStage = ProcessingStage.IDLE
    room_id: Optional[str] = None


class ProgressTracker:
    def __init__(self):
        self._lock = threading.RLock()
        self._snapshot = ProgressSnapshot()
        self._subscribers: list[Subscriber] = []
        self._rooms: dict[str, float] = {}
        self._building_total: Optional[int] = None
        self._building_done = 0

    @property
    def snapshot(self) -> ProgressSnapshot:
        return self._snapshot

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback``; returns a function that unregisters it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    # ── room scope ───────────────────────────────────────────────
    def begin_room(self, room_id: str) -> None:
        with self._lock:
            self._rooms[room_id] = 0.0
            self._publish(ProcessingStage.IDLE, room_id)

    def advance(self, room_id: str, stage: ProcessingStage) -> None:
        with self._lock:
            current = self._rooms.get(room_id, 0.0)
            self._rooms[room_id] = max(current, stage.progress)
            self._publish(stage, room_id)

    def complete_room(self, room_id: str) -> None:
        """Publish 100% for ``room_id``.  Call only after its result is committed."""
        self._finish(room_id, ProcessingStage.DONE)

    def fail_room(self, room_id: str) -> None:
        self._finish(room_id, ProcessingStage.FAILED)

    def _finish(self, room_id: str, stage: ProcessingStage) -> None:
        with self._lock:
            if self._building_total is not None:
                self._rooms.pop(room_id, None)
                self._building_done += 1
            elif stage == ProcessingStage.DONE:
                self._rooms[room_id] = 1.0
            self._publish(stage, room_id, finished=room_id)

    # ── building scope ───────────────────────────────────────────
    def begin_building(self, total_rooms: int) -> None:
        with self._lock:
            self._building_total = max(0, total_rooms)
            self._building_done = 0
            self._rooms.clear()
            self._snapshot = ProgressSnapshot()
            self._publish(ProcessingStage.IDLE, None)

    def skip_room(self, room_id: str) -> None:
        """Count a room with no source data as finished."""
        with self._lock:
            if self._building_total is not None:
                self._building_done += 1
            self._publish(self._snapshot.stage, room_id)

    def end_building(self) -> None:
        with self._lock:
            self._building_total = None
            self._rooms.clear()
            final = ProgressSnapshot(progress=1.0, is_processing=False, stage=ProcessingStage.DONE)
            self._swap(final)

    # ── publication ──────────────────────────────────────────────
    def _publish(self, stage: ProcessingStage, room_id: Optional[str], finished: Optional[str] = None) -> None:
        if self._building_total is not None:
            total = self._building_total
            value = 1.0 if total == 0 else (self._building_done + sum(self._rooms.values())) / total
            value = max(value, self._snapshot.progress)
            processing = True
        else:
            value = self._rooms.get(room_id, 0.0) if room_id is not None else 0.0
            if finished is not None:
                self._rooms.pop(finished, None)
            processing = bool(self._rooms)
        self._swap(ProgressSnapshot(progress=min(1.0, value), is_processing=processing, stage=stage, room_id=room_id))

    def _swap(self, snapshot: ProgressSnapshot) -> None:
        self._snapshot = snapshot
        for callback in list(self._subscribers):
            callback(snapshot)
