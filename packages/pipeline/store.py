"""Per-room results cache, scoped to one orchestrator.

Each room's parameters and report are committed together under one lock,
so a reader sees either the previous pair or the new pair, never a mix.
Reads take the same lock and are always safe.
"""

from __future__ import annotations

import threading
from typing import Optional

from packages.core.cloud import PointCloudProcessingResult
from packages.core.types import ArchitecturalParameters, ExtractionFailure, ValidationReport


class ResultStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._parameters: dict[str, ArchitecturalParameters] = {}
        self._reports: dict[str, ValidationReport] = {}
        self._failures: dict[str, ExtractionFailure] = {}
        self._point_clouds: dict[str, PointCloudProcessingResult] = {}

    def commit(self, room_id: str, parameters: ArchitecturalParameters, report: ValidationReport) -> None:
        """Replace the room's result as a whole and clear any recorded failure."""
        with self._lock:
            self._parameters[room_id] = parameters
            self._reports[room_id] = report
            self._failures.pop(room_id, None)

    def record_failure(self, failure: ExtractionFailure) -> None:
        """Remember why a room failed.  The last good result stays in place."""
        with self._lock:
            self._failures[failure.room_id] = failure

    def commit_point_cloud(self, result: PointCloudProcessingResult) -> None:
        with self._lock:
            self._point_clouds[result.room_id] = result

    def parameters(self, room_id: str) -> Optional[ArchitecturalParameters]:
        with self._lock:
            return self._parameters.get(room_id)

    def report(self, room_id: str) -> Optional[ValidationReport]:
        with self._lock:
            return self._reports.get(room_id)

    def failure(self, room_id: str) -> Optional[ExtractionFailure]:
        with self._lock:
            return self._failures.get(room_id)

    def point_cloud(self, room_id: str) -> Optional[PointCloudProcessingResult]:
        with self._lock:
            return self._point_clouds.get(room_id)
