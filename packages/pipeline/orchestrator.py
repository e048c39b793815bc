"""MeasurementOrchestrator: per-room and per-building extraction.

Room extraction walks ``analyzing_walls → detecting_openings →
computing_metrics → assembling → validating → done`` and commits the
parameters and report together before reporting 100%.  If anything raises,
the failure is logged and recorded, the previous result for the room stays
in the store and the caller gets ``ArchitecturalParameters.empty()``.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

import numpy as np

from packages.analysis.geometric import GeometricAnalyzer
from packages.compute.resources import ResourceOptimizer
from packages.core.cloud import ClusteringKind, FilterKind, PointCloudBuffer, PointCloudProcessingResult
from packages.core.config import MeasurementConfiguration, MeshConfig, PointCloudConfig, ResourceConfig
from packages.core.errors import InsufficientData, InvalidConfidence
from packages.core.types import (
    ArchitecturalParameters,
    BuildingParametrics,
    ExtractionFailure,
    ProcessingStage,
    RoomSnapshot,
    ValidationIssue,
    ValidationIssueType,
    ValidationReport,
    ValidationSeverity,
)
from packages.measurement.openings import OpeningDetector
from packages.measurement.parametric import build_architectural_parameters, build_building_parametrics
from packages.measurement.surfaces import SurfaceMeasurementExtractor
from packages.measurement.validation import ValidationEngine
from packages.measurement.volumetric import VolumetricCalculator
from packages.mesh.reconstruct import MeshReconstructor
from packages.pipeline.progress import ProgressSnapshot, ProgressTracker
from packages.pipeline.store import ResultStore
from packages.pointcloud.processor import DEFAULT_FILTERS, PointCloudProcessor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoomScanData:
    """One room of a building request.  ``snapshot`` None means no source data."""

    room_id: Optional[str] = None
    snapshot: Optional[RoomSnapshot] = None
    point_cloud: Optional[PointCloudBuffer] = None

    @property
    def key(self) -> Optional[str]:
        """``room_id``, else the snapshot id, else None."""
        if self.room_id is not None:
            return self.room_id
        if self.snapshot is not None:
            return self.snapshot.identifier
        return None


def _failure_issue(exc: Exception) -> ValidationIssue:
    if isinstance(exc, InvalidConfidence):
        return ValidationIssue(
            type=ValidationIssueType.LOW_CONFIDENCE,
            severity=ValidationSeverity.CRITICAL,
            description=str(exc),
            affected_element=exc.element,
            suggested_fix="Rescan the affected surface",
        )
    if isinstance(exc, InsufficientData):
        return ValidationIssue(
            type=ValidationIssueType.MISSING_DATA,
            severity=ValidationSeverity.CRITICAL,
            description=str(exc),
            suggested_fix="Rescan the room",
        )
    return ValidationIssue(
        type=ValidationIssueType.GEOMETRIC_ERROR,
        severity=ValidationSeverity.CRITICAL,
        description=f"{type(exc).__name__}: {exc}",
    )


class MeasurementOrchestrator:
    def __init__(
        self,
        config: Optional[MeasurementConfiguration] = None,
        point_cloud_config: Optional[PointCloudConfig] = None,
        mesh_config: Optional[MeshConfig] = None,
        resource_config: Optional[ResourceConfig] = None,
        optimizer: Optional[ResourceOptimizer] = None,
        detector: Optional[OpeningDetector] = None,
    ):
        self.config = config or MeasurementConfiguration()
        self.optimizer = optimizer or ResourceOptimizer(resource_config)
        self.extractor = SurfaceMeasurementExtractor(detector)
        self.volumes = VolumetricCalculator()
        self.validator = ValidationEngine(self.config)
        self.processor = PointCloudProcessor(self.optimizer, point_cloud_config)
        self.analyzer = GeometricAnalyzer(self.optimizer)
        self.reconstructor = MeshReconstructor(self.optimizer, mesh_config)
        self.store = ResultStore()
        self.tracker = ProgressTracker()

    # ── room ─────────────────────────────────────────────────────
    def extract_parametric_data(
        self,
        snapshot: RoomSnapshot,
        point_cloud: Optional[PointCloudBuffer] = None,
        room_id: Optional[str] = None,
    ) -> ArchitecturalParameters:
        """Measure one room and cache the result under ``room_id`` (default: snapshot id).

        Point evidence for opening detection is taken from ``point_cloud``,
        split per wall by source id.
        """
        params = self._run_room(room_id or snapshot.identifier, snapshot, point_cloud)
        return params if params is not None else ArchitecturalParameters.empty()

    def _run_room(
        self, room_id: str, snapshot: RoomSnapshot, point_cloud: Optional[PointCloudBuffer]
    ) -> Optional[ArchitecturalParameters]:
        self.tracker.begin_room(room_id)
        logger.info(f"🏠 Extracting room {room_id} ({len(snapshot.surfaces)} surfaces)")
        try:
            params, report = self._extract(room_id, snapshot, point_cloud)
        except Exception as exc:
            logger.exception("Extraction failed for room %s", room_id)
            self.store.record_failure(
                ExtractionFailure(
                    room_id=room_id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                    issues=(_failure_issue(exc),),
                )
            )
            self.tracker.fail_room(room_id)
            return None

        self.store.commit(room_id, params, report)
        self.tracker.complete_room(room_id)
        logger.info(
            f"✅ Room {room_id}: {params.floor_area:.2f} m², {params.volume:.2f} m³, "
            f"{len(params.walls)} walls, {len(params.openings)} openings"
        )
        return params

    def _extract(
        self, room_id: str, snapshot: RoomSnapshot, point_cloud: Optional[PointCloudBuffer]
    ) -> tuple[ArchitecturalParameters, ValidationReport]:
        surfaces = list(snapshot.surfaces)
        walls = snapshot.walls
        evidence: dict[str, np.ndarray] = {}
        if point_cloud is not None:
            evidence = {w.identifier: point_cloud.points_for(w.identifier) for w in walls}

        self.tracker.advance(room_id, ProcessingStage.ANALYZING_WALLS)
        self.optimizer.optimize_if_needed()
        measured = self.extractor.measure_walls(surfaces, evidence)

        self.tracker.advance(room_id, ProcessingStage.DETECTING_OPENINGS)
        measured = self.extractor.attach_openings(measured, surfaces, evidence)

        self.tracker.advance(room_id, ProcessingStage.COMPUTING_METRICS)
        floor_area = self.volumes.floor_area(surfaces)
        ceiling_height = self.volumes.average_ceiling_height(surfaces)
        room_bounds = self.volumes.room_bounds(surfaces)

        self.tracker.advance(room_id, ProcessingStage.ASSEMBLING)
        params = build_architectural_parameters(
            walls=measured,
            floor_area=floor_area,
            ceiling_height=ceiling_height,
            volume=floor_area * ceiling_height,
            room_bounds=room_bounds,
        )

        self.tracker.advance(room_id, ProcessingStage.VALIDATING)
        report = self.validator.validate(params)
        return params, report

    # ── building ─────────────────────────────────────────────────
    def extract_building_parametrics(
        self, rooms: Sequence[RoomScanData], max_workers: int = 1
    ) -> BuildingParametrics:
        """Extract every room and aggregate.

        ``rooms`` order is kept in the result whatever order rooms finish in.
        Rooms without a snapshot, and rooms whose extraction failed, are left
        out of the totals and listed in ``skipped_room_ids``.  A room with
        neither id nor snapshot is listed as ``room-<index>``.
        """
        keys = [room.key or f"room-{index}" for index, room in enumerate(rooms)]
        self.tracker.begin_building(len(rooms))

        def run(key: str, room: RoomScanData) -> Optional[ArchitecturalParameters]:
            if room.snapshot is None:
                logger.warning("Room %s has no scan data, skipping", key)
                self.tracker.skip_room(key)
                return None
            return self._run_room(key, room.snapshot, room.point_cloud)

        try:
            if max_workers > 1:
                with ThreadPoolExecutor(max_workers=max_workers) as pool:
                    results = list(pool.map(run, keys, rooms))
            else:
                results = [run(key, room) for key, room in zip(keys, rooms)]
        finally:
            self.tracker.end_building()

        kept = [params for params in results if params is not None]
        skipped = [key for key, params in zip(keys, results) if params is None]
        building = build_building_parametrics(kept, skipped)
        logger.info(
            f"🏢 Building: {len(kept)} rooms, {building.total_floor_area:.2f} m², "
            f"{building.total_volume:.2f} m³, {len(skipped)} skipped"
        )
        return building

    # ── point-cloud branch ───────────────────────────────────────
    def process_point_cloud(
        self,
        room_id: str,
        buffer: PointCloudBuffer,
        filters: Sequence[FilterKind] = DEFAULT_FILTERS,
        clustering: ClusteringKind = ClusteringKind.DBSCAN,
        with_mesh: bool = True,
    ) -> PointCloudProcessingResult:
        """Filter, cluster, then analyse and mesh in parallel."""
        clustered = self.processor.process(buffer, filters, clustering)
        with ThreadPoolExecutor(max_workers=2) as pool:
            analysis = pool.submit(self.analyzer.analyze, clustered)
            mesh = pool.submit(self.reconstructor.generate_mesh, clustered) if with_mesh else None
            result = PointCloudProcessingResult(
                room_id=room_id,
                clustered=clustered,
                analysis=analysis.result(),
                mesh=mesh.result() if mesh is not None else None,
            )
        self.store.commit_point_cloud(result)
        return result

    # ── lookups ──────────────────────────────────────────────────
    def get_measurement_results(self, room_id: str) -> Optional[ArchitecturalParameters]:
        return self.store.parameters(room_id)

    def get_validation_report(self, room_id: str) -> Optional[ValidationReport]:
        return self.store.report(room_id)

    def get_failure(self, room_id: str) -> Optional[ExtractionFailure]:
        return self.store.failure(room_id)

    def get_point_cloud_result(self, room_id: str) -> Optional[PointCloudProcessingResult]:
        return self.store.point_cloud(room_id)

    @property
    def progress(self) -> ProgressSnapshot:
        return self.tracker.snapshot

    def subscribe(self, callback: Callable[[ProgressSnapshot], None]) -> Callable[[], None]:
        return self.tracker.subscribe(callback)
