"""End-to-end helpers: files on disk → measured rooms and buildings as JSON."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Sequence

from pydantic import BaseModel, ConfigDict

from packages.core.cloud import ClusteringKind, FilterKind, PointCloudProcessingResult
from packages.core.types import (
    ArchitecturalParameters,
    BuildingParametrics,
    ExtractionFailure,
    GeometricAnalysisResult,
    MeshQuality,
    ValidationReport,
)
from packages.pipeline.loader import load_point_cloud, load_room_snapshot
from packages.pipeline.orchestrator import MeasurementOrchestrator, RoomScanData
from packages.pointcloud.processor import DEFAULT_FILTERS

logger = logging.getLogger(__name__)


class RoomResult(BaseModel):
    """Everything known about one room after extraction."""

    model_config = ConfigDict(frozen=True)

    room_id: str
    parameters: ArchitecturalParameters
    validation: Optional[ValidationReport] = None
    failure: Optional[ExtractionFailure] = None


class CloudSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    room_id: str
    point_count: int
    cluster_count: int
    noise_count: int
    analysis: GeometricAnalysisResult
    mesh_quality: Optional[MeshQuality] = None
    mesh_vertices: int = 0
    mesh_triangles: int = 0


def process_room(
    snapshot_path: str | Path,
    cloud_path: str | Path | None = None,
    *,
    orchestrator: Optional[MeasurementOrchestrator] = None,
) -> RoomResult:
    """Load a snapshot (and optional cloud) and extract the room.

    PLY ``surface_index`` values index into the snapshot's surface list.
    """
    orchestrator = orchestrator or MeasurementOrchestrator()
    snapshot = load_room_snapshot(snapshot_path)
    cloud = None
    if cloud_path is not None:
        cloud = load_point_cloud(cloud_path, [s.identifier for s in snapshot.surfaces])

    params = orchestrator.extract_parametric_data(snapshot, cloud)
    room_id = snapshot.identifier
    failure = orchestrator.get_failure(room_id)
    return RoomResult(
        room_id=room_id,
        parameters=params,
        validation=None if failure else orchestrator.get_validation_report(room_id),
        failure=failure,
    )


def process_room_to_json(
    snapshot_path: str | Path,
    output_path: str | Path | None = None,
    cloud_path: str | Path | None = None,
    **kwargs,
) -> str:
    """Run :func:`process_room` and write the result to a JSON file.

    Returns the JSON string.
    """
    result = process_room(snapshot_path, cloud_path, **kwargs)
    json_str = result.model_dump_json(indent=2)

    if output_path is None:
        output_path = Path(snapshot_path).with_suffix(".parametric.json")
    Path(output_path).write_text(json_str)
    logger.info("Wrote room parametrics → %s", output_path)
    return json_str


def process_building(
    snapshot_paths: Sequence[str | Path],
    *,
    max_workers: int = 1,
    orchestrator: Optional[MeasurementOrchestrator] = None,
) -> BuildingParametrics:
    """Extract every snapshot file, in order, and aggregate.  Missing files are skipped."""
    orchestrator = orchestrator or MeasurementOrchestrator()
    rooms = []
    for path in snapshot_paths:
        path = Path(path)
        if path.exists():
            rooms.append(RoomScanData(snapshot=load_room_snapshot(path)))
        else:
            logger.warning("Snapshot %s not found", path)
            rooms.append(RoomScanData(room_id=path.stem))
    return orchestrator.extract_building_parametrics(rooms, max_workers=max_workers)


def process_cloud(
    cloud_path: str | Path,
    *,
    room_id: Optional[str] = None,
    filters: Sequence[FilterKind] = DEFAULT_FILTERS,
    clustering: ClusteringKind = ClusteringKind.DBSCAN,
    with_mesh: bool = True,
    orchestrator: Optional[MeasurementOrchestrator] = None,
) -> CloudSummary:
    """Run the point-cloud branch on one file and summarise it."""
    orchestrator = orchestrator or MeasurementOrchestrator()
    cloud_path = Path(cloud_path)
    room_id = room_id or cloud_path.stem
    buffer = load_point_cloud(cloud_path)
    result = orchestrator.process_point_cloud(room_id, buffer, filters, clustering, with_mesh)
    return summarize_cloud(result)


def summarize_cloud(result: PointCloudProcessingResult) -> CloudSummary:
    mesh = result.mesh
    return CloudSummary(
        room_id=result.room_id,
        point_count=result.clustered.buffer.count,
        cluster_count=len(result.clustered.clusters),
        noise_count=result.clustered.noise_count,
        analysis=result.analysis,
        mesh_quality=mesh.quality if mesh else None,
        mesh_vertices=len(mesh.vertices) if mesh else 0,
        mesh_triangles=mesh.triangle_count if mesh else 0,
    )
