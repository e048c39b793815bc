"""End-to-end tests for the measurement orchestrator, progress and the result store."""

from __future__ import annotations

import threading

import numpy as np
import pytest

from conftest import make_room, make_surface
from packages.compute.resources import ResourceOptimizer
from packages.core.cloud import ClusteringKind, PointCloudBuffer
from packages.core.types import (
    AccuracyLevel,
    ArchitecturalParameters,
    OpeningType,
    ProcessingStage,
    RoomBounds,
    RoomSnapshot,
    SurfaceKind,
    ValidationIssueType,
    ValidationSeverity,
)
from packages.pipeline.orchestrator import MeasurementOrchestrator, RoomScanData
from packages.pipeline.progress import ProgressTracker


@pytest.fixture()
def orchestrator(cpu_optimizer: ResourceOptimizer) -> MeasurementOrchestrator:
    return MeasurementOrchestrator(optimizer=cpu_optimizer)


def _bad_room(identifier: str = "bad") -> RoomSnapshot:
    room = make_room(4.0, 3.0)
    broken = make_surface(SurfaceKind.WALL, 4.0, 2.5, 0.1, confidence=0.0, identifier="zero-confidence")
    return RoomSnapshot(identifier=identifier, surfaces=room.surfaces + (broken,))


class TestRoomExtraction:
    def test_simple_room(self, orchestrator: MeasurementOrchestrator, simple_room: RoomSnapshot):
        params = orchestrator.extract_parametric_data(simple_room)
        assert params.floor_area == pytest.approx(12.0)
        assert params.ceiling_height == pytest.approx(2.5)
        assert params.volume == pytest.approx(30.0)
        assert len(params.walls) == 4
        assert params.openings == ()

        report = orchestrator.get_validation_report(simple_room.identifier)
        assert report.is_valid
        assert report.accuracy_level == AccuracyLevel.GOOD
        assert orchestrator.get_measurement_results(simple_room.identifier) == params
        assert orchestrator.get_failure(simple_room.identifier) is None

    def test_floor_only_room(self, orchestrator: MeasurementOrchestrator):
        room = RoomSnapshot(surfaces=(make_surface(SurfaceKind.FLOOR, 4.0, 0.0, 3.0),))
        params = orchestrator.extract_parametric_data(room)
        assert params.walls == ()
        assert params.ceiling_height == pytest.approx(2.5)
        assert params.volume == pytest.approx(30.0)
        assert params.room_bounds.is_empty()
        report = orchestrator.get_validation_report(room.identifier)
        assert any(i.type == ValidationIssueType.MISSING_DATA for i in report.issues)
        assert report.overall_accuracy == pytest.approx(0.05)

    def test_empty_room(self, orchestrator: MeasurementOrchestrator):
        params = orchestrator.extract_parametric_data(RoomSnapshot())
        assert params.floor_area == 0.0
        assert params.ceiling_height == 2.5
        assert params.volume == 0.0
        assert params.walls == ()
        assert params.room_bounds == RoomBounds.empty()

    def test_repeat_extraction_is_stable(self, orchestrator: MeasurementOrchestrator, simple_room: RoomSnapshot):
        first = orchestrator.extract_parametric_data(simple_room)
        second = orchestrator.extract_parametric_data(simple_room)
        assert second.floor_area == first.floor_area
        assert second.volume == first.volume
        assert second.room_bounds == first.room_bounds
        assert orchestrator.get_measurement_results(simple_room.identifier) == second

    def test_volume_scales_linearly(self, orchestrator: MeasurementOrchestrator):
        base = orchestrator.extract_parametric_data(make_room(4.0, 3.0, height=2.5))
        wider = orchestrator.extract_parametric_data(make_room(8.0, 3.0, height=2.5))
        taller = orchestrator.extract_parametric_data(make_room(4.0, 3.0, height=5.0))
        assert wider.floor_area == pytest.approx(2 * base.floor_area)
        assert wider.volume == pytest.approx(2 * base.volume)
        assert taller.floor_area == pytest.approx(base.floor_area)
        assert taller.volume == pytest.approx(2 * base.volume)

    def test_openings_from_point_evidence(self, orchestrator: MeasurementOrchestrator, door_wall):
        wall, points = door_wall
        room = RoomSnapshot(
            identifier="door-room",
            surfaces=(make_surface(SurfaceKind.FLOOR, 4.0, 0.0, 3.0, at=(0.0, -1.25, 0.0)), wall),
        )
        cloud = PointCloudBuffer.from_positions(points, source_id=wall.identifier)
        params = orchestrator.extract_parametric_data(room, point_cloud=cloud)
        assert [o.type for o in params.openings] == [OpeningType.DOOR]
        assert params.walls[0].openings == params.openings

    def test_room_id_override(self, orchestrator: MeasurementOrchestrator, simple_room: RoomSnapshot):
        orchestrator.extract_parametric_data(simple_room, room_id="kitchen")
        assert orchestrator.get_measurement_results("kitchen") is not None
        assert orchestrator.get_measurement_results(simple_room.identifier) is None

    def test_unknown_room(self, orchestrator: MeasurementOrchestrator):
        assert orchestrator.get_measurement_results("nope") is None
        assert orchestrator.get_validation_report("nope") is None


class TestFailure:
    def test_failure_returns_sentinel(self, orchestrator: MeasurementOrchestrator):
        params = orchestrator.extract_parametric_data(_bad_room())
        assert params.walls == ArchitecturalParameters.empty().walls
        assert params.floor_area == 0.0
        assert orchestrator.get_measurement_results("bad") is None

        failure = orchestrator.get_failure("bad")
        assert failure.message == "No reliable measurement available for this room"
        assert failure.error_type == "InvalidConfidence"
        [issue] = failure.issues
        assert issue.type == ValidationIssueType.LOW_CONFIDENCE
        assert issue.severity == ValidationSeverity.CRITICAL
        assert issue.affected_element == "zero-confidence"

    def test_previous_result_survives_failure(self, orchestrator: MeasurementOrchestrator):
        good = make_room(4.0, 3.0, identifier="living")
        first = orchestrator.extract_parametric_data(good)
        orchestrator.extract_parametric_data(_bad_room(), room_id="living")

        assert orchestrator.get_measurement_results("living") == first
        assert orchestrator.get_validation_report("living").is_valid
        assert orchestrator.get_failure("living") is not None

        orchestrator.extract_parametric_data(good)
        assert orchestrator.get_failure("living") is None

    def test_failed_progress(self, orchestrator: MeasurementOrchestrator):
        orchestrator.extract_parametric_data(_bad_room())
        snap = orchestrator.progress
        assert snap.stage == ProcessingStage.FAILED
        assert not snap.is_processing


class TestProgress:
    def test_room_progress_is_monotonic(self, orchestrator: MeasurementOrchestrator, simple_room: RoomSnapshot):
        seen = []
        committed_at_done = []

        def on_progress(snap):
            seen.append(snap)
            if snap.stage == ProcessingStage.DONE:
                committed_at_done.append(orchestrator.get_measurement_results(simple_room.identifier))

        unsubscribe = orchestrator.subscribe(on_progress)
        orchestrator.extract_parametric_data(simple_room)
        unsubscribe()

        values = [s.progress for s in seen]
        assert values == sorted(values)
        assert values.count(1.0) == 1
        assert seen[-1].stage == ProcessingStage.DONE
        assert not seen[-1].is_processing
        assert committed_at_done and committed_at_done[0] is not None
        stages = [s.stage for s in seen]
        assert stages.index(ProcessingStage.ANALYZING_WALLS) < stages.index(ProcessingStage.VALIDATING)

    def test_unsubscribe(self, orchestrator: MeasurementOrchestrator, simple_room: RoomSnapshot):
        seen = []
        orchestrator.subscribe(seen.append)()
        orchestrator.extract_parametric_data(simple_room)
        assert seen == []

    def test_tracker_never_goes_backwards(self):
        tracker = ProgressTracker()
        tracker.begin_room("r")
        tracker.advance("r", ProcessingStage.COMPUTING_METRICS)
        tracker.advance("r", ProcessingStage.ANALYZING_WALLS)
        assert tracker.snapshot.progress == pytest.approx(0.7)
        assert tracker.snapshot.is_processing


class TestBuilding:
    def test_totals(self, orchestrator: MeasurementOrchestrator):
        rooms = [
            RoomScanData(snapshot=make_room(4.0, 2.5, identifier="a")),
            RoomScanData(snapshot=make_room(5.0, 3.0, identifier="b")),
        ]
        building = orchestrator.extract_building_parametrics(rooms)
        assert building.total_floor_area == pytest.approx(25.0)
        assert building.total_volume == pytest.approx(62.5)
        assert [r.floor_area for r in building.rooms] == pytest.approx([10.0, 15.0])
        assert building.skipped_room_ids == ()
        a, b = (r.room_bounds for r in building.rooms)
        np.testing.assert_allclose(
            building.building_bounds.min.to_array(), np.minimum(a.min.to_array(), b.min.to_array())
        )
        np.testing.assert_allclose(
            building.building_bounds.max.to_array(), np.maximum(a.max.to_array(), b.max.to_array())
        )
        assert building.building_bounds.max.x == pytest.approx(2.5)

    def test_order_kept_with_workers(self, orchestrator: MeasurementOrchestrator):
        sizes = [(3.0, 2.0), (6.0, 4.0), (2.0, 2.0), (5.0, 3.0), (4.0, 4.0), (7.0, 3.0)]
        rooms = [
            RoomScanData(snapshot=make_room(length, width, identifier=f"r{i}"))
            for i, (length, width) in enumerate(sizes)
        ]
        building = orchestrator.extract_building_parametrics(rooms, max_workers=4)
        assert [r.floor_area for r in building.rooms] == pytest.approx([a * b for a, b in sizes])

    def test_missing_and_failed_rooms_are_skipped(self, orchestrator: MeasurementOrchestrator):
        rooms = [
            RoomScanData(snapshot=make_room(4.0, 2.5, identifier="a")),
            RoomScanData(room_id="ghost"),
            RoomScanData(snapshot=_bad_room("broken")),
        ]
        building = orchestrator.extract_building_parametrics(rooms)
        assert len(building.rooms) == 1
        assert building.total_floor_area == pytest.approx(10.0)
        assert building.skipped_room_ids == ("ghost", "broken")

    def test_empty_building(self, orchestrator: MeasurementOrchestrator):
        building = orchestrator.extract_building_parametrics([])
        assert building.rooms == ()
        assert building.total_volume == 0.0
        assert building.building_bounds.is_empty()

    def test_building_progress(self, orchestrator: MeasurementOrchestrator):
        lock = threading.Lock()
        values = []

        def on_progress(snap):
            with lock:
                values.append(snap.progress)

        orchestrator.subscribe(on_progress)
        rooms = [RoomScanData(snapshot=make_room(4.0, 3.0, identifier=f"r{i}")) for i in range(5)]
        rooms.append(RoomScanData(room_id="ghost"))
        orchestrator.extract_building_parametrics(rooms, max_workers=3)
        assert values == sorted(values)
        assert values[-1] == 1.0
        assert orchestrator.progress.stage == ProcessingStage.DONE
        assert not orchestrator.progress.is_processing

    def test_room_without_id_or_snapshot_is_skipped(self, orchestrator: MeasurementOrchestrator):
        rooms = [RoomScanData(snapshot=make_room(4.0, 2.5, identifier="a")), RoomScanData()]
        building = orchestrator.extract_building_parametrics(rooms)
        assert len(building.rooms) == 1
        assert building.skipped_room_ids == ("room-1",)

    def test_scan_data_key(self):
        assert RoomScanData().key is None
        assert RoomScanData(room_id="kitchen", snapshot=make_room(2.0, 2.0)).key == "kitchen"
        assert RoomScanData(snapshot=make_room(2.0, 2.0, identifier="hall")).key == "hall"


class TestPointCloudBranch:
    def test_process_and_lookup(self, orchestrator: MeasurementOrchestrator, room_cloud: PointCloudBuffer):
        result = orchestrator.process_point_cloud(
            "room-1", room_cloud, clustering=ClusteringKind.REGION_GROWING, with_mesh=True
        )
        assert result.room_id == "room-1"
        assert len(result.clustered.clusters) >= 1
        assert result.analysis.completeness > 0
        assert result.mesh is None or result.mesh.triangle_count > 0
        assert orchestrator.get_point_cloud_result("room-1") is result

    def test_without_mesh(self, orchestrator: MeasurementOrchestrator, room_cloud: PointCloudBuffer):
        result = orchestrator.process_point_cloud("room-2", room_cloud, with_mesh=False)
        assert result.mesh is None
