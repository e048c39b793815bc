"""Tests for the data model (packages/core)."""

from __future__ import annotations

import numpy as np
import pytest
from pydantic import ValidationError

from packages.core.cloud import GeneratedMesh, PointCloudBuffer
from packages.core.config import MeasurementConfiguration
from packages.core.errors import ValidationFailed
from packages.core.types import (
    AccuracyLevel,
    ArchitecturalParameters,
    Bounds,
    BuildingBounds,
    MeshQuality,
    RoomBounds,
    Surface,
    SurfaceKind,
    ValidationIssue,
    ValidationIssueType,
    ValidationReport,
    ValidationSeverity,
    Vec3,
)


def _quality() -> MeshQuality:
    return MeshQuality(
        completeness=1.0, smoothness=1.0, accuracy=1.0, manifoldness=1.0, surface_area=1.0, volume=0.0
    )


def _report(*severities: ValidationSeverity) -> ValidationReport:
    issues = tuple(
        ValidationIssue(type=ValidationIssueType.GEOMETRIC_ERROR, severity=s, description=s.value)
        for s in severities
    )
    return ValidationReport(overall_accuracy=0.005, accuracy_level=AccuracyLevel.EXCELLENT, issues=issues)


class TestBounds:
    def test_center_and_size_are_derived(self):
        b = Bounds(min=Vec3(x=-2, y=-1, z=0), max=Vec3(x=2, y=3, z=4))
        assert b.center == Vec3(x=0, y=1, z=2)
        assert b.size == Vec3(x=4, y=4, z=4)

    def test_empty_sentinel(self):
        empty = RoomBounds.empty()
        assert isinstance(empty, RoomBounds)
        assert empty.is_empty()
        assert empty.size == Vec3.zero()
        assert empty.center == Vec3.zero()
        assert isinstance(BuildingBounds.empty(), BuildingBounds)

    def test_serialises_center_and_size(self):
        data = RoomBounds.empty().model_dump()
        assert "center" in data and "size" in data


class TestSurface:
    def test_defaults(self):
        s = Surface(kind=SurfaceKind.WALL, dimensions=Vec3(x=4, y=2.5, z=0.1))
        assert s.identifier
        np.testing.assert_array_equal(s.matrix(), np.eye(4))

    def test_transform_length_checked(self):
        with pytest.raises(ValidationError):
            Surface(kind=SurfaceKind.WALL, dimensions=Vec3(x=1, y=1, z=1), transform=(1.0, 0.0))

    def test_frozen(self):
        s = Surface(kind=SurfaceKind.FLOOR, dimensions=Vec3(x=1, y=0, z=1))
        with pytest.raises(ValidationError):
            s.confidence = 0.1


class TestValidationReport:
    def test_valid_without_critical(self):
        report = _report(ValidationSeverity.MAJOR, ValidationSeverity.MINOR, ValidationSeverity.WARNING)
        assert report.is_valid
        assert report.critical_issues == []
        report.raise_if_invalid()

    def test_invalid_with_critical(self):
        report = _report(ValidationSeverity.MINOR, ValidationSeverity.CRITICAL)
        assert not report.is_valid
        assert len(report.critical_issues) == 1
        with pytest.raises(ValidationFailed, match="critical"):
            report.raise_if_invalid()

    def test_empty_issue_list_is_valid(self):
        assert _report().is_valid


class TestArchitecturalParameters:
    def test_empty_sentinel(self):
        empty = ArchitecturalParameters.empty()
        assert empty.walls == ()
        assert empty.floor_area == 0.0
        assert empty.room_bounds == RoomBounds.empty()


class TestConfiguration:
    def test_defaults(self):
        cfg = MeasurementConfiguration()
        assert cfg.target_accuracy == 0.005
        assert cfg.confidence_threshold == 0.85
        assert cfg.max_iterations == 10
        assert cfg.convergence_threshold == 0.001

    def test_tiers_must_increase(self):
        with pytest.raises(ValidationError):
            MeasurementConfiguration(excellent_accuracy=0.02, good_accuracy=0.01)


class TestPointCloudBuffer:
    def test_arrays_are_read_only(self):
        buf = PointCloudBuffer.from_positions(np.zeros((3, 3)), source_id="w")
        assert buf.count == 3
        with pytest.raises(ValueError):
            buf.positions[0, 0] = 1.0

    def test_input_array_is_copied(self):
        pts = np.zeros((2, 3))
        buf = PointCloudBuffer.from_positions(pts)
        pts[0, 0] = 9.0
        assert buf.positions[0, 0] == 0.0

    def test_source_ids_must_match(self):
        with pytest.raises(ValueError):
            PointCloudBuffer(positions=np.zeros((3, 3)), source_ids=np.array(["a"], dtype=object))

    def test_points_for(self):
        buf = PointCloudBuffer(
            positions=np.arange(9, dtype=float).reshape(3, 3),
            source_ids=np.array(["a", "b", "a"], dtype=object),
        )
        assert len(buf.points_for("a")) == 2
        assert len(buf.points_for("missing")) == 0


class TestGeneratedMesh:
    def test_valid_mesh(self):
        mesh = GeneratedMesh(
            vertices=np.eye(3), normals=np.eye(3), indices=[0, 1, 2], quality=_quality()
        )
        assert mesh.triangle_count == 1
        assert len(mesh.indices) % 3 == 0

    def test_index_count_must_be_multiple_of_three(self):
        with pytest.raises(ValueError):
            GeneratedMesh(vertices=np.eye(3), normals=np.eye(3), indices=[0, 1], quality=_quality())

    def test_index_out_of_range(self):
        with pytest.raises(ValueError):
            GeneratedMesh(vertices=np.eye(3), normals=np.eye(3), indices=[0, 1, 3], quality=_quality())

    def test_normals_per_vertex(self):
        with pytest.raises(ValueError):
            GeneratedMesh(vertices=np.eye(3), normals=np.eye(3)[:2], indices=[0, 1, 2], quality=_quality())
