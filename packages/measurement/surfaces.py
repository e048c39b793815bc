"""SurfaceMeasurementExtractor: wall surfaces → WallParameters.

Walls are modelled as thin boxes.  The longer horizontal extent is the
wall run, the vertical component is the height and the shorter horizontal
extent only picks a thickness *bucket*.  The bucket is a coarse heuristic,
not a measured thickness.

Malformed dimensions are passed through unchanged; the validation engine
reports them.
"""

from __future__ import annotations

import logging
import math
from typing import Mapping, Optional, Sequence

import numpy as np

from packages.core.errors import InvalidConfidence
from packages.core.types import (
    OpeningParameters,
    Surface,
    SurfaceKind,
    ThicknessClass,
    Vec3,
    WallGeometry,
    WallMaterial,
    WallParameters,
)
from packages.measurement.openings import OpeningDetector, wall_frame
from packages.pointcloud.normals import fit_plane

logger = logging.getLogger(__name__)

BASE_ACCURACY = 0.005  # metres at confidence 1.0

# (upper bound exclusive, bucket thickness, class)
_THICKNESS_BUCKETS = (
    (0.15, 0.10, ThicknessClass.INTERIOR),
    (0.25, 0.20, ThicknessClass.EXTERIOR),
    (math.inf, 0.30, ThicknessClass.STRUCTURAL),
)

_MATERIAL_BY_CLASS = {
    ThicknessClass.INTERIOR: WallMaterial.DRYWALL,
    ThicknessClass.EXTERIOR: WallMaterial.BRICK,
    ThicknessClass.STRUCTURAL: WallMaterial.CONCRETE,
}


def classify_thickness(dimensions: Vec3) -> tuple[float, ThicknessClass]:
    """Bucket the smaller horizontal extent: <0.15 interior, <0.25 exterior, else structural."""
    minimal = min(dimensions.x, dimensions.z)
    for upper, thickness, cls in _THICKNESS_BUCKETS:
        if minimal < upper:
            return thickness, cls
    return _THICKNESS_BUCKETS[-1][1], _THICKNESS_BUCKETS[-1][2]


def estimate_accuracy(confidence: float, element: Optional[str] = None, base: float = BASE_ACCURACY) -> float:
    """``base / confidence``.  Raises :class:`InvalidConfidence` unless confidence > 0."""
    if not confidence > 0:
        raise InvalidConfidence(confidence, element)
    return base / confidence


def classify_material(thickness_class: ThicknessClass, confidence: float) -> WallMaterial:
    if confidence < 0.5:
        return WallMaterial.UNKNOWN
    return _MATERIAL_BY_CLASS[thickness_class]


def wall_geometry(wall: Surface, thickness_class: ThicknessClass, curvature: float = 0.0) -> WallGeometry:
    """Endpoints and normal of the wall run from the surface transform."""
    rotation, translation, run_axis, thin_axis, length, _ = wall_frame(wall)
    half = np.zeros(3)
    half[run_axis] = length / 2.0
    normal = rotation[:, thin_axis]
    norm = np.linalg.norm(normal)
    if norm > 0:
        normal = normal / norm
    return WallGeometry(
        start_point=Vec3.from_array(translation - rotation @ half),
        end_point=Vec3.from_array(translation + rotation @ half),
        normal=Vec3.from_array(normal),
        curvature=curvature,
        is_structural=thickness_class == ThicknessClass.STRUCTURAL,
    )


def floor_level(surfaces: Sequence[Surface]) -> Optional[float]:
    """Mean height of the floor surfaces, or None when there are none."""
    levels = [s.matrix()[1, 3] for s in surfaces if s.kind == SurfaceKind.FLOOR]
    return float(np.mean(levels)) if levels else None


class SurfaceMeasurementExtractor:
    """Measure walls and attach the openings found in their point evidence."""

    def __init__(self, detector: Optional[OpeningDetector] = None):
        self.detector = detector or OpeningDetector()

    def measure_wall(self, wall: Surface, evidence: Optional[np.ndarray] = None) -> WallParameters:
        dims = wall.dimensions
        thickness, thickness_class = classify_thickness(dims)
        curvature = 0.0
        if evidence is not None and len(evidence) >= 3:
            _, _, eigvals = fit_plane(np.asarray(evidence, dtype=np.float64))
            total = float(eigvals.sum())
            curvature = float(eigvals[0] / total) if total > 0 else 0.0

        return WallParameters(
            wall_id=wall.identifier,
            dimensions=dims,
            length=max(dims.x, dims.z),
            height=dims.y,
            thickness=thickness,
            thickness_class=thickness_class,
            material=classify_material(thickness_class, wall.confidence),
            geometry=wall_geometry(wall, thickness_class, curvature),
            confidence=wall.confidence,
            accuracy=estimate_accuracy(wall.confidence, wall.identifier),
        )

    def detect_openings(
        self, wall: Surface, surfaces: Sequence[Surface], evidence: Optional[np.ndarray] = None
    ) -> list[OpeningParameters]:
        openings = self.detector.detect(wall, evidence, floor_level(surfaces))
        if wall.kind == SurfaceKind.OPENING_WALL and not openings:
            logger.debug("Wall %s is tagged opening-bearing but no gap was found", wall.identifier)
        return openings

    def measure_walls(
        self, surfaces: Sequence[Surface], evidence: Optional[Mapping[str, np.ndarray]] = None
    ) -> list[WallParameters]:
        """WallParameters for every wall in ``surfaces``, in order, without openings.  No walls → []."""
        evidence = evidence or {}
        return [self.measure_wall(w, evidence.get(w.identifier)) for w in surfaces if w.kind.is_wall]

    def attach_openings(
        self,
        measured: Sequence[WallParameters],
        surfaces: Sequence[Surface],
        evidence: Optional[Mapping[str, np.ndarray]] = None,
    ) -> list[WallParameters]:
        """Copies of ``measured`` (as returned by ``measure_walls``) carrying each wall's openings."""
        evidence = evidence or {}
        walls = [s for s in surfaces if s.kind.is_wall]
        return [
            m.model_copy(
                update={"openings": tuple(self.detect_openings(w, surfaces, evidence.get(w.identifier)))}
            )
            for w, m in zip(walls, measured)
        ]
