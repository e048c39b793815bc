"""Pydantic models for the captured room, the extracted parametrics and reports.

A :class:`RoomSnapshot` comes from the capture session.  Everything else in
this module is derived from it by the measurement pipeline and is replaced
as a whole whenever a room is re-extracted, so the models are frozen.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from packages.core.errors import ValidationFailed

_IDENTITY = (
    1.0, 0.0, 0.0, 0.0,
    0.0, 1.0, 0.0, 0.0,
    0.0, 0.0, 1.0, 0.0,
    0.0, 0.0, 0.0, 1.0,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# ── tiny helpers ──────────────────────────────────────────────────────
class Vec3(BaseModel):
    """A 3-component vector (x, y, z) in metres.  Y is up."""

    model_config = ConfigDict(frozen=True)

    x: float
    y: float
    z: float

    @classmethod
    def zero(cls) -> "Vec3":
        return cls(x=0.0, y=0.0, z=0.0)

    @classmethod
    def from_array(cls, values) -> "Vec3":
        return cls(x=float(values[0]), y=float(values[1]), z=float(values[2]))

    def to_array(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z], dtype=np.float64)


class Bounds(BaseModel):
    """Axis-aligned bounds.  Centre and size are always derived from min/max."""

    model_config = ConfigDict(frozen=True)

    min: Vec3
    max: Vec3

    @computed_field  # type: ignore[prop-decorator]
    @property
    def center(self) -> Vec3:
        return Vec3.from_array((self.min.to_array() + self.max.to_array()) / 2.0)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def size(self) -> Vec3:
        return Vec3.from_array(self.max.to_array() - self.min.to_array())

    @classmethod
    def empty(cls):
        """Zero-sized bounds centred at the origin."""
        return cls(min=Vec3.zero(), max=Vec3.zero())

    @classmethod
    def from_arrays(cls, mins, maxs):
        return cls(min=Vec3.from_array(mins), max=Vec3.from_array(maxs))

    def is_empty(self) -> bool:
        return self.min == Vec3.zero() and self.max == Vec3.zero()


class RoomBounds(Bounds):
    """Bounds of one room."""


class BuildingBounds(Bounds):
    """Componentwise union of the room bounds of a building."""


# ── captured input ───────────────────────────────────────────────────
class SurfaceKind(str, Enum):
    WALL = "wall"
    FLOOR = "floor"
    OPENING_WALL = "opening_wall"

    @property
    def is_wall(self) -> bool:
        return self in (SurfaceKind.WALL, SurfaceKind.OPENING_WALL)


class Surface(BaseModel):
    """A captured planar element.

    ``dimensions`` is (width, height, depth).  ``transform`` is the optional
    row-major 4x4 pose of the surface centre in the room frame.
    """

    model_config = ConfigDict(frozen=True)

    identifier: str = Field(default_factory=_new_id)
    kind: SurfaceKind
    dimensions: Vec3
    confidence: float = Field(1.0, le=1.0)
    transform: tuple[float, ...] = _IDENTITY

    @field_validator("transform")
    @classmethod
    def _check_transform(cls, v):
        if len(v) != 16:
            raise ValueError("transform must have exactly 16 elements")
        return v

    def matrix(self) -> np.ndarray:
        return np.asarray(self.transform, dtype=np.float64).reshape(4, 4)


class RoomSnapshot(BaseModel):
    """One completed room scan.  Read-only input to the pipeline."""

    model_config = ConfigDict(frozen=True)

    identifier: str = Field(default_factory=_new_id)
    surfaces: tuple[Surface, ...] = ()
    captured_at: datetime = Field(default_factory=_utcnow)

    @property
    def walls(self) -> list[Surface]:
        return [s for s in self.surfaces if s.kind.is_wall]

    @property
    def floors(self) -> list[Surface]:
        return [s for s in self.surfaces if s.kind == SurfaceKind.FLOOR]


# ── walls and openings ───────────────────────────────────────────────
class ThicknessClass(str, Enum):
    INTERIOR = "interior"
    EXTERIOR = "exterior"
    STRUCTURAL = "structural"


class WallMaterial(str, Enum):
    DRYWALL = "drywall"
    BRICK = "brick"
    CONCRETE = "concrete"
    UNKNOWN = "unknown"


class WallGeometry(BaseModel):
    """Placement of a wall run in the room frame."""

    model_config = ConfigDict(frozen=True)

    start_point: Vec3
    end_point: Vec3
    normal: Vec3
    curvature: float = 0.0
    is_structural: bool = False


class OpeningType(str, Enum):
    DOOR = "door"
    WINDOW = "window"
    ARCHWAY = "archway"
    PASSAGE = "passage"
    NICHE = "niche"
    UNKNOWN = "unknown"


class OpeningPosition(BaseModel):
    model_config = ConfigDict(frozen=True)

    distance_from_start: float
    height_from_floor: float
    center_point: Vec3


class OpeningParameters(BaseModel):
    model_config = ConfigDict(frozen=True)

    opening_id: str
    type: OpeningType
    width: float
    height: float
    position: OpeningPosition
    wall_id: str
    confidence: float
    accuracy: float

    @computed_field  # type: ignore[prop-decorator]
    @property
    def area(self) -> float:
        return self.width * self.height


class WallParameters(BaseModel):
    model_config = ConfigDict(frozen=True)

    wall_id: str
    dimensions: Vec3
    length: float
    height: float
    thickness: float = Field(description="Bucketed thickness in metres, not a measurement")
    thickness_class: ThicknessClass
    material: WallMaterial
    openings: tuple[OpeningParameters, ...] = ()
    geometry: WallGeometry
    confidence: float
    accuracy: float


# ── room / building parametrics ──────────────────────────────────────
class ArchitecturalParameters(BaseModel):
    """Complete parametric description of one room."""

    model_config = ConfigDict(frozen=True)

    walls: tuple[WallParameters, ...] = ()
    openings: tuple[OpeningParameters, ...] = ()
    floor_area: float = 0.0
    ceiling_height: float = 0.0
    volume: float = 0.0
    room_bounds: RoomBounds = Field(default_factory=RoomBounds.empty)
    measured_at: datetime = Field(default_factory=_utcnow)

    @classmethod
    def empty(cls) -> "ArchitecturalParameters":
        """Sentinel returned when a room could not be measured."""
        return cls()


class BuildingParametrics(BaseModel):
    model_config = ConfigDict(frozen=True)

    rooms: tuple[ArchitecturalParameters, ...] = ()
    total_floor_area: float = 0.0
    total_volume: float = 0.0
    building_bounds: BuildingBounds = Field(default_factory=BuildingBounds.empty)
    skipped_room_ids: tuple[str, ...] = ()
    analyzed_at: datetime = Field(default_factory=_utcnow)


# ── validation ───────────────────────────────────────────────────────
class AccuracyLevel(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


class ValidationIssueType(str, Enum):
    DIMENSIONAL_INCONSISTENCY = "dimensional_inconsistency"
    GEOMETRIC_ERROR = "geometric_error"
    MEASUREMENT_OUTLIER = "measurement_outlier"
    LOW_CONFIDENCE = "low_confidence"
    MISSING_DATA = "missing_data"
    PHYSICAL_IMPOSSIBILITY = "physical_impossibility"


class ValidationSeverity(str, Enum):
    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"
    WARNING = "warning"


class ValidationIssue(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: ValidationIssueType
    severity: ValidationSeverity
    description: str
    affected_element: Optional[str] = None
    suggested_fix: Optional[str] = None


class CrossValidationResults(BaseModel):
    """One quantity measured by several methods."""

    model_config = ConfigDict(frozen=True)

    primary_measurement: float
    alternative_measurements: tuple[float, ...] = ()
    standard_deviation: float = 0.0
    consistency: float = 1.0
    outlier_count: int = 0


class ValidationReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    overall_accuracy: float
    accuracy_level: AccuracyLevel
    issues: tuple[ValidationIssue, ...] = ()
    recommendations: tuple[str, ...] = ()
    validated_at: datetime = Field(default_factory=_utcnow)
    cross_validation: Optional[CrossValidationResults] = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def is_valid(self) -> bool:
        return not any(i.severity == ValidationSeverity.CRITICAL for i in self.issues)

    @property
    def critical_issues(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == ValidationSeverity.CRITICAL]

    def raise_if_invalid(self) -> None:
        """Raise :class:`ValidationFailed` when the report carries a critical issue."""
        if not self.is_valid:
            raise ValidationFailed(self)


class ExtractionFailure(BaseModel):
    """What a caller sees instead of parameters when a room extraction failed."""

    model_config = ConfigDict(frozen=True)

    room_id: str
    message: str = "No reliable measurement available for this room"
    error_type: str
    error: str
    issues: tuple[ValidationIssue, ...] = ()
    failed_at: datetime = Field(default_factory=_utcnow)


# ── mesh and geometric analysis ──────────────────────────────────────
class MeshGenerationMethod(str, Enum):
    MARCHING_CUBES = "marching_cubes"


class MeshQuality(BaseModel):
    """Scores in [0, 1] except surface area (m²) and volume (m³)."""

    model_config = ConfigDict(frozen=True)

    completeness: float
    smoothness: float
    accuracy: float
    manifoldness: float
    surface_area: float
    volume: float

    @property
    def overall_quality(self) -> float:
        return (self.completeness + self.smoothness + self.accuracy + self.manifoldness) / 4.0


class CurvatureStatistics(BaseModel):
    model_config = ConfigDict(frozen=True)

    mean: float = 0.0
    std: float = 0.0
    max: float = 0.0
    histogram: tuple[float, ...] = ()


class SurfaceAnalysis(BaseModel):
    model_config = ConfigDict(frozen=True)

    surface_area: float = 0.0
    curvature: CurvatureStatistics = Field(default_factory=CurvatureStatistics)
    roughness: float = 0.0
    planarity: float = 0.0
    quality: float = 0.0
    is_complete: bool = False

    @classmethod
    def empty(cls) -> "SurfaceAnalysis":
        return cls()


class VolumetricAnalysis(BaseModel):
    model_config = ConfigDict(frozen=True)

    volume: float = 0.0
    density: float = 0.0
    void_ratio: float = 0.0
    compactness: float = 0.0
    quality: float = 0.0
    is_complete: bool = False

    @classmethod
    def empty(cls) -> "VolumetricAnalysis":
        return cls()


class TopologicalAnalysis(BaseModel):
    model_config = ConfigDict(frozen=True)

    euler_characteristic: int = 0
    genus: int = 0
    connected_components: int = 0
    holes: int = 0
    quality: float = 0.0
    is_complete: bool = False

    @classmethod
    def empty(cls) -> "TopologicalAnalysis":
        return cls()


class DistributionAnalysis(BaseModel):
    model_config = ConfigDict(frozen=True)

    mean: Vec3 = Field(default_factory=Vec3.zero)
    variance: Vec3 = Field(default_factory=Vec3.zero)
    skewness: Vec3 = Field(default_factory=Vec3.zero)
    kurtosis: Vec3 = Field(default_factory=Vec3.zero)


class StatisticalAnalysis(BaseModel):
    model_config = ConfigDict(frozen=True)

    distribution: DistributionAnalysis = Field(default_factory=DistributionAnalysis)
    spatial_correlation: float = 0.0
    uniformity: float = 0.0
    outlier_ratio: float = 0.0
    quality: float = 0.0
    is_complete: bool = False

    @classmethod
    def empty(cls) -> "StatisticalAnalysis":
        return cls()


class GeometricAnalysisResult(BaseModel):
    """Four independent analyses of one clustered cloud."""

    model_config = ConfigDict(frozen=True)

    surface: SurfaceAnalysis = Field(default_factory=SurfaceAnalysis.empty)
    volumetric: VolumetricAnalysis = Field(default_factory=VolumetricAnalysis.empty)
    topological: TopologicalAnalysis = Field(default_factory=TopologicalAnalysis.empty)
    statistical: StatisticalAnalysis = Field(default_factory=StatisticalAnalysis.empty)
    analyzed_at: datetime = Field(default_factory=_utcnow)

    @property
    def overall_quality(self) -> float:
        return (
            self.surface.quality
            + self.volumetric.quality
            + self.topological.quality
            + self.statistical.quality
        ) / 4.0

    @property
    def completeness(self) -> float:
        done = [
            self.surface.is_complete,
            self.volumetric.is_complete,
            self.topological.is_complete,
            self.statistical.is_complete,
        ]
        return sum(done) / 4.0


# ── pipeline state ───────────────────────────────────────────────────
class ProcessingStage(str, Enum):
    IDLE = "idle"
    ANALYZING_WALLS = "analyzing_walls"
    DETECTING_OPENINGS = "detecting_openings"
    COMPUTING_METRICS = "computing_metrics"
    ASSEMBLING = "assembling"
    VALIDATING = "validating"
    DONE = "done"
    FAILED = "failed"

    @property
    def progress(self) -> float:
        return _STAGE_PROGRESS[self]


_STAGE_PROGRESS = {
    ProcessingStage.IDLE: 0.0,
    ProcessingStage.ANALYZING_WALLS: 0.1,
    ProcessingStage.DETECTING_OPENINGS: 0.4,
    ProcessingStage.COMPUTING_METRICS: 0.7,
    ProcessingStage.ASSEMBLING: 0.9,
    ProcessingStage.VALIDATING: 0.95,
    ProcessingStage.DONE: 1.0,
    ProcessingStage.FAILED: 0.0,
}


class ThermalState(str, Enum):
    COOL = "cool"
    NORMAL = "normal"
    WARM = "warm"
    HOT = "hot"
