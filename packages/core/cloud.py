"""Array-holding records that flow between point-cloud stages.

These are frozen dataclasses rather than pydantic models because they carry
large NumPy arrays.  Arrays are copied and marked read-only on
construction; a stage that wants different data builds a new record.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

import numpy as np

from packages.core.types import GeometricAnalysisResult, MeshGenerationMethod, MeshQuality

UNASSIGNED = "unassigned"
NOISE = -1


def _frozen(array, dtype=None) -> np.ndarray:
    out = np.array(array, dtype=dtype, copy=True)
    out.flags.writeable = False
    return out


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PointCloudBuffer:
    """Positions (N, 3) plus the id of the surface each point was captured on."""

    positions: np.ndarray
    source_ids: np.ndarray
    timestamp: datetime = field(default_factory=_utcnow)
    normals: Optional[np.ndarray] = None
    curvature: Optional[np.ndarray] = None

    def __post_init__(self):
        positions = _frozen(self.positions, np.float64).reshape(-1, 3)
        n = len(positions)
        source_ids = _frozen(self.source_ids, object).reshape(-1)
        if len(source_ids) != n:
            raise ValueError(f"source_ids has {len(source_ids)} entries for {n} points")
        object.__setattr__(self, "positions", positions)
        object.__setattr__(self, "source_ids", source_ids)
        if self.normals is not None:
            normals = _frozen(self.normals, np.float64).reshape(-1, 3)
            if len(normals) != n:
                raise ValueError("normals must have one row per point")
            object.__setattr__(self, "normals", normals)
        if self.curvature is not None:
            curvature = _frozen(self.curvature, np.float64).reshape(-1)
            if len(curvature) != n:
                raise ValueError("curvature must have one value per point")
            object.__setattr__(self, "curvature", curvature)

    @classmethod
    def from_positions(cls, positions, source_id: str = UNASSIGNED, **kwargs) -> "PointCloudBuffer":
        positions = np.asarray(positions, dtype=np.float64).reshape(-1, 3)
        return cls(positions=positions, source_ids=np.full(len(positions), source_id, dtype=object), **kwargs)

    @property
    def count(self) -> int:
        return int(self.positions.shape[0])

    @property
    def has_normals(self) -> bool:
        return self.normals is not None

    def subset(self, index) -> "PointCloudBuffer":
        """New buffer holding the rows selected by a boolean mask or index array."""
        return PointCloudBuffer(
            positions=self.positions[index],
            source_ids=self.source_ids[index],
            timestamp=self.timestamp,
            normals=None if self.normals is None else self.normals[index],
            curvature=None if self.curvature is None else self.curvature[index],
        )

    def with_positions(self, positions: np.ndarray) -> "PointCloudBuffer":
        return PointCloudBuffer(
            positions=positions,
            source_ids=self.source_ids,
            timestamp=self.timestamp,
            normals=self.normals,
            curvature=self.curvature,
        )

    def with_normals(self, normals: np.ndarray, curvature: np.ndarray) -> "PointCloudBuffer":
        return PointCloudBuffer(
            positions=self.positions,
            source_ids=self.source_ids,
            timestamp=self.timestamp,
            normals=normals,
            curvature=curvature,
        )

    def points_for(self, source_id: str) -> np.ndarray:
        return self.positions[self.source_ids == source_id]


class ClusterType(str, Enum):
    PLANAR = "planar"
    VOLUMETRIC = "volumetric"
    LINEAR = "linear"
    NOISE = "noise"


class ClusteringKind(str, Enum):
    DBSCAN = "dbscan"
    KMEANS = "kmeans"
    HIERARCHICAL = "hierarchical"
    REGION_GROWING = "region_growing"
    MEAN_SHIFT = "mean_shift"


class FilterKind(str, Enum):
    OUTLIER_REMOVAL = "outlier_removal"
    NOISE_REDUCTION = "noise_reduction"
    DOWNSAMPLING = "downsampling"
    SMOOTHING = "smoothing"
    EDGE_PRESERVATION = "edge_preservation"


@dataclass(frozen=True)
class PointCluster:
    label: int
    centroid: np.ndarray
    bbox_min: np.ndarray
    bbox_max: np.ndarray
    point_count: int
    density: float
    cluster_type: ClusterType
    confidence: float

    def __post_init__(self):
        for name in ("centroid", "bbox_min", "bbox_max"):
            object.__setattr__(self, name, _frozen(getattr(self, name), np.float64))


@dataclass(frozen=True)
class ClusteredPointCloud:
    """A buffer with one label per point (``-1`` is noise) and the cluster list."""

    buffer: PointCloudBuffer
    labels: np.ndarray
    clusters: tuple[PointCluster, ...]
    kind: ClusteringKind

    def __post_init__(self):
        labels = _frozen(self.labels, np.int64).reshape(-1)
        if len(labels) != self.buffer.count:
            raise ValueError("labels must have one entry per buffer point")
        object.__setattr__(self, "labels", labels)
        object.__setattr__(self, "clusters", tuple(self.clusters))

    def members(self, label: int) -> np.ndarray:
        """Indices of the points assigned to ``label``."""
        return np.flatnonzero(self.labels == label)

    @property
    def clustered_mask(self) -> np.ndarray:
        return self.labels != NOISE

    @property
    def noise_count(self) -> int:
        return int(np.count_nonzero(self.labels == NOISE))


@dataclass(frozen=True)
class GeneratedMesh:
    vertices: np.ndarray
    normals: np.ndarray
    indices: np.ndarray
    quality: MeshQuality
    method: MeshGenerationMethod = MeshGenerationMethod.MARCHING_CUBES
    texture_coordinates: Optional[np.ndarray] = None
    generated_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self):
        vertices = _frozen(self.vertices, np.float64).reshape(-1, 3)
        normals = _frozen(self.normals, np.float64).reshape(-1, 3)
        indices = _frozen(self.indices, np.uint32).reshape(-1)
        if len(normals) != len(vertices):
            raise ValueError("mesh needs exactly one normal per vertex")
        if len(indices) % 3 != 0:
            raise ValueError("mesh index count must be a multiple of 3")
        if len(indices) and int(indices.max()) >= len(vertices):
            raise ValueError("mesh index out of range")
        object.__setattr__(self, "vertices", vertices)
        object.__setattr__(self, "normals", normals)
        object.__setattr__(self, "indices", indices)
        if self.texture_coordinates is not None:
            uv = _frozen(self.texture_coordinates, np.float64).reshape(-1, 2)
            if len(uv) != len(vertices):
                raise ValueError("texture coordinates must have one row per vertex")
            object.__setattr__(self, "texture_coordinates", uv)

    @property
    def faces(self) -> np.ndarray:
        return self.indices.reshape(-1, 3)

    @property
    def triangle_count(self) -> int:
        return len(self.indices) // 3


@dataclass(frozen=True)
class PointCloudProcessingResult:
    """Output of the point-cloud branch for one room."""

    room_id: str
    clustered: ClusteredPointCloud
    analysis: GeometricAnalysisResult
    mesh: Optional[GeneratedMesh] = None
    processed_at: datetime = field(default_factory=_utcnow)
