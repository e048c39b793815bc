"""GeometricAnalyzer: four independent analyses of a clustered cloud.

Surface, volumetric, topological and statistical analysis each run on
their own.  A sub-analysis that cannot complete logs a warning and
contributes its ``empty()`` record (incomplete, quality 0); the others are
unaffected.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional, TypeVar

import numpy as np
from scipy import stats
from scipy.spatial import ConvexHull

from packages.analysis import topology
from packages.compute.resources import ResourceOptimizer
from packages.core.cloud import ClusteredPointCloud, ClusterType
from packages.core.errors import InsufficientData
from packages.core.types import (
    CurvatureStatistics,
    DistributionAnalysis,
    GeometricAnalysisResult,
    StatisticalAnalysis,
    SurfaceAnalysis,
    TopologicalAnalysis,
    Vec3,
    VolumetricAnalysis,
)
from packages.pointcloud.normals import eigen_features, estimate_normals

logger = logging.getLogger(__name__)

T = TypeVar("T")

_ROUGHNESS_SCALE = 0.02  # metres of RMS residual at which surface quality bottoms out
_MAX_TOPOLOGY_CELLS = 4_000_000
_CURVATURE_BINS = 4
_MAX_SURFACE_VARIATION = 1.0 / 3.0


class GeometricAnalyzer:
    """Combine surface, volumetric, topological and statistical analysis."""

    def __init__(self, optimizer: Optional[ResourceOptimizer] = None, voxel_size: Optional[float] = None):
        self.optimizer = optimizer or ResourceOptimizer()
        self.voxel_size = voxel_size

    def analyze(self, clustered: ClusteredPointCloud) -> GeometricAnalysisResult:
        self.optimizer.optimize_if_needed()
        result = GeometricAnalysisResult(
            surface=self._run("surface", lambda: self.analyze_surface(clustered), SurfaceAnalysis.empty),
            volumetric=self._run(
                "volumetric", lambda: self.analyze_volume(clustered), VolumetricAnalysis.empty
            ),
            topological=self._run(
                "topological", lambda: self.analyze_topology(clustered), TopologicalAnalysis.empty
            ),
            statistical=self._run(
                "statistical", lambda: self.analyze_statistics(clustered), StatisticalAnalysis.empty
            ),
        )
        logger.info(
            f"📐 Geometric analysis: quality {result.overall_quality:.2f}, "
            f"completeness {result.completeness:.2f}"
        )
        return result

    @staticmethod
    def _run(name: str, fn: Callable[[], T], empty: Callable[[], T]) -> T:
        try:
            return fn()
        except Exception as exc:
            logger.warning("%s analysis incomplete: %s", name, exc)
            return empty()

    # ── helpers ──────────────────────────────────────────────────
    @staticmethod
    def _clustered_points(clustered: ClusteredPointCloud) -> np.ndarray:
        points = clustered.buffer.positions[clustered.clustered_mask]
        if len(points) == 0:
            raise InsufficientData("no clustered points")
        return points

    def _voxel_size(self, points: np.ndarray) -> float:
        if self.voxel_size is not None:
            size = self.voxel_size
        else:
            dist, _ = self.optimizer.backend.knn(points, 2)
            size = 2.0 * float(np.median(dist[:, 1])) if len(points) > 1 else 0.05
            size = size if size > 0 else 0.05
        extent = points.max(axis=0) - points.min(axis=0)
        while np.prod(np.floor(extent / size) + 3) > _MAX_TOPOLOGY_CELLS:
            size *= 1.5
        return size

    # ── surface ──────────────────────────────────────────────────
    def analyze_surface(self, clustered: ClusteredPointCloud) -> SurfaceAnalysis:
        buffer = clustered.buffer
        if not buffer.has_normals:
            buffer = estimate_normals(buffer, self.optimizer.backend)

        area = 0.0
        residuals = []
        planarity_weighted = 0.0
        planar_points = 0
        for cluster in clustered.clusters:
            if cluster.cluster_type != ClusterType.PLANAR:
                continue
            pts = buffer.positions[clustered.members(cluster.label)]
            centred = pts - pts.mean(axis=0)
            eigvals, eigvecs = np.linalg.eigh(centred.T @ centred / len(pts))
            residuals.append(centred @ eigvecs[:, 0])
            planarity_weighted += eigen_features(eigvals)[1] * len(pts)
            planar_points += len(pts)
            in_plane = centred @ eigvecs[:, 1:]
            try:
                area += float(ConvexHull(in_plane).volume)
            except Exception as exc:
                logger.debug("cluster %d: no planar hull (%s)", cluster.label, exc)

        if planar_points == 0:
            raise InsufficientData("no planar clusters")

        residual = np.concatenate(residuals)
        roughness = float(np.sqrt(np.mean(residual ** 2)))
        planarity = planarity_weighted / planar_points

        curvature = buffer.curvature[clustered.clustered_mask]
        hist, _ = np.histogram(curvature, bins=_CURVATURE_BINS, range=(0.0, _MAX_SURFACE_VARIATION))
        stats_ = CurvatureStatistics(
            mean=float(curvature.mean()),
            std=float(curvature.std()),
            max=float(curvature.max()),
            histogram=tuple(float(h) for h in hist / max(1, len(curvature))),
        )
        quality = 0.5 * planarity + 0.5 * (1.0 - min(1.0, roughness / _ROUGHNESS_SCALE))
        return SurfaceAnalysis(
            surface_area=area,
            curvature=stats_,
            roughness=roughness,
            planarity=planarity,
            quality=float(np.clip(quality, 0.0, 1.0)),
            is_complete=True,
        )

    # ── volumetric ───────────────────────────────────────────────
    def analyze_volume(self, clustered: ClusteredPointCloud) -> VolumetricAnalysis:
        points = self._clustered_points(clustered)
        if len(points) < 4:
            raise InsufficientData("need 4 points for a volume")
        hull = ConvexHull(points)
        volume = float(hull.volume)
        if volume <= 0:
            raise InsufficientData("degenerate hull")

        voxel = self._voxel_size(points)
        occupied = int(topology.occupancy_grid(points, voxel).sum())
        void_ratio = float(np.clip(1.0 - occupied * voxel ** 3 / volume, 0.0, 1.0))
        compactness = float(min(1.0, 36.0 * np.pi * volume ** 2 / hull.area ** 3))
        return VolumetricAnalysis(
            volume=volume,
            density=len(points) / volume,
            void_ratio=void_ratio,
            compactness=compactness,
            quality=compactness ** (1.0 / 3.0),
            is_complete=True,
        )

    # ── topology ─────────────────────────────────────────────────
    def analyze_topology(self, clustered: ClusteredPointCloud) -> TopologicalAnalysis:
        points = self._clustered_points(clustered)
        grid = topology.occupancy_grid(points, self._voxel_size(points))
        euler = topology.euler_characteristic(grid)
        components = topology.connected_components(grid)
        holes = topology.cavities(grid)
        g = topology.genus(components, holes, euler)
        return TopologicalAnalysis(
            euler_characteristic=euler,
            genus=g,
            connected_components=components,
            holes=holes,
            quality=1.0 / max(1, components + holes + g),
            is_complete=True,
        )

    # ── statistics ───────────────────────────────────────────────
    def analyze_statistics(self, clustered: ClusteredPointCloud) -> StatisticalAnalysis:
        points = self._clustered_points(clustered)
        if len(points) < 3:
            raise InsufficientData("need 3 points for spacing statistics")

        distribution = DistributionAnalysis(
            mean=Vec3.from_array(points.mean(axis=0)),
            variance=Vec3.from_array(points.var(axis=0)),
            skewness=Vec3.from_array(np.nan_to_num(stats.skew(points, axis=0))),
            kurtosis=Vec3.from_array(np.nan_to_num(stats.kurtosis(points, axis=0))),
        )

        backend = self.optimizer.backend
        dist, idx = backend.knn(points, min(9, len(points)))
        spacing = dist[:, 1]
        neighbour_spacing = spacing[idx[:, 1:]].mean(axis=1)
        if spacing.std() > 0 and neighbour_spacing.std() > 0:
            correlation = float(np.corrcoef(spacing, neighbour_spacing)[0, 1])
        else:
            correlation = 1.0
        mean_spacing = spacing.mean()
        uniformity = float(np.clip(1.0 - spacing.std() / mean_spacing, 0.0, 1.0)) if mean_spacing > 0 else 0.0
        outlier_ratio = clustered.noise_count / max(1, clustered.buffer.count)

        return StatisticalAnalysis(
            distribution=distribution,
            spatial_correlation=correlation,
            uniformity=uniformity,
            outlier_ratio=outlier_ratio,
            quality=float(np.clip(0.5 * uniformity + 0.5 * (1.0 - outlier_ratio), 0.0, 1.0)),
            is_complete=True,
        )
