"""MeshReconstructor: density field → iso-surface → GeneratedMesh.

``generate_mesh`` returns ``None`` when the clusters cannot support a
surface; callers treat that as "mesh unavailable", not as a failure.
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np
import trimesh
from scipy import ndimage
from skimage import measure

from packages.compute.resources import ResourceOptimizer
from packages.core.cloud import ClusteredPointCloud, GeneratedMesh
from packages.core.config import MeshConfig
from packages.core.errors import ReconstructionUnavailable
from packages.core.types import MeshGenerationMethod, MeshQuality

logger = logging.getLogger(__name__)

_COMPLETENESS_RADIUS = 1.5  # in voxels


class MeshReconstructor:
    def __init__(self, optimizer: Optional[ResourceOptimizer] = None, config: Optional[MeshConfig] = None):
        self.optimizer = optimizer or ResourceOptimizer()
        self.config = config or MeshConfig()

    def generate_mesh(self, clustered: ClusteredPointCloud) -> Optional[GeneratedMesh]:
        self.optimizer.optimize_if_needed()
        try:
            mesh = self._reconstruct(clustered)
        except ReconstructionUnavailable as exc:
            logger.warning("Mesh unavailable: %s", exc)
            return None
        logger.info(
            f"🔺 Mesh: {len(mesh.vertices):,} vertices, {mesh.triangle_count:,} triangles, "
            f"quality {mesh.quality.overall_quality:.2f}"
        )
        return mesh

    def _reconstruct(self, clustered: ClusteredPointCloud) -> GeneratedMesh:
        cfg = self.config
        points = clustered.buffer.positions[clustered.clustered_mask]
        if len(points) < cfg.min_points:
            raise ReconstructionUnavailable(f"{len(points)} clustered points, need {cfg.min_points}")

        mins = points.min(axis=0)
        extent = points.max(axis=0) - mins
        if float(extent.max()) <= 0:
            raise ReconstructionUnavailable("all points coincide")

        voxel = max(cfg.min_voxel_size, float(extent.max()) / cfg.max_grid_cells)
        origin = mins - cfg.padding_cells * voxel
        shape = tuple(int(n) for n in np.ceil(extent / voxel).astype(np.int64) + 1 + 2 * cfg.padding_cells)

        backend = self.optimizer.backend
        density = backend.splat_density(points, origin, voxel, shape)
        occupied = density > 0
        field = ndimage.gaussian_filter(density, cfg.smoothing_sigma) if cfg.smoothing_sigma > 0 else density
        iso = cfg.iso_fraction * float(field[occupied].mean())
        if not ((field > iso).any() and (field <= iso).any()):
            raise ReconstructionUnavailable("density field has no iso crossing")

        try:
            vertices, faces, _, _ = measure.marching_cubes(
                field, level=iso, spacing=(voxel,) * 3, allow_degenerate=False
            )
        except (ValueError, RuntimeError) as exc:
            raise ReconstructionUnavailable(f"marching cubes failed: {exc}") from exc
        if len(faces) == 0:
            raise ReconstructionUnavailable("iso-surface produced no triangles")
        # Voxel counts are sampled at voxel centres.
        vertices = np.asarray(vertices, dtype=np.float64) + origin + 0.5 * voxel

        tm = trimesh.Trimesh(vertices=vertices, faces=faces, process=False)
        if tm.is_watertight and tm.volume < 0:
            tm.invert()
        faces = np.asarray(tm.faces)
        quality = self._quality(tm, points, voxel)

        uv = None
        if cfg.with_texture_coordinates:
            span = np.where(extent > 0, extent, 1.0)
            uv = np.column_stack(
                ((vertices[:, 0] - mins[0]) / span[0], (vertices[:, 2] - mins[2]) / span[2])
            )

        return GeneratedMesh(
            vertices=vertices,
            normals=np.asarray(tm.vertex_normals),
            indices=faces.reshape(-1),
            quality=quality,
            method=MeshGenerationMethod.MARCHING_CUBES,
            texture_coordinates=uv,
        )

    def _quality(self, tm: trimesh.Trimesh, points: np.ndarray, voxel: float) -> MeshQuality:
        _, counts = np.unique(tm.edges_sorted, axis=0, return_counts=True)
        manifoldness = float(np.mean(counts == 2)) if len(counts) else 0.0

        angles = tm.face_adjacency_angles
        smoothness = float(1.0 - np.mean(angles) / np.pi) if len(angles) else 0.0

        dist, _ = self.optimizer.backend.query(np.asarray(tm.vertices), points, 1)
        dist = dist[:, 0]
        completeness = float(np.mean(dist <= _COMPLETENESS_RADIUS * voxel))
        accuracy = float(1.0 - min(1.0, dist.mean() / voxel))

        return MeshQuality(
            completeness=completeness,
            smoothness=float(np.clip(smoothness, 0.0, 1.0)),
            accuracy=accuracy,
            manifoldness=manifoldness,
            surface_area=float(tm.area),
            volume=float(abs(tm.volume)) if tm.is_watertight else 0.0,
        )
