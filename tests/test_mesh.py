"""Tests for iso-surface extraction and mesh reconstruction."""

from __future__ import annotations

import numpy as np

from packages.compute.resources import ResourceOptimizer
from packages.core.cloud import ClusteredPointCloud, ClusteringKind, PointCloudBuffer
from packages.core.config import MeshConfig
from packages.mesh.reconstruct import MeshReconstructor


def _clustered(points: np.ndarray) -> ClusteredPointCloud:
    buf = PointCloudBuffer.from_positions(points)
    return ClusteredPointCloud(
        buffer=buf, labels=np.zeros(buf.count, dtype=np.int64), clusters=(), kind=ClusteringKind.DBSCAN
    )


def _solid_ball(n: int = 3000, radius: float = 0.5, seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    v = rng.normal(size=(n, 3))
    v /= np.linalg.norm(v, axis=1, keepdims=True)
    return v * radius * rng.random((n, 1)) ** (1.0 / 3.0)


class TestMeshReconstructor:
    def test_ball_mesh(self, cpu_optimizer: ResourceOptimizer):
        recon = MeshReconstructor(cpu_optimizer, MeshConfig(max_grid_cells=16))
        mesh = recon.generate_mesh(_clustered(_solid_ball()))

        assert mesh is not None
        assert len(mesh.indices) % 3 == 0
        assert int(mesh.indices.max()) < len(mesh.vertices)
        assert mesh.normals.shape == mesh.vertices.shape
        assert mesh.quality.manifoldness > 0.9
        assert mesh.quality.completeness > 0.5
        assert mesh.quality.surface_area > 0
        for score in (mesh.quality.smoothness, mesh.quality.accuracy, mesh.quality.completeness):
            assert 0.0 <= score <= 1.0
        radii = np.linalg.norm(mesh.vertices, axis=1)
        assert 0.3 < radii.mean() < 0.7

    def test_ball_mesh_is_closed_and_outward(self, cpu_optimizer: ResourceOptimizer):
        recon = MeshReconstructor(cpu_optimizer, MeshConfig(max_grid_cells=16))
        mesh = recon.generate_mesh(_clustered(_solid_ball()))

        assert mesh.quality.manifoldness > 0.99
        assert mesh.quality.volume > 0
        assert mesh.quality.volume < 4.0 / 3.0 * np.pi
        centre = mesh.vertices.mean(axis=0)
        outward = np.einsum("ij,ij->i", mesh.normals, mesh.vertices - centre)
        assert np.mean(outward > 0) > 0.9

    def test_texture_coordinates(self, cpu_optimizer: ResourceOptimizer):
        recon = MeshReconstructor(cpu_optimizer, MeshConfig(max_grid_cells=16, with_texture_coordinates=True))
        mesh = recon.generate_mesh(_clustered(_solid_ball()))
        assert mesh.texture_coordinates.shape == (len(mesh.vertices), 2)

    def test_too_few_points(self, cpu_optimizer: ResourceOptimizer):
        assert MeshReconstructor(cpu_optimizer).generate_mesh(_clustered(_solid_ball(n=20))) is None

    def test_coincident_points(self, cpu_optimizer: ResourceOptimizer):
        assert MeshReconstructor(cpu_optimizer).generate_mesh(_clustered(np.zeros((100, 3)))) is None
