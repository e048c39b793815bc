"""Point-cloud filters.

Every filter takes a :class:`PointCloudBuffer` and returns a new one; the
input arrays are read-only and are never touched.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

import numpy as np

from packages.compute.backend import ComputeBackend
from packages.core.cloud import FilterKind, PointCloudBuffer
from packages.core.config import PointCloudConfig
from packages.pointcloud.normals import estimate_normals

logger = logging.getLogger(__name__)


def auto_scale_radius(
    points: np.ndarray, backend: ComputeBackend, scale_factor: float = 2.5, default: float = 0.05
) -> float:
    """Radius scaled from the median nearest-neighbour spacing of ``points``."""
    if len(points) < 2:
        return default
    dist, _ = backend.knn(points, 2)
    spacing = float(np.median(dist[:, 1]))
    if spacing <= 0:
        return default
    return scale_factor * spacing


def remove_statistical_outliers(
    buffer: PointCloudBuffer, backend: ComputeBackend, k: int = 20, std_ratio: float = 2.0
) -> PointCloudBuffer:
    """Drop points whose mean k-NN distance exceeds mean + std_ratio · std."""
    if buffer.count < 2:
        return buffer.subset(slice(None))

    k = min(k, buffer.count - 1)
    dist, _ = backend.knn(buffer.positions, k + 1)
    mean_distances = dist[:, 1:].mean(axis=1)
    threshold = mean_distances.mean() + std_ratio * mean_distances.std()
    keep = mean_distances <= threshold
    logger.debug("Statistical outlier removal dropped %d of %d points", int((~keep).sum()), buffer.count)
    return buffer.subset(keep)


def reduce_noise(
    buffer: PointCloudBuffer,
    backend: ComputeBackend,
    radius: Optional[float] = None,
    min_neighbors: int = 2,
) -> PointCloudBuffer:
    """Radius outlier removal: keep points with at least ``min_neighbors`` within ``radius``.

    When ``radius`` is None it is auto-scaled from the point spacing.
    """
    if buffer.count < 2:
        return buffer.subset(slice(None))
    if radius is None:
        radius = auto_scale_radius(buffer.positions, backend)
    counts = backend.radius_counts(buffer.positions, radius)
    keep = counts >= min_neighbors
    logger.debug("Noise reduction (r=%.4f) dropped %d points", radius, int((~keep).sum()))
    return buffer.subset(keep)


def voxel_downsample(buffer: PointCloudBuffer, voxel_size: float = 0.05) -> PointCloudBuffer:
    """Voxel-grid down-sampling.

    Each occupied voxel keeps the centroid of its points and the source id
    of its first member.  Normals are dropped; re-estimate them afterwards.
    """
    if voxel_size <= 0:
        raise ValueError("voxel_size must be positive")
    if buffer.count == 0:
        return buffer.subset(slice(None))

    points = buffer.positions
    keys = np.floor((points - points.min(axis=0)) / voxel_size).astype(np.int64)
    _, first, inverse, counts = np.unique(
        keys, axis=0, return_index=True, return_inverse=True, return_counts=True
    )
    inverse = inverse.reshape(-1)
    sums = np.zeros((len(counts), 3), dtype=np.float64)
    np.add.at(sums, inverse, points)
    centroids = sums / counts[:, None]

    # Keep voxels in order of their first member so output order is stable.
    order = np.argsort(first, kind="stable")
    return PointCloudBuffer(
        positions=centroids[order],
        source_ids=buffer.source_ids[first[order]],
        timestamp=buffer.timestamp,
    )


def laplacian_smooth(
    buffer: PointCloudBuffer, backend: ComputeBackend, k: int = 8, factor: float = 0.5
) -> PointCloudBuffer:
    """Move each point ``factor`` of the way toward its neighbourhood mean."""
    if buffer.count < 2:
        return buffer.subset(slice(None))
    k = min(k, buffer.count - 1)
    _, idx = backend.knn(buffer.positions, k + 1)
    neighbour_mean = buffer.positions[idx[:, 1:]].mean(axis=1)
    smoothed = buffer.positions + factor * (neighbour_mean - buffer.positions)
    return buffer.with_positions(smoothed)


def preserve_edges(
    buffer: PointCloudBuffer,
    backend: ComputeBackend,
    k: int = 12,
    normal_sigma: float = 0.3,
    normal_neighbors: int = 16,
) -> PointCloudBuffer:
    """Bilateral denoising along the normal.

    Neighbours across a crease have dissimilar normals and get little
    weight, so corners and wall edges stay sharp while flat areas are
    smoothed.
    """
    if buffer.count < 3:
        return buffer.subset(slice(None))
    if not buffer.has_normals:
        buffer = estimate_normals(buffer, backend, k=normal_neighbors)

    points = buffer.positions
    normals = buffer.normals
    k = min(k, buffer.count - 1)
    dist, idx = backend.knn(points, k + 1)
    dist, idx = dist[:, 1:], idx[:, 1:]

    spatial_sigma = dist.mean(axis=1, keepdims=True)
    spatial_sigma[spatial_sigma == 0] = 1.0
    offsets = points[idx] - points[:, None, :]
    along_normal = np.einsum("nkj,nj->nk", offsets, normals)
    similarity = np.einsum("nkj,nj->nk", normals[idx], normals)

    w_spatial = np.exp(-(dist ** 2) / (2.0 * spatial_sigma ** 2))
    w_normal = np.exp(-((1.0 - similarity) ** 2) / (2.0 * normal_sigma ** 2))
    weights = w_spatial * w_normal
    total = weights.sum(axis=1)
    shift = np.divide((weights * along_normal).sum(axis=1), total, out=np.zeros(len(total)), where=total > 0)

    return buffer.with_positions(points + shift[:, None] * normals)


def apply_filter(
    buffer: PointCloudBuffer,
    kind: FilterKind,
    backend: ComputeBackend,
    config: Optional[PointCloudConfig] = None,
) -> PointCloudBuffer:
    """Run one filter selected by ``kind``."""
    cfg = config or PointCloudConfig()
    kind = FilterKind(kind)
    if kind == FilterKind.OUTLIER_REMOVAL:
        return remove_statistical_outliers(buffer, backend, cfg.outlier_neighbors, cfg.outlier_std_ratio)
    if kind == FilterKind.NOISE_REDUCTION:
        return reduce_noise(buffer, backend, cfg.noise_radius, cfg.noise_min_neighbors)
    if kind == FilterKind.DOWNSAMPLING:
        return voxel_downsample(buffer, cfg.voxel_size)
    if kind == FilterKind.SMOOTHING:
        return laplacian_smooth(buffer, backend, cfg.smoothing_neighbors, cfg.smoothing_factor)
    return preserve_edges(buffer, backend, cfg.edge_neighbors, cfg.edge_normal_sigma, cfg.normal_neighbors)


def filter_chain(
    buffer: PointCloudBuffer,
    kinds: Iterable[FilterKind],
    backend: ComputeBackend,
    config: Optional[PointCloudConfig] = None,
) -> PointCloudBuffer:
    for kind in kinds:
        before = buffer.count
        buffer = apply_filter(buffer, kind, backend, config)
        logger.info(f"🔧 {FilterKind(kind).value}: {before:,} → {buffer.count:,} points")
    return buffer
