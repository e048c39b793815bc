"""Point clustering.

DBSCAN, k-means, agglomerative and mean-shift come from scikit-learn;
region growing is done here over the k-NN graph.  The quadratic
clusterers are fitted on voxel representatives, and every point then takes
the label of its nearest representative.

Every point gets exactly one label, ``-1`` being the implicit noise bucket,
so member sets never overlap.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Optional

import numpy as np
from sklearn.cluster import DBSCAN, AgglomerativeClustering, KMeans, MeanShift, estimate_bandwidth

from packages.compute.backend import ComputeBackend
from packages.core.cloud import (
    NOISE,
    ClusteredPointCloud,
    ClusteringKind,
    ClusterType,
    PointCloudBuffer,
    PointCluster,
)
from packages.core.config import PointCloudConfig
from packages.pointcloud.filters import voxel_downsample
from packages.pointcloud.normals import eigen_features, estimate_normals

logger = logging.getLogger(__name__)

_MIN_EXTENT = 0.01  # 1 cm floor on cluster extents for density


def cluster_points(
    buffer: PointCloudBuffer,
    kind: ClusteringKind,
    backend: ComputeBackend,
    config: Optional[PointCloudConfig] = None,
) -> ClusteredPointCloud:
    cfg = config or PointCloudConfig()
    kind = ClusteringKind(kind)

    if buffer.count == 0:
        return ClusteredPointCloud(buffer=buffer, labels=np.empty(0, dtype=np.int64), clusters=(), kind=kind)

    if kind == ClusteringKind.REGION_GROWING:
        if not buffer.has_normals:
            buffer = estimate_normals(buffer, backend, k=cfg.normal_neighbors)
        raw = _region_growing(buffer, backend, cfg)
    elif kind == ClusteringKind.DBSCAN:
        raw = _dbscan(buffer.positions, backend, cfg)
    else:
        raw = _fit_on_representatives(buffer, kind, backend, cfg)

    labels = _finalise_labels(raw, cfg.min_cluster_size)
    n_clusters = int(labels.max()) + 1 if len(labels) else 0
    clusters = tuple(
        _describe(buffer.positions[labels == label], label, cfg) for label in range(n_clusters)
    )
    logger.info(
        f"🧩 {kind.value}: {n_clusters} clusters, {int((labels == NOISE).sum()):,} noise points"
    )
    return ClusteredPointCloud(buffer=buffer, labels=labels, clusters=clusters, kind=kind)


# ── individual methods ───────────────────────────────────────────────
def _dbscan(points: np.ndarray, backend: ComputeBackend, cfg: PointCloudConfig) -> np.ndarray:
    eps = cfg.dbscan_eps
    if eps is None:
        k = min(cfg.dbscan_min_samples, len(points) - 1)
        if k < 1:
            return np.full(len(points), NOISE, dtype=np.int64)
        dist, _ = backend.knn(points, k + 1)
        eps = 1.5 * float(np.median(dist[:, -1]))
        if eps <= 0:
            eps = cfg.voxel_size
    return DBSCAN(eps=eps, min_samples=cfg.dbscan_min_samples).fit_predict(points).astype(np.int64)


def _representatives(buffer: PointCloudBuffer, cfg: PointCloudConfig) -> np.ndarray:
    points = buffer.positions
    if len(points) <= cfg.max_representatives:
        return points
    voxel = cfg.voxel_size
    reps = voxel_downsample(buffer, voxel).positions
    while len(reps) > cfg.max_representatives:
        voxel *= 1.5
        reps = voxel_downsample(buffer, voxel).positions
    return reps


def _fit_on_representatives(
    buffer: PointCloudBuffer, kind: ClusteringKind, backend: ComputeBackend, cfg: PointCloudConfig
) -> np.ndarray:
    reps = _representatives(buffer, cfg)
    if len(reps) < 2:
        rep_labels = np.zeros(len(reps), dtype=np.int64)
    elif kind == ClusteringKind.KMEANS:
        model = KMeans(n_clusters=min(cfg.kmeans_clusters, len(reps)), n_init=10, random_state=0)
        rep_labels = model.fit_predict(reps)
    elif kind == ClusteringKind.HIERARCHICAL:
        model = AgglomerativeClustering(
            n_clusters=None, distance_threshold=cfg.hierarchical_distance, linkage="average"
        )
        rep_labels = model.fit_predict(reps)
    else:
        bandwidth = cfg.mean_shift_bandwidth
        if bandwidth is None:
            bandwidth = float(estimate_bandwidth(reps, quantile=0.2, random_state=0))
            if bandwidth <= 0:
                bandwidth = 4 * cfg.voxel_size
        rep_labels = MeanShift(bandwidth=bandwidth, bin_seeding=True).fit_predict(reps)

    rep_labels = np.asarray(rep_labels, dtype=np.int64)
    if reps is buffer.positions:
        return rep_labels
    _, nearest = backend.query(reps, buffer.positions, 1)
    return rep_labels[nearest[:, 0]]


def _region_growing(buffer: PointCloudBuffer, backend: ComputeBackend, cfg: PointCloudConfig) -> np.ndarray:
    """Grow smooth regions from low-curvature seeds.

    A neighbour joins a region when its normal is within the angle
    threshold; it becomes a further seed when its curvature is also below
    the curvature threshold.
    """
    n = buffer.count
    normals = buffer.normals
    curvature = buffer.curvature
    _, idx = backend.knn(buffer.positions, min(cfg.normal_neighbors, n))
    cos_limit = float(np.cos(np.deg2rad(cfg.region_angle_deg)))

    labels = np.full(n, NOISE, dtype=np.int64)
    current = 0
    for seed in np.argsort(curvature, kind="stable"):
        if labels[seed] != NOISE:
            continue
        labels[seed] = current
        queue = deque([seed])
        while queue:
            i = queue.popleft()
            for j in idx[i, 1:]:
                if labels[j] != NOISE:
                    continue
                if abs(float(normals[i] @ normals[j])) < cos_limit:
                    continue
                labels[j] = current
                if curvature[j] < cfg.region_curvature:
                    queue.append(j)
        current += 1
    return labels


# ── post-processing ──────────────────────────────────────────────────
def _finalise_labels(raw: np.ndarray, min_size: int) -> np.ndarray:
    """Send small clusters to noise and renumber 0..K-1 by first appearance."""
    labels = np.asarray(raw, dtype=np.int64).copy()
    valid = labels >= 0
    if not valid.any():
        return np.full(len(labels), NOISE, dtype=np.int64)

    uniq, counts = np.unique(labels[valid], return_counts=True)
    small = uniq[counts < min_size]
    labels[np.isin(labels, small)] = NOISE

    valid = labels >= 0
    if not valid.any():
        return labels
    uniq, first = np.unique(labels[valid], return_index=True)
    lookup = np.full(int(uniq.max()) + 1, NOISE, dtype=np.int64)
    lookup[uniq[np.argsort(first, kind="stable")]] = np.arange(len(uniq))
    out = np.full(len(labels), NOISE, dtype=np.int64)
    out[valid] = lookup[labels[valid]]
    return out


def _describe(points: np.ndarray, label: int, cfg: PointCloudConfig) -> PointCluster:
    centroid = points.mean(axis=0)
    bbox_min = points.min(axis=0)
    bbox_max = points.max(axis=0)
    extents = np.maximum(bbox_max - bbox_min, _MIN_EXTENT)
    density = len(points) / float(np.prod(extents))

    if len(points) < 3:
        cluster_type, confidence = ClusterType.VOLUMETRIC, 0.0
    else:
        centred = points - centroid
        linearity, planarity, scattering = eigen_features(np.linalg.eigvalsh(centred.T @ centred / len(points)))
        features = {
            ClusterType.LINEAR: linearity,
            ClusterType.PLANAR: planarity,
            ClusterType.VOLUMETRIC: scattering,
        }
        cluster_type = max(features, key=features.get)
        size_factor = min(1.0, len(points) / (3.0 * cfg.min_cluster_size))
        confidence = float(np.clip(features[cluster_type] * size_factor, 0.0, 1.0))

    return PointCluster(
        label=label,
        centroid=centroid,
        bbox_min=bbox_min,
        bbox_max=bbox_max,
        point_count=len(points),
        density=float(density),
        cluster_type=cluster_type,
        confidence=confidence,
    )
