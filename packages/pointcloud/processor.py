"""PointCloudProcessor: filter → normals → cluster on the optimizer's backend."""

from __future__ import annotations

import logging
from typing import Iterable, Optional, Sequence

from packages.compute.resources import ResourceOptimizer
from packages.core.cloud import ClusteredPointCloud, ClusteringKind, FilterKind, PointCloudBuffer
from packages.core.config import PointCloudConfig
from packages.pointcloud.clustering import cluster_points
from packages.pointcloud.filters import apply_filter, filter_chain
from packages.pointcloud.normals import estimate_normals

logger = logging.getLogger(__name__)

DEFAULT_FILTERS: tuple[FilterKind, ...] = (
    FilterKind.OUTLIER_REMOVAL,
    FilterKind.DOWNSAMPLING,
)


class PointCloudProcessor:
    """Stateless apart from its settings; safe to share between threads."""

    def __init__(
        self,
        optimizer: Optional[ResourceOptimizer] = None,
        config: Optional[PointCloudConfig] = None,
    ):
        self.optimizer = optimizer or ResourceOptimizer()
        self.config = config or PointCloudConfig()

    def filter(self, buffer: PointCloudBuffer, kind: FilterKind) -> PointCloudBuffer:
        self.optimizer.optimize_if_needed()
        return apply_filter(buffer, kind, self.optimizer.backend, self.config)

    def filter_chain(self, buffer: PointCloudBuffer, kinds: Iterable[FilterKind]) -> PointCloudBuffer:
        self.optimizer.optimize_if_needed()
        return filter_chain(buffer, kinds, self.optimizer.backend, self.config)

    def estimate_normals(self, buffer: PointCloudBuffer) -> PointCloudBuffer:
        self.optimizer.optimize_if_needed()
        return estimate_normals(buffer, self.optimizer.backend, k=self.config.normal_neighbors)

    def cluster(self, buffer: PointCloudBuffer, kind: ClusteringKind) -> ClusteredPointCloud:
        self.optimizer.optimize_if_needed()
        return cluster_points(buffer, kind, self.optimizer.backend, self.config)

    def process(
        self,
        buffer: PointCloudBuffer,
        filters: Sequence[FilterKind] = DEFAULT_FILTERS,
        clustering: ClusteringKind = ClusteringKind.DBSCAN,
    ) -> ClusteredPointCloud:
        """Full point branch.  Returns the clustered, normal-carrying cloud."""
        logger.info(f"☁️ Processing {buffer.count:,} points")
        filtered = self.filter_chain(buffer, filters)
        with_normals = self.estimate_normals(filtered)
        return self.cluster(with_normals, clustering)
