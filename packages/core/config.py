"""Grouped settings for the measurement, point-cloud, mesh and resource layers."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class MeasurementConfiguration(BaseModel):
    """Targets and switches used by the validation engine."""

    model_config = ConfigDict(frozen=True)

    target_accuracy: float = Field(0.005, gt=0, description="Target accuracy in metres (5 mm)")
    confidence_threshold: float = Field(0.85, ge=0, le=1)
    enable_cross_validation: bool = True
    enable_outlier_detection: bool = True
    max_iterations: int = Field(10, ge=1)
    convergence_threshold: float = Field(0.001, gt=0, description="Metres (1 mm)")
    min_floor_area: float = Field(2.0, ge=0, description="Smallest plausible room, m²")
    excellent_accuracy: float = Field(0.005, gt=0)
    good_accuracy: float = Field(0.01, gt=0)
    fair_accuracy: float = Field(0.02, gt=0)
    min_ceiling_height: float = 2.0
    max_ceiling_height: float = 5.0
    unmeasured_accuracy: float = Field(
        0.05, gt=0, description="Accuracy reported when no wall was measured"
    )

    @model_validator(mode="after")
    def _check_ordering(self) -> "MeasurementConfiguration":
        if not (self.excellent_accuracy < self.good_accuracy < self.fair_accuracy):
            raise ValueError("accuracy tier cut points must be strictly increasing")
        if self.min_ceiling_height >= self.max_ceiling_height:
            raise ValueError("min_ceiling_height must be below max_ceiling_height")
        return self


class PointCloudConfig(BaseModel):
    """Neighbourhood sizes and thresholds for filtering, normals and clustering."""

    model_config = ConfigDict(frozen=True)

    normal_neighbors: int = Field(16, ge=3)
    outlier_neighbors: int = Field(20, ge=1)
    outlier_std_ratio: float = Field(2.0, gt=0)
    noise_radius: Optional[float] = Field(None, gt=0, description="None → auto-scaled")
    noise_min_neighbors: int = Field(2, ge=1)
    voxel_size: float = Field(0.05, gt=0)
    smoothing_neighbors: int = Field(8, ge=1)
    smoothing_factor: float = Field(0.5, ge=0, le=1)
    edge_neighbors: int = Field(12, ge=2)
    edge_normal_sigma: float = Field(0.3, gt=0)
    dbscan_eps: Optional[float] = Field(None, gt=0, description="None → auto-scaled")
    dbscan_min_samples: int = Field(10, ge=1)
    kmeans_clusters: int = Field(8, ge=1)
    hierarchical_distance: float = Field(0.5, gt=0)
    region_angle_deg: float = Field(15.0, gt=0, lt=90)
    region_curvature: float = Field(0.05, gt=0)
    mean_shift_bandwidth: Optional[float] = Field(None, gt=0)
    min_cluster_size: int = Field(10, ge=1)
    max_representatives: int = Field(2000, ge=10)


class MeshConfig(BaseModel):
    """Iso-surface extraction settings."""

    model_config = ConfigDict(frozen=True)

    min_points: int = Field(50, ge=4)
    max_grid_cells: int = Field(64, ge=4, description="Cells along the longest axis")
    min_voxel_size: float = Field(0.02, gt=0)
    padding_cells: int = Field(2, ge=1)
    smoothing_sigma: float = Field(1.0, ge=0)
    iso_fraction: float = Field(0.5, gt=0, lt=1)
    with_texture_coordinates: bool = False


class ResourceConfig(BaseModel):
    """Housekeeping thresholds for the resource optimizer."""

    model_config = ConfigDict(frozen=True)

    optimization_interval: float = Field(5.0, ge=0, description="Seconds between passes")
    memory_threshold_bytes: int = Field(400 * 1024 * 1024, gt=0)
    prefer_accelerated: bool = True
    batch_size: int = Field(65536, ge=1)
    min_batch_size: int = Field(1024, ge=1)
