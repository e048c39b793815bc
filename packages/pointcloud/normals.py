"""Per-point normals and curvature from local covariance."""

from __future__ import annotations

import logging

import numpy as np

from packages.compute.backend import ComputeBackend
from packages.core.cloud import PointCloudBuffer
from packages.core.errors import InsufficientData

logger = logging.getLogger(__name__)


def estimate_normals(buffer: PointCloudBuffer, backend: ComputeBackend, k: int = 16) -> PointCloudBuffer:
    """Estimate surface normals using PCA on *k*-nearest neighbours.

    The normal is the eigenvector of the smallest covariance eigenvalue and
    the curvature is the surface variation λ0 / (λ0 + λ1 + λ2).  Normals are
    flipped to face the cloud centroid, i.e. the room interior.  Every
    normal depends only on raw positions, so points are independent.
    """
    if buffer.count < 3:
        raise InsufficientData(f"Need at least 3 points for normals, got {buffer.count}")

    points = buffer.positions
    _, idx = backend.knn(points, min(k, buffer.count))
    eigvals, eigvecs = backend.local_frames(points, idx)

    normals = eigvecs[:, :, 0]
    norms = np.linalg.norm(normals, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    normals = normals / norms

    to_centre = points.mean(axis=0) - points
    flip = np.einsum("ij,ij->i", normals, to_centre) < 0
    normals[flip] *= -1.0

    total = eigvals.sum(axis=1)
    curvature = np.divide(eigvals[:, 0], total, out=np.zeros(len(total)), where=total > 0)

    logger.debug("Estimated %d normals (k=%d)", buffer.count, k)
    return buffer.with_normals(normals, curvature)


def eigen_features(eigvals: np.ndarray) -> tuple[float, float, float]:
    """Linearity, planarity and scattering of one covariance spectrum.

    Computed on the principal standard deviations, so a 4 m × 2.5 m wall
    still reads as planar.  ``eigvals`` may be in any order.  A degenerate
    spectrum gives zeros.
    """
    s1, s2, s3 = np.sqrt(np.sort(np.clip(np.asarray(eigvals, dtype=np.float64), 0.0, None))[::-1])
    if s1 <= 0:
        return 0.0, 0.0, 0.0
    return float((s1 - s2) / s1), float((s2 - s3) / s1), float(s3 / s1)


def fit_plane(points: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Least-squares plane through ``points``.

    Returns (centroid, unit normal, eigenvalues ascending).
    """
    centroid = points.mean(axis=0)
    centred = points - centroid
    cov = centred.T @ centred / max(1, len(points))
    eigvals, eigvecs = np.linalg.eigh(cov)
    return centroid, eigvecs[:, 0], np.clip(eigvals, 0.0, None)
