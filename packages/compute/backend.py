"""Compute backends for the point-level kernels.

Two variants sit behind :class:`ComputeBackend`:

* :class:`CpuBackend` – scipy ``cKDTree`` + NumPy.  Always available.
* :class:`AcceleratedBackend` – torch on a CUDA or MPS device.

Callers never pick one themselves; they ask the
:class:`~packages.compute.resources.ResourceOptimizer` for ``.backend``.
Every kernel returns NumPy arrays of the same shape and dtype on both
variants.  Each call blocks until its result is on the host.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod

import numpy as np
from scipy.spatial import cKDTree

from packages.core.errors import ComputeBackendUnavailable

logger = logging.getLogger(__name__)

# Upper bound on pairwise-distance entries materialised at once on device.
_MAX_PAIRWISE = 1 << 25


class ComputeBackend(ABC):
    """Kernels used by filtering, normal estimation, analysis and meshing."""

    name: str = "abstract"

    def __init__(self, batch_size: int = 65536):
        self.batch_size = int(batch_size)

    def knn(self, points: np.ndarray, k: int) -> tuple[np.ndarray, np.ndarray]:
        """k nearest neighbours of every point within the same set.

        Column 0 is the point itself.  ``k`` is clamped to the point count.
        """
        return self.query(points, points, k)

    @abstractmethod
    def query(self, reference: np.ndarray, queries: np.ndarray, k: int) -> tuple[np.ndarray, np.ndarray]:
        """Distances (M, k) and indices (M, k) of the nearest ``reference`` rows."""

    @abstractmethod
    def radius_counts(self, points: np.ndarray, radius: float) -> np.ndarray:
        """Number of *other* points within ``radius`` of each point."""

    @abstractmethod
    def local_frames(self, points: np.ndarray, neighbor_idx: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Eigen-decompose each neighbourhood covariance.

        Returns eigenvalues (N, 3) in ascending order and eigenvectors
        (N, 3, 3) with the vectors in columns.
        """

    @abstractmethod
    def splat_density(
        self, points: np.ndarray, origin: np.ndarray, voxel_size: float, shape: tuple[int, int, int]
    ) -> np.ndarray:
        """Count points per voxel of a grid anchored at ``origin``."""

    def memory_allocated(self) -> int:
        return 0

    def release_buffers(self) -> None:
        """Drop cached device or host buffers."""

    # ── shared helpers ────────────────────────────────────────────
    @staticmethod
    def _voxel_keys(points, origin, voxel_size, shape):
        ijk = np.floor((np.asarray(points) - np.asarray(origin)) / voxel_size).astype(np.int64)
        inside = np.all((ijk >= 0) & (ijk < np.asarray(shape)), axis=1)
        if not inside.all():
            logger.debug("splat: %d points fall outside the grid", int((~inside).sum()))
        ijk = ijk[inside]
        return np.ravel_multi_index((ijk[:, 0], ijk[:, 1], ijk[:, 2]), shape)


class CpuBackend(ComputeBackend):
    """Sequential fallback built on scipy and NumPy."""

    name = "cpu"

    def __init__(self, batch_size: int = 65536):
        super().__init__(batch_size)
        self._lock = threading.Lock()
        self._tree_points: np.ndarray | None = None
        self._tree: cKDTree | None = None

    def _tree_for(self, points: np.ndarray) -> cKDTree:
        # Trees are reused while callers keep passing the same array object.
        with self._lock:
            if self._tree is None or self._tree_points is not points:
                self._tree = cKDTree(points)
                self._tree_points = points
            return self._tree

    def query(self, reference, queries, k):
        reference = np.asarray(reference, dtype=np.float64)
        queries = np.asarray(queries, dtype=np.float64)
        k = max(1, min(int(k), len(reference)))
        dist, idx = self._tree_for(reference).query(queries, k=k)
        return dist.reshape(len(queries), k), idx.reshape(len(queries), k).astype(np.int64)

    def radius_counts(self, points, radius):
        points = np.asarray(points, dtype=np.float64)
        tree = self._tree_for(points)
        counts = tree.query_ball_point(points, r=radius, return_length=True)
        return np.asarray(counts, dtype=np.int64) - 1

    def local_frames(self, points, neighbor_idx):
        points = np.asarray(points, dtype=np.float64)
        n = len(neighbor_idx)
        eigvals = np.empty((n, 3), dtype=np.float64)
        eigvecs = np.empty((n, 3, 3), dtype=np.float64)
        step = max(1, self.batch_size)
        for start in range(0, n, step):
            stop = min(n, start + step)
            neighbours = points[neighbor_idx[start:stop]]
            centred = neighbours - neighbours.mean(axis=1, keepdims=True)
            cov = np.einsum("bki,bkj->bij", centred, centred) / neighbours.shape[1]
            eigvals[start:stop], eigvecs[start:stop] = np.linalg.eigh(cov)
        return np.clip(eigvals, 0.0, None), eigvecs

    def splat_density(self, points, origin, voxel_size, shape):
        keys = self._voxel_keys(points, origin, voxel_size, shape)
        counts = np.bincount(keys, minlength=int(np.prod(shape)))
        return counts.reshape(shape).astype(np.float64)

    def memory_allocated(self) -> int:
        with self._lock:
            if self._tree_points is None:
                return 0
            # Tree nodes roughly double the point storage.
            return int(self._tree_points.nbytes * 2)

    def release_buffers(self) -> None:
        with self._lock:
            self._tree = None
            self._tree_points = None


class AcceleratedBackend(ComputeBackend):
    """torch kernels on a CUDA or Apple MPS device."""

    name = "accelerated"

    def __init__(self, device: str | None = None, batch_size: int = 65536):
        super().__init__(batch_size)
        try:
            import torch
        except ImportError as exc:
            raise ComputeBackendUnavailable("torch is not installed") from exc

        if device is None:
            if torch.cuda.is_available():
                device = "cuda"
            elif getattr(torch.backends, "mps", None) is not None and torch.backends.mps.is_available():
                device = "mps"
            else:
                raise ComputeBackendUnavailable("no CUDA or MPS device available")
        self._torch = torch
        self.device = torch.device(device)
        # MPS has no float64 kernels.
        self.dtype = torch.float32 if self.device.type == "mps" else torch.float64
        logger.info(f"🚀 Accelerated backend on {self.device}")

    def _tensor(self, array):
        return self._torch.as_tensor(np.ascontiguousarray(array), dtype=self.dtype, device=self.device)

    def _rows_per_chunk(self, n_reference: int) -> int:
        return max(1, min(self.batch_size, _MAX_PAIRWISE // max(1, n_reference)))

    def query(self, reference, queries, k):
        torch = self._torch
        ref = self._tensor(reference)
        qry = self._tensor(queries)
        k = max(1, min(int(k), ref.shape[0]))
        step = self._rows_per_chunk(ref.shape[0])
        dists, idxs = [], []
        with torch.no_grad():
            for start in range(0, qry.shape[0], step):
                d = torch.cdist(qry[start:start + step], ref)
                values, index = torch.topk(d, k, dim=1, largest=False, sorted=True)
                dists.append(values.cpu().numpy())
                idxs.append(index.cpu().numpy())
        if not dists:
            return np.empty((0, k)), np.empty((0, k), dtype=np.int64)
        return np.concatenate(dists).astype(np.float64), np.concatenate(idxs).astype(np.int64)

    def radius_counts(self, points, radius):
        torch = self._torch
        pts = self._tensor(points)
        step = self._rows_per_chunk(pts.shape[0])
        out = []
        with torch.no_grad():
            for start in range(0, pts.shape[0], step):
                d = torch.cdist(pts[start:start + step], pts)
                out.append((d <= radius).sum(dim=1).cpu().numpy())
        if not out:
            return np.empty(0, dtype=np.int64)
        return np.concatenate(out).astype(np.int64) - 1

    def local_frames(self, points, neighbor_idx):
        torch = self._torch
        pts = self._tensor(points)
        idx = torch.as_tensor(np.asarray(neighbor_idx), dtype=torch.long, device=self.device)
        vals, vecs = [], []
        step = max(1, self.batch_size)
        with torch.no_grad():
            for start in range(0, idx.shape[0], step):
                neighbours = pts[idx[start:start + step]]
                centred = neighbours - neighbours.mean(dim=1, keepdim=True)
                cov = centred.transpose(1, 2) @ centred / neighbours.shape[1]
                w, v = torch.linalg.eigh(cov)
                vals.append(w.cpu().numpy())
                vecs.append(v.cpu().numpy())
        if not vals:
            return np.empty((0, 3)), np.empty((0, 3, 3))
        eigvals = np.concatenate(vals).astype(np.float64)
        return np.clip(eigvals, 0.0, None), np.concatenate(vecs).astype(np.float64)

    def splat_density(self, points, origin, voxel_size, shape):
        torch = self._torch
        keys = self._voxel_keys(points, origin, voxel_size, shape)
        size = int(np.prod(shape))
        with torch.no_grad():
            counts = torch.bincount(torch.as_tensor(keys, device=self.device), minlength=size)
        return counts.cpu().numpy().reshape(shape).astype(np.float64)

    def memory_allocated(self) -> int:
        torch = self._torch
        if self.device.type == "cuda":
            return int(torch.cuda.memory_allocated(self.device))
        if self.device.type == "mps":
            return int(torch.mps.current_allocated_memory())
        return 0

    def release_buffers(self) -> None:
        torch = self._torch
        if self.device.type == "cuda":
            torch.cuda.empty_cache()
        elif self.device.type == "mps":
            torch.mps.empty_cache()
        logger.info("🧹 Released accelerated backend buffers")
