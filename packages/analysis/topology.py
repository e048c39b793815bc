"""Voxel topology: Euler characteristic, components and cavities.

Occupied voxels are treated as closed unit cubes, so the Euler
characteristic is that of a cubical complex, V − E + F − C.  Voxels that
share only a corner are therefore connected, which is why components use
26-connectivity while the empty complement uses 6-connectivity.
"""

from __future__ import annotations

from itertools import product

import numpy as np
from scipy import ndimage


def occupancy_grid(points: np.ndarray, voxel_size: float) -> np.ndarray:
    """Boolean occupancy grid with a one-voxel empty border."""
    if len(points) == 0:
        return np.zeros((1, 1, 1), dtype=bool)
    ijk = np.floor((points - points.min(axis=0)) / voxel_size).astype(np.int64)
    grid = np.zeros(tuple(ijk.max(axis=0) + 1), dtype=bool)
    grid[ijk[:, 0], ijk[:, 1], ijk[:, 2]] = True
    return np.pad(grid, 1)


def _cells(padded: np.ndarray, spanning: tuple[bool, bool, bool]) -> int:
    """Count lattice cells spanning the given axes that touch an occupied voxel."""
    offsets = [(1,) if span else (0, 1) for span in spanning]
    sizes = [n - 2 if span else n - 1 for n, span in zip(padded.shape, spanning)]
    acc = np.zeros(sizes, dtype=bool)
    for a, b, c in product(*offsets):
        acc |= padded[a:a + sizes[0], b:b + sizes[1], c:c + sizes[2]]
    return int(acc.sum())


def euler_characteristic(grid: np.ndarray) -> int:
    padded = np.pad(grid, 1)
    vertices = _cells(padded, (False, False, False))
    edges = sum(_cells(padded, s) for s in [(True, False, False), (False, True, False), (False, False, True)])
    faces = sum(_cells(padded, s) for s in [(False, True, True), (True, False, True), (True, True, False)])
    cubes = int(grid.sum())
    return vertices - edges + faces - cubes


def connected_components(grid: np.ndarray) -> int:
    _, count = ndimage.label(grid, structure=np.ones((3, 3, 3), dtype=bool))
    return int(count)


def cavities(grid: np.ndarray) -> int:
    """Enclosed empty regions; the outside counts as none of them."""
    _, count = ndimage.label(~np.pad(grid, 1))
    return max(0, int(count) - 1)


def genus(components: int, holes: int, euler: int) -> int:
    """First Betti number b1 = b0 + b2 − χ, clamped at zero."""
    return max(0, components + holes - euler)
