"""Shared test fixtures – synthetic rooms, walls with known gaps, point clouds.

Y is up throughout.  Surface dimensions are (width, height, depth).
"""

from __future__ import annotations

import numpy as np
import pytest

from packages.compute.backend import CpuBackend
from packages.compute.resources import ResourceOptimizer
from packages.core.cloud import PointCloudBuffer
from packages.core.config import ResourceConfig
from packages.core.types import RoomSnapshot, Surface, SurfaceKind, Vec3


def translation(x: float = 0.0, y: float = 0.0, z: float = 0.0) -> tuple[float, ...]:
    """Row-major 4x4 pure translation."""
    return (
        1.0, 0.0, 0.0, x,
        0.0, 1.0, 0.0, y,
        0.0, 0.0, 1.0, z,
        0.0, 0.0, 0.0, 1.0,
    )


def make_surface(
    kind: SurfaceKind,
    width: float,
    height: float,
    depth: float,
    *,
    confidence: float = 0.95,
    at: tuple[float, float, float] = (0.0, 0.0, 0.0),
    identifier: str | None = None,
) -> Surface:
    kwargs = {}
    if identifier is not None:
        kwargs["identifier"] = identifier
    return Surface(
        kind=kind,
        dimensions=Vec3(x=width, y=height, z=depth),
        confidence=confidence,
        transform=translation(*at),
        **kwargs,
    )


def make_room(length: float, width: float, height: float = 2.5, identifier: str | None = None) -> RoomSnapshot:
    """Rectangular room: one floor (length × width) and four walls."""
    surfaces = [
        make_surface(SurfaceKind.FLOOR, length, 0.0, width),
        make_surface(SurfaceKind.WALL, length, height, 0.1, at=(0.0, height / 2, -width / 2)),
        make_surface(SurfaceKind.WALL, length, height, 0.1, at=(0.0, height / 2, width / 2)),
        make_surface(SurfaceKind.WALL, 0.1, height, width, at=(-length / 2, height / 2, 0.0)),
        make_surface(SurfaceKind.WALL, 0.1, height, width, at=(length / 2, height / 2, 0.0)),
    ]
    kwargs = {"identifier": identifier} if identifier else {}
    return RoomSnapshot(surfaces=tuple(surfaces), **kwargs)


def wall_grid_points(
    length: float = 4.0,
    height: float = 2.5,
    cell: float = 0.1,
    gaps: tuple[tuple[float, float, float, float], ...] = (),
    recessed: tuple[tuple[float, float, float, float], ...] = (),
    recess_depth: float = 0.15,
) -> np.ndarray:
    """One point per cell centre of a wall lying in the z=0 plane, centred at the origin.

    ``gaps`` are (u0, u1, v0, v1) rectangles in wall coordinates (metres from
    the left edge and the bottom) left without points.  ``recessed`` rectangles
    get their points pushed ``recess_depth`` behind the plane.
    """
    u = np.arange(cell / 2, length, cell)
    v = np.arange(cell / 2, height, cell)
    uu, vv = np.meshgrid(u, v, indexing="ij")
    uu, vv = uu.ravel(), vv.ravel()
    depth = np.zeros_like(uu)
    keep = np.ones(len(uu), dtype=bool)
    for u0, u1, v0, v1 in gaps:
        keep &= ~((uu >= u0) & (uu < u1) & (vv >= v0) & (vv < v1))
    for u0, u1, v0, v1 in recessed:
        depth[(uu >= u0) & (uu < u1) & (vv >= v0) & (vv < v1)] = recess_depth
    return np.column_stack([uu - length / 2, vv - height / 2, depth])[keep]


def plane_points(
    centre, u_axis, v_axis, u_extent: float, v_extent: float, n: int, rng, noise: float = 0.003
) -> np.ndarray:
    """Generate *n* points on a rectangle with a bit of Gaussian noise."""
    u = rng.uniform(-u_extent / 2, u_extent / 2, size=(n, 1))
    v = rng.uniform(-v_extent / 2, v_extent / 2, size=(n, 1))
    pts = np.asarray(centre) + u * np.asarray(u_axis) + v * np.asarray(v_axis)
    return pts + rng.normal(scale=noise, size=pts.shape)


@pytest.fixture()
def simple_room() -> RoomSnapshot:
    """4 m × 3 m floor and four 2.5 m walls."""
    return make_room(4.0, 3.0, 2.5)


@pytest.fixture()
def door_wall() -> tuple[Surface, np.ndarray]:
    """4 m × 2.5 m wall with a 0.9 m × 2.1 m door gap starting 1 m from the left."""
    wall = make_surface(SurfaceKind.OPENING_WALL, 4.0, 2.5, 0.1, identifier="wall-door")
    return wall, wall_grid_points(gaps=((1.0, 1.9, 0.0, 2.1),))


@pytest.fixture()
def room_cloud() -> PointCloudBuffer:
    """Floor and four walls of a 4 × 2.5 × 3 m room, each tagged with its wall id."""
    rng = np.random.default_rng(7)
    parts = [
        ("floor", plane_points([0, 0, 0], [1, 0, 0], [0, 0, 1], 4.0, 3.0, 600, rng)),
        ("wall-s", plane_points([0, 1.25, -1.5], [1, 0, 0], [0, 1, 0], 4.0, 2.5, 400, rng)),
        ("wall-n", plane_points([0, 1.25, 1.5], [1, 0, 0], [0, 1, 0], 4.0, 2.5, 400, rng)),
        ("wall-w", plane_points([-2, 1.25, 0], [0, 0, 1], [0, 1, 0], 3.0, 2.5, 300, rng)),
        ("wall-e", plane_points([2, 1.25, 0], [0, 0, 1], [0, 1, 0], 3.0, 2.5, 300, rng)),
    ]
    positions = np.vstack([p for _, p in parts])
    ids = np.concatenate([np.full(len(p), name, dtype=object) for name, p in parts])
    return PointCloudBuffer(positions=positions, source_ids=ids)


@pytest.fixture()
def two_blobs() -> PointCloudBuffer:
    """Two dense 0.4 m balls 5 m apart, 300 points each."""
    rng = np.random.default_rng(3)
    a = rng.normal(scale=0.1, size=(300, 3))
    b = rng.normal(scale=0.1, size=(300, 3)) + np.array([5.0, 0.0, 0.0])
    return PointCloudBuffer.from_positions(np.vstack([a, b]))


@pytest.fixture()
def cpu_backend() -> CpuBackend:
    return CpuBackend()


@pytest.fixture()
def cpu_optimizer(cpu_backend: CpuBackend) -> ResourceOptimizer:
    return ResourceOptimizer(ResourceConfig(prefer_accelerated=False), backend=cpu_backend)
