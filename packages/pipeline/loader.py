"""Load captured data from disk.

Supported formats
-----------------
* **PLY** point clouds – via the ``plyfile`` library.  An optional integer
  ``surface_index`` vertex property ties each point to a surface.
* **E57** point clouds – via the ``pye57`` library (ASTM E2807).
* **JSON** room snapshots – a serialized :class:`RoomSnapshot`.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Sequence

import numpy as np
import pye57
from plyfile import PlyData

from packages.core.cloud import UNASSIGNED, PointCloudBuffer
from packages.core.types import RoomSnapshot

logger = logging.getLogger(__name__)

SURFACE_INDEX_PROPERTY = "surface_index"


def _source_ids(indices: Optional[np.ndarray], count: int, surface_ids: Optional[Sequence[str]]) -> np.ndarray:
    ids = np.full(count, UNASSIGNED, dtype=object)
    if indices is None or not surface_ids:
        return ids
    lookup = np.asarray(list(surface_ids), dtype=object)
    valid = (indices >= 0) & (indices < len(lookup))
    ids[valid] = lookup[indices[valid]]
    if not valid.all():
        logger.warning(f"⚠️ {int((~valid).sum()):,} points reference an unknown surface index")
    return ids


def load_ply(path: str | Path, surface_ids: Optional[Sequence[str]] = None) -> PointCloudBuffer:
    """Read a binary or ASCII PLY file.

    When the vertices carry ``surface_index`` and ``surface_ids`` is given,
    point *i* is attributed to ``surface_ids[surface_index[i]]``; every other
    point is ``"unassigned"``.
    """
    logger.info(f"📄 Reading PLY file...")
    ply = PlyData.read(str(path))
    vertex = ply["vertex"]
    xs = np.asarray(vertex["x"], dtype=np.float64)
    ys = np.asarray(vertex["y"], dtype=np.float64)
    zs = np.asarray(vertex["z"], dtype=np.float64)
    positions = np.column_stack((xs, ys, zs))
    logger.info(f"✅ PLY file loaded: {len(positions):,} vertices")

    prop_names = [p.name for p in vertex.properties]
    logger.info(f"📋 PLY properties: {prop_names}")
    indices = None
    if SURFACE_INDEX_PROPERTY in prop_names:
        indices = np.asarray(vertex[SURFACE_INDEX_PROPERTY], dtype=np.int64)
        logger.info(f"🏷️ Surface index found for {len(indices):,} points")

    return PointCloudBuffer(positions=positions, source_ids=_source_ids(indices, len(positions), surface_ids))


def load_e57(path: str | Path, scan_index: int = 0, source_id: str = UNASSIGNED) -> PointCloudBuffer:
    """Read one scan of an E57 file.

    E57 carries no surface attribution, so every point gets ``source_id``.
    """
    logger.info(f"📄 Opening E57 file (scan index {scan_index})...")
    e57 = pye57.E57(str(path))
    try:
        logger.info(f"📖 Reading scan data from E57...")
        raw = e57.read_scan_raw(scan_index)
        xs = np.asarray(raw["cartesianX"], dtype=np.float64)
        ys = np.asarray(raw["cartesianY"], dtype=np.float64)
        zs = np.asarray(raw["cartesianZ"], dtype=np.float64)
        positions = np.column_stack((xs, ys, zs))
        logger.info(f"✅ E57 file loaded: {len(positions):,} points")
        return PointCloudBuffer.from_positions(positions, source_id=source_id)
    finally:
        e57.close()
        logger.info(f"🔒 E57 file closed")


def load_point_cloud(path: str | Path, surface_ids: Optional[Sequence[str]] = None) -> PointCloudBuffer:
    """Auto-detect format and return a :class:`PointCloudBuffer`.

    Raises ``ValueError`` for unsupported extensions.
    """
    p = Path(path)
    ext = p.suffix.lower()
    if ext == ".ply":
        return load_ply(p, surface_ids)
    if ext == ".e57":
        return load_e57(p)
    raise ValueError(
        f"Unsupported point-cloud format '{ext}'. Supported: .ply, .e57"
    )


def load_room_snapshot(path: str | Path) -> RoomSnapshot:
    """Read a RoomSnapshot JSON document."""
    snapshot = RoomSnapshot.model_validate_json(Path(path).read_text())
    logger.info(f"📄 Room snapshot {snapshot.identifier}: {len(snapshot.surfaces)} surfaces")
    return snapshot
