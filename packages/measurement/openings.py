"""OpeningDetector: doors, windows and the like from gaps in wall coverage.

The wall's points are brought into the wall frame and binned into a
coverage grid (``cell_size`` metres).  A cell is *covered* when it holds a
point on the wall plane and *recessed* when it holds a point behind it.
Each 4-connected gap in coverage that is large and compact enough, and is
framed by covered wall on both sides along the run, becomes one opening.
Gaps reaching the left, right or top edge of the wall are missing scan
data and are dropped; only the floor edge may bound an opening.  Position
and size come from the gap's extent and confidence from how well the
surrounding wall is covered, so the same points always give the same
openings.
"""

from __future__ import annotations

import logging
import uuid
from typing import Optional

import numpy as np
from scipy import ndimage

from packages.core.types import (
    OpeningParameters,
    OpeningPosition,
    OpeningType,
    Surface,
    Vec3,
)

logger = logging.getLogger(__name__)

_OPENING_NAMESPACE = uuid.UUID("6f1c3d2e-8b7a-4c55-9a0e-2f3b4c5d6e7f")


def wall_frame(wall: Surface) -> tuple[np.ndarray, np.ndarray, int, int, float, float]:
    """Rotation, translation, run axis, thin axis, length and height of a wall."""
    m = wall.matrix()
    dims = wall.dimensions
    if dims.x >= dims.z:
        return m[:3, :3], m[:3, 3], 0, 2, dims.x, dims.y
    return m[:3, :3], m[:3, 3], 2, 0, dims.z, dims.y


class OpeningDetector:
    def __init__(
        self,
        cell_size: float = 0.1,
        plane_tolerance: float = 0.04,
        niche_depth: float = 0.08,
        min_coverage: float = 0.3,
        min_opening: float = 0.3,
        min_fill: float = 0.6,
        floor_margin: float = 0.15,
        door_min_height: float = 1.8,
        door_max_width: float = 1.3,
    ):
        self.cell_size = cell_size
        self.plane_tolerance = plane_tolerance
        self.niche_depth = niche_depth
        self.min_coverage = min_coverage
        self.min_opening = min_opening
        self.min_fill = min_fill
        self.floor_margin = floor_margin
        self.door_min_height = door_min_height
        self.door_max_width = door_max_width

    def detect(
        self,
        wall: Surface,
        evidence: Optional[np.ndarray],
        floor_level: Optional[float] = None,
    ) -> list[OpeningParameters]:
        """Openings of ``wall`` found in ``evidence`` (world-frame points, (N, 3)).

        Returns an empty list when there is no evidence or too little of the
        wall is covered to tell a gap from missing data.
        """
        if evidence is None or len(evidence) == 0:
            return []
        rotation, translation, run_axis, thin_axis, length, height = wall_frame(wall)
        if length <= 0 or height <= 0:
            return []

        local = (np.asarray(evidence, dtype=np.float64).reshape(-1, 3) - translation) @ rotation
        u = local[:, run_axis] + length / 2.0
        v = local[:, 1] + height / 2.0
        depth = np.abs(local[:, thin_axis])
        within = (u >= 0) & (u < length) & (v >= 0) & (v < height)

        nu = max(1, int(round(length / self.cell_size)))
        nv = max(1, int(round(height / self.cell_size)))
        cell_u, cell_v = length / nu, height / nv
        iu = np.clip((u / cell_u).astype(np.int64), 0, nu - 1)
        iv = np.clip((v / cell_v).astype(np.int64), 0, nv - 1)

        covered = np.zeros((nu, nv), dtype=bool)
        on_plane = within & (depth <= self.plane_tolerance)
        covered[iu[on_plane], iv[on_plane]] = True
        recessed = np.zeros((nu, nv), dtype=bool)
        behind = within & (depth > self.niche_depth)
        recessed[iu[behind], iv[behind]] = True

        coverage = float(covered.mean())
        if coverage < self.min_coverage:
            logger.warning(
                "Wall %s: %.0f%% coverage is too sparse for opening detection",
                wall.identifier, coverage * 100,
            )
            return []

        gaps, _ = ndimage.label(~covered)
        wall_bottom = float(translation[1]) - height / 2.0
        floor_offset = 0.0 if floor_level is None else wall_bottom - floor_level

        found = []
        for label, bbox in enumerate(ndimage.find_objects(gaps), start=1):
            if bbox is None:
                continue
            su, sv = bbox
            component = gaps[bbox] == label
            width = (su.stop - su.start) * cell_u
            tall = (sv.stop - sv.start) * cell_v
            fill = float(component.mean())
            if width < self.min_opening or tall < self.min_opening or fill < self.min_fill:
                continue
            # Gaps at the sides or top are unscanned wall, not openings.
            # Only the floor edge may bound an opening.
            touches_floor = sv.start * cell_v <= self.floor_margin
            if su.start == 0 or su.stop == nu or (sv.stop == nv and not touches_floor):
                continue

            mask = np.zeros_like(covered)
            mask[bbox] = component
            ring = ndimage.binary_dilation(mask) & ~mask
            support = float(covered[ring].mean()) if ring.any() else 0.0
            sides = min(
                float(covered[su.start - 1, sv].mean()),
                float(covered[su.stop, sv].mean()),
            )
            confidence = min(support, sides) * fill
            if confidence <= 0:
                continue

            u0, u1 = su.start * cell_u, su.stop * cell_u
            v0, v1 = sv.start * cell_v, sv.stop * cell_v
            kind = self._classify(
                width, tall, v0, v1, height, cell_v, float(recessed[mask].mean())
            )
            centre_local = np.zeros(3)
            centre_local[run_axis] = (u0 + u1) / 2.0 - length / 2.0
            centre_local[1] = (v0 + v1) / 2.0 - height / 2.0
            centre = rotation @ centre_local + translation
            found.append((u0, v0, kind, width, tall, centre, confidence, max(cell_u, cell_v)))

        found.sort(key=lambda f: (f[0], f[1]))
        openings = []
        for index, (u0, v0, kind, width, tall, centre, confidence, cell) in enumerate(found):
            openings.append(
                OpeningParameters(
                    opening_id=str(uuid.uuid5(_OPENING_NAMESPACE, f"{wall.identifier}/{index}")),
                    type=kind,
                    width=width,
                    height=tall,
                    position=OpeningPosition(
                        distance_from_start=u0,
                        height_from_floor=v0 + floor_offset,
                        center_point=Vec3.from_array(centre),
                    ),
                    wall_id=wall.identifier,
                    confidence=confidence,
                    accuracy=(cell / 2.0) / confidence,
                )
            )
        if openings:
            logger.debug("Wall %s: %d openings", wall.identifier, len(openings))
        return openings

    def _classify(self, width, tall, v0, v1, wall_height, cell_v, recessed_fraction) -> OpeningType:
        if recessed_fraction >= 0.5:
            return OpeningType.NICHE
        touches_floor = v0 <= self.floor_margin
        reaches_top = v1 >= wall_height - cell_v / 2.0
        if touches_floor and tall >= self.door_min_height:
            if width <= self.door_max_width and not reaches_top:
                return OpeningType.DOOR
            return OpeningType.PASSAGE if reaches_top else OpeningType.ARCHWAY
        if touches_floor:
            return OpeningType.UNKNOWN
        return OpeningType.WINDOW
