"""Assemble measured pieces into ArchitecturalParameters and BuildingParametrics."""

from __future__ import annotations

import math
from typing import Sequence

from packages.core.types import (
    ArchitecturalParameters,
    BuildingParametrics,
    RoomBounds,
    WallParameters,
)
from packages.measurement.volumetric import VolumetricCalculator


def build_architectural_parameters(
    *,
    walls: Sequence[WallParameters],
    floor_area: float,
    ceiling_height: float,
    volume: float,
    room_bounds: RoomBounds,
) -> ArchitecturalParameters:
    """Assemble one room.  Openings are listed wall by wall, in wall order."""
    return ArchitecturalParameters(
        walls=tuple(walls),
        openings=tuple(o for w in walls for o in w.openings),
        floor_area=floor_area,
        ceiling_height=ceiling_height,
        volume=volume,
        room_bounds=room_bounds,
    )


def build_building_parametrics(
    rooms: Sequence[ArchitecturalParameters],
    skipped_room_ids: Sequence[str] = (),
) -> BuildingParametrics:
    """Sum areas and volumes and union the bounds; rooms keep their order."""
    return BuildingParametrics(
        rooms=tuple(rooms),
        total_floor_area=math.fsum(r.floor_area for r in rooms),
        total_volume=math.fsum(r.volume for r in rooms),
        building_bounds=VolumetricCalculator.building_bounds(r.room_bounds for r in rooms),
        skipped_room_ids=tuple(skipped_room_ids),
    )
