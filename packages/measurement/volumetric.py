"""VolumetricCalculator: floor area, ceiling height, volume and bounds."""

from __future__ import annotations

import math
from typing import Iterable, Sequence

import numpy as np

from packages.core.types import Bounds, BuildingBounds, RoomBounds, Surface, SurfaceKind

DEFAULT_CEILING_HEIGHT = 2.5  # metres, used when a room has no walls


class VolumetricCalculator:
    """Pure functions of the surface list; holds no state."""

    @staticmethod
    def floor_area(surfaces: Sequence[Surface]) -> float:
        """Σ width × depth over the floor surfaces.  No floors → 0.0."""
        return math.fsum(
            s.dimensions.x * s.dimensions.z for s in surfaces if s.kind == SurfaceKind.FLOOR
        )

    @staticmethod
    def average_ceiling_height(surfaces: Sequence[Surface]) -> float:
        """Mean wall height, or the 2.5 m fallback when there are no walls."""
        heights = [s.dimensions.y for s in surfaces if s.kind.is_wall]
        if not heights:
            return DEFAULT_CEILING_HEIGHT
        return math.fsum(heights) / len(heights)

    def room_volume(self, surfaces: Sequence[Surface]) -> float:
        return self.floor_area(surfaces) * self.average_ceiling_height(surfaces)

    @staticmethod
    def room_bounds(surfaces: Sequence[Surface]) -> RoomBounds:
        """Union of each wall's half-extent box centred at the origin."""
        walls = [s for s in surfaces if s.kind.is_wall]
        if not walls:
            return RoomBounds.empty()
        half = np.array([s.dimensions.to_array() / 2.0 for s in walls])
        return RoomBounds.from_arrays((-half).min(axis=0), half.max(axis=0))

    @staticmethod
    def building_bounds(rooms: Iterable[Bounds]) -> BuildingBounds:
        """Componentwise min/max over the room bounds.  No rooms → empty sentinel."""
        rooms = list(rooms)
        if not rooms:
            return BuildingBounds.empty()
        mins = np.array([b.min.to_array() for b in rooms]).min(axis=0)
        maxs = np.array([b.max.to_array() for b in rooms]).max(axis=0)
        return BuildingBounds.from_arrays(mins, maxs)
