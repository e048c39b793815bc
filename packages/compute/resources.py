"""Backend selection plus periodic memory and thermal housekeeping.

Housekeeping only changes how work is chunked or which caches are kept.
It never changes a numeric result, so skipping ``optimize_if_needed`` is
always safe.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from packages.compute.backend import AcceleratedBackend, ComputeBackend, CpuBackend
from packages.core.config import ResourceConfig
from packages.core.errors import ComputeBackendUnavailable
from packages.core.types import ThermalState

logger = logging.getLogger(__name__)

_THERMAL_DIVISOR = {
    ThermalState.COOL: 1,
    ThermalState.NORMAL: 1,
    ThermalState.WARM: 2,
    ThermalState.HOT: 4,
}


def nominal_thermal_state() -> ThermalState:
    """Default provider for hosts that expose no thermal signal."""
    return ThermalState.NORMAL


class ResourceOptimizer:
    """Owns the shared compute backend for the pipeline.

    Parameters
    ----------
    config : ResourceConfig, optional
        Interval, memory threshold and batch sizes.
    clock : callable, optional
        Monotonic seconds; injectable for tests.
    thermal_state : callable, optional
        Returns the current :class:`ThermalState`.
    backend : ComputeBackend, optional
        Use this backend instead of selecting one.
    """

    def __init__(
        self,
        config: Optional[ResourceConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        thermal_state: Callable[[], ThermalState] = nominal_thermal_state,
        backend: Optional[ComputeBackend] = None,
    ):
        self.config = config or ResourceConfig()
        self._clock = clock
        self._thermal_state = thermal_state
        self._backend = backend
        self._lock = threading.Lock()
        self._last_pass = clock()

    @property
    def backend(self) -> ComputeBackend:
        """Selected lazily on first use and then reused."""
        with self._lock:
            if self._backend is None:
                self._backend = self._select_backend()
            return self._backend

    def _select_backend(self) -> ComputeBackend:
        if self.config.prefer_accelerated:
            try:
                return AcceleratedBackend(batch_size=self.config.batch_size)
            except ComputeBackendUnavailable as exc:
                logger.warning("Accelerated backend unavailable (%s); using CPU", exc)
        logger.info("🖥️ Using CPU compute backend")
        return CpuBackend(batch_size=self.config.batch_size)

    @property
    def last_pass(self) -> float:
        return self._last_pass

    def optimize_if_needed(self) -> bool:
        """Run one housekeeping pass if the interval has elapsed.

        Returns True when a pass ran.
        """
        now = self._clock()
        with self._lock:
            if now - self._last_pass < self.config.optimization_interval:
                return False
            self._last_pass = now
        backend = self.backend

        allocated = backend.memory_allocated()
        if allocated > self.config.memory_threshold_bytes:
            logger.info(
                "Compute memory %.1f MB above threshold, releasing buffers",
                allocated / (1024 * 1024),
            )
            backend.release_buffers()
        self._adjust_for_thermal_state(backend)
        return True

    def _adjust_for_thermal_state(self, backend: ComputeBackend) -> None:
        state = self._thermal_state()
        divisor = _THERMAL_DIVISOR[state]
        target = max(self.config.min_batch_size, self.config.batch_size // divisor)
        if backend.batch_size != target:
            logger.info("Thermal state %s: batch size %d → %d", state.value, backend.batch_size, target)
            backend.batch_size = target
