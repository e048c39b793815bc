"""Error taxonomy for the measurement pipeline.

Only a few of these ever reach a caller as an exception.  Geometry defects
are reported as :class:`~packages.core.types.ValidationIssue` records, the
accelerated backend's absence is absorbed by the resource optimizer, and a
declined reconstruction is returned as ``None``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from packages.core.types import ValidationReport


class MeasurementError(Exception):
    """Base class for every error raised by the pipeline."""


class InsufficientData(MeasurementError):
    """Empty walls, floors or points where a result is expected."""


class InvalidConfidence(MeasurementError):
    """A confidence of zero or below blocks the accuracy estimate."""

    def __init__(self, confidence: float, element: str | None = None):
        self.confidence = confidence
        self.element = element
        target = f" for {element}" if element else ""
        super().__init__(f"Confidence must be > 0{target}, got {confidence}")


class ComputeBackendUnavailable(MeasurementError):
    """The accelerated compute path cannot be used on this machine."""


class ReconstructionUnavailable(MeasurementError):
    """Mesh generation declined to produce output for the given clusters."""


class ValidationFailed(MeasurementError):
    """A validation report contains at least one critical issue."""

    def __init__(self, report: "ValidationReport"):
        self.report = report
        critical = [i.description for i in report.critical_issues]
        super().__init__("Validation failed: " + "; ".join(critical))
