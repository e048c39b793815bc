"""ValidationEngine: plausibility checks, outliers and cross-validation.

Defects become :class:`ValidationIssue` records on the report; nothing in
here raises for bad geometry.  A report is valid exactly when none of its
issues is critical.
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np

from packages.core.config import MeasurementConfiguration
from packages.core.types import (
    AccuracyLevel,
    ArchitecturalParameters,
    CrossValidationResults,
    ValidationIssue,
    ValidationIssueType,
    ValidationReport,
    ValidationSeverity,
)

logger = logging.getLogger(__name__)

_MAD_SCALE = 1.4826  # MAD → standard deviation for normal data
_MIN_OUTLIER_SPREAD = 0.02
_CLIP_SIGMA = 2.0


def accuracy_level(accuracy: float, config: MeasurementConfiguration) -> AccuracyLevel:
    """Bucket an error estimate.  Smaller error never gives a worse tier."""
    if accuracy <= config.excellent_accuracy:
        return AccuracyLevel.EXCELLENT
    if accuracy <= config.good_accuracy:
        return AccuracyLevel.GOOD
    if accuracy <= config.fair_accuracy:
        return AccuracyLevel.FAIR
    return AccuracyLevel.POOR


def sigma_clipped_mean(values: np.ndarray, max_iterations: int, tolerance: float) -> tuple[float, int]:
    """Iteratively drop values beyond 2σ of the running mean.

    Returns the converged mean and how many values were clipped.
    """
    kept = values
    mean = float(values.mean())
    for _ in range(max_iterations):
        std = float(kept.std())
        if std == 0:
            break
        candidate = values[np.abs(values - mean) <= _CLIP_SIGMA * std]
        if len(candidate) == 0:
            break
        new_mean = float(candidate.mean())
        kept = candidate
        if abs(new_mean - mean) < tolerance:
            mean = new_mean
            break
        mean = new_mean
    return mean, len(values) - len(kept)


class ValidationEngine:
    def __init__(self, config: Optional[MeasurementConfiguration] = None):
        self.config = config or MeasurementConfiguration()

    def validate(self, params: ArchitecturalParameters) -> ValidationReport:
        cfg = self.config
        issues: list[ValidationIssue] = []
        issues += self._check_room(params)
        issues += self._check_walls(params)
        if cfg.enable_outlier_detection:
            issues += self._check_outliers(params)

        cross = None
        if cfg.enable_cross_validation and params.walls:
            cross = self.cross_validate_ceiling(params)
            if cross.standard_deviation > cfg.fair_accuracy:
                issues.append(
                    ValidationIssue(
                        type=ValidationIssueType.DIMENSIONAL_INCONSISTENCY,
                        severity=ValidationSeverity.MINOR,
                        description=(
                            f"Ceiling height estimates disagree by "
                            f"{cross.standard_deviation * 1000:.0f} mm"
                        ),
                        suggested_fix="Rescan the upper edge of the walls",
                    )
                )

        overall = self.overall_accuracy(params)
        level = accuracy_level(overall, cfg)
        recommendations = list(dict.fromkeys(i.suggested_fix for i in issues if i.suggested_fix))
        if level in (AccuracyLevel.FAIR, AccuracyLevel.POOR):
            recommendations.append("Rescan slowly and closer to the walls to improve accuracy")

        report = ValidationReport(
            overall_accuracy=overall,
            accuracy_level=level,
            issues=tuple(issues),
            recommendations=tuple(recommendations),
            cross_validation=cross,
        )
        logger.info(
            f"✅ Validation: {level.value}, {len(issues)} issues, "
            f"{'valid' if report.is_valid else 'INVALID'}"
        )
        return report

    def overall_accuracy(self, params: ArchitecturalParameters) -> float:
        """Worst per-wall accuracy; the configured fallback when no wall was measured."""
        if not params.walls:
            return self.config.unmeasured_accuracy
        return max(w.accuracy for w in params.walls)

    # ── checks ───────────────────────────────────────────────────
    def _check_room(self, params: ArchitecturalParameters) -> list[ValidationIssue]:
        cfg = self.config
        issues = []
        if params.floor_area < cfg.min_floor_area:
            issues.append(
                ValidationIssue(
                    type=ValidationIssueType.DIMENSIONAL_INCONSISTENCY,
                    severity=ValidationSeverity.MAJOR,
                    description="Room area is unusually small",
                    suggested_fix="Verify room boundaries",
                )
            )
        if not params.walls:
            issues.append(
                ValidationIssue(
                    type=ValidationIssueType.MISSING_DATA,
                    severity=ValidationSeverity.MAJOR,
                    description="No walls were captured",
                    suggested_fix="Scan the full room perimeter",
                )
            )
        if params.floor_area == 0:
            issues.append(
                ValidationIssue(
                    type=ValidationIssueType.MISSING_DATA,
                    severity=ValidationSeverity.MAJOR,
                    description="No floor surface was captured",
                    suggested_fix="Point the device at the floor during the scan",
                )
            )
        if params.ceiling_height <= 0:
            issues.append(
                ValidationIssue(
                    type=ValidationIssueType.PHYSICAL_IMPOSSIBILITY,
                    severity=ValidationSeverity.CRITICAL,
                    description=f"Ceiling height {params.ceiling_height:.3f} m is not positive",
                )
            )
        elif not cfg.min_ceiling_height <= params.ceiling_height <= cfg.max_ceiling_height:
            issues.append(
                ValidationIssue(
                    type=ValidationIssueType.DIMENSIONAL_INCONSISTENCY,
                    severity=ValidationSeverity.MINOR,
                    description=f"Ceiling height {params.ceiling_height:.2f} m is outside the usual range",
                    suggested_fix="Check that full wall heights were captured",
                )
            )
        return issues

    def _check_walls(self, params: ArchitecturalParameters) -> list[ValidationIssue]:
        cfg = self.config
        issues = []
        for wall in params.walls:
            d = wall.dimensions
            if min(d.x, d.y, d.z) <= 0:
                issues.append(
                    ValidationIssue(
                        type=ValidationIssueType.PHYSICAL_IMPOSSIBILITY,
                        severity=ValidationSeverity.CRITICAL,
                        description=f"Wall has a non-positive dimension ({d.x:.3f}, {d.y:.3f}, {d.z:.3f})",
                        affected_element=wall.wall_id,
                        suggested_fix="Rescan this wall",
                    )
                )
            if wall.confidence < cfg.confidence_threshold:
                issues.append(
                    ValidationIssue(
                        type=ValidationIssueType.LOW_CONFIDENCE,
                        severity=ValidationSeverity.MINOR,
                        description=f"Wall confidence {wall.confidence:.2f} is below {cfg.confidence_threshold:.2f}",
                        affected_element=wall.wall_id,
                        suggested_fix="Rescan this wall from closer range",
                    )
                )
            for opening in wall.openings:
                if opening.width > wall.length or opening.area > wall.length * wall.height:
                    issues.append(
                        ValidationIssue(
                            type=ValidationIssueType.GEOMETRIC_ERROR,
                            severity=ValidationSeverity.MAJOR,
                            description=f"{opening.type.value.capitalize()} is larger than its wall",
                            affected_element=opening.opening_id,
                            suggested_fix="Verify the opening outline",
                        )
                    )
        return issues

    def _check_outliers(self, params: ArchitecturalParameters) -> list[ValidationIssue]:
        if len(params.walls) < 3:
            return []
        heights = np.array([w.height for w in params.walls])
        median = float(np.median(heights))
        mad = float(np.median(np.abs(heights - median)))
        limit = max(3.0 * _MAD_SCALE * mad, _MIN_OUTLIER_SPREAD)
        issues = []
        for wall, h in zip(params.walls, heights):
            if abs(h - median) > limit:
                issues.append(
                    ValidationIssue(
                        type=ValidationIssueType.MEASUREMENT_OUTLIER,
                        severity=ValidationSeverity.MINOR,
                        description=f"Wall height {h:.2f} m deviates from the room median {median:.2f} m",
                        affected_element=wall.wall_id,
                        suggested_fix="Check for obstructions at the top or bottom of this wall",
                    )
                )
        return issues

    def cross_validate_ceiling(self, params: ArchitecturalParameters) -> CrossValidationResults:
        """Ceiling height by mean, median, clipped mean and volume / floor area."""
        cfg = self.config
        heights = np.array([w.height for w in params.walls], dtype=np.float64)
        primary = float(heights.mean())
        clipped, clipped_count = sigma_clipped_mean(heights, cfg.max_iterations, cfg.convergence_threshold)
        alternatives = [float(np.median(heights)), clipped]
        if params.floor_area > 0:
            alternatives.append(params.volume / params.floor_area)

        spread = float(np.std([primary, *alternatives]))
        consistency = float(np.clip(1.0 - spread / primary, 0.0, 1.0)) if primary > 0 else 0.0
        return CrossValidationResults(
            primary_measurement=primary,
            alternative_measurements=tuple(alternatives),
            standard_deviation=spread,
            consistency=consistency,
            outlier_count=clipped_count,
        )
