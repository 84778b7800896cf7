"""
Equivalence checks between reference (CPU) and accelerated result vectors.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Sequence

import numpy as np

from common.config import Detail
from common.results import FrameStatistics

WARN_LIMIT_PERCENT = 1.0


class ValidationOutcome(Enum):
    PASS = "PASS"
    WARN = "PASS_WITH_WARNING"
    FAIL = "FAIL"


@dataclass(frozen=True)
class ValidationReport:
    name: str
    error_percent: float
    outcome: ValidationOutcome
    length: int

    @property
    def passed(self) -> bool:
        return self.outcome is not ValidationOutcome.FAIL

    def summary(self) -> str:
        if self.outcome is ValidationOutcome.PASS:
            return f"{self.name}: PASS"
        verdict = "PASS..." if self.outcome is ValidationOutcome.WARN else "FAIL..."
        return f"{self.name}: {verdict} Error = {self.error_percent:.6g} %"


def relative_error_percent(
    candidate: Sequence[float],
    reference: Sequence[float],
    nonzero_denominator: bool = False,
) -> float:
    """
    Mean relative error of candidate against reference, in percent.

    Entries whose reference value is 0 contribute nothing to the sum. By default the sum is
    still divided by the full length, which matches the historical validation output but
    under-counts error on vectors with many zero references (e.g. flat blocks with zero
    variance). nonzero_denominator=True divides by the number of non-zero references.
    """
    cand = np.asarray(candidate, dtype=np.float64).reshape(-1)
    ref = np.asarray(reference, dtype=np.float64).reshape(-1)
    if cand.shape != ref.shape:
        raise ValueError(f"Length mismatch: candidate {cand.size} vs reference {ref.size}")
    if ref.size == 0:
        return 0.0

    nonzero = ref != 0
    total = float(np.sum(np.abs(ref[nonzero] - cand[nonzero]) / ref[nonzero]))
    denominator = int(nonzero.sum()) if nonzero_denominator else ref.size
    if denominator == 0:
        return 0.0
    return total / denominator * 100.0


def classify(error_percent: float) -> ValidationOutcome:
    if error_percent == 0:
        return ValidationOutcome.PASS
    if error_percent < WARN_LIMIT_PERCENT:
        return ValidationOutcome.WARN
    return ValidationOutcome.FAIL


def validate_vector(
    candidate: Sequence[float],
    reference: Sequence[float],
    name: str = "vector",
    nonzero_denominator: bool = False,
) -> ValidationReport:
    error = relative_error_percent(candidate, reference, nonzero_denominator)
    return ValidationReport(
        name=name,
        error_percent=error,
        outcome=classify(error),
        length=len(reference),
    )


def vectors_equal(candidate: Sequence[float], reference: Sequence[float]) -> bool:
    """Exact element-wise equality; vectors of different length are never equal."""
    cand = np.asarray(candidate).reshape(-1)
    ref = np.asarray(reference).reshape(-1)
    return cand.shape == ref.shape and bool(np.array_equal(cand, ref))


def validate_frame(
    reference: FrameStatistics,
    candidate: FrameStatistics,
    detail: Detail = Detail.INCLUDE,
    nonzero_denominator: bool = False,
) -> List[ValidationReport]:
    """
    Validate every channel present in the reference.

    Histograms are always compared; per-block averages and variances only for
    Detail.INCLUDE.
    """
    reports = []
    for channel, ref in reference.items():
        if channel not in candidate:
            raise KeyError(f"Candidate results lack channel {channel.name}")
        cand = candidate[channel]
        prefix = channel.name
        pairs = []
        if detail is Detail.INCLUDE:
            pairs.append(("Average", cand.average, ref.average))
            pairs.append(("Variance", cand.variance, ref.variance))
        pairs.append(("Average Hist", cand.average_histogram, ref.average_histogram))
        pairs.append(("Variance Hist", cand.variance_histogram, ref.variance_histogram))

        for label, c, r in pairs:
            if c is None or r is None:
                raise ValueError(f"{prefix} {label} missing; compute with Detail.INCLUDE")
            reports.append(
                validate_vector(c, r, f"{prefix} {label}", nonzero_denominator)
            )
    return reports


def all_passed(reports: Sequence[ValidationReport]) -> bool:
    return all(r.passed for r in reports)
