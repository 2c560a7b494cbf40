from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import stats

from ..etl.extract import format_magnitude
from ..schemas import (
    BenfordVerdict,
    ComplianceVerdict,
    FitTest,
    IneligibleReason,
)

DIGITS = np.arange(1, 10)

# P(d) = log10(1 + 1/d) * 100, rounded to one decimal
BENFORD_PERCENTAGES = np.array([30.1, 17.6, 12.5, 9.7, 7.9, 6.7, 5.8, 5.1, 4.6])

# 9 digit classes - 1
DEGREES_OF_FREEDOM = 8

INVALID_DIGIT = 0


def first_digit_of(token) -> int:
    """Returns the first significant digit (1-9) of a token, 0 when there is none.

    Strings are scanned as-is after stripping leading zeros; numbers are
    formatted to their decimal string first.
    """
    if not isinstance(token, str):
        try:
            token = format_magnitude(token)
        except (TypeError, ValueError):
            return INVALID_DIGIT
    for char in token.lstrip("0"):
        if char in "123456789":
            return int(char)
    return INVALID_DIGIT


class FrequencyAccumulator:
    """Leading-digit histogram. Slot 0 counts tokens with no digit 1-9."""

    def __init__(self):
        self._counts = [0] * 10

    def reset(self):
        self._counts = [0] * 10

    def record(self, token) -> int:
        digit = first_digit_of(token)
        self._counts[digit] += 1
        return digit

    def snapshot(self) -> Tuple[int, ...]:
        return tuple(self._counts)

    def total(self) -> int:
        return sum(self._counts)

    def total_valid(self) -> int:
        return sum(self._counts[1:])

    def invalid_count(self) -> int:
        return self._counts[INVALID_DIGIT]

    def percentages(self) -> List[float]:
        valid = self.total_valid()
        if valid == 0:
            return [0.0] * 9
        return [100.0 * c / valid for c in self._counts[1:]]


def parse_magnitudes(values: Iterable) -> pd.Series:
    """Parses tokens/values to floats, dropping anything non-numeric."""
    series = pd.Series(list(values), dtype=object)
    return pd.to_numeric(series, errors="coerce").dropna().astype(float)


def check_compliance(
    values: Iterable,
    min_sample: int = 100,
    min_spread: float = 100.0,
) -> ComplianceVerdict:
    """
    Decides whether a dataset can meaningfully be tested against Benford's Law.

    It needs at least ``min_sample`` numeric values, and the max/min ratio
    must exceed ``min_spread``. A zero or negative minimum makes the ratio
    undefined, which counts as insufficient spread.
    """
    magnitudes = parse_magnitudes(values)
    n = len(magnitudes)

    if n < min_sample:
        return ComplianceVerdict(
            eligible=False, reason=IneligibleReason.INSUFFICIENT_SAMPLE, sample_size=n
        )

    lo, hi = float(magnitudes.min()), float(magnitudes.max())
    if lo <= 0 or hi <= 0:
        return ComplianceVerdict(
            eligible=False, reason=IneligibleReason.INSUFFICIENT_SPREAD, sample_size=n
        )

    spread = hi / lo
    if not spread > min_spread:
        return ComplianceVerdict(
            eligible=False,
            reason=IneligibleReason.INSUFFICIENT_SPREAD,
            sample_size=n,
            spread=spread,
        )

    return ComplianceVerdict(eligible=True, sample_size=n, spread=spread)


def _observed(histogram: Sequence[int]) -> np.ndarray:
    return np.asarray(histogram[1:10], dtype=float)


def chi_squared_test(
    histogram: Sequence[int], significance: float = 0.05
) -> Optional[BenfordVerdict]:
    """
    Chi-squared goodness of fit of digits 1-9 against Benford's Law.

    The p-value is the upper tail of the chi-squared distribution with 8
    degrees of freedom. Returns None when there are no valid digits.
    """
    observed = _observed(histogram)
    total = observed.sum()
    if total == 0:
        return None

    expected = total * BENFORD_PERCENTAGES / 100
    chi_square = float(((observed - expected) ** 2 / expected).sum())
    p_value = float(stats.chi2.sf(chi_square, DEGREES_OF_FREEDOM))

    return BenfordVerdict(
        strategy=FitTest.CHI_SQUARED,
        statistic=chi_square,
        p_value_or_deviation=p_value,
        anomalous=p_value < significance,
        threshold=significance,
    )


def max_deviation_test(
    histogram: Sequence[int], max_deviation: float = 5.0
) -> Optional[BenfordVerdict]:
    """Largest gap, in percentage points, between observed and expected shares."""
    observed = _observed(histogram)
    total = observed.sum()
    if total == 0:
        return None

    observed_percent = 100 * observed / total
    deviation = float(np.abs(observed_percent - BENFORD_PERCENTAGES).max())

    return BenfordVerdict(
        strategy=FitTest.MAX_DEVIATION,
        statistic=deviation,
        p_value_or_deviation=deviation,
        anomalous=deviation > max_deviation,
        threshold=max_deviation,
    )


def run_test(
    histogram: Sequence[int],
    strategy: FitTest,
    significance: float = 0.05,
    max_deviation: float = 5.0,
) -> Optional[BenfordVerdict]:
    if strategy == FitTest.CHI_SQUARED:
        return chi_squared_test(histogram, significance)
    return max_deviation_test(histogram, max_deviation)


def digit_table(histogram: Sequence[int]) -> pd.DataFrame:
    """Per-digit counts and shares next to the Benford expectation."""
    observed = _observed(histogram)
    total = observed.sum()
    percent = 100 * observed / total if total > 0 else np.zeros(9)

    results = pd.DataFrame({
        "digit": DIGITS,
        "count": observed.astype(int),
        "percent": percent,
        "expected_percent": BENFORD_PERCENTAGES,
    })
    results["deviation"] = results["percent"] - results["expected_percent"]
    return results


def expected_table() -> pd.DataFrame:
    return pd.DataFrame({
        "digit": DIGITS,
        "probability": np.log10(1 + 1 / DIGITS),
        "expected_percent": BENFORD_PERCENTAGES,
    })
