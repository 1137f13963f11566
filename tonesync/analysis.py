"""Validity checks for correlation traces.

A correlation peak is only trusted when it stands alone: the peak sample must
cross a threshold derived from the trace's value range while every sample
outside a small exclusion zone around the peak stays inside the thresholds.
Several competing high-magnitude lags mean the estimate is ambiguous.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np

from tonesync.errors import InvalidInput


@dataclass(frozen=True, slots=True)
class AnalysisResult:
    """Value range, thresholds and verdict of one trace analysis."""

    min: float
    max: float
    threshold_up: float
    threshold_down: float
    is_valid_peak: bool


class RunningAverage:
    """Exponential smoother of the form ``avg = (x + (size - 1) * avg) / size``.

    The first value seeds the average. NaN values are returned unchanged and
    leave the accumulator untouched.
    """

    def __init__(self, size: int = 100) -> None:
        """Initialize the smoother.

        Args:
            size: Inverse weight of each new value (1/size).
        """
        self._size = size
        self._value: float | None = None

    @property
    def value(self) -> float | None:
        """Current average, None before the first value."""
        return self._value

    def update(self, value: float) -> float:
        """Add a value and return the new average."""
        if math.isnan(value):
            return value
        if self._value is None:
            self._value = value
        else:
            self._value = (value + (self._size - 1) * self._value) / self._size
        return self._value


class SignalAnalyzer:
    """Decides whether the peak of a correlation trace is isolated.

    The mean level of successive traces is smoothed across calls, so one
    analyzer should be used per stream of traces. A new analyzer starts with a
    fresh average.
    """

    def __init__(self, smoothing: int = 100) -> None:
        """Initialize the analyzer.

        Args:
            smoothing: Window of the running average of the trace mean.
        """
        self._average = RunningAverage(smoothing)

    def analyse(
        self,
        trace: np.ndarray,
        peak_index: int,
        peak_threshold: float,
        peak_width: float,
    ) -> AnalysisResult:
        """Analyse a correlation trace around a detected peak.

        Args:
            trace: Correlation values, lag 0 at index 0.
            peak_index: Peak lag; negative values count from the end of the trace.
            peak_threshold: Fraction of the (centred) value range a sample must
                reach to count as a peak, in (0, 1).
            peak_width: Samples within this circular distance of the peak are
                allowed to exceed the thresholds.

        Returns:
            The analysis result.

        Raises:
            InvalidInput: If the trace is empty or the threshold is out of range.
        """
        data = np.asarray(trace, dtype=np.float64).ravel()
        length = data.shape[0]
        if length == 0:
            raise InvalidInput("Cannot analyse an empty trace")
        if not 0.0 < peak_threshold < 1.0:
            raise InvalidInput(f"Peak threshold must be in (0, 1), got {peak_threshold}")

        min_value = float(data.min())
        max_value = float(data.max())
        average = self._average.update(float(data.sum()) / length)

        # keep the average in the middle of the value range
        if max_value - average > average - min_value:
            min_value = average - (max_value - average)
        else:
            max_value = average + (average - min_value)
        if min_value == max_value:
            min_value = min_value * 0.999999999
            max_value = max_value * 1.000000001 + 0.00000000001

        threshold_up = (max_value - min_value) * peak_threshold + min_value
        threshold_down = max_value - (max_value - min_value) * peak_threshold

        wrapped_peak = int(peak_index) % length
        peak_value = data[wrapped_peak]
        crosses = bool(peak_value > threshold_up or peak_value < threshold_down)

        is_valid_peak = False
        if crosses:
            forward = np.abs(np.arange(length) - wrapped_peak)
            distance = np.minimum(forward, length - forward)
            outside = distance > peak_width
            quiet = (data < threshold_up) & (data > threshold_down)
            is_valid_peak = bool(np.all(quiet[outside]))

        return AnalysisResult(
            min=min_value,
            max=max_value,
            threshold_up=threshold_up,
            threshold_down=threshold_down,
            is_valid_peak=is_valid_peak,
        )
