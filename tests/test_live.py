from __future__ import annotations

from collections.abc import Callable

import numpy as np
import pytest

from tonesync.correlation import CrossCorrelator
from tonesync.live import LiveCorrelationTracker
from tonesync.synchronizer import PeakReportKind

DelayedPair = Callable[[int, int], tuple[np.ndarray, np.ndarray]]


def test_delayed_window_gives_valid_peak(delayed_pair: DelayedPair) -> None:
    own, peer = delayed_pair(4096, 100)
    tracker = LiveCorrelationTracker(16000)

    report = tracker.process(own, peer, now=3.0)

    assert report.kind is PeakReportKind.VALID
    assert report.peak == -100
    assert report.time == 3.0
    assert report.sample_rate == 16000
    assert tracker.runs == 1
    assert tracker.last_analysis is not None and tracker.last_analysis.is_valid_peak


def test_peak_is_reported_relative_to_applied_delay(delayed_pair: DelayedPair) -> None:
    own, peer = delayed_pair(4096, 100)
    tracker = LiveCorrelationTracker(16000)

    report = tracker.process(own, peer, applied_delay=-96 / 16000)

    assert report.peak == -4


def test_uncorrelated_windows_give_invalid_peak() -> None:
    rng = np.random.default_rng(99)
    tracker = LiveCorrelationTracker(16000)

    report = tracker.process(rng.standard_normal(4096), rng.standard_normal(4096))

    assert report.kind is PeakReportKind.INVALID


def test_trace_is_smoothed_exponentially(delayed_pair: DelayedPair) -> None:
    first = delayed_pair(1024, 10)
    second = delayed_pair(1024, 20)
    reference = CrossCorrelator()
    expected = 0.9 * reference.correlate(*first).trace + 0.1 * reference.correlate(*second).trace

    tracker = LiveCorrelationTracker(16000)
    tracker.process(*first)
    tracker.process(*second)

    assert tracker.smoothed_trace is not None
    np.testing.assert_allclose(tracker.smoothed_trace, expected, atol=1e-12)


def test_window_size_change_restarts_smoothing(delayed_pair: DelayedPair) -> None:
    tracker = LiveCorrelationTracker(16000)
    tracker.process(*delayed_pair(1024, 10))
    own, peer = delayed_pair(2048, 30)

    report = tracker.process(own, peer)

    assert tracker.smoothed_trace is not None
    assert tracker.smoothed_trace.shape == (4096,)
    assert report.peak == -30


def test_reset_forgets_the_smoothed_trace(delayed_pair: DelayedPair) -> None:
    tracker = LiveCorrelationTracker(16000)
    tracker.process(*delayed_pair(1024, 10))
    tracker.reset()
    assert tracker.smoothed_trace is None


def test_peak_width_scales_with_sample_rate() -> None:
    assert LiveCorrelationTracker(48000).peak_width == pytest.approx(144)
