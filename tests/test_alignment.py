from __future__ import annotations

import asyncio
import math
from collections.abc import Callable

import numpy as np
import pytest

from tonesync.alignment import AlignmentPhase, AlignmentState, LongAlignmentPipeline
from tonesync.sources import BufferSource

DelayedPair = Callable[[int, int], tuple[np.ndarray, np.ndarray]]


class _GarbageSource:
    async def record(self, duration: float, sample_rate: int) -> bytes:
        return b"not a wav file at all, definitely longer than forty-four bytes"


class _BrokenSource:
    async def record(self, duration: float, sample_rate: int) -> bytes:
        raise OSError("device unplugged")


class _SlowSource:
    def __init__(self) -> None:
        self.closed = False

    async def record(self, duration: float, sample_rate: int) -> bytes:
        try:
            await asyncio.sleep(duration)
        finally:
            self.closed = True
        return b""


@pytest.mark.asyncio
async def test_alignment_measures_delay_between_sources(delayed_pair: DelayedPair) -> None:
    a, b = delayed_pair(8192, 800)
    phases: list[AlignmentPhase] = []

    state = await LongAlignmentPipeline().run(
        4.1, BufferSource(a), BufferSource(b), lambda s: phases.append(s.phase)
    )

    assert phases == [AlignmentPhase.RECORDING, AlignmentPhase.PROCESSING, AlignmentPhase.READY]
    assert state.phase is AlignmentPhase.READY
    assert state.result == pytest.approx(-0.05, abs=1e-4)
    assert state.result_samples == pytest.approx(-800, abs=2)
    assert state.artifacts[0] is not None and state.artifacts[1] is not None
    assert state.correlation is not None and state.correlation.shape == (16384,)
    assert state.percent == 100
    assert state.describe().startswith("ready:")


@pytest.mark.asyncio
async def test_four_second_recordings_with_zero_padded_lag() -> None:
    # 4 s at 16 kHz decodes to the 32768-sample power-of-two prefix
    rng = np.random.default_rng(7)
    a = rng.uniform(-0.5, 0.5, 64000)
    b = np.concatenate([np.zeros(800), a[:-800]])

    state = await LongAlignmentPipeline().run(4.0, BufferSource(a), BufferSource(b))

    assert state.phase is AlignmentPhase.READY
    assert state.result == pytest.approx(-0.05, abs=1e-4)
    assert state.correlation is not None and state.correlation.shape == (65536,)


@pytest.mark.asyncio
async def test_recordings_of_different_length_are_truncated(delayed_pair: DelayedPair) -> None:
    a, b = delayed_pair(4096, 100)
    state = await LongAlignmentPipeline().run(1.0, BufferSource(a), BufferSource(b[:3000]))

    assert state.phase is AlignmentPhase.READY
    assert state.result_samples == pytest.approx(-100, abs=2)
    # both decoded to 2048 samples, padded to 4096
    assert state.correlation is not None and state.correlation.shape == (4096,)


@pytest.mark.asyncio
async def test_undecodable_recording_fails_with_nan() -> None:
    snapshots: list[AlignmentState] = []
    state = await LongAlignmentPipeline().run(
        1.0, _GarbageSource(), BufferSource(np.zeros(1024)), snapshots.append
    )

    assert state.phase is AlignmentPhase.FAILED
    assert math.isnan(state.result)
    assert state.artifacts[0] is not None
    assert state.error is not None
    assert [s.phase for s in snapshots][-1] is AlignmentPhase.FAILED
    assert state.describe().startswith("failed")


@pytest.mark.asyncio
async def test_recording_error_fails_with_nan() -> None:
    state = await LongAlignmentPipeline().run(
        1.0, _BrokenSource(), BufferSource(np.zeros(1024))
    )

    assert state.phase is AlignmentPhase.FAILED
    assert math.isnan(state.result)
    assert state.error is not None and state.error.startswith("recording failed")


@pytest.mark.asyncio
async def test_recording_error_stops_the_other_recording() -> None:
    slow = _SlowSource()

    async with asyncio.timeout(2.0):
        state = await LongAlignmentPipeline().run(30.0, _BrokenSource(), slow)

    assert state.phase is AlignmentPhase.FAILED
    assert slow.closed


@pytest.mark.asyncio
async def test_cancelled_alignment_never_reports_ready(delayed_pair: DelayedPair) -> None:
    a, b = delayed_pair(1024, 10)
    pipeline = LongAlignmentPipeline()
    phases: list[AlignmentPhase] = []

    task = asyncio.create_task(
        pipeline.run(
            0.2,
            BufferSource(a, simulate_duration=True),
            BufferSource(b, simulate_duration=True),
            lambda s: phases.append(s.phase),
        )
    )
    await asyncio.sleep(0.05)
    pipeline.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert phases == [AlignmentPhase.RECORDING]


def test_state_progress_indicator() -> None:
    state = AlignmentState(phase=AlignmentPhase.RECORDING, duration=4.1)
    assert state.percent == 0
    assert not state.finished
    state.phase = AlignmentPhase.PROCESSING
    assert state.percent == 75
    state.phase = AlignmentPhase.FAILED
    assert state.finished
    assert math.isnan(state.result)
