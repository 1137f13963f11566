"""Continuous delay synchronization between a local and a peer audio stream.

The synchronizer first bootstraps the delay estimate with two long alignments,
one on the embedded synchronization tone and one on the payload audio, then
tracks drift every few seconds using peaks reported by the real-time
correlation pipeline.

The control logic is a set of pure transition functions on immutable state
(tick(), complete_alignment(), reset(), ...). ContinuousSynchronizer drives
them from an asyncio timer and executes the effects they return.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from enum import Enum, auto
from typing import TYPE_CHECKING, TypeVar

from tonesync.alignment import AlignmentState, LongAlignmentPipeline
from tonesync.errors import AlignmentInProgress
from tonesync.utils import cancel_task, create_task

if TYPE_CHECKING:
    from tonesync.correlation import CrossCorrelator
    from tonesync.sources import RecordingSource

logger = logging.getLogger(__name__)

BOOTSTRAP_ALIGNMENTS = 2
VALIDITY_HISTORY = 3


class Channel(Enum):
    """Audio channel pair a long alignment is run on."""

    SYNC_SIGNAL = "synchronization signal"
    """Embedded reference tone."""

    PAYLOAD = "real audio"
    """Primary payload audio."""


class SyncPhase(Enum):
    """Phase of the synchronizer control loop."""

    INITIALIZING = "initializing"
    RECORDING_SYNC_SIGNAL = "recording_sync_signal"
    RECORDING_PAYLOAD = "recording_payload"
    TRACKING = "tracking"
    DISABLED = "disabled"


class TrackingStatus(Enum):
    """Outcome of the latest tracking tick."""

    STABLE = auto()
    """Ready, the last three reports were all valid."""

    UNSTABLE = auto()
    """Ready, but at least one of the last three reports was invalid."""

    ADJUSTED = auto()
    """A valid peak was found and the delays were shifted."""


class PeakReportKind(Enum):
    """How a peak report updates the peak state."""

    SET = "set"
    VALID = "valid"
    INVALID = "invalid"


@dataclass(frozen=True, slots=True)
class PeakReport:
    """A peak detected by the real-time correlation pipeline.

    Attributes:
        kind: Whether the peak passed the validity analysis.
        time: Monotonic time of the detection in seconds.
        peak: Peak lag in samples, relative to the currently applied delay.
        sample_rate: Sample rate of the analysed audio in Hz.
    """

    kind: PeakReportKind
    time: float
    peak: float
    sample_rate: float | None = None


@dataclass(frozen=True, slots=True)
class PeakState:
    """Latest peak seen on one channel."""

    time: float = -1.0
    peak: float = -1.0
    prev_peak: float = -1.0
    valid: bool = False


@dataclass(frozen=True, slots=True)
class SynchronizerState(PeakState):
    """Peak state of the synchronization channel plus the payload delay.

    ``total_delay`` is always ``delay_coarse + delay_fine``. A negative delay
    holds back the local stream, a positive one the peer stream.
    """

    delay_coarse: float = -0.1
    delay_fine: float = 0.0
    total_delay: float = -0.1
    auto_adjust: bool = True
    last_valid_time: float = 0.0

    @classmethod
    def create(cls, delay: float = -0.1, auto_adjust: bool = True) -> SynchronizerState:
        """Create the initial state with a given payload delay."""
        return set_delay(cls(auto_adjust=auto_adjust), delay)


_PeakStateT = TypeVar("_PeakStateT", bound=PeakState)


def reduce_peak(state: _PeakStateT, report: PeakReport) -> _PeakStateT:
    """Apply a peak report to a peak state.

    An invalid report only changes a state that is currently valid, so a
    stream of invalid reports does not churn the state.
    """
    if report.kind is PeakReportKind.SET:
        return replace(state, time=report.time, peak=report.peak, prev_peak=state.peak)
    if report.kind is PeakReportKind.VALID:
        updated = replace(
            state, time=report.time, peak=report.peak, prev_peak=state.peak, valid=True
        )
        if isinstance(updated, SynchronizerState):
            updated = replace(updated, last_valid_time=report.time)
        return updated
    if state.valid:
        return replace(
            state, time=report.time, peak=report.peak, prev_peak=state.peak, valid=False
        )
    return state


def set_delay(state: SynchronizerState, delay: float) -> SynchronizerState:
    """Set the total payload delay, split into a 10 ms coarse part and the rest."""
    coarse = round(delay, 2)
    fine = delay - coarse
    if coarse == state.delay_coarse and fine == state.delay_fine:
        return state
    return replace(state, delay_coarse=coarse, delay_fine=fine, total_delay=coarse + fine)


def set_delay_coarse(state: SynchronizerState, coarse: float) -> SynchronizerState:
    """Set the coarse part of the payload delay."""
    if coarse == state.delay_coarse:
        return state
    return replace(state, delay_coarse=coarse, total_delay=coarse + state.delay_fine)


def set_delay_fine(state: SynchronizerState, fine: float) -> SynchronizerState:
    """Set the fine part of the payload delay."""
    if fine == state.delay_fine:
        return state
    return replace(state, delay_fine=fine, total_delay=state.delay_coarse + fine)


def toggle_auto_adjust(state: SynchronizerState) -> SynchronizerState:
    """Flip whether tracking shifts are propagated into the payload delay."""
    return replace(state, auto_adjust=not state.auto_adjust)


@dataclass(frozen=True, slots=True)
class LoopState:
    """Complete state of the synchronizer control loop.

    Attributes:
        synchro: Sync-channel peak state and payload delay.
        phase: Current phase.
        sync_offset: Delay applied to the synchronization channel in seconds.
        bootstraps_done: Number of successful bootstrap alignments.
        in_flight: Channel of the running bootstrap alignment, if any.
        scan_in_flight: Whether a manual scan is running.
        failures: Consecutive failed alignments.
        max_failures: Failures after which the loop disables itself.
        recording_duration: Duration of bootstrap recordings in seconds.
        valid_history: Ring buffer of the last validity bits.
        history_index: Next write position in valid_history.
        tracking: Outcome of the last tracking tick.
        status: Human-readable status.
    """

    synchro: SynchronizerState = SynchronizerState()
    phase: SyncPhase = SyncPhase.INITIALIZING
    sync_offset: float = 0.0
    bootstraps_done: int = 0
    in_flight: Channel | None = None
    scan_in_flight: bool = False
    failures: int = 0
    max_failures: int = 5
    recording_duration: float = 4.1
    valid_history: tuple[bool, ...] = (True,) * VALIDITY_HISTORY
    history_index: int = 0
    tracking: TrackingStatus | None = None
    status: str = "initializing"

    @property
    def stable(self) -> bool:
        """True if all recent validity bits are set."""
        return all(self.valid_history)

    @property
    def alignment_running(self) -> bool:
        """True if any long alignment is in flight."""
        return self.in_flight is not None or self.scan_in_flight


@dataclass(frozen=True, slots=True)
class TickInputs:
    """External inputs of one tick."""

    sample_rate: float
    now: float = 0.0


@dataclass(frozen=True, slots=True)
class StartAlignment:
    """Effect: launch a long alignment on a channel."""

    channel: Channel
    duration: float


@dataclass(frozen=True, slots=True)
class PhaseChanged:
    """Effect: the loop entered a new phase."""

    phase: SyncPhase


@dataclass(frozen=True, slots=True)
class DelaysChanged:
    """Effect: the sync-channel offset or the payload delay changed."""

    sync_offset: float
    total_delay: float


Effect = StartAlignment | PhaseChanged | DelaysChanged


def _enter(state: LoopState, phase: SyncPhase, effects: list[Effect]) -> LoopState:
    if state.phase is not phase:
        effects.append(PhaseChanged(phase))
        return replace(state, phase=phase)
    return state


def tick(state: LoopState, inputs: TickInputs) -> tuple[LoopState, list[Effect]]:
    """Advance the control loop by one period.

    While fewer than two bootstrap alignments succeeded and none is running,
    the next one is launched (sync tone first, then payload). Once both are
    done, the latest sync-channel report is tracked: a valid nonzero peak
    shifts the sync offset by ``peak / sample_rate`` and, with auto adjust,
    the payload delay by the same amount.
    """
    effects: list[Effect] = []
    if state.phase is SyncPhase.DISABLED:
        return state, effects

    if state.bootstraps_done < BOOTSTRAP_ALIGNMENTS:
        if not state.alignment_running:
            if state.bootstraps_done == 0:
                channel, phase = Channel.SYNC_SIGNAL, SyncPhase.RECORDING_SYNC_SIGNAL
            else:
                channel, phase = Channel.PAYLOAD, SyncPhase.RECORDING_PAYLOAD
            state = _enter(state, phase, effects)
            state = replace(state, in_flight=channel, status=f"recording ({channel.value})")
            effects.append(StartAlignment(channel, state.recording_duration))
        return state, effects

    synchro = state.synchro
    history = list(state.valid_history)
    history[state.history_index] = synchro.valid
    state = replace(
        state,
        valid_history=tuple(history),
        history_index=(state.history_index + 1) % len(history),
    )

    if synchro.valid and synchro.peak:
        shift = synchro.peak / inputs.sample_rate
        if synchro.auto_adjust:
            synchro = set_delay(synchro, synchro.total_delay + shift)
        state = replace(
            state,
            synchro=synchro,
            sync_offset=state.sync_offset + shift,
            tracking=TrackingStatus.ADJUSTED,
            status=f"adjusted by {shift:.5f}s",
        )
        effects.append(DelaysChanged(state.sync_offset, synchro.total_delay))
    else:
        stable = state.stable
        state = replace(
            state,
            tracking=TrackingStatus.STABLE if stable else TrackingStatus.UNSTABLE,
            status=f"ready ({'stable' if stable else 'unstable'})",
        )
    return state, effects


def complete_alignment(
    state: LoopState, channel: Channel, result: float
) -> tuple[LoopState, list[Effect]]:
    """Apply the result of a bootstrap alignment.

    A NaN result counts as a failure; reaching max_failures disables the loop.
    The first success sets the sync-channel offset, the second shifts the
    payload delay by the measured offset and starts tracking.
    """
    effects: list[Effect] = []
    if state.in_flight is not channel:
        logger.debug("Ignoring stale alignment result for %s", channel.value)
        return state, effects
    state = replace(state, in_flight=None)

    if math.isnan(result):
        failures = state.failures + 1
        state = replace(state, failures=failures, status="failed")
        if failures >= state.max_failures:
            state = _enter(state, SyncPhase.DISABLED, effects)
            state = replace(state, status=f"disabled after {failures} tries")
        return state, effects

    done = state.bootstraps_done + 1
    state = replace(state, bootstraps_done=done, failures=0, status=f"ready ({channel.value})")
    if done == 1:
        state = replace(state, sync_offset=result)
    else:
        state = replace(state, synchro=set_delay(state.synchro, state.synchro.total_delay + result))
    effects.append(DelaysChanged(state.sync_offset, state.synchro.total_delay))
    if done >= BOOTSTRAP_ALIGNMENTS:
        state = _enter(state, SyncPhase.TRACKING, effects)
    return state, effects


def alignment_progress(state: LoopState, channel: Channel, progress: AlignmentState) -> LoopState:
    """Reflect the progress of the running bootstrap alignment in the status."""
    if state.in_flight is not channel or progress.finished:
        return state
    return replace(state, status=f"{progress.phase.value} ({channel.value})")


def apply_offset(state: LoopState, channel: Channel, offset: float) -> LoopState:
    """Apply an absolute offset, e.g. the result of a manual scan."""
    if channel is Channel.SYNC_SIGNAL:
        return replace(state, sync_offset=offset)
    return replace(state, synchro=set_delay(state.synchro, offset))


def reset(state: LoopState, duration_step: float = 0.0) -> tuple[LoopState, list[Effect]]:
    """Re-arm the loop from scratch, keeping the current delays.

    Clears the failure counter and bootstrap progress, and lengthens the
    bootstrap recordings by duration_step. A manual scan that is still
    running stays in flight.
    """
    effects: list[Effect] = []
    fresh = LoopState(
        synchro=state.synchro,
        sync_offset=state.sync_offset,
        max_failures=state.max_failures,
        recording_duration=state.recording_duration + duration_step,
        phase=state.phase,
        scan_in_flight=state.scan_in_flight,
    )
    return _enter(fresh, SyncPhase.INITIALIZING, effects), effects


@dataclass
class SynchronizerConfig:
    """Configuration of a ContinuousSynchronizer."""

    sample_rate: float = 48_000
    tick_interval: float = 3.0
    recording_duration: float = 4.1
    scan_duration: float = 6.0
    retry_duration_step: float = 1.0
    max_failures: int = 5
    initial_delay: float = -0.1
    auto_adjust: bool = True
    peak_max_age: float = 5.0


ChannelSources = Mapping[Channel, tuple["RecordingSource", "RecordingSource"]]


class ContinuousSynchronizer:
    """Drives the synchronizer state machine from an asyncio timer.

    Each session (start() to stop()) carries a token; results of long
    alignments that finish after their session ended, or after a retry, are
    discarded instead of being applied.
    """

    def __init__(
        self,
        sources: ChannelSources,
        config: SynchronizerConfig | None = None,
        *,
        correlator: CrossCorrelator | None = None,
        bootstrap_sources: ChannelSources | None = None,
        on_phase_change: Callable[[SyncPhase], None] | None = None,
        on_delays_changed: Callable[[float, float], None] | None = None,
    ) -> None:
        """Initialize the synchronizer.

        Args:
            sources: (local, peer) recording sources for each channel.
            config: Loop configuration.
            correlator: Correlator shared by all long alignments.
            bootstrap_sources: Sources that replace sources for the bootstrap
                alignment of a channel. Manual scans always record from
                sources.
            on_phase_change: Called with the new phase on every phase change.
            on_delays_changed: Called with (sync_offset, total_delay) whenever
                either delay changes.
        """
        self._sources = sources
        self._bootstrap_sources = {**sources, **(bootstrap_sources or {})}
        self._config = config or SynchronizerConfig()
        self._correlator = correlator
        self._on_phase_change = on_phase_change
        self._on_delays_changed = on_delays_changed
        self._state = LoopState(
            synchro=SynchronizerState.create(
                self._config.initial_delay, auto_adjust=self._config.auto_adjust
            ),
            max_failures=self._config.max_failures,
            recording_duration=self._config.recording_duration,
        )
        self._payload_peak = PeakState()
        self._session = 0
        self._running = False
        self._tick_task: asyncio.Task[None] | None = None
        self._alignment_task: asyncio.Task[None] | None = None
        self._pipeline: LongAlignmentPipeline | None = None

    @property
    def state(self) -> LoopState:
        """Current loop state."""
        return self._state

    @property
    def synchro(self) -> SynchronizerState:
        """Sync-channel peak state and payload delay."""
        return self._state.synchro

    @property
    def phase(self) -> SyncPhase:
        """Current phase."""
        return self._state.phase

    @property
    def status(self) -> str:
        """Human-readable status."""
        return self._state.status

    @property
    def total_delay(self) -> float:
        """Payload delay in seconds."""
        return self._state.synchro.total_delay

    @property
    def sync_offset(self) -> float:
        """Synchronization channel delay in seconds."""
        return self._state.sync_offset

    @property
    def valid(self) -> bool:
        """Whether the latest sync-channel peak was valid."""
        return self._state.synchro.valid

    @property
    def running(self) -> bool:
        """Whether the periodic loop is active."""
        return self._running

    async def start(self) -> None:
        """Start the periodic loop."""
        if self._running:
            return
        self._running = True
        self._session += 1
        self._state = replace(self._state, in_flight=None)
        self._tick_task = create_task(self._tick_loop(), name="tonesync-tick")
        logger.info(
            "Synchronizer started (tick every %.1fs, recording %.1fs)",
            self._config.tick_interval,
            self._state.recording_duration,
        )

    async def stop(self) -> None:
        """Stop the loop and discard any running long alignment."""
        self._running = False
        self._session += 1
        self._cancel_alignment()
        await cancel_task(self._tick_task)
        await cancel_task(self._alignment_task)
        self._tick_task = None
        self._alignment_task = None
        self._state = replace(self._state, in_flight=None, scan_in_flight=False)
        logger.info("Synchronizer stopped")

    async def _tick_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._config.tick_interval)
            try:
                self.step()
            except Exception:
                logger.exception("Synchronizer tick failed")

    def step(self, now: float | None = None) -> None:
        """Run one tick of the control loop.

        Does nothing while the loop is stopped.
        """
        if not self._running:
            return
        inputs = TickInputs(
            sample_rate=self._config.sample_rate,
            now=time.monotonic() if now is None else now,
        )
        state, effects = tick(self._state, inputs)
        self._update(state, effects)

    def _update(self, state: LoopState, effects: list[Effect]) -> None:
        previous_status = self._state.status
        self._state = state
        if state.status != previous_status:
            logger.debug("Synchronizer status: %s", state.status)
        for effect in effects:
            if isinstance(effect, StartAlignment):
                self._alignment_task = create_task(
                    self._run_bootstrap(effect.channel, effect.duration, self._session),
                    name=f"tonesync-align-{effect.channel.name.lower()}",
                )
            elif isinstance(effect, PhaseChanged):
                logger.info("Synchronizer phase: %s (%s)", effect.phase.value, state.status)
                if self._on_phase_change is not None:
                    self._on_phase_change(effect.phase)
            elif isinstance(effect, DelaysChanged):
                logger.debug(
                    "Delays changed: sync offset %.5fs, payload delay %.5fs",
                    effect.sync_offset,
                    effect.total_delay,
                )
                if self._on_delays_changed is not None:
                    self._on_delays_changed(effect.sync_offset, effect.total_delay)

    def _is_current(self, session: int) -> bool:
        return self._running and session == self._session

    async def _run_bootstrap(self, channel: Channel, duration: float, session: int) -> None:
        source_a, source_b = self._bootstrap_sources[channel]
        pipeline = LongAlignmentPipeline(self._correlator)
        self._pipeline = pipeline

        def on_progress(progress: AlignmentState) -> None:
            if self._is_current(session):
                self._state = alignment_progress(self._state, channel, progress)

        logger.info("Starting long alignment (%s, %.1fs)", channel.value, duration)
        try:
            result = await pipeline.run(duration, source_a, source_b, on_progress)
            outcome = result.result
        except asyncio.CancelledError:
            logger.debug("Long alignment for %s cancelled", channel.value)
            raise
        except Exception:
            logger.exception("Long alignment for %s failed", channel.value)
            outcome = math.nan
        finally:
            if self._pipeline is pipeline:
                self._pipeline = None

        if not self._is_current(session):
            logger.debug("Discarding alignment result from an ended session")
            return
        state, effects = complete_alignment(self._state, channel, outcome)
        if math.isnan(outcome):
            logger.warning(
                "Long alignment for %s failed (%d/%d)",
                channel.value,
                state.failures,
                state.max_failures,
            )
        self._update(state, effects)

    def _cancel_alignment(self) -> None:
        if self._pipeline is not None:
            self._pipeline.cancel()
        if self._alignment_task is not None and not self._alignment_task.done():
            self._alignment_task.cancel()

    def retry(self) -> None:
        """Re-arm the loop after it was disabled (or restart the bootstrap).

        Any running bootstrap alignment is abandoned, the failure counter is
        cleared and the recordings get longer by the configured step.
        """
        if self._state.in_flight is not None:
            self._session += 1
            self._cancel_alignment()
        state, effects = reset(self._state, self._config.retry_duration_step)
        logger.info("Synchronizer re-armed (recording %.1fs)", state.recording_duration)
        self._update(state, effects)

    def report_peak(self, report: PeakReport) -> None:
        """Feed a sync-channel peak from the real-time pipeline."""
        self._state = replace(self._state, synchro=reduce_peak(self._state.synchro, report))

    def report_payload_peak(self, report: PeakReport) -> None:
        """Feed a payload-channel peak from the real-time pipeline."""
        self._payload_peak = reduce_peak(self._payload_peak, report)

    def set_delay(self, delay: float) -> None:
        """Set the payload delay."""
        self._set_synchro(set_delay(self._state.synchro, delay))

    def set_delay_coarse(self, coarse: float) -> None:
        """Set the coarse part of the payload delay."""
        self._set_synchro(set_delay_coarse(self._state.synchro, coarse))

    def set_delay_fine(self, fine: float) -> None:
        """Set the fine part of the payload delay."""
        self._set_synchro(set_delay_fine(self._state.synchro, fine))

    def toggle_auto_adjust(self) -> bool:
        """Toggle auto adjust and return the new value."""
        self._set_synchro(toggle_auto_adjust(self._state.synchro))
        return self._state.synchro.auto_adjust

    def _set_synchro(self, synchro: SynchronizerState) -> None:
        if synchro is self._state.synchro:
            return
        changed = synchro.total_delay != self._state.synchro.total_delay
        effects: list[Effect] = (
            [DelaysChanged(self._state.sync_offset, synchro.total_delay)] if changed else []
        )
        self._update(replace(self._state, synchro=synchro), effects)

    def apply_offset(self, channel: Channel, offset: float) -> None:
        """Apply an absolute offset to a channel (e.g. a scan result)."""
        state = apply_offset(self._state, channel, offset)
        logger.info("Applying absolute offset %.5fs to %s", offset, channel.value)
        self._update(state, [DelaysChanged(state.sync_offset, state.synchro.total_delay)])

    def center_visible_peak(self, now: float | None = None) -> bool:
        """Shift the payload delay by the latest valid payload peak.

        Returns:
            True if a recent valid peak was applied.
        """
        peak = self._payload_peak
        now = time.monotonic() if now is None else now
        if not peak.valid or now - peak.time >= self._config.peak_max_age:
            return False
        shift = peak.peak / self._config.sample_rate
        logger.info("Centering the visible correlation peak, shifting by %.5fs", shift)
        self.set_delay(self._state.synchro.total_delay + shift)
        return True

    async def scan(self, channel: Channel, duration: float | None = None) -> AlignmentState:
        """Run a manual long alignment on a channel.

        The result is returned but not applied; pass it to apply_offset().

        Raises:
            AlignmentInProgress: If another long alignment is running.
        """
        if self._state.alignment_running:
            raise AlignmentInProgress("A long alignment is already running")
        source_a, source_b = self._sources[channel]
        self._state = replace(self._state, scan_in_flight=True)
        pipeline = LongAlignmentPipeline(self._correlator)
        self._pipeline = pipeline
        logger.info("Scanning for correlation peak (%s)", channel.value)
        try:
            return await pipeline.run(
                duration if duration is not None else self._config.scan_duration,
                source_a,
                source_b,
            )
        finally:
            if self._pipeline is pipeline:
                self._pipeline = None
            self._state = replace(self._state, scan_in_flight=False)
