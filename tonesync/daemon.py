"""Headless synchronizer daemon.

The daemon captures the local and the peer input device, feeds the real-time
peak trackers, drives the ContinuousSynchronizer and exposes the control API.
Both devices are expected to carry the payload audio on channel 0 and the
synchronization tone on channel 1.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from collections.abc import Callable
from dataclasses import dataclass
from typing import Final

import numpy as np
import sounddevice

from tonesync.audio import AudioDevice, DelayLineSource, InputCapture, SoundDeviceSource
from tonesync.correlation import CrossCorrelator
from tonesync.errors import SyncError
from tonesync.hooks import run_hook
from tonesync.live import LiveCorrelationTracker
from tonesync.server import ControlServer
from tonesync.settings import SyncSettings
from tonesync.synchronizer import (
    Channel,
    ContinuousSynchronizer,
    SynchronizerConfig,
    SyncPhase,
)
from tonesync.utils import cancel_task, create_task

logger = logging.getLogger(__name__)

PAYLOAD_CHANNEL: Final[int] = 0
SYNC_CHANNEL: Final[int] = 1

CAPTURE_SECONDS: Final[float] = 30.0
"""Ring buffer length, enough for a payload bootstrap behind the largest delay."""


@dataclass
class DaemonConfig:
    """Configuration for the tonesync daemon."""

    own_device: AudioDevice
    peer_device: AudioDevice
    settings: SyncSettings
    live_interval: float = 0.1


def synchronizer_config(settings: SyncSettings) -> SynchronizerConfig:
    """Build the synchronizer configuration from persisted settings."""
    return SynchronizerConfig(
        sample_rate=settings.sample_rate,
        tick_interval=settings.tick_interval,
        recording_duration=settings.recording_duration,
        scan_duration=settings.scan_duration,
        retry_duration_step=settings.retry_duration_step,
        max_failures=settings.max_failures,
        initial_delay=settings.initial_delay,
        auto_adjust=settings.auto_adjust,
    )


def delayed_windows(
    own: InputCapture,
    peer: InputCapture,
    channel: int,
    frames: int,
    delay: float,
) -> tuple[np.ndarray, np.ndarray] | None:
    """Read one window of each stream with a delay applied to one side.

    A negative delay holds back the local stream, a positive one the peer
    stream. Returns None while not enough audio has been captured.
    """
    delay_samples = round(delay * own.sample_rate)
    own_window = own.latest(frames, channel, delay=max(0, -delay_samples))
    peer_window = peer.latest(frames, channel, delay=max(0, delay_samples))
    if own_window is None or peer_window is None:
        return None
    return own_window, peer_window


def delay_line_sources(
    own: InputCapture,
    peer: InputCapture,
    channel: int,
    delay: Callable[[], float],
) -> tuple[DelayLineSource, DelayLineSource]:
    """Recording sources that apply the current delay like delayed_windows().

    A long alignment on these sources measures the residual lag, which the
    synchronizer adds to the delay.
    """
    return (
        DelayLineSource(own, channel, lambda: max(0.0, -delay())),
        DelayLineSource(peer, channel, lambda: max(0.0, delay())),
    )


class SyncDaemon:
    """tonesync daemon - headless synchronizer with control API."""

    def __init__(self, config: DaemonConfig) -> None:
        """Initialize the daemon."""
        self._config = config
        settings = config.settings
        self._correlator = CrossCorrelator()
        self._own = InputCapture(
            config.own_device, settings.sample_rate, buffer_seconds=CAPTURE_SECONDS
        )
        self._peer = InputCapture(
            config.peer_device, settings.sample_rate, buffer_seconds=CAPTURE_SECONDS
        )
        self._sync_tracker = self._create_tracker()
        self._payload_tracker = self._create_tracker()
        self._synchronizer = ContinuousSynchronizer(
            {
                Channel.SYNC_SIGNAL: (
                    SoundDeviceSource(config.own_device, SYNC_CHANNEL),
                    SoundDeviceSource(config.peer_device, SYNC_CHANNEL),
                ),
                Channel.PAYLOAD: (
                    SoundDeviceSource(config.own_device, PAYLOAD_CHANNEL),
                    SoundDeviceSource(config.peer_device, PAYLOAD_CHANNEL),
                ),
            },
            synchronizer_config(settings),
            correlator=self._correlator,
            bootstrap_sources={
                Channel.PAYLOAD: delay_line_sources(
                    self._own, self._peer, PAYLOAD_CHANNEL, lambda: self._synchronizer.total_delay
                ),
            },
            on_phase_change=self._on_phase_change,
            on_delays_changed=self._on_delays_changed,
        )
        self._hook_tasks: set[asyncio.Task[None]] = set()
        self._shutdown_event: asyncio.Event | None = None

    def _create_tracker(self) -> LiveCorrelationTracker:
        settings = self._config.settings
        return LiveCorrelationTracker(
            settings.sample_rate,
            peak_threshold=settings.peak_threshold,
            peak_width_seconds=settings.peak_width_seconds,
            correlator=self._correlator,
        )

    @property
    def synchronizer(self) -> ContinuousSynchronizer:
        """The synchronizer driven by this daemon."""
        return self._synchronizer

    async def run(self) -> int:
        """Run the daemon until interrupted."""
        config = self._config
        logger.info(
            "Starting tonesync daemon: local %s, peer %s",
            config.own_device.name,
            config.peer_device.name,
        )

        loop = asyncio.get_running_loop()
        self._shutdown_event = asyncio.Event()

        def signal_handler() -> None:
            logger.debug("Received interrupt signal, shutting down...")
            if self._shutdown_event is not None:
                self._shutdown_event.set()

        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signal.SIGINT, signal_handler)
            loop.add_signal_handler(signal.SIGTERM, signal_handler)

        live_task: asyncio.Task[None] | None = None
        try:
            self._own.start()
            self._peer.start()
            async with ControlServer(self._synchronizer, config.settings.listen_port):
                await self._synchronizer.start()
                live_task = create_task(self._live_loop(), name="tonesync-live")
                await self._shutdown_event.wait()
        except (OSError, sounddevice.PortAudioError):
            logger.exception("Failed to start the daemon")
            return 1
        finally:
            with contextlib.suppress(NotImplementedError):
                loop.remove_signal_handler(signal.SIGINT)
                loop.remove_signal_handler(signal.SIGTERM)
            await cancel_task(live_task)
            await self._synchronizer.stop()
            self._own.stop()
            self._peer.stop()
            await self._persist()
            logger.info("Daemon stopped")
        return 0

    async def _live_loop(self) -> None:
        """Feed the latest windows of both streams to the peak trackers."""
        while True:
            await asyncio.sleep(self._config.live_interval)
            try:
                self.process_live()
            except SyncError as err:
                logger.debug("Skipping live window: %s", err)
            except Exception:
                logger.exception("Live correlation failed")

    def process_live(self) -> None:
        """Correlate one window of each channel and report the peaks."""
        frames = self._config.settings.live_fft_size
        synchronizer = self._synchronizer

        windows = delayed_windows(
            self._own, self._peer, SYNC_CHANNEL, frames, synchronizer.sync_offset
        )
        if windows is not None:
            synchronizer.report_peak(self._sync_tracker.process(*windows))

        windows = delayed_windows(
            self._own, self._peer, PAYLOAD_CHANNEL, frames, synchronizer.total_delay
        )
        if windows is not None:
            synchronizer.report_payload_peak(self._payload_tracker.process(*windows))

    def _on_phase_change(self, phase: SyncPhase) -> None:
        command = self._config.settings.hook_command
        if not command:
            return
        task = create_task(
            run_hook(
                command,
                event=phase.value,
                phase=phase.value,
                status=self._synchronizer.status,
                total_delay=self._synchronizer.total_delay,
                sync_offset=self._synchronizer.sync_offset,
            ),
            name=f"tonesync-hook-{phase.value}",
        )
        self._hook_tasks.add(task)
        task.add_done_callback(self._hook_tasks.discard)

    def _on_delays_changed(self, sync_offset: float, total_delay: float) -> None:
        # The smoothed traces refer to the previous delays
        self._sync_tracker.reset()
        self._payload_tracker.reset()
        self._config.settings.update(initial_delay=total_delay)

    async def _persist(self) -> None:
        settings = self._config.settings
        settings.update(
            initial_delay=self._synchronizer.total_delay,
            auto_adjust=self._synchronizer.synchro.auto_adjust,
        )
        await settings.flush()
