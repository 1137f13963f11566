from __future__ import annotations

import asyncio
from collections.abc import Callable
from unittest.mock import patch

import numpy as np
import pytest

try:
    import sounddevice  # noqa: F401
except OSError:
    pytest.skip("PortAudio library not available", allow_module_level=True)

from tonesync import wav
from tonesync.audio import (
    AudioDevice,
    DelayLineSource,
    InputCapture,
    SoundDeviceSource,
    resample,
    resolve_device,
)
from tonesync.daemon import (
    PAYLOAD_CHANNEL,
    SYNC_CHANNEL,
    DaemonConfig,
    SyncDaemon,
    delay_line_sources,
    delayed_windows,
    synchronizer_config,
)
from tonesync.errors import RecordingError
from tonesync.settings import SyncSettings
from tonesync.synchronizer import SyncPhase

DEVICE = AudioDevice(index=0, name="test", input_channels=2, sample_rate=16000, is_default=True)


def _ramp_capture(total: int, buffer_seconds: float = 1.0) -> InputCapture:
    capture = InputCapture(DEVICE, 1000, channels=2, buffer_seconds=buffer_seconds)
    values = np.arange(total, dtype=np.float32)
    capture.write(np.stack([values, -values], axis=1))
    return capture


# -- capture ring buffer -------------------------------------------------------


def test_latest_returns_newest_frames() -> None:
    capture = _ramp_capture(300)

    np.testing.assert_array_equal(capture.latest(100, 0), np.arange(200, 300))
    np.testing.assert_array_equal(capture.latest(100, 1), -np.arange(200, 300))
    assert capture.latest(400, 0) is None


def test_latest_with_delay_reads_older_frames() -> None:
    capture = _ramp_capture(300)
    np.testing.assert_array_equal(capture.latest(100, 0, delay=50), np.arange(150, 250))
    assert capture.latest(100, 0, delay=250) is None


def test_latest_handles_wrap_around() -> None:
    capture = _ramp_capture(300)
    values = np.arange(300, 1200, dtype=np.float32)
    capture.write(np.stack([values, -values], axis=1))

    np.testing.assert_array_equal(capture.latest(300, 0), np.arange(900, 1200))
    np.testing.assert_array_equal(capture.latest(100, 0, delay=800), np.arange(300, 400))
    assert capture.latest(100, 0, delay=950) is None


def test_delayed_windows_hold_back_one_side() -> None:
    own = _ramp_capture(500)
    peer = _ramp_capture(500)

    windows = delayed_windows(own, peer, 0, 100, delay=-0.05)
    assert windows is not None
    np.testing.assert_array_equal(windows[0], np.arange(350, 450))
    np.testing.assert_array_equal(windows[1], np.arange(400, 500))

    windows = delayed_windows(own, peer, 0, 100, delay=0.02)
    assert windows is not None
    np.testing.assert_array_equal(windows[0], np.arange(400, 500))
    np.testing.assert_array_equal(windows[1], np.arange(380, 480))

    assert delayed_windows(own, peer, 0, 100, delay=0.45) is None


# -- delay-line recordings -----------------------------------------------------


def test_resample_keeps_a_low_tone() -> None:
    t = np.arange(4800) / 48000
    tone = np.sin(2 * np.pi * 440 * t)

    out = resample(tone, 48000, 16000)

    assert out.shape == (1600,)
    expected = np.sin(2 * np.pi * 440 * np.arange(1600) / 16000)
    np.testing.assert_allclose(out, expected, atol=1e-3)


@pytest.mark.asyncio
async def test_delay_line_source_records_the_held_back_window() -> None:
    capture = InputCapture(DEVICE, 16000, channels=2, buffer_seconds=1.0)
    values = np.linspace(-0.5, 0.5, 16000, dtype=np.float32)
    capture.write(np.stack([values, values], axis=1))

    artifact = await DelayLineSource(capture, 0, lambda: 0.1).record(0.1, 16000)

    # 1600 recorded samples decode to their 1024-sample prefix
    np.testing.assert_allclose(wav.decode(artifact), values[12800:13824], atol=1e-4)


@pytest.mark.asyncio
async def test_delay_line_source_without_enough_audio() -> None:
    capture = _ramp_capture(500)
    with pytest.raises(RecordingError):
        await DelayLineSource(capture, 0, lambda: 0.0).record(0.6, 1000)


def test_delay_line_sources_hold_back_one_side() -> None:
    own, peer = delay_line_sources(
        _ramp_capture(500), _ramp_capture(500), PAYLOAD_CHANNEL, lambda: -0.05
    )
    assert own._delay() == pytest.approx(0.05)
    assert peer._delay() == 0.0


# -- daemon wiring -------------------------------------------------------------


def _daemon() -> SyncDaemon:
    settings = SyncSettings(sample_rate=16000, live_fft_size=1024)
    return SyncDaemon(DaemonConfig(own_device=DEVICE, peer_device=DEVICE, settings=settings))


def test_synchronizer_config_follows_settings() -> None:
    settings = SyncSettings(tick_interval=2.0, max_failures=3, initial_delay=0.2)
    config = synchronizer_config(settings)
    assert config.tick_interval == 2.0
    assert config.max_failures == 3
    assert config.initial_delay == 0.2


def test_live_windows_report_sync_peak() -> None:
    daemon = _daemon()
    base = np.random.default_rng(7).uniform(-0.5, 0.5, (4040, 2)).astype(np.float32)
    daemon._own.write(base[40:])
    daemon._peer.write(base[:4000])

    daemon.process_live()

    synchro = daemon.synchronizer.synchro
    assert synchro.valid
    assert synchro.peak == -40
    assert SYNC_CHANNEL == 1


@pytest.mark.asyncio
async def test_delay_changes_are_persisted_and_reset_tracking() -> None:
    daemon = _daemon()
    base = np.random.default_rng(8).uniform(-0.5, 0.5, (4000, 2)).astype(np.float32)
    daemon._own.write(base)
    daemon._peer.write(base)
    daemon.process_live()
    assert daemon._sync_tracker.smoothed_trace is not None

    daemon.synchronizer.set_delay(0.3)

    assert daemon._config.settings.initial_delay == pytest.approx(0.3)
    assert daemon._sync_tracker.smoothed_trace is None
    await daemon._config.settings.flush()


async def _wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


_SYNC_TONE = wav.encode(np.random.default_rng(10).uniform(-0.5, 0.5, 4096), 16000)


async def _record_sync_tone(self: SoundDeviceSource, duration: float, sample_rate: int) -> bytes:
    return _SYNC_TONE


@pytest.mark.asyncio
@pytest.mark.parametrize("persisted_delay", [-0.1, -0.05, 0.0])
async def test_payload_bootstrap_converges_from_a_persisted_delay(persisted_delay: float) -> None:
    settings = SyncSettings(
        sample_rate=16000,
        tick_interval=3600.0,
        recording_duration=0.6,
        initial_delay=persisted_delay,
    )
    daemon = SyncDaemon(DaemonConfig(own_device=DEVICE, peer_device=DEVICE, settings=settings))
    base = np.random.default_rng(11).uniform(-0.5, 0.5, 16800).astype(np.float32)
    silence = np.zeros(16000, dtype=np.float32)
    # the peer payload lags the local one by 0.05 s
    daemon._own.write(np.stack([base[800:], silence], axis=1))
    daemon._peer.write(np.stack([base[:16000], silence], axis=1))

    sync = daemon.synchronizer
    with patch.object(SoundDeviceSource, "record", _record_sync_tone):
        await sync.start()
        try:
            sync.step()
            await _wait_for(lambda: sync.state.bootstraps_done == 1)
            sync.step()
            await _wait_for(lambda: sync.phase is SyncPhase.TRACKING)
        finally:
            await sync.stop()

    assert sync.sync_offset == pytest.approx(0.0, abs=1e-4)
    assert sync.total_delay == pytest.approx(-0.05, abs=2e-4)
    assert settings.initial_delay == pytest.approx(-0.05, abs=2e-4)
    await settings.flush()


# -- device selection ----------------------------------------------------------

DEVICES = [
    AudioDevice(
        index=0, name="Built-in Microphone", input_channels=1, sample_rate=48000, is_default=False
    ),
    AudioDevice(
        index=3, name="USB Audio CODEC", input_channels=2, sample_rate=48000, is_default=True
    ),
]


def test_resolve_device_by_index_name_and_default() -> None:
    with patch("tonesync.audio.query_devices", return_value=DEVICES):
        assert resolve_device(None).index == 3
        assert resolve_device("0").name == "Built-in Microphone"
        assert resolve_device("usb").index == 3
        with pytest.raises(ValueError):
            resolve_device("7")
        with pytest.raises(ValueError):
            resolve_device("bluetooth")


def test_resolve_device_without_inputs() -> None:
    with patch("tonesync.audio.query_devices", return_value=[]), pytest.raises(ValueError):
        resolve_device(None)
