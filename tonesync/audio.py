"""Audio input devices for tonesync.

This module provides input device enumeration, a live capture ring buffer
feeding the real-time correlation, and the recording sources long alignments
read from, either straight from a device or from the capture.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Final

import numpy as np
import sounddevice

from tonesync import wav
from tonesync.errors import RecordingError

if TYPE_CHECKING:
    from collections.abc import Callable

    from sounddevice import CallbackFlags

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AudioDevice:
    """Represents an audio input device.

    Attributes:
        index: Device index used for selection.
        name: Human-readable device name.
        input_channels: Number of input channels supported.
        sample_rate: Default sample rate in Hz.
        is_default: Whether this is the system default input device.
    """

    index: int
    name: str
    input_channels: int
    sample_rate: float
    is_default: bool


def query_devices() -> list[AudioDevice]:
    """Query all available audio input devices.

    Returns:
        List of AudioDevice objects for devices with input channels.
    """
    devices = sounddevice.query_devices()
    default_input = int(sounddevice.default.device[0])

    result: list[AudioDevice] = []
    for i in range(len(devices)):
        dev = devices[i]
        if dev["max_input_channels"] > 0:
            result.append(
                AudioDevice(
                    index=i,
                    name=str(dev["name"]),
                    input_channels=int(dev["max_input_channels"]),
                    sample_rate=float(dev["default_samplerate"]),
                    is_default=(i == default_input),
                )
            )
    return result


def resolve_device(spec: str | None) -> AudioDevice:
    """Find an input device by index, name substring, or the default.

    Args:
        spec: Device index as a string, part of a device name, or None for the
            system default input.

    Raises:
        ValueError: If no matching input device exists.
    """
    devices = query_devices()
    if not devices:
        raise ValueError("No audio input devices found")
    if spec is None:
        for device in devices:
            if device.is_default:
                return device
        return devices[0]
    if spec.isdigit():
        index = int(spec)
        for device in devices:
            if device.index == index:
                return device
        raise ValueError(f"No input device with index {index}")
    lowered = spec.lower()
    for device in devices:
        if lowered in device.name.lower():
            return device
    raise ValueError(f"No input device matching {spec!r}")


class SoundDeviceSource:
    """Records one channel of an input device for a long alignment."""

    _BLOCKSIZE: Final[int] = 1024
    """Input block size (64 ms at 16 kHz)."""

    def __init__(self, device: AudioDevice, channel: int = 0) -> None:
        """Initialize the source.

        Args:
            device: Input device to record from.
            channel: Zero-based channel of the device to keep.
        """
        self._device = device
        self._channel = channel

    async def record(self, duration: float, sample_rate: int) -> bytes:
        """Record the configured channel for duration seconds.

        Raises:
            sounddevice.PortAudioError: If the stream cannot be opened.
        """
        chunks: list[bytes] = []
        channels = self._channel + 1

        def callback(
            indata: np.ndarray, _frames: int, _time: object, status: CallbackFlags
        ) -> None:
            if status:
                logger.debug("Recording callback status: %s", status)
            chunks.append(indata[:, self._channel].astype("<i2").tobytes())

        stream = sounddevice.InputStream(
            samplerate=sample_rate,
            channels=channels,
            dtype="int16",
            blocksize=self._BLOCKSIZE,
            callback=callback,
            device=self._device.index,
        )
        logger.debug(
            "Recording %.1fs from device %s channel %d", duration, self._device.name, self._channel
        )
        stream.start()
        try:
            await asyncio.sleep(duration)
        finally:
            stream.stop()
            stream.close()
        return wav.encode_pcm(b"".join(chunks), sample_rate)


class InputCapture:
    """Continuously captures a stereo input device into a ring buffer.

    The real-time tracker reads the most recent window of each channel with
    latest(). The sounddevice callback runs on the audio thread; buffer access
    is guarded by a lock.
    """

    def __init__(
        self,
        device: AudioDevice,
        sample_rate: int,
        channels: int = 2,
        buffer_seconds: float = 6.0,
    ) -> None:
        """Initialize the capture.

        Args:
            device: Input device to capture.
            sample_rate: Capture sample rate in Hz.
            channels: Number of channels to capture.
            buffer_seconds: Length of the ring buffer.
        """
        self._device = device
        self._sample_rate = sample_rate
        self._channels = channels
        self._buffer_samples = int(buffer_seconds * sample_rate)
        self._buffer = np.zeros((self._buffer_samples, channels), dtype=np.float32)
        self._write_pos = 0
        self._total_samples = 0
        self._lock = threading.Lock()
        self._stream: sounddevice.InputStream | None = None

    @property
    def sample_rate(self) -> int:
        """Capture sample rate in Hz."""
        return self._sample_rate

    def start(self) -> None:
        """Start the input stream."""
        if self._stream is not None:
            return
        self._stream = sounddevice.InputStream(
            samplerate=self._sample_rate,
            channels=self._channels,
            dtype="float32",
            blocksize=2048,
            callback=self._callback,
            device=self._device.index,
        )
        self._stream.start()
        logger.info(
            "Capturing %d channels from %s at %d Hz",
            self._channels,
            self._device.name,
            self._sample_rate,
        )

    def stop(self) -> None:
        """Stop the input stream."""
        if self._stream is not None:
            try:
                self._stream.stop()
                self._stream.close()
            except Exception:
                logger.exception("Failed to close input stream")
            self._stream = None

    def _callback(
        self, indata: np.ndarray, _frames: int, _time: object, status: CallbackFlags
    ) -> None:
        if status:
            logger.debug("Capture callback status: %s", status)
        self.write(indata)

    def write(self, block: np.ndarray) -> None:
        """Append a (frames, channels) block to the ring buffer."""
        frames = block.reshape(-1, self._channels)[-self._buffer_samples :]
        n = frames.shape[0]
        with self._lock:
            space_at_end = self._buffer_samples - self._write_pos
            if n <= space_at_end:
                self._buffer[self._write_pos : self._write_pos + n] = frames
            else:
                self._buffer[self._write_pos :] = frames[:space_at_end]
                self._buffer[: n - space_at_end] = frames[space_at_end:]
            self._write_pos = (self._write_pos + n) % self._buffer_samples
            self._total_samples += n

    def latest(self, frames: int, channel: int, delay: int = 0) -> np.ndarray | None:
        """Return a window of one channel ending delay samples before the newest.

        Reading with a delay acts as a delay line on the captured stream.
        Returns None until enough audio has been captured.
        """
        needed = frames + delay
        with self._lock:
            if delay < 0 or self._total_samples < needed or needed > self._buffer_samples:
                return None
            end = (self._write_pos - delay) % self._buffer_samples
            start = (end - frames) % self._buffer_samples
            if start < end:
                return self._buffer[start:end, channel].copy()
            return np.concatenate([self._buffer[start:, channel], self._buffer[:end, channel]])


def resample(samples: np.ndarray, from_rate: int, to_rate: int) -> np.ndarray:
    """Resample by cropping or zero-extending the spectrum."""
    if from_rate == to_rate:
        return samples
    n = samples.shape[0]
    m = round(n * to_rate / from_rate)
    spectrum = np.fft.rfft(samples)
    return (np.fft.irfft(spectrum, m) * (m / n)).astype(np.float32)


class DelayLineSource:
    """Records one channel of a running capture through a delay line.

    The recording is the newest window of the capture, held back by the delay
    returned from ``delay`` at the end of the recording. A long alignment on
    two such sources measures the lag that remains after the delay applied
    by the daemon.
    """

    def __init__(self, capture: InputCapture, channel: int, delay: Callable[[], float]) -> None:
        """Initialize the source.

        Args:
            capture: Running capture to read from.
            channel: Zero-based channel of the capture to keep.
            delay: Returns the current hold-back in seconds (not negative).
        """
        self._capture = capture
        self._channel = channel
        self._delay = delay

    async def record(self, duration: float, sample_rate: int) -> bytes:
        """Wait for duration seconds and return the delayed window.

        Raises:
            RecordingError: If the capture does not hold enough audio.
        """
        await asyncio.sleep(duration)
        rate = self._capture.sample_rate
        frames = round(duration * rate)
        delay = round(self._delay() * rate)
        window = self._capture.latest(frames, self._channel, delay=delay)
        if window is None:
            raise RecordingError(
                f"Capture holds less than {duration:.1f}s of audio behind a {delay}-sample delay"
            )
        return wav.encode(resample(window, rate, sample_rate), sample_rate)
