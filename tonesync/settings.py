"""Settings persistence for tonesync.

Settings are loaded from a JSON file and saved with debouncing, so that
frequent delay updates from the control loop do not hit the disk on every
tick.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, ClassVar

from tonesync.fft import is_power_of_two

logger = logging.getLogger(__name__)

# Debounce delay for saving settings
SAVE_DEBOUNCE_SECONDS = 60.0

DEFAULT_LISTEN_PORT = 8928


@dataclass
class SyncSettings:
    """Persistent settings of the synchronizer daemon.

    Changes are debounced and saved after 60 seconds of inactivity,
    or immediately on flush().
    """

    name: str | None = None
    log_level: str | None = None
    listen_port: int = DEFAULT_LISTEN_PORT
    own_device: str | None = None
    peer_device: str | None = None
    sample_rate: int = 48_000
    tick_interval: float = 3.0
    recording_duration: float = 4.1
    scan_duration: float = 6.0
    retry_duration_step: float = 1.0
    max_failures: int = 5
    peak_threshold: float = 0.8
    peak_width_seconds: float = 0.003
    live_fft_size: int = 4096
    auto_adjust: bool = True
    initial_delay: float = -0.1
    hook_command: str | None = None

    # Internal state (not serialized)
    _settings_file: Path | None = field(default=None, repr=False, compare=False)
    _debounce_save_handle: asyncio.TimerHandle | None = field(
        default=None, repr=False, compare=False
    )

    _internal_fields: ClassVar[set[str]] = {"_settings_file", "_debounce_save_handle"}

    def to_dict(self) -> dict[str, Any]:
        """Convert settings to a dictionary for serialization."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name not in self._internal_fields
        }

    def update(self, **updates: Any) -> bool:
        """Update settings fields. Only changed fields trigger a save.

        None values are ignored. Numeric values are clamped to their valid
        range before being compared.

        Returns:
            True if any field changed.

        Raises:
            TypeError: If an unknown field is given.
        """
        known = {f.name for f in fields(self)} - self._internal_fields
        unknown = set(updates) - known
        if unknown:
            raise TypeError(f"Unknown settings: {', '.join(sorted(unknown))}")

        changed = False
        for field_name, value in updates.items():
            if value is None:
                continue
            value = _clamp(field_name, value)
            if getattr(self, field_name) != value:
                setattr(self, field_name, value)
                changed = True

        if changed:
            self._schedule_save()
        return changed

    async def load(self) -> None:
        """Load settings from disk."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._load)

    async def flush(self) -> None:
        """Immediately save any pending changes to disk."""
        if self._debounce_save_handle is not None:
            self._debounce_save_handle.cancel()
            self._debounce_save_handle = None
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._save)

    def _schedule_save(self) -> None:
        """Schedule a debounced save operation."""
        if self._debounce_save_handle is not None:
            self._debounce_save_handle.cancel()

        loop = asyncio.get_running_loop()
        self._debounce_save_handle = loop.call_later(
            SAVE_DEBOUNCE_SECONDS, self._debounced_save, loop
        )

    def _debounced_save(self, loop: asyncio.AbstractEventLoop) -> None:
        """Called by the timer to save settings in executor."""
        self._debounce_save_handle = None
        loop.run_in_executor(None, self._save)

    def _load(self) -> None:
        """Load settings from the settings file (blocking I/O)."""
        if self._settings_file is None or not self._settings_file.exists():
            logger.debug("Settings file does not exist: %s", self._settings_file)
            return

        try:
            data = json.loads(self._settings_file.read_text())
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Failed to load settings from %s: %s", self._settings_file, e)
            return

        defaults = SyncSettings()
        for f in fields(self):
            if f.name in self._internal_fields:
                continue
            value = data.get(f.name, getattr(defaults, f.name))
            setattr(self, f.name, _clamp(f.name, value) if value is not None else value)
        logger.info(
            "Loaded settings from %s: delay=%.3fs, auto adjust=%s",
            self._settings_file,
            self.initial_delay,
            self.auto_adjust,
        )

    def _save(self) -> None:
        """Save settings to the settings file (blocking I/O)."""
        if self._settings_file is None:
            return
        try:
            self._settings_file.parent.mkdir(parents=True, exist_ok=True)
            self._settings_file.write_text(json.dumps(self.to_dict(), indent=2) + "\n")
            logger.debug("Saved settings to %s", self._settings_file)
        except OSError as e:
            logger.warning("Failed to save settings to %s: %s", self._settings_file, e)


def _clamp(field_name: str, value: Any) -> Any:
    """Clamp a numeric setting to its valid range."""
    if field_name == "listen_port":
        return max(1, min(65535, int(value)))
    if field_name == "sample_rate":
        return max(8000, min(192_000, int(value)))
    if field_name in ("tick_interval", "recording_duration", "scan_duration"):
        return max(0.1, float(value))
    if field_name == "retry_duration_step":
        return max(0.0, float(value))
    if field_name == "max_failures":
        return max(1, int(value))
    if field_name == "peak_threshold":
        return max(0.01, min(0.99, float(value)))
    if field_name == "peak_width_seconds":
        return max(0.0, float(value))
    if field_name == "initial_delay":
        return max(-5.0, min(5.0, float(value)))
    if field_name == "live_fft_size":
        size = max(256, min(65536, int(value)))
        # Round down to a power of two, the FFT engine requires it
        return size if is_power_of_two(size) else 1 << (size.bit_length() - 1)
    return value


async def get_settings(config_dir: str | None = None) -> SyncSettings:
    """Create and load the daemon settings.

    Args:
        config_dir: Optional directory to store settings. Defaults to ~/.config/tonesync.

    Returns:
        SyncSettings instance with settings loaded from disk.
    """
    config_path = Path(config_dir) if config_dir else Path.home() / ".config" / "tonesync"
    settings = SyncSettings(_settings_file=config_path / "settings.json")
    await settings.load()
    return settings
