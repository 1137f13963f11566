from __future__ import annotations

import json
from pathlib import Path

import pytest

from tonesync.settings import DEFAULT_LISTEN_PORT, SyncSettings, get_settings


@pytest.mark.asyncio
async def test_missing_file_gives_defaults(tmp_path: Path) -> None:
    settings = await get_settings(str(tmp_path))

    assert settings.listen_port == DEFAULT_LISTEN_PORT
    assert settings.recording_duration == 4.1
    assert settings.initial_delay == -0.1
    assert settings.auto_adjust is True
    assert settings.hook_command is None


@pytest.mark.asyncio
async def test_update_flush_and_reload(tmp_path: Path) -> None:
    settings = await get_settings(str(tmp_path))

    assert settings.update(initial_delay=0.25, auto_adjust=False, own_device="USB")
    await settings.flush()

    data = json.loads((tmp_path / "settings.json").read_text())
    assert data["initial_delay"] == 0.25
    assert "_settings_file" not in data

    reloaded = await get_settings(str(tmp_path))
    assert reloaded.initial_delay == 0.25
    assert reloaded.auto_adjust is False
    assert reloaded.own_device == "USB"


@pytest.mark.asyncio
async def test_unchanged_update_does_not_schedule_save(tmp_path: Path) -> None:
    settings = await get_settings(str(tmp_path))

    assert not settings.update(max_failures=5, hook_command=None)
    await settings.flush()
    assert not (tmp_path / "settings.json").exists()


@pytest.mark.asyncio
async def test_numeric_values_are_clamped(tmp_path: Path) -> None:
    settings = await get_settings(str(tmp_path))

    settings.update(peak_threshold=2.0, live_fft_size=5000, max_failures=0, initial_delay=-9.0)

    assert settings.peak_threshold == 0.99
    assert settings.live_fft_size == 4096
    assert settings.max_failures == 1
    assert settings.initial_delay == -5.0
    await settings.flush()


def test_unknown_setting_raises() -> None:
    with pytest.raises(TypeError):
        SyncSettings().update(volume=3)


@pytest.mark.asyncio
async def test_corrupt_file_keeps_defaults(tmp_path: Path) -> None:
    (tmp_path / "settings.json").write_text("{not json")

    settings = await get_settings(str(tmp_path))

    assert settings.sample_rate == 48000


@pytest.mark.asyncio
async def test_loaded_values_are_clamped(tmp_path: Path) -> None:
    (tmp_path / "settings.json").write_text(json.dumps({"peak_threshold": 5, "tick_interval": 1.5}))

    settings = await get_settings(str(tmp_path))

    assert settings.peak_threshold == 0.99
    assert settings.tick_interval == 1.5
    assert settings.listen_port == DEFAULT_LISTEN_PORT
