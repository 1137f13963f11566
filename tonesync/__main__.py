"""Command line interface for tonesync."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from tonesync.alignment import ALIGNMENT_SAMPLE_RATE, AlignmentPhase, LongAlignmentPipeline
from tonesync.audio import query_devices, resolve_device
from tonesync.daemon import DaemonConfig, SyncDaemon
from tonesync.settings import SyncSettings, get_settings
from tonesync.sources import FileSource

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="tonesync",
        description="Measure and compensate the delay between two audio streams.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: persisted setting or INFO)",
    )
    parser.add_argument(
        "--config-dir",
        default=None,
        help="Directory holding settings.json (default: ~/.config/tonesync)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("devices", help="List audio input devices")

    align = subparsers.add_parser("align", help="Align two mono 16-bit WAV recordings")
    align.add_argument("reference", type=Path, help="Reference recording (A)")
    align.add_argument("other", type=Path, help="Recording whose offset is measured (B)")
    align.add_argument(
        "--sample-rate",
        type=int,
        default=ALIGNMENT_SAMPLE_RATE,
        help="Sample rate of both recordings in Hz (default: %(default)s)",
    )

    run = subparsers.add_parser("run", help="Run the synchronizer daemon")
    run.add_argument("--own-device", default=None, help="Local input device (index or name)")
    run.add_argument("--peer-device", default=None, help="Peer input device (index or name)")
    run.add_argument("--port", type=int, default=None, help="Control API port")
    run.add_argument("--hook", default=None, help="Shell command run on phase changes")

    return parser.parse_args(argv)


def _configure_logging(level: str | None) -> None:
    logging.basicConfig(
        level=getattr(logging, (level or "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def list_devices() -> int:
    """Print the available input devices."""
    devices = query_devices()
    if not devices:
        print("No audio input devices found")  # noqa: T201
        return 1
    for device in devices:
        marker = "*" if device.is_default else " "
        print(  # noqa: T201
            f"{marker} [{device.index}] {device.name} "
            f"({device.input_channels} ch, {device.sample_rate:.0f} Hz)"
        )
    return 0


async def align_files(reference: Path, other: Path, sample_rate: int) -> int:
    """Run one long alignment on two existing recordings and print the offset."""
    pipeline = LongAlignmentPipeline(sample_rate=sample_rate)
    state = await pipeline.run(0.0, FileSource(reference), FileSource(other))
    if state.phase is not AlignmentPhase.READY:
        print(f"Alignment {state.describe()}")  # noqa: T201
        return 1
    print(f"{state.result:.6f}s ({state.result * sample_rate:.2f} samples)")  # noqa: T201
    return 0


async def run_daemon(args: argparse.Namespace, settings: SyncSettings) -> int:
    """Resolve devices from arguments and settings and run the daemon."""
    settings.update(
        own_device=args.own_device,
        peer_device=args.peer_device,
        listen_port=args.port,
        hook_command=args.hook,
    )
    try:
        own_device = resolve_device(settings.own_device)
        peer_device = resolve_device(settings.peer_device)
    except ValueError as err:
        logger.error("%s", err)
        return 1
    if own_device.index == peer_device.index:
        logger.warning("Local and peer streams use the same device: %s", own_device.name)

    daemon = SyncDaemon(
        DaemonConfig(own_device=own_device, peer_device=peer_device, settings=settings)
    )
    return await daemon.run()


async def _async_main(args: argparse.Namespace) -> int:
    if args.command == "run":
        settings = await get_settings(args.config_dir)
        _configure_logging(args.log_level or settings.log_level)
        return await run_daemon(args, settings)

    _configure_logging(args.log_level)
    if args.command == "devices":
        return list_devices()
    return await align_files(args.reference, args.other, args.sample_rate)


def main(argv: list[str] | None = None) -> int:
    """Entry point of the tonesync command."""
    args = parse_args(argv)
    try:
        return asyncio.run(_async_main(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
