"""Hook execution for external script integration.

A hook is a shell command run whenever the synchronizer changes phase. The
synchronizer state is passed in ``TONESYNC_*`` environment variables.
"""

from __future__ import annotations

import asyncio
import logging
import os

logger = logging.getLogger(__name__)


def hook_environment(
    event: str,
    *,
    phase: str | None = None,
    status: str | None = None,
    total_delay: float | None = None,
    sync_offset: float | None = None,
) -> dict[str, str]:
    """Build the environment of a hook process.

    Delays are formatted in seconds with microsecond resolution. Unset values
    are left out of the environment.
    """
    env = os.environ.copy()
    env["TONESYNC_EVENT"] = event
    if phase:
        env["TONESYNC_PHASE"] = phase
    if status:
        env["TONESYNC_STATUS"] = status
    if total_delay is not None:
        env["TONESYNC_TOTAL_DELAY"] = f"{total_delay:.6f}"
    if sync_offset is not None:
        env["TONESYNC_SYNC_OFFSET"] = f"{sync_offset:.6f}"
    return env


async def run_hook(
    command: str,
    *,
    event: str,
    phase: str | None = None,
    status: str | None = None,
    total_delay: float | None = None,
    sync_offset: float | None = None,
) -> None:
    """Execute a hook command for a synchronizer event.

    Failures are logged and never raised, a broken hook must not stop the
    control loop.

    Args:
        command: Shell command to execute.
        event: Event type (the new phase, e.g. "tracking" or "disabled").
        phase: Synchronizer phase at the time of the event.
        status: Human-readable synchronizer status.
        total_delay: Current payload delay in seconds.
        sync_offset: Current synchronization channel offset in seconds.
    """
    env = hook_environment(
        event, phase=phase, status=status, total_delay=total_delay, sync_offset=sync_offset
    )
    logger.debug("Running hook for %s event: %s", event, command)

    try:
        proc = await asyncio.create_subprocess_shell(
            command,
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
    except Exception:
        logger.exception("Failed to execute hook command: %s", command)
        return

    err_text = stderr.decode(errors="replace").strip() if stderr else ""
    if proc.returncode != 0:
        logger.warning(
            "Hook command failed (exit %d): %s\nstderr: %s",
            proc.returncode,
            command,
            err_text or "(empty)",
        )
    elif stdout or err_text:
        logger.debug(
            "Hook %s output: %s",
            event,
            stdout.decode(errors="replace").strip() if stdout else err_text,
        )
