"""HTTP control API for a running synchronizer."""

from __future__ import annotations

import logging
import math
from typing import Any

from aiohttp import web

from tonesync.errors import AlignmentInProgress
from tonesync.synchronizer import Channel, ContinuousSynchronizer

logger = logging.getLogger(__name__)

CHANNELS: dict[str, Channel] = {
    "sync": Channel.SYNC_SIGNAL,
    "payload": Channel.PAYLOAD,
}
"""URL names of the channels accepted by /scan/{channel}."""

DELAY_KEYS = ("total", "coarse", "fine")


def _finite_or_none(value: float) -> float | None:
    return value if math.isfinite(value) else None


def status_payload(synchronizer: ContinuousSynchronizer) -> dict[str, Any]:
    """Build the JSON body of GET /status."""
    state = synchronizer.state
    synchro = state.synchro
    return {
        "phase": state.phase.value,
        "status": state.status,
        "running": synchronizer.running,
        "stable": state.stable,
        "valid": synchro.valid,
        "failures": state.failures,
        "max_failures": state.max_failures,
        "recording_duration": state.recording_duration,
        "sync_offset": state.sync_offset,
        "delay": {
            "total": synchro.total_delay,
            "coarse": synchro.delay_coarse,
            "fine": synchro.delay_fine,
        },
        "auto_adjust": synchro.auto_adjust,
        "alignment_running": state.alignment_running,
    }


class ControlServer:
    """Small JSON API exposing the operator actions of the synchronizer.

    Routes:
        GET /status: Current phase, status and delays.
        POST /retry: Re-arm the loop.
        POST /auto-adjust: Toggle auto adjust.
        POST /delay: Set the payload delay from {"total"|"coarse"|"fine": seconds}.
        POST /scan/{channel}: Run a manual scan; ?apply=1 applies the result.
        POST /center: Center the visible payload peak.
    """

    def __init__(
        self,
        synchronizer: ContinuousSynchronizer,
        port: int,
        host: str = "0.0.0.0",
    ) -> None:
        """Initialize the control server.

        Args:
            synchronizer: Synchronizer the routes act on.
            port: Port to listen on.
            host: Interface to bind.
        """
        self._synchronizer = synchronizer
        self._port = port
        self._host = host
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    def create_app(self) -> web.Application:
        """Create the aiohttp application with all routes registered."""
        app = web.Application()
        app.router.add_get("/status", self._handle_status)
        app.router.add_post("/retry", self._handle_retry)
        app.router.add_post("/auto-adjust", self._handle_auto_adjust)
        app.router.add_post("/delay", self._handle_delay)
        app.router.add_post("/scan/{channel}", self._handle_scan)
        app.router.add_post("/center", self._handle_center)
        return app

    async def start(self) -> None:
        """Start the HTTP server."""
        self._app = self.create_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()

        logger.info("Control API listening on %s:%d", self._host, self._port)

    async def stop(self) -> None:
        """Stop the HTTP server."""
        if self._site is not None:
            await self._site.stop()
            self._site = None
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        self._app = None
        logger.debug("Control API stopped")

    async def _handle_status(self, request: web.Request) -> web.Response:
        return web.json_response(status_payload(self._synchronizer))

    async def _handle_retry(self, request: web.Request) -> web.Response:
        self._synchronizer.retry()
        return web.json_response(status_payload(self._synchronizer))

    async def _handle_auto_adjust(self, request: web.Request) -> web.Response:
        enabled = self._synchronizer.toggle_auto_adjust()
        logger.info("Auto adjust %s via API", "enabled" if enabled else "disabled")
        return web.json_response({"auto_adjust": enabled})

    async def _handle_delay(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except ValueError:
            raise web.HTTPBadRequest(reason="Body must be JSON") from None
        if not isinstance(body, dict):
            raise web.HTTPBadRequest(reason="Body must be a JSON object")

        keys = [key for key in DELAY_KEYS if key in body]
        if len(keys) != 1:
            raise web.HTTPBadRequest(reason="Expected exactly one of total, coarse, fine")
        key = keys[0]
        value = body[key]
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise web.HTTPBadRequest(reason=f"{key} must be a number")
        if not math.isfinite(value):
            raise web.HTTPBadRequest(reason=f"{key} must be finite")

        if key == "total":
            self._synchronizer.set_delay(float(value))
        elif key == "coarse":
            self._synchronizer.set_delay_coarse(float(value))
        else:
            self._synchronizer.set_delay_fine(float(value))
        return web.json_response(status_payload(self._synchronizer)["delay"])

    async def _handle_scan(self, request: web.Request) -> web.Response:
        name = request.match_info["channel"]
        channel = CHANNELS.get(name)
        if channel is None:
            raise web.HTTPNotFound(reason=f"Unknown channel {name!r}")
        apply = request.query.get("apply", "").lower() in ("1", "true", "yes")

        try:
            result = await self._synchronizer.scan(channel)
        except AlignmentInProgress as err:
            raise web.HTTPConflict(reason=str(err)) from None

        applied = False
        if apply and math.isfinite(result.result):
            self._synchronizer.apply_offset(channel, result.result)
            applied = True
        return web.json_response(
            {
                "channel": name,
                "phase": result.phase.value,
                "result": _finite_or_none(result.result),
                "error": result.error,
                "applied": applied,
            }
        )

    async def _handle_center(self, request: web.Request) -> web.Response:
        centered = self._synchronizer.center_visible_peak()
        return web.json_response(
            {"centered": centered, "total_delay": self._synchronizer.total_delay}
        )

    async def __aenter__(self) -> ControlServer:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Async context manager exit."""
        await self.stop()
