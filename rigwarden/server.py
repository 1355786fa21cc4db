"""
RigWarden Local HTTP surface
Dashboard / control-plane polling endpoints on top of the running agent.
"""

import logging

from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from rigwarden.errors import ProcessSpawnError, ProcessTerminationError
from rigwarden.models import RunIntent

logger = logging.getLogger(__name__)


def create_app(agent) -> Starlette:
    """Build the Starlette app for a wired RigAgent."""

    # ── Telemetry ────────────────────────────────────────

    async def telemetry(request: Request) -> JSONResponse:
        return JSONResponse(await run_in_threadpool(agent.telemetry.latest))

    async def telemetry_history(request: Request) -> JSONResponse:
        return JSONResponse(agent.telemetry.history())

    # ── Miner control ────────────────────────────────────

    async def _miner_action(action, *args):
        try:
            changed = await run_in_threadpool(action, *args)
        except (ProcessSpawnError, ProcessTerminationError) as e:
            logger.error(f"[HTTP] {action.__name__} failed: {e}")
            return JSONResponse({"success": False, "error": str(e)}, status_code=500)
        return JSONResponse({
            "success": True,
            "changed": changed,
            "status": agent.supervisor.state.value,
        })

    async def miner_start(request: Request) -> JSONResponse:
        return await _miner_action(agent.supervisor.start)

    async def miner_stop(request: Request) -> JSONResponse:
        return await _miner_action(agent.supervisor.stop, True)

    async def miner_restart(request: Request) -> JSONResponse:
        return await _miner_action(agent.supervisor.restart)

    async def miner_status(request: Request) -> JSONResponse:
        supervisor = agent.supervisor
        # both read the rig config and scan the apps directory
        status = await run_in_threadpool(supervisor.status)
        schedule_status = await run_in_threadpool(supervisor.schedule_status)
        return JSONResponse({
            "status": status.state.value,
            "shouldBeMining": status.desired_state == RunIntent.should_run and not status.manual_override,
            "nextScheduleChange": status.next_schedule_change,
            "scheduleStatus": schedule_status,
        })

    # ── Flightsheet ──────────────────────────────────────

    async def flightsheet_update(request: Request) -> JSONResponse:
        try:
            result = await run_in_threadpool(agent.update_flightsheet)
        except (ProcessSpawnError, ProcessTerminationError) as e:
            logger.error(f"[HTTP] Flightsheet applied but restart failed: {e}")
            return JSONResponse({
                "written": True, "restartRequired": True, "restarted": False, "error": str(e),
            }, status_code=500)
        return JSONResponse(result)

    async def flightsheet_get(request: Request) -> JSONResponse:
        return JSONResponse(await run_in_threadpool(agent.reconciler.current_flightsheet))

    routes = [
        Route("/api/telemetry", telemetry, methods=["GET"]),
        Route("/api/telemetry/history", telemetry_history, methods=["GET"]),
        Route("/miner/start", miner_start, methods=["POST"]),
        Route("/miner/stop", miner_stop, methods=["POST"]),
        Route("/miner/restart", miner_restart, methods=["POST"]),
        Route("/miner/status", miner_status, methods=["GET"]),
        Route("/flightsheet/update", flightsheet_update, methods=["POST"]),
        Route("/flightsheet", flightsheet_get, methods=["GET"]),
    ]
    return Starlette(routes=routes)
