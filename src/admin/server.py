"""Administrative HTTP API for the scheduler.

Lets the surrounding application (dashboard backend, operators) trigger a
reschedule after editing a schedule, queue or cancel a one-off run, and
inspect queue metrics and execution logs.  Runs in the same asyncio event
loop as the scanner and queue, which are handed in at construction.

Every route except ``/health`` requires the ``X-Admin-Secret`` header.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from aiohttp import web

from src.config import settings
from src.scheduler.cron import describe, next_occurrences, resolve_timezone, validate_cron
from src.scheduler.errors import CronError
from src.scheduler.models import from_iso, to_iso
from src.scheduler.queue import DispatchQueue
from src.scheduler.scanner import DueScanner
from src.scheduler.store import ScheduleStore

if TYPE_CHECKING:
    from aiohttp.typedefs import Handler

logger = logging.getLogger(__name__)

SCANNER_KEY = web.AppKey("scanner", DueScanner)
QUEUE_KEY = web.AppKey("queue", DispatchQueue)
STORE_KEY = web.AppKey("store", ScheduleStore)

_MAX_PREVIEW = 20


@web.middleware
async def _require_secret(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Reject requests without the shared admin secret (``/health`` is open)."""
    if request.path == "/health":
        return await handler(request)
    secret = request.headers.get("X-Admin-Secret", "")
    if not settings.admin_secret or secret != settings.admin_secret:
        logger.warning("Admin request rejected: invalid secret (path=%s)", request.path)
        return web.json_response({"error": "unauthorized"}, status=401)
    return await handler(request)


async def _json_body(request: web.Request) -> dict[str, Any]:
    """Parse an optional JSON object body; raises HTTPBadRequest on bad JSON."""
    if not request.can_read_body:
        return {}
    try:
        payload = await request.json()
    except ValueError as exc:
        raise web.HTTPBadRequest(
            text='{"error": "invalid JSON"}', content_type="application/json"
        ) from exc
    if not isinstance(payload, dict):
        raise web.HTTPBadRequest(
            text='{"error": "expected a JSON object"}', content_type="application/json"
        )
    return payload


def _int_query(request: web.Request, name: str, default: int) -> int:
    raw = request.query.get(name)
    if raw is None:
        return default
    try:
        return max(0, int(raw))
    except ValueError as exc:
        raise web.HTTPBadRequest(
            text=f'{{"error": "{name} must be an integer"}}', content_type="application/json"
        ) from exc


# -- Handlers ------------------------------------------------------------------


async def _health(request: web.Request) -> web.Response:
    """GET /health — basic liveness check."""
    scanner = request.app[SCANNER_KEY]
    return web.json_response({"status": "ok", "scanner": scanner.state})


async def _metrics(request: web.Request) -> web.Response:
    """GET /metrics — queue counters plus scanner state."""
    queue = request.app[QUEUE_KEY]
    scanner = request.app[SCANNER_KEY]
    return web.json_response({"scanner": scanner.state, "queue": queue.metrics()})


async def _reschedule(request: web.Request) -> web.Response:
    """POST /schedules/{id}/reschedule — call after editing a schedule."""
    schedule_id = request.match_info["schedule_id"]
    scanner = request.app[SCANNER_KEY]
    try:
        next_run = await scanner.reschedule(schedule_id)
    except CronError as exc:
        return web.json_response({"error": str(exc)}, status=400)
    return web.json_response({"id": schedule_id, "next_run_at": to_iso(next_run)})


async def _toggle(request: web.Request) -> web.Response:
    """POST /schedules/{id}/toggle — pause or resume a schedule."""
    schedule_id = request.match_info["schedule_id"]
    store = request.app[STORE_KEY]
    scanner = request.app[SCANNER_KEY]

    schedule = await store.find_by_id(schedule_id)
    if schedule is None:
        return web.json_response({"error": "schedule not found"}, status=404)

    activate = not schedule.is_active
    await store.set_active(schedule_id, activate)
    try:
        next_run = await scanner.reschedule(schedule_id)
    except CronError as exc:
        await store.set_active(schedule_id, False)
        return web.json_response({"error": str(exc)}, status=400)

    logger.info("Schedule %s %s", schedule_id, "activated" if activate else "paused")
    return web.json_response({
        "id": schedule_id,
        "is_active": activate,
        "next_run_at": to_iso(next_run),
    })


async def _enqueue(request: web.Request) -> web.Response:
    """POST /schedules/{id}/jobs — queue a run now or at ``run_at``."""
    schedule_id = request.match_info["schedule_id"]
    store = request.app[STORE_KEY]
    queue = request.app[QUEUE_KEY]

    payload = await _json_body(request)
    try:
        run_at = from_iso(payload.get("run_at")) or datetime.now(UTC)
    except (TypeError, ValueError):
        return web.json_response({"error": "run_at must be an ISO 8601 timestamp"}, status=400)

    if await store.find_by_id(schedule_id) is None:
        return web.json_response({"error": "schedule not found"}, status=404)

    job = await queue.schedule_post(schedule_id, run_at)
    return web.json_response({
        "id": schedule_id,
        "scheduled": job is not None,
        "scheduled_for": to_iso(job.scheduled_for) if job else None,
    })


async def _cancel(request: web.Request) -> web.Response:
    """DELETE /schedules/{id}/jobs — drop any pending or retrying job."""
    schedule_id = request.match_info["schedule_id"]
    queue = request.app[QUEUE_KEY]
    cancelled = await queue.cancel_post(schedule_id)
    return web.json_response({"id": schedule_id, "cancelled": cancelled})


async def _executions(request: web.Request) -> web.Response:
    """GET /schedules/{id}/executions — paginated execution log."""
    schedule_id = request.match_info["schedule_id"]
    store = request.app[STORE_KEY]
    limit = _int_query(request, "limit", 20)
    offset = _int_query(request, "offset", 0)

    if await store.find_by_id(schedule_id) is None:
        return web.json_response({"error": "schedule not found"}, status=404)

    records, total = await store.list_executions(schedule_id, limit=limit, offset=offset)
    return web.json_response({
        "logs": [r.to_dict() for r in records],
        "pagination": {
            "total": total,
            "limit": limit,
            "offset": offset,
            "has_more": offset + len(records) < total,
        },
    })


async def _preview(request: web.Request) -> web.Response:
    """POST /cron/preview — validate an expression and list its next runs."""
    payload = await _json_body(request)
    expression = str(payload.get("cron", ""))
    timezone = str(payload.get("timezone") or settings.scheduler_timezone)
    locale = str(payload.get("locale") or "it")
    try:
        count = min(int(payload.get("count", 5)), _MAX_PREVIEW)
    except (TypeError, ValueError):
        return web.json_response({"error": "count must be an integer"}, status=400)

    valid, error = validate_cron(expression)
    if not valid:
        return web.json_response({"valid": False, "error": error})

    try:
        resolve_timezone(timezone)
        runs = next_occurrences(
            expression,
            timezone,
            datetime.now(UTC),
            count,
            horizon_days=settings.cron_search_horizon_days,
        )
    except CronError as exc:
        return web.json_response({"valid": False, "error": str(exc)})

    return web.json_response({
        "valid": True,
        "description": describe(expression, locale),
        "next_runs": [to_iso(run) for run in runs],
    })


def create_admin_app(
    scanner: DueScanner, queue: DispatchQueue, store: ScheduleStore
) -> web.Application:
    """Build the aiohttp Application with routes and injected components."""
    app = web.Application(middlewares=[_require_secret])
    app[SCANNER_KEY] = scanner
    app[QUEUE_KEY] = queue
    app[STORE_KEY] = store

    app.router.add_get("/health", _health)
    app.router.add_get("/metrics", _metrics)
    app.router.add_post("/schedules/{schedule_id}/reschedule", _reschedule)
    app.router.add_post("/schedules/{schedule_id}/toggle", _toggle)
    app.router.add_post("/schedules/{schedule_id}/jobs", _enqueue)
    app.router.add_delete("/schedules/{schedule_id}/jobs", _cancel)
    app.router.add_get("/schedules/{schedule_id}/executions", _executions)
    app.router.add_post("/cron/preview", _preview)
    return app


class AdminServer:
    """Manages the aiohttp server lifecycle."""

    def __init__(
        self,
        scanner: DueScanner,
        queue: DispatchQueue,
        store: ScheduleStore,
        port: int | None = None,
    ) -> None:
        self._scanner = scanner
        self._queue = queue
        self._store = store
        self.port = port or settings.admin_port
        self._runner: web.AppRunner | None = None

    async def start(self) -> None:
        """Start listening. Disabled when ADMIN_SECRET is empty."""
        if not settings.admin_secret:
            logger.warning("ADMIN_SECRET empty — admin server disabled")
            return

        app = create_admin_app(self._scanner, self._queue, self._store)
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, "0.0.0.0", self.port)
        await site.start()
        logger.info("Admin server listening on port %d", self.port)

    async def stop(self) -> None:
        """Shut down the server gracefully."""
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("Admin server stopped")
