"""Tests for the admin HTTP API."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from aiohttp.test_utils import TestClient, TestServer

from src.admin.server import AdminServer, create_admin_app
from src.scheduler.models import ExecutionOutcome, ExecutionRecord, Schedule
from src.scheduler.queue import DispatchQueue, RetryPolicy
from src.scheduler.scanner import DueScanner
from src.scheduler.store import ScheduleStore

TEST_SECRET = "test-secret-123"
AUTH = {"X-Admin-Secret": TEST_SECRET}
NEXT_ROME_NINE = datetime(2024, 3, 10, 8, 0, tzinfo=UTC)


# -- Helpers -----------------------------------------------------------------


class _FakeSettings:
    def __init__(self, admin_secret: str = TEST_SECRET, admin_port: int = 8443) -> None:
        self.admin_secret = admin_secret
        self.admin_port = admin_port
        self.scheduler_timezone = "Europe/Rome"
        self.cron_search_horizon_days = 1462


@pytest.fixture
def queue(clock) -> DispatchQueue:
    executor = AsyncMock()
    executor.execute.return_value = ExecutionOutcome.ok()
    return DispatchQueue(executor, reporter=MagicMock(), policy=RetryPolicy(), clock=clock)


@pytest.fixture
def scanner(store: ScheduleStore, queue: DispatchQueue, clock) -> DueScanner:
    return DueScanner(store, queue, reporter=MagicMock(), clock=clock)


@pytest.fixture
async def client(scanner, queue, store):
    app = create_admin_app(scanner, queue, store)
    with patch("src.admin.server.settings", _FakeSettings()):
        c = TestClient(TestServer(app))
        await c.start_server()
        try:
            yield c
        finally:
            await c.close()


def _make_schedule(schedule_id: str = "s1", **kwargs) -> Schedule:
    defaults = {
        "name": "Morning post",
        "cron_expression": "0 9 * * *",
        "timezone": "Europe/Rome",
        "content": "Buongiorno!",
        "target": "-100123",
    }
    defaults.update(kwargs)
    return Schedule(id=schedule_id, **defaults)


# -- Health / auth -------------------------------------------------------------


async def test_health_is_open(client: TestClient) -> None:
    resp = await client.get("/health")
    assert resp.status == 200
    data = await resp.json()
    assert data == {"status": "ok", "scanner": "stopped"}


async def test_rejects_missing_secret(client: TestClient) -> None:
    resp = await client.get("/metrics")
    assert resp.status == 401


async def test_rejects_wrong_secret(client: TestClient) -> None:
    resp = await client.get("/metrics", headers={"X-Admin-Secret": "wrong"})
    assert resp.status == 401


async def test_rejects_everything_when_secret_unset(scanner, queue, store) -> None:
    app = create_admin_app(scanner, queue, store)
    with patch("src.admin.server.settings", _FakeSettings(admin_secret="")):
        c = TestClient(TestServer(app))
        await c.start_server()
        try:
            resp = await c.get("/metrics", headers={"X-Admin-Secret": ""})
            assert resp.status == 401
        finally:
            await c.close()


# -- Metrics -------------------------------------------------------------------


async def test_metrics(client: TestClient, queue: DispatchQueue, clock) -> None:
    await queue.enqueue("s1", clock())
    resp = await client.get("/metrics", headers=AUTH)
    assert resp.status == 200
    data = await resp.json()
    assert data["scanner"] == "stopped"
    assert data["queue"]["waiting"] == 1
    assert data["queue"]["completed"] == 0


# -- Reschedule / toggle -------------------------------------------------------


async def test_reschedule(client: TestClient, store: ScheduleStore, queue: DispatchQueue) -> None:
    await store.add_schedule(_make_schedule())
    resp = await client.post("/schedules/s1/reschedule", headers=AUTH)
    assert resp.status == 200
    data = await resp.json()
    assert data["next_run_at"] == "2024-03-10T08:00:00+00:00"
    assert queue.pending("s1").scheduled_for == NEXT_ROME_NINE


async def test_reschedule_missing_schedule(client: TestClient) -> None:
    resp = await client.post("/schedules/nope/reschedule", headers=AUTH)
    assert resp.status == 200
    assert (await resp.json())["next_run_at"] is None


async def test_reschedule_invalid_cron(client: TestClient, store: ScheduleStore) -> None:
    await store.add_schedule(_make_schedule(cron_expression="0 9 * *"))
    resp = await client.post("/schedules/s1/reschedule", headers=AUTH)
    assert resp.status == 400
    assert "expected 5 fields" in (await resp.json())["error"]


async def test_toggle_pauses_and_resumes(
    client: TestClient, store: ScheduleStore, queue: DispatchQueue
) -> None:
    await store.add_schedule(_make_schedule(next_run_at=NEXT_ROME_NINE))
    await queue.enqueue("s1", NEXT_ROME_NINE)

    resp = await client.post("/schedules/s1/toggle", headers=AUTH)
    data = await resp.json()
    assert data["is_active"] is False
    assert data["next_run_at"] is None
    assert queue.pending("s1") is None

    resp = await client.post("/schedules/s1/toggle", headers=AUTH)
    data = await resp.json()
    assert data["is_active"] is True
    assert data["next_run_at"] == "2024-03-10T08:00:00+00:00"
    assert (await store.find_by_id("s1")).is_active is True


async def test_toggle_missing_schedule(client: TestClient) -> None:
    resp = await client.post("/schedules/nope/toggle", headers=AUTH)
    assert resp.status == 404


async def test_toggle_resume_with_bad_cron_stays_paused(
    client: TestClient, store: ScheduleStore
) -> None:
    await store.add_schedule(_make_schedule(cron_expression="0 9 30 2 *", is_active=False))
    resp = await client.post("/schedules/s1/toggle", headers=AUTH)
    assert resp.status == 400
    assert (await store.find_by_id("s1")).is_active is False


# -- Jobs ----------------------------------------------------------------------


async def test_enqueue_at_given_time(
    client: TestClient, store: ScheduleStore, queue: DispatchQueue
) -> None:
    await store.add_schedule(_make_schedule())
    resp = await client.post(
        "/schedules/s1/jobs", json={"run_at": "2024-03-10T12:00:00+00:00"}, headers=AUTH
    )
    assert resp.status == 200
    data = await resp.json()
    assert data["scheduled"] is True
    assert data["scheduled_for"] == "2024-03-10T12:00:00+00:00"
    assert queue.pending("s1").scheduled_for == datetime(2024, 3, 10, 12, 0, tzinfo=UTC)


async def test_enqueue_now_without_body(
    client: TestClient, store: ScheduleStore, queue: DispatchQueue
) -> None:
    await store.add_schedule(_make_schedule())
    resp = await client.post("/schedules/s1/jobs", headers=AUTH)
    assert resp.status == 200
    assert (await resp.json())["scheduled"] is True
    assert queue.pending("s1") is not None


async def test_enqueue_invalid_run_at(client: TestClient, store: ScheduleStore) -> None:
    await store.add_schedule(_make_schedule())
    resp = await client.post("/schedules/s1/jobs", json={"run_at": "tomorrow"}, headers=AUTH)
    assert resp.status == 400


async def test_enqueue_invalid_json(client: TestClient, store: ScheduleStore) -> None:
    await store.add_schedule(_make_schedule())
    resp = await client.post(
        "/schedules/s1/jobs",
        data="not json",
        headers={**AUTH, "Content-Type": "application/json"},
    )
    assert resp.status == 400


async def test_enqueue_missing_schedule(client: TestClient) -> None:
    resp = await client.post("/schedules/nope/jobs", headers=AUTH)
    assert resp.status == 404


async def test_cancel_job(client: TestClient, queue: DispatchQueue, clock) -> None:
    await queue.enqueue("s1", clock() + timedelta(minutes=5))

    resp = await client.delete("/schedules/s1/jobs", headers=AUTH)
    assert (await resp.json())["cancelled"] is True

    resp = await client.delete("/schedules/s1/jobs", headers=AUTH)
    assert (await resp.json())["cancelled"] is False


# -- Executions ----------------------------------------------------------------


async def test_executions_paginated(client: TestClient, store: ScheduleStore) -> None:
    await store.add_schedule(_make_schedule())
    for i in range(3):
        await store.record_execution(
            ExecutionRecord(
                schedule_id="s1",
                attempt=i,
                status="FAILED",
                executed_at=NEXT_ROME_NINE + timedelta(minutes=i),
                error_code="RATE_LIMITED",
            )
        )

    resp = await client.get("/schedules/s1/executions?limit=2&offset=0", headers=AUTH)
    assert resp.status == 200
    data = await resp.json()
    assert [log["attempt"] for log in data["logs"]] == [2, 1]
    assert data["pagination"] == {"total": 3, "limit": 2, "offset": 0, "has_more": True}


async def test_executions_bad_limit(client: TestClient, store: ScheduleStore) -> None:
    await store.add_schedule(_make_schedule())
    resp = await client.get("/schedules/s1/executions?limit=ten", headers=AUTH)
    assert resp.status == 400


async def test_executions_missing_schedule(client: TestClient) -> None:
    resp = await client.get("/schedules/nope/executions", headers=AUTH)
    assert resp.status == 404


# -- Cron preview --------------------------------------------------------------


async def test_cron_preview(client: TestClient) -> None:
    resp = await client.post(
        "/cron/preview",
        json={"cron": "0 9 * * *", "timezone": "UTC", "count": 3, "locale": "en"},
        headers=AUTH,
    )
    data = await resp.json()
    assert data["valid"] is True
    assert data["description"] == "Every day at 09:00"
    assert len(data["next_runs"]) == 3
    assert data["next_runs"] == sorted(data["next_runs"])
    assert all(run.endswith("T09:00:00+00:00") for run in data["next_runs"])


async def test_cron_preview_invalid_expression(client: TestClient) -> None:
    resp = await client.post("/cron/preview", json={"cron": "0 9 * *"}, headers=AUTH)
    data = await resp.json()
    assert data["valid"] is False
    assert "expected 5 fields" in data["error"]


async def test_cron_preview_unknown_timezone(client: TestClient) -> None:
    resp = await client.post(
        "/cron/preview", json={"cron": "0 9 * * *", "timezone": "Nowhere/City"}, headers=AUTH
    )
    data = await resp.json()
    assert data["valid"] is False
    assert "Unknown timezone" in data["error"]


# -- Server lifecycle ----------------------------------------------------------


async def test_server_disabled_without_secret(scanner, queue, store) -> None:
    server = AdminServer(scanner, queue, store, port=0)
    with patch("src.admin.server.settings", _FakeSettings(admin_secret="")):
        await server.start()
    assert server._runner is None
    await server.stop()
