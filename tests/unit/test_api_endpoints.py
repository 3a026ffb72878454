"""Tests for API endpoints."""

import asyncio
from pathlib import Path
from typing import Generator

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from openflash_server.api import devices, dumps, health, jobs, server
from openflash_server.core.errors import APIError, global_exception_handler
from openflash_server.core.exceptions import OrchestratorError
from openflash_server.models.job import Erase, Job
from openflash_server.services.dump_service import ParallelDumpService
from openflash_server.services.job_queue import JobQueue
from openflash_server.services.orchestrator import Orchestrator, configure_orchestrator
from openflash_server.services.scheduler_worker import configure_scheduler_worker

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def orchestrator() -> Orchestrator:
    return Orchestrator(default_max_retries=1)


@pytest.fixture
def dump_service(orchestrator: Orchestrator, tmp_path: Path) -> ParallelDumpService:
    return ParallelDumpService(
        orchestrator, chunk_size=1024, device_count=2, output_dir=str(tmp_path)
    )


@pytest.fixture
def app(orchestrator: Orchestrator, dump_service: ParallelDumpService) -> FastAPI:
    """Create a test FastAPI application wired to a fresh orchestrator."""
    app = FastAPI()
    app.include_router(health.router)
    app.include_router(devices.router)
    app.include_router(jobs.router)
    app.include_router(dumps.router)
    app.include_router(server.router)

    app.add_exception_handler(APIError, global_exception_handler)
    app.add_exception_handler(OrchestratorError, global_exception_handler)

    app.dependency_overrides[devices.get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[jobs.get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[server.get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[dumps.get_dump_service] = lambda: dump_service

    return app


@pytest.fixture
def client(app: FastAPI) -> Generator[TestClient, None, None]:
    with TestClient(app) as client:
        yield client


def register(client: TestClient, device_id: str, **kwargs) -> dict:
    body = {
        "id": device_id,
        "name": f"Programmer {device_id}",
        "uri": f"serial:///dev/{device_id}",
        "status": "available",
        **kwargs,
    }
    response = client.post("/api/v1/devices", json=body)
    assert response.status_code == 201
    return response.json()


def submit(client: TestClient, **kwargs) -> dict:
    body = {
        "name": "Dump TSOP48",
        "job_type": "read",
        "params": {"output_path": "/dumps/chip.bin"},
        **kwargs,
    }
    response = client.post("/api/v1/jobs", json=body)
    assert response.status_code == 202
    return response.json()


def tick(orchestrator: Orchestrator) -> list:
    return asyncio.run(orchestrator.tick())


# ============================================================================
# Device Endpoint Tests
# ============================================================================


class TestDeviceEndpoints:
    """Tests for device registry endpoints."""

    def test_register_device(self, client: TestClient) -> None:
        """Test registering a device returns its record."""
        data = register(
            client,
            "rp-01",
            platform="RP2040",
            tags=["lab-a"],
            capabilities={"interfaces": ["spi_nor"], "max_speed": 2_000_000},
        )

        assert data["id"] == "rp-01"
        assert data["platform"] == "rp2040"
        assert data["status"] == "available"
        assert data["current_job"] is None
        assert data["capabilities"]["interfaces"] == ["spi_nor"]
        assert data["last_seen"] is not None
        assert data["jobs_completed"] == 0

    def test_register_defaults_to_offline(self, client: TestClient) -> None:
        """Test devices start offline unless they say otherwise."""
        response = client.post(
            "/api/v1/devices",
            json={"id": "d1", "name": "d1", "uri": "tcp://10.0.0.2:5000"},
        )

        assert response.status_code == 201
        assert response.json()["status"] == "offline"
        assert response.json()["platform"] == "unknown"

    def test_register_busy_is_rejected(self, client: TestClient) -> None:
        """Test busy cannot be claimed on registration."""
        response = client.post(
            "/api/v1/devices",
            json={"id": "d1", "name": "d1", "uri": "tcp://x", "status": "busy"},
        )

        assert response.status_code == 422

    def test_list_devices_with_filters(self, client: TestClient) -> None:
        """Test listing devices by status, tag and platform."""
        register(client, "b", platform="esp32", tags=["lab-a"])
        register(client, "a", platform="rp2040", tags=["lab-b"])
        register(client, "c", platform="rp2040", status="maintenance")

        all_devices = client.get("/api/v1/devices").json()
        assert all_devices["total"] == 3
        assert [d["id"] for d in all_devices["devices"]] == ["a", "b", "c"]

        by_status = client.get("/api/v1/devices", params={"status": "available"}).json()
        assert [d["id"] for d in by_status["devices"]] == ["a", "b"]

        by_tag = client.get("/api/v1/devices", params={"tag": "lab-a"}).json()
        assert [d["id"] for d in by_tag["devices"]] == ["b"]

        by_platform = client.get("/api/v1/devices", params={"platform": "rp2040"}).json()
        assert [d["id"] for d in by_platform["devices"]] == ["a", "c"]

    def test_get_unknown_device(self, client: TestClient) -> None:
        """Test unknown devices return DEVICE_NOT_FOUND."""
        response = client.get("/api/v1/devices/ghost")

        assert response.status_code == 404
        data = response.json()
        assert data["error_code"] == "DEVICE_NOT_FOUND"
        assert "ghost" in data["message"]
        assert "suggestion" in data

    def test_heartbeat_changes_status(self, client: TestClient) -> None:
        """Test a heartbeat can bring a device online."""
        register(client, "d1", status="offline")

        response = client.post("/api/v1/devices/d1/heartbeat", json={"status": "available"})

        assert response.status_code == 200
        assert response.json()["status"] == "available"

    def test_heartbeat_without_body(self, client: TestClient) -> None:
        """Test a bare heartbeat only refreshes last_seen."""
        register(client, "d1", status="maintenance")

        response = client.post("/api/v1/devices/d1/heartbeat")

        assert response.status_code == 200
        assert response.json()["status"] == "maintenance"

    def test_heartbeat_on_busy_device_conflicts(
        self, client: TestClient, orchestrator: Orchestrator
    ) -> None:
        """Test a busy device cannot change status by heartbeat."""
        register(client, "d1")
        submit(client)
        tick(orchestrator)

        response = client.post("/api/v1/devices/d1/heartbeat", json={"status": "offline"})

        assert response.status_code == 409
        assert response.json()["error_code"] == "DEVICE_BUSY"

    def test_deregister_device(self, client: TestClient) -> None:
        """Test removing a device."""
        register(client, "d1")

        response = client.delete("/api/v1/devices/d1")

        assert response.status_code == 200
        assert response.json()["id"] == "d1"
        assert client.get("/api/v1/devices/d1").status_code == 404
        assert client.delete("/api/v1/devices/d1").status_code == 404


# ============================================================================
# Job Endpoint Tests
# ============================================================================


class TestJobEndpoints:
    """Tests for job endpoints."""

    def test_submit_job(self, client: TestClient) -> None:
        """Test job submission returns 202 with the queue position."""
        data = submit(client)

        assert data["job_id"] == 1
        assert data["status"] == "queued"
        assert data["queue_position"] == 1
        assert data["created_at"]

    def test_submit_applies_defaults(self, client: TestClient) -> None:
        """Test timeout and retries default to the server settings."""
        job_id = submit(client)["job_id"]

        data = client.get(f"/api/v1/jobs/{job_id}").json()

        assert data["timeout_secs"] == 3600
        assert data["max_retries"] == 1
        assert data["priority"] == "normal"
        assert data["job_type"] == {
            "kind": "read",
            "output_path": "/dumps/chip.bin",
            "start_address": 0,
            "length": None,
            "include_oob": False,
        }

    @pytest.mark.parametrize(
        "override",
        [
            {"job_type": "defrag"},
            {"params": {}},
            {"params": {"output_path": "/x", "bogus": 1}},
            {"priority": "urgent"},
            {"timeout_secs": 0},
        ],
    )
    def test_submit_invalid_job(self, client: TestClient, override: dict) -> None:
        """Test invalid payloads are rejected."""
        body = {
            "name": "bad",
            "job_type": "read",
            "params": {"output_path": "/dumps/chip.bin"},
            **override,
        }

        response = client.post("/api/v1/jobs", json=body)

        assert response.status_code == 422

    def test_priority_order_in_listing(self, client: TestClient) -> None:
        """Test pending jobs are listed in scheduling order."""
        a = submit(client, name="A")["job_id"]
        b = submit(client, name="B", priority="high")["job_id"]
        c = submit(client, name="C")["job_id"]

        listed = client.get("/api/v1/jobs", params={"status": "queued"}).json()

        assert [j["job_id"] for j in listed] == [b, a, c]
        assert [j["queue_position"] for j in listed] == [1, 2, 3]

    def test_get_unknown_job(self, client: TestClient) -> None:
        """Test unknown jobs return JOB_NOT_FOUND."""
        response = client.get("/api/v1/jobs/999")

        assert response.status_code == 404
        assert response.json()["error_code"] == "JOB_NOT_FOUND"

    def test_progress_and_complete_callbacks(
        self, client: TestClient, orchestrator: Orchestrator
    ) -> None:
        """Test an external executor reporting progress and completion."""
        register(client, "d1")
        job_id = submit(client)["job_id"]
        assert tick(orchestrator) == [(job_id, "d1")]

        running = client.get(f"/api/v1/jobs/{job_id}").json()
        assert running["status"] == "running"
        assert running["device_id"] == "d1"
        assert running["queue_position"] is None

        response = client.post(f"/api/v1/jobs/{job_id}/progress", json={"progress": 50})
        assert response.status_code == 200
        assert response.json()["progress"] == 50

        response = client.post(
            f"/api/v1/jobs/{job_id}/complete",
            json={"bytes_processed": 4096, "checksum": "abc123"},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "completed"
        assert data["progress"] == 100
        assert data["result"]["bytes_processed"] == 4096

        device = client.get("/api/v1/devices/d1").json()
        assert device["status"] == "available"
        assert device["jobs_completed"] == 1
        assert device["bytes_processed"] == 4096

    def test_fail_callback_retries(self, client: TestClient, orchestrator: Orchestrator) -> None:
        """Test a failed attempt is re-queued while retries remain."""
        register(client, "d1")
        job_id = submit(client)["job_id"]
        tick(orchestrator)

        response = client.post(f"/api/v1/jobs/{job_id}/fail", json={"reason": "ECC error"})

        data = response.json()
        assert response.status_code == 200
        assert data["status"] == "queued"
        assert data["retries"] == 1
        assert data["error"] == "ECC error"
        assert data["device_id"] == "d1"

        tick(orchestrator)
        data = client.post(f"/api/v1/jobs/{job_id}/fail", json={"reason": "ECC again"}).json()
        assert data["status"] == "failed"
        assert data["error"] == "ECC again"

    def test_callbacks_for_job_not_running(self, client: TestClient) -> None:
        """Test results for a queued job are rejected."""
        job_id = submit(client)["job_id"]

        assert client.post(f"/api/v1/jobs/{job_id}/complete").status_code == 404
        assert (
            client.post(f"/api/v1/jobs/{job_id}/progress", json={"progress": 5}).status_code
            == 404
        )

    def test_progress_out_of_range(self, client: TestClient) -> None:
        """Test progress must be 0..100."""
        response = client.post("/api/v1/jobs/1/progress", json={"progress": 101})

        assert response.status_code == 422

    def test_cancel_job(self, client: TestClient) -> None:
        """Test cancelling a job, then cancelling it again."""
        job_id = submit(client)["job_id"]

        response = client.delete(f"/api/v1/jobs/{job_id}")
        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"

        response = client.delete(f"/api/v1/jobs/{job_id}")
        assert response.status_code == 409
        assert response.json()["error_code"] == "JOB_STATE_CONFLICT"

    def test_wait_for_completed_job(
        self, client: TestClient, orchestrator: Orchestrator
    ) -> None:
        """Test waiting on a finished job returns it."""
        register(client, "d1")
        job_id = submit(client)["job_id"]
        tick(orchestrator)
        client.post(f"/api/v1/jobs/{job_id}/complete")

        response = client.get(f"/api/v1/jobs/{job_id}/wait", params={"timeout": 1})

        assert response.status_code == 200
        assert response.json()["status"] == "completed"

    def test_wait_timeout(self, client: TestClient) -> None:
        """Test a wait that runs out of time returns 504."""
        job_id = submit(client)["job_id"]

        response = client.get(f"/api/v1/jobs/{job_id}/wait", params={"timeout": 0.05})

        assert response.status_code == 504
        assert response.json()["error_code"] == "TIMEOUT"

    def test_wait_for_cancelled_job(self, client: TestClient) -> None:
        """Test waiting on a cancelled job reports JOB_FAILED."""
        job_id = submit(client)["job_id"]
        client.delete(f"/api/v1/jobs/{job_id}")

        response = client.get(f"/api/v1/jobs/{job_id}/wait")

        assert response.status_code == 500
        assert response.json()["error_code"] == "JOB_FAILED"

    def test_queue_full(self, app: FastAPI) -> None:
        """Test a full queue returns QUEUE_FULL."""
        small = Orchestrator(job_queue=JobQueue(max_queue_size=1))
        app.dependency_overrides[jobs.get_orchestrator] = lambda: small

        with TestClient(app) as client:
            submit(client)
            response = client.post(
                "/api/v1/jobs",
                json={"name": "x", "job_type": "erase"},
            )

        assert response.status_code == 503
        assert response.json()["error_code"] == "QUEUE_FULL"


# ============================================================================
# Dump Endpoint Tests
# ============================================================================


class TestDumpEndpoints:
    """Tests for parallel dump endpoints."""

    def test_submit_dump(self, client: TestClient) -> None:
        """Test a dump is planned and its first chunks are queued."""
        response = client.post("/api/v1/dumps", json={"total_size": 4096, "name": "nand"})

        assert response.status_code == 202
        data = response.json()
        assert data["dump_id"] == 1
        assert data["status"] == "running"
        assert data["chunk_count"] == 4
        assert data["progress"] == 0
        assert [c["start_address"] for c in data["chunks"]] == [0, 1024, 2048, 3072]
        assert [c["job_id"] is not None for c in data["chunks"]] == [True, True, False, False]
        assert data["chunks"][0]["output_file"].endswith("chunk_0000.bin")

    def test_submit_empty_dump(self, client: TestClient) -> None:
        """Test a zero-size dump completes at once."""
        data = client.post("/api/v1/dumps", json={"total_size": 0}).json()

        assert data["status"] == "completed"
        assert data["progress"] == 100

    @pytest.mark.parametrize(
        "body",
        [
            {"total_size": -1},
            {"total_size": 10, "chunk_size": 0},
            {"total_size": 10, "device_count": 0},
        ],
    )
    def test_submit_invalid_dump(self, client: TestClient, body: dict) -> None:
        """Test invalid sizes are rejected."""
        assert client.post("/api/v1/dumps", json=body).status_code == 422

    def test_dump_progress_through_callbacks(
        self, client: TestClient, orchestrator: Orchestrator
    ) -> None:
        """Test dump progress follows its chunk jobs."""
        register(client, "d1")
        register(client, "d2")
        dump_id = client.post("/api/v1/dumps", json={"total_size": 2048}).json()["dump_id"]

        for job_id, _device_id in tick(orchestrator):
            client.post(f"/api/v1/jobs/{job_id}/complete", json={"bytes_processed": 1024})

        data = client.get(f"/api/v1/dumps/{dump_id}").json()
        assert data["status"] == "completed"
        assert data["bytes_completed"] == 2048
        assert {c["device_id"] for c in data["chunks"]} == {"d1", "d2"}

    def test_list_dumps(self, client: TestClient) -> None:
        """Test listing dumps with and without chunk details."""
        client.post("/api/v1/dumps", json={"total_size": 1024})
        client.post("/api/v1/dumps", json={"total_size": 2048})

        summary = client.get("/api/v1/dumps").json()
        assert [d["dump_id"] for d in summary] == [1, 2]
        assert summary[0]["chunks"] == []

        detailed = client.get("/api/v1/dumps", params={"include_chunks": True}).json()
        assert len(detailed[1]["chunks"]) == 2

    def test_get_unknown_dump(self, client: TestClient) -> None:
        """Test unknown dumps return DUMP_NOT_FOUND."""
        response = client.get("/api/v1/dumps/7")

        assert response.status_code == 404
        assert response.json()["error_code"] == "DUMP_NOT_FOUND"

    def test_cancel_dump(self, client: TestClient) -> None:
        """Test cancelling a dump cancels its chunk jobs."""
        dump = client.post("/api/v1/dumps", json={"total_size": 4096}).json()

        response = client.delete(f"/api/v1/dumps/{dump['dump_id']}")

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        chunk_job = dump["chunks"][0]["job_id"]
        assert client.get(f"/api/v1/jobs/{chunk_job}").json()["status"] == "cancelled"

        assert client.delete(f"/api/v1/dumps/{dump['dump_id']}").status_code == 409


# ============================================================================
# Server and Health Endpoint Tests
# ============================================================================


class TestServerEndpoints:
    """Tests for server info."""

    def test_server_info(self, client: TestClient) -> None:
        """Test server info reports pool and queue statistics."""
        register(client, "d1")
        submit(client)

        response = client.get("/api/v1/server/info")

        assert response.status_code == 200
        data = response.json()
        assert data["name"] == "OpenFlash Server"
        assert data["version"]
        assert data["uptime_secs"] >= 0
        assert data["pool"]["available_devices"] == 1
        assert data["queue"]["pending_count"] == 1


class TestHealthEndpoints:
    """Tests for health check endpoints."""

    def test_liveness(self, client: TestClient) -> None:
        """Test liveness always reports alive."""
        response = client.get("/liveness")

        assert response.status_code == 200
        assert response.json() == {"status": "alive"}

    def test_health_with_stopped_scheduler(self, client: TestClient) -> None:
        """Test health is 503 while the scheduler is not running."""
        orchestrator = configure_orchestrator()
        configure_scheduler_worker(orchestrator)

        response = client.get("/health")

        assert response.status_code == 503
        data = response.json()
        assert data["status"] == "unhealthy"
        assert data["components"]["device_pool"]["status"] == "healthy"
        assert data["components"]["job_queue"]["status"] == "healthy"
        assert data["components"]["scheduler"]["status"] == "unhealthy"

    def test_readiness_with_stopped_scheduler(self, client: TestClient) -> None:
        """Test readiness is 503 while the scheduler is not running."""
        orchestrator = configure_orchestrator()
        configure_scheduler_worker(orchestrator)

        response = client.get("/readiness")

        assert response.status_code == 503
        assert response.json()["ready"] is False

    @pytest.mark.asyncio
    async def test_health_with_running_scheduler(self) -> None:
        """Test health and readiness pass once the scheduler runs."""
        orchestrator = configure_orchestrator()
        worker = configure_scheduler_worker(orchestrator, tick_interval=0.01)
        await worker.start()
        try:
            health_response = await health.health_check()
            readiness_response = await health.readiness_check()
        finally:
            await worker.stop()

        assert health_response.status_code == 200
        assert readiness_response.status_code == 200

    @pytest.mark.asyncio
    async def test_health_with_full_queue(self) -> None:
        """Test a full job queue is reported unhealthy."""
        orchestrator = configure_orchestrator(job_queue=JobQueue(max_queue_size=1))
        configure_scheduler_worker(orchestrator)
        await orchestrator.job_queue.submit(Job(name="filler", job_type=Erase()))

        component = health._check_job_queue()

        assert component.status == "unhealthy"
        assert component.details["error"] == "Job queue is full"
