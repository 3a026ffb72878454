"""E2E tests for health checks, server info and Prometheus metrics."""

import re

import pytest
from fastapi.testclient import TestClient


def get_counter_sum(
    content: str, metric_name: str, label_filter: dict[str, str] | None = None
) -> float:
    """Sum all counter values for a metric, optionally filtering by labels.

    Args:
        content: The raw Prometheus metrics text
        metric_name: The name of the metric to find
        label_filter: Optional dict of label key-value pairs that must be present

    Returns:
        Sum of all matching counter values
    """
    total = 0.0
    pattern = rf"^{re.escape(metric_name)}\{{([^}}]*)\}}\s+([\d.]+(?:e[+-]?\d+)?)"

    for line in content.split("\n"):
        match = re.match(pattern, line)
        if match:
            labels = dict(re.findall(r'(\w+)="([^"]*)"', match.group(1)))
            if not label_filter or all(labels.get(k) == v for k, v in label_filter.items()):
                total += float(match.group(2))

    return total


@pytest.mark.e2e
class TestHealthEndpoints:
    """E2E tests for health probes."""

    def test_health(self, e2e_client: TestClient) -> None:
        """Test all components report healthy once the app is up."""
        response = e2e_client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert set(data["components"]) == {"device_pool", "job_queue", "scheduler"}
        assert data["components"]["scheduler"]["details"]["executor"] == "simulated"

    def test_readiness(self, e2e_client: TestClient) -> None:
        """Test the app is ready once the scheduler runs."""
        response = e2e_client.get("/readiness")

        assert response.status_code == 200
        assert response.json()["ready"] is True

    def test_liveness(self, e2e_client: TestClient) -> None:
        response = e2e_client.get("/liveness")

        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    def test_server_info(self, e2e_client: TestClient) -> None:
        """Test server info reports name, version and statistics."""
        response = e2e_client.get("/api/v1/server/info")

        assert response.status_code == 200
        data = response.json()
        assert data["name"] == "OpenFlash Server"
        assert data["version"] == "2.0.0"
        assert "total_devices" in data["pool"]
        assert "pending_count" in data["queue"]


@pytest.mark.e2e
class TestRequestID:
    """E2E tests for request id propagation."""

    def test_request_id_is_echoed(self, e2e_client: TestClient) -> None:
        response = e2e_client.get("/liveness", headers={"X-Request-ID": "req-e2e-1"})

        assert response.headers["X-Request-ID"] == "req-e2e-1"

    def test_request_id_is_generated(self, e2e_client: TestClient) -> None:
        response = e2e_client.get("/liveness")

        assert response.headers["X-Request-ID"].startswith("req_")


@pytest.mark.e2e
class TestMetricsEndpoint:
    """E2E tests for /metrics."""

    def test_metrics_endpoint_accessible(self, e2e_client: TestClient) -> None:
        """Test /metrics returns Prometheus format."""
        response = e2e_client.get("/metrics")

        assert response.status_code == 200
        assert response.headers.get("content-type", "").startswith("text/plain")
        assert "# HELP" in response.text
        assert "openflash_server_info" in response.text

    def test_request_metrics_recorded(self, e2e_client: TestClient) -> None:
        """Test HTTP requests are counted by route template."""
        e2e_client.get("/api/v1/server/info")

        content = e2e_client.get("/metrics").text

        assert (
            get_counter_sum(
                content,
                "http_requests_total",
                {"method": "GET", "endpoint": "/api/v1/server/info", "status": "200"},
            )
            >= 1
        )

    def test_error_metrics_recorded(self, e2e_client: TestClient) -> None:
        """Test domain errors are counted by error code."""
        e2e_client.get("/api/v1/jobs/424242")

        content = e2e_client.get("/metrics").text

        assert get_counter_sum(content, "errors_total", {"error_code": "JOB_NOT_FOUND"}) >= 1

    def test_job_metrics_recorded(self, e2e_client: TestClient) -> None:
        """Test finished jobs and scheduler assignments are counted."""
        e2e_client.post(
            "/api/v1/devices",
            json={
                "id": "metrics-dev",
                "name": "Metrics device",
                "uri": "tcp://metrics:5000",
                "status": "available",
            },
        )
        job_id = e2e_client.post(
            "/api/v1/jobs",
            json={"name": "erase", "job_type": "erase", "device_id": "metrics-dev"},
        ).json()["job_id"]
        response = e2e_client.get(f"/api/v1/jobs/{job_id}/wait", params={"timeout": 10})
        assert response.status_code == 200

        content = e2e_client.get("/metrics").text

        finished = get_counter_sum(
            content, "openflash_jobs_finished_total", {"outcome": "completed"}
        )
        assert finished >= 1
        assert "openflash_scheduler_assignments_total" in content
        assert "openflash_pool_devices" in content
