"""E2E test configuration and fixtures.

These fixtures start the full application with:
- The simulated executor (OPENFLASH_SCHEDULER_EXECUTOR=simulated)
- Short scheduler intervals so jobs finish within milliseconds
- A temporary dump output directory
"""

import os
import tempfile
from typing import Generator

import pytest
from fastapi.testclient import TestClient


@pytest.fixture(scope="module")
def temp_dumps_dir() -> Generator[str, None, None]:
    """Create a temporary directory for dump output."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture(scope="module")
def e2e_env(temp_dumps_dir: str) -> Generator[None, None, None]:
    """Set up environment variables for E2E testing."""
    original_env: dict[str, str | None] = {}
    env_vars = {
        "OPENFLASH_CONFIG": os.path.join(temp_dumps_dir, "missing-config.yaml"),
        "OPENFLASH_SCHEDULER_EXECUTOR": "simulated",
        "OPENFLASH_SCHEDULER_TICK_INTERVAL": "0.02",
        "OPENFLASH_SCHEDULER_TIMEOUT_SWEEP_INTERVAL": "0.05",
        "OPENFLASH_SCHEDULER_SIMULATED_DELAY": "0.02",
        "OPENFLASH_QUEUE_DEFAULT_MAX_RETRIES": "1",
        "OPENFLASH_DUMP_CHUNK_SIZE": "4096",
        "OPENFLASH_DUMP_DEVICE_COUNT": "2",
        "OPENFLASH_DUMP_OUTPUT_DIR": temp_dumps_dir,
        "OPENFLASH_LOGGING_LEVEL": "WARNING",
    }

    for key, value in env_vars.items():
        original_env[key] = os.environ.get(key)
        os.environ[key] = value

    yield

    # Restore original values
    for key in original_env:
        original_value = original_env[key]
        if original_value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = original_value


@pytest.fixture(scope="module")
def e2e_client(e2e_env: None) -> Generator[TestClient, None, None]:
    """Create a test client running the full application lifespan.

    The scheduler worker runs in the client's event loop for the whole
    module, so jobs submitted over HTTP are executed in the background.
    """
    # Import after environment is set
    from openflash_server.main import create_app

    app = create_app()

    with TestClient(app) as client:
        yield client

