from __future__ import annotations

import os
import shutil
import sys
from pathlib import Path

import pytest


# Ensure the repo root is importable (so `import seedsync` works without installing).
REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))


@pytest.fixture(scope="session")
def postgres_url() -> str:
    if shutil.which("docker") is None and not os.getenv("DOCKER_HOST"):
        pytest.skip("docker is not available for PostgreSQL integration tests")
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as pg:
        # Normalize testcontainers URL (may be postgresql:// or postgresql+psycopg2://) to psycopg3.
        base = pg.get_connection_url().replace("postgresql+psycopg2://", "postgresql://")
        yield base.replace("postgresql://", "postgresql+psycopg://")
