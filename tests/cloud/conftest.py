# tests/cloud/conftest.py
"""
The service reads DATABASE_URL at import time, so point it at a throwaway
sqlite file before stageflow.cloud is imported.
"""
import os
import tempfile

import pytest

_DB_DIR = tempfile.mkdtemp(prefix="stageflow-cloud-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_DB_DIR}/service.db")


@pytest.fixture(scope="session")
def client():
    from fastapi.testclient import TestClient

    from stageflow.cloud.main import app

    # one client for the whole session: the engine stays on a single event loop
    with TestClient(app) as c:
        yield c
