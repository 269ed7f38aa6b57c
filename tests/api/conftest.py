"""
Pytest configuration for API integration tests
"""

import pytest
from fastapi.testclient import TestClient


@pytest.fixture(scope="function")
def inbox():
    from converter.inbox import TaskInbox

    return TaskInbox()


@pytest.fixture(scope="function")
def scheduler(inbox):
    """Single-process pool reporting into the test inbox"""
    from converter.conversion.scheduler import WorkerPoolScheduler

    pool = WorkerPoolScheduler(size=1, listener=inbox)
    yield pool
    pool.shutdown(wait=True)


@pytest.fixture(scope="function")
def client(inbox, scheduler):
    """
    Create a test client with initialized app state.
    Each test gets a fresh pool and inbox to avoid state contamination.
    """
    from converter.main import app

    app.state.inbox = inbox
    app.state.scheduler = scheduler

    # No context manager: the lifespan would start a second, full-size pool
    test_client = TestClient(app, raise_server_exceptions=False)

    yield test_client

    app.state.scheduler = None
