"""Shared fixtures for the complaint priority test suite.

Environment is set BEFORE importing app: the app reads rate limits and the
Maps key at import time.
"""

import os

import pytest

# Ensure the Google Maps key is present (classification returns 503 without it)
os.environ.setdefault("GOOGLE_MAPS_API_KEY", "fake-key-for-tests")

# Keep the limiter out of the way; tests post many complaints per minute
os.environ.setdefault("RATE_LIMIT_DEFAULT", "1000/minute")
os.environ.setdefault("RATE_LIMIT_CLASSIFY", "1000/minute")

import health_monitor  # noqa: E402
from app import app  # noqa: E402
from jw_trace import clear_trace  # noqa: E402


@pytest.fixture(autouse=True)
def _clean_state():
    """Each test starts with no active trace and an empty health window."""
    clear_trace()
    health_monitor.reset()
    yield
    clear_trace()


@pytest.fixture()
def client():
    """Flask test client."""
    app.config["TESTING"] = True
    with app.test_client() as c:
        yield c
