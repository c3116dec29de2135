from __future__ import annotations

import os
import uuid

import pytest


def pytest_addoption(parser):
    parser.addoption(
        "--pg-dsn",
        action="store",
        default=None,
        help="PostgreSQL DSN for live tests",
    )


@pytest.fixture(scope="session")
def pg_dsn(request):
    """Get PostgreSQL DSN from CLI option or environment."""
    dsn = request.config.getoption("--pg-dsn") or os.environ.get("PGLEADERLEASE_TEST_DSN")
    if not dsn:
        pytest.skip("No PostgreSQL DSN provided (use --pg-dsn or PGLEADERLEASE_TEST_DSN)")
    return dsn


@pytest.fixture
def election_name():
    """Random election name to avoid collisions between tests."""
    return f"test-{uuid.uuid4().hex[:12]}"
