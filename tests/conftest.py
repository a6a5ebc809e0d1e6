"""Root conftest — shared pytest markers and global settings.

Markers
-------
unit        fast, no I/O, pure logic
network     talks to a live HTTP endpoint (set REFETCH_TEST_NETWORK=1)
slow        expected to take > 5 seconds
"""

from __future__ import annotations

import pytest
import structlog


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast, no I/O tests")
    config.addinivalue_line("markers", "network: requires a live HTTP endpoint")
    config.addinivalue_line("markers", "slow: test is expected to take > 5 s")


# ── Logging ───────────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True, scope="session")
def _uncached_loggers():
    """Resolve sys.stdout per log call so CliRunner's swapped streams never stick."""
    structlog.configure(cache_logger_on_first_use=False)
    yield
