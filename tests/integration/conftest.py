"""Integration-test conftest — skip guard for live-network tests.

Integration tests require:
    REFETCH_TEST_NETWORK=1   (set in shell before running)
    Outbound HTTPS access

Run with:
    REFETCH_TEST_NETWORK=1 pytest tests/integration/ -v
"""

from __future__ import annotations

import os
from pathlib import Path

import pytest

_HERE = Path(__file__).parent


def pytest_collection_modifyitems(config, items):
    if os.getenv("REFETCH_TEST_NETWORK"):
        return
    skip = pytest.mark.skip(reason="Set REFETCH_TEST_NETWORK=1 to run tests against live endpoints")
    for item in items:
        if _HERE in Path(str(item.fspath)).parents:
            item.add_marker(skip)
