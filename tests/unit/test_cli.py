"""Unit tests for refetch.main — the typer CLI, driven through CliRunner.

HTTP goes through httpx.MockTransport and traces land in tmp_path.
"""

from __future__ import annotations

import httpx
import pytest
from typer.testing import CliRunner

from refetch import main
from refetch.models.events import QueryEventBus
from refetch.tools.http import HTTPQueryClient

runner = CliRunner()

PAGES = {"1": [1, 2], "2": [3], "3": [4, 5, 6]}


def handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/todos":
        return httpx.Response(200, json=[{"id": 1, "title": "write tests"}])
    if request.url.path == "/feed":
        return httpx.Response(200, json=PAGES[request.url.params["page"]])
    return httpx.Response(500, json={"detail": "broken"})


@pytest.fixture
def cli_env(monkeypatch, tmp_path):
    bus = QueryEventBus(trace_dir=tmp_path, persist=True)
    monkeypatch.setattr(main, "_get_event_bus", lambda: bus)
    monkeypatch.setattr(main, "_make_http", lambda: HTTPQueryClient(transport=httpx.MockTransport(handler)))
    return bus


class TestGet:

    def test_success(self, cli_env):
        result = runner.invoke(main.app, ["get", "https://api.test/todos"])
        assert result.exit_code == 0, result.output
        assert "success" in result.output
        assert "write tests" in result.output

    def test_error_exits_non_zero(self, cli_env):
        result = runner.invoke(main.app, ["get", "https://api.test/broken", "--retry", "1", "--delay-unit", "1"])
        assert result.exit_code == 1
        assert "HTTP error! status: 500" in result.output

    def test_events_persisted(self, cli_env):
        runner.invoke(main.app, ["get", "https://api.test/todos"])
        assert cli_env.list_traces()


class TestPages:

    def test_pages_merge(self, cli_env):
        result = runner.invoke(main.app, ["pages", "https://api.test/feed", "--pages", "3"])
        assert result.exit_code == 0, result.output
        assert "Pages of" in result.output
        assert "6" in result.output


class TestWatch:

    def test_stops_after_count(self, cli_env):
        result = runner.invoke(main.app, ["watch", "https://api.test/todos", "--interval", "10", "--count", "2"])
        assert result.exit_code == 0, result.output
        assert "#2" in result.output


class TestTrace:

    def test_no_traces(self, cli_env):
        result = runner.invoke(main.app, ["trace"])
        assert "No traces found" in result.output

    def test_lists_and_shows_trace(self, cli_env):
        runner.invoke(main.app, ["get", "https://api.test/todos"])
        listing = runner.invoke(main.app, ["trace"])
        assert "Recent Traces" in listing.output

        fetch_id = cli_env.list_traces()[0]
        detail = runner.invoke(main.app, ["trace", fetch_id])
        assert detail.exit_code == 0, detail.output
        assert fetch_id in detail.output
        assert "Query Trace" in detail.output

    def test_unknown_id(self, cli_env):
        result = runner.invoke(main.app, ["trace", "does-not-exist"])
        assert "No trace found" in result.output


def test_version():
    result = runner.invoke(main.app, ["version"])
    assert result.exit_code == 0
    assert "0.1.0" in result.output
