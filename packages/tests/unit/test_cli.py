"""Unit tests for myhome._cli — the Typer command line.

Test Techniques Used:
    - Specification-based Testing: flag parsing, help and version output
    - Error Condition Testing: invalid flag values, bad configuration
    - Behavioural Testing: exit codes and printed output
    - Mock-based Isolation: run_async and the HTTP client are patched
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from typer.testing import CliRunner

from myhome._cli import EXIT_CONFIG_ERROR, EXIT_OK, EXIT_RUNTIME_ERROR, cli
from myhome._settings import Settings
from myhome._storage import Storage
from myhome._version import __version__


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the store at a temp file and keep the real environment out."""
    db = tmp_path / "home.db"
    monkeypatch.setenv("MYHOME_STORAGE__PATH", str(db))
    monkeypatch.delenv("MYHOME_SERVER__ID", raising=False)
    monkeypatch.delenv("MYHOME_MQTT__CLIENT_ID", raising=False)
    return db


@pytest.fixture(autouse=True)
def _restore_root_logger() -> Iterator[None]:
    """Commands install logging handlers; drop them after each test."""
    root = logging.getLogger()
    original_handlers = root.handlers[:]
    original_level = root.level
    yield
    for h in root.handlers:
        if h not in original_handlers:
            h.close()
    root.handlers = original_handlers
    root.setLevel(original_level)


# ---------------------------------------------------------------------------
# Global options
# ---------------------------------------------------------------------------


class TestGlobalOptions:
    """Technique: Specification-based Testing."""

    def test_version(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == EXIT_OK
        assert f"myhome v{__version__}" in result.output

    def test_no_command_shows_help(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, [])
        assert result.exit_code == EXIT_OK
        assert "serve" in result.output
        assert "import" in result.output

    def test_invalid_log_level(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["--log-level", "LOUD", "serve"])
        assert result.exit_code == 2

    def test_invalid_log_format(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["--log-format", "xml", "serve"])
        assert result.exit_code == 2


# ---------------------------------------------------------------------------
# serve
# ---------------------------------------------------------------------------


class TestServe:
    """Technique: Mock-based Isolation."""

    def test_overrides_reach_settings(self, runner: CliRunner, env: Path) -> None:  # noqa: ARG002
        with patch("myhome._cli.run_async", new_callable=AsyncMock) as run:
            result = runner.invoke(cli, ["--log-level", "debug", "--log-format", "TEXT", "serve"])

        assert result.exit_code == EXIT_OK, result.output
        settings: Settings = run.await_args.args[0]
        assert settings.logging.level == "DEBUG"
        assert settings.logging.format == "text"

    def test_runtime_error_exit_code(self, runner: CliRunner, env: Path) -> None:  # noqa: ARG002
        with patch("myhome._cli.run_async", new_callable=AsyncMock, side_effect=OSError("port in use")):
            result = runner.invoke(cli, ["serve"])
        assert result.exit_code == EXIT_RUNTIME_ERROR

    def test_config_error_exit_code(
        self,
        runner: CliRunner,
        env: Path,  # noqa: ARG002
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setenv("MYHOME_MQTT__PORT", "not-a-port")
        with patch("myhome._cli.run_async", new_callable=AsyncMock) as run:
            result = runner.invoke(cli, ["serve"])
        assert result.exit_code == EXIT_CONFIG_ERROR
        run.assert_not_awaited()


# ---------------------------------------------------------------------------
# import
# ---------------------------------------------------------------------------


class TestImport:
    """Technique: Behavioural Testing."""

    @staticmethod
    async def _stored_ids(db: Path) -> list[str]:
        async with Storage(str(db)) as storage:
            return [d.id for d in await storage.load_devices()]

    def test_imports_file(self, runner: CliRunner, env: Path, tmp_path: Path) -> None:
        devices = tmp_path / "devices.json"
        devices.write_text(
            json.dumps(
                [
                    {"id": "shelly1minig3-aaa111", "name": "Kitchen", "host": "10.0.0.11"},
                    {"id": "shellyblugw-bbb222"},
                ],
            ),
        )

        result = runner.invoke(cli, ["import", str(devices)])

        assert result.exit_code == EXIT_OK, result.output
        assert "Imported 2 device(s)" in result.output
        assert asyncio.run(self._stored_ids(env)) == ["shelly1minig3-aaa111", "shellyblugw-bbb222"]

    def test_not_an_array(self, runner: CliRunner, env: Path, tmp_path: Path) -> None:  # noqa: ARG002
        devices = tmp_path / "devices.json"
        devices.write_text(json.dumps({"id": "x"}))
        result = runner.invoke(cli, ["import", str(devices)])
        assert result.exit_code == EXIT_RUNTIME_ERROR

    def test_invalid_device(self, runner: CliRunner, env: Path, tmp_path: Path) -> None:  # noqa: ARG002
        devices = tmp_path / "devices.json"
        devices.write_text(json.dumps([{"name": "no id"}]))
        result = runner.invoke(cli, ["import", str(devices)])
        assert result.exit_code == EXIT_RUNTIME_ERROR


# ---------------------------------------------------------------------------
# call
# ---------------------------------------------------------------------------


_RealAsyncClient = httpx.AsyncClient


def _mock_client(handler: object) -> httpx.AsyncClient:
    return _RealAsyncClient(transport=httpx.MockTransport(handler))  # type: ignore[arg-type]


class TestCall:
    """Technique: Mock-based Isolation."""

    def test_posts_envelope(self, runner: CliRunner, env: Path) -> None:  # noqa: ARG002
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": 1, "src": "myhome", "result": []})

        with patch("myhome._cli.httpx.AsyncClient", side_effect=lambda **_: _mock_client(handler)):
            result = runner.invoke(cli, ["call", "device.match", '{"pattern": "shelly*"}'])

        assert result.exit_code == EXIT_OK, result.output
        (request,) = seen
        assert str(request.url) == "http://127.0.0.1:8080/rpc"
        assert json.loads(request.content) == {
            "id": 1,
            "src": "myhome-cli",
            "method": "device.match",
            "params": {"pattern": "shelly*"},
        }
        assert json.loads(result.output)["result"] == []

    def test_bare_param_and_error_exit(self, runner: CliRunner, env: Path) -> None:  # noqa: ARG002
        seen: list[dict[str, object]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(
                200,
                json={"id": 1, "src": "myhome", "error": {"code": 404, "kind": "not_found", "message": "x"}},
            )

        with patch("myhome._cli.httpx.AsyncClient", side_effect=lambda **_: _mock_client(handler)):
            result = runner.invoke(cli, ["call", "device.show", "kitchen", "--url", "http://hub:9000/rpc"])

        assert result.exit_code == EXIT_RUNTIME_ERROR
        assert seen[0]["params"] == "kitchen"

    def test_unreachable_server(self, runner: CliRunner, env: Path) -> None:  # noqa: ARG002
        def handler(request: httpx.Request) -> httpx.Response:
            msg = "connection refused"
            raise httpx.ConnectError(msg, request=request)

        with patch("myhome._cli.httpx.AsyncClient", side_effect=lambda **_: _mock_client(handler)):
            result = runner.invoke(cli, ["call", "device.match"])

        assert result.exit_code == EXIT_RUNTIME_ERROR
