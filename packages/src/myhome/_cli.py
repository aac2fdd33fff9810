"""Command line interface (Typer).

Global options (``--version``, ``--log-level``, ``--log-format``,
``--env-file``) precede the command::

    myhome --log-format text serve
    myhome discover --timeout 3
    myhome import devices.json
    myhome call switch.toggle '{"identifier": "kitchen"}'

Exit codes: 0 ok, 1 configuration error, 3 runtime error.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Any, get_args

import httpx
import typer
from pydantic import ValidationError

from myhome._app import run_async
from myhome._device import Dispatcher
from myhome._discovery import Discovery
from myhome._errors import MyHomeError
from myhome._logging import configure_logging
from myhome._registry import DeviceRegistry
from myhome._settings import LoggingSettings, Settings
from myhome._storage import Storage
from myhome._version import __version__
from myhome.components import build_method_registry

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_RUNTIME_ERROR = 3

_VALID_LOG_LEVELS: tuple[str, ...] = get_args(
    LoggingSettings.model_fields["level"].annotation,
)
_VALID_LOG_FORMATS: tuple[str, ...] = get_args(
    LoggingSettings.model_fields["format"].annotation,
)

cli = typer.Typer(help=f"myhome v{__version__}: Shelly fleet control plane")


@dataclass
class GlobalOptions:
    log_level: str | None = None
    log_format: str | None = None
    env_file: str = ".env"

    def settings(self) -> Settings:
        """Load settings and apply the command line overrides.

        Exits with :data:`EXIT_CONFIG_ERROR` on invalid configuration.
        """
        try:
            settings = Settings(_env_file=self.env_file)  # type: ignore[call-arg]
        except ValidationError as exc:
            logger.error("Configuration error: %s", exc)
            raise SystemExit(EXIT_CONFIG_ERROR) from exc
        if self.log_level is not None:
            settings.logging = settings.logging.model_copy(
                update={"level": self.log_level.upper()},
            )
        if self.log_format is not None:
            settings.logging = settings.logging.model_copy(
                update={"format": self.log_format.lower()},
            )
        return settings


def _run(coro: Any) -> Any:
    """Run *coro*, mapping failures to :data:`EXIT_RUNTIME_ERROR`."""
    try:
        return asyncio.run(coro)
    except SystemExit:
        raise
    except (MyHomeError, OSError, httpx.HTTPError, ValueError) as exc:
        logger.error("Runtime error: %s", exc)
        sys.exit(EXIT_RUNTIME_ERROR)


@cli.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    version_flag: Annotated[
        bool | None,
        typer.Option("--version", is_eager=True, help="Show version and exit."),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="Override log level."),
    ] = None,
    log_format: Annotated[
        str | None,
        typer.Option("--log-format", help="Override log format."),
    ] = None,
    env_file: Annotated[
        str,
        typer.Option("--env-file", help="Path to .env file."),
    ] = ".env",
) -> None:
    if version_flag:
        typer.echo(f"myhome v{__version__}")
        raise typer.Exit()

    if log_level is not None and log_level.upper() not in _VALID_LOG_LEVELS:
        raise typer.BadParameter(
            f"Invalid log level '{log_level}'. Choose from: {', '.join(_VALID_LOG_LEVELS)}",
            param_hint="'--log-level'",
        )
    if log_format is not None and log_format.lower() not in _VALID_LOG_FORMATS:
        raise typer.BadParameter(
            f"Invalid log format '{log_format}'. Choose from: {', '.join(_VALID_LOG_FORMATS)}",
            param_hint="'--log-format'",
        )

    ctx.obj = GlobalOptions(log_level=log_level, log_format=log_format, env_file=env_file)
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@cli.command()
def serve(ctx: typer.Context) -> None:
    """Run the daemon until SIGINT/SIGTERM."""
    settings = ctx.obj.settings()
    with contextlib.suppress(KeyboardInterrupt):
        _run(run_async(settings))


@cli.command()
def discover(
    ctx: typer.Context,
    timeout: Annotated[float, typer.Option(help="Browse window in seconds.")] = 5.0,
) -> None:
    """Browse mDNS once and print the candidates as JSON."""
    settings = ctx.obj.settings()
    configure_logging(settings.logging, service="myhome", version=__version__)

    async def browse() -> list[dict[str, Any]]:
        found = []
        async with contextlib.aclosing(Discovery().discover(timeout)) as candidates:
            async for candidate in candidates:
                found.append(candidate.to_dict())
        return found

    typer.echo(json.dumps(_run(browse()), indent=2))


@cli.command("import")
def import_devices(
    ctx: typer.Context,
    file: Annotated[Path, typer.Argument(help="JSON array of device objects.")],
) -> None:
    """Load devices from FILE into the store."""
    settings = ctx.obj.settings()
    configure_logging(settings.logging, service="myhome", version=__version__)

    async def load() -> int:
        items = json.loads(file.read_text(encoding="utf-8"))
        if not isinstance(items, list):
            msg = f"{file} must hold a JSON array"
            raise ValueError(msg)
        async with Storage(settings.storage.path) as storage:
            registry = DeviceRegistry(storage, Dispatcher(methods=build_method_registry()))
            await registry.load()
            return len(await registry.import_devices(items))

    typer.echo(f"Imported {_run(load())} device(s)")


@cli.command()
def call(
    ctx: typer.Context,
    method: Annotated[str, typer.Argument(help="Server method, e.g. device.match.")],
    params: Annotated[str | None, typer.Argument(help="JSON params or a bare value.")] = None,
    url: Annotated[str | None, typer.Option(help="Server RPC endpoint.")] = None,
    timeout: Annotated[float, typer.Option(help="Request timeout in seconds.")] = 30.0,
) -> None:
    """POST one request to a running server and print the envelope."""
    settings = ctx.obj.settings()
    if url is None:
        host = settings.server.http_host
        if host in ("", "0.0.0.0", "::"):
            host = "127.0.0.1"
        url = f"http://{host}:{settings.server.http_port}/rpc"

    decoded: Any = None
    if params is not None:
        try:
            decoded = json.loads(params)
        except ValueError:
            decoded = params

    async def post() -> dict[str, Any]:
        request = {"id": 1, "src": "myhome-cli", "method": method, "params": decoded}
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.post(url, json=request)
            response.raise_for_status()
            return response.json()

    envelope = _run(post())
    typer.echo(json.dumps(envelope, indent=2))
    if "error" in envelope:
        raise typer.Exit(EXIT_RUNTIME_ERROR)


def main() -> None:
    """Console-script entrypoint."""
    cli()
