"""sim-remote CLI.

Usage:
    sim-remote serve --engine-command "Models sim.apsimx" --override-flag --apply
    sim-remote serve --engine mypackage.engines:create_engine --port 5555
    sim-remote serve --isolation isolate --max-sessions 4

    sim-remote send "[Clock].StartDate = 2001-01-01" "[Weather].FileName = a.met"
    sim-remote send --format json "X.Param = 5"

    sim-remote version
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import shlex
import sys

import click

from .config import DEFAULT_ADDRESS, DEFAULT_PORT, ClientConfig, IsolationPolicy, ServerConfig
from .engine import EngineFactory, ProcessEngine, load_engine_factory
from .errors import BindFailed, ProtocolError, TransportError
from .protocol.responses import Failure, Success
from .protocol.version import PROTOCOL_VERSION

# Output format options
FORMAT_TEXT = "text"
FORMAT_JSON = "json"

SYNCHRONISER_PATH = "[Synchroniser].Script.Identifier"


def _configure_logging(debug: bool) -> None:
    """Send all logging to stderr."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    root_logger.addHandler(stderr_handler)
    root_logger.setLevel(logging.DEBUG if debug else logging.INFO)


@click.group(invoke_without_command=True)
@click.option("--debug", is_flag=True, envvar="SIM_REMOTE_DEBUG", help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, debug: bool) -> None:
    """sim-remote - drive a simulation engine over the network."""
    _configure_logging(debug)
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


# =============================================================================
# Server
# =============================================================================


def _build_engine_factory(
    engine_path: str | None,
    engine_command: str | None,
    override_flag: str | None,
    working_directory: str | None,
) -> EngineFactory:
    if engine_path and engine_command:
        raise click.UsageError("Use either --engine or --engine-command, not both")
    if engine_path:
        try:
            return load_engine_factory(engine_path)
        except (ValueError, ImportError, AttributeError, TypeError) as e:
            raise click.BadParameter(str(e), param_hint="--engine") from e
    if engine_command:
        argv = shlex.split(engine_command)
        if not argv:
            raise click.BadParameter("must not be empty", param_hint="--engine-command")
        return functools.partial(
            ProcessEngine,
            argv,
            override_flag=override_flag,
            working_directory=working_directory,
        )
    raise click.UsageError("An engine is required: pass --engine or --engine-command")


@main.command()
@click.option(
    "--address", default=DEFAULT_ADDRESS, envvar="SIM_REMOTE_ADDRESS", help="Address to bind"
)
@click.option(
    "--port", default=DEFAULT_PORT, envvar="SIM_REMOTE_PORT", help="Port to bind (0 = any)"
)
@click.option(
    "--verbose",
    is_flag=True,
    envvar="SIM_REMOTE_VERBOSE",
    help="Echo fault text to stderr when a command fails",
)
@click.option(
    "--receive-timeout",
    type=float,
    envvar="SIM_REMOTE_RECEIVE_TIMEOUT",
    help="Close sessions idle for this many seconds",
)
@click.option(
    "--state-change-timeout",
    type=float,
    envvar="SIM_REMOTE_STATE_CHANGE_TIMEOUT",
    help="Fail a command if the engine takes longer than this many seconds",
)
@click.option(
    "--isolation",
    type=click.Choice([policy.value for policy in IsolationPolicy]),
    default=IsolationPolicy.REJECT.value,
    envvar="SIM_REMOTE_ISOLATION",
    help="reject: one session at a time; isolate: one engine per session",
)
@click.option("--max-sessions", default=8, help="Maximum concurrent sessions (isolate mode)")
@click.option("--engine", "engine_path", help="Engine factory as module:attribute")
@click.option("--engine-command", help="Simulation executable and its fixed arguments")
@click.option("--override-flag", help="Flag placed before each override (e.g. --apply)")
@click.option(
    "--working-directory",
    type=click.Path(exists=True, file_okay=False),
    help="Working directory for --engine-command",
)
@click.option(
    "--default-override",
    "default_overrides",
    multiple=True,
    help="Override prepended to every command (repeatable)",
)
@click.option(
    "--synchroniser",
    is_flag=True,
    help=f"Prepend '{SYNCHRONISER_PATH} = <address>:<port>' to every command",
)
def serve(
    address: str,
    port: int,
    verbose: bool,
    receive_timeout: float | None,
    state_change_timeout: float | None,
    isolation: str,
    max_sessions: int,
    engine_path: str | None,
    engine_command: str | None,
    override_flag: str | None,
    working_directory: str | None,
    default_overrides: tuple[str, ...],
    synchroniser: bool,
) -> None:
    """Run the engine server."""
    from .server import run_server

    factory = _build_engine_factory(engine_path, engine_command, override_flag, working_directory)

    overrides = list(default_overrides)
    if synchroniser:
        if port == 0:
            raise click.UsageError("--synchroniser needs a fixed --port")
        overrides.insert(0, f"{SYNCHRONISER_PATH} = {address}:{port}")

    config = ServerConfig(
        address=address,
        port=port,
        verbose=verbose,
        receive_timeout=receive_timeout,
        state_change_timeout=state_change_timeout,
        isolation=IsolationPolicy(isolation),
        max_sessions=max_sessions,
        default_overrides=overrides,
    )

    click.echo(
        f"Starting sim-remote server on {config.endpoint} (protocol {PROTOCOL_VERSION})",
        err=True,
    )
    click.echo("Press Ctrl+C to stop", err=True)
    try:
        asyncio.run(run_server(config, factory))
    except BindFailed as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nShutting down", err=True)


# =============================================================================
# Client
# =============================================================================


def _print_response(response: Success | Failure, output_format: str) -> None:
    if output_format == FORMAT_JSON:
        click.echo(json.dumps(response.model_dump(mode="json"), indent=2))
        return
    if isinstance(response, Success):
        click.echo(f"Success ({response.command_id})")
        return
    click.echo(f"Failure ({response.command_id}): {len(response.report.faults)} fault(s)")
    for index, fault in enumerate(response.report.faults, 1):
        click.echo(f"  {index}. {fault.describe()}")


@main.command()
@click.argument("overrides", nargs=-1)
@click.option(
    "--address", default=DEFAULT_ADDRESS, envvar="SIM_REMOTE_ADDRESS", help="Server address"
)
@click.option("--port", default=DEFAULT_PORT, envvar="SIM_REMOTE_PORT", help="Server port")
@click.option("--connect-timeout", default=5.0, help="Seconds to wait for the handshake")
@click.option("--timeout", type=float, help="Seconds to wait for the response (default: forever)")
@click.option(
    "--format",
    "-f",
    "output_format",
    type=click.Choice([FORMAT_TEXT, FORMAT_JSON]),
    default=FORMAT_TEXT,
    help="Output format",
)
def send(
    overrides: tuple[str, ...],
    address: str,
    port: int,
    connect_timeout: float,
    timeout: float | None,
    output_format: str,
) -> None:
    """Send one command and print the engine's response.

    Each OVERRIDE has the form "<path> = <value>". Exits with status 1
    when the engine reports a failure, 2 when the session fails.

    Examples:

        sim-remote send "[Clock].StartDate = 2001-01-01"

        sim-remote send --format json "X.Param = 5" "Y.Param = 6"
    """
    from pydantic import ValidationError

    from .protocol.commands import Command
    from .sdk import EngineClient

    try:
        command = Command.create(*overrides)
    except ValidationError as e:
        raise click.BadParameter(e.errors()[0]["msg"], param_hint="OVERRIDES") from e

    config = ClientConfig(
        address=address,
        port=port,
        connect_timeout=connect_timeout,
        receive_timeout=timeout,
        client_name="sim-remote-cli",
    )

    async def do_send() -> Success | Failure:
        async with EngineClient(config) as client:
            return await client.send(command)

    try:
        response = asyncio.run(do_send())
    except (ProtocolError, TransportError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)

    _print_response(response, output_format)
    if not response.ok:
        sys.exit(1)


@main.command()
def version() -> None:
    """Show the protocol version."""
    click.echo(f"sim-remote protocol {PROTOCOL_VERSION}")


if __name__ == "__main__":
    main()
