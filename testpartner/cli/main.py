#!/usr/bin/env python3
"""Main CLI entry point for testpartner using Typer.

Each invocation builds a coordinator over the configured shared store and
issues a single command, so sessions started from one shell can be paused,
inspected and stopped from another.
"""

import asyncio
import json
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path
from typing import Annotated, Any, Optional

import typer
import yaml

from .. import __version__
from ..backend.client import BackendClient
from ..config import PartnerConfig, PartnerConfigManager, get_config
from ..coordinator.background import BackgroundCoordinator
from ..coordinator.commands import CommandRequest, CommandResponse, CommandType
from ..logging_setup import configure_logging
from ..session.manager import SessionManager
from ..store import FileSharedStore, create_store


class ExitCode(IntEnum):
    """CLI exit codes."""
    SUCCESS = 0
    COMMAND_FAILED = 1
    CONFIG_ERROR = 2


@dataclass
class CLIState:
    config_path: Optional[Path] = None
    store_path: Optional[Path] = None
    verbose: bool = False
    as_json: bool = False


app = typer.Typer(
    name="testpartner",
    help="testpartner - exploratory testing session capture",
    add_completion=False,
)


def version_callback(value: bool):
    if value:
        typer.echo(f"testpartner v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    config: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Path to configuration YAML")
    ] = None,
    store: Annotated[
        Optional[Path],
        typer.Option("--store", help="Use a JSON file store at this path")
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging")
    ] = False,
    as_json: Annotated[
        bool,
        typer.Option("--json", help="Print raw JSON responses")
    ] = False,
    version: Annotated[
        Optional[bool],
        typer.Option("--version", callback=version_callback, is_eager=True, help="Show version")
    ] = None,
):
    """
    testpartner - capture and coordinate exploratory testing sessions.
    """
    ctx.obj = CLIState(config_path=config, store_path=store, verbose=verbose, as_json=as_json)


def _load_config(state: CLIState) -> PartnerConfig:
    manager = PartnerConfigManager(state.config_path) if state.config_path else get_config()
    try:
        return manager.load_config()
    except (ValueError, yaml.YAMLError) as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(code=ExitCode.CONFIG_ERROR.value)


async def _dispatch(state: CLIState, config: PartnerConfig, request: CommandRequest) -> CommandResponse:
    store_settings = config.get_store_settings()
    if state.store_path:
        store = FileSharedStore(state.store_path)
    else:
        store = create_store(store_settings.backend, **store_settings.store_kwargs())

    backend = None
    backend_settings = config.get_backend_settings()
    if backend_settings.enabled:
        backend = BackendClient(
            store,
            base_url=backend_settings.base_url,
            timeout_seconds=backend_settings.timeout_seconds,
            verify_ssl=backend_settings.verify_ssl,
        )

    try:
        coordinator = BackgroundCoordinator(SessionManager(store, context_name="cli"), backend=backend)
        return await coordinator.handle(request)
    finally:
        if backend is not None:
            await backend.close()
        await store.close()


def _execute(ctx: typer.Context, command: CommandType, **payload: Any) -> CommandResponse:
    state: CLIState = ctx.obj or CLIState()
    config = _load_config(state)

    logging_settings = config.get_logging_settings()
    configure_logging("DEBUG" if state.verbose else logging_settings.level, logging_settings.format)

    response = asyncio.run(_dispatch(state, config, CommandRequest.of(command, **payload)))

    if state.as_json:
        typer.echo(json.dumps(response.to_dict(), indent=2, default=str))
    if not response.success:
        typer.echo(f"Error: {response.error}", err=True)
        raise typer.Exit(code=ExitCode.COMMAND_FAILED.value)
    return response


def _quiet(ctx: typer.Context) -> bool:
    return bool(ctx.obj and ctx.obj.as_json)


@app.command(name="version")
def show_version():
    """Show version information."""
    typer.echo(f"testpartner v{__version__}")


@app.command()
def start(
    ctx: typer.Context,
    name: Annotated[Optional[str], typer.Option("--name", "-n", help="Session name")] = None,
    description: Annotated[Optional[str], typer.Option("--description", "-d", help="Session description")] = None,
):
    """Start a new testing session."""
    response = _execute(ctx, CommandType.START_SESSION, name=name, description=description)
    if not _quiet(ctx):
        typer.echo(f"Session started: {response.session_id}")


@app.command()
def stop(ctx: typer.Context):
    """Complete the open session."""
    response = _execute(ctx, CommandType.STOP_SESSION)
    if not _quiet(ctx):
        session = response.session_data or {}
        typer.echo(f"Session stopped: {session.get('id')} ({len(session.get('events', []))} events)")
        if not response.synced:
            typer.echo("Session kept locally (not uploaded)")


@app.command()
def pause(ctx: typer.Context):
    """Pause the active session."""
    _execute(ctx, CommandType.PAUSE_SESSION)
    if not _quiet(ctx):
        typer.echo("Session paused")


@app.command()
def resume(ctx: typer.Context):
    """Resume the paused session."""
    _execute(ctx, CommandType.RESUME_SESSION)
    if not _quiet(ctx):
        typer.echo("Session resumed")


@app.command()
def cancel(ctx: typer.Context):
    """Cancel the open session."""
    _execute(ctx, CommandType.CANCEL_SESSION)
    if not _quiet(ctx):
        typer.echo("Session cancelled")


@app.command()
def status(ctx: typer.Context):
    """Show the current session status."""
    response = _execute(ctx, CommandType.GET_SESSION_STATUS)
    if _quiet(ctx):
        return
    session = response.session_data
    if session is None:
        typer.echo("No session")
        return
    typer.echo(f"Session: {session['name']} ({session['status']})")
    typer.echo(f"ID: {session['id']}")
    typer.echo(f"Started: {session.get('start_time') or 'N/A'}")
    if session.get('end_time'):
        typer.echo(f"Ended: {session['end_time']}")


@app.command()
def stats(ctx: typer.Context):
    """Show aggregated session statistics."""
    response = _execute(ctx, CommandType.GET_STATS)
    if _quiet(ctx):
        return
    values = response.stats
    typer.echo(f"Events: {values['event_count']}")
    typer.echo(f"Errors: {values['error_count']}")
    typer.echo(f"Screenshots: {values['screenshot_count']}")
    typer.echo(f"Flags: {values['flag_count']}")
    typer.echo(f"Duration: {values['duration_ms'] // 1000}s")


@app.command()
def report(
    ctx: typer.Context,
    out: Annotated[Optional[Path], typer.Option("--out", "-o", help="Write the report to this file")] = None,
):
    """Export a Markdown report of the current session."""
    response = _execute(ctx, CommandType.EXPORT_REPORT)
    if _quiet(ctx):
        return
    if out is not None:
        out.write_text(response.report)
        typer.echo(f"Report written to {out}")
    else:
        typer.echo(response.report)


@app.command()
def clear(
    ctx: typer.Context,
    all_data: Annotated[bool, typer.Option("--all", help="Also remove legacy log data")] = False,
):
    """Remove the session record from the store."""
    _execute(ctx, CommandType.CLEAR_SESSION, all=all_data)
    if not _quiet(ctx):
        typer.echo("Session cleared")


@app.command(name="retry-uploads")
def retry_uploads(ctx: typer.Context):
    """Resend sessions whose backend upload failed."""
    response = _execute(ctx, CommandType.RETRY_PENDING_UPLOADS)
    if not _quiet(ctx):
        typer.echo(f"Sent: {response.sent}, remaining: {response.remaining}")


def cli_main():
    """Entry point for console script."""
    app()


if __name__ == "__main__":
    cli_main()
