from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import click
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AppConfig, load_config
from .errors import SnaprunError
from .logging_config import configure_logging
from .models import ExecutionMode, FixRequest, RunStatus, StartRunRequest
from .orchestrator import OrchestratorReply, RunOrchestrator, build_orchestrator
from .timeline import Timeline


console = Console()

SUCCESS_STATUSES = {RunStatus.FINISHED.value, RunStatus.VERIFIED.value, "no_fix_needed"}


def _orchestrator(ctx: click.Context) -> RunOrchestrator:
    return build_orchestrator(ctx.obj["config"])


def _print_reply(reply: OrchestratorReply, title: str) -> None:
    body = reply.body
    table = Table(title=title, show_lines=True)
    table.add_column("Field")
    table.add_column("Value")
    for key in ("runId", "status", "error", "code", "reason", "diffPath", "metricsPath"):
        if body.get(key) is not None:
            table.add_row(key, str(body[key]))
    analysis = body.get("analysis") or {}
    if analysis:
        table.add_row("summary", str(analysis.get("summary", "")))
        table.add_row("confidence", f"{analysis.get('confidence')}%")
    result = body.get("runResult") or body.get("verify") or {}
    if result:
        table.add_row("exit", str(result.get("code")))
        table.add_row("duration", f"{result.get('durationMs', 0)}ms")
    for name, path in sorted((body.get("logPaths") or {}).items()):
        table.add_row(f"log:{name}", path)
    console.print(table)


def _finish(reply: OrchestratorReply) -> None:
    if reply.body.get("status") not in SUCCESS_STATUSES:
        raise SystemExit(1)


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version=__version__, message="snaprun %(version)s")
@click.option("--config", "config_path", type=click.Path(exists=True, path_type=Path), default=None)
@click.option("--data-dir", type=click.Path(file_okay=False, path_type=Path), default=None, help="Where runs are stored.")
@click.option("--verbose", is_flag=True, default=False, help="Increase logging verbosity.")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[Path], data_dir: Optional[Path], verbose: bool) -> None:
    """Run commands against a repository copy, then analyze, fix and verify them."""
    configure_logging(verbose=verbose, logger_name="snaprun.cli")
    ctx.ensure_object(dict)
    ctx.obj["config"] = load_config(config_path, data_dir=data_dir)


@main.command()
@click.option("--host", type=str, default=None)
@click.option("--port", type=int, default=None)
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int]) -> None:  # pragma: no cover - blocks
    """Start the HTTP service."""
    import uvicorn

    from .api import create_app

    config: AppConfig = ctx.obj["config"]
    uvicorn.run(
        create_app(config),
        host=host or config.server.host,
        port=port or config.server.port,
        log_config=None,
    )


@main.command()
@click.argument("repo_path", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.argument("command")
@click.option("--timeout-ms", type=click.IntRange(min=1), default=None)
@click.option("--mode", type=click.Choice([mode.value for mode in ExecutionMode]), default=None)
@click.option("--docker-image", type=str, default=None, help="Run inside this container image.")
@click.option("--keep-sandbox", is_flag=True, default=False, help="Keep the sandbox copy for debugging.")
@click.option("--fix", "with_fix", is_flag=True, default=False, help="Invoke the fix agent when the run fails.")
@click.pass_context
def run(
    ctx: click.Context,
    repo_path: Path,
    command: str,
    timeout_ms: Optional[int],
    mode: Optional[str],
    docker_image: Optional[str],
    keep_sandbox: bool,
    with_fix: bool,
) -> None:
    """Execute COMMAND against REPO_PATH and record the run."""
    orchestrator = _orchestrator(ctx)
    request = StartRunRequest(
        repo_path_on_host=str(repo_path),
        command=command,
        timeout_ms=timeout_ms,
        mode=mode,
        docker_image=docker_image,
        keep_sandbox=keep_sandbox or None,
    )
    reply = asyncio.run(orchestrator.start_run(request))
    _print_reply(reply, "Run Summary")
    run_id = reply.body.get("runId")
    if with_fix and run_id and reply.body.get("status") == RunStatus.FAILED.value:
        reply = asyncio.run(orchestrator.fix_run(run_id, FixRequest(docker_image=docker_image)))
        _print_reply(reply, "Fix Summary")
    _finish(reply)


@main.command()
@click.argument("run_id")
@click.option("--command", type=str, default=None, help="Verification command override.")
@click.option("--timeout-ms", type=click.IntRange(min=1), default=None, help="Fix agent timeout.")
@click.option("--docker-image", type=str, default=None)
@click.pass_context
def fix(
    ctx: click.Context, run_id: str, command: Optional[str], timeout_ms: Optional[int], docker_image: Optional[str]
) -> None:
    """Invoke the fix agent for a failed run, then verify the result."""
    request = FixRequest(command=command, timeout_ms=timeout_ms, docker_image=docker_image)
    reply = asyncio.run(_orchestrator(ctx).fix_run(run_id, request))
    _print_reply(reply, "Fix Summary")
    _finish(reply)


@main.command()
@click.argument("run_id")
@click.option("--command", type=str, default=None)
@click.option("--timeout-ms", type=click.IntRange(min=1), default=None)
@click.option("--docker-image", type=str, default=None)
@click.pass_context
def verify(
    ctx: click.Context, run_id: str, command: Optional[str], timeout_ms: Optional[int], docker_image: Optional[str]
) -> None:
    """Re-run a run's command in a fresh sandbox."""
    request = FixRequest(command=command, timeout_ms=timeout_ms, docker_image=docker_image)
    reply = asyncio.run(_orchestrator(ctx).verify_run(run_id, request))
    _print_reply(reply, "Verify Summary")
    if not reply.ok:
        raise SystemExit(1)


@main.command()
@click.argument("run_id")
@click.option("--yes", "confirmed", is_flag=True, default=False, help="Write the files instead of listing them.")
@click.pass_context
def apply(ctx: click.Context, run_id: str, confirmed: bool) -> None:
    """Write a run's generated patch candidates into its repository."""
    reply = asyncio.run(_orchestrator(ctx).apply_patches(run_id, apply=confirmed))
    _print_reply(reply, "Apply Summary")
    for path in reply.body.get("willApply") or reply.body.get("applied") or []:
        console.print(f"  {path}")
    if reply.body.get("message"):
        console.print(reply.body["message"])
    if not reply.ok:
        raise SystemExit(1)


@main.command("list")
@click.pass_context
def list_runs(ctx: click.Context) -> None:
    """List recorded runs, newest first."""
    items = asyncio.run(_orchestrator(ctx).store.list_runs())
    table = Table(title="Runs")
    table.add_column("Run ID")
    table.add_column("Created")
    table.add_column("File")
    for item in items:
        created = datetime.fromtimestamp(item.ts / 1000, tz=timezone.utc).isoformat(timespec="seconds")
        table.add_row(item.id, created, item.file)
    console.print(table)


@main.command()
@click.argument("run_id")
@click.pass_context
def show(ctx: click.Context, run_id: str) -> None:
    """Print the stored run record as JSON."""
    try:
        record = asyncio.run(_orchestrator(ctx).store.read_run(run_id))
    except SnaprunError as exc:
        raise click.ClickException(str(exc)) from exc
    payload: Dict[str, Any] = record.to_json_dict()
    console.print_json(json.dumps(payload))


@main.command()
@click.argument("run_id")
@click.option("--phase", type=click.Choice(["run", "fix"]), default="run")
@click.pass_context
def timeline(ctx: click.Context, run_id: str, phase: str) -> None:
    """Print the text timeline of a run."""
    store = _orchestrator(ctx).store
    try:
        base = store.timeline_base(run_id, None if phase == "run" else phase)
    except SnaprunError as exc:
        raise click.ClickException(str(exc)) from exc
    text = Timeline.read_txt(base)
    if not text:
        raise click.ClickException(f"no {phase} timeline recorded for {run_id}")
    click.echo(text)


if __name__ == "__main__":  # pragma: no cover
    main()
