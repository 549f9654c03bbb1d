from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Optional

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

from .constants import MERGE_APPROVAL_REQUIRED, PHASE_APPROVAL_REQUIRED
from .errors import PhaseRunnerError
from .logging_utils import configure_logging, pretty
from .models import OrchestrationResult, Task
from .runtime import Runtime

APPROVAL_EVENTS = (MERGE_APPROVAL_REQUIRED, PHASE_APPROVAL_REQUIRED)
QUIET_EVENTS = ("agent:activity",)


def _resolve_project_dir(project_dir: Optional[str]) -> Path:
    return Path(project_dir).expanduser().resolve() if project_dir else Path.cwd().resolve()


def _pipelines(args: argparse.Namespace) -> int:
    runtime = Runtime.create(_resolve_project_dir(args.project_dir))
    table = Table(title="Pipelines")
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Phases")
    table.add_column("Description")
    for pipeline in runtime.registry.list_pipelines():
        marker = " (default)" if pipeline.name == runtime.default_pipeline else ""
        table.add_row(pipeline.name + marker, " → ".join(pipeline.phase_names()), pipeline.description)
    Console().print(table)
    return 0


def _console_observer(runtime: Runtime, task_id: str, console: Console, *, assume_yes: bool, verbose: bool):
    interactive = sys.stdin.isatty()

    async def observe(event: str, data: dict[str, Any]) -> None:
        if event in APPROVAL_EVENTS:
            console.print(Panel(pretty(data), title=f"APPROVAL REQUIRED: {event}", border_style="yellow"))
            if assume_yes:
                approved, feedback = True, "approved with --yes"
            elif interactive:
                approved = await asyncio.to_thread(Confirm.ask, "Approve?", console=console)
                feedback = None
            else:
                approved, feedback = False, "no interactive approver"
            runtime.gate.resolve(task_id, approved, feedback)
            return
        if event in QUIET_EVENTS and not verbose:
            return
        console.print(f"[cyan]{event}[/cyan] {json.dumps(data, default=str)[:300]}")

    return observe


def _print_result(console: Console, result: OrchestrationResult) -> None:
    table = Table(title=f"{result.pipeline} · task {result.task_id}")
    table.add_column("Phase", style="cyan")
    table.add_column("Result")
    table.add_column("Duration", justify="right")
    table.add_column("Error")
    for phase_result in result.phase_results:
        status = "[green]ok[/green]" if phase_result.success else "[red]failed[/red]"
        table.add_row(
            phase_result.phase,
            status,
            f"{phase_result.duration_seconds:.1f}s",
            phase_result.error or "",
        )
    console.print(table)
    if result.success:
        console.print("[green]✓ Pipeline completed[/green]")
    else:
        console.print(f"[red]✗ Pipeline failed: {result.error}[/red]")


async def _run_pipeline(args: argparse.Namespace, console: Console) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    runtime = Runtime.create(project_dir)
    task = Task(title=args.title, description=args.description or "")
    if args.task_id:
        task.id = args.task_id
    initial: dict[str, Any] = {"working_directory": project_dir}
    if args.auto_merge:
        initial["auto_merge"] = True

    observer = _console_observer(runtime, task.id, console, assume_yes=args.yes, verbose=args.verbose)
    await runtime.bridge.join(task.id, observer, observer_id="cli")
    try:
        result = await runtime.orchestrator.run(args.pipeline or runtime.default_pipeline, task, initial)
    finally:
        await runtime.aclose()
    _print_result(console, result)
    return 0 if result.success else 1


def _run(args: argparse.Namespace) -> int:
    console = Console()
    try:
        return asyncio.run(_run_pipeline(args, console))
    except PhaseRunnerError as exc:
        sys.stderr.write(f"{exc}\n")
        return 1
    except KeyboardInterrupt:
        sys.stderr.write("Interrupted\n")
        return 130


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    from .server import create_app

    runtime = Runtime.create(_resolve_project_dir(args.project_dir))
    app = create_app(runtime)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run multi-phase agent pipelines")
    parser.add_argument("--project-dir", default=None, help="Target project directory (default: current working directory)")
    parser.add_argument("--log-level", default="INFO", help="Log level (DEBUG, INFO, WARNING, ...)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Start the HTTP/WebSocket server")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", default=8000, type=int)
    serve.set_defaults(func=_serve)

    pipelines = subparsers.add_parser("pipelines", help="List registered pipelines")
    pipelines.set_defaults(func=_pipelines)

    run = subparsers.add_parser("run", help="Run a pipeline for a task in the project directory")
    run.add_argument("title")
    run.add_argument("--description", default="")
    run.add_argument("--pipeline", default=None, help="Pipeline name (default from config)")
    run.add_argument("--task-id", default=None)
    run.add_argument("--auto-merge", action="store_true", help="Merge without asking for approval")
    run.add_argument("--yes", action="store_true", help="Approve every approval request")
    run.add_argument("--verbose", action="store_true", help="Also print agent activity")
    run.set_defaults(func=_run)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return 1
    return int(handler(args) or 0)


if __name__ == "__main__":
    raise SystemExit(main())
