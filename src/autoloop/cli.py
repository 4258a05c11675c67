"""autoloop CLI: drive a coding agent through verify / snapshot / review rounds.

Usage:
    autoloop run "add input validation to the signup form"   # Full loop in ./
    autoloop run -w ~/proj --reviewer tiered "fix lint"      # Explicit workspace and reviewer
    autoloop jobs                                            # List jobs, newest first
    autoloop show <job-id>                                   # Job detail and history
    autoloop verify lint                                     # Run a verify profile here
    autoloop snapshot <job-id>                               # Capture a snapshot here
    autoloop review <job-id> <snapshot-id>                   # Review an existing snapshot
    autoloop config                                          # Show configuration
    autoloop config loop.max_auto_fixes=3                    # Set a value
    autoloop serve                                           # Run the WebSocket daemon
"""

import asyncio
import datetime
import json
import logging
import os
import sys
from dataclasses import asdict, fields, is_dataclass

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from autoloop.config import AutoloopConfig, coerce_value, ensure_autoloop_home
from autoloop.daemon import LOG_FORMAT, AutoloopDaemon, build_runtime
from autoloop.exceptions import AutoloopError
from autoloop.models import TERMINAL_STATES, JobStatus
from autoloop.snapshots import SnapshotWriter
from autoloop.verify import VERIFY_PROFILES, VerifyRunner

console = Console()

_CONFIG_SECTIONS = {f.name for f in fields(AutoloopConfig)}

STATUS_COLORS = {
    "idle": "dim",
    "running": "blue",
    "verifying": "cyan",
    "snapshotting": "cyan",
    "reviewing": "magenta",
    "fixing": "yellow",
    "waiting_approval": "bold yellow",
    "completed": "green",
    "failed": "red",
}


def _run_async(coro):
    """Run async function from sync context."""
    return asyncio.run(coro)


def _load_config() -> AutoloopConfig:
    try:
        return AutoloopConfig.load()
    except AutoloopError as e:
        console.print(f"[bold red]Configuration error:[/] {e}")
        sys.exit(2)


def _status(status: str) -> str:
    return f"[{STATUS_COLORS.get(status, 'white')}]{status}[/]"


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def cli(verbose):
    """autoloop: unattended agent coding loop."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING, format=LOG_FORMAT)


# --- The loop ---


@cli.command()
@click.argument("description", nargs=-1, required=True)
@click.option("--workspace", "-w", default=None, help="Project directory (default: cwd)")
@click.option("--reviewer", "-r", default=None, help="Reviewer provider for this run")
@click.option("--max-fixes", type=int, default=None, help="Automatic fix rounds before giving up")
@click.option("--profile", "-p", default=None, type=click.Choice(sorted(VERIFY_PROFILES)),
              help="Verify profile")
@click.option("--quiet", "-q", is_flag=True, help="Do not stream agent output")
def run(description, workspace, reviewer, max_fixes, profile, quiet):
    """Start the agent on a task and loop until it is done, blocked or waiting.

    Examples:
        autoloop run "add a /health endpoint"
        autoloop run -w ../api --max-fixes 1 "make the tests pass"
    """
    ensure_autoloop_home()
    config = _load_config()
    if reviewer:
        config.reviewer.provider = reviewer
    if max_fixes is not None:
        config.loop.max_auto_fixes = max_fixes
    if profile:
        config.loop.verify_profile = profile
    try:
        config.validate()
    except AutoloopError as e:
        console.print(f"[bold red]{e}[/]")
        sys.exit(2)

    workspace = os.path.abspath(workspace or os.getcwd())
    task_text = " ".join(description)
    console.print(Panel(
        f"[italic]{task_text}[/]\n\n"
        f"Workspace: {workspace}\n"
        f"Reviewer: {config.reviewer.provider} | Verify: {config.loop.verify_profile} | "
        f"Max auto-fixes: {config.loop.max_auto_fixes}",
        title="[bold blue]autoloop[/]",
    ))

    job = _run_async(_drive(config, task_text, workspace, stream=not quiet))
    _print_outcome(job)
    if job.status is JobStatus.FAILED:
        sys.exit(1)


async def _drive(config: AutoloopConfig, task_text: str, workspace: str, stream: bool):
    rt = build_runtime(config)
    done = asyncio.Event()
    stop_states = {s.value for s in TERMINAL_STATES} | {JobStatus.WAITING_APPROVAL.value}

    def on_job(job_id: str, record: dict):
        status = record["status"]
        console.print(f"\n[dim]{job_id}[/] {_status(status)}", highlight=False)
        if status in stop_states:
            done.set()

    def on_session(event: str, session_id: str, payload: dict):
        if event == "data" and stream:
            sys.stdout.write(payload["data"])
            sys.stdout.flush()

    rt.orchestrator.subscribe(on_job)
    rt.sessions.add_listener(on_session)
    job = rt.orchestrator.create_job(task_text, workspace)
    try:
        job = rt.orchestrator.start_job(job.id, workspace)
        if job.status not in TERMINAL_STATES:
            await done.wait()
    finally:
        await rt.orchestrator.close()
        rt.sessions.terminate_all()
    return rt.orchestrator.get_job(job.id)


def _print_outcome(job):
    lines = [f"Status: {_status(job.status.value)}"]
    if job.latest_snapshot_id:
        lines.append(f"Snapshot: {job.latest_snapshot_id}")
    if job.review_result:
        r = job.review_result
        lines.append(f"Review: {r.decision.value} (level {r.achieved_level.value}) {r.summary}")
    lines.append(f"Auto-fixes: {job.auto_fix_count}")
    if job.failure_reason:
        lines.append(f"[red]Reason: {job.failure_reason}[/]")
    console.print(Panel("\n".join(lines), title=f"[bold]{job.id}[/]"))


# --- Jobs ---


@cli.command()
def jobs():
    """List all jobs, newest first."""
    rt = build_runtime(_load_config())
    all_jobs = rt.orchestrator.list_jobs()

    if not all_jobs:
        console.print("[dim]No jobs yet[/]")
        return

    table = Table(title="Jobs")
    table.add_column("ID", style="dim")
    table.add_column("Description")
    table.add_column("Status")
    table.add_column("Fixes")
    table.add_column("Created", style="dim")

    for j in all_jobs:
        created = datetime.datetime.fromtimestamp(j.created_at).strftime("%Y-%m-%d %H:%M")
        table.add_row(
            j.id,
            j.description.splitlines()[0][:50] if j.description else "",
            _status(j.status.value),
            str(j.auto_fix_count),
            created,
        )

    console.print(table)


@cli.command()
@click.argument("job_id")
def show(job_id):
    """Show one job with its history and latest review."""
    rt = build_runtime(_load_config())
    try:
        job = rt.orchestrator.get_job(job_id)
    except AutoloopError as e:
        console.print(f"[red]{e}[/]")
        sys.exit(1)

    _print_outcome(job)
    console.print(Panel(job.description, title="Description"))

    table = Table(title="History")
    table.add_column("Time", style="dim")
    table.add_column("Action", style="cyan")
    table.add_column("Result")
    for h in job.history:
        ts = datetime.datetime.fromtimestamp(h.timestamp).strftime("%H:%M:%S")
        table.add_row(ts, h.action, json.dumps(h.result, default=str)[:80] if h.result else "")
    console.print(table)

    if job.review_result and job.review_result.issues:
        issues = Table(title="Issues")
        issues.add_column("Severity")
        issues.add_column("Title")
        issues.add_column("Suggestion", style="dim")
        for i in job.review_result.issues:
            issues.add_row(i.severity.value, i.title, i.suggestion[:60])
        console.print(issues)


# --- Phase runners ---


@cli.command()
@click.argument("profile", type=click.Choice(sorted(VERIFY_PROFILES)), default="lint")
@click.option("--workspace", "-w", default=None, help="Project directory (default: cwd)")
def verify(profile, workspace):
    """Run a verify profile in a workspace."""
    workspace = os.path.abspath(workspace or os.getcwd())
    result = _run_async(VerifyRunner().run_verify(workspace, profile))
    color = "green" if result.success else "red"
    console.print(f"[{color}]{profile}: exit {result.exit_code}[/]")
    if result.error:
        console.print(f"[red]{result.error}[/]")
    if result.stdout_tail:
        console.print(Panel(result.stdout_tail, title="stdout (tail)"))
    if result.stderr_tail:
        console.print(Panel(result.stderr_tail, title="stderr (tail)"))
    if not result.success:
        sys.exit(1)


@cli.command()
@click.argument("job_id")
@click.option("--workspace", "-w", default=None, help="Project directory (default: cwd)")
@click.option("--intent", default="", help="What the change is meant to do")
def snapshot(job_id, workspace, intent):
    """Capture a snapshot of a workspace for a job."""
    ensure_autoloop_home()
    workspace = os.path.abspath(workspace or os.getcwd())
    result = _run_async(SnapshotWriter().create_snapshot(workspace, job_id, intent=intent))
    if not result.success:
        console.print(f"[red]Snapshot failed: {result.error}[/]")
        sys.exit(1)
    console.print(f"[green]Snapshot {result.snapshot_id}[/] {json.dumps(result.summary)}")


@cli.command()
@click.argument("job_id")
@click.argument("snapshot_id")
@click.option("--provider", "-r", default=None, help="Reviewer provider override")
def review(job_id, snapshot_id, provider):
    """Review an existing snapshot."""
    rt = build_runtime(_load_config())
    if provider:
        try:
            rt.reviews.set_reviewer(provider)
        except AutoloopError as e:
            console.print(f"[red]{e}[/]")
            sys.exit(2)

    outcome = _run_async(rt.reviews.review(job_id, snapshot_id))
    if not outcome.success:
        console.print(f"[red]Review failed: {outcome.error}[/]")
        sys.exit(1)
    console.print_json(json.dumps(outcome.result.to_dict()))


# --- Configuration ---


@cli.command()
@click.argument("key_value", nargs=-1)
def config(key_value):
    """View or set configuration.

    Examples:
        autoloop config                            # show all
        autoloop config reviewer.provider=tiered   # switch reviewer
        autoloop config session.agent_command=claude
    """
    cfg = _load_config()
    if not key_value:
        data = asdict(cfg)
        for secret in ("anthropic_api_key", "gemini_api_key", "openai_api_key"):
            data["reviewer"][secret] = "set" if data["reviewer"][secret] else ""
        console.print_json(json.dumps(data))
        return

    kv = " ".join(key_value)
    if "=" not in kv:
        console.print("[yellow]Usage: autoloop config section.key=value[/]")
        return

    key, value = (part.strip() for part in kv.split("=", 1))
    section_name, _, field_name = key.partition(".")
    # Only the dataclass sections are settable; methods like "validate" are not.
    section = getattr(cfg, section_name, None) if section_name in _CONFIG_SECTIONS else None
    known = {f.name for f in fields(section)} if is_dataclass(section) else set()
    if field_name not in known or field_name.endswith("_api_key"):
        console.print(f"[red]Unknown config key: {key}[/]")
        return

    try:
        coerced = coerce_value(getattr(section, field_name), value)
    except ValueError:
        console.print(f"[red]Invalid value for {key}: {value}[/]")
        return

    setattr(section, field_name, coerced)
    try:
        cfg.validate()
    except AutoloopError as e:
        console.print(f"[red]{e}[/]")
        return
    cfg.save()
    console.print(f"[green]Set {key} = {coerced}[/]")


# --- Daemon ---


@cli.command()
def serve():
    """Run the daemon with the WebSocket bridge (foreground)."""
    root = logging.getLogger()
    if root.level > logging.INFO:
        root.setLevel(logging.INFO)
    cfg = _load_config()
    console.print(
        f"[bold blue]autoloop daemon[/] on ws://{cfg.server.host}:{cfg.server.port}\n"
    )
    d = AutoloopDaemon(cfg)
    _run_async(d.start())


def main():
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
