"""CLI entrypoint for shipyard."""

import json
import logging
import threading
from dataclasses import replace
from pathlib import Path
from typing import Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from orchestrator import PipelineRunner, RunStore
from pipeline import __version__
from pipeline.config import Config, ConfigError, load_config
from schemas.artifact import InvalidArtifact
from schemas.pipeline_state import PipelineRun, RunStatus, StageOutcome
from tools.rollback import DeploymentHistory

app = typer.Typer(
    name="shipyard",
    help="Checkout, build, push, deploy and verify container images.",
    add_completion=False,
)
console = Console()

STATUS_STYLES = {
    RunStatus.SUCCEEDED: "green",
    RunStatus.RUNNING: "blue",
    RunStatus.FAILED: "red",
    RunStatus.ROLLED_BACK: "yellow",
}

OUTCOME_STYLES = {
    StageOutcome.SUCCESS: "green",
    StageOutcome.RETRIED: "yellow",
    StageOutcome.FAILED: "red",
    StageOutcome.SKIPPED: "dim",
}


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def _load(config_path: Optional[Path]) -> Config:
    try:
        return load_config(config_path)
    except ConfigError as e:
        rprint(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(2)


def _stage_table(run: PipelineRun) -> Table:
    table = Table(title=f"Run {run.id}")
    table.add_column("Stage", style="cyan")
    table.add_column("Attempt", justify="right")
    table.add_column("Outcome")
    table.add_column("Duration", justify="right", style="dim")
    table.add_column("Message")

    for result in run.stages:
        style = OUTCOME_STYLES.get(result.outcome, "white")
        table.add_row(
            result.stage.value,
            str(result.attempt),
            f"[{style}]{result.outcome.value}[/{style}]",
            f"{result.duration_ms}ms",
            (result.message or "")[:80],
        )
    return table


def _status(status: RunStatus) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status.value}[/{style}]"


@app.command()
def run(
    config_path: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to shipyard.toml (default: search from current directory)",
    ),
    tag: Optional[str] = typer.Option(
        None,
        "--tag",
        "-t",
        help="Image tag for this build (default: BUILD_NUMBER or a timestamp)",
    ),
    prior_tag: Optional[str] = typer.Option(
        None,
        "--prior-tag",
        help="Tag to roll back to (default: last good deployment)",
    ),
    no_rollback: bool = typer.Option(
        False,
        "--no-rollback",
        help="Fail instead of rolling back a bad rollout",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Show the commands that would run without executing them",
    ),
) -> None:
    """Run the pipeline once.

    Exits 0 when the run succeeded, 1 when it failed or was rolled back and
    2 on configuration errors.

    Examples:
        shipyard run
        shipyard run --tag 42 --prior-tag 41
    """
    config = _load(config_path)
    if tag:
        config = replace(config, build=replace(config.build, tag=tag))
    if no_rollback:
        config = replace(config, deploy=replace(config.deploy, rollback_enabled=False))

    _setup_logging(config.pipeline.log_level)

    try:
        runner = PipelineRunner(
            config=config,
            store=RunStore(config.pipeline.runs_dir),
            history=DeploymentHistory(Path(config.pipeline.history_file)),
            console=console,
            prior_tag=prior_tag,
        )
    except InvalidArtifact as e:
        rprint(f"[red]Invalid artifact:[/red] {e}")
        raise typer.Exit(2)

    if dry_run:
        rprint(f"[bold blue]Dry run:[/bold blue] {runner.artifact}")
        rprint(f"[dim]Deployment: {runner.deployment}[/dim]")
        prior = runner.state_machine.prior_artifact
        rprint(f"[dim]Rollback target: {prior or 'none'}[/dim]")
        rprint()
        for stage, command in runner.plan():
            rprint(f"  [cyan]{stage.value:<8}[/cyan] {command.summary()}")
        return

    # The run executes on a worker thread so Ctrl-C can cancel it cleanly
    worker = threading.Thread(target=runner.run, name=f"run-{runner.run_state.id}")
    worker.start()
    try:
        while worker.is_alive():
            worker.join(0.2)
    except KeyboardInterrupt:
        rprint("[yellow]Cancelling...[/yellow]")
        runner.cancel()
        worker.join()

    result = runner.run_state
    rprint()
    console.print(_stage_table(result))
    rprint(f"[bold]Status:[/bold] {_status(result.final_status)}")
    if result.deployed_artifact:
        rprint(f"[bold]Deployed:[/bold] {result.deployed_artifact}")
    if result.error:
        rprint(f"[bold]Error:[/bold] {result.error}")
    if runner.executor.orphans:
        pids = ", ".join(str(pid) for pid in runner.executor.orphans)
        rprint(f"[yellow]Processes that could not be stopped:[/yellow] {pids}")

    if result.final_status != RunStatus.SUCCEEDED:
        raise typer.Exit(1)


@app.command()
def runs(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to shipyard.toml"),
) -> None:
    """List all pipeline runs."""
    config = _load(config_path)
    store = RunStore(config.pipeline.runs_dir)

    run_ids = store.list_runs()
    if not run_ids:
        rprint("[dim]No runs found.[/dim]")
        return

    table = Table(title="Pipeline Runs")
    table.add_column("Run ID", style="cyan")
    table.add_column("Artifact", style="white")
    table.add_column("Status")
    table.add_column("State", style="yellow")

    for run_id in run_ids:
        try:
            past = store.load(run_id)
        except (ValueError, KeyError) as e:
            table.add_row(run_id, f"[red]unreadable: {e}[/red]", "", "")
            continue
        table.add_row(past.id, past.artifact.reference(), _status(past.final_status), past.state.value)

    console.print(table)


@app.command()
def show(
    run_id: str = typer.Argument(..., help="Run ID to show details for"),
    as_json: bool = typer.Option(False, "--json", help="Print the run as JSON"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to shipyard.toml"),
) -> None:
    """Show details of a specific run."""
    config = _load(config_path)
    store = RunStore(config.pipeline.runs_dir)

    try:
        past = store.load(run_id)
    except FileNotFoundError:
        rprint(f"[red]Run not found: {run_id}[/red]")
        raise typer.Exit(1)

    if as_json:
        typer.echo(json.dumps(past.model_dump(mode="json"), indent=2))
        return

    rprint(f"[bold]Run: {past.id}[/bold]")
    rprint()
    rprint(f"[green]Artifact:[/green] {past.artifact}")
    rprint(f"[green]Status:[/green] {_status(past.final_status)}")
    rprint(f"[green]State:[/green] {past.state.value}")
    if past.commit:
        rprint(f"[green]Commit:[/green] {past.commit}")
    if past.deployed_artifact:
        rprint(f"[green]Deployed:[/green] {past.deployed_artifact}")
    if past.error:
        rprint(f"[green]Error:[/green] {past.error}")
    rprint()
    console.print(_stage_table(past))


@app.command()
def history(
    deployment: Optional[str] = typer.Argument(None, help="Deployment as namespace/name"),
    limit: int = typer.Option(10, "--limit", "-n", help="Number of records to show"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to shipyard.toml"),
) -> None:
    """Show deployment history.

    Examples:
        shipyard history
        shipyard history default/web
    """
    config = _load(config_path)
    records = DeploymentHistory(Path(config.pipeline.history_file)).get_history(deployment)

    if not records:
        rprint("[yellow]No deployments recorded[/yellow]")
        return

    table = Table(title="Deployment History")
    table.add_column("Deployment", style="blue")
    table.add_column("Image", style="cyan")
    table.add_column("Timestamp", style="dim")
    table.add_column("Run", style="dim")
    table.add_column("Status")

    for record in list(reversed(records))[:limit]:
        status = "[green]Success[/green]" if record.success else "[red]Failed[/red]"
        table.add_row(record.deployment, record.image, record.timestamp[:19], record.run_id, status)

    console.print(table)


@app.command("config")
def config_show(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to shipyard.toml"),
) -> None:
    """Show current configuration."""
    cfg = _load(config_path)

    table = Table(title="Current Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    for section, values in cfg.to_dict().items():
        for key, value in values.items():
            table.add_row(f"{section}.{key}", str(value))

    console.print(table)


@app.command()
def version() -> None:
    """Show version information."""
    rprint(f"[bold blue]shipyard[/bold blue] v{__version__}")


if __name__ == "__main__":
    app()
