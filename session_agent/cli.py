"""
CLI entrypoint for the session agent.

Provides commands to run the agent, inspect the session, and trigger a single
action workflow.
"""
import asyncio
from pathlib import Path
from typing import Optional

import typer

from session_agent.app import AgentRuntime
from session_agent.config.config import Config, load_config
from session_agent.config.dotenv_loader import load_dotenv_files
from session_agent.domain.models import Step, StepStatus
from session_agent.exceptions import AgentError, ConfigurationError
from session_agent.monitoring.logger import get_logger, setup_logging

app = typer.Typer(
    name="session-agent",
    help="Delegated session agent: delegation, execution and reconciliation orchestrator",
    add_completion=False,
)

logger = get_logger(__name__)

_STATUS_STYLE = {
    StepStatus.PENDING: ("…", typer.colors.YELLOW),
    StepStatus.SUCCESS: ("✓", typer.colors.GREEN),
    StepStatus.ERROR: ("✗", typer.colors.RED),
}


def _load(config_path: Optional[Path], paper: bool) -> Config:
    try:
        config = load_config(config_path, live=not paper)
    except (FileNotFoundError, ConfigurationError) as e:
        typer.secho(f"Configuration error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2)
    setup_logging(config.monitoring.log_level, config.monitoring.log_format, config.monitoring.log_file)
    return config


def _runtime(config: Config, paper: bool) -> AgentRuntime:
    try:
        return AgentRuntime.from_config(config, paper=paper)
    except ConfigurationError as e:
        typer.secho(f"Configuration error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2)


def _echo_step(step: Step) -> None:
    icon, color = _STATUS_STYLE[step.status]
    index = f"{step.index}/{step.total}" if step.index >= 0 else "!"
    typer.secho(f"  [{index}] {icon} {step.label}", fg=color)
    if step.detail:
        typer.echo(f"        {step.detail}")
    if step.reference_url:
        typer.echo(f"        {step.reference_url}")


@app.command()
def run(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
    paper: bool = typer.Option(False, "--paper", help="Use the in-memory ledger instead of live endpoints"),
):
    """
    Start the agent: push server plus periodic monitor.

    Example:
        session-agent run --paper
    """
    config = _load(config_path, paper)
    if not paper and config.environment == "paper":
        logger.warning("Environment is 'paper' but --paper was not given; using live endpoints")

    runtime = _runtime(config, paper)
    asyncio.run(runtime.run())


@app.command()
def status(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
    paper: bool = typer.Option(False, "--paper", help="Use the in-memory ledger instead of live endpoints"),
):
    """Show where the session lives and how much exposure it has used."""
    config = _load(config_path, paper)
    runtime = _runtime(config, paper)
    try:
        info = asyncio.run(runtime.status())
    except AgentError as e:
        typer.secho(f"Status failed: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    typer.echo("Session Status")
    typer.echo("=" * 50)
    typer.echo(f"Environment:  {config.environment}{' (paper)' if paper else ''}")
    typer.echo(f"Session:      {info['session_address']}")
    typer.echo(f"Location:     {info['location']}")
    state_color = typer.colors.GREEN if info["active"] and not info["expired"] else typer.colors.RED
    state = "active" if info["active"] else "inactive"
    if info["expired"]:
        state += ", expired"
    typer.secho(f"State:        {state} (expires {info['expires_at']})", fg=state_color)
    typer.echo(
        f"Exposure:     {info['spent_exposure']:,} / {info['max_exposure']:,} ({info['exposure_used_pct']}%)"
    )
    typer.echo(f"Actions:      {info['action_count']}")
    typer.echo(f"Strategies:   {info['strategy_mask']:#05b}")
    typer.echo("=" * 50)
    typer.echo("Recent memory:")
    for line in info["memory_tail"].splitlines():
        typer.echo(f"  {line}")


@app.command()
def trigger(
    action: str = typer.Argument(..., help="Action category, e.g. lp_rebalance"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
    paper: bool = typer.Option(False, "--paper", help="Use the in-memory ledger instead of live endpoints"),
):
    """
    Run one action workflow in-process and print each step.

    Example:
        session-agent trigger lp_rebalance --paper
    """
    config = _load(config_path, paper)
    runtime = _runtime(config, paper)
    runtime.step_bus.add_listener(_echo_step)

    typer.echo(f"Triggering {action}")
    workflow = asyncio.run(runtime.dispatcher.run_now(action))
    if workflow is None:
        typer.secho(f"Trigger dropped: unknown action or workflow in flight ({action})", fg=typer.colors.YELLOW)
        raise typer.Exit(code=1)
    if not workflow.succeeded:
        raise typer.Exit(code=1)
    typer.secho(f"Workflow {workflow.id} completed", fg=typer.colors.GREEN)


def main() -> None:
    """Console entry: load local dotenv files (no-op in prod), then run the CLI."""
    load_dotenv_files()
    app()


if __name__ == "__main__":
    main()
