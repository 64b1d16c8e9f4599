"""CLI interface for agentdesk.

Provides commands for:
- Starting the HTTP server
- Inspecting the model catalog and the seeded agents
- A credential-free smoke run of the orchestration core
"""

import asyncio

import click
import uvicorn

from agentdesk import __version__
from agentdesk.config import get_settings
from agentdesk.logging import configure_logging
from agentdesk.orchestration.models import AgentKind


@click.group()
@click.version_option(version=__version__, prog_name="agentdesk")
def cli() -> None:
    """agentdesk - agent routing and orchestration core."""
    pass


@cli.command()
@click.option("--host", "-h", default=None, help="Host to bind to")
@click.option("--port", "-p", default=None, type=int, help="Port to bind to")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development")
def serve(host: str | None, port: int | None, reload: bool) -> None:
    """Start the HTTP server."""
    settings = get_settings()

    actual_host = host or settings.host
    actual_port = port or settings.port

    click.echo(f"Starting agentdesk on {actual_host}:{actual_port}")

    uvicorn.run(
        "agentdesk.server:app",
        host=actual_host,
        port=actual_port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


@cli.command()
def info() -> None:
    """Show configuration (credentials are not printed)."""
    settings = get_settings()
    providers = sorted(settings.provider_credentials()) or ["none"]

    click.echo("agentdesk configuration:\n")
    click.echo(f"  Host:        {settings.host}")
    click.echo(f"  Port:        {settings.port}")
    click.echo(f"  Debug:       {settings.debug}")
    click.echo(f"  Log Level:   {settings.log_level}")
    click.echo(f"  Database:    {settings.database_url}")
    click.echo(f"  Providers:   {', '.join(providers)}")
    click.echo(f"  Stale after: {settings.stale_task_seconds:g}s")


@cli.group()
def models() -> None:
    """Model catalog commands."""
    pass


@models.command("list")
@click.option("--category", "-c", default=None, help="Only show one category")
def list_models(category: str | None) -> None:
    """List catalog models."""
    from agentdesk.errors import ValidationError
    from agentdesk.orchestration.catalog import ModelCatalog

    try:
        entries = ModelCatalog.default().list_models(category)
    except ValidationError as exc:
        raise click.ClickException(exc.detail) from exc

    if not entries:
        click.echo("No models in this category.")
        return

    click.echo(f"Models ({len(entries)}):\n")
    for model in entries:
        name = click.style(model.model_id, fg="green", bold=True)
        click.echo(f"  {name}  {model.display_name} [{model.provider.value}/{model.category.value}]")


@cli.group()
def agents() -> None:
    """Agent commands."""
    pass


@agents.command("list")
def list_agents() -> None:
    """List the seeded agents."""
    from agentdesk.orchestration.agents import default_agents

    entries = default_agents()
    click.echo(f"Agents ({len(entries)}):\n")
    for agent in entries:
        click.echo(f"  {click.style(agent.type.value, fg='green', bold=True)}  {agent.name} -> {agent.model_id}")
        click.echo(f"    {', '.join(agent.capabilities)}")


@cli.command()
@click.option(
    "--agent",
    "agent_type",
    type=click.Choice([kind.value for kind in AgentKind]),
    default=AgentKind.TURBO.value,
    show_default=True,
    help="Agent to run the task on",
)
@click.option("--message", "-m", default="Say hello", show_default=True, help="Task message")
def smoke(agent_type: str, message: str) -> None:
    """Run one task and one session cycle on the local echo backend.

    The agent is rebound to the local echo model, so no provider
    credentials are needed. Prints every change event that was emitted.
    """
    from agentdesk.errors import OrchestratorError

    configure_logging(json_format=False, level=get_settings().log_level)
    try:
        events = asyncio.run(_smoke(agent_type, message))
    except OrchestratorError as exc:
        raise click.ClickException(f"{exc.kind}: {exc.detail}") from exc

    click.echo(f"Change events ({len(events)}):\n")
    for event in events:
        click.echo(f"  {event.entity_type.value:<8} {event.entity_id:<28} {event.new_state}")


async def _smoke(agent_type: str, message: str) -> list:
    from agentdesk.events import RecordingSubscriber
    from agentdesk.orchestration.catalog import LOCAL_ECHO_MODEL
    from agentdesk.orchestration.models import SubscriptionTier, UserContext
    from agentdesk.orchestration.orchestrator import Orchestrator

    settings = get_settings().model_copy(
        update={
            "agent_models": {agent_type: LOCAL_ECHO_MODEL},
            "session_start_delay_seconds": 0.0,
            "session_stop_delay_seconds": 0.0,
        }
    )
    orchestrator = Orchestrator.from_settings(settings)
    recorder = RecordingSubscriber()
    orchestrator.events.subscribe("smoke", recorder)
    user = UserContext(user_id="smoke", tier=SubscriptionTier.ULTRA)
    try:
        submission = await orchestrator.submit_task(user, agent_type, message)
        click.echo(f"Task {submission.task_id}: {submission.result['content']}")

        session = orchestrator.start_session(user, "standard")
        await orchestrator.sessions.settle(session.id)
        result = await orchestrator.execute_session_command(session.id, "echo ready")
        click.echo(f"Session {session.id}: {result.output}")
        orchestrator.stop_session(session.id)
        await orchestrator.sessions.settle(session.id)
    finally:
        await orchestrator.aclose()
    return recorder.events


def main() -> None:
    """Entry point for the CLI."""
    cli()
