"""
Workflow Automation CLI
"""
import asyncio
import json
import logging
from datetime import datetime

import click

from .bootstrap import build_components
from .config import EngineSettings
from .core import WorkflowEngine, WorkflowParser
from .exceptions import WorkflowEngineError
from .integrations.builtin_actions import BuiltinActions
from .storage.repository import InMemoryWorkflowRepository, InMemoryExecutionRepository


logger = logging.getLogger(__name__)


def _configure_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def _settings(database_url: str = None) -> EngineSettings:
    settings = EngineSettings.from_env()
    if database_url:
        settings.database_url = database_url
    return settings


@click.group()
@click.option('--log-level', default=None, help='Logging level (defaults to LOG_LEVEL)')
def cli(log_level):
    """Workflow Automation CLI"""
    _configure_logging(log_level or EngineSettings.from_env().log_level)


@cli.command()
@click.option('--host', default=None, help='Host to bind to (defaults to API_HOST)')
@click.option('--port', default=None, type=int, help='Port to bind to (defaults to API_PORT)')
@click.option('--reload', is_flag=True, help='Enable auto-reload')
def serve(host, port, reload):
    """Start the API server"""
    import uvicorn

    settings = _settings()
    host = host or settings.api_host
    port = port or settings.api_port

    click.echo(f"Starting API server on {host}:{port}")
    uvicorn.run(
        "workflow_automation.api:app",
        host=host,
        port=port,
        reload=reload
    )


@cli.command()
@click.argument('workflow_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--action-type', 'action_types', multiple=True,
              help='Additional action type the host application registers')
def validate(workflow_file, action_types):
    """Validate a workflow definition file without persisting it"""
    engine = WorkflowEngine(
        workflow_repository=InMemoryWorkflowRepository(),
        execution_repository=InMemoryExecutionRepository()
    )
    BuiltinActions.register_all(engine.dispatcher)
    for action_type in action_types:
        engine.dispatcher.register(action_type, lambda *args: None)

    try:
        workflow = WorkflowParser().parse_file(workflow_file)
    except WorkflowEngineError as e:
        raise click.ClickException(str(e))
    report = engine.validate_workflow(workflow)

    click.echo(f"Workflow: {workflow.name} ({len(workflow.nodes)} nodes, trigger: {workflow.trigger_type.value})")
    for warning in report["warnings"]:
        click.echo(f"  warning: {warning}")
    for error in report["errors"]:
        click.echo(f"  error: {error}", err=True)

    if report["errors"]:
        raise SystemExit(1)
    click.echo("Workflow is valid")


@cli.command()
@click.argument('workflow_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--activate', is_flag=True, help='Activate the workflow after loading')
@click.option('--database-url', default=None, help='Database URL (defaults to DATABASE_URL)')
def load(workflow_file, activate, database_url):
    """Persist a workflow definition file"""
    async def _load():
        components = await build_components(_settings(database_url))
        engine = components["engine"]
        try:
            workflow = await engine.create_workflow(WorkflowParser().parse_file(workflow_file))
            if activate:
                workflow = await engine.activate_workflow(workflow.id)
            return workflow
        finally:
            await components["db_manager"].close()

    try:
        workflow = asyncio.run(_load())
    except WorkflowEngineError as e:
        raise click.ClickException(str(e))

    state = "active" if workflow.is_active else "draft"
    click.echo(f"Loaded workflow {workflow.id} ({workflow.name}) as {state}")


@cli.command()
@click.option('--database-url', default=None, help='Database URL (defaults to DATABASE_URL)')
@click.option('--now', 'now', default=None, help='ISO timestamp to use as the current time')
def tick(database_url, now):
    """Run a single scheduler tick"""
    current = datetime.fromisoformat(now) if now else None

    async def _tick():
        components = await build_components(_settings(database_url))
        try:
            return await components["engine"].tick(current)
        finally:
            await components["db_manager"].close()

    report = asyncio.run(_tick())
    click.echo(json.dumps(report.to_dict(), indent=2))


@cli.command('run-scheduler')
@click.option('--database-url', default=None, help='Database URL (defaults to DATABASE_URL)')
@click.option('--interval', default=None, type=float,
              help='Seconds between ticks (defaults to SCHEDULER_INTERVAL_SECONDS)')
def run_scheduler(database_url, interval):
    """Call tick periodically until interrupted"""
    settings = _settings(database_url)
    interval = interval or settings.scheduler_interval_seconds

    async def _loop():
        components = await build_components(settings)
        engine = components["engine"]
        click.echo(f"Scheduler running every {interval}s (Ctrl+C to stop)")
        try:
            while True:
                try:
                    await engine.tick()
                except Exception as e:
                    # 单次 tick 失败不终止循环
                    logger.error(f"Scheduler tick failed: {e}", exc_info=True)
                await asyncio.sleep(interval)
        finally:
            await components["db_manager"].close()

    try:
        asyncio.run(_loop())
    except KeyboardInterrupt:
        click.echo("Scheduler stopped")


def main():
    """Main entry point"""
    cli()


if __name__ == '__main__':
    main()
