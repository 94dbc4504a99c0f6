"""
Command Line Interface for dockstack.
"""
import functools
import os

import click
import yaml

from ..MANAGERS.service_orchestrator import ServiceOrchestrator
from ..MODELS.engine_settings import EngineSettings
from ..MODELS.errors import CycleDetected, DockstackError, ParseError, PartialFailure, ProvisioningError
from ..PARSERS.compose_parser import ComposeParser
from ..RUNTIME.docker_cli import DockerCliRuntime
from ..RUNTIME.in_memory import InMemoryRuntime
from ..UTILS.logging_setup import configure_logging

EXIT_OK = 0
EXIT_RUNTIME = 1
EXIT_PARSE = 3
EXIT_CYCLE = 4
EXIT_PROVISIONING = 5
EXIT_PARTIAL = 6


def exit_code_for(error: Exception) -> int:
    """
    Maps an engine error to the process exit code.
    """
    if isinstance(error, CycleDetected):
        return EXIT_CYCLE
    if isinstance(error, ParseError):
        return EXIT_PARSE
    if isinstance(error, ProvisioningError):
        return EXIT_PROVISIONING
    if isinstance(error, PartialFailure):
        return EXIT_PARTIAL
    return EXIT_RUNTIME


def reports_errors(command):
    """Prints engine errors and exits with the matching code."""
    @functools.wraps(command)
    def wrapper(*args, **kwargs):
        ctx = click.get_current_context()
        try:
            return command(*args, **kwargs)
        except DockstackError as e:
            click.echo(f"Error: {e}", err=True)
            ctx.exit(exit_code_for(e))
    return wrapper


def _load(ctx):
    parser = ComposeParser(project_name=ctx.obj['project_name'])
    return parser.parse(ctx.obj['file'])


def _orchestrator(ctx, **settings_overrides) -> ServiceOrchestrator:
    manifest = _load(ctx)
    settings = EngineSettings.from_environ(**settings_overrides)
    return ServiceOrchestrator(manifest, ctx.obj['runtime'], settings)


@click.group()
@click.option('--file', '-f', default='docker-compose.yml', help='Compose file path')
@click.option('--project-name', '-p', default=None, help='Project name (defaults to the directory name)')
@click.option('--log-level', default=None, help='Log level (default: $DOCKSTACK_LOG_LEVEL or WARNING)')
@click.option('--dry-run', is_flag=True, help='Run against an in-memory runtime instead of docker')
@click.pass_context
def cli(ctx, file, project_name, log_level, dry_run):
    """
    dockstack - run multi-container applications from a compose file.
    """
    ctx.ensure_object(dict)
    configure_logging(log_level or os.environ.get('DOCKSTACK_LOG_LEVEL', 'WARNING'))
    ctx.obj['file'] = file
    ctx.obj['project_name'] = project_name
    if 'runtime' not in ctx.obj:
        ctx.obj['runtime'] = InMemoryRuntime() if dry_run else DockerCliRuntime()


@cli.command()
@click.option('--detach', '-d', is_flag=True, help='Run in background')
@click.option('--build', is_flag=True, help='Build images before starting containers')
@click.option('--timeout', '-t', type=float, default=None, help='Seconds to wait for each level')
@click.pass_context
@reports_errors
def up(ctx, detach, build, timeout):
    """Create and start services defined in the compose file."""
    orchestrator = _orchestrator(ctx, level_timeout=timeout)
    try:
        if detach:
            orchestrator.up(detached=True, build=build)
            for level in orchestrator.last_startup_order:
                for name in level:
                    click.echo(f"Started {orchestrator.manifest.container_name(name)}")
        else:
            click.echo("Attaching... Press Ctrl+C to stop.")
            orchestrator.up(detached=False, build=build, log_sink=click.echo)
    except KeyboardInterrupt:
        click.echo("\nStopping services...")
        orchestrator.stop()


@cli.command()
@click.option('--timeout', '-t', type=float, default=None, help='Grace period before killing')
@click.pass_context
@reports_errors
def stop(ctx, timeout):
    """Stop services without removing them."""
    orchestrator = _orchestrator(ctx, grace_period=timeout)
    degraded = orchestrator.stop()
    for timeout_error in degraded:
        click.echo(f"Warning: {timeout_error}", err=True)
    click.echo("Services stopped.")


@cli.command()
@click.option('--volumes', '-v', is_flag=True, help='Also remove named volumes')
@click.option('--timeout', '-t', type=float, default=None, help='Grace period before killing')
@click.pass_context
@reports_errors
def down(ctx, volumes, timeout):
    """Stop and remove containers and networks."""
    orchestrator = _orchestrator(ctx, grace_period=timeout)
    orchestrator.down(remove_volumes=volumes)
    for timeout_error in orchestrator.degraded:
        click.echo(f"Warning: {timeout_error}", err=True)
    click.echo("Services removed.")


@cli.command()
@click.pass_context
@reports_errors
def ps(ctx):
    """List service status"""
    orchestrator = _orchestrator(ctx)
    status = orchestrator.ps()
    click.echo(f"{'SERVICE':15} {'STATUS':10}")
    click.echo("-" * 25)
    for name, state in status.items():
        click.echo(f"{name:15} {state:10}")


@cli.command()
@click.pass_context
@reports_errors
def config(ctx):
    """Validate the compose file and print the resolved configuration."""
    manifest = _load(ctx)
    document = manifest.model_dump(mode='json', exclude={'base_dir'})
    document['startup_order'] = ServiceOrchestrator(manifest, ctx.obj['runtime']).levels
    click.echo(yaml.safe_dump(document, sort_keys=False), nl=False)


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
