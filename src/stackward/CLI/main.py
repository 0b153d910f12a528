"""
Command Line Interface for stackward.
"""
import json
import signal
import threading
from contextlib import contextmanager

import click
import psutil

from ..errors import ConfigError, InfrastructureError
from ..MANAGERS.stack_orchestrator import StackOrchestrator
from ..PARSERS.plan_parser import PlanLoader
from ..RUNTIME.cert_agent import CertbotAgent
from ..RUNTIME.docker_runtime import DockerRuntime
from ..UTILS.logging_config import setup_logging

EXIT_OK = 0
EXIT_INVALID = 1
EXIT_PARTIAL = 2
EXIT_FATAL = 3


@click.group()
@click.option('--file', '-f', default='stack.yml', envvar='STACKWARD_FILE', show_default=True,
              help='Stack plan file (YAML, JSON or TOML)')
@click.option('--workers', type=click.IntRange(min=1), default=None,
              help='Independent services applied in parallel (overrides settings.workers)')
@click.option('--log-level', envvar='STACKWARD_LOG_LEVEL', default=None, help='Log level, INFO by default')
@click.option('--log-json', is_flag=True, help='Emit log events as JSON lines')
@click.pass_context
def cli(ctx, file, workers, log_level, log_json):
    """
    Stackward - reconcile a single-host stack with its plan.

    Services, their data directories, the reverse proxy and certificates are
    brought to the state the plan describes, in dependency order.
    """
    ctx.ensure_object(dict)
    ctx.obj['file'] = file
    ctx.obj['workers'] = workers
    setup_logging(log_level, json_output=True if log_json else None)


def _orchestrator(ctx) -> StackOrchestrator:
    """
    Loads the plan and builds the orchestrator. Exits 1 on an invalid plan.
    """
    try:
        plan = PlanLoader().load(ctx.obj['file'])
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(EXIT_INVALID)

    runtime = ctx.obj.get('runtime') or DockerRuntime()
    cert_agent = ctx.obj.get('cert_agent')
    if cert_agent is None and plan.proxy is not None and plan.proxy.tls:
        cert_agent = CertbotAgent(email=plan.certificates.email, webroot=plan.certificates.webroot)

    orchestrator = StackOrchestrator(plan, runtime, cert_agent=cert_agent, workers=ctx.obj['workers'])
    ctx.call_on_close(orchestrator.shutdown)
    return orchestrator


@contextmanager
def _fatal_errors(ctx):
    try:
        yield
    except InfrastructureError as e:
        click.echo(f"Fatal: {e}", err=True)
        ctx.exit(EXIT_FATAL)


@contextmanager
def _cancel_on_signal():
    """
    SIGINT/SIGTERM set the cancel event; the current action finishes first.
    """
    cancel = threading.Event()

    def handler(signum, frame):
        click.echo("\nCancelling after the current action...", err=True)
        cancel.set()

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield cancel
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


@cli.command()
@click.option('--json', 'as_json', is_flag=True, help='Print actions as JSON')
@click.pass_context
def plan(ctx, as_json):
    """Show the actions apply would take (dry run)."""
    orchestrator = _orchestrator(ctx)
    with _fatal_errors(ctx):
        actions = orchestrator.plan_actions()

    if as_json:
        click.echo(json.dumps([a.to_dict() for a in actions], indent=2, default=str))
        return
    if not actions:
        click.echo("No changes. The host matches the plan.")
        return
    for i, action in enumerate(actions, 1):
        click.echo(f"{i:3}. {action}")


@cli.command()
@click.option('--watch', is_flag=True, help='Keep reconciling until interrupted')
@click.option('--interval', type=click.FloatRange(min=1), default=30.0, show_default=True,
              help='Seconds between passes with --watch')
@click.pass_context
def apply(ctx, watch, interval):
    """Bring the host to the state described by the plan."""
    orchestrator = _orchestrator(ctx)
    with _fatal_errors(ctx), _cancel_on_signal() as cancel:
        if watch:
            orchestrator.run(interval, cancel)
            return
        report = orchestrator.apply(cancel)

    if not report.results:
        click.echo("No changes. The host matches the plan.")
        ctx.exit(EXIT_OK)

    for result in report.results:
        line = f"{result.outcome.value:10} {result.action}"
        if result.error:
            line += f"  ({result.error})"
        click.echo(line)

    click.echo("")
    click.echo(f"Succeeded: {', '.join(report.succeeded) or '-'}")
    click.echo(f"Failed:    {', '.join(report.failed) or '-'}")
    click.echo(f"Skipped:   {', '.join(report.skipped) or '-'}")
    if report.cancelled:
        click.echo("Apply was cancelled; completed actions were kept.")
    ctx.exit(report.exit_code)


@cli.command()
@click.pass_context
def status(ctx):
    """Show observed service state and health."""
    orchestrator = _orchestrator(ctx)
    with _fatal_errors(ctx):
        state = orchestrator.observe()

    click.echo(f"{'SERVICE':15} {'STATUS':10} {'CONTAINER':13} {'STARTED':25} {'CURRENT':7}")
    click.echo("-" * 74)
    for svc in orchestrator.plan.services:
        obs = state.service(svc.name)
        started = obs.started_at.isoformat(timespec='seconds') if obs.started_at else '-'
        current = 'yes' if obs.fingerprint == svc.fingerprint() else 'no'
        container = obs.container_id[:12] if obs.container_id else '-'
        click.echo(f"{svc.name:15} {obs.status.value:10} {container:13} {started:25} {current:7}")

    for name, ids in state.orphans.items():
        click.echo(f"{name:15} {'orphaned':10} {', '.join(i[:12] for i in ids)}")

    if state.volumes:
        click.echo("")
        for path, vol in state.volumes.items():
            detail = f"{vol.uid}:{vol.gid} {oct(vol.mode)}" if vol.exists else "missing"
            click.echo(f"volume {path}: {detail}")

    for host, expiry in state.certificates.items():
        click.echo(f"certificate {host}: {expiry.date().isoformat() if expiry else 'missing'}")

    load = psutil.getloadavg()
    memory = psutil.virtual_memory()
    click.echo("")
    click.echo(f"host: load {load[0]:.2f} {load[1]:.2f} {load[2]:.2f}  memory {memory.percent:.0f}% "
               f"of {memory.total // (1024 ** 2)} MiB")


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
