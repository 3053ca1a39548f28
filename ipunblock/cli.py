"""CLI entry point for ipunblock."""

from __future__ import annotations

import asyncio
import json
import shutil
import sys
from pathlib import Path

import click

BANNER = """\
╔══════════════════════════════════════╗
║  IPUNBLOCK - Firewall Check &        ║
║  Unblock Automation                  ║
╚══════════════════════════════════════╝"""

VERSION = "0.1.0"


def _find_template() -> Path:
    """Locate config.cp.yaml, supporting both dev and PyInstaller."""
    if getattr(sys, "_MEIPASS", None):
        return Path(sys._MEIPASS) / "ipunblock" / "config.cp.yaml"
    return Path(__file__).parent / "config.cp.yaml"


def _bootstrap(config_path: str | None) -> None:
    from ipunblock.config import load_config
    from ipunblock.database import init_db
    from ipunblock.logging_config import setup_logging

    cfg = load_config(config_path)
    setup_logging(Path(cfg.log.dir).expanduser(), cfg.log.level)
    init_db()


def _echo_outcome(outcome) -> None:
    click.echo(json.dumps(outcome.model_dump(mode="json"), indent=2, ensure_ascii=False))


@click.group(invoke_without_command=True)
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="Path to config.yaml.")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None) -> None:
    """IPUNBLOCK - firewall check and unblock automation"""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
@click.option("--force", is_flag=True, help="Overwrite existing config file.")
def init(force: bool) -> None:
    """Initialize config to ~/.ipunblock/."""
    from ipunblock.config import _default_data_dir

    config_dir = _default_data_dir()
    config_dest = config_dir / "config.yaml"
    template = _find_template()

    click.echo(BANNER)
    click.echo()

    config_dir.mkdir(parents=True, exist_ok=True)
    click.echo(f"  [ok] Directory ready: {config_dir}")

    if config_dest.exists() and not force:
        click.echo(f"  [--] Config already exists: {config_dest}")
        click.echo("       Use --force to overwrite.")
    else:
        shutil.copy2(template, config_dest)
        click.echo(f"  [ok] Config created: {config_dest}")

    p = config_dir / "logs"
    p.mkdir(parents=True, exist_ok=True)
    click.echo(f"  [ok] Subdirectory ready: {p}")

    click.echo()
    click.echo(f"  -> Edit {config_dest} to set the key encryption key and mail settings.")
    click.echo("  -> Then run `ipunblock initdb` to create the database.")


@cli.command()
@click.pass_context
def initdb(ctx: click.Context) -> None:
    """Create database tables."""
    from ipunblock.config import get_config

    _bootstrap(ctx.obj["config_path"])
    click.echo(f"  [ok] Database ready: {get_config().database.path}")


@cli.command()
@click.argument("ip")
@click.option("--user", "user_id", required=True, help="Requesting user id.")
@click.option("--host", "host_id", required=True, help="Host id to check.")
@click.option("--copy-user", "copy_user_id", default=None, help="User id to copy the report to.")
@click.pass_context
def check(ctx: click.Context, ip: str, user_id: str, host_id: str, copy_user_id: str | None) -> None:
    """Check IP on a host and unblock it if blocked."""
    from ipunblock.core.exceptions import UnblockError
    from ipunblock.services.notification_service import NotificationService
    from ipunblock.services.orchestrator import FirewallOrchestrator
    from ipunblock.services.task_queue import TaskQueue

    _bootstrap(ctx.obj["config_path"])
    queue = TaskQueue()
    notifier = NotificationService()

    def unit():
        orchestrator = FirewallOrchestrator(
            notifier=notifier, dispatch=queue.dispatcher(notifier.deliver)
        )
        return orchestrator.check(ip, user_id, host_id, copy_user_id)

    async def run_check():
        try:
            return await queue.run(f"check:{ip}", unit)
        finally:
            await queue.drain()

    try:
        outcome = asyncio.run(run_check())
    except UnblockError as e:
        raise click.ClickException(f"{type(e).__name__}: {e}")
    except asyncio.TimeoutError:
        raise click.ClickException(f"Check of {ip} timed out after {queue.job_timeout:.0f}s")
    _echo_outcome(outcome)


@cli.command("simple-unblock")
@click.argument("ip")
@click.option("--domain", required=True, help="Domain hosted on one of our servers.")
@click.option("--email", required=True, help="Requester email address.")
@click.pass_context
def simple_unblock(ctx: click.Context, ip: str, domain: str, email: str) -> None:
    """Anonymous unblock: fan out to every host serving the domain."""
    from ipunblock.core.exceptions import UnblockError
    from ipunblock.services.notification_service import NotificationService
    from ipunblock.services.orchestrator import FirewallOrchestrator
    from ipunblock.services.task_queue import TaskQueue

    _bootstrap(ctx.obj["config_path"])
    queue = TaskQueue()
    notifier = NotificationService()

    def orchestrator():
        return FirewallOrchestrator(notifier=notifier, dispatch=queue.dispatcher(notifier.deliver))

    async def run_all():
        try:
            jobs = await queue.run(
                f"request:{ip}", lambda: orchestrator().request_simple_unblock(ip, domain, email)
            )
            units = [
                queue.submit(
                    f"simple:{job.ip}:{job.host_id}",
                    lambda j=job: orchestrator().simple_unblock(j.ip, j.domain, j.email, j.host_id),
                )
                for job in jobs
            ]
        finally:
            await queue.drain()
        return [unit.result() for unit in units]

    try:
        outcomes = asyncio.run(run_all())
    except UnblockError as e:
        raise click.ClickException(f"{type(e).__name__}: {e}")
    except asyncio.TimeoutError:
        raise click.ClickException(f"Request for {ip} timed out after {queue.job_timeout:.0f}s")
    if not outcomes:
        click.echo("  [--] Request recorded; nothing to check.")
        return

    for outcome in outcomes:
        if outcome is None:
            click.echo("  [!!] A host check failed; see the log for details.")
        else:
            _echo_outcome(outcome)


@cli.command()
@click.pass_context
def sweep(ctx: click.Context) -> None:
    """Remove expired brute-force-monitor whitelist entries."""
    from ipunblock.core.enums import AuditAction
    from ipunblock.services.audit_service import AuditService
    from ipunblock.services.ssh_service import SshConnectionManager
    from ipunblock.services.whitelist_service import WhitelistService

    _bootstrap(ctx.obj["config_path"])
    service = WhitelistService()
    result = service.sweep(SshConnectionManager())
    AuditService(service.session).record(
        AuditAction.WHITELIST_SWEEP,
        outcome="ok" if result.failed == 0 else "partial",
        details={
            "removed": result.removed,
            "failed": result.failed,
            "skipped": result.skipped,
            "superseded": result.superseded,
        },
        commit=True,
    )
    click.echo(
        f"  [ok] Removed {result.removed}, failed {result.failed}, skipped {result.skipped},"
        f" superseded {result.superseded}"
    )
    if result.failed:
        ctx.exit(1)


@cli.command()
@click.pass_context
def health(ctx: click.Context) -> None:
    """Report database, lock store and analyzer status."""
    from ipunblock.services.orchestrator import FirewallOrchestrator

    _bootstrap(ctx.obj["config_path"])
    status = FirewallOrchestrator().health_status()
    click.echo(json.dumps(status.model_dump(), indent=2))
    if not status.healthy:
        ctx.exit(1)


@cli.command()
def version() -> None:
    """Show version information."""
    click.echo(f"ipunblock v{VERSION}")
