"""
Main CLI entry point for the Plex Backup Manager.

A thin front end over BackupEngine: each command builds the options model,
runs the operation with a Rich progress bar and prints the outcome.
"""

import asyncio
import sys
from pathlib import Path
from typing import Optional

import click
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn

from plex_backup import __version__
from plex_backup.backup.package import describe_package
from plex_backup.backup.validator import IntegrityValidator
from plex_backup.engine import BackupEngine
from plex_backup.models.config import ApplicationProfile, BackupOptions, RemoteTarget, RestoreOptions
from plex_backup.models.session import OperationResult, ProgressEvent
from plex_backup.transfer.ssh import ParamikoTransport
from plex_backup.utils.logging import setup_logging

console = Console()


def _run_with_progress(description: str, submit) -> OperationResult:
    """Run a submitted operation while rendering its progress events."""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task(description, total=1.0)

        def on_progress(event: ProgressEvent) -> None:
            label = event.message or event.stage.replace("_", " ")
            progress.update(task, completed=event.fraction, description=f"{description}: {label}")

        return submit(on_progress).result()


def _print_result(ctx: click.Context, result: OperationResult) -> None:
    summary = result.log.summary().to_text().strip()

    if result.success:
        body = summary
        if result.package_path:
            body += f"\nPackage: {result.package_path}"
        if result.safety_snapshot:
            body += f"\nSafety snapshot: {result.safety_snapshot}"
        console.print(Panel(body, title=f"{result.operation.value} completed", border_style="green"))
    else:
        body = f"[bold]{result.error_kind.value}[/bold]: {result.error_message}\n\n{summary}"
        if result.rollback_report is not None:
            body += f"\nRollback: {result.rollback_report.summary}"
        if result.safety_snapshot:
            body += f"\nSafety snapshot kept at: {result.safety_snapshot}"
        if result.remote_scratch:
            body += f"\nRemote scratch directory kept at: {result.remote_scratch}"
        if result.remote_snapshot:
            body += f"\nPrevious remote data saved at: {result.remote_snapshot}"
        console.print(Panel(body, title=f"{result.operation.value} failed", border_style="red"))

    if result.warnings:
        console.print("[yellow]Warnings:[/yellow]")
        for warning in result.warnings:
            console.print(f"  • [yellow]{warning}[/yellow]")

    if ctx.obj.get('verbose', False):
        console.print(f"\n[dim]{result.log.full_text()}[/dim]")

    if not result.success:
        sys.exit(1)


def _options_error(error: ValidationError) -> None:
    console.print("[red]Invalid options:[/red]")
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "options"
        console.print(f"  • [red]{location}: {item['msg']}[/red]")
    sys.exit(2)


@click.group()
@click.version_option(__version__, prog_name="plex-backup")
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.option('--log-file', type=click.Path(dir_okay=False), help='Also write logs to this file')
@click.pass_context
def main(ctx: click.Context, verbose: bool, log_file: Optional[str]):
    """
    Plex Backup Manager

    Back up and restore Plex Media Server data and configuration, locally or
    onto a remote Linux host.
    """
    ctx.ensure_object(dict)
    ctx.obj['verbose'] = verbose
    setup_logging(level="DEBUG" if verbose else "WARNING", log_file=log_file)


@main.command()
@click.option('--destination', '-d', required=True, type=click.Path(file_okay=False), help='Folder to write the backup into')
@click.option('--config/--no-config', default=True, help='Export the registry configuration')
@click.option('--data/--no-data', default=True, help='Mirror the data directory')
@click.option('--include-logs', is_flag=True, help="Include Plex's own Logs folder")
@click.option('--stop-service/--no-stop-service', default=True, help='Stop Plex while backing up')
@click.option('--rollback/--no-rollback', default=True, help='Undo partial work on failure')
@click.option('--mirror-timeout', default=3600.0, show_default=True, help='Seconds the mirror tool may run')
@click.pass_context
def backup(ctx: click.Context, destination: str, config: bool, data: bool, include_logs: bool,
           stop_service: bool, rollback: bool, mirror_timeout: float):
    """Back up Plex data and configuration."""
    try:
        options = BackupOptions(
            destination_root=Path(destination),
            include_config=config,
            include_data=data,
            include_logs=include_logs,
            stop_service=stop_service,
            enable_rollback=rollback,
            mirror_timeout=mirror_timeout,
        )
    except ValidationError as e:
        _options_error(e)

    with BackupEngine() as engine:
        result = _run_with_progress(
            "Backing up", lambda on_progress: engine.submit_backup(options, on_progress=on_progress)
        )
    _print_result(ctx, result)


@main.command()
@click.argument('package', type=click.Path(exists=True))
@click.option('--target', '-t', type=click.Path(file_okay=False), help='Data directory to restore into')
@click.option('--config/--no-config', default=True, help='Import the registry configuration')
@click.option('--data/--no-data', default=True, help='Restore the data directory')
@click.option('--stop-service/--no-stop-service', default=True, help='Stop Plex before restoring')
@click.option('--restart-service/--no-restart-service', default=True, help='Start Plex afterwards')
@click.option('--rollback/--no-rollback', default=True, help='Roll back to the safety snapshot on failure')
@click.option('--keep-snapshot', is_flag=True, help='Keep the safety snapshot after a successful restore')
@click.option('--timeout', default=7200.0, show_default=True, help='Wall-clock budget in seconds')
@click.pass_context
def restore(ctx: click.Context, package: str, target: Optional[str], config: bool, data: bool,
            stop_service: bool, restart_service: bool, rollback: bool, keep_snapshot: bool, timeout: float):
    """Restore a backup package on this machine."""
    try:
        options = RestoreOptions(
            package_path=Path(package),
            target_dir=Path(target) if target else None,
            restore_config=config,
            restore_data=data,
            stop_service=stop_service,
            restart_service=restart_service,
            enable_rollback=rollback,
            keep_safety_snapshot=keep_snapshot,
            operation_timeout=timeout,
        )
    except ValidationError as e:
        _options_error(e)

    with BackupEngine() as engine:
        result = _run_with_progress(
            "Restoring", lambda on_progress: engine.submit_restore(options, on_progress=on_progress)
        )
    _print_result(ctx, result)


@main.command()
@click.argument('snapshot', type=click.Path(exists=True, file_okay=False))
@click.option('--force', is_flag=True, help='Recover without confirmation')
@click.pass_context
def recover(ctx: click.Context, snapshot: str, force: bool):
    """Roll the data directory back to a safety snapshot."""
    if not force and not click.confirm(f"Replace the live data with the contents of {snapshot}?"):
        console.print("[red]Recovery cancelled[/red]")
        return

    with BackupEngine() as engine:
        result = _run_with_progress(
            "Recovering", lambda on_progress: engine.submit_recover(Path(snapshot), on_progress=on_progress)
        )
    _print_result(ctx, result)


def _remote_target(host, port, user, password, key_file, data_path, scratch_path,
                   service_name, manage_service) -> RemoteTarget:
    fields = {
        'host': host,
        'port': port,
        'username': user,
        'password': password,
        'key_filename': key_file,
        'scratch_path': scratch_path,
        'service_name': service_name,
        'manage_service': manage_service,
    }
    if data_path:
        fields['data_path'] = data_path
    try:
        return RemoteTarget(**fields)
    except ValidationError as e:
        _options_error(e)


_remote_options = [
    click.option('--host', '-H', required=True, help='Remote host'),
    click.option('--port', '-p', default=22, show_default=True, help='SSH port'),
    click.option('--user', '-u', required=True, help='SSH user'),
    click.option('--password', envvar='PLEX_SSH_PASSWORD', help='SSH and sudo password (or PLEX_SSH_PASSWORD)'),
    click.option('--key-file', type=click.Path(exists=True, dir_okay=False), help='Private key file'),
    click.option('--data-path', help='Remote Plex data directory'),
    click.option('--scratch-path', default='/tmp/plex_restore', show_default=True, help='Remote scratch directory'),
    click.option('--service-name', default='plexmediaserver', show_default=True, help='Fallback service name'),
    click.option('--manage-service/--no-manage-service', default=True, help='Stop and start the remote service'),
]


def remote_options(func):
    for option in reversed(_remote_options):
        func = option(func)
    return func


@main.command(name='remote-restore')
@click.argument('package', type=click.Path(exists=True))
@remote_options
@click.pass_context
def remote_restore(ctx: click.Context, package: str, host: str, port: int, user: str,
                   password: Optional[str], key_file: Optional[str], data_path: Optional[str],
                   scratch_path: str, service_name: str, manage_service: bool):
    """Restore a backup package onto a remote Linux host over SSH."""
    target = _remote_target(host, port, user, password, key_file, data_path,
                            scratch_path, service_name, manage_service)

    with BackupEngine() as engine:
        result = _run_with_progress(
            f"Restoring to {host}",
            lambda on_progress: engine.submit_remote_restore(Path(package), target, on_progress=on_progress)
        )
    _print_result(ctx, result)


@main.command(name='test-connection')
@remote_options
def test_connection(host: str, port: int, user: str, password: Optional[str], key_file: Optional[str],
                    data_path: Optional[str], scratch_path: str, service_name: str, manage_service: bool):
    """Check that the remote host accepts the SSH credentials."""
    target = _remote_target(host, port, user, password, key_file, data_path,
                            scratch_path, service_name, manage_service)
    if asyncio.run(ParamikoTransport().test_connection(target)):
        console.print(f"[green]✓ Connected to {user}@{host}:{port}[/green]")
    else:
        console.print(f"[red]✗ Could not connect to {user}@{host}:{port}[/red]")
        sys.exit(1)


@main.command()
@click.argument('package', type=click.Path())
@click.option('--destination', '-d', type=click.Path(file_okay=False), help='Also check free space on this volume')
def validate(package: str, destination: Optional[str]):
    """Check that a backup package is usable for a restore."""
    validator = IntegrityValidator(ApplicationProfile.for_current_platform())
    failed = validator.inspect(Path(package))
    if not failed and destination and not validator.check_disk_space(Path(package), Path(destination)):
        failed.append(f"Insufficient free space on the volume of {destination}")

    if failed:
        console.print(f"[red]✗ {package} is not a valid backup package:[/red]")
        for check in failed:
            console.print(f"  • [red]{check}[/red]")
        sys.exit(1)

    info = describe_package(Path(package))
    console.print(f"[green]✓ {info.name} is a valid backup package[/green]")
    console.print(f"  Created: {info.created_at:%Y-%m-%d}")
    console.print(f"  Configuration: {'yes' if info.has_config else 'no'}")
    console.print(f"  Data: {'yes' if info.has_data else 'no'}")
    console.print(f"  Logs: {'yes' if info.has_logs else 'no'}")


if __name__ == '__main__':
    main()
