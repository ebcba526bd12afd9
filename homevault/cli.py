"""
Command line interface for homevault.

Commands are registered on the Flask CLI, so they run inside an application
context with the run-history database available:

    homevault provision [--device-class nvme] [--choice ...] [--confirm ...]
    homevault backup SCOPE [--skip ARTIFACT]...
    homevault verify SCOPE [SET_ID]
    homevault sweep [--scope SCOPE --days N]
    homevault schedule
"""

import logging
from datetime import datetime

import click
from flask import current_app
from flask.cli import FlaskGroup, with_appcontext

from homevault import create_app, db
from homevault.backup import (
    BackupError,
    BackupSetStore,
    RetentionPolicy,
    UnknownScope,
    build_scope,
    execute_backup,
    reverify,
    sweep_retention,
)
from homevault.config import get_settings
from homevault.models import ProvisionRun
from homevault.storage import GuardState, Provisioner, StorageError
from homevault.storage.decisions import Choice, PromptDecisions, ScriptedDecisions
from homevault.storage.devices import DEVICE_CLASSES
from homevault.storage.errors import (
    ConfirmationRequired,
    DeviceNotFound,
    FormatFailed,
    LayoutError,
    MountFailed,
    MountTableError,
    Unmountable,
)

logger = logging.getLogger(__name__)

# Failed provisioning step, named after the exception that ended it
FAILED_STEPS = {
    DeviceNotFound: 'device discovery',
    ConfirmationRequired: 'confirmation',
    Unmountable: 'release',
    FormatFailed: 'format',
    MountFailed: 'mount',
    MountTableError: 'mount table',
    LayoutError: 'directory layout',
}


def _failed_step(error: StorageError) -> str:
    for error_type, step in FAILED_STEPS.items():
        if isinstance(error, error_type):
            return step
    return 'provisioning'


def _scope_or_bad_parameter(settings, scope: str):
    try:
        return build_scope(settings, scope)
    except UnknownScope as e:
        raise click.BadParameter(str(e), param_hint='SCOPE')


@click.command('provision')
@click.option('--device-class', type=click.Choice(sorted(DEVICE_CLASSES)), default=None,
              help='Device class to provision (defaults to the configured class).')
@click.option('--choice', 'choices', multiple=True, type=click.Choice([c.value for c in Choice]),
              help='Answer to a guard decision; repeat for later rounds.')
@click.option('--confirm', 'confirmations', multiple=True,
              help='Confirmation phrase for the --choice at the same position.')
@with_appcontext
def provision_command(device_class, choices, confirmations):
    """Bring the data device to a mounted, laid-out state."""
    settings = get_settings()
    device_class = device_class or settings.device_class

    if choices:
        scripted = [
            (choice, confirmations[i] if i < len(confirmations) else None)
            for i, choice in enumerate(choices)
        ]
        decisions = ScriptedDecisions(scripted)
    else:
        decisions = PromptDecisions()

    run = ProvisionRun(device_class=device_class, state='running', started_at=datetime.utcnow())
    db.session.add(run)
    db.session.commit()

    try:
        result = Provisioner(settings, decisions).provision(device_class)
    except StorageError as e:
        run.state = GuardState.FAILED.value
        run.error_message = str(e)
        run.completed_at = datetime.utcnow()
        db.session.commit()
        raise click.ClickException(f"Provisioning failed at {_failed_step(e)}: {e}")

    run.device = result.device.path
    run.state = result.state.value
    run.formatted = result.outcome.formatted
    run.mount_path = str(result.mount_path) if result.mount_path else None
    run.completed_at = datetime.utcnow()
    db.session.commit()

    if result.state is GuardState.SKIPPED:
        click.secho(f"Skipped {result.device.path}; nothing was mounted at {settings.mount_root}", fg='yellow')
        return

    if result.layout and result.layout.created:
        click.echo(f"Created {len(result.layout.created)} directories", err=True)
    click.echo(str(result.mount_path))


@click.command('backup')
@click.argument('scope')
@click.option('--skip', 'skip', multiple=True, metavar='ARTIFACT',
              help='Artifact to leave out of this run; repeatable.')
@with_appcontext
def backup_command(scope, skip):
    """Capture a backup set of SCOPE."""
    settings = get_settings()
    scope_def = _scope_or_bad_parameter(settings, scope)

    unknown = sorted(set(skip) - set(scope_def.artifact_names))
    if unknown:
        raise click.BadParameter(
            f"Unknown artifact(s) {', '.join(unknown)}; choose from {', '.join(scope_def.artifact_names)}",
            param_hint='--skip'
        )

    try:
        summary = execute_backup(settings, scope, skip_artifacts=skip)
    except BackupError as e:
        raise click.ClickException(f"Backup of {scope} failed: {e}")
    except Exception as e:
        logger.exception("Unexpected error during backup of %s", scope)
        raise click.ClickException(f"Backup of {scope} failed: {type(e).__name__}: {e}")

    click.echo(summary.set_id)
    for artifact in summary.manifest.artifacts:
        marker = 'ok' if artifact.present else 'missing'
        click.echo(f"  {artifact.name:<40} {artifact.bytes:>14} {marker}")
    for warning in summary.warnings:
        click.secho(f"warning: {warning}", fg='yellow', err=True)
    click.echo(f"Status: {summary.status}")


@click.command('verify')
@click.argument('scope')
@click.argument('set_id', required=False)
@with_appcontext
def verify_command(scope, set_id):
    """Re-verify a backup set of SCOPE (the latest by default)."""
    settings = get_settings()
    scope_def = _scope_or_bad_parameter(settings, scope)
    store = BackupSetStore(settings.backup_root)

    info = store.get(scope, set_id) if set_id else store.latest(scope)
    if info is None:
        raise click.ClickException(f"No backup set found for {scope}" + (f"/{set_id}" if set_id else ''))

    _, report = reverify(info.path, scope_def.artifact_names)

    click.echo(f"{scope}/{info.set_id}")
    for status in report.checked:
        click.echo(f"  {status.name:<40} {status.bytes:>14}")
    if not report.ok:
        for failure in report.failures:
            click.secho(f"  {failure}", fg='red', err=True)
        raise click.ClickException(f"Verification failed: {len(report.failures)} problem(s)")
    click.echo("OK")


@click.command('sweep')
@click.option('--scope', default=None, help='Sweep only this scope.')
@click.option('--days', type=click.IntRange(min=0), default=None,
              help='Retention window in days for --scope.')
@with_appcontext
def sweep_command(scope, days):
    """Delete backup sets older than their retention window."""
    settings = get_settings()

    if (scope is None) != (days is None):
        raise click.UsageError('--scope and --days must be given together')

    policy = None
    if scope is not None:
        _scope_or_bad_parameter(settings, scope)
        policy = RetentionPolicy.from_days({scope: days})

    summary = sweep_retention(settings, policy)

    for deleted in summary['deleted']:
        click.echo(f"deleted {deleted}")
    for error in summary['errors']:
        click.secho(f"warning: {error}", fg='yellow', err=True)
    click.echo(f"Deleted {len(summary['deleted'])} set(s), kept {summary['kept']}")


@click.command('schedule')
@with_appcontext
def schedule_command():
    """Run the configured backup and retention schedules until interrupted."""
    from homevault.scheduler import run_scheduler
    run_scheduler(current_app._get_current_object())


COMMANDS = (provision_command, backup_command, verify_command, sweep_command, schedule_command)


def register_commands(app):
    """Attach the homevault commands to the app's CLI group."""
    for command in COMMANDS:
        app.cli.add_command(command)


cli = FlaskGroup(create_app=create_app, help='Provision the home-server data device and manage its backups.')


def main():
    cli()
