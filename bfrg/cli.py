"""Command-line entry point for bfrg."""

import os
import time
import logging
from dataclasses import replace

import click

from bfrg import __version__, configure_logging
from bfrg.config import config as profiles, load_config, ConfigError
from bfrg.errors import FatalError
from bfrg.backup.executor import BackupExecutor
from bfrg.backup.compression import EXTENSION_MAP
from bfrg.backup.dispatcher import TargetDispatcher
from bfrg.backup.guard import GuardedExec, RunContext
from bfrg.restore import RestoreExecutor
from bfrg.utils.tools import Toolbox


def config_options(func):
    """Options shared by every command that reads the run configuration."""
    func = click.option(
        '--profile',
        type=click.Choice(list(profiles.keys())),
        default='default',
        show_default=True,
        help='Configuration profile.'
    )(func)
    func = click.option(
        '--config', 'config_path',
        type=click.Path(dir_okay=False),
        default=None,
        help='Config file (defaults to $XDG_CONFIG_HOME/backup/bfrg/config.json).'
    )(func)
    return func


def _load(ctx, config_path, profile, **overrides):
    try:
        return load_config(config_path, profile, **overrides)
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(e.exit_status)


@click.group()
@click.version_option(version=__version__, prog_name='bfrg')
def bfrg_cli():
    """Encrypted, redundant backups replicated to local, remote and cloud targets."""


@bfrg_cli.command('backup')
@config_options
@click.option('--non-interactive/--interactive', default=None,
              help='Never prompt on recoverable failures.')
@click.option('--abort-on-error/--continue-on-error', default=None,
              help='In non-interactive mode, abort on the first recoverable failure.')
@click.option('--quiet', is_flag=True, help='Log to the log file only.')
@click.option('--debug', is_flag=True, help='Include tool output in the log.')
@click.pass_context
def backup(ctx, config_path, profile, non_interactive, abort_on_error, quiet, debug):
    """Run one backup."""
    epoch = int(time.time())
    run_config = _load(
        ctx, config_path, profile,
        non_interactive=non_interactive,
        abort_on_error=abort_on_error,
        verbose=False if quiet else None
    )

    log_path = configure_logging(run_config.log_path(epoch), epoch, verbose=run_config.verbose, debug=debug)
    record = BackupExecutor(run_config, epoch=epoch).execute()
    record.log_path = log_path

    if record.status != 'success':
        click.echo(f"Backup {record.status}: {record.error_message}", err=True)
    elif record.error_count and not run_config.verbose:
        click.echo(f"Backup finished with {record.error_count} error(s), see {log_path}", err=True)
    ctx.exit(record.exit_code)


@bfrg_cli.command('check')
@config_options
@click.pass_context
def check(ctx, config_path, profile):
    """Show what a backup would do, without touching anything."""
    run_config = _load(ctx, config_path, profile)
    # Probing must never block on a prompt here
    run_config = replace(run_config, non_interactive=True, abort_on_error=False)
    logging.basicConfig(level=logging.WARNING, format='%(message)s', force=True)

    try:
        run_config.validate()
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(e.exit_status)

    toolbox = Toolbox()
    context = RunContext(run_config, int(time.time()))
    dispatcher = TargetDispatcher(context, GuardedExec(context), toolbox)
    plan = dispatcher.plan()

    problems = 0
    click.echo('sources:')
    for path in run_config.source_paths:
        ok = os.path.isdir(path)
        problems += not ok
        click.echo(f"  {path}{'' if ok else '  (missing)'}")

    click.echo('tools:')
    essentials = ['tar', run_config.compressor_cmd, 'gpg']
    if run_config.compressor_cmd not in EXTENSION_MAP:
        click.echo(f"  unsupported compressor {run_config.compressor_cmd}")
        problems += 1
    for cmd in essentials:
        ok = toolbox.available(cmd)
        problems += not ok
        click.echo(f"  {cmd}: {toolbox.locate(cmd) or 'missing'}")
    if run_config.data_redundancy > 0:
        click.echo(f"  par2create: {toolbox.locate('par2create') or 'missing (recovery data skipped)'}")

    click.echo('destinations:')
    for transfer in plan.transfers:
        click.echo(f"  {transfer}")
    for destination in plan.dropped:
        click.echo(f"  {destination}  (dropped, tool missing)")

    if not plan.transfers:
        problems += 1
    ctx.exit(1 if problems else 0)


@bfrg_cli.command('restore')
@config_options
@click.argument('artifact', type=click.Path(dir_okay=False))
@click.option('--dest', 'destination', type=click.Path(file_okay=False), default='.',
              show_default=True, help='Directory to unpack into.')
@click.pass_context
def restore(ctx, config_path, profile, artifact, destination):
    """Verify, decrypt and unpack an artifact."""
    epoch = int(time.time())
    run_config = _load(ctx, config_path, profile)
    configure_logging(f'restore-{epoch}.log', epoch, verbose=run_config.verbose)

    try:
        RestoreExecutor(run_config).restore(artifact, destination)
    except FatalError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(e.exit_status)


def main():
    bfrg_cli(prog_name='bfrg')
