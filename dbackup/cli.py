"""Command line interface for dbackup."""

import logging
import signal
import sys
from pathlib import Path

import click

from dbackup import __version__, configure_logging
from dbackup.backup.dumps import create_pipeline
from dbackup.backup.executor import run_backups
from dbackup.backup.resolver import resolve_storage
from dbackup.backup.retention import RetentionManager, parse_duration
from dbackup.config import get_config
from dbackup.history import HistoryStore
from dbackup.models import ConfigError, load_config
from dbackup.scheduler import BackupScheduler, parse_schedule

logger = logging.getLogger(__name__)


SAMPLE_CONFIG = """\
# Database Backup Configuration
settings:
  max_concurrent: 2
  # binary:
  #   pg_dump: /usr/lib/postgresql/16/bin/pg_dump
  retention:
    schedule: "0 4 * * *"   # Daily retention pass at 4 AM
    after_backup: false

storages:
  local_main:
    driver: local
    path: "/var/backups/databases/postgresql"
  s3_main:
    driver: s3
    bucket: "my-backup-bucket"
    region: "eu-west-1"
    prefix: "postgresql/"
    # endpoint: "https://minio.example.com"   # S3-compatible services
    # access_key_id: "..."
    # secret_access_key: "..."

backups:
  - name: "Production PostgreSQL Database"
    driver: postgresql
    connection:
      host: localhost
      port: 5432
      username: postgres
      password: your_password_here
      database: production_db
    schedule:
      cron: "0 2 * * *"  # Daily at 2 AM
    mode: parallel
    parallel_jobs: 4
    retention: "14d"
    storage:
      ref: s3_main
      filename_prefix: "prod_db_"

  - name: "Development PostgreSQL Database"
    driver: postgresql
    connection:
      host: localhost
      port: 5432
      username: postgres
      password: your_password_here
      database: dev_db
    retention: "7d"
    storage:
      driver: local
      path: "/var/backups/databases/postgresql"
      filename_prefix: "dev_db_"
"""


def _load(ctx):
    try:
        return load_config(ctx.obj['config_path'])
    except ConfigError as e:
        raise click.ClickException(str(e))


def _history(ctx, enabled=True):
    if not enabled:
        return None

    settings = ctx.obj['settings']
    try:
        return HistoryStore(settings.HISTORY_DATABASE_URL)
    except Exception as e:
        logger.warning(f"Run history disabled, failed to open {settings.HISTORY_DATABASE_URL}: {e}")
        return None


@click.group()
@click.option('--config', '-c', 'config_path', default=None,
              help='Path to the configuration file (default: $DBACKUP_CONFIG or backup.yml)')
@click.option('--env', 'env_name', default=None,
              help='Settings environment: development, testing or production')
@click.version_option(__version__, prog_name='dbackup')
@click.pass_context
def cli(ctx, config_path, env_name):
    """dbackup - scheduled database backups to local disk or S3"""
    try:
        settings = get_config(env_name)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint='--env')

    configure_logging(settings)

    ctx.obj = {
        'settings': settings,
        'config_path': config_path or settings.CONFIG_PATH,
    }


@cli.command()
@click.option('--name', '-n', default=None, help='Name of the backup to run (default: all)')
@click.option('--no-history', is_flag=True, help='Do not record the run in the history database')
@click.pass_context
def backup(ctx, name, no_history):
    """Run backups once and exit."""
    config = _load(ctx)
    settings = ctx.obj['settings']

    try:
        locations = run_backups(
            config,
            name=name,
            temp_dir=settings.TEMP_DIR,
            history=_history(ctx, not no_history)
        )
    except Exception as e:
        raise click.ClickException(str(e))

    for location in locations:
        click.echo(f"✓ {location}")


@cli.command()
@click.pass_context
def validate(ctx):
    """Validate the configuration file without touching any database."""
    config = _load(ctx)
    failures = 0

    for job in config.backups:
        try:
            job.connection.validate()
            resolve_storage(job, config.storages)
            create_pipeline(job, config.settings.binary)
            if job.schedule:
                parse_schedule(job.schedule)
            if job.retention:
                parse_duration(job.retention)
        except Exception as e:
            failures += 1
            click.echo(f"✗ Backup '{job.name}': {e}", err=True)
            continue

        click.echo(f"✓ Backup '{job.name}' configuration is valid")

    retention_schedule = config.settings.retention.schedule
    if retention_schedule:
        try:
            parse_schedule(retention_schedule)
        except Exception as e:
            failures += 1
            click.echo(f"✗ Retention schedule: {e}", err=True)

    if failures:
        raise click.ClickException(f"{failures} problem(s) found in {ctx.obj['config_path']}")

    click.echo("✓ Configuration is valid")


@cli.command()
@click.option('--output', '-o', default='backup.yml', type=click.Path(dir_okay=False),
              help='Output path for the configuration file')
@click.option('--force', is_flag=True, help='Overwrite an existing file')
def generate(output, force):
    """Generate a sample configuration file."""
    path = Path(output)

    if path.exists() and not force:
        raise click.ClickException(f"{path} already exists (use --force to overwrite)")

    try:
        path.write_text(SAMPLE_CONFIG, encoding='utf-8')
    except OSError as e:
        raise click.ClickException(f"Failed to write sample configuration: {e}")

    click.echo(f"✓ Sample configuration generated: {path}")
    click.echo("  Edit this file with your database credentials and paths")


@cli.command()
@click.option('--max-concurrent', '-m', type=click.IntRange(min=1), default=None,
              help='Maximum number of backups running at the same time')
@click.option('--no-history', is_flag=True, help='Do not record runs in the history database')
@click.pass_context
def schedule(ctx, max_concurrent, no_history):
    """Run scheduled backups until interrupted."""
    config = _load(ctx)
    settings = ctx.obj['settings']

    scheduler = BackupScheduler(
        config,
        max_concurrent=max_concurrent or config.settings.max_concurrent or settings.MAX_CONCURRENT_BACKUPS,
        temp_dir=settings.TEMP_DIR,
        history=_history(ctx, not no_history),
        timezone=settings.SCHEDULER_TIMEZONE
    )

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        scheduler.stop(wait=False)

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    click.echo("Press Ctrl+C to stop")
    scheduler.run()


@cli.command()
@click.option('--name', '-n', default=None, help='Only apply retention for this backup')
@click.pass_context
def cleanup(ctx, name):
    """Delete backups older than each job's retention."""
    config = _load(ctx)

    jobs = None
    if name is not None:
        job = config.get_backup(name)
        if job is None:
            raise click.ClickException(f"Backup not found: {name}")
        jobs = [job]

    summary = RetentionManager(config).enforce_all_policies(jobs)

    click.echo(
        f"Processed {summary['jobs_processed']} job(s), deleted {summary['deleted']} backup(s)"
    )

    if summary['errors']:
        for error in summary['errors']:
            click.echo(f"✗ {error}", err=True)
        sys.exit(1)


@cli.command()
@click.option('--limit', '-l', default=20, show_default=True, type=click.IntRange(min=1))
@click.option('--name', '-n', default=None, help='Only show runs of this backup')
@click.option('--purge-days', type=click.IntRange(min=1), default=None,
              help='Delete history records older than this many days instead of listing')
@click.pass_context
def history(ctx, limit, name, purge_days):
    """Show recent backup runs."""
    store = _history(ctx)
    if store is None:
        raise click.ClickException("Run history is not available")

    if purge_days is not None:
        count = store.purge_older_than(purge_days)
        click.echo(f"Deleted {count} old backup history records")
        return

    records = store.recent(limit=limit, job_name=name)
    if not records:
        click.echo("No backup runs recorded")
        return

    for record in records:
        started = record.started_at.strftime('%Y-%m-%d %H:%M:%S')
        detail = record.location if record.status == 'success' else (record.error_message or '')
        click.echo(f"{started}  {record.status:<8} {record.job_name}  {detail}")


if __name__ == '__main__':
    cli()
