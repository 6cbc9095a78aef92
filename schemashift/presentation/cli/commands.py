"""CLI commands using Click framework."""

import logging
from typing import List, Optional

import click

from schemashift.domain.entities.errors import TransactionError
from schemashift.domain.entities.migration import MigrationResult
from schemashift.domain.entities.operations import RenameCandidate
from schemashift.infrastructure.backup.backup_manager import BackupManager
from schemashift.infrastructure.config import Settings
from schemashift.infrastructure.di_container import DIContainer


def _fail(error: Exception) -> None:
    click.echo(f"\n❌ Error: {str(error)}", err=True)
    if isinstance(error, TransactionError):
        if error.statement:
            click.echo(f"   Statement: {error.statement}", err=True)
        if error.restored_backup:
            click.echo(f"   Restored backup: {error.restored_backup}", err=True)
    raise click.Abort()


def _echo_results(results: List[MigrationResult], verb: str) -> None:
    for result in results:
        duration = f" ({result.duration * 1000:.0f} ms)" if result.duration is not None else ""
        click.echo(f"   ✓ {verb} {result.version}{duration}")
        if result.backup is not None:
            click.echo(f"      Backup: {result.backup.file_id}")


@click.group()
@click.version_option(version="1.0.0")
@click.option('--database-url', default=None,
              help='Database connection string (overrides DATABASE_URL)')
@click.option('--entities', default=None,
              help='Entity module, .py path or .json file (overrides SCHEMASHIFT_ENTITIES)')
@click.option('--verbose', '-v', is_flag=True, help='Log progress to stderr')
@click.pass_context
def cli(ctx, database_url, entities, verbose):
    """SchemaShift - entity-driven schema migrations with backups."""
    if ctx.obj is None:
        container = DIContainer()
        container.configure(Settings.from_env(database_url=database_url, entities=entities))
        ctx.obj = container
    container = ctx.obj

    level = logging.INFO if verbose else container.settings.log_level
    logging.basicConfig(level=level, format='%(asctime)s - %(levelname)s - %(message)s')
    ctx.call_on_close(container.close)


@cli.command(name="migration:migrate")
@click.option('--dry-run', is_flag=True, help='Show the SQL without executing it')
@click.pass_obj
def migrate(container, dry_run):
    """Run all pending migrations."""
    click.echo("🚀 Running migrations" + (" (dry run)" if dry_run else ""))
    try:
        results = container.get_executor().migrate(dry_run=dry_run)
    except Exception as e:
        _fail(e)

    if not results:
        click.echo("✅ Nothing to migrate")
        return
    if dry_run:
        for result in results:
            click.echo(f"\n📝 {result.version}:")
            if not result.statements:
                click.echo("   (no preview available)")
            for sql in result.statements:
                click.echo(f"   {sql}")
        return
    _echo_results(results, "Migrated")
    click.echo(f"\n✅ {len(results)} migration(s) executed")


@cli.command(name="migration:rollback")
@click.option('--steps', type=int, default=None, help='Number of migrations to revert (default 1)')
@click.option('--version', 'version', default=None, help='Revert everything down to and including this version')
@click.pass_obj
def rollback(container, steps, version):
    """Revert executed migrations, newest first."""
    click.echo("⏪ Rolling back")
    try:
        results = container.get_executor().rollback(steps=steps, version=version)
    except Exception as e:
        _fail(e)

    if not results:
        click.echo("✅ Nothing to roll back")
        return
    _echo_results(results, "Rolled back")
    click.echo(f"\n✅ {len(results)} migration(s) rolled back")


@cli.command(name="migration:refresh")
@click.option('--force', is_flag=True, help='Confirm that every migration is reverted and re-run')
@click.pass_obj
def refresh(container, force):
    """Roll back every migration, then migrate again."""
    click.echo("🔄 Refreshing migrations")
    try:
        results = container.get_executor().refresh(force=force)
    except Exception as e:
        _fail(e)
    click.echo(f"✅ Refresh complete ({len(results)} steps)")


@cli.command(name="migration:fresh")
@click.option('--force', is_flag=True, help='Confirm that every table is dropped')
@click.pass_obj
def fresh(container, force):
    """Drop all tables and enum types, then migrate from scratch."""
    click.echo("🧨 Rebuilding database from scratch")
    try:
        results = container.get_executor().fresh(force=force)
    except Exception as e:
        _fail(e)
    _echo_results(results, "Migrated")
    click.echo(f"✅ Fresh migrate complete ({len(results)} migrations)")


@cli.command(name="migration:squash")
@click.option('--to', 'to_version', required=True, help='Last version of the run to squash')
@click.option('--from', 'from_version', default=None, help='First version of the run (default: first migration)')
@click.pass_obj
def squash(container, to_version, from_version):
    """Replace a run of migrations by a single baseline."""
    click.echo("🗜️  Squashing migrations")
    try:
        plan = container.get_squash_migrations_use_case().execute(to_version, from_version)
    except Exception as e:
        _fail(e)

    click.echo(f"   Squashed: {', '.join(plan.squashed_versions)}")
    click.echo(f"   Baseline: {plan.baseline.id}")
    if plan.executed:
        click.echo("   Ledger entries replaced by the baseline")
    click.echo("✅ Squash complete")


@cli.command(name="show:migrations")
@click.pass_obj
def show_migrations(container):
    """List migrations with their execution status."""
    try:
        states = container.get_executor().status()
    except Exception as e:
        _fail(e)

    if not states:
        click.echo("📭 No migrations found")
        return

    click.echo("📋 Migrations:")
    for state in states:
        if state.orphaned:
            icon, detail = "👻", "orphaned ledger entry"
        elif state.executed:
            icon, detail = "✅", f"executed {state.executed_at:%Y-%m-%d %H:%M:%S}"
        elif state.last_attempt_failed:
            icon, detail = "❌", "failed"
        else:
            icon, detail = "⏳", "pending"
        click.echo(f"   {icon} {state.version} {state.name}  [{detail}]")

    pending = sum(1 for s in states if not s.executed and not s.orphaned)
    click.echo(f"\n   Total: {len(states)}, pending: {pending}")


@cli.command(name="make:migration")
@click.option('--name', default='auto', help='Name for the generated migration')
@click.option('--accept-renames', is_flag=True, help='Treat every rename candidate as a rename')
@click.option('--reject-renames', is_flag=True, help='Treat every rename candidate as drop + add')
@click.option('--backup', 'backup', is_flag=True, help='Always back up before running this migration')
@click.option('--no-backup', 'no_backup', is_flag=True, help='Never back up before running this migration')
@click.pass_obj
def make_migration(container, name, accept_renames, reject_renames, backup, no_backup):
    """Generate a migration from the entity declarations."""
    if accept_renames and reject_renames:
        _fail(click.UsageError("--accept-renames and --reject-renames are mutually exclusive"))
    if backup and no_backup:
        _fail(click.UsageError("--backup and --no-backup are mutually exclusive"))

    click.echo("🔍 Comparing entities with the database")
    try:
        use_case = container.get_generate_migration_use_case()
        diff = use_case.compute_diff()
    except Exception as e:
        _fail(e)

    if diff.is_empty():
        click.echo("✅ Schema is up to date, nothing to generate")
        return

    click.echo(f"\n📝 Detected changes:")
    for op in diff:
        icon = "⚠️" if op.destructive else "✓"
        click.echo(f"   {icon} {op.describe()}")

    if accept_renames:
        decisions = lambda candidate: True
    elif reject_renames:
        decisions = lambda candidate: False
    else:
        def decisions(candidate: RenameCandidate) -> Optional[bool]:
            return click.confirm(
                f"\n❓ Was {candidate.table}.{candidate.old.name} renamed to {candidate.new.name}?",
                default=True,
            )

    requires_backup = True if backup else (False if no_backup else None)
    try:
        generated = use_case.execute(diff, decisions, name=name, requires_backup=requires_backup)
    except Exception as e:
        _fail(e)

    for warning in generated.warnings:
        click.echo(f"   ⚠️  {warning}")
    click.echo(f"\n💾 Migration saved to: {generated.path}")
    click.echo(f"   Version: {generated.version}")
    click.echo(f"   Backup before run: {generated.record.requires_backup}")


@cli.command(name="show:backups")
@click.pass_obj
def show_backups(container):
    """List backups of the configured database."""
    try:
        manager = container.get_backup_manager()
        backups = manager.list()
    except Exception as e:
        _fail(e)

    if not backups:
        click.echo("📭 No backups found")
        return

    click.echo("🗄️  Backups:")
    for item in backups:
        click.echo(
            f"   {item.file_id}  {item.created_at:%Y-%m-%d %H:%M:%S}  "
            f"{BackupManager.format_size(item.size_bytes)}"
        )
    click.echo(f"\n   Total: {len(backups)} ({BackupManager.format_size(sum(b.size_bytes for b in backups))})")


@cli.command(name="cleanup:backups")
@click.option('--days', type=int, default=None, help='Retention in days (default 30)')
@click.pass_obj
def cleanup_backups(container, days):
    """Delete backups older than the retention period."""
    retention = days if days is not None else container.settings.backup_retention_days
    try:
        deleted = container.get_backup_manager().cleanup(retention)
    except Exception as e:
        _fail(e)
    click.echo(f"🧹 Deleted {deleted} backup(s) older than {retention} days")


@cli.command(name="restore:backup")
@click.argument('version')
@click.pass_obj
def restore_backup(container, version):
    """Restore the most recent backup taken for VERSION."""
    click.echo(f"♻️  Restoring backup for {version}")
    try:
        restored = container.get_backup_manager().restore(version)
    except Exception as e:
        _fail(e)
    click.echo(f"✅ Restored {restored.file_id}")


if __name__ == '__main__':
    cli()
