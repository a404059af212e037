#!/usr/bin/env python3
"""
MediaMigrate CLI
================
Command-line interface for the media unification migration.

Usage:
    mediamigrate backup create [--output DIR]
    mediamigrate backup restore --backup PATH [--force]
    mediamigrate backup list
    mediamigrate backup delete --backup PATH [--force]
    mediamigrate migrate [--rollback]
    mediamigrate file-migrate [--rollback | --cleanup [--force]]
    mediamigrate verify [--sample-size N] [--json]
    mediamigrate staging-migrate [--skip-backup | --rollback | --rollback-skip-backup]
"""

import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional

from .config import MigrationConfig, load_config
from .errors import MigrationError, StageError
from .logging_config import setup_logging
from .migration import (
    BackupManager,
    FileRelocator,
    MigrationOrchestrator,
    MigrationVerifier,
    SchemaMigrator,
)
from .models import MediaType
from .store import Store
from .utils import format_duration, format_file_size


def confirm(prompt: str) -> bool:
    """Ask a y/N question on stdin."""
    try:
        response = input(f"{prompt} [y/N]: ").strip().lower()
    except EOFError:
        return False
    return response in ('y', 'yes')


class MediaMigrateCLI:
    """Unified CLI for media migration operations."""

    def __init__(self, args, config: Optional[MigrationConfig] = None):
        """Initialize CLI with parsed arguments."""
        self.args = args
        self.config = config or load_config(
            data_dir=args.data_dir,
            db_path=args.db_path,
            uploads_dir=args.uploads_dir,
            backup_dir=args.backup_dir,
            log_level=args.log_level,
            sample_size=getattr(args, 'sample_size', None),
        )
        self.store = Store(self.config.db_path)

    # ========================================
    # Component factories
    # ========================================

    def backups(self) -> BackupManager:
        return BackupManager(self.store, self.config.backup_dir, lock_file=self.config.lock_file)

    def schema(self) -> SchemaMigrator:
        return SchemaMigrator(
            self.store, migration_name=self.config.migration_name, lock_file=self.config.lock_file
        )

    def files(self) -> FileRelocator:
        return FileRelocator(
            self.config.uploads_dir, lock_file=self.config.lock_file, show_progress=self.config.show_progress
        )

    def run(self) -> int:
        """Execute the requested command."""
        command = self.args.command

        try:
            if command == 'backup':
                return self.run_backup_command()
            elif command == 'migrate':
                return self.run_migrate()
            elif command == 'file-migrate':
                return self.run_file_migrate()
            elif command == 'verify':
                return self.run_verify()
            elif command == 'staging-migrate':
                return self.run_staging_migrate()
            else:
                print(f"❌ Unknown command: {command}")
                return 1
        except StageError as e:
            print(f"❌ Stage '{e.stage}' failed: {e.cause}")
            if e.rolled_back:
                print("   Automatic rollback completed, store and uploads are unchanged.")
            elif e.restored_from:
                print(f"   Store restored from backup: {e.restored_from}")
            for err in e.rollback_errors:
                print(f"   ⚠️  {err}")
            return 1
        except MigrationError as e:
            print(f"❌ {e}")
            return 1

    # ========================================
    # Backup Commands
    # ========================================

    def run_backup_command(self) -> int:
        """Route backup subcommands."""
        action = getattr(self.args, 'backup_command', None)

        if action == 'create':
            return self.run_backup_create()
        elif action == 'restore':
            return self.run_backup_restore()
        elif action == 'list':
            return self.run_backup_list()
        elif action == 'delete':
            return self.run_backup_delete()

        print("❌ No backup subcommand specified")
        print("\nUsage: mediamigrate backup <command>")
        print("\nCommands:")
        print("  create   - Create a backup of the store")
        print("  restore  - Restore the store from a backup")
        print("  list     - List available backups")
        print("  delete   - Delete a backup")
        return 1

    def run_backup_create(self) -> int:
        artifact = self.backups().create_backup(self.args.output)
        print(f"✅ Backup created: {artifact.path} ({format_file_size(artifact.size_bytes)})")
        return 0

    def run_backup_restore(self) -> int:
        backup_path = Path(self.args.backup)
        if not backup_path.is_file():
            print(f"❌ Backup file does not exist: {backup_path}")
            return 1

        if not self.args.force:
            print(f"\n⚠️  This will overwrite the store at {self.config.db_path}")
            print(f"   with the contents of {backup_path}.")
            if not confirm("\nProceed?"):
                print("Cancelled.")
                return 1

        self.backups().restore_backup(backup_path)
        print(f"✅ Store restored from {backup_path}")
        return 0

    def run_backup_list(self) -> int:
        backups = self.backups().list_backups()
        if not backups:
            print(f"No backups found in {self.config.backup_dir}", file=sys.stderr)
            return 0
        for artifact in backups:
            print(artifact.path)
        return 0

    def run_backup_delete(self) -> int:
        backup_path = Path(self.args.backup)
        if not backup_path.is_file():
            print(f"❌ Backup file does not exist: {backup_path}")
            return 1

        if not self.args.force and not confirm(f"⚠️  Delete backup {backup_path}?"):
            print("Cancelled.")
            return 1

        self.backups().delete_backup(backup_path)
        print(f"✅ Deleted backup: {backup_path}")
        return 0

    # ========================================
    # Schema and File Commands
    # ========================================

    def run_migrate(self) -> int:
        schema = self.schema()
        if self.args.rollback:
            if schema.rollback():
                print("✅ Media unification migration rolled back")
            else:
                print("Nothing to roll back.")
            return 0

        result = schema.migrate()
        if result.skipped:
            print("Media unification migration has already been completed.")
        else:
            print(
                f"✅ Migrated {result.rows_migrated} records "
                f"in {format_duration(result.duration_seconds)}"
            )
        return 0

    def run_file_migrate(self) -> int:
        files = self.files()

        if self.args.rollback:
            removed = files.rollback()
            print(f"✅ File migration rolled back ({removed} files removed from {files.media_dir})")
            return 0

        if self.args.cleanup:
            if not self.args.force:
                print("\n⚠️  This permanently deletes the legacy files in:")
                print(f"   {files.legacy_dir(MediaType.IMAGE)}")
                print(f"   {files.legacy_dir(MediaType.DOCUMENT)}")
                print("   Only continue after verifying the migration in production.")
                if not confirm("\nProceed?"):
                    print("Cancelled.")
                    return 1
            removed = files.cleanup()
            print(f"✅ Legacy files cleaned up ({removed} files removed)")
            return 0

        log = files.migrate()
        print(f"✅ File migration completed ({log.moved_count} files copied to {files.media_dir})")
        return 0

    def run_verify(self) -> int:
        report = MigrationVerifier(
            self.store,
            sample_size=self.config.sample_size,
            migration_name=self.config.migration_name,
        ).verify()

        if self.args.json:
            print(json.dumps(report.to_dict(), indent=2))
        else:
            report.print_report()
        return 0 if report.ok else 1

    # ========================================
    # Staged Migration
    # ========================================

    def run_staging_migrate(self) -> int:
        orchestrator = MigrationOrchestrator(self.config, store=self.store)

        if self.args.rollback or self.args.rollback_skip_backup:
            print("=== Staging Migration Rollback ===")
            result = orchestrator.rollback(skip_backup=self.args.rollback_skip_backup)
            if result.backup:
                print(f"Backup: {result.backup.path}")
            print(f"✅ Rollback completed in {format_duration(result.duration_seconds)}")
            return 0

        print("=== Staging Migration ===")
        result = orchestrator.run(skip_backup=self.args.skip_backup)
        if result.backup:
            print(f"Backup: {result.backup.path}")
        print(f"Stages: {' -> '.join(result.stages)}")
        print(
            f"Media records: {result.report.unified_count} "
            f"(images: {result.report.legacy_image_count}, docs: {result.report.legacy_doc_count})"
        )

        if not result.ok:
            print("⚠️  Verification reported mismatches, nothing was rolled back:")
            for name in result.report.mismatches[:10]:
                print(f"   - {name}")
            print("   Run 'mediamigrate staging-migrate --rollback' to undo.")
            return 1

        print(f"✅ Staging migration completed in {format_duration(result.duration_seconds)}")
        print("   Legacy files are kept; run 'mediamigrate file-migrate --cleanup' once stable.")
        return 0


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser."""
    parser = argparse.ArgumentParser(
        prog="mediamigrate",
        description="MediaMigrate - Reversible images/docs to unified media migration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Full staged run (backup, schema, files, verify)
  mediamigrate staging-migrate
  mediamigrate staging-migrate --rollback

  # Individual steps
  mediamigrate backup create
  mediamigrate migrate
  mediamigrate file-migrate
  mediamigrate verify --json

  # After the new system is stable
  mediamigrate file-migrate --cleanup
        """
    )

    # Global options
    parser.add_argument('--data-dir', type=Path, help='Base directory (default: $MEDIAMIGRATE_DATA_DIR or .)')
    parser.add_argument('--db-path', type=Path, help='SQLite store (default: <data-dir>/db_data/main.db)')
    parser.add_argument('--uploads-dir', type=Path, help='Uploads root (default: <data-dir>/uploads)')
    parser.add_argument('--backup-dir', type=Path, help='Backup directory (default: <data-dir>/backups)')
    parser.add_argument('--log-level', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'], help='Logging level')

    subparsers = parser.add_subparsers(dest='command', help='Command to execute')

    # Backup commands
    backup_parser = subparsers.add_parser('backup', help='Store backup management')
    backup_subparsers = backup_parser.add_subparsers(dest='backup_command', help='Backup commands')

    backup_create = backup_subparsers.add_parser('create', help='Create a backup')
    backup_create.add_argument('--output', type=Path, help='Directory for the artifact')

    backup_restore = backup_subparsers.add_parser('restore', help='Restore the store from a backup')
    backup_restore.add_argument('--backup', required=True, help='Backup file to restore')
    backup_restore.add_argument('--force', action='store_true', help='Skip confirmation')

    backup_subparsers.add_parser('list', help='List backups, oldest first')

    backup_delete = backup_subparsers.add_parser('delete', help='Delete a backup')
    backup_delete.add_argument('--backup', required=True, help='Backup file to delete')
    backup_delete.add_argument('--force', action='store_true', help='Skip confirmation')

    # Schema migration
    migrate_parser = subparsers.add_parser('migrate', help='Run the schema migration')
    migrate_parser.add_argument('--rollback', action='store_true', help='Roll back the schema migration')

    # File migration
    file_parser = subparsers.add_parser('file-migrate', help='Relocate files to uploads/media')
    file_group = file_parser.add_mutually_exclusive_group()
    file_group.add_argument('--rollback', action='store_true', help='Remove relocated files')
    file_group.add_argument('--cleanup', action='store_true', help='Delete legacy files (irreversible)')
    file_parser.add_argument('--force', action='store_true', help='Skip cleanup confirmation')

    # Verification
    verify_parser = subparsers.add_parser('verify', help='Verify the migration')
    verify_parser.add_argument('--sample-size', type=int, help='Records to spot-check (default: 100)')
    verify_parser.add_argument('--json', action='store_true', help='Output as JSON')

    # Staged migration
    staging_parser = subparsers.add_parser('staging-migrate', help='Backup, migrate, relocate and verify')
    staging_group = staging_parser.add_mutually_exclusive_group()
    staging_group.add_argument('--skip-backup', action='store_true', help='Do not take a backup first')
    staging_group.add_argument('--rollback', action='store_true', help='Back up, then roll back')
    staging_group.add_argument('--rollback-skip-backup', action='store_true',
                               help='Roll back without taking a backup')

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        cli = MediaMigrateCLI(args)
    except ValueError as e:
        print(f"❌ Invalid configuration: {e}")
        return 1

    setup_logging(cli.config.log_level, cli.config.log_dir)
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
