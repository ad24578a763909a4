"""Operator commands for backups and pending restores.

Usage:
  store-backup backup create [--manual]      # 0 = success, 1 = failure
  store-backup backup list [--limit N] [--json]
  store-backup backup health [--json]
  store-backup restore stage <backupId>       # 0 staged, 2 checksum mismatch, 3 already pending
  store-backup restore apply                  # apply a staged restore now (app must be stopped)
  store-backup restore diagnose [--json]      # always 0
  store-backup restore emergency-clear        # 0, idempotent
"""
from __future__ import annotations
import argparse
import json
import sys
from typing import List, Optional

from .errors import BackupError, ChecksumMismatch, NotFound, OperationInProgress, RestoreAlreadyPending
from .models import TRIGGER_MANUAL, TRIGGER_SCHEDULED

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CHECKSUM_MISMATCH = 2
EXIT_ALREADY_PENDING = 3
EXIT_IN_PROGRESS = 4


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog='store-backup', description='Backup / restore tool for the store database')
    groups = ap.add_subparsers(dest='group', required=True)

    backup = groups.add_parser('backup', help='Create and inspect backups')
    bsub = backup.add_subparsers(dest='command', required=True)
    create = bsub.add_parser('create', help='Take a backup now')
    create.add_argument('--manual', action='store_true', help='Record as a manual backup (default: scheduled)')
    lst = bsub.add_parser('list', help='List backups, newest first')
    lst.add_argument('--limit', type=int, default=None)
    lst.add_argument('--json', action='store_true', help='Emit JSON only')
    health = bsub.add_parser('health', help='Show backup health')
    health.add_argument('--json', action='store_true', help='Emit JSON only')

    restore = groups.add_parser('restore', help='Stage, apply and debug restores')
    rsub = restore.add_subparsers(dest='command', required=True)
    stage = rsub.add_parser('stage', help='Stage a backup to be restored on next start')
    stage.add_argument('backup_id')
    rsub.add_parser('apply', help='Apply a staged restore now (application must be stopped)')
    diag = rsub.add_parser('diagnose', help='Report pending restore state (read-only)')
    diag.add_argument('--json', action='store_true', help='Emit JSON only')
    diag.add_argument('--out', help='Also write the JSON report to a file')
    rsub.add_parser('emergency-clear', help='Force-remove pending restore state')
    return ap


def _backup_create(system, args) -> int:
    trigger = TRIGGER_MANUAL if args.manual else TRIGGER_SCHEDULED
    try:
        record = system.service.create_backup(trigger)
    except OperationInProgress as e:
        print(f'❌ {e}')
        return EXIT_IN_PROGRESS
    except (BackupError, OSError) as e:
        print(f'❌ Backup failed: {e}')
        return EXIT_FAILURE
    print(f'✅ Backup created: {record.id} -> {record.local_path} ({record.size_bytes} bytes)')
    if system.schedule.retention_count > 0:
        try:
            system.store.prune(system.schedule.retention_count)
        except (BackupError, OSError) as e:
            print(f'[prune][warn] {e}')
    return EXIT_OK


def _backup_list(system, args) -> int:
    records = system.store.list(args.limit)
    if args.json:
        print(json.dumps([r.to_dict() for r in records], indent=2))
        return EXIT_OK
    if not records:
        print('(no backups)')
        return EXIT_OK
    print(f"{'ID':<24} {'CREATED (UTC)':<20} {'SIZE':>12} {'TRIGGER':<10} REMOTE")
    for r in records:
        print(f"{r.id:<24} {r.created_at.strftime('%Y-%m-%d %H:%M:%S'):<20} {r.size_bytes:>12} "
              f"{r.trigger:<10} {r.remote_ref or '-'}")
    return EXIT_OK


def _backup_health(system, args) -> int:
    health = system.store.health()
    if args.json:
        print(json.dumps(health.to_dict(), indent=2))
        return EXIT_OK
    print(f'Status      : {health.status}')
    print(f'Last backup : {health.last_backup_at.isoformat() if health.last_backup_at else "never"}')
    print(f'Backups     : {health.total_backups} ({health.total_size_bytes} bytes)')
    if health.last_error:
        print(f'Last error  : {health.last_error}')
    for issue in health.issues:
        print(f' - {issue}')
    return EXIT_OK


def _restore_stage(system, args) -> int:
    try:
        intent = system.coordinator.stage_restore(args.backup_id)
    except ChecksumMismatch as e:
        print(f'❌ Backup {args.backup_id} is corrupt, nothing staged: {e}')
        return EXIT_CHECKSUM_MISMATCH
    except RestoreAlreadyPending as e:
        print(f'❌ {e}')
        return EXIT_ALREADY_PENDING
    except NotFound as e:
        print(f'❌ {e}')
        return EXIT_FAILURE
    except OperationInProgress as e:
        print(f'❌ {e}')
        return EXIT_IN_PROGRESS
    except (BackupError, OSError) as e:
        print(f'❌ Staging failed: {e}')
        return EXIT_FAILURE
    print(f'✅ Backup {intent.target_backup_id} staged. Restart the application to apply it.')
    return EXIT_OK


def _restore_apply(system, args) -> int:
    try:
        outcome = system.startup.run()
    except OperationInProgress as e:
        print(f'❌ {e}')
        return EXIT_IN_PROGRESS
    print(outcome.message)
    return EXIT_OK if outcome.state.value in ('applied', 'no_intent') else EXIT_FAILURE


def _restore_diagnose(system, args) -> int:
    report = system.diagnostics.report()
    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        print(report.render_text())
    if args.out:
        try:
            with open(args.out, 'w', encoding='utf-8') as f:
                json.dump(report.to_dict(), f, indent=2)
        except OSError as e:
            print(f'[warn] failed writing JSON report: {e}', file=sys.stderr)
    return EXIT_OK


def _restore_emergency_clear(system, args) -> int:
    removed = system.cleanup.force_clear()
    if removed:
        for path in removed:
            print(f'🧹 removed {path}')
    else:
        print('Nothing to clear.')
    return EXIT_OK


HANDLERS = {
    ('backup', 'create'): _backup_create,
    ('backup', 'list'): _backup_list,
    ('backup', 'health'): _backup_health,
    ('restore', 'stage'): _restore_stage,
    ('restore', 'apply'): _restore_apply,
    ('restore', 'diagnose'): _restore_diagnose,
    ('restore', 'emergency-clear'): _restore_emergency_clear,
}


def main(argv: Optional[List[str]] = None, system=None) -> int:
    args = build_parser().parse_args(argv)
    if system is None:
        from .system import BackupSystem
        system = BackupSystem.from_config()
    try:
        return HANDLERS[(args.group, args.command)](system, args)
    except (BackupError, OSError) as e:
        print(f'❌ {e}')
        return EXIT_FAILURE


if __name__ == '__main__':
    sys.exit(main())
