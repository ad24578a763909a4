"""
Store Management status server
Backup / restore endpoints and health for the store database.

A staged restore is applied in ``create_app`` *before* the live database is
opened, so nothing can hold the file while it is swapped.
"""

import socket
import sqlite3

from flask import Flask, request

from config import APP_HOST, APP_PORT, APP_DEBUG, ensure_backup_dir
from store_backup.errors import ChecksumMismatch, NotFound, OperationInProgress, RestoreAlreadyPending
from store_backup.system import BackupSystem


def create_app(system=None, start_scheduler=False, poll_seconds=30.0):
    system = system or BackupSystem.from_config()
    outcome = system.startup.run()
    if outcome.state.value != 'no_intent':
        print(f"[startup] {outcome.message}")
    system.data_source.open()

    server = Flask(__name__)
    server.config['BACKUP_SYSTEM'] = system
    server.config['RESTORE_OUTCOME'] = outcome

    # ------------------ Health Endpoint ------------------ #
    @server.route('/health')
    def health():
        backup = None
        restore = outcome.to_dict()
        try:
            backup = system.store.health().to_dict()
            conn = sqlite3.connect(str(system.live_path))
            conn.execute('SELECT 1')
            conn.close()
            return {"status": "ok", "db": "reachable", "backup": backup, "restore": restore}
        except Exception as e:
            return {"status": "error", "detail": str(e), "backup": backup, "restore": restore}, 500

    # ------------------ Backups ------------------ #
    @server.route('/backups', methods=['GET'])
    def list_backups():
        limit = request.args.get('limit', type=int)
        return {"backups": [r.to_dict() for r in system.store.list(limit)]}

    @server.route('/backups', methods=['POST'])
    def create_backup():
        if system.gate.busy:
            return {"status": "busy", "detail": "a backup or restore is already running"}, 409
        system.scheduler.run_async()
        return {"status": "started"}, 202

    # ------------------ Restore ------------------ #
    @server.route('/restore/<backup_id>', methods=['POST'])
    def stage_restore(backup_id):
        try:
            intent = system.coordinator.stage_restore(backup_id)
        except NotFound as e:
            return {"status": "not_found", "detail": str(e)}, 404
        except (RestoreAlreadyPending, OperationInProgress) as e:
            return {"status": "conflict", "detail": str(e)}, 409
        except ChecksumMismatch as e:
            return {"status": "checksum_mismatch", "detail": str(e)}, 422
        return {"status": "staged", "intent": intent.to_dict(),
                "detail": "Restart the application to apply the restore."}, 201

    @server.route('/restore/diagnose')
    def diagnose():
        return system.diagnostics.report().to_dict()

    if start_scheduler and system.schedule.enabled:
        system.scheduler.start(poll_seconds=poll_seconds)
    return server


# ------------------ Port Selection Helper ------------------ #
def find_free_port(preferred: int) -> int:
    port = preferred
    for _ in range(15):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                s.bind(('127.0.0.1', port))
                return port
            except OSError:
                port += 1
    return preferred  # fallback


def main():
    ensure_backup_dir()
    system = BackupSystem.from_config()
    server = create_app(system, start_scheduler=True)
    preferred = APP_PORT
    free_port = find_free_port(preferred)
    if free_port != preferred:
        print(f"[startup] Port {preferred} in use, switching to {free_port}")
    print("[startup] Starting status server ...")
    print(f"[startup] Database path: {system.live_path}")
    print(f"[startup] Backup health: {system.store.health().status}")
    server.run(debug=APP_DEBUG, port=free_port, host=APP_HOST, use_reloader=False)


if __name__ == "__main__":
    main()
