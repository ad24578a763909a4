"""Dedicated entry point to launch the Store status server.
Logs a fatal startup error to startup_error.log before exiting.
"""
from datetime import datetime, timezone
import traceback
import sys

if __name__ == '__main__':
    try:
        import app
        app.main()
    except Exception as e:  # log error
        with open('startup_error.log', 'a', encoding='utf-8') as f:
            f.write(f"[{datetime.now(timezone.utc).isoformat()}] FATAL during run_server: {e}\n")
            f.write(traceback.format_exc())
        print(f"[startup][fatal] {e}")
        sys.exit(1)
