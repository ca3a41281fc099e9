from __future__ import annotations

from notifyhub.workers.notification_worker import main


if __name__ == "__main__":
    raise SystemExit(main())
