from __future__ import annotations

import asyncio
import sys

from notifyhub.core.config import get_settings
from notifyhub.persistence.stores.factory import build_store


async def cleanup(days_old: int | None = None) -> None:
    settings = get_settings()
    days = settings.notification_retention_days if days_old is None else days_old
    store = build_store(settings)
    try:
        deleted = await store.cleanup_old_notifications(days)
        print(f"cleaned_notifications={deleted} days_old={days}")
    finally:
        await store.close()


if __name__ == "__main__":
    asyncio.run(cleanup(int(sys.argv[1]) if len(sys.argv) > 1 else None))
