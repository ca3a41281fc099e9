from __future__ import annotations

import logging
import sys

from notifyhub.core.config import get_settings


_FORMAT = "%(asctime)s level=%(levelname)s logger=%(name)s %(message)s"
_configured = False


def configure_logging(level: str | None = None) -> None:
    # Install one stdout handler per process; repeated calls only adjust the level.
    global _configured
    resolved = (level or get_settings().log_level or "INFO").upper()
    root = logging.getLogger()
    root.setLevel(resolved)
    if _configured:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_FORMAT))
    root.addHandler(handler)
    # Keep third-party chatter out of delivery logs.
    for noisy in ("httpx", "httpcore", "urllib3", "google"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    _configured = True
