from __future__ import annotations

import sys

from notifyhub.apps.cli.queue_cli import main


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
