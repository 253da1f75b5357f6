"""PyInstaller entrypoint for Session Guard.

Default behavior starts the status server.
CLI behavior is available via:
    session-guard cli <subcommands...>
"""

from __future__ import annotations

import sys

from session_guard.app import main as app_main
from session_guard.cli import main as cli_main


if __name__ == "__main__":
    if len(sys.argv) > 1 and sys.argv[1] == "cli":
        raise SystemExit(cli_main(sys.argv[2:]))
    app_main()
