from __future__ import annotations

import os
import sys

try:
    # Normal package import path.
    from .cli import main as _cli_main
except ImportError:
    # Script entrypoint path.
    from benchmon_app.cli import main as _cli_main


def main(argv: list[str] | None = None) -> int:
    """Run the CLI; a bare ``python -m benchmon_app`` prints the capability report."""
    args = sys.argv[1:] if argv is None else argv
    try:
        return int(_cli_main(args or ["doctor"]))
    except KeyboardInterrupt:
        return 130
    except BrokenPipeError:
        # `benchmon monitor | head` closes stdout early; silence the flush at exit.
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
