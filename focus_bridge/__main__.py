"""Allow ``python -m focus_bridge`` to launch the bridge CLI."""

from __future__ import annotations

import sys


def main() -> None:
    from focus_bridge import run
    run(sys.argv[1:])


if __name__ == "__main__":
    main()
