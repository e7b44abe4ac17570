from __future__ import annotations

from ralph_supervised.commands import main


if __name__ == "__main__":
    raise SystemExit(main())
