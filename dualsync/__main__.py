from __future__ import annotations

from dualsync.entrypoints.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
