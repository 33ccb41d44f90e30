#!/usr/bin/env python3
"""Backfill ``timelapse_size`` for paintings saved before it was recorded.

Prints a JSON report of the records touched and of any whose stored
timelapse no longer decodes.

Usage:
    DATABASE_URL=sqlite+aiosqlite:///./gallery.db python scripts/update_timelapse_sizes.py

Exit codes:
    0 -- every updated timelapse decodes
    1 -- one or more stored timelapses are unreadable
"""

from __future__ import annotations

import asyncio
import json
import sys
from datetime import datetime, timezone

from gallery.database import async_session_factory, engine
from gallery.services.paint_service import refresh_timelapse_sizes


async def main() -> int:
    try:
        async with async_session_factory() as session:
            result = await refresh_timelapse_sizes(session)
    finally:
        await engine.dispose()

    report = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "total_updated": len(result["updated"]),
        "updated": result["updated"],
        "unreadable": result["unreadable"],
    }

    json.dump(report, sys.stdout, indent=2)
    sys.stdout.write("\n")

    return 1 if result["unreadable"] else 0


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
