from __future__ import annotations

from app.core.database import db


async def require_database() -> None:
    """Connect lazily so API calls made before startup completes still work."""

    if not db.is_connected():
        await db.connect()
