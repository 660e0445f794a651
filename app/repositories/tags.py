from __future__ import annotations

from typing import Any

from app.core.database import db


def _normalise_tag(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": int(row["id"]),
        "code": row.get("code") or "",
        "name": row.get("name") or row.get("code") or "",
    }


async def list_tags() -> list[dict[str, Any]]:
    rows = await db.fetch_all("SELECT id, code, name FROM tags ORDER BY code ASC")
    return [_normalise_tag(row) for row in rows]


async def tag_choices() -> dict[int, str]:
    """Map tag id to code for the product filter multi-select."""

    return {tag["id"]: tag["code"] for tag in await list_tags()}


async def get_tag(tag_id: int) -> dict[str, Any] | None:
    row = await db.fetch_one("SELECT id, code, name FROM tags WHERE id = %s", (tag_id,))
    return _normalise_tag(row) if row else None
