from __future__ import annotations

import sys
from pathlib import Path
from typing import Any

from loguru import logger

_LOG_FORMAT = "{time:YYYY-MM-DDTHH:mm:ss.SSSZ} | {level} | {message}\n{exception}"


def configure_logging() -> None:
    from app.core.config import get_settings

    logger.remove()
    logger.add(sink=sys.stdout, format=_LOG_FORMAT, level="DEBUG")

    settings = get_settings()
    log_path = settings.audit_log_path
    if log_path:
        log_path = log_path.expanduser()
        if _ensure_log_path(log_path):
            try:
                logger.add(
                    str(log_path),
                    format=_LOG_FORMAT,
                    level="INFO",
                    encoding="utf-8",
                    enqueue=True,
                    filter=lambda record: record["extra"].get("audit", False),
                )
            except Exception as exc:  # pragma: no cover - log sink misconfiguration
                logger.warning(
                    f"AUDIT LOG FILE DISABLED - unable to open file path={log_path} error={exc}"
                )


def _format_meta(meta: dict[str, Any]) -> str:
    return " ".join(f"{key}={meta[key]}" for key in sorted(meta))


def log_error(message: str, **meta) -> None:
    if meta:
        logger.bind(**meta).error(f"{message} | {_format_meta(meta)}")
    else:
        logger.error(message)


def log_info(message: str, **meta) -> None:
    if meta:
        logger.bind(**meta).info(f"{message} | {_format_meta(meta)}")
    else:
        logger.info(message)


def log_warning(message: str, **meta) -> None:
    if meta:
        logger.bind(**meta).warning(f"{message} | {_format_meta(meta)}")
    else:
        logger.warning(message)


def log_debug(message: str, **meta) -> None:
    if meta:
        logger.bind(**meta).debug(f"{message} | {_format_meta(meta)}")
    else:
        logger.debug(message)


def _ensure_log_path(path: Path) -> bool:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.warning(
            f"AUDIT LOG FILE DISABLED - unable to create directory path={path.parent} "
            f"error={exc}"
        )
        return False
    return True


def log_audit_event(
    action: str,
    *,
    entity_type: str,
    entity_id: int | None = None,
    ip_address: str | None = None,
    **extra_meta,
) -> None:
    """Record a catalog change in the audit sink.

    Format: ``CATALOG {action} | entity_type=... entity_id=... ip=... [extra_meta]``

    Args:
        action: What happened to the entity (``create``, ``update``, ``reorder``).
        entity_type: Kind of record changed, for example ``product``.
        entity_id: Identifier of the changed record.
        ip_address: Address of the admin client when known.
        **extra_meta: Additional values appended to the entry.
    """
    meta: dict[str, Any] = {"entity_type": entity_type}
    if entity_id is not None:
        meta["entity_id"] = entity_id
    if ip_address:
        meta["ip"] = ip_address
    meta.update(extra_meta)

    logger.bind(audit=True, **meta).info(f"CATALOG {action} | {_format_meta(meta)}")
