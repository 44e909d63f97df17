from __future__ import annotations

import uuid
from typing import Any

import structlog
from sqlalchemy import insert, select, update
from sqlalchemy.engine import Engine

from bbsync_db import sync_progress
from bbsync_mappings import utc_now

logger = structlog.get_logger()


def new_session_id() -> str:
    return str(uuid.uuid4())


def create_progress(
    engine: Engine, session_id: str, date_from: str | None = None, date_to: str | None = None
) -> None:
    now = utc_now()
    with engine.begin() as conn:
        conn.execute(
            insert(sync_progress).values(
                session_id=session_id,
                status="running",
                total_invoices=0,
                synced_invoices=0,
                date_from=date_from,
                date_to=date_to,
                started_at=now,
                updated_at=now,
            )
        )
    logger.info("Sync session started", session_id=session_id)


def update_progress(engine: Engine, session_id: str, **fields: Any) -> None:
    """Update counters / current_invoice_id for a running session."""
    allowed = {"total_invoices", "synced_invoices", "current_invoice_id"}
    values = {k: v for k, v in fields.items() if k in allowed}
    values["updated_at"] = utc_now()
    with engine.begin() as conn:
        conn.execute(
            update(sync_progress).where(sync_progress.c.session_id == session_id).values(**values)
        )


def complete_progress(engine: Engine, session_id: str) -> None:
    now = utc_now()
    with engine.begin() as conn:
        conn.execute(
            update(sync_progress)
            .where(sync_progress.c.session_id == session_id)
            .values(status="completed", current_invoice_id=None, updated_at=now, completed_at=now)
        )
    logger.info("Sync session completed", session_id=session_id)


def fail_progress(engine: Engine, session_id: str, error_message: str) -> None:
    now = utc_now()
    with engine.begin() as conn:
        conn.execute(
            update(sync_progress)
            .where(sync_progress.c.session_id == session_id)
            .values(status="error", error_message=error_message, updated_at=now, completed_at=now)
        )
    logger.error("Sync session failed", session_id=session_id, error=error_message)


def get_progress(engine: Engine, session_id: str) -> dict[str, Any] | None:
    with engine.connect() as conn:
        row = (
            conn.execute(select(sync_progress).where(sync_progress.c.session_id == session_id))
            .mappings()
            .first()
        )
    return dict(row) if row else None
