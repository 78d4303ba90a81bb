"""App event recording.

Events carry ids, levels and counters only; message text, truth posts and
journal content never go into metadata.
"""
import logging
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone

from sqlalchemy import insert, select
from sqlalchemy.orm import Session

from ryvynn.core.database import app_events
from ryvynn.core.logging import _safe_truncate, current_request_id

logger = logging.getLogger("ryvynn")


def _safe_value(value: Any, limit: int = 200):
    if value is None or isinstance(value, (bool, int, float)):
        return value
    return _safe_truncate(value, limit)


def record_app_event(
    session: Session,
    event_type: str,
    user_id: Optional[str],
    metadata: Optional[Dict[str, Any]] = None,
) -> None:
    """Append an app event inside the caller's transaction."""
    safe_metadata = {k: _safe_value(v) for k, v in (metadata or {}).items()}
    rid = current_request_id()
    if rid:
        safe_metadata["request_id"] = rid

    session.execute(
        insert(app_events).values(
            user_id=user_id,
            event_type=event_type,
            metadata=safe_metadata,
            created_at=datetime.now(timezone.utc),
        )
    )
    logger.debug("[audit] app event", extra={"event_type": event_type, "user_id": user_id})


def list_app_events(session: Session, user_id: Optional[str] = None, event_type: Optional[str] = None) -> List[Dict[str, Any]]:
    query = select(app_events).order_by(app_events.c.id)
    if user_id is not None:
        query = query.where(app_events.c.user_id == user_id)
    if event_type is not None:
        query = query.where(app_events.c.event_type == event_type)
    return [
        {
            "user_id": row.user_id,
            "event_type": row.event_type,
            "metadata": row._mapping["metadata"],
            "created_at": row.created_at,
        }
        for row in session.execute(query).all()
    ]
