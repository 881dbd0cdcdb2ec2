"""
writerdesk/features/billing/alerts.py

User-facing billing notices, such as trial ending reminders.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy import select, insert

from writerdesk.core.database import get_db_session, user_alerts
from writerdesk.models.entitlement import ensure_utc, utc_now


logger = logging.getLogger(__name__)

TRIAL_WILL_END = "trial_will_end"


def enqueue_alert(
    user_id: str,
    kind: str,
    message: str,
    *,
    source_event_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> None:
    with get_db_session() as session:
        session.execute(
            insert(user_alerts).values(
                user_id=user_id,
                kind=kind,
                message=message,
                source_event_id=source_event_id,
                created_at=ensure_utc(now) or utc_now(),
            )
        )
    logger.info("[billing] alert queued", extra={"user_id": user_id, "kind": kind})


def list_alerts(user_id: str, unread_only: bool = True) -> List[Dict[str, Any]]:
    """Newest first."""
    query = select(user_alerts).where(user_alerts.c.user_id == user_id)
    if unread_only:
        query = query.where(user_alerts.c.read_at.is_(None))
    query = query.order_by(user_alerts.c.created_at.desc(), user_alerts.c.id.desc())
    with get_db_session() as session:
        rows = session.execute(query).fetchall()
    return [dict(row._mapping) for row in rows]
