from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models.ledger_models import ActivityEntry


ACTIVITY_LOGGER = logging.getLogger("tool_ledger.activity")

ACTIVITY_TYPES = {"assign", "return", "damage", "check-in", "receive", "write-off"}
DISPLAY_STATUS = {
    "assign": "info",
    "return": "success",
    "check-in": "warning",
    "receive": "warning",
    "damage": "error",
    "write-off": "error",
}


def record(
    db: Session,
    activity_type: str,
    message: str,
    actor: str | None = None,
    tool_id: int | None = None,
    ticket_id: int | None = None,
) -> ActivityEntry | None:
    """Append an activity entry in its own commit.

    Runs after the ledger transaction committed; a failure here is logged and
    rolled back so the caller's result stands.
    """
    if activity_type not in ACTIVITY_TYPES:
        ACTIVITY_LOGGER.warning("Unknown activity type=%s tool_id=%s", activity_type, tool_id)
    entry = ActivityEntry(
        Type=activity_type,
        ToolID=tool_id,
        TicketID=ticket_id,
        Message=message,
        Actor=actor,
        CreatedAt=datetime.now(),
    )
    try:
        db.add(entry)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        ACTIVITY_LOGGER.warning(
            "Activity write failed type=%s tool_id=%s ticket_id=%s error=%s",
            activity_type,
            tool_id,
            ticket_id,
            exc,
        )
        return None
    return entry


def recent_activity(db: Session, limit: int = 20) -> list[ActivityEntry]:
    limit = max(1, min(int(limit or 20), 500))
    return list(
        db.execute(
            select(ActivityEntry)
            .order_by(ActivityEntry.CreatedAt.desc(), ActivityEntry.ActivityID.desc())
            .limit(limit)
        ).scalars().all()
    )


def serialize_activity(entry: ActivityEntry) -> dict:
    return {
        "activityId": entry.ActivityID,
        "type": entry.Type,
        "toolID": entry.ToolID,
        "ticketID": entry.TicketID,
        "message": entry.Message,
        "user": entry.Actor,
        "time": entry.CreatedAt,
        "status": DISPLAY_STATUS.get(entry.Type, "info"),
    }
