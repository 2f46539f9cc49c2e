from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from models.ledger_models import DamageRecord
from services.ledger_errors import InvalidQuantity, NotFound


def unresolved_damage_count(db: Session, tool_id: int) -> int:
    count = db.execute(
        select(func.count(DamageRecord.DamageID))
        .where(DamageRecord.ToolID == tool_id)
        .where(DamageRecord.Resolved == False)
    ).scalar()
    return int(count or 0)


def unresolved_damage_by_tool(db: Session) -> dict[int, int]:
    rows = db.execute(
        select(DamageRecord.ToolID, func.count(DamageRecord.DamageID))
        .where(DamageRecord.Resolved == False)
        .group_by(DamageRecord.ToolID)
    ).all()
    return {int(tool_id): int(count or 0) for tool_id, count in rows}


def create_damage_records(db: Session, tool_id: int, reported_by: str, notes: str | None, quantity: int) -> list[DamageRecord]:
    reported_at = datetime.now()
    records = [
        DamageRecord(
            ToolID=tool_id,
            ReportedBy=reported_by,
            Notes=notes,
            ReportedAt=reported_at,
            Resolved=False,
        )
        for _ in range(quantity)
    ]
    db.add_all(records)
    return records


def _mark_resolved(record: DamageRecord, resolved_by: str, notes: str | None) -> None:
    record.Resolved = True
    record.ResolvedAt = datetime.now()
    record.ResolvedBy = resolved_by
    record.ResolutionNotes = notes


def resolve_record(db: Session, damage_id: int, resolved_by: str, notes: str | None) -> DamageRecord:
    record = db.get(DamageRecord, damage_id, populate_existing=True)
    if not record or record.Resolved:
        raise NotFound(f"Damage record {damage_id} not found or already resolved.", damageId=damage_id)
    _mark_resolved(record, resolved_by, notes)
    return record


def resolve_for_tool(db: Session, tool_id: int, quantity: int, resolved_by: str, notes: str | None) -> list[DamageRecord]:
    if quantity < 1:
        raise InvalidQuantity("Check-in quantity must be at least 1.", quantity=quantity)
    open_records = db.execute(
        select(DamageRecord)
        .where(DamageRecord.ToolID == tool_id)
        .where(DamageRecord.Resolved == False)
        .order_by(DamageRecord.ReportedAt, DamageRecord.DamageID)
    ).scalars().all()
    if quantity > len(open_records):
        raise InvalidQuantity(
            f"Cannot check in {quantity}; only {len(open_records)} damaged unit(s) recorded for tool {tool_id}.",
            toolID=tool_id,
            damaged=len(open_records),
            quantity=quantity,
        )
    resolved = list(open_records[:quantity])
    for record in resolved:
        _mark_resolved(record, resolved_by, notes)
    return resolved


def list_unresolved(db: Session, tool_id: int | None = None) -> list[DamageRecord]:
    stmt = (
        select(DamageRecord)
        .options(selectinload(DamageRecord.Tool))
        .where(DamageRecord.Resolved == False)
        .order_by(DamageRecord.ReportedAt.desc(), DamageRecord.DamageID.desc())
    )
    if tool_id is not None:
        stmt = stmt.where(DamageRecord.ToolID == tool_id)
    return list(db.execute(stmt).scalars().all())


def serialize_damage_record(record: DamageRecord) -> dict:
    return {
        "damageId": record.DamageID,
        "toolID": record.ToolID,
        "reportedBy": record.ReportedBy,
        "notes": record.Notes,
        "reportedAt": record.ReportedAt,
        "resolved": bool(record.Resolved),
        "resolvedAt": record.ResolvedAt,
        "resolvedBy": record.ResolvedBy,
        "resolutionNotes": record.ResolutionNotes,
        "tool": {
            "toolID": record.Tool.ToolID,
            "toolCode": record.Tool.ToolCode,
            "toolName": record.Tool.ToolName,
            "brand": record.Tool.Brand,
            "condition": record.Tool.Condition,
            "imagePath": record.Tool.ImagePath,
        } if record.Tool else None,
    }
