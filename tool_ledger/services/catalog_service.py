from __future__ import annotations

import logging
import threading
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from models.ledger_models import DamageRecord, Tool, ToolAssignment
from services.assignment_service import STATUS_RETURNED
from services.ledger_errors import Conflict, InvalidQuantity, InvariantViolation, LedgerValidationError, NotFound
from services.stats_service import ToolCounts, compute_tool_counts
from services.tool_locks import forget_tool_lock, tool_lock
from services.write_guard import guarded_write


CATALOG_LOGGER = logging.getLogger("tool_ledger.catalog")

VALID_CATEGORIES = [
    "Power Tools",
    "Hand Tools",
    "Measuring Instruments",
    "Safety Equipment",
    "Diagnostic Tools",
    "Pneumatic Tools",
    "Welding Equipment",
    "General",
]
VALID_CONDITIONS = ["New", "Good", "Fair", "Poor", "Damaged"]
DEFAULT_CATEGORY = "General"
DEFAULT_CONDITION = "Good"
TOOL_CODE_PREFIX = "TOL"

TOOL_FIELD_MAP = {
    "toolName": "ToolName",
    "brand": "Brand",
    "category": "Category",
    "condition": "Condition",
    "minStock": "MinStock",
    "supplier": "Supplier",
    "cost": "Cost",
    "purchaseDate": "PurchaseDate",
    "warranty": "Warranty",
    "notes": "Notes",
    "imagePath": "ImagePath",
}
QUANTITY_FIELDS = {"quantity", "totalQuantity"}
MAX_UNITS = 1_000_000

_INTAKE_LOCK = threading.Lock()


def _parse_seq(tool_code: str) -> Optional[int]:
    raw = tool_code[len(TOOL_CODE_PREFIX):]
    if not raw.isdigit():
        return None
    return int(raw)


def generate_next_tool_code(db: Session) -> str:
    existing = db.execute(
        select(Tool.ToolCode).where(Tool.ToolCode.startswith(TOOL_CODE_PREFIX))
    ).scalars().all()

    max_seq = 0
    for code in existing:
        if not code:
            continue
        seq = _parse_seq(code)
        if seq and seq > max_seq:
            max_seq = seq
    return f"{TOOL_CODE_PREFIX}{max_seq + 1:06d}"


def normalize_category(raw: str | None) -> str:
    value = (raw or "").strip()
    return value if value in VALID_CATEGORIES else DEFAULT_CATEGORY


def normalize_condition(raw: str | None, default: str = DEFAULT_CONDITION) -> str:
    value = (raw or "").strip()
    if not value:
        return default
    for condition in VALID_CONDITIONS:
        if condition.lower() == value.lower():
            return condition
    raise LedgerValidationError(
        f"Invalid condition '{value}'. Expected one of: {', '.join(VALID_CONDITIONS)}.",
        condition=value,
    )


def _validate_min_stock(value: Any) -> int:
    try:
        min_stock = int(value or 0)
    except (TypeError, ValueError) as exc:
        raise LedgerValidationError("Invalid minimum stock level.") from exc
    if min_stock < 0 or min_stock > MAX_UNITS:
        raise LedgerValidationError("Invalid minimum stock level.", minStock=min_stock)
    return min_stock


def _validate_cost(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        cost = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise LedgerValidationError("Invalid cost value.") from exc
    if cost < 0:
        raise LedgerValidationError("Invalid cost value.", cost=str(cost))
    return cost


def _clean_field(column: str, value: Any) -> Any:
    if column == "ToolName":
        name = (value or "").strip()
        if not name:
            raise LedgerValidationError("Tool name is required.")
        return name
    if column == "Category":
        return normalize_category(value)
    if column == "Condition":
        return normalize_condition(value)
    if column == "MinStock":
        return _validate_min_stock(value)
    if column == "Cost":
        return _validate_cost(value)
    return value


def create_tool(db: Session, fields: dict[str, Any]) -> Tool:
    if not (fields.get("toolName") or "").strip():
        raise LedgerValidationError("Tool name is required.")
    try:
        quantity = int(fields.get("quantity") or 0)
    except (TypeError, ValueError) as exc:
        raise InvalidQuantity("A valid quantity is required.") from exc
    if quantity < 1:
        raise InvalidQuantity("Tool quantity must be at least 1.", quantity=quantity)
    if quantity > MAX_UNITS:
        raise InvalidQuantity(f"Tool quantity cannot exceed {MAX_UNITS}.", quantity=quantity)

    tool = Tool(
        TotalQuantity=quantity,
        Category=DEFAULT_CATEGORY,
        Condition=DEFAULT_CONDITION,
        MinStock=0,
    )
    for field, value in fields.items():
        column = TOOL_FIELD_MAP.get(field)
        if not column:
            continue
        setattr(tool, column, _clean_field(column, value))

    with _INTAKE_LOCK, guarded_write(db, "create"):
        tool.ToolCode = generate_next_tool_code(db)
        tool.CreatedDate = datetime.now()
        tool.UpdatedDate = datetime.now()
        db.add(tool)
    db.refresh(tool)
    CATALOG_LOGGER.info("Tool created tool_id=%s code=%s quantity=%s", tool.ToolID, tool.ToolCode, tool.TotalQuantity)
    return tool


def get_tool(db: Session, tool_id: int) -> Tool:
    tool = db.get(Tool, tool_id, populate_existing=True)
    if not tool:
        raise NotFound(f"Tool {tool_id} not found.", toolID=tool_id)
    return tool


def require_existing_tool(db: Session, tool_id: int) -> None:
    """Reject unknown tool ids before a tool lock is taken.

    Ends the read transaction so the locked read starts fresh.
    """
    exists = db.execute(select(Tool.ToolID).where(Tool.ToolID == tool_id)).first()
    db.rollback()
    if not exists:
        raise NotFound(f"Tool {tool_id} not found.", toolID=tool_id)


def list_tools(db: Session) -> list[Tool]:
    return list(db.execute(select(Tool).order_by(Tool.ToolName, Tool.ToolID)).scalars().all())


def adjust_total_quantity(db: Session, tool: Tool, delta: int) -> ToolCounts:
    """Move ``TotalQuantity`` by ``delta`` inside the caller's transaction.

    The caller holds the tool lock and commits. The new total may not go
    negative, nor below the units currently assigned or damaged.
    """
    counts = compute_tool_counts(db, tool)
    new_total = counts.total + int(delta)
    if new_total < 0:
        raise InvariantViolation(
            f"Total quantity of tool {tool.ToolID} cannot become negative ({new_total}).",
            toolID=tool.ToolID,
            total=counts.total,
            delta=int(delta),
        )
    if new_total < counts.committed:
        raise InvariantViolation(
            f"Total quantity of tool {tool.ToolID} cannot drop below {counts.committed} assigned or damaged unit(s).",
            toolID=tool.ToolID,
            total=counts.total,
            delta=int(delta),
            committed=counts.committed,
        )
    tool.TotalQuantity = new_total
    tool.UpdatedDate = datetime.now()
    return compute_tool_counts(db, tool)


def update_metadata(db: Session, tool_id: int, fields: dict[str, Any]) -> Tool:
    blocked = QUANTITY_FIELDS.intersection(fields)
    if blocked:
        raise LedgerValidationError(
            "Quantities cannot be edited directly; use receive-stock or write-off.",
            fields=sorted(blocked),
        )
    require_existing_tool(db, tool_id)
    with tool_lock(tool_id), guarded_write(db, "update", tool_id):
        tool = get_tool(db, tool_id)
        for field, value in fields.items():
            column = TOOL_FIELD_MAP.get(field)
            if not column:
                continue
            setattr(tool, column, _clean_field(column, value))
        tool.UpdatedDate = datetime.now()
    db.refresh(tool)
    return tool


def delete_tool(db: Session, tool_id: int) -> str:
    require_existing_tool(db, tool_id)
    with tool_lock(tool_id), guarded_write(db, "delete", tool_id):
        tool = get_tool(db, tool_id)
        counts = compute_tool_counts(db, tool)
        if counts.in_use or counts.damaged:
            raise Conflict(
                f"Tool {tool.ToolName} has {counts.in_use} unit(s) assigned and {counts.damaged} damaged; it cannot be deleted.",
                toolID=tool_id,
                inUse=counts.in_use,
                damaged=counts.damaged,
            )
        tool_name = tool.ToolName
        db.execute(
            delete(ToolAssignment)
            .where(ToolAssignment.ToolID == tool_id)
            .where(ToolAssignment.Status == STATUS_RETURNED)
        )
        db.execute(delete(DamageRecord).where(DamageRecord.ToolID == tool_id))
        db.delete(tool)
    forget_tool_lock(tool_id)
    CATALOG_LOGGER.info("Tool deleted tool_id=%s name=%s", tool_id, tool_name)
    return tool_name


def serialize_tool(tool: Tool, counts: ToolCounts | None = None) -> dict:
    payload = {
        "toolID": tool.ToolID,
        "toolCode": tool.ToolCode,
        "toolName": tool.ToolName,
        "brand": tool.Brand,
        "category": tool.Category,
        "totalQuantity": tool.TotalQuantity,
        "condition": tool.Condition,
        "minStock": tool.MinStock,
        "supplier": tool.Supplier,
        "cost": float(tool.Cost) if tool.Cost is not None else None,
        "purchaseDate": tool.PurchaseDate,
        "warranty": tool.Warranty,
        "notes": tool.Notes,
        "imagePath": tool.ImagePath,
        "createdDate": tool.CreatedDate,
        "updatedDate": tool.UpdatedDate,
    }
    if counts is not None:
        payload["stats"] = counts.as_dict()
        payload["status"] = counts.status
    return payload
