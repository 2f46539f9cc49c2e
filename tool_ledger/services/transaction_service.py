from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterator

from sqlalchemy.orm import Session

from models.ledger_models import DamageRecord, Tool, ToolAssignment
from services import activity_service, idempotency_service
from services.assignment_service import (
    apply_return,
    create_assignment,
    get_active_assignment,
    get_assignment,
)
from services.catalog_service import (
    MAX_UNITS,
    adjust_total_quantity,
    get_tool,
    normalize_condition,
    require_existing_tool,
)
from services.damage_service import create_damage_records, resolve_for_tool, resolve_record
from services.ledger_errors import (
    InsufficientStock,
    InvalidQuantity,
    InvariantViolation,
    LedgerError,
    LedgerValidationError,
    NotFound,
)
from services.stats_service import ToolCounts, compute_tool_counts
from services.tool_locks import tool_lock
from services.write_guard import guarded_write


TX_LOGGER = logging.getLogger("tool_ledger.transactions")
DEFAULT_ACTOR = "Unknown"


@dataclass
class StockResult:
    tool: Tool
    counts: ToolCounts
    damage_records: list[DamageRecord] = field(default_factory=list)


@dataclass
class BatchOutcome:
    tool_id: int
    quantity: int
    success: bool
    assignment: ToolAssignment | None = None
    error: LedgerError | None = None

    def as_dict(self, serialize_assignment) -> dict[str, Any]:
        payload: dict[str, Any] = {"toolID": self.tool_id, "quantity": self.quantity, "success": self.success}
        if self.assignment is not None:
            payload["assignment"] = serialize_assignment(self.assignment)
        if self.error is not None:
            payload["error"] = self.error.code
            payload["message"] = self.error.message
        return payload


def _require_quantity(raw: Any, label: str) -> int:
    if isinstance(raw, bool):
        raise InvalidQuantity(f"{label} quantity must be a whole number.", quantity=raw)
    try:
        quantity = int(raw)
    except (TypeError, ValueError) as exc:
        raise InvalidQuantity(f"{label} quantity must be a whole number.", quantity=raw) from exc
    if quantity != raw and not isinstance(raw, str):
        raise InvalidQuantity(f"{label} quantity must be a whole number.", quantity=raw)
    if quantity < 1:
        raise InvalidQuantity(f"{label} quantity must be at least 1.", quantity=quantity)
    if quantity > MAX_UNITS:
        raise InvalidQuantity(f"{label} quantity cannot exceed {MAX_UNITS}.", quantity=quantity)
    return quantity


def _require_id(raw: Any, label: str) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise LedgerValidationError(f"{label} is required.") from exc
    if value < 1:
        raise LedgerValidationError(f"{label} is invalid.", **{label: value})
    return value


def _actor(raw: str | None) -> str:
    value = (raw or "").strip()
    return value or DEFAULT_ACTOR


def _check_conservation(db: Session, tool: Tool, operation: str) -> ToolCounts:
    counts = compute_tool_counts(db, tool)
    if counts.total < 0 or counts.in_use < 0 or counts.damaged < 0 or counts.available < 0:
        TX_LOGGER.error(
            "Conservation violated op=%s tool_id=%s total=%s in_use=%s damaged=%s available=%s",
            operation,
            tool.ToolID,
            counts.total,
            counts.in_use,
            counts.damaged,
            counts.available,
        )
        raise InvariantViolation(
            f"Ledger invariant violated for tool {tool.ToolID} during {operation}.",
            toolID=tool.ToolID,
        )
    return counts


def _seal(db: Session, tool: Tool, operation: str) -> ToolCounts:
    # Every committed transaction bumps the tool row version.
    tool.UpdatedDate = datetime.now()
    db.flush()
    return _check_conservation(db, tool, operation)


@contextmanager
def _tool_transaction(db: Session, tool_id: int, operation: str) -> Iterator[None]:
    with tool_lock(tool_id), guarded_write(db, operation, tool_id):
        yield


def assign(
    db: Session,
    tool_id: int,
    ticket_id: int,
    quantity: int,
    assigned_by: str | None = None,
    ticket_number: str | None = None,
    idempotency_key: str | None = None,
) -> ToolAssignment:
    """Check ``quantity`` units of a tool out against a ticket.

    The ticket's work state is the caller's concern; availability is checked
    here under the tool lock.
    """
    tool_id = _require_id(tool_id, "toolID")
    ticket_id = _require_id(ticket_id, "ticketID")
    quantity = _require_quantity(quantity, "Assign")
    actor = _actor(assigned_by)
    request = {"toolID": tool_id, "ticketID": ticket_id, "quantity": quantity}
    require_existing_tool(db, tool_id)

    with _tool_transaction(db, tool_id, "assign"):
        replay = idempotency_service.find_replay(db, "assign", idempotency_key, request)
        if replay:
            assignment = get_assignment(db, replay.EntityID)
            if not assignment:
                raise NotFound(f"Assignment {replay.EntityID} for this idempotency key no longer exists.")
            TX_LOGGER.info("Assign replayed key=%s assignment_id=%s", idempotency_key, assignment.AssignmentID)
            return assignment

        tool = get_tool(db, tool_id)
        counts = compute_tool_counts(db, tool)
        if counts.available < quantity:
            raise InsufficientStock(tool_id, counts.available, quantity)

        assignment = create_assignment(db, tool_id, ticket_id, ticket_number, quantity, actor)
        db.flush()
        idempotency_service.remember(db, "assign", idempotency_key, request, "ToolAssignment", [assignment.AssignmentID])
        after = _seal(db, tool, "assign")

    TX_LOGGER.info(
        "Assign committed tool_id=%s ticket_id=%s quantity=%s assignment_id=%s available=%s",
        tool_id,
        ticket_id,
        quantity,
        assignment.AssignmentID,
        after.available,
    )
    activity_service.record(
        db,
        "assign",
        f"{quantity} x {tool.ToolName} assigned to ticket {ticket_number or ticket_id} by {actor}",
        actor=actor,
        tool_id=tool_id,
        ticket_id=ticket_id,
    )
    return assignment


def assign_many(
    db: Session,
    ticket_id: int,
    items: list[dict[str, Any]],
    assigned_by: str | None = None,
    ticket_number: str | None = None,
) -> list[BatchOutcome]:
    """Assign several tools to one ticket as independent transactions.

    A failing item never undoes the items before it; every item reports its
    own outcome.
    """
    outcomes: list[BatchOutcome] = []
    for item in items:
        tool_id = item.get("toolID")
        quantity = item.get("quantity")
        try:
            assignment = assign(
                db,
                tool_id,
                ticket_id,
                quantity,
                assigned_by=assigned_by,
                ticket_number=ticket_number,
                idempotency_key=item.get("idempotencyKey"),
            )
        except LedgerError as exc:
            outcomes.append(BatchOutcome(tool_id=tool_id, quantity=quantity, success=False, error=exc))
            continue
        outcomes.append(BatchOutcome(tool_id=tool_id, quantity=quantity, success=True, assignment=assignment))
    succeeded = sum(1 for outcome in outcomes if outcome.success)
    TX_LOGGER.info("Batch assign ticket_id=%s succeeded=%s failed=%s", ticket_id, succeeded, len(outcomes) - succeeded)
    return outcomes


def return_assignment(
    db: Session,
    assignment_id: int,
    quantity: int | None = None,
    returned_by: str | None = None,
    tool_id: int | None = None,
    idempotency_key: str | None = None,
) -> ToolAssignment:
    assignment_id = _require_id(assignment_id, "assignmentId")
    if quantity is not None:
        quantity = _require_quantity(quantity, "Return")
    actor = _actor(returned_by)

    existing = get_assignment(db, assignment_id)
    if not existing:
        raise NotFound(f"Assignment {assignment_id} not found or already returned.", assignmentId=assignment_id)
    if tool_id is not None and int(tool_id) != existing.ToolID:
        raise NotFound(
            f"Assignment {assignment_id} does not belong to tool {tool_id}.",
            assignmentId=assignment_id,
            toolID=int(tool_id),
        )
    locked_tool_id = existing.ToolID
    request = {"assignmentId": assignment_id, "quantity": quantity}
    # Start the locked read on a fresh transaction.
    db.rollback()

    with _tool_transaction(db, locked_tool_id, "return"):
        replay = idempotency_service.find_replay(db, "return", idempotency_key, request)
        if replay:
            TX_LOGGER.info("Return replayed key=%s assignment_id=%s", idempotency_key, assignment_id)
            return get_assignment(db, assignment_id)

        tool = get_tool(db, locked_tool_id)
        assignment = get_active_assignment(db, assignment_id)
        returned = int(assignment.AssignedQuantity) if quantity is None else quantity
        left = apply_return(assignment, returned, actor)
        idempotency_service.remember(db, "return", idempotency_key, request, "ToolAssignment", [assignment_id])
        after = _seal(db, tool, "return")

    TX_LOGGER.info(
        "Return committed assignment_id=%s tool_id=%s quantity=%s remaining=%s available=%s",
        assignment_id,
        locked_tool_id,
        returned,
        left,
        after.available,
    )
    activity_service.record(
        db,
        "return",
        f"{returned} x {tool.ToolName} returned from ticket {assignment.TicketNumber or assignment.TicketID} by {actor}",
        actor=actor,
        tool_id=locked_tool_id,
        ticket_id=assignment.TicketID,
    )
    return assignment


def report_damage(
    db: Session,
    tool_id: int,
    reported_by: str | None = None,
    notes: str | None = None,
    quantity: int = 1,
    idempotency_key: str | None = None,
) -> list[DamageRecord]:
    """Mark available units damaged, one record per unit.

    Units out on assignment must be returned before they can be reported.
    """
    tool_id = _require_id(tool_id, "toolID")
    quantity = _require_quantity(quantity, "Damage")
    actor = _actor(reported_by)
    request = {"toolID": tool_id, "quantity": quantity, "notes": notes}
    require_existing_tool(db, tool_id)

    with _tool_transaction(db, tool_id, "damage"):
        replay = idempotency_service.find_replay(db, "damage", idempotency_key, request)
        if replay:
            ids = idempotency_service.replay_entity_ids(replay)
            return [record for record in (db.get(DamageRecord, item) for item in ids) if record]

        tool = get_tool(db, tool_id)
        counts = compute_tool_counts(db, tool)
        if counts.available < quantity:
            raise InsufficientStock(
                tool_id,
                counts.available,
                quantity,
                message=f"Only {counts.available} available unit(s) of {tool.ToolName} can be reported damaged.",
            )
        records = create_damage_records(db, tool_id, actor, notes, quantity)
        db.flush()
        idempotency_service.remember(db, "damage", idempotency_key, request, "DamageRecord", [record.DamageID for record in records])
        after = _seal(db, tool, "damage")

    TX_LOGGER.info("Damage committed tool_id=%s quantity=%s damaged=%s available=%s", tool_id, quantity, after.damaged, after.available)
    activity_service.record(
        db,
        "damage",
        f"{quantity} x {tool.ToolName} reported damaged by {actor}: {notes or 'No details'}",
        actor=actor,
        tool_id=tool_id,
    )
    return records


def resolve_damage(
    db: Session,
    tool_id: int | None = None,
    quantity: int | None = None,
    damage_id: int | None = None,
    condition: str | None = None,
    notes: str | None = None,
    resolved_by: str | None = None,
    idempotency_key: str | None = None,
) -> StockResult:
    """Check repaired units back in by resolving their damage records.

    Either one record by ``damage_id`` or the oldest ``quantity`` records of
    ``tool_id`` are resolved.
    """
    actor = _actor(resolved_by)
    new_condition = normalize_condition(condition) if condition else None
    if damage_id is not None:
        damage_id = _require_id(damage_id, "damageId")
        record = db.get(DamageRecord, damage_id)
        if not record:
            raise NotFound(f"Damage record {damage_id} not found or already resolved.", damageId=damage_id)
        if tool_id is not None and int(tool_id) != record.ToolID:
            raise NotFound(f"Damage record {damage_id} does not belong to tool {tool_id}.", damageId=damage_id)
        tool_id = record.ToolID
        quantity = 1
        db.rollback()
    else:
        tool_id = _require_id(tool_id, "toolID")
        quantity = _require_quantity(quantity, "Check-in")
        require_existing_tool(db, tool_id)
    request = {"toolID": tool_id, "quantity": quantity, "damageId": damage_id, "condition": new_condition}

    with _tool_transaction(db, tool_id, "check-in"):
        tool = get_tool(db, tool_id)
        replay = idempotency_service.find_replay(db, "check-in", idempotency_key, request)
        if replay:
            ids = idempotency_service.replay_entity_ids(replay)
            records = [record for record in (db.get(DamageRecord, item) for item in ids) if record]
            return StockResult(tool=tool, counts=compute_tool_counts(db, tool), damage_records=records)

        if damage_id is not None:
            records = [resolve_record(db, damage_id, actor, notes)]
        else:
            records = resolve_for_tool(db, tool_id, quantity, actor, notes)
        if new_condition:
            tool.Condition = new_condition
        idempotency_service.remember(db, "check-in", idempotency_key, request, "DamageRecord", [record.DamageID for record in records])
        after = _seal(db, tool, "check-in")

    TX_LOGGER.info("Check-in committed tool_id=%s quantity=%s damaged=%s available=%s", tool_id, quantity, after.damaged, after.available)
    activity_service.record(
        db,
        "check-in",
        f"{quantity} x {tool.ToolName} checked in after repair by {actor}",
        actor=actor,
        tool_id=tool_id,
    )
    return StockResult(tool=tool, counts=after, damage_records=records)


def receive_stock(
    db: Session,
    tool_id: int,
    quantity: int,
    received_by: str | None = None,
    condition: str | None = None,
    notes: str | None = None,
    idempotency_key: str | None = None,
) -> StockResult:
    tool_id = _require_id(tool_id, "toolID")
    quantity = _require_quantity(quantity, "Received")
    actor = _actor(received_by)
    new_condition = normalize_condition(condition) if condition else None
    request = {"toolID": tool_id, "quantity": quantity, "condition": new_condition}
    require_existing_tool(db, tool_id)

    with _tool_transaction(db, tool_id, "receive"):
        tool = get_tool(db, tool_id)
        replay = idempotency_service.find_replay(db, "receive", idempotency_key, request)
        if replay:
            return StockResult(tool=tool, counts=compute_tool_counts(db, tool))

        adjust_total_quantity(db, tool, quantity)
        if new_condition:
            tool.Condition = new_condition
        if notes:
            tool.Notes = (tool.Notes + "\n" if tool.Notes else "") + f"[Stock received] {notes} - {date.today().isoformat()}"
        idempotency_service.remember(db, "receive", idempotency_key, request, "Tool", [tool_id])
        after = _seal(db, tool, "receive")

    TX_LOGGER.info("Stock received tool_id=%s quantity=%s total=%s available=%s", tool_id, quantity, after.total, after.available)
    activity_service.record(
        db,
        "receive",
        f"Stock received: +{quantity} x {tool.ToolName} by {actor}",
        actor=actor,
        tool_id=tool_id,
    )
    return StockResult(tool=tool, counts=after)


def write_off(
    db: Session,
    tool_id: int,
    quantity: int,
    written_off_by: str | None = None,
    notes: str | None = None,
    idempotency_key: str | None = None,
) -> StockResult:
    tool_id = _require_id(tool_id, "toolID")
    quantity = _require_quantity(quantity, "Write-off")
    actor = _actor(written_off_by)
    request = {"toolID": tool_id, "quantity": quantity}
    require_existing_tool(db, tool_id)

    with _tool_transaction(db, tool_id, "write-off"):
        tool = get_tool(db, tool_id)
        replay = idempotency_service.find_replay(db, "write-off", idempotency_key, request)
        if replay:
            return StockResult(tool=tool, counts=compute_tool_counts(db, tool))

        counts = compute_tool_counts(db, tool)
        if counts.available < quantity:
            raise InsufficientStock(tool_id, counts.available, quantity)
        adjust_total_quantity(db, tool, -quantity)
        if notes:
            tool.Notes = (tool.Notes + "\n" if tool.Notes else "") + f"[Write-off] {notes} - {date.today().isoformat()}"
        idempotency_service.remember(db, "write-off", idempotency_key, request, "Tool", [tool_id])
        after = _seal(db, tool, "write-off")

    TX_LOGGER.info("Write-off committed tool_id=%s quantity=%s total=%s", tool_id, quantity, after.total)
    activity_service.record(
        db,
        "write-off",
        f"{quantity} x {tool.ToolName} written off by {actor}",
        actor=actor,
        tool_id=tool_id,
    )
    return StockResult(tool=tool, counts=after)

