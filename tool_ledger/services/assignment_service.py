from __future__ import annotations

from collections import OrderedDict
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from models.ledger_models import ToolAssignment
from services.ledger_errors import InvalidQuantity, NotFound


STATUS_ACTIVE = "Active"
STATUS_RETURNED = "Returned"


def active_assigned_quantity(db: Session, tool_id: int) -> int:
    total = db.execute(
        select(func.coalesce(func.sum(ToolAssignment.AssignedQuantity), 0))
        .where(ToolAssignment.ToolID == tool_id)
        .where(ToolAssignment.Status == STATUS_ACTIVE)
    ).scalar()
    return int(total or 0)


def active_assigned_by_tool(db: Session) -> dict[int, int]:
    rows = db.execute(
        select(ToolAssignment.ToolID, func.sum(ToolAssignment.AssignedQuantity))
        .where(ToolAssignment.Status == STATUS_ACTIVE)
        .group_by(ToolAssignment.ToolID)
    ).all()
    return {int(tool_id): int(quantity or 0) for tool_id, quantity in rows}


def create_assignment(
    db: Session,
    tool_id: int,
    ticket_id: int,
    ticket_number: str | None,
    quantity: int,
    assigned_by: str,
) -> ToolAssignment:
    assignment = ToolAssignment(
        ToolID=tool_id,
        TicketID=ticket_id,
        TicketNumber=ticket_number,
        AssignedQuantity=quantity,
        AssignedBy=assigned_by,
        AssignedAt=datetime.now(),
        Status=STATUS_ACTIVE,
    )
    db.add(assignment)
    return assignment


def get_assignment(db: Session, assignment_id: int) -> ToolAssignment | None:
    return db.get(ToolAssignment, assignment_id)


def get_active_assignment(db: Session, assignment_id: int) -> ToolAssignment:
    assignment = db.get(ToolAssignment, assignment_id, populate_existing=True)
    if not assignment or assignment.Status != STATUS_ACTIVE:
        raise NotFound(f"Assignment {assignment_id} not found or already returned.", assignmentId=assignment_id)
    return assignment


def apply_return(assignment: ToolAssignment, quantity: int, returned_by: str) -> int:
    """Take ``quantity`` units off an active assignment and return what is left.

    A partial return shrinks the row in place; the last unit flips it to Returned.
    """
    remaining = int(assignment.AssignedQuantity or 0)
    if quantity < 1:
        raise InvalidQuantity("Return quantity must be at least 1.", quantity=quantity)
    if quantity > remaining:
        raise InvalidQuantity(
            f"Cannot return {quantity}; only {remaining} assigned on assignment {assignment.AssignmentID}.",
            assignmentId=assignment.AssignmentID,
            remaining=remaining,
            quantity=quantity,
        )

    left = remaining - quantity
    if left == 0:
        # Returned rows keep the quantity of the final return.
        assignment.Status = STATUS_RETURNED
        assignment.ReturnedAt = datetime.now()
        assignment.ReturnedBy = returned_by
    else:
        assignment.AssignedQuantity = left
    return left


def list_active_assignments(db: Session, ticket_id: int | None = None) -> list[ToolAssignment]:
    stmt = (
        select(ToolAssignment)
        .options(selectinload(ToolAssignment.Tool))
        .where(ToolAssignment.Status == STATUS_ACTIVE)
        .order_by(ToolAssignment.AssignedAt.desc(), ToolAssignment.AssignmentID.desc())
    )
    if ticket_id is not None:
        stmt = stmt.where(ToolAssignment.TicketID == ticket_id)
    return list(db.execute(stmt).scalars().all())


def list_returned_by_ticket(db: Session) -> list[dict]:
    rows = db.execute(
        select(ToolAssignment)
        .options(selectinload(ToolAssignment.Tool), selectinload(ToolAssignment.Ticket))
        .where(ToolAssignment.Status == STATUS_RETURNED)
        .order_by(ToolAssignment.ReturnedAt.desc(), ToolAssignment.AssignmentID.desc())
    ).scalars().all()

    grouped: OrderedDict[int, dict] = OrderedDict()
    for assignment in rows:
        group = grouped.get(assignment.TicketID)
        if group is None:
            group = {
                "ticketID": assignment.TicketID,
                "ticketNumber": assignment.TicketNumber,
                "customerName": assignment.Ticket.CustomerName if assignment.Ticket else None,
                "lastReturnedAt": assignment.ReturnedAt,
                "assignments": [],
            }
            grouped[assignment.TicketID] = group
        group["assignments"].append(serialize_assignment(assignment))
    return list(grouped.values())


def count_returned(db: Session, since: datetime | None = None) -> int:
    stmt = select(func.count(ToolAssignment.AssignmentID)).where(ToolAssignment.Status == STATUS_RETURNED)
    if since is not None:
        stmt = stmt.where(ToolAssignment.ReturnedAt >= since)
    return int(db.execute(stmt).scalar() or 0)


def serialize_assignment(assignment: ToolAssignment) -> dict:
    return {
        "assignmentId": assignment.AssignmentID,
        "toolID": assignment.ToolID,
        "ticketID": assignment.TicketID,
        "ticketNumber": assignment.TicketNumber,
        "assignedQuantity": assignment.AssignedQuantity,
        "assignedBy": assignment.AssignedBy,
        "assignedAt": assignment.AssignedAt,
        "status": assignment.Status,
        "returnedAt": assignment.ReturnedAt,
        "returnedBy": assignment.ReturnedBy,
        "tool": {
            "toolID": assignment.Tool.ToolID,
            "toolCode": assignment.Tool.ToolCode,
            "toolName": assignment.Tool.ToolName,
            "brand": assignment.Tool.Brand,
            "category": assignment.Tool.Category,
        } if assignment.Tool else None,
    }
