from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.ledger_models import ServiceTicket
from services.ledger_errors import Conflict, NotFound


ACTIVE_WORK_STATES = ("open", "pending", "assigned", "in-progress", "active")


def _normalize_status(raw: str | None) -> str:
    return (raw or "").strip().lower().replace("_", "-").replace(" ", "-")


def get_ticket(db: Session, ticket_id: int) -> ServiceTicket:
    ticket = db.get(ServiceTicket, ticket_id)
    if not ticket:
        raise NotFound(f"Service ticket {ticket_id} not found.", ticketID=ticket_id)
    return ticket


def require_assignable_ticket(db: Session, ticket_id: int) -> ServiceTicket:
    ticket = get_ticket(db, ticket_id)
    status = _normalize_status(ticket.Status)
    if status not in ACTIVE_WORK_STATES:
        raise Conflict(
            f"Service ticket {ticket.TicketNumber} is '{ticket.Status}' and cannot receive tools.",
            ticketID=ticket_id,
            ticketStatus=ticket.Status,
        )
    return ticket


def list_assignable_tickets(db: Session) -> list[ServiceTicket]:
    tickets = db.execute(
        select(ServiceTicket).order_by(ServiceTicket.CreatedAt.desc(), ServiceTicket.TicketID.desc())
    ).scalars().all()
    return [ticket for ticket in tickets if _normalize_status(ticket.Status) in ACTIVE_WORK_STATES]


def serialize_ticket(ticket: ServiceTicket) -> dict:
    return {
        "id": ticket.TicketID,
        "ticketNumber": ticket.TicketNumber,
        "customerName": ticket.CustomerName,
        "licensePlate": ticket.LicensePlate,
        "title": ticket.Title,
        "technician": ticket.Technician,
        "status": ticket.Status,
        "createdAt": ticket.CreatedAt,
    }
