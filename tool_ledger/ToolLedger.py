import logging
import os

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

load_dotenv()

from db.deps import get_ledger_db
from schemas.assignments import AssignRequest, BatchAssignRequest, CheckInRequest, DamageReportRequest, ReturnRequest
from schemas.tools import ReceiveStockRequest, ToolCreate, ToolMetadataUpdate, WriteOffRequest
from services import activity_service, stats_service, transaction_service
from services.assignment_service import list_active_assignments, list_returned_by_ticket, serialize_assignment
from services.catalog_service import (
    VALID_CATEGORIES,
    create_tool,
    delete_tool,
    get_tool,
    list_tools,
    serialize_tool,
    update_metadata,
)
from services.damage_service import list_unresolved, serialize_damage_record
from services.ledger_errors import LedgerError, LedgerValidationError
from services.ticket_service import list_assignable_tickets, require_assignable_ticket, serialize_ticket

app = FastAPI(title="Tool Inventory Ledger")


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:3000,http://localhost:3000",
)
_CORS_ALLOW_CREDENTIALS = str(os.environ.get("CORS_ALLOW_CREDENTIALS", "true")).strip().lower() in {"1", "true", "yes", "on"}
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials; force safe behavior.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"]
)

LEDGER_LOGGER = logging.getLogger("tool_ledger")
LEDGER_LOGGER.setLevel((os.environ.get("TOOL_LEDGER_LOG_LEVEL") or "INFO").strip().upper())
API_LOGGER = logging.getLogger("tool_ledger.api")


@app.exception_handler(LedgerError)
def ledger_error_handler(request: Request, exc: LedgerError):
    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_payload()), headers=headers)


@app.exception_handler(RequestValidationError)
def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        problems.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    API_LOGGER.warning("Request rejected path=%s problems=%s", request.url.path, problems)
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": "ValidationError",
            "message": "; ".join(problems) or "Invalid request.",
            "retryable": False,
        },
    )


def _ok(data, message: str | None = None) -> dict:
    payload = {"success": True, "data": data}
    if message:
        payload["message"] = message
    return payload


def _pick_key(body_key: str | None, header_key: str | None) -> str | None:
    key = (body_key or header_key or "").strip()
    return key or None


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_ledger_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.get("/api/tools/categories")
def get_categories():
    return _ok(VALID_CATEGORIES)


@app.get("/api/tools/stats")
def get_fleet_stats(db: Session = Depends(get_ledger_db)):
    return _ok(stats_service.fleet_stats(db))


@app.get("/api/tools/assigned")
def get_assigned_tools(
    ticket_id: int | None = Query(None, alias="ticketId"),
    db: Session = Depends(get_ledger_db),
):
    assignments = list_active_assignments(db, ticket_id=ticket_id)
    return _ok([serialize_assignment(item) for item in assignments])


@app.get("/api/tools/returned-tools")
def get_returned_tools(db: Session = Depends(get_ledger_db)):
    return _ok(list_returned_by_ticket(db))


@app.get("/api/tools/recent-activity")
def get_recent_activity(limit: int = Query(20, ge=1, le=500), db: Session = Depends(get_ledger_db)):
    entries = activity_service.recent_activity(db, limit)
    return _ok([activity_service.serialize_activity(entry) for entry in entries])


@app.get("/api/tools/reports/summary")
def get_summary_report(db: Session = Depends(get_ledger_db)):
    return _ok(stats_service.summary_report(db))


@app.get("/api/tools/reports/category-distribution")
def get_category_distribution(db: Session = Depends(get_ledger_db)):
    return _ok(stats_service.category_distribution(db))


@app.get("/api/tools/tickets/in-progress")
def get_assignable_tickets(db: Session = Depends(get_ledger_db)):
    return _ok([serialize_ticket(ticket) for ticket in list_assignable_tickets(db)])


@app.get("/api/damage-reports")
def get_damage_reports(
    tool_id: int | None = Query(None, alias="toolId"),
    db: Session = Depends(get_ledger_db),
):
    records = list_unresolved(db, tool_id=tool_id)
    return _ok([serialize_damage_record(record) for record in records])


@app.get("/api/tools")
def get_tools(db: Session = Depends(get_ledger_db)):
    tools = list_tools(db)
    counts = stats_service.all_tool_counts(db, tools)
    return _ok([serialize_tool(tool, counts[tool.ToolID]) for tool in tools])


@app.post("/api/tools", status_code=201)
def create_tool_endpoint(payload: ToolCreate, db: Session = Depends(get_ledger_db)):
    tool = create_tool(db, payload.model_dump(exclude_unset=True))
    counts = stats_service.compute_tool_counts(db, tool)
    return _ok(serialize_tool(tool, counts), message="Tool added successfully")


@app.post("/api/tools/assign")
def assign_tool(
    payload: AssignRequest,
    db: Session = Depends(get_ledger_db),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    ticket = require_assignable_ticket(db, payload.ticketID)
    assignment = transaction_service.assign(
        db,
        payload.toolID,
        payload.ticketID,
        payload.quantity,
        assigned_by=payload.assignedBy,
        ticket_number=ticket.TicketNumber,
        idempotency_key=_pick_key(payload.idempotencyKey, idempotency_key),
    )
    return _ok(serialize_assignment(assignment), message="Tool assigned successfully")


@app.post("/api/tools/assign-batch")
def assign_tools_batch(payload: BatchAssignRequest, db: Session = Depends(get_ledger_db)):
    if not payload.items:
        raise LedgerValidationError("No tools supplied.")
    ticket = require_assignable_ticket(db, payload.ticketID)
    outcomes = transaction_service.assign_many(
        db,
        payload.ticketID,
        [item.model_dump() for item in payload.items],
        assigned_by=payload.assignedBy,
        ticket_number=ticket.TicketNumber,
    )
    results = [outcome.as_dict(serialize_assignment) for outcome in outcomes]
    succeeded = sum(1 for outcome in outcomes if outcome.success)
    return {
        "success": succeeded == len(outcomes),
        "data": {
            "ticketID": payload.ticketID,
            "succeeded": succeeded,
            "failed": len(outcomes) - succeeded,
            "results": results,
        },
        "message": f"{succeeded} of {len(outcomes)} tool(s) assigned",
    }


@app.post("/api/tools/return")
def return_tool(
    payload: ReturnRequest,
    db: Session = Depends(get_ledger_db),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    assignment = transaction_service.return_assignment(
        db,
        payload.assignmentId,
        quantity=payload.quantity,
        returned_by=payload.returnedBy,
        tool_id=payload.toolID,
        idempotency_key=_pick_key(payload.idempotencyKey, idempotency_key),
    )
    return _ok(serialize_assignment(assignment), message="Tools returned successfully")


@app.post("/api/tools/damage")
def report_tool_damage(
    payload: DamageReportRequest,
    db: Session = Depends(get_ledger_db),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    records = transaction_service.report_damage(
        db,
        payload.toolID,
        reported_by=payload.reportedBy,
        notes=payload.notes,
        quantity=payload.quantity,
        idempotency_key=_pick_key(payload.idempotencyKey, idempotency_key),
    )
    serialized = [serialize_damage_record(record) for record in records]
    data = serialized[0] if len(serialized) == 1 else serialized
    return _ok(data, message="Tool marked as damaged successfully")


@app.post("/api/tools/check-in")
def check_in_tool(
    payload: CheckInRequest,
    db: Session = Depends(get_ledger_db),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    result = transaction_service.resolve_damage(
        db,
        tool_id=payload.toolID,
        quantity=payload.quantity if payload.damageId is None else None,
        damage_id=payload.damageId,
        condition=payload.condition,
        notes=payload.notes,
        resolved_by=payload.checkedInBy,
        idempotency_key=_pick_key(payload.idempotencyKey, idempotency_key),
    )
    data = serialize_tool(result.tool, result.counts)
    data["resolvedDamageIds"] = [record.DamageID for record in result.damage_records]
    return _ok(data, message="Tool checked in successfully")


@app.post("/api/tools/receive-stock")
def receive_tool_stock(
    payload: ReceiveStockRequest,
    db: Session = Depends(get_ledger_db),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    result = transaction_service.receive_stock(
        db,
        payload.toolID,
        payload.quantity,
        received_by=payload.receivedBy,
        condition=payload.condition,
        notes=payload.notes,
        idempotency_key=_pick_key(payload.idempotencyKey, idempotency_key),
    )
    return _ok(serialize_tool(result.tool, result.counts), message="Stock received successfully")


@app.post("/api/tools/write-off")
def write_off_tool(
    payload: WriteOffRequest,
    db: Session = Depends(get_ledger_db),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    result = transaction_service.write_off(
        db,
        payload.toolID,
        payload.quantity,
        written_off_by=payload.writtenOffBy,
        notes=payload.notes,
        idempotency_key=_pick_key(payload.idempotencyKey, idempotency_key),
    )
    return _ok(serialize_tool(result.tool, result.counts), message="Stock written off")


@app.get("/api/tools/{tool_id}")
def get_tool_item(tool_id: int, db: Session = Depends(get_ledger_db)):
    tool = get_tool(db, tool_id)
    return _ok(serialize_tool(tool, stats_service.compute_tool_counts(db, tool)))


@app.get("/api/tools/{tool_id}/stats")
def get_tool_stats(tool_id: int, db: Session = Depends(get_ledger_db)):
    tool = get_tool(db, tool_id)
    return _ok(stats_service.stats_for(db, tool))


@app.put("/api/tools/{tool_id}")
def update_tool(tool_id: int, payload: ToolMetadataUpdate, db: Session = Depends(get_ledger_db)):
    tool = update_metadata(db, tool_id, payload.model_dump(exclude_unset=True))
    return _ok(serialize_tool(tool, stats_service.compute_tool_counts(db, tool)), message="Tool updated successfully")


@app.delete("/api/tools/{tool_id}")
def delete_tool_endpoint(tool_id: int, db: Session = Depends(get_ledger_db)):
    tool_name = delete_tool(db, tool_id)
    return _ok({"toolID": tool_id}, message=f'Tool "{tool_name}" deleted successfully')
