from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class AssignRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    toolID: int
    ticketID: int
    quantity: int
    assignedBy: Optional[str] = None
    idempotencyKey: Optional[str] = None


class BatchAssignItemDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    toolID: int
    quantity: int = 1
    idempotencyKey: Optional[str] = None


class BatchAssignRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    ticketID: int
    assignedBy: Optional[str] = None
    items: List[BatchAssignItemDto] = []


class ReturnRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    assignmentId: int
    toolID: Optional[int] = None
    quantity: Optional[int] = None
    returnedBy: Optional[str] = None
    idempotencyKey: Optional[str] = None


class DamageReportRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    toolID: int
    reportedBy: Optional[str] = None
    notes: Optional[str] = None
    quantity: int = 1
    idempotencyKey: Optional[str] = None


class CheckInRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    toolID: Optional[int] = None
    damageId: Optional[int] = None
    quantity: Optional[int] = 1
    condition: Optional[str] = None
    notes: Optional[str] = None
    checkedInBy: Optional[str] = None
    idempotencyKey: Optional[str] = None
