from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict


class ToolCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    toolName: str
    quantity: int
    brand: Optional[str] = None
    category: Optional[str] = None
    condition: Optional[str] = None
    minStock: Optional[int] = 0
    supplier: Optional[str] = None
    cost: Optional[float] = None
    purchaseDate: Optional[date] = None
    warranty: Optional[str] = None
    notes: Optional[str] = None
    imagePath: Optional[str] = None


class ToolMetadataUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    toolName: Optional[str] = None
    brand: Optional[str] = None
    category: Optional[str] = None
    condition: Optional[str] = None
    minStock: Optional[int] = None
    supplier: Optional[str] = None
    cost: Optional[float] = None
    purchaseDate: Optional[date] = None
    warranty: Optional[str] = None
    notes: Optional[str] = None
    imagePath: Optional[str] = None


class ReceiveStockRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    toolID: int
    quantity: int
    condition: Optional[str] = None
    notes: Optional[str] = None
    receivedBy: Optional[str] = None
    idempotencyKey: Optional[str] = None


class WriteOffRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    toolID: int
    quantity: int
    notes: Optional[str] = None
    writtenOffBy: Optional[str] = None
    idempotencyKey: Optional[str] = None
