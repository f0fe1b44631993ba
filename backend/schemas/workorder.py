# backend/schemas/workorder.py
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, ConfigDict

from schemas.common import Number

class WorkOrderCreate(BaseModel):
    code: Optional[str] = None
    status: Optional[str] = "draft"
    requested_by: Optional[str] = None

class WorkOrderStatusUpdate(BaseModel):
    status: Optional[str] = "draft"

class WorkOrderOut(BaseModel):
    id: int
    code: str
    status: str
    requested_by: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

class WorkOrderResponse(BaseModel):
    ok: bool = True
    data: WorkOrderOut

class WorkOrderList(BaseModel):
    ok: bool = True
    data: List[WorkOrderOut]

# A line can reference its batch by ids or by part/batch number
class LineCreate(BaseModel):
    part_number: Optional[str] = None
    batch_number: Optional[str] = None
    item_id: Optional[Number] = None
    batch_id: Optional[Number] = None
    qty: Optional[Number] = None
    note: Optional[str] = None

class LineCreated(BaseModel):
    line_id: int

class LineCreateResponse(BaseModel):
    ok: bool = True
    data: LineCreated

class LineOut(BaseModel):
    line_id: int
    qty_requested: int
    qty_issued: int
    note: Optional[str] = None
    item_id: int
    part_number: str
    batch_id: int
    batch_number: str
    onhand: int

class LineList(BaseModel):
    ok: bool = True
    data: List[LineOut]

# Quantity for issue/return on a line
class LineQty(BaseModel):
    qty: Optional[Number] = None
