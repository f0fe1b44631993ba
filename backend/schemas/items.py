# backend/schemas/items.py
from typing import Optional
from pydantic import BaseModel

from schemas.common import Number

# One row per item/batch pair (batch fields are empty for items without batches)
class ItemBatchRow(BaseModel):
    item_id: int
    part_number: str
    batch_id: Optional[int] = None
    batch_number: Optional[str] = None
    quantity: Optional[int] = None

# Intake payload: find-or-create the item and add quantity to the batch
class ItemIntake(BaseModel):
    part_number: Optional[str] = None
    batch_number: Optional[str] = None
    quantity: Optional[Number] = 0
    condition: Optional[str] = "NEW"
    location: Optional[str] = None
    site: Optional[str] = None
    bin: Optional[str] = None

class IntakeResult(BaseModel):
    item_id: int
    batch_id: int

class IntakeResponse(BaseModel):
    ok: bool = True
    data: IntakeResult

# Absolute quantity overwrite
class BatchQuantitySet(BaseModel):
    quantity: Optional[Number] = None

# Signed adjustment, logged as an ADJUST movement
class BatchAdjust(BaseModel):
    qty_change: Optional[Number] = None
    reason: Optional[str] = None
