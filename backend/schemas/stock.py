# backend/schemas/stock.py
from pydantic import BaseModel
from datetime import datetime
from typing import List, Optional, Literal

# Allowed types for stock movements
StockMovementType = Literal["ADJUST", "ISSUE", "RETURN"]

# Schema for returning stock movement history rows
class StockMovementResponse(BaseModel):
    id: int
    created_at: Optional[datetime] = None
    movement_type: StockMovementType
    qty_change: int
    reason: Optional[str] = None
    batch_id: Optional[int] = None
    part_number: str
    batch_number: Optional[str] = None # NULL once the batch was deleted

class StockMovementList(BaseModel):
    ok: bool = True
    data: List[StockMovementResponse]
