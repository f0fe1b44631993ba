# schemas/reports.py
from typing import List, Optional
from pydantic import BaseModel

# Schemas for low stock alerting
class LowStockItem(BaseModel):
    part_number: str
    batch_id: int
    batch_number: str
    quantity: int
    location: Optional[str] = None
    site: Optional[str] = None
    bin: Optional[str] = None

class LowStockResponse(BaseModel):
    ok: bool = True
    threshold: int
    data: List[LowStockItem]
