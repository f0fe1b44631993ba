# backend/routes/stock.py
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from database import get_db
from services import ledger
import schemas.stock as stock_schemas

router = APIRouter(prefix="/api/movements", tags=["Stock"])


# Latest stock movements (audit trail), optionally for one batch
@router.get("", response_model=stock_schemas.StockMovementList)
def list_movements(
    batch_id: Optional[int] = Query(None, ge=1),
    db: Session = Depends(get_db),
):
    return {"ok": True, "data": ledger.list_movements(db, batch_id)}
