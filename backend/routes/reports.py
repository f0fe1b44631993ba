# routes/reports.py
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from database import get_db
from services import ledger
from schemas.reports import LowStockResponse

router = APIRouter(prefix="/api/reports", tags=["Reports"])

# -----------------------------
# Low stock: batches at or below the threshold
# -----------------------------
@router.get("/lowstock", response_model=LowStockResponse)
def report_low_stock(
    threshold: Optional[int] = Query(None, description="Overrides the low_stock_default setting (<=)"),
    db: Session = Depends(get_db),
):
    if threshold is None:
        threshold = ledger.low_stock_threshold(db)
    rows = ledger.low_stock_report(db, threshold)
    return {"ok": True, "threshold": threshold, "data": rows}
