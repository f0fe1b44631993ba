# backend/routes/logs.py
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List, Optional, Any
from datetime import datetime
from pydantic import BaseModel, ConfigDict

from database import get_db
from models.log import Log
from utils.errors import ValidationError

router = APIRouter(prefix="/api/logs", tags=["Logs"])

LOG_LIMIT = 200

# --- SCHEMAS ---
class LogResponse(BaseModel):
    id: int
    action: str
    resource: str
    status: str
    ip: Optional[str] = None
    ts: Optional[datetime] = None
    meta: Optional[Any] = None

    model_config = ConfigDict(from_attributes=True)

class LogList(BaseModel):
    ok: bool = True
    data: List[LogResponse]

def _parse_day(value: str, end_of_day: bool = False) -> datetime:
    # YYYY-MM-DD covers the whole day when used as upper bound
    if end_of_day and len(value) == 10:
        value += " 23:59:59"
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise ValidationError(detail=f"Bad date format: {value}") from None

# --- ENDPOINT ---
@router.get("", response_model=LogList)
def get_logs(
    action: Optional[str] = Query(None, description="Filter by action"),
    resource: Optional[str] = Query(None, description="Filter by resource"),
    status: Optional[str] = Query(None, description="Filter by status (SUCCESS/FAIL)"),
    date_from: Optional[str] = Query(None, description="From date (YYYY-MM-DD)"),
    date_to: Optional[str] = Query(None, description="To date (YYYY-MM-DD)"),
    db: Session = Depends(get_db),
):
    query = db.query(Log)

    if action:
        query = query.filter(Log.action.ilike(f"%{action}%"))
    if resource:
        query = query.filter(Log.resource.ilike(f"%{resource}%"))
    if status:
        query = query.filter(Log.status == status)
    if date_from:
        query = query.filter(Log.ts >= _parse_day(date_from))
    if date_to:
        query = query.filter(Log.ts <= _parse_day(date_to, end_of_day=True))

    logs = query.order_by(Log.ts.desc(), Log.id.desc()).limit(LOG_LIMIT).all()
    return {"ok": True, "data": logs}
