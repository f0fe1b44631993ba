# backend/routes/settings.py
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, Request
from sqlalchemy.orm import Session

from database import get_db
from services import ledger
from utils.audit import write_log
from schemas.common import OkResponse
from schemas.settings import SettingList

router = APIRouter(prefix="/api/settings", tags=["Settings"])


@router.get("", response_model=SettingList)
def get_settings(db: Session = Depends(get_db)):
    return {"ok": True, "data": ledger.list_settings(db)}


# Upsert every key of the JSON object
@router.put("", response_model=OkResponse)
def save_settings(request: Request, data: Dict[str, Any] = Body(default_factory=dict),
                  db: Session = Depends(get_db)):
    count = ledger.save_settings(db, data)
    write_log(db, action="SETTINGS_SAVE", resource="settings",
              ip=request.client.host if request.client else None,
              meta={"keys": sorted(data), "count": count})
    return {"ok": True}
