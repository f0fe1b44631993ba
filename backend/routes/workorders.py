# backend/routes/workorders.py
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from database import get_db
from services import ledger
from utils.audit import write_log
from schemas.common import OkResponse
from schemas.workorder import (
    WorkOrderCreate, WorkOrderStatusUpdate, WorkOrderResponse, WorkOrderList,
    LineCreate, LineCreateResponse, LineList, LineQty
)

router = APIRouter(prefix="/api/workorders", tags=["Work orders"])

def _client_ip(request: Request):
    return request.client.host if request.client else None


# List work orders, newest first (optional ?q= search over code/status/requester)
@router.get("", response_model=WorkOrderList)
def list_workorders(q: Optional[str] = Query(None), db: Session = Depends(get_db)):
    return {"ok": True, "data": ledger.list_workorders(db, q)}


# Create a work order; a WO-xxxxx code is generated when none is given
@router.post("", response_model=WorkOrderResponse)
def create_workorder(payload: WorkOrderCreate, request: Request, db: Session = Depends(get_db)):
    wo = ledger.create_workorder(db, payload.code, payload.status, payload.requested_by)
    write_log(db, action="WO_CREATE", resource="workorder", ip=_client_ip(request),
              meta={"id": wo.id, "code": wo.code})
    return {"ok": True, "data": wo}


@router.delete("/{workorder_id}", response_model=OkResponse)
def delete_workorder(workorder_id: str, request: Request, db: Session = Depends(get_db)):
    deleted = ledger.delete_workorder(db, workorder_id)
    write_log(db, action="WO_DELETE", resource="workorder", ip=_client_ip(request),
              meta={"id": workorder_id, "deleted": deleted})
    return {"ok": True}


@router.put("/{workorder_id}/status", response_model=OkResponse)
def update_status(workorder_id: str, payload: WorkOrderStatusUpdate, request: Request,
                  db: Session = Depends(get_db)):
    wo = ledger.set_workorder_status(db, workorder_id, payload.status or "draft")
    write_log(db, action="WO_STATUS", resource="workorder", ip=_client_ip(request),
              meta={"id": wo.id, "new": wo.status})
    return {"ok": True}


# ---- LINES ----
@router.get("/{workorder_id}/lines", response_model=LineList)
def list_lines(workorder_id: str, db: Session = Depends(get_db)):
    return {"ok": True, "data": ledger.list_lines(db, workorder_id)}


@router.post("/{workorder_id}/lines", response_model=LineCreateResponse)
def add_line(workorder_id: str, payload: LineCreate, request: Request, db: Session = Depends(get_db)):
    line = ledger.add_line(
        db,
        workorder_id,
        payload.qty,
        part_number=payload.part_number,
        batch_number=payload.batch_number,
        item_id=payload.item_id,
        batch_id=payload.batch_id,
        note=payload.note,
    )
    write_log(db, action="WO_LINE_ADD", resource="workorder", ip=_client_ip(request),
              meta={"id": line.workorder_id, "line_id": line.id})
    return {"ok": True, "data": {"line_id": line.id}}


@router.delete("/{workorder_id}/lines/{line_id}", response_model=OkResponse)
def delete_line(workorder_id: str, line_id: str, request: Request, db: Session = Depends(get_db)):
    deleted = ledger.delete_line(db, workorder_id, line_id)
    write_log(db, action="WO_LINE_DELETE", resource="workorder", ip=_client_ip(request),
              meta={"id": workorder_id, "line_id": line_id, "deleted": deleted})
    return {"ok": True}


# Take stock out of the line's batch
@router.post("/{workorder_id}/lines/{line_id}/issue", response_model=OkResponse)
def issue_line(workorder_id: str, line_id: str, payload: LineQty, request: Request,
               db: Session = Depends(get_db)):
    line = ledger.issue_line(db, workorder_id, line_id, payload.qty)
    write_log(db, action="WO_ISSUE", resource="workorder", ip=_client_ip(request),
              meta={"id": line.workorder_id, "line_id": line.id, "qty": payload.qty})
    return {"ok": True}


# Put stock back, never more than was issued on the line
@router.post("/{workorder_id}/lines/{line_id}/return", response_model=OkResponse)
def return_line(workorder_id: str, line_id: str, payload: LineQty, request: Request,
                db: Session = Depends(get_db)):
    line = ledger.return_line(db, workorder_id, line_id, payload.qty)
    write_log(db, action="WO_RETURN", resource="workorder", ip=_client_ip(request),
              meta={"id": line.workorder_id, "line_id": line.id, "qty": payload.qty})
    return {"ok": True}
