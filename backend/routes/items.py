# backend/routes/items.py
from typing import List

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from database import get_db
from services import ledger
from utils.audit import write_log
from schemas.common import OkResponse
from schemas.items import (
    ItemBatchRow, ItemIntake, IntakeResponse, BatchQuantitySet, BatchAdjust
)

router = APIRouter(prefix="/api/items", tags=["Items"])

def _client_ip(request: Request):
    return request.client.host if request.client else None


# Items with their batches (flat list, as the inventory page expects)
@router.get("", response_model=List[ItemBatchRow])
def list_items(db: Session = Depends(get_db)):
    return ledger.list_items(db)


# Find-or-create item, add quantity to the batch
@router.post("", response_model=IntakeResponse)
def intake(payload: ItemIntake, request: Request, db: Session = Depends(get_db)):
    item_id, batch_id = ledger.intake_stock(
        db,
        payload.part_number,
        payload.batch_number,
        payload.quantity,
        condition=payload.condition,
        location=payload.location,
        site=payload.site,
        bin=payload.bin,
    )
    write_log(db, action="STOCK_INTAKE", resource="batch", ip=_client_ip(request),
              meta={"item_id": item_id, "batch_id": batch_id, "quantity": payload.quantity})
    return {"ok": True, "data": {"item_id": item_id, "batch_id": batch_id}}


# Absolute quantity
@router.put("/{batch_id}", response_model=OkResponse)
def set_quantity(batch_id: str, payload: BatchQuantitySet, request: Request, db: Session = Depends(get_db)):
    batch = ledger.set_batch_quantity(db, batch_id, payload.quantity)
    write_log(db, action="STOCK_SET", resource="batch", ip=_client_ip(request),
              meta={"batch_id": batch.id, "quantity": batch.quantity})
    return {"ok": True}


# Signed adjustment with a movement record
@router.patch("/{batch_id}/adjust", response_model=OkResponse)
def adjust(batch_id: str, payload: BatchAdjust, request: Request, db: Session = Depends(get_db)):
    movement = ledger.adjust_batch_quantity(db, batch_id, payload.qty_change, payload.reason)
    write_log(db, action="STOCK_ADJUSTMENT", resource="batch", ip=_client_ip(request),
              meta={"batch_id": movement.batch_id, "movement_id": movement.id})
    return {"ok": True}


@router.delete("/{batch_id}", response_model=OkResponse)
def delete_batch(batch_id: str, request: Request, db: Session = Depends(get_db)):
    deleted = ledger.delete_batch(db, batch_id)
    write_log(db, action="BATCH_DELETE", resource="batch", ip=_client_ip(request),
              meta={"batch_id": batch_id, "deleted": deleted})
    return {"ok": True}
