"""
Stock Ledger - business logic for every quantity-affecting operation.

Batch quantities and the stock_movements log move together: each operation
runs in a single transaction on the caller's session and either commits all of
its writes or none of them. Decrements are done with a conditional UPDATE
(``... WHERE quantity >= :qty``) so two concurrent issues cannot both pass a
stale on-hand check.
"""
import logging
import math
import random
import re
from contextlib import contextmanager
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import settings
from models.item import Batch, Item
from models.settings import AppSetting
from models.stock import StockMovement
from models.workorder import WorkOrder, WorkOrderLine, WorkOrderStatus
from utils.errors import (
    InsufficientStockError,
    LedgerError,
    NotFoundError,
    OverReturnError,
    ValidationError,
    translate_db_error,
)

logger = logging.getLogger(__name__)

WORKORDER_STATUSES = tuple(s.value for s in WorkOrderStatus)
WORKORDER_CODE_PREFIX = "WO-"

# Quantity and id columns are 32-bit INTEGER on PostgreSQL
INT_MIN, INT_MAX = -(2 ** 31), 2 ** 31 - 1

LEADING_INT = re.compile(r"\s*([+-]?\d+)")


# ---- HELPERS ----
@contextmanager
def _transaction(db: Session, *, conflict_code: str = "conflict"):
    """Commit everything done inside the block, or roll all of it back."""
    try:
        yield
        db.commit()
    except LedgerError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        mapped = translate_db_error(exc, conflict_code=conflict_code)
        if mapped is None:
            logger.exception("Ledger transaction failed")
            raise
        logger.error("Ledger transaction rolled back: %s (%s)", mapped.code, exc.__class__.__name__)
        raise mapped from exc
    except Exception:
        db.rollback()
        logger.exception("Ledger transaction failed")
        raise


@contextmanager
def _reading(db: Session):
    """Read-only block: no commit, DB failures mapped like writes."""
    try:
        yield
    except SQLAlchemyError as exc:
        db.rollback()
        mapped = translate_db_error(exc)
        if mapped is None:
            logger.exception("Ledger query failed")
            raise
        logger.error("Ledger query failed: %s (%s)", mapped.code, exc.__class__.__name__)
        raise mapped from exc


def _parse_int(value, field: str) -> int:
    if value is None or isinstance(value, bool):
        raise ValidationError(detail=f"{field} is required")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        value = value.strip()
        try:
            return int(value)
        except ValueError:
            try:
                value = float(value)
            except ValueError:
                raise ValidationError(detail=f"{field} must be a number") from None
    if isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer():
            raise ValidationError(detail=f"{field} must be a whole number")
        return int(value)
    raise ValidationError(detail=f"{field} must be a number")


def _to_int(value, field: str) -> int:
    """Accept ints, integral floats and numeric strings that fit an INTEGER column."""
    number = _parse_int(value, field)
    if not INT_MIN <= number <= INT_MAX:
        raise ValidationError("out_of_range", f"{field} must be between {INT_MIN} and {INT_MAX}")
    return number


def _to_id(value, field: str = "id") -> int:
    try:
        ident = _to_int(value, field)
    except ValidationError:
        raise ValidationError("invalid_id", f"{field} must be a positive integer") from None
    if ident <= 0:
        raise ValidationError("invalid_id", f"{field} must be a positive integer")
    return ident


def _positive_qty(value, field: str = "qty", code: str = "invalid_input") -> int:
    try:
        qty = _to_int(value, field)
    except ValidationError as exc:
        raise ValidationError(exc.code if exc.code == "out_of_range" else code, exc.detail) from None
    if qty <= 0:
        raise ValidationError(code, f"{field} must be greater than zero")
    return qty


def _clean(value) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _audit_enabled(audit: Optional[bool]) -> bool:
    return settings.AUDIT_UNTRACKED_CHANGES if audit is None else audit


def _insert_for(db: Session):
    """Dialect insert() with ON CONFLICT support (PostgreSQL or SQLite)."""
    if db.get_bind().dialect.name == "postgresql":
        return pg_insert
    return sqlite_insert


def _record_movement(
    db: Session, item_id: int, batch_id: Optional[int], movement_type: str, qty_change: int, reason: Optional[str]
) -> StockMovement:
    movement = StockMovement(
        item_id=item_id,
        batch_id=batch_id,
        movement_type=movement_type,
        qty_change=qty_change,
        reason=reason,
    )
    db.add(movement)
    db.flush()
    return movement


def workorder_reason(workorder_id: int) -> str:
    return f"{WORKORDER_CODE_PREFIX}{workorder_id}"


def _get_line(db: Session, workorder_id: int, line_id: int) -> WorkOrderLine:
    line = db.scalar(
        select(WorkOrderLine).where(
            WorkOrderLine.id == line_id,
            WorkOrderLine.workorder_id == workorder_id,
        )
    )
    if line is None:
        raise NotFoundError("line_not_found", f"Line {line_id} not found on work order {workorder_id}")
    return line


# ==========================================
#  ITEMS & BATCHES
# ==========================================
def intake_stock(
    db: Session,
    part_number,
    batch_number,
    quantity=0,
    *,
    condition: Optional[str] = "NEW",
    location: Optional[str] = None,
    site: Optional[str] = None,
    bin: Optional[str] = None,
    audit: Optional[bool] = None,
) -> Tuple[int, int]:
    """Find-or-create the item, then add ``quantity`` to its batch (creating the batch if needed).

    Returns ``(item_id, batch_id)``. A top-up of an existing batch is recorded
    as an ADJUST movement with reason ``INTAKE`` unless auditing is disabled;
    the quantity a batch is created with is its initial quantity and is not a
    movement.
    """
    part_number = _clean(part_number)
    batch_number = _clean(batch_number)
    if not part_number or not batch_number:
        raise ValidationError("part_number_and_batch_required", "part_number and batch_number are required")
    qty = _to_int(quantity if quantity not in (None, "") else 0, "quantity")
    if qty < 0:
        raise ValidationError(detail="quantity must not be negative")

    insert = _insert_for(db)
    with _transaction(db, conflict_code="insert_failed"):
        db.execute(
            insert(Item)
            .values(part_number=part_number)
            .on_conflict_do_nothing(index_elements=[Item.part_number])
        )
        item_id = db.scalar(select(Item.id).where(Item.part_number == part_number))

        # RETURNING yields a row only when this statement created the batch
        batch_id = db.scalar(
            insert(Batch)
            .values(
                item_id=item_id,
                batch_number=batch_number,
                quantity=qty,
                condition=_clean(condition) or "NEW",
                location=_clean(location),
                site=_clean(site),
                bin=_clean(bin),
            )
            .on_conflict_do_nothing(index_elements=[Batch.item_id, Batch.batch_number])
            .returning(Batch.id)
        )
        topped_up = batch_id is None
        if topped_up:
            batch_id = db.scalar(
                select(Batch.id).where(Batch.item_id == item_id, Batch.batch_number == batch_number)
            )
            db.execute(
                update(Batch)
                .where(Batch.id == batch_id)
                .values(quantity=Batch.quantity + qty)
                .execution_options(synchronize_session=False)
            )

        if topped_up and qty and _audit_enabled(audit):
            _record_movement(db, item_id, batch_id, "ADJUST", qty, "INTAKE")

    logger.info("Intake %s/%s +%s (item=%s batch=%s)", part_number, batch_number, qty, item_id, batch_id)
    return item_id, batch_id


def set_batch_quantity(db: Session, batch_id, quantity, *, audit: Optional[bool] = None) -> Batch:
    """Overwrite a batch's on-hand quantity.

    With auditing enabled the difference is logged as an ADJUST movement with
    reason ``SET`` so movement history keeps adding up to the batch quantity.
    """
    batch_id = _to_id(batch_id, "batch_id")
    qty = _to_int(quantity, "quantity")
    if qty < 0:
        raise ValidationError(detail="quantity must not be negative")

    with _transaction(db, conflict_code="update_failed"):
        batch = db.scalar(select(Batch).where(Batch.id == batch_id).with_for_update())
        if batch is None:
            raise NotFoundError("batch_not_found", f"Batch {batch_id} not found")
        delta = qty - batch.quantity
        batch.quantity = qty
        if delta and _audit_enabled(audit):
            _record_movement(db, batch.item_id, batch.id, "ADJUST", delta, "SET")
        db.flush()

    logger.info("Batch %s quantity set to %s (delta %s)", batch_id, qty, delta)
    return batch


def adjust_batch_quantity(db: Session, batch_id, qty_change, reason: Optional[str] = None) -> StockMovement:
    """Apply a signed change to a batch and log it as an ADJUST movement."""
    batch_id = _to_id(batch_id, "batch_id")
    qty_change = _to_int(qty_change, "qty_change")
    if qty_change == 0:
        raise ValidationError(detail="qty_change must not be zero")
    reason = _clean(reason) or "Manual adjust"

    with _transaction(db, conflict_code="adjust_failed"):
        item_id = db.scalar(select(Batch.item_id).where(Batch.id == batch_id))
        if item_id is None:
            raise NotFoundError("batch_not_found", f"Batch {batch_id} not found")

        result = db.execute(
            update(Batch)
            .where(Batch.id == batch_id, Batch.quantity + qty_change >= 0)
            .values(quantity=Batch.quantity + qty_change)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning("Adjust %s on batch %s rejected: insufficient stock", qty_change, batch_id)
            raise InsufficientStockError(detail=f"Batch {batch_id} cannot go below zero")

        movement = _record_movement(db, item_id, batch_id, "ADJUST", qty_change, reason)

    logger.info("Batch %s adjusted by %s (%s)", batch_id, qty_change, reason)
    return movement


def delete_batch(db: Session, batch_id) -> bool:
    """Hard delete. Movements keep their history with batch_id set to NULL."""
    batch_id = _to_id(batch_id, "batch_id")
    with _transaction(db, conflict_code="batch_in_use"):
        deleted = db.query(Batch).filter(Batch.id == batch_id).delete(synchronize_session=False)
    if deleted:
        logger.info("Batch %s deleted", batch_id)
    return bool(deleted)


# ==========================================
#  WORK ORDERS
# ==========================================
def generate_workorder_code(
    exists: Callable[[str], bool], attempts: int = 8, rng: Optional[random.Random] = None
) -> str:
    """Draw ``WO-`` + 5 digit codes until ``exists`` says one is free.

    Uniqueness is best effort: after ``attempts`` collisions the last candidate
    is returned anyway and the unique constraint has the final word.
    """
    rng = rng or random
    code = None
    for _ in range(max(1, attempts)):
        code = f"{WORKORDER_CODE_PREFIX}{rng.randrange(100000):05d}"
        if not exists(code):
            return code
    logger.warning("No free work order code after %s attempts, using %s", attempts, code)
    return code


def _code_exists(db: Session) -> Callable[[str], bool]:
    def check(code: str) -> bool:
        return db.scalar(select(WorkOrder.id).where(WorkOrder.code == code).limit(1)) is not None
    return check


def create_workorder(db: Session, code=None, status="draft", requested_by=None) -> WorkOrder:
    # Unknown statuses fall back to draft instead of failing
    if status not in WORKORDER_STATUSES:
        status = WorkOrderStatus.DRAFT.value

    code = _clean(code)
    with _transaction(db, conflict_code="code_exists"):
        if not code:
            code = generate_workorder_code(_code_exists(db), attempts=settings.WORKORDER_CODE_ATTEMPTS)
        workorder = WorkOrder(code=code, status=status, requested_by=_clean(requested_by))
        db.add(workorder)
        db.flush()

    logger.info("Work order %s created (id=%s, status=%s)", workorder.code, workorder.id, workorder.status)
    return workorder


def set_workorder_status(db: Session, workorder_id, status) -> WorkOrder:
    workorder_id = _to_id(workorder_id, "workorder_id")
    if status not in WORKORDER_STATUSES:
        raise ValidationError(detail=f"status must be one of {', '.join(WORKORDER_STATUSES)}")

    with _transaction(db, conflict_code="status_failed"):
        workorder = db.get(WorkOrder, workorder_id)
        if workorder is None:
            raise NotFoundError("workorder_not_found", f"Work order {workorder_id} not found")
        workorder.status = status
        db.flush()
    return workorder


def delete_workorder(db: Session, workorder_id) -> bool:
    workorder_id = _to_id(workorder_id, "workorder_id")
    with _transaction(db, conflict_code="delete_failed"):
        deleted = db.query(WorkOrder).filter(WorkOrder.id == workorder_id).delete(synchronize_session=False)
    if deleted:
        logger.info("Work order %s deleted", workorder_id)
    return bool(deleted)


def add_line(
    db: Session,
    workorder_id,
    qty,
    *,
    part_number=None,
    batch_number=None,
    item_id=None,
    batch_id=None,
    note=None,
) -> WorkOrderLine:
    """Request ``qty`` of a batch on a work order.

    Stock is not checked here, only when the line is issued.
    """
    workorder_id = _to_id(workorder_id, "workorder_id")
    qty = _positive_qty(qty, code="qty_required")

    with _transaction(db, conflict_code="insert_failed"):
        if db.get(WorkOrder, workorder_id) is None:
            raise NotFoundError("workorder_not_found", f"Work order {workorder_id} not found")

        if item_id and batch_id:
            item_id = _to_id(item_id, "item_id")
            batch_id = _to_id(batch_id, "batch_id")
            query = select(Batch.item_id, Batch.id).where(Batch.id == batch_id, Batch.item_id == item_id)
        else:
            query = (
                select(Item.id, Batch.id)
                .join(Batch, Batch.item_id == Item.id)
                .where(Item.part_number == _clean(part_number), Batch.batch_number == _clean(batch_number))
                .limit(1)
            )
        row = db.execute(query).first()
        if row is None:
            raise NotFoundError("item_batch_not_found", "No batch matches the given item")
        item_id, batch_id = row

        line = WorkOrderLine(
            workorder_id=workorder_id,
            item_id=item_id,
            batch_id=batch_id,
            qty_requested=qty,
            qty_issued=0,
            note=_clean(note),
        )
        db.add(line)
        db.flush()

    logger.info("Line %s added to work order %s (batch=%s qty=%s)", line.id, workorder_id, batch_id, qty)
    return line


def delete_line(db: Session, workorder_id, line_id) -> bool:
    workorder_id = _to_id(workorder_id, "workorder_id")
    line_id = _to_id(line_id, "line_id")
    with _transaction(db, conflict_code="delete_failed"):
        deleted = (
            db.query(WorkOrderLine)
            .filter(WorkOrderLine.id == line_id, WorkOrderLine.workorder_id == workorder_id)
            .delete(synchronize_session=False)
        )
    return bool(deleted)


def issue_line(db: Session, workorder_id, line_id, qty) -> WorkOrderLine:
    """Take ``qty`` out of the line's batch and add it to ``qty_issued``."""
    workorder_id = _to_id(workorder_id, "workorder_id")
    line_id = _to_id(line_id, "line_id")
    qty = _positive_qty(qty)

    with _transaction(db, conflict_code="issue_failed"):
        line = _get_line(db, workorder_id, line_id)
        result = db.execute(
            update(Batch)
            .where(Batch.id == line.batch_id, Batch.quantity >= qty)
            .values(quantity=Batch.quantity - qty)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning("Issue of %s on line %s rejected: insufficient stock", qty, line_id)
            raise InsufficientStockError(detail=f"Batch {line.batch_id} has less than {qty} on hand")

        _record_movement(db, line.item_id, line.batch_id, "ISSUE", -qty, workorder_reason(workorder_id))
        db.execute(
            update(WorkOrderLine)
            .where(WorkOrderLine.id == line_id)
            .values(qty_issued=WorkOrderLine.qty_issued + qty)
            .execution_options(synchronize_session=False)
        )

    logger.info("Issued %s on work order %s line %s", qty, workorder_id, line_id)
    db.refresh(line)
    return line


def return_line(db: Session, workorder_id, line_id, qty) -> WorkOrderLine:
    """Put ``qty`` back into the line's batch; never more than is currently issued."""
    workorder_id = _to_id(workorder_id, "workorder_id")
    line_id = _to_id(line_id, "line_id")
    qty = _positive_qty(qty)

    with _transaction(db, conflict_code="return_failed"):
        line = _get_line(db, workorder_id, line_id)
        result = db.execute(
            update(WorkOrderLine)
            .where(WorkOrderLine.id == line_id, WorkOrderLine.qty_issued >= qty)
            .values(qty_issued=WorkOrderLine.qty_issued - qty)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning("Return of %s on line %s rejected: more than issued", qty, line_id)
            raise OverReturnError(detail=f"Line {line_id} has less than {qty} issued")

        db.execute(
            update(Batch)
            .where(Batch.id == line.batch_id)
            .values(quantity=Batch.quantity + qty)
            .execution_options(synchronize_session=False)
        )
        _record_movement(db, line.item_id, line.batch_id, "RETURN", qty, workorder_reason(workorder_id))

    logger.info("Returned %s on work order %s line %s", qty, workorder_id, line_id)
    db.refresh(line)
    return line


# ==========================================
#  SETTINGS
# ==========================================
def get_setting(db: Session, key: str, default: Optional[str] = None) -> Optional[str]:
    value = db.scalar(select(AppSetting.value).where(AppSetting.key == key))
    return default if value is None else value


def list_settings(db: Session) -> List[Dict]:
    with _reading(db):
        rows = db.execute(select(AppSetting.key, AppSetting.value).order_by(AppSetting.key)).mappings().all()
    return [dict(r) for r in rows]


def save_settings(db: Session, data: Mapping) -> int:
    """Upsert every key of ``data``; values are stored as strings."""
    if not data:
        raise ValidationError("no_data", "No settings given")

    insert = _insert_for(db)
    with _transaction(db, conflict_code="save_failed"):
        for key, value in data.items():
            key = _clean(key)
            if not key:
                raise ValidationError(detail="Setting keys must not be empty")
            stmt = insert(AppSetting).values(key=key, value=None if value is None else str(value))
            db.execute(
                stmt.on_conflict_do_update(
                    index_elements=[AppSetting.key], set_={"value": stmt.excluded.value}
                )
            )
    logger.info("Saved settings: %s", ", ".join(sorted(str(k) for k in data)))
    return len(data)


# ==========================================
#  REPORTS & LISTS
# ==========================================
def low_stock_threshold(db: Session) -> int:
    """Stored threshold read by its leading integer ("12.5" -> 12, "10abc" -> 10); 0 if there is none."""
    with _reading(db):
        raw = get_setting(db, settings.LOW_STOCK_SETTING_KEY, "0")
    match = LEADING_INT.match(raw)
    if match is None:
        logger.warning("Ignoring non-numeric %s=%r, using 0", settings.LOW_STOCK_SETTING_KEY, raw)
        return 0
    return max(INT_MIN, min(INT_MAX, int(match.group(1))))


def low_stock_report(db: Session, threshold=None) -> List[Dict]:
    """Batches with quantity <= threshold, lowest first."""
    with _reading(db):
        limit = low_stock_threshold(db) if threshold in (None, "") else _to_int(threshold, "threshold")
        rows = db.execute(
            select(
                Item.part_number,
                Batch.id.label("batch_id"),
                Batch.batch_number,
                Batch.quantity,
                Batch.location,
                Batch.site,
                Batch.bin,
            )
            .join(Item, Batch.item_id == Item.id)
            .where(Batch.quantity <= limit)
            .order_by(Batch.quantity.asc(), Batch.id.asc())
        ).mappings().all()
    return [dict(r) for r in rows]


def list_items(db: Session) -> List[Dict]:
    with _reading(db):
        rows = db.execute(
            select(
                Item.id.label("item_id"),
                Item.part_number,
                Batch.id.label("batch_id"),
                Batch.batch_number,
                Batch.quantity,
            )
            .outerjoin(Batch, Batch.item_id == Item.id)
            .order_by(Item.part_number, Batch.batch_number.asc().nulls_last())
        ).mappings().all()
    return [dict(r) for r in rows]


def list_workorders(db: Session, q: Optional[str] = None) -> List[WorkOrder]:
    query = select(WorkOrder)
    q = _clean(q)
    if q:
        like = f"%{q}%"
        query = query.where(
            or_(WorkOrder.code.ilike(like), WorkOrder.status.ilike(like), WorkOrder.requested_by.ilike(like))
        )
    query = query.order_by(WorkOrder.created_at.desc(), WorkOrder.id.desc()).limit(settings.LIST_LIMIT_WORKORDERS)
    with _reading(db):
        workorders = list(db.scalars(query).all())
    return workorders


def list_lines(db: Session, workorder_id) -> List[Dict]:
    workorder_id = _to_id(workorder_id, "workorder_id")
    with _reading(db):
        rows = db.execute(
            select(
                WorkOrderLine.id.label("line_id"),
                WorkOrderLine.qty_requested,
                WorkOrderLine.qty_issued,
                WorkOrderLine.note,
                Item.id.label("item_id"),
                Item.part_number,
                Batch.id.label("batch_id"),
                Batch.batch_number,
                Batch.quantity.label("onhand"),
            )
            .join(Item, Item.id == WorkOrderLine.item_id)
            .join(Batch, Batch.id == WorkOrderLine.batch_id)
            .where(WorkOrderLine.workorder_id == workorder_id)
            .order_by(WorkOrderLine.id.desc())
        ).mappings().all()
    return [dict(r) for r in rows]


def list_movements(db: Session, batch_id=None) -> List[Dict]:
    query = (
        select(
            StockMovement.id,
            StockMovement.created_at,
            StockMovement.movement_type,
            StockMovement.qty_change,
            StockMovement.reason,
            StockMovement.batch_id,
            Item.part_number,
            Batch.batch_number,
        )
        .join(Item, Item.id == StockMovement.item_id)
        .outerjoin(Batch, Batch.id == StockMovement.batch_id)
    )
    if batch_id not in (None, ""):
        query = query.where(StockMovement.batch_id == _to_id(batch_id, "batch_id"))
    query = query.order_by(StockMovement.created_at.desc(), StockMovement.id.desc()).limit(
        settings.LIST_LIMIT_MOVEMENTS
    )
    with _reading(db):
        rows = db.execute(query).mappings().all()
    return [dict(r) for r in rows]
