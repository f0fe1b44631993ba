import random
import re

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import sessionmaker

from database import Base, enable_sqlite_foreign_keys
from models.item import Batch, Item
from models.stock import StockMovement
from models.workorder import WorkOrder, WorkOrderLine
from services import ledger
from utils.errors import (
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    OverReturnError,
    TransientError,
    ValidationError,
)


def _quantity(db, batch_id: int) -> int:
    db.expire_all()
    return db.scalar(select(Batch.quantity).where(Batch.id == batch_id))


def _movement_sum(db, batch_id: int) -> int:
    return db.scalar(
        select(func.coalesce(func.sum(StockMovement.qty_change), 0)).where(StockMovement.batch_id == batch_id)
    )


def _movement_count(db) -> int:
    return db.scalar(select(func.count(StockMovement.id)))


def _line_with_stock(db, on_hand: int = 10, requested: int = 5):
    _, batch_id = ledger.intake_stock(db, "P-100", "B-1", on_hand)
    wo = ledger.create_workorder(db, "WO-00001")
    line = ledger.add_line(db, wo.id, requested, part_number="P-100", batch_number="B-1")
    return wo.id, line.id, batch_id


# ---- intake ----
def test_intake_twice_adds_quantities_and_keeps_one_item(db) -> None:
    item_a, batch_a = ledger.intake_stock(db, "P-1", "LOT-1", 4)
    item_b, batch_b = ledger.intake_stock(db, "P-1", "LOT-1", 6)

    assert (item_a, batch_a) == (item_b, batch_b)
    assert _quantity(db, batch_a) == 10
    assert db.scalar(select(func.count(Item.id)).where(Item.part_number == "P-1")) == 1


def test_intake_new_batch_for_existing_item(db) -> None:
    item_a, batch_a = ledger.intake_stock(db, "P-1", "LOT-1", 4)
    item_b, batch_b = ledger.intake_stock(db, "P-1", "LOT-2", 2)

    assert item_a == item_b
    assert batch_a != batch_b
    assert _quantity(db, batch_b) == 2
    assert db.get(Batch, batch_b).condition == "NEW"


@pytest.mark.parametrize("part_number, batch_number", [("", "LOT"), ("P-1", None), ("   ", "LOT")])
def test_intake_requires_part_and_batch(db, part_number, batch_number) -> None:
    with pytest.raises(ValidationError) as exc_info:
        ledger.intake_stock(db, part_number, batch_number, 1)
    assert exc_info.value.code == "part_number_and_batch_required"
    assert db.scalar(select(func.count(Item.id))) == 0


def test_intake_rejects_negative_quantity(db) -> None:
    with pytest.raises(ValidationError):
        ledger.intake_stock(db, "P-1", "LOT-1", -3)


def test_intake_top_up_is_recorded_as_adjust(db) -> None:
    _, batch_id = ledger.intake_stock(db, "P-1", "LOT-1", 4)
    assert _movement_count(db) == 0

    ledger.intake_stock(db, "P-1", "LOT-1", 3, audit=True)

    movement = db.scalar(select(StockMovement))
    assert movement.movement_type == "ADJUST"
    assert movement.qty_change == 3
    assert movement.reason == "INTAKE"
    assert _quantity(db, batch_id) == 4 + _movement_sum(db, batch_id)


def test_intake_top_up_of_empty_batch_is_recorded(db) -> None:
    _, batch_id = ledger.intake_stock(db, "P-1", "LOT-1", 0)

    ledger.intake_stock(db, "P-1", "LOT-1", 5, audit=True)

    movement = db.scalar(select(StockMovement))
    assert (movement.movement_type, movement.qty_change, movement.reason) == ("ADJUST", 5, "INTAKE")
    assert _quantity(db, batch_id) == 0 + _movement_sum(db, batch_id)


def test_intake_creating_batch_writes_no_movement(db) -> None:
    ledger.intake_stock(db, "P-1", "LOT-1", 5, audit=True)
    ledger.intake_stock(db, "P-1", "LOT-2", 0, audit=True)
    assert _movement_count(db) == 0


def test_intake_out_of_range_quantity_writes_nothing(db) -> None:
    with pytest.raises(ValidationError) as exc_info:
        ledger.intake_stock(db, "P-NEW", "LOT-1", 10**20)
    assert exc_info.value.code == "out_of_range"

    db.commit()
    assert db.scalar(select(func.count(Item.id))) == 0
    assert db.scalar(select(func.count(Batch.id))) == 0


def test_intake_top_up_without_audit_writes_no_movement(db) -> None:
    _, batch_id = ledger.intake_stock(db, "P-1", "LOT-1", 4)
    ledger.intake_stock(db, "P-1", "LOT-1", 3, audit=False)

    assert _quantity(db, batch_id) == 7
    assert _movement_count(db) == 0


# ---- set / adjust ----
def test_set_quantity_records_delta(db) -> None:
    _, batch_id = ledger.intake_stock(db, "P-1", "LOT-1", 10)

    ledger.set_batch_quantity(db, batch_id, 4, audit=True)

    assert _quantity(db, batch_id) == 4
    movement = db.scalar(select(StockMovement))
    assert (movement.movement_type, movement.qty_change, movement.reason) == ("ADJUST", -6, "SET")


def test_set_quantity_without_audit(db) -> None:
    _, batch_id = ledger.intake_stock(db, "P-1", "LOT-1", 10)

    ledger.set_batch_quantity(db, batch_id, 25, audit=False)

    assert _quantity(db, batch_id) == 25
    assert _movement_count(db) == 0


def test_set_quantity_to_same_value_writes_nothing(db) -> None:
    _, batch_id = ledger.intake_stock(db, "P-1", "LOT-1", 10)
    ledger.set_batch_quantity(db, batch_id, "10", audit=True)
    assert _movement_count(db) == 0


@pytest.mark.parametrize("batch_id, quantity", [("abc", 1), (0, 1), (1, -1), (1, float("nan")), (1, float("inf")), (1, 2.5)])
def test_set_quantity_rejects_bad_input(db, batch_id, quantity) -> None:
    ledger.intake_stock(db, "P-1", "LOT-1", 10)
    with pytest.raises(ValidationError):
        ledger.set_batch_quantity(db, batch_id, quantity)
    assert _quantity(db, 1) == 10


def test_set_quantity_unknown_batch(db) -> None:
    with pytest.raises(NotFoundError):
        ledger.set_batch_quantity(db, 999, 1)


def test_adjust_applies_change_and_logs_movement(db) -> None:
    item_id, batch_id = ledger.intake_stock(db, "P-1", "LOT-1", 10)

    movement = ledger.adjust_batch_quantity(db, batch_id, -4, "Damaged")

    assert _quantity(db, batch_id) == 6
    assert movement.item_id == item_id
    assert movement.batch_id == batch_id
    assert movement.movement_type == "ADJUST"
    assert movement.qty_change == -4
    assert movement.reason == "Damaged"


def test_adjust_default_reason(db) -> None:
    _, batch_id = ledger.intake_stock(db, "P-1", "LOT-1", 10)
    movement = ledger.adjust_batch_quantity(db, batch_id, 2)
    assert movement.reason == "Manual adjust"


def test_adjust_below_zero_fails_and_leaves_quantity(db) -> None:
    _, batch_id = ledger.intake_stock(db, "P-1", "LOT-1", 3)

    with pytest.raises(InsufficientStockError):
        ledger.adjust_batch_quantity(db, batch_id, -4)

    assert _quantity(db, batch_id) == 3
    assert _movement_count(db) == 0


def test_adjust_to_exactly_zero_is_allowed(db) -> None:
    _, batch_id = ledger.intake_stock(db, "P-1", "LOT-1", 3)
    ledger.adjust_batch_quantity(db, batch_id, -3)
    assert _quantity(db, batch_id) == 0


def test_adjust_zero_change_is_invalid(db) -> None:
    _, batch_id = ledger.intake_stock(db, "P-1", "LOT-1", 3)
    with pytest.raises(ValidationError):
        ledger.adjust_batch_quantity(db, batch_id, 0)


def test_adjust_unknown_batch(db) -> None:
    with pytest.raises(NotFoundError) as exc_info:
        ledger.adjust_batch_quantity(db, 42, 1)
    assert exc_info.value.code == "batch_not_found"


# ---- issue / return ----
def test_issue_moves_stock_to_line(db) -> None:
    wo_id, line_id, batch_id = _line_with_stock(db, on_hand=10)

    line = ledger.issue_line(db, wo_id, line_id, 4)

    assert line.qty_issued == 4
    assert _quantity(db, batch_id) == 6
    movement = db.scalar(select(StockMovement))
    assert movement.movement_type == "ISSUE"
    assert movement.qty_change == -4
    assert movement.reason == f"WO-{wo_id}"


def test_issue_then_return_restores_everything(db) -> None:
    wo_id, line_id, batch_id = _line_with_stock(db, on_hand=10)

    ledger.issue_line(db, wo_id, line_id, 7)
    line = ledger.return_line(db, wo_id, line_id, 7)

    assert line.qty_issued == 0
    assert _quantity(db, batch_id) == 10
    types = db.scalars(select(StockMovement.movement_type).order_by(StockMovement.id)).all()
    assert types == ["ISSUE", "RETURN"]


def test_issue_more_than_on_hand_fails(db) -> None:
    wo_id, line_id, batch_id = _line_with_stock(db, on_hand=2)

    with pytest.raises(InsufficientStockError):
        ledger.issue_line(db, wo_id, line_id, 3)

    assert _quantity(db, batch_id) == 2
    assert db.get(WorkOrderLine, line_id).qty_issued == 0
    assert _movement_count(db) == 0


def test_return_more_than_issued_fails(db) -> None:
    wo_id, line_id, batch_id = _line_with_stock(db, on_hand=10)
    ledger.issue_line(db, wo_id, line_id, 2)

    with pytest.raises(OverReturnError):
        ledger.return_line(db, wo_id, line_id, 3)

    db.expire_all()
    assert db.get(WorkOrderLine, line_id).qty_issued == 2
    assert _quantity(db, batch_id) == 8
    assert _movement_count(db) == 1


def test_issue_line_of_other_workorder_is_not_found(db) -> None:
    _, line_id, _ = _line_with_stock(db)
    other = ledger.create_workorder(db, "WO-00002")

    with pytest.raises(NotFoundError) as exc_info:
        ledger.issue_line(db, other.id, line_id, 1)
    assert exc_info.value.code == "line_not_found"
    with pytest.raises(NotFoundError):
        ledger.return_line(db, other.id, line_id, 1)


@pytest.mark.parametrize("qty", [0, -1, None, "x", 1.5])
def test_issue_requires_positive_qty(db, qty) -> None:
    wo_id, line_id, _ = _line_with_stock(db)
    with pytest.raises(ValidationError):
        ledger.issue_line(db, wo_id, line_id, qty)


@pytest.mark.parametrize("qty", [10**20, 2**31, "99999999999"])
def test_issue_out_of_range_qty_is_invalid(db, qty) -> None:
    wo_id, line_id, batch_id = _line_with_stock(db)

    with pytest.raises(ValidationError) as exc_info:
        ledger.issue_line(db, wo_id, line_id, qty)

    assert exc_info.value.code == "out_of_range"
    assert _quantity(db, batch_id) == 10
    assert _movement_count(db) == 0


def _fail_movement_insert(monkeypatch, error: Exception) -> None:
    def broken(*args, **kwargs):
        raise error

    monkeypatch.setattr(ledger, "_record_movement", broken)


def test_db_failure_during_issue_rolls_back_everything(db, monkeypatch) -> None:
    wo_id, line_id, batch_id = _line_with_stock(db, on_hand=10)
    _fail_movement_insert(monkeypatch, OperationalError("INSERT INTO stock_movements", {}, Exception("database is locked")))

    with pytest.raises(TransientError):
        ledger.issue_line(db, wo_id, line_id, 4)

    assert not db.in_transaction()
    assert _quantity(db, batch_id) == 10
    assert db.get(WorkOrderLine, line_id).qty_issued == 0
    assert _movement_count(db) == 0


def test_constraint_failure_during_return_rolls_back_everything(db, monkeypatch) -> None:
    wo_id, line_id, batch_id = _line_with_stock(db, on_hand=10)
    ledger.issue_line(db, wo_id, line_id, 4)
    _fail_movement_insert(monkeypatch, IntegrityError("INSERT INTO stock_movements", {}, Exception("constraint failed")))

    with pytest.raises(ConflictError) as exc_info:
        ledger.return_line(db, wo_id, line_id, 4)

    assert exc_info.value.code == "return_failed"
    assert _quantity(db, batch_id) == 6
    assert db.get(WorkOrderLine, line_id).qty_issued == 4
    assert _movement_count(db) == 1


def test_unexpected_error_during_adjust_rolls_back(db, monkeypatch) -> None:
    _, batch_id = ledger.intake_stock(db, "P-1", "LOT-1", 10)
    _fail_movement_insert(monkeypatch, RuntimeError("boom"))

    with pytest.raises(RuntimeError):
        ledger.adjust_batch_quantity(db, batch_id, -3)

    assert not db.in_transaction()
    db.commit()
    assert _quantity(db, batch_id) == 10
    assert _movement_count(db) == 0


def test_issue_checks_stock_in_the_database_not_a_stale_read(tmp_path) -> None:
    file_engine = create_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    enable_sqlite_foreign_keys(file_engine)
    Base.metadata.create_all(bind=file_engine)
    Session = sessionmaker(autocommit=False, autoflush=False, bind=file_engine)
    first, second = Session(), Session()
    try:
        wo_id, line_id, batch_id = _line_with_stock(first, on_hand=10)
        stale = first.get(Batch, batch_id)
        assert stale.quantity == 10

        ledger.issue_line(second, wo_id, line_id, 8)

        # first still believes 10 are on hand; only 2 are
        assert first.get(Batch, batch_id).quantity == 10
        with pytest.raises(InsufficientStockError):
            ledger.issue_line(first, wo_id, line_id, 5)

        assert _quantity(first, batch_id) == 2
        assert _movement_sum(first, batch_id) == -8
    finally:
        first.close()
        second.close()
        file_engine.dispose()


def test_quantity_matches_movement_history(db) -> None:
    wo_id, line_id, batch_id = _line_with_stock(db, on_hand=20)
    initial = 20

    ledger.adjust_batch_quantity(db, batch_id, 5)
    ledger.issue_line(db, wo_id, line_id, 8)
    ledger.return_line(db, wo_id, line_id, 3)
    ledger.adjust_batch_quantity(db, batch_id, -2)
    ledger.set_batch_quantity(db, batch_id, 30, audit=True)
    ledger.intake_stock(db, "P-100", "B-1", 4, audit=True)
    with pytest.raises(InsufficientStockError):
        ledger.issue_line(db, wo_id, line_id, 1000)

    assert _quantity(db, batch_id) == 34
    assert _quantity(db, batch_id) == initial + _movement_sum(db, batch_id)


# ---- work orders ----
def test_generate_code_returns_first_free_candidate() -> None:
    taken = set()
    rng = random.Random(7)
    for _ in range(100):
        code = ledger.generate_workorder_code(lambda c: c in taken, rng=rng)
        assert re.fullmatch(r"WO-\d{5}", code)
        taken.add(code)


def test_generate_code_gives_up_after_attempts() -> None:
    calls = []

    def always_taken(code: str) -> bool:
        calls.append(code)
        return True

    code = ledger.generate_workorder_code(always_taken, attempts=8, rng=random.Random(1))

    assert len(calls) == 8
    assert code == calls[-1]


def test_create_workorder_generates_code(db) -> None:
    codes = [ledger.create_workorder(db).code for _ in range(20)]
    assert all(re.fullmatch(r"WO-\d{5}", c) for c in codes)
    assert db.get(WorkOrder, 1).status == "draft"


def test_create_workorder_coerces_unknown_status(db) -> None:
    wo = ledger.create_workorder(db, "WO-12345", status="shipped", requested_by="Ann")
    assert wo.status == "draft"
    assert wo.requested_by == "Ann"
    assert ledger.create_workorder(db, "WO-12346", status="closed").status == "closed"


def test_create_workorder_duplicate_code_conflicts(db) -> None:
    ledger.create_workorder(db, "WO-55555")
    with pytest.raises(ConflictError) as exc_info:
        ledger.create_workorder(db, "WO-55555")
    assert exc_info.value.code == "code_exists"
    assert db.scalar(select(func.count(WorkOrder.id))) == 1


def test_set_status_is_strict(db) -> None:
    wo = ledger.create_workorder(db, "WO-00009")
    ledger.set_workorder_status(db, wo.id, "issued")
    assert db.get(WorkOrder, wo.id).status == "issued"

    with pytest.raises(ValidationError):
        ledger.set_workorder_status(db, wo.id, "shipped")
    with pytest.raises(NotFoundError):
        ledger.set_workorder_status(db, 999, "closed")


def test_add_line_does_not_check_stock(db) -> None:
    ledger.intake_stock(db, "P-1", "LOT-1", 0)
    wo = ledger.create_workorder(db)
    line = ledger.add_line(db, wo.id, 50, part_number="P-1", batch_number="LOT-1", note=" urgent ")
    assert line.qty_requested == 50
    assert line.qty_issued == 0
    assert line.note == "urgent"


def test_add_line_by_ids(db) -> None:
    item_id, batch_id = ledger.intake_stock(db, "P-1", "LOT-1", 5)
    wo = ledger.create_workorder(db)
    line = ledger.add_line(db, wo.id, "2", item_id=str(item_id), batch_id=batch_id)
    assert (line.item_id, line.batch_id) == (item_id, batch_id)


def test_add_line_unknown_batch(db) -> None:
    ledger.intake_stock(db, "P-1", "LOT-1", 5)
    wo = ledger.create_workorder(db)
    with pytest.raises(NotFoundError) as exc_info:
        ledger.add_line(db, wo.id, 1, part_number="P-1", batch_number="LOT-9")
    assert exc_info.value.code == "item_batch_not_found"
    with pytest.raises(NotFoundError):
        ledger.add_line(db, 999, 1, part_number="P-1", batch_number="LOT-1")
    with pytest.raises(ValidationError) as exc_info:
        ledger.add_line(db, wo.id, 0, part_number="P-1", batch_number="LOT-1")
    assert exc_info.value.code == "qty_required"


def test_delete_workorder_removes_lines(db) -> None:
    wo_id, line_id, _ = _line_with_stock(db)
    assert ledger.delete_workorder(db, wo_id) is True
    db.expire_all()
    assert db.get(WorkOrderLine, line_id) is None
    assert ledger.delete_workorder(db, wo_id) is False


def test_delete_line(db) -> None:
    wo_id, line_id, _ = _line_with_stock(db)
    assert ledger.delete_line(db, wo_id + 1, line_id) is False
    assert ledger.delete_line(db, wo_id, line_id) is True


# ---- batches ----
def test_delete_batch_keeps_movement_history(db) -> None:
    _, batch_id = ledger.intake_stock(db, "P-1", "LOT-1", 5)
    ledger.adjust_batch_quantity(db, batch_id, -1)

    assert ledger.delete_batch(db, batch_id) is True

    db.expire_all()
    movement = db.scalar(select(StockMovement))
    assert movement.batch_id is None
    assert ledger.list_movements(db)[0]["batch_number"] is None


def test_delete_batch_in_use_conflicts(db) -> None:
    _, _, batch_id = _line_with_stock(db)
    with pytest.raises(ConflictError) as exc_info:
        ledger.delete_batch(db, batch_id)
    assert exc_info.value.code == "batch_in_use"
    assert _quantity(db, batch_id) == 10


# ---- settings & reports ----
def test_save_settings_upserts(db) -> None:
    ledger.save_settings(db, {"low_stock_default": 5, "site": "North"})
    ledger.save_settings(db, {"low_stock_default": "7"})

    assert ledger.list_settings(db) == [
        {"key": "low_stock_default", "value": "7"},
        {"key": "site", "value": "North"},
    ]
    with pytest.raises(ValidationError):
        ledger.save_settings(db, {})


def test_low_stock_report_filters_and_sorts(db) -> None:
    for batch_number, qty in [("A", 12), ("B", 3), ("C", 10), ("D", 0)]:
        ledger.intake_stock(db, "P-1", batch_number, qty)

    rows = ledger.low_stock_report(db, 10)

    assert [r["batch_number"] for r in rows] == ["D", "B", "C"]
    assert all(r["quantity"] <= 10 for r in rows)


def test_low_stock_report_uses_stored_threshold(db) -> None:
    ledger.intake_stock(db, "P-1", "A", 0)
    ledger.intake_stock(db, "P-1", "B", 4)
    assert [r["batch_number"] for r in ledger.low_stock_report(db)] == ["A"]

    ledger.save_settings(db, {"low_stock_default": "5"})
    assert [r["batch_number"] for r in ledger.low_stock_report(db)] == ["A", "B"]

    ledger.save_settings(db, {"low_stock_default": "lots"})
    assert ledger.low_stock_threshold(db) == 0


@pytest.mark.parametrize("stored, expected", [("12.5", 12), ("10abc", 10), (" 7 ", 7), ("-3", -3), ("abc10", 0), ("", 0)])
def test_stored_threshold_uses_leading_integer(db, stored, expected) -> None:
    ledger.save_settings(db, {"low_stock_default": stored})
    assert ledger.low_stock_threshold(db) == expected


def test_fractional_stored_threshold_still_reports_batches(db) -> None:
    ledger.intake_stock(db, "P-1", "A", 12)
    ledger.intake_stock(db, "P-1", "B", 13)
    ledger.save_settings(db, {"low_stock_default": "12.5"})

    assert [r["batch_number"] for r in ledger.low_stock_report(db)] == ["A"]


def test_list_items_includes_items_without_batches(db) -> None:
    ledger.intake_stock(db, "P-2", "LOT-1", 1)
    ledger.intake_stock(db, "P-1", "LOT-2", 2)
    _, batch_id = ledger.intake_stock(db, "P-1", "LOT-1", 3)
    _, lone_batch = ledger.intake_stock(db, "P-3", "LOT-1", 4)
    ledger.delete_batch(db, lone_batch)

    rows = ledger.list_items(db)

    assert [(r["part_number"], r["batch_number"]) for r in rows] == [
        ("P-1", "LOT-1"), ("P-1", "LOT-2"), ("P-2", "LOT-1"), ("P-3", None),
    ]
    assert rows[0]["batch_id"] == batch_id
    assert rows[-1]["batch_id"] is None
    assert rows[-1]["quantity"] is None


def test_list_workorders_search(db) -> None:
    ledger.create_workorder(db, "WO-11111", requested_by="Maintenance")
    ledger.create_workorder(db, "WO-22222", status="closed", requested_by="Stores")

    assert [w.code for w in ledger.list_workorders(db, "maint")] == ["WO-11111"]
    assert [w.code for w in ledger.list_workorders(db, "CLOSED")] == ["WO-22222"]
    assert len(ledger.list_workorders(db)) == 2


def test_list_lines_shows_on_hand(db) -> None:
    wo_id, line_id, _ = _line_with_stock(db, on_hand=9, requested=4)
    ledger.issue_line(db, wo_id, line_id, 4)

    [row] = ledger.list_lines(db, wo_id)

    assert row["line_id"] == line_id
    assert row["qty_requested"] == 4
    assert row["qty_issued"] == 4
    assert row["onhand"] == 5
    assert row["part_number"] == "P-100"
