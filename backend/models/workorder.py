# backend/models/workorder.py
import enum
from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, CheckConstraint, func
from sqlalchemy.orm import relationship
from database import Base

# Allowed work order states. Any state may be set directly, there is no transition graph.
class WorkOrderStatus(str, enum.Enum):
    DRAFT = "draft"
    ISSUED = "issued"
    CLOSED = "closed"


class WorkOrder(Base):
    __tablename__ = "workorders"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String, unique=True, nullable=False, index=True)
    status = Column(String, nullable=False, default=WorkOrderStatus.DRAFT.value)
    requested_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    lines = relationship(
        "WorkOrderLine", back_populates="workorder", cascade="all, delete-orphan", passive_deletes=True
    )


# A requested part/batch on a work order. qty_issued accumulates issues minus returns.
class WorkOrderLine(Base):
    __tablename__ = "workorder_lines"

    id = Column(Integer, primary_key=True, index=True)
    workorder_id = Column(Integer, ForeignKey("workorders.id", ondelete="CASCADE"), nullable=False, index=True)
    item_id = Column(Integer, ForeignKey("items.id"), nullable=False)
    batch_id = Column(Integer, ForeignKey("batches.id"), nullable=False)

    qty_requested = Column(Integer, CheckConstraint("qty_requested > 0", name="ck_lines_qty_requested"), nullable=False)
    qty_issued = Column(Integer, CheckConstraint("qty_issued >= 0", name="ck_lines_qty_issued"), nullable=False, default=0)
    note = Column(String, nullable=True)

    workorder = relationship("WorkOrder", back_populates="lines")
    item = relationship("Item")
    batch = relationship("Batch")
