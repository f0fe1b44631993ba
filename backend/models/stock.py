# backend/models/stock.py
from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, CheckConstraint, func
from sqlalchemy.orm import relationship
from database import Base

MOVEMENT_TYPES = ("ADJUST", "ISSUE", "RETURN")

# Append-only audit record of a quantity change on a batch.
# Rows are never updated or deleted; batch_id becomes NULL when the batch is removed.
class StockMovement(Base):
    __tablename__ = "stock_movements"
    __table_args__ = (
        CheckConstraint(
            "movement_type IN ('ADJUST', 'ISSUE', 'RETURN')", name="ck_stock_movements_type"
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    item_id = Column(Integer, ForeignKey("items.id"), nullable=False, index=True)
    batch_id = Column(Integer, ForeignKey("batches.id", ondelete="SET NULL"), nullable=True, index=True)

    movement_type = Column(String(16), nullable=False)
    # Signed quantity: negative for ISSUE, positive for RETURN, either for ADJUST
    qty_change = Column(Integer, nullable=False)

    reason = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    item = relationship("Item")
    batch = relationship("Batch")
