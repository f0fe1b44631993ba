# backend/models/item.py
from sqlalchemy import Column, Integer, String, ForeignKey, CheckConstraint, UniqueConstraint
from sqlalchemy.orm import relationship
from database import Base

# Model Item
# A distinct part / SKU, identified by its part_number.
class Item(Base):
    __tablename__ = "items"

    id = Column(Integer, primary_key=True, index=True)
    part_number = Column(String, unique=True, nullable=False, index=True)

    batches = relationship("Batch", back_populates="item", cascade="all, delete-orphan", passive_deletes=True)


# Model Batch
# A countable lot of an Item with its own on-hand quantity and storage place.
class Batch(Base):
    __tablename__ = "batches"
    __table_args__ = (
        UniqueConstraint("item_id", "batch_number", name="uq_batches_item_batch"),
    )

    id = Column(Integer, primary_key=True, index=True)
    item_id = Column(Integer, ForeignKey("items.id", ondelete="CASCADE"), nullable=False, index=True)
    batch_number = Column(String, nullable=False)

    # On-hand quantity, never negative.
    quantity = Column(Integer, CheckConstraint("quantity >= 0", name="ck_batches_quantity"), nullable=False, default=0)

    condition = Column(String, nullable=True, default="NEW")
    location = Column(String, nullable=True)
    site = Column(String, nullable=True)
    bin = Column(String, nullable=True)

    item = relationship("Item", back_populates="batches")
