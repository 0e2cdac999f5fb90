"""Inventory Movement model (append-only stock audit log)."""
from sqlalchemy import Column, Integer, String, Text, DateTime, Enum, ForeignKey, CheckConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from pos_checkout.database import Base, BigIntPK
import enum


class MovementType(str, enum.Enum):
    """Cause of a stock change."""
    SALE = 'sale'
    PURCHASE = 'purchase'
    ADJUSTMENT = 'adjustment'
    SHRINKAGE = 'shrinkage'
    SPOILAGE = 'spoilage'
    TRANSFER = 'transfer'


class InventoryMovement(Base):
    """One stock quantity change with the levels before and after it."""

    __tablename__ = 'inventory_movement'
    __table_args__ = (
        CheckConstraint(
            'previous_quantity + quantity_change = new_quantity',
            name='ck_inventory_movement_balance'
        ),
        CheckConstraint('new_quantity >= 0', name='ck_inventory_movement_non_negative'),
    )

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    product_id = Column(BigIntPK, ForeignKey('product.id'), nullable=False, index=True)
    store_id = Column(String(64), nullable=False)
    movement_type = Column(
        Enum(MovementType, name='movement_type', values_callable=lambda e: [m.value for m in e]),
        nullable=False
    )
    quantity_change = Column(Integer, nullable=False)
    previous_quantity = Column(Integer, nullable=False)
    new_quantity = Column(Integer, nullable=False)
    reason = Column(Text, nullable=True)
    reference_id = Column(BigIntPK, ForeignKey('sale.id'), nullable=True, index=True)
    created_by = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    # Relationships
    product = relationship('Product')
    sale = relationship('Sale', back_populates='movements')

    def __repr__(self):
        return (
            f"<InventoryMovement(id={self.id}, product_id={self.product_id}, "
            f"type={self.movement_type.value}, {self.previous_quantity}->{self.new_quantity})>"
        )
