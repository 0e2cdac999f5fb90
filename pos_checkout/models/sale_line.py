"""Sale Line model."""
from sqlalchemy import Column, Integer, Numeric, ForeignKey
from sqlalchemy.orm import relationship
from pos_checkout.database import Base, BigIntPK


class SaleLine(Base):
    """Sale Line - frozen snapshot of one cart line at commit time."""

    __tablename__ = 'sale_line'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    sale_id = Column(BigIntPK, ForeignKey('sale.id', ondelete='CASCADE'), nullable=False, index=True)
    product_id = Column(BigIntPK, ForeignKey('product.id'), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)
    # Total discount for the line (per-unit discount x quantity)
    discount_amount = Column(Numeric(12, 2), nullable=False, default=0)
    line_total = Column(Numeric(12, 2), nullable=False)

    # Relationships
    sale = relationship('Sale', back_populates='lines')
    product = relationship('Product')

    def __repr__(self):
        return f"<SaleLine(id={self.id}, product_id={self.product_id}, quantity={self.quantity})>"
