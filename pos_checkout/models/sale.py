"""Sale model."""
from decimal import Decimal
from sqlalchemy import Column, String, Numeric, DateTime, Enum, Text, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from pos_checkout.database import Base, BigIntPK
import enum


class PaymentStatus(str, enum.Enum):
    """Payment status of a sale."""
    PENDING = 'pending'
    COMPLETED = 'completed'
    FAILED = 'failed'
    REFUNDED = 'refunded'


class SaleStatus(str, enum.Enum):
    """Lifecycle status; void/return transitions are recorded by other tools."""
    ACTIVE = 'active'
    VOIDED = 'voided'
    RETURNED = 'returned'


class Sale(Base):
    """Sale (committed checkout)."""

    __tablename__ = 'sale'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    sale_number = Column(String(40), unique=True, nullable=False, index=True)

    # Idempotency key to prevent duplicate sales on retried commits
    idempotency_key = Column(String(64), unique=True, nullable=False, index=True)
    request_fingerprint = Column(String(64), nullable=False)

    customer_id = Column(BigIntPK, ForeignKey('customer.id'), nullable=True)
    cashier_id = Column(String(64), nullable=False)
    store_id = Column(String(64), nullable=False)

    tax_rate = Column(Numeric(6, 4), nullable=False)
    subtotal = Column(Numeric(12, 2), nullable=False)
    tax_amount = Column(Numeric(12, 2), nullable=False)
    discount_amount = Column(Numeric(12, 2), nullable=False, default=0, server_default='0')
    total_amount = Column(Numeric(12, 2), nullable=False)

    payment_status = Column(
        Enum(PaymentStatus, name='payment_status', values_callable=lambda e: [m.value for m in e]),
        nullable=False, default=PaymentStatus.PENDING
    )
    status = Column(
        Enum(SaleStatus, name='sale_status', values_callable=lambda e: [m.value for m in e]),
        nullable=False, default=SaleStatus.ACTIVE
    )
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    # Relationships
    customer = relationship('Customer', back_populates='sales')
    lines = relationship('SaleLine', back_populates='sale', cascade='all, delete-orphan')
    tenders = relationship(
        'SaleTender', back_populates='sale', cascade='all, delete-orphan',
        order_by='SaleTender.position'
    )
    movements = relationship('InventoryMovement', back_populates='sale')

    @property
    def amount_tendered(self):
        """Sum of tender amounts applied to the sale."""
        return sum((t.amount for t in self.tenders), Decimal('0'))

    @property
    def change_due(self):
        """Cash handed back to the customer."""
        return sum((t.change_amount or Decimal('0') for t in self.tenders), Decimal('0'))

    def is_balanced(self, tolerance=Decimal('0.01')):
        """total = subtotal + tax - discount, within rounding tolerance."""
        expected = self.subtotal + self.tax_amount - self.discount_amount
        return abs(expected - self.total_amount) <= tolerance

    def __repr__(self):
        return f"<Sale(id={self.id}, number={self.sale_number}, total={self.total_amount}, status={self.status.value})>"
