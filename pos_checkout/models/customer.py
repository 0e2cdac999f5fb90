"""Customer model."""
from sqlalchemy import Column, String, Integer, Numeric, DateTime
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from pos_checkout.database import Base, BigIntPK


class Customer(Base):
    """Customer with loyalty balance."""

    __tablename__ = 'customer'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False, default='')
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    loyalty_points = Column(Integer, nullable=False, default=0, server_default='0')
    total_spent = Column(Numeric(12, 2), nullable=False, default=0, server_default='0')
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    # Relationships
    sales = relationship('Sale', back_populates='customer')

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}".strip()

    def __repr__(self):
        return f"<Customer(id={self.id}, name='{self.full_name}', points={self.loyalty_points})>"
