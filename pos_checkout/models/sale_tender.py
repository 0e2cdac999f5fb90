"""Sale Tender model for single and split payments."""
from sqlalchemy import Column, Integer, String, Numeric, ForeignKey
from sqlalchemy.orm import relationship
from pos_checkout.database import Base, BigIntPK


class SaleTender(Base):
    """
    Sale Tender - one payment instrument applied to a sale.

    A sale has one or more tenders, kept in the order they were presented.
    Card and digital wallet tenders carry the external authorization data
    as received; it is stored, never verified here.
    """

    __tablename__ = 'sale_tender'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    sale_id = Column(BigIntPK, ForeignKey('sale.id', ondelete='CASCADE'), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)

    kind = Column(String(20), nullable=False)  # cash, card, digital_wallet, store_credit
    amount = Column(Numeric(12, 2), nullable=False)  # Amount applied to the sale

    # Only for CASH payments
    amount_received = Column(Numeric(12, 2))  # Amount given by customer
    change_amount = Column(Numeric(12, 2))    # Change returned

    card_last_four = Column(String(4))
    external_transaction_id = Column(String(100))
    approval_code = Column(String(100))

    # Relationships
    sale = relationship('Sale', back_populates='tenders')

    def __repr__(self):
        return f"<SaleTender(id={self.id}, sale_id={self.sale_id}, kind={self.kind}, amount={self.amount})>"
