"""Loyalty accrual - points per whole currency unit spent."""
import logging
import math
from decimal import Decimal
from typing import Optional

from pos_checkout.exceptions import ValidationError, NotFoundError
from pos_checkout.models import Customer
from pos_checkout.utils.money import to_decimal

logger = logging.getLogger(__name__)


def points_for_total(total, points_per_unit: int = 1) -> int:
    """floor(total) * points_per_unit; refunds and zero totals earn nothing."""
    amount = to_decimal(total)
    if amount <= 0:
        return 0
    return math.floor(amount) * points_per_unit


def add_points(session, customer_id: int, points: int, amount_spent: Optional[Decimal] = None) -> Customer:
    """
    Credit loyalty points (and spend) to a customer and commit.

    Runs in its own transaction after the sale is committed.
    """
    if points < 0:
        raise ValidationError('Points cannot be negative')

    values = {Customer.loyalty_points: Customer.loyalty_points + points}
    if amount_spent is not None:
        values[Customer.total_spent] = Customer.total_spent + to_decimal(amount_spent)

    # Increment in SQL so concurrent sales for one customer don't overwrite each other
    updated = session.query(Customer).filter(Customer.id == customer_id).update(
        values, synchronize_session=False
    )
    if updated != 1:
        session.rollback()
        raise NotFoundError(f'Customer {customer_id} not found')

    session.commit()
    customer = session.query(Customer).populate_existing().filter(Customer.id == customer_id).one()
    logger.info(f"[LOYALTY] +{points} points for customer {customer_id} (balance {customer.loyalty_points})")
    return customer
