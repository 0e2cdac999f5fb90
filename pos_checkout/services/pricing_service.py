"""Pricing Calculator - pure cart totals."""
from dataclasses import dataclass
from decimal import Decimal
from typing import Tuple, Union

from pos_checkout.exceptions import ValidationError
from pos_checkout.services.cart_service import CartStore, CartSnapshot
from pos_checkout.utils.money import to_decimal, round_money, ZERO


@dataclass(frozen=True)
class LinePricing:
    """Exact pricing of one cart line."""
    product_id: int
    quantity: int
    unit_price: Decimal
    discount_amount: Decimal  # per unit
    effective_price: Decimal
    line_total: Decimal

    @property
    def line_discount(self) -> Decimal:
        return self.discount_amount * self.quantity


@dataclass(frozen=True)
class RoundedTotals:
    """Boundary values, rounded to currency precision."""
    subtotal: Decimal
    tax: Decimal
    total: Decimal

    def to_dict(self):
        return {'subtotal': str(self.subtotal), 'tax': str(self.tax), 'total': str(self.total)}


@dataclass(frozen=True)
class Totals:
    """Exact (unrounded) cart totals."""
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    tax_rate: Decimal
    lines: Tuple[LinePricing, ...] = ()

    def rounded(self) -> RoundedTotals:
        subtotal = round_money(self.subtotal)
        tax = round_money(self.tax)
        # Charged total is what the receipt shows: rounded subtotal + rounded tax
        return RoundedTotals(subtotal=subtotal, tax=tax, total=subtotal + tax)


def _check_tax_rate(tax_rate) -> Decimal:
    try:
        rate = to_decimal(tax_rate)
    except ValueError:
        raise ValidationError(f'Invalid tax rate: {tax_rate!r}')
    if rate < 0 or rate > 1:
        raise ValidationError('Tax rate must be a fraction between 0 and 1')
    return rate


def price_line(line) -> LinePricing:
    """Effective price and total of one line."""
    discount = line.discount.amount_for(line.unit_price) if line.discount else ZERO
    effective_price = max(ZERO, line.unit_price - discount)
    return LinePricing(
        product_id=line.product_id,
        quantity=line.quantity,
        unit_price=line.unit_price,
        discount_amount=discount,
        effective_price=effective_price,
        line_total=effective_price * line.quantity,
    )


def compute_totals(cart: Union[CartStore, CartSnapshot], tax_rate) -> Totals:
    """
    Compute subtotal, tax and total for a cart.

    subtotal = sum(max(0, unit_price - discount) * quantity)
    tax      = subtotal * tax_rate
    total    = subtotal + tax

    No rounding is applied here; call Totals.rounded() where values are
    persisted or displayed. The cart is never mutated.
    """
    rate = _check_tax_rate(tax_rate)
    snapshot = cart.snapshot() if isinstance(cart, CartStore) else cart

    lines = tuple(price_line(line) for line in snapshot)
    subtotal = sum((line.line_total for line in lines), ZERO)
    tax = subtotal * rate

    return Totals(
        subtotal=subtotal,
        tax=tax,
        total=subtotal + tax,
        tax_rate=rate,
        lines=lines,
    )
