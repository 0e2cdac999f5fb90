"""
Cart Store - in-memory cart owned by one checkout session.

The cart is a plain object passed explicitly through the session's call
chain; it is the only mutator of cart state and the only input of pricing.
"""
import enum
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Dict, Iterator, Optional, Tuple, Any

from pos_checkout.exceptions import ValidationError, NotFoundError
from pos_checkout.utils.money import to_decimal, ZERO


class DiscountType(str, enum.Enum):
    """Per-line discount kind."""
    PERCENTAGE = 'percentage'
    FIXED = 'fixed'


@dataclass(frozen=True)
class Discount:
    """Tagged discount applied to a line's unit price."""
    kind: DiscountType
    value: Decimal

    def amount_for(self, unit_price: Decimal) -> Decimal:
        """Per-unit discount, clamped so the effective price stays in [0, unit_price]."""
        if self.kind == DiscountType.PERCENTAGE:
            raw = unit_price * self.value / Decimal(100)
        else:
            raw = self.value
        return min(max(raw, ZERO), unit_price)

    @classmethod
    def parse(cls, kind: Any, value: Any) -> 'Discount':
        """Build a discount from request data, validating its range."""
        try:
            discount_type = DiscountType(str(kind).lower())
        except ValueError:
            raise ValidationError(f'Unknown discount type: {kind}')
        try:
            amount = to_decimal(value)
        except ValueError as e:
            raise ValidationError(str(e))

        if amount < 0:
            raise ValidationError('Discount cannot be negative')
        if discount_type == DiscountType.PERCENTAGE and amount > 100:
            raise ValidationError('Percentage discount must be between 0 and 100')
        return cls(discount_type, amount)


@dataclass(frozen=True)
class LineItem:
    """One cart line; unit_price is the price snapshot taken at add time."""
    product_id: int
    name: str
    unit_price: Decimal
    quantity: int
    discount: Optional[Discount] = None


@dataclass(frozen=True)
class CartSnapshot:
    """Immutable copy of a cart, safe to price and commit."""
    lines: Tuple[LineItem, ...] = ()

    def __iter__(self) -> Iterator[LineItem]:
        return iter(self.lines)

    def __len__(self) -> int:
        return len(self.lines)

    @property
    def is_empty(self) -> bool:
        return not self.lines

    @property
    def item_count(self) -> int:
        return sum(line.quantity for line in self.lines)


def _check_quantity(qty: Any) -> int:
    if isinstance(qty, bool) or not isinstance(qty, int):
        try:
            qty_decimal = to_decimal(qty)
        except ValueError:
            raise ValidationError('Quantity must be a whole number')
        if qty_decimal != qty_decimal.to_integral_value():
            raise ValidationError('Quantity must be a whole number')
        qty = int(qty_decimal)
    return qty


class CartStore:
    """Mutable cart keyed by product id."""

    def __init__(self):
        self._lines: Dict[int, LineItem] = {}

    def __len__(self) -> int:
        return len(self._lines)

    def __contains__(self, product_id: int) -> bool:
        return int(product_id) in self._lines

    @property
    def is_empty(self) -> bool:
        return not self._lines

    def get(self, product_id: int) -> Optional[LineItem]:
        return self._lines.get(int(product_id))

    def add(self, product, qty: int = 1) -> LineItem:
        """
        Add a product, or increment its quantity if it is already in the cart.

        The unit price is snapshotted on first add and kept on increments.
        """
        qty = _check_quantity(qty)
        if qty <= 0:
            raise ValidationError('Quantity must be greater than 0')
        if not getattr(product, 'active', True):
            raise ValidationError(f'Product "{product.name}" is not active')

        product_id = int(product.id)
        line = self._lines.get(product_id)
        if line:
            line = replace(line, quantity=line.quantity + qty)
        else:
            line = LineItem(
                product_id=product_id,
                name=product.name,
                unit_price=to_decimal(product.price),
                quantity=qty,
            )
        self._lines[product_id] = line
        return line

    def set_quantity(self, product_id: int, qty: int) -> Optional[LineItem]:
        """Set a line's quantity; zero or less removes the line."""
        product_id = int(product_id)
        qty = _check_quantity(qty)
        if product_id not in self._lines:
            raise NotFoundError('Product is not in the cart')
        if qty <= 0:
            self.remove(product_id)
            return None
        line = replace(self._lines[product_id], quantity=qty)
        self._lines[product_id] = line
        return line

    def apply_discount(self, product_id: int, discount: Optional[Discount]) -> LineItem:
        """Set or clear (discount=None) the discount of a line."""
        product_id = int(product_id)
        if product_id not in self._lines:
            raise NotFoundError('Product is not in the cart')
        line = replace(self._lines[product_id], discount=discount)
        self._lines[product_id] = line
        return line

    def remove(self, product_id: int) -> None:
        self._lines.pop(int(product_id), None)

    def clear(self) -> None:
        self._lines.clear()

    def snapshot(self) -> CartSnapshot:
        # LineItems are frozen, so a tuple of them is a full copy
        return CartSnapshot(tuple(self._lines.values()))

    # Session persistence

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe representation (amounts as strings)."""
        items = {}
        for product_id, line in self._lines.items():
            items[str(product_id)] = {
                'name': line.name,
                'unit_price': str(line.unit_price),
                'qty': line.quantity,
                'discount': (
                    {'type': line.discount.kind.value, 'value': str(line.discount.value)}
                    if line.discount else None
                ),
            }
        return {'items': items}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'CartStore':
        cart = cls()
        for product_id, item in ((data or {}).get('items') or {}).items():
            discount = None
            if item.get('discount'):
                discount = Discount(
                    DiscountType(item['discount']['type']),
                    to_decimal(item['discount']['value'])
                )
            cart._lines[int(product_id)] = LineItem(
                product_id=int(product_id),
                name=item.get('name', ''),
                unit_price=to_decimal(item['unit_price']),
                quantity=int(item['qty']),
                discount=discount,
            )
        return cart
