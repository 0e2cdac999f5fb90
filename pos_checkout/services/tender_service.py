"""
Tender Reconciler.

Validates a proposed set of payment instruments against the amount to
charge. Reconciliation is a pure check: it never touches storage, so a
split-payment form can call it on every keystroke.

Rules by checkout mode:
    cash                 one tender, amount >= total (change = amount - total)
    card, digital_wallet one tender, amount == total; the approval code is
    store_credit         taken as already granted by the terminal
    split                two or more tenders, |sum - total| <= tolerance
"""
import enum
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional, Sequence

from pos_checkout.exceptions import TenderRejectedError, ValidationError
from pos_checkout.utils.money import to_decimal, format_money, ZERO

DEFAULT_SPLIT_TOLERANCE = Decimal('0.01')

# Column sizes of SaleTender
METADATA_LIMITS = {
    'card_last_four': 4,
    'external_transaction_id': 100,
    'approval_code': 100,
}


class TenderKind(str, enum.Enum):
    CASH = 'cash'
    CARD = 'card'
    DIGITAL_WALLET = 'digital_wallet'
    STORE_CREDIT = 'store_credit'


class CheckoutMode(str, enum.Enum):
    CASH = 'cash'
    CARD = 'card'
    DIGITAL_WALLET = 'digital_wallet'
    STORE_CREDIT = 'store_credit'
    SPLIT = 'split'


class Rejection(str, enum.Enum):
    """Why a tender set was rejected."""
    NO_TENDERS = 'no_tenders'
    NON_POSITIVE_AMOUNT = 'non_positive_amount'
    TENDER_COUNT = 'tender_count'
    KIND_MISMATCH = 'kind_mismatch'
    INSUFFICIENT_CASH = 'insufficient_cash'
    AMOUNT_MISMATCH = 'amount_mismatch'
    SPLIT_MISMATCH = 'split_mismatch'


def _optional_str(value) -> Optional[str]:
    if value is None or value == '':
        return None
    return str(value)


@dataclass(frozen=True)
class Tender:
    """One payment instrument and its amount."""
    kind: TenderKind
    amount: Decimal
    card_last_four: Optional[str] = None
    external_transaction_id: Optional[str] = None
    approval_code: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Tender':
        """Parse a tender from a request payload."""
        try:
            kind = TenderKind(str(data.get('kind') or data.get('type') or '').lower())
        except ValueError:
            raise ValidationError(f"Unknown tender kind: {data.get('kind') or data.get('type')}")
        try:
            amount = to_decimal(data.get('amount'))
        except ValueError as e:
            raise ValidationError(str(e))
        tender = cls(
            kind=kind,
            amount=amount,
            card_last_four=_optional_str(data.get('card_last_four')),
            external_transaction_id=_optional_str(
                data.get('external_transaction_id') or data.get('transaction_id')
            ),
            approval_code=_optional_str(data.get('approval_code')),
        )
        tender.validate()
        return tender

    def validate(self) -> None:
        """Reject terminal metadata that cannot be stored on the tender row."""
        for field, limit in METADATA_LIMITS.items():
            value = getattr(self, field)
            if value is not None and len(value) > limit:
                raise ValidationError(f'{field} must be at most {limit} characters')
        if self.card_last_four is not None and not self.card_last_four.isdigit():
            raise ValidationError('card_last_four must be digits')

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind.value,
            'amount': str(self.amount),
            'card_last_four': self.card_last_four,
            'external_transaction_id': self.external_transaction_id,
            'approval_code': self.approval_code,
        }


@dataclass(frozen=True)
class Reconciliation:
    """Outcome of reconcile(); ok=False carries the rejection reason."""
    ok: bool
    mode: Optional[CheckoutMode]
    required_total: Decimal
    tendered: Decimal
    difference: Decimal  # signed: tendered - required_total
    change: Decimal = ZERO
    reason: Optional[Rejection] = None
    message: str = ''

    def raise_for_rejection(self) -> None:
        if not self.ok:
            raise TenderRejectedError(self.reason.value, self.message, self.difference)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'ok': self.ok,
            'mode': self.mode.value if self.mode else None,
            'required_total': str(self.required_total),
            'tendered': str(self.tendered),
            'difference': str(self.difference),
            'change': str(self.change),
            'reason': self.reason.value if self.reason else None,
            'message': self.message,
        }


def infer_mode(tenders: Sequence[Tender]) -> Optional[CheckoutMode]:
    """One tender pays in its own kind; several tenders are a split."""
    if not tenders:
        return None
    if len(tenders) == 1:
        return CheckoutMode(tenders[0].kind.value)
    return CheckoutMode.SPLIT


def reconcile(
    tenders: Iterable[Tender],
    required_total,
    mode: Optional[CheckoutMode] = None,
    tolerance=DEFAULT_SPLIT_TOLERANCE,
) -> Reconciliation:
    """Check a tender set against the total to charge."""
    tenders = list(tenders)
    total = to_decimal(required_total)
    tolerance = to_decimal(tolerance)
    mode = CheckoutMode(mode) if mode is not None else infer_mode(tenders)
    tendered = sum((t.amount for t in tenders), ZERO)
    difference = tendered - total

    def reject(reason: Rejection, message: str) -> Reconciliation:
        return Reconciliation(
            ok=False, mode=mode, required_total=total, tendered=tendered,
            difference=difference, reason=reason, message=message,
        )

    if not tenders:
        return reject(Rejection.NO_TENDERS, 'At least one tender is required')

    for tender in tenders:
        if tender.amount <= 0:
            return reject(
                Rejection.NON_POSITIVE_AMOUNT,
                f'{tender.kind.value} tender amount must be greater than 0'
            )

    if mode == CheckoutMode.SPLIT:
        if len(tenders) < 2:
            return reject(Rejection.TENDER_COUNT, 'Split payment needs two or more tenders')
        if abs(difference) > tolerance:
            return reject(
                Rejection.SPLIT_MISMATCH,
                f'Tenders sum to {format_money(tendered)}, total is {format_money(total)} '
                f'(difference {format_money(difference)})'
            )
        return Reconciliation(
            ok=True, mode=mode, required_total=total, tendered=tendered, difference=difference,
        )

    if len(tenders) != 1:
        return reject(Rejection.TENDER_COUNT, f'{mode.value} payment takes exactly one tender')

    tender = tenders[0]
    if tender.kind.value != mode.value:
        return reject(
            Rejection.KIND_MISMATCH,
            f'{tender.kind.value} tender cannot pay a {mode.value} checkout'
        )

    if mode == CheckoutMode.CASH:
        if tender.amount < total:
            return reject(
                Rejection.INSUFFICIENT_CASH,
                f'Cash {format_money(tender.amount)} does not cover total {format_money(total)}'
            )
        return Reconciliation(
            ok=True, mode=mode, required_total=total, tendered=tendered,
            difference=difference, change=difference,
        )

    if tender.amount != total:
        return reject(
            Rejection.AMOUNT_MISMATCH,
            f'{tender.kind.value} amount {format_money(tender.amount)} must equal total {format_money(total)}'
        )
    return Reconciliation(ok=True, mode=mode, required_total=total, tendered=tendered, difference=difference)
