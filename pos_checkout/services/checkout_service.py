"""
Checkout Orchestrator - turns a cart and a reconciled tender set into a sale.

Commit unit (one database transaction):
    sale header -> sale lines -> tenders -> per line: stock decrement + movement

Either the whole unit commits or nothing is visible. Loyalty accrual runs
afterwards, outside the unit, and never fails the checkout.

Failures are returned as CheckoutResult(ok=False, error=...) so callers get
a typed outcome instead of an exception. The cart is cleared only on success.
"""
import enum
import hashlib
import json
import logging
import time
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, Optional

from sqlalchemy.exc import IntegrityError, OperationalError, DataError, DBAPIError

from pos_checkout.blueprints.metrics import checkouts_total, checkout_duration_seconds
from pos_checkout.exceptions import (
    PosError, ValidationError, NotFoundError, TenderRejectedError, DurabilityError
)
from pos_checkout.models import Product, Customer, Sale, SaleLine, SaleTender, SaleStatus, PaymentStatus
from pos_checkout.services import inventory_service
from pos_checkout.services.cart_service import CartStore, CartSnapshot
from pos_checkout.services.loyalty_service import add_points, points_for_total
from pos_checkout.services.pricing_service import compute_totals, Totals, RoundedTotals
from pos_checkout.services.tender_service import (
    Tender, TenderKind, CheckoutMode, Reconciliation, reconcile, DEFAULT_SPLIT_TOLERANCE
)
from pos_checkout.utils.money import round_money, format_money, ZERO

# Size of the Sale key and reference columns
MAX_REFERENCE_LENGTH = 64

logger = logging.getLogger(__name__)


class CheckoutState(str, enum.Enum):
    IDLE = 'idle'
    RECONCILING = 'reconciling'
    COMMITTING = 'committing'
    COMMITTED = 'committed'
    FAILED = 'failed'


@dataclass(frozen=True)
class CheckoutResult:
    """Typed outcome of a checkout attempt."""
    ok: bool
    state: CheckoutState
    sale_id: Optional[int] = None
    sale_number: Optional[str] = None
    totals: Optional[RoundedTotals] = None
    change: Decimal = ZERO
    duplicate: bool = False
    error: Optional[PosError] = None
    reconciliation: Optional[Reconciliation] = None

    @property
    def retryable(self) -> bool:
        return bool(self.error and self.error.retryable)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'ok': self.ok,
            'state': self.state.value,
            'sale_id': self.sale_id,
            'sale_number': self.sale_number,
            'totals': self.totals.to_dict() if self.totals else None,
            'change': str(self.change),
            'duplicate': self.duplicate,
        }
        if self.error:
            data['error'] = self.error.to_dict()
        if self.reconciliation:
            data['reconciliation'] = self.reconciliation.to_dict()
        return data


def generate_sale_number() -> str:
    """Random sale number (80 bits); collisions are retried by the orchestrator."""
    return f"S-{uuid.uuid4().hex[:20].upper()}"


def request_fingerprint(cart: CartSnapshot, tenders: Iterable[Tender], customer_id: Optional[int]) -> str:
    """
    SHA-256 of the checkout request, used to detect reuse of an idempotency key.

    Amounts are normalized first so 11.6 and 11.60 hash the same.
    """
    payload = {
        'lines': [
            {
                'product_id': line.product_id,
                'qty': line.quantity,
                'unit_price': str(round_money(line.unit_price)),
                'discount': (
                    [line.discount.kind.value, str(line.discount.value.normalize())]
                    if line.discount else None
                ),
            }
            for line in sorted(cart, key=lambda l: l.product_id)
        ],
        'tenders': [
            dict(t.to_dict(), amount=str(round_money(t.amount)))
            for t in tenders
        ],
        'customer_id': customer_id,
    }
    encoded = json.dumps(payload, sort_keys=True, separators=(',', ':')).encode('utf-8')
    return hashlib.sha256(encoded).hexdigest()


class CheckoutOrchestrator:
    """
    Checkout state machine.

    idle -> reconciling -> committing -> committed
                 |              |
                 +----> failed <+
    """

    def __init__(
        self,
        session,
        tax_rate=Decimal('0.08'),
        sale_number_factory: Callable[[], str] = generate_sale_number,
        max_attempts: int = 3,
        retry_backoff: float = 0.05,
        stock_retry_limit: int = 3,
        split_tolerance=DEFAULT_SPLIT_TOLERANCE,
        points_per_unit: int = 1,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.session = session
        self.tax_rate = tax_rate
        self.sale_number_factory = sale_number_factory
        self.max_attempts = max(1, max_attempts)
        self.retry_backoff = retry_backoff
        self.stock_retry_limit = stock_retry_limit
        self.split_tolerance = split_tolerance
        self.points_per_unit = points_per_unit
        self._sleep = sleep
        self.state = CheckoutState.IDLE

    @classmethod
    def from_config(cls, session, config, **overrides) -> 'CheckoutOrchestrator':
        """Build an orchestrator from a Flask config mapping."""
        options = {
            'tax_rate': config.get('TAX_RATE', Decimal('0.08')),
            'max_attempts': config.get('CHECKOUT_MAX_ATTEMPTS', 3),
            'retry_backoff': config.get('CHECKOUT_RETRY_BACKOFF', 0.05),
            'stock_retry_limit': config.get('STOCK_CONFLICT_RETRIES', 3),
            'split_tolerance': config.get('SPLIT_TENDER_TOLERANCE', DEFAULT_SPLIT_TOLERANCE),
            'points_per_unit': config.get('LOYALTY_POINTS_PER_UNIT', 1),
        }
        options.update(overrides)
        return cls(session, **options)

    def _transition(self, state: CheckoutState) -> None:
        logger.debug(f"[CHECKOUT] {self.state.value} -> {state.value}")
        self.state = state

    def _fail(self, error: PosError, totals: Optional[RoundedTotals] = None,
              reconciliation: Optional[Reconciliation] = None) -> CheckoutResult:
        self._transition(CheckoutState.FAILED)
        log = logger.error if error.retryable else logger.info
        log(f"[CHECKOUT] Failed ({error.code}): {error.message}")
        return CheckoutResult(
            ok=False, state=self.state, totals=totals, error=error, reconciliation=reconciliation
        )

    def checkout(
        self,
        cart: CartStore,
        tenders: Iterable[Tender],
        idempotency_key: str,
        cashier_id: str,
        store_id: str,
        customer_id: Optional[int] = None,
        mode: Optional[CheckoutMode] = None
    ) -> CheckoutResult:
        """
        Commit the cart as a sale paid by the given tenders.

        Repeating a call with the same idempotency key and the same request
        returns the sale created the first time (duplicate=True) without
        writing anything.
        """
        started = time.monotonic()
        self.state = CheckoutState.IDLE
        result = self._checkout(cart, list(tenders), idempotency_key, cashier_id, store_id, customer_id, mode)

        if result.ok:
            outcome = 'duplicate' if result.duplicate else 'committed'
        else:
            outcome = result.error.code
        checkouts_total.labels(outcome=outcome).inc()
        checkout_duration_seconds.observe(time.monotonic() - started)
        return result

    def _checkout(self, cart, tenders, idempotency_key, cashier_id, store_id, customer_id, mode) -> CheckoutResult:
        if not idempotency_key:
            return self._fail(ValidationError('Idempotency key is required'))
        if not cashier_id or not store_id:
            return self._fail(ValidationError('Cashier and store are required'))
        for name, value in (('Idempotency key', idempotency_key), ('Cashier', cashier_id), ('Store', store_id)):
            if len(value) > MAX_REFERENCE_LENGTH:
                return self._fail(ValidationError(f'{name} must be at most {MAX_REFERENCE_LENGTH} characters'))
        try:
            for tender in tenders:
                tender.validate()
        except ValidationError as e:
            return self._fail(e)

        snapshot = cart.snapshot()
        if snapshot.is_empty:
            return self._fail(ValidationError('Cart is empty'))

        self._transition(CheckoutState.RECONCILING)
        try:
            totals = compute_totals(snapshot, self.tax_rate)
        except ValidationError as e:
            return self._fail(e)
        rounded = totals.rounded()

        try:
            reconciliation = reconcile(tenders, rounded.total, mode, self.split_tolerance)
        except ValueError as e:
            return self._fail(ValidationError(str(e)), rounded)
        if not reconciliation.ok:
            error = TenderRejectedError(
                reconciliation.reason.value, reconciliation.message, reconciliation.difference
            )
            return self._fail(error, rounded, reconciliation)

        fingerprint = request_fingerprint(snapshot, tenders, customer_id)
        existing = self._find_sale(idempotency_key)
        if existing:
            return self._replay(existing, fingerprint, cart)

        if customer_id is not None and not self.session.query(Customer.id).filter(Customer.id == customer_id).first():
            return self._fail(NotFoundError(f'Customer {customer_id} not found'), rounded, reconciliation)

        self._transition(CheckoutState.COMMITTING)
        sale_number = self.sale_number_factory()
        attempt = 0
        while True:
            attempt += 1
            try:
                sale = self._commit_unit(
                    snapshot, totals, rounded, reconciliation, tenders,
                    sale_number, idempotency_key, fingerprint, cashier_id, store_id, customer_id
                )
                self.session.commit()
                break
            except PosError as e:
                # Business failures (stock, validation) are terminal for this request
                self.session.rollback()
                return self._fail(e, rounded, reconciliation)
            except IntegrityError as e:
                self.session.rollback()
                existing = self._find_sale(idempotency_key)
                if existing:
                    # Lost the race to a concurrent commit of the same request
                    return self._replay(existing, fingerprint, cart)
                if self._sale_number_taken(sale_number) and attempt < self.max_attempts:
                    logger.warning(f"[CHECKOUT] Sale number {sale_number} already used, generating a new one")
                    sale_number = self.sale_number_factory()
                    continue
                logger.error(f"[CHECKOUT] Integrity error committing sale: {e}", exc_info=True)
                return self._fail(DurabilityError('The sale could not be recorded'), rounded, reconciliation)
            except DataError as e:
                # Storage refused a value; retrying would fail the same way
                self.session.rollback()
                logger.warning(f"[CHECKOUT] Storage rejected sale data: {e}")
                return self._fail(ValidationError('Checkout data was rejected by storage'), rounded, reconciliation)
            except DBAPIError as e:
                self.session.rollback()
                if not (isinstance(e, OperationalError) or e.connection_invalidated):
                    self._transition(CheckoutState.FAILED)
                    raise
                if attempt >= self.max_attempts:
                    logger.error(f"[CHECKOUT] Storage error, giving up after {attempt} attempts: {e}")
                    return self._fail(DurabilityError(), rounded, reconciliation)
                delay = self.retry_backoff * (2 ** (attempt - 1))
                logger.warning(f"[CHECKOUT] Storage error on attempt {attempt}, retrying in {delay:.2f}s: {e}")
                self._sleep(delay)
            except Exception:
                self.session.rollback()
                self._transition(CheckoutState.FAILED)
                raise

        sale_id = sale.id
        self._transition(CheckoutState.COMMITTED)
        logger.info(
            f"[CHECKOUT] Sale {sale_number} committed: {len(snapshot)} lines, "
            f"total {format_money(rounded.total)}, cashier {cashier_id}, store {store_id}"
        )

        self._accrue_loyalty(customer_id, rounded.total)
        cart.clear()

        return CheckoutResult(
            ok=True,
            state=self.state,
            sale_id=sale_id,
            sale_number=sale_number,
            totals=rounded,
            change=reconciliation.change,
            reconciliation=reconciliation,
        )

    def _commit_unit(self, snapshot, totals: Totals, rounded: RoundedTotals, reconciliation, tenders,
                     sale_number, idempotency_key, fingerprint, cashier_id, store_id, customer_id) -> Sale:
        """Write header, lines, tenders, stock and movements. Does not commit."""
        product_ids = [line.product_id for line in snapshot]
        products = self.session.query(Product).filter(Product.id.in_(product_ids)).all()
        if len(products) != len(product_ids):
            raise NotFoundError('One or more products in the cart no longer exist')
        products_dict = {p.id: p for p in products}
        for p in products:
            if not p.active:
                raise ValidationError(f'Product "{p.name}" is not active')

        sale = Sale(
            sale_number=sale_number,
            idempotency_key=idempotency_key,
            request_fingerprint=fingerprint,
            customer_id=customer_id,
            cashier_id=cashier_id,
            store_id=store_id,
            tax_rate=totals.tax_rate,
            subtotal=rounded.subtotal,
            tax_amount=rounded.tax,
            discount_amount=Decimal('0.00'),
            total_amount=rounded.total,
            payment_status=PaymentStatus.COMPLETED,
            status=SaleStatus.ACTIVE
        )
        self.session.add(sale)
        self.session.flush()

        for line in totals.lines:
            self.session.add(SaleLine(
                sale_id=sale.id,
                product_id=line.product_id,
                quantity=line.quantity,
                unit_price=round_money(line.unit_price),
                discount_amount=round_money(line.line_discount),
                line_total=round_money(line.line_total)
            ))

        for position, tender in enumerate(tenders):
            change = reconciliation.change if tender.kind == TenderKind.CASH and reconciliation.mode == CheckoutMode.CASH else ZERO
            self.session.add(SaleTender(
                sale_id=sale.id,
                position=position,
                kind=tender.kind.value,
                amount=round_money(tender.amount - change),
                amount_received=round_money(tender.amount) if tender.kind == TenderKind.CASH else None,
                change_amount=round_money(change) if tender.kind == TenderKind.CASH else None,
                card_last_four=tender.card_last_four,
                external_transaction_id=tender.external_transaction_id,
                approval_code=tender.approval_code
            ))
        self.session.flush()

        # Product-id order so concurrent sales lock rows in the same order
        for line in sorted(totals.lines, key=lambda l: l.product_id):
            inventory_service.decrement_for_sale(
                self.session,
                product_id=line.product_id,
                qty=line.quantity,
                sale_id=sale.id,
                actor=cashier_id,
                store_id=store_id,
                max_retries=self.stock_retry_limit,
                product_name=products_dict[line.product_id].name
            )
        return sale

    def _find_sale(self, idempotency_key: str) -> Optional[Sale]:
        return self.session.query(Sale).filter(Sale.idempotency_key == idempotency_key).first()

    def _sale_number_taken(self, sale_number: str) -> bool:
        return self.session.query(Sale.id).filter(Sale.sale_number == sale_number).first() is not None

    def _replay(self, sale: Sale, fingerprint: str, cart: CartStore) -> CheckoutResult:
        """Answer a repeated request with the sale it already produced."""
        if sale.request_fingerprint != fingerprint:
            return self._fail(ValidationError(
                'Idempotency key was already used for a different checkout',
                payload={'sale_number': sale.sale_number}
            ))

        logger.info(f"[CHECKOUT] Duplicate request for sale {sale.sale_number}, returning existing sale")
        self._transition(CheckoutState.COMMITTED)
        cart.clear()
        return CheckoutResult(
            ok=True,
            state=self.state,
            sale_id=sale.id,
            sale_number=sale.sale_number,
            totals=RoundedTotals(subtotal=sale.subtotal, tax=sale.tax_amount, total=sale.total_amount),
            change=sale.change_due,
            duplicate=True
        )

    def _accrue_loyalty(self, customer_id: Optional[int], total: Decimal) -> None:
        """Best effort: failures are logged and never undo the sale."""
        if customer_id is None:
            return
        points = points_for_total(total, self.points_per_unit)
        try:
            add_points(self.session, customer_id, points, amount_spent=total)
        except Exception as e:
            self.session.rollback()
            logger.warning(f"[LOYALTY] Could not credit {points} points to customer {customer_id}: {e}", exc_info=True)
