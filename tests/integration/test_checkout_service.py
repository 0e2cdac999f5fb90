"""
Integration tests for the checkout orchestrator against a real database.
"""

import pytest
from decimal import Decimal
from sqlalchemy.exc import OperationalError, DataError, DBAPIError, ProgrammingError

from pos_checkout.exceptions import StockConflictError
from pos_checkout.models import Sale, SaleLine, SaleTender, InventoryMovement, MovementType, Customer
from pos_checkout.services import checkout_service, inventory_service
from pos_checkout.services.cart_service import Discount, DiscountType
from pos_checkout.services.checkout_service import CheckoutOrchestrator, CheckoutState, request_fingerprint
from pos_checkout.services.tender_service import Tender, TenderKind, CheckoutMode


def cash(amount):
    return Tender(TenderKind.CASH, Decimal(amount))


def card(amount):
    return Tender(TenderKind.CARD, Decimal(amount), card_last_four='4242', approval_code='OK1')


@pytest.fixture
def orchestrator(session):
    return CheckoutOrchestrator(session, tax_rate=Decimal('0.08'), sleep=lambda seconds: None)


def _checkout(orchestrator, cart, tenders, key='key-1', **kwargs):
    kwargs.setdefault('cashier_id', 'cashier-1')
    kwargs.setdefault('store_id', 'store-1')
    return orchestrator.checkout(cart, tenders, idempotency_key=key, **kwargs)


class TestHappyPath:

    def test_split_checkout_commits_everything(self, session, orchestrator, cart, product, stock_of):
        cart.add(product, 2)

        result = _checkout(orchestrator, cart, [cash('10.00'), card('11.60')])

        assert result.ok, result.error
        assert result.state == CheckoutState.COMMITTED
        assert result.totals.total == Decimal('21.60')
        assert not result.duplicate
        assert cart.is_empty

        sale = session.query(Sale).filter_by(id=result.sale_id).one()
        assert sale.sale_number == result.sale_number
        assert sale.subtotal == Decimal('20.00')
        assert sale.tax_amount == Decimal('1.60')
        assert sale.total_amount == Decimal('21.60')
        assert sale.is_balanced()

        lines = session.query(SaleLine).filter_by(sale_id=sale.id).all()
        assert len(lines) == 1
        assert lines[0].quantity == 2
        assert lines[0].line_total == Decimal('20.00')

        tenders = session.query(SaleTender).filter_by(sale_id=sale.id).order_by(SaleTender.position).all()
        assert [t.kind for t in tenders] == ['cash', 'card']
        assert sum(t.amount for t in tenders) == sale.total_amount

        movement = session.query(InventoryMovement).filter_by(reference_id=sale.id).one()
        assert movement.movement_type == MovementType.SALE
        assert movement.quantity_change == -2
        assert movement.previous_quantity == 10
        assert movement.new_quantity == 8
        assert stock_of(product.id) == 8

    def test_cash_checkout_records_change(self, session, orchestrator, cart, product):
        cart.add(product, 2)

        result = _checkout(orchestrator, cart, [cash('25.00')])

        assert result.ok
        assert result.change == Decimal('3.40')
        tender = session.query(SaleTender).filter_by(sale_id=result.sale_id).one()
        assert tender.amount == Decimal('21.60')
        assert tender.amount_received == Decimal('25.00')
        assert tender.change_amount == Decimal('3.40')

    def test_discounted_lines(self, session, orchestrator, cart, make_product):
        product = make_product(price='50.00')
        cart.add(product, 1)
        cart.apply_discount(product.id, Discount(DiscountType.PERCENTAGE, Decimal('10')))

        result = _checkout(orchestrator, cart, [card('48.60')])

        assert result.ok, result.error
        line = session.query(SaleLine).filter_by(sale_id=result.sale_id).one()
        assert line.discount_amount == Decimal('5.00')
        assert line.line_total == Decimal('45.00')

    def test_multiple_products(self, orchestrator, cart, make_product, stock_of):
        first = make_product(price='1.00', stock=5)
        second = make_product(price='2.00', stock=5)
        cart.add(second, 2)
        cart.add(first, 3)

        result = _checkout(orchestrator, cart, [card('7.56')])

        assert result.ok, result.error
        assert stock_of(first.id) == 2
        assert stock_of(second.id) == 3


class TestLoyalty:

    def test_points_credited_after_commit(self, session, orchestrator, cart, product, customer):
        cart.add(product, 2)

        result = _checkout(orchestrator, cart, [card('21.60')], customer_id=customer.id)

        assert result.ok
        session.expire_all()
        refreshed = session.query(Customer).filter_by(id=customer.id).one()
        assert refreshed.loyalty_points == 21
        assert refreshed.total_spent == Decimal('21.60')

    def test_loyalty_failure_does_not_fail_sale(self, session, orchestrator, cart, product, customer, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError('loyalty store down')
        monkeypatch.setattr(checkout_service, 'add_points', broken)
        cart.add(product, 1)

        result = _checkout(orchestrator, cart, [card('10.80')], customer_id=customer.id)

        assert result.ok
        assert session.query(Sale).count() == 1

    def test_unknown_customer_fails_before_commit(self, session, orchestrator, cart, product):
        cart.add(product, 1)

        result = _checkout(orchestrator, cart, [card('10.80')], customer_id=999)

        assert not result.ok
        assert result.error.code == 'not_found'
        assert session.query(Sale).count() == 0


class TestIdempotency:

    def test_repeated_request_returns_same_sale(self, session, orchestrator, cart, product, stock_of):
        cart.add(product, 2)
        tenders = [cash('10.00'), card('11.60')]
        first = _checkout(orchestrator, cart, tenders, key='retry-me')

        # Client did not see the response and retries with the same cart
        cart.add(product, 2)
        second = _checkout(orchestrator, cart, tenders, key='retry-me')

        assert first.ok and second.ok
        assert second.duplicate
        assert second.sale_id == first.sale_id
        assert second.totals == first.totals
        assert session.query(Sale).count() == 1
        assert stock_of(product.id) == 8
        assert cart.is_empty

    def test_key_reused_for_different_cart(self, session, orchestrator, cart, product):
        cart.add(product, 2)
        assert _checkout(orchestrator, cart, [card('21.60')], key='same').ok

        cart.add(product, 1)
        result = _checkout(orchestrator, cart, [card('10.80')], key='same')

        assert not result.ok
        assert result.error.code == 'validation'
        assert session.query(Sale).count() == 1
        assert not cart.is_empty


class TestFailures:

    def test_insufficient_stock_persists_nothing(self, session, orchestrator, cart, make_product, stock_of):
        product = make_product(stock=1)
        cart.add(product, 2)

        result = _checkout(orchestrator, cart, [card('21.60')])

        assert not result.ok
        assert result.state == CheckoutState.FAILED
        assert result.error.code == 'insufficient_stock'
        assert result.error.to_dict()['available'] == 1
        assert session.query(Sale).count() == 0
        assert session.query(InventoryMovement).count() == 0
        assert stock_of(product.id) == 1
        assert cart.get(product.id).quantity == 2

    def test_partial_stock_failure_rolls_back_earlier_lines(self, session, orchestrator, cart, make_product, stock_of):
        plenty = make_product(price='1.00', stock=10)
        scarce = make_product(price='1.00', stock=0)
        cart.add(plenty, 1)
        cart.add(scarce, 1)

        result = _checkout(orchestrator, cart, [card('2.16')])

        assert not result.ok
        assert stock_of(plenty.id) == 10
        assert session.query(SaleLine).count() == 0

    def test_tender_rejection(self, session, orchestrator, cart, product):
        cart.add(product, 2)

        result = _checkout(orchestrator, cart, [cash('10.00'), card('10.00')])

        assert not result.ok
        assert result.error.code == 'tender_rejected'
        assert result.reconciliation.difference == Decimal('-1.60')
        assert session.query(Sale).count() == 0
        assert len(cart) == 1

    def test_empty_cart(self, orchestrator, cart):
        result = _checkout(orchestrator, cart, [cash('1.00')])

        assert not result.ok
        assert result.error.code == 'validation'

    def test_missing_idempotency_key(self, orchestrator, cart, product):
        cart.add(product)
        result = _checkout(orchestrator, cart, [card('10.80')], key='')
        assert result.error.code == 'validation'

    def test_explicit_mode_mismatch(self, orchestrator, cart, product):
        cart.add(product)
        result = _checkout(orchestrator, cart, [card('10.80')], mode=CheckoutMode.CASH)
        assert result.error.code == 'tender_rejected'


class TestRetries:

    def test_stock_conflict_is_retried(self, session, orchestrator, cart, product, stock_of, monkeypatch):
        real_decrement = inventory_service.decrement_stock
        calls = []

        def flaky(session, product_id, previous_qty, delta):
            calls.append(previous_qty)
            if len(calls) == 1:
                raise StockConflictError(product_id, expected_qty=previous_qty)
            return real_decrement(session, product_id, previous_qty, delta)

        monkeypatch.setattr(inventory_service, 'decrement_stock', flaky)
        cart.add(product, 1)

        result = _checkout(orchestrator, cart, [card('10.80')])

        assert result.ok, result.error
        assert len(calls) == 2
        assert stock_of(product.id) == 9

    def test_stock_conflict_gives_up(self, session, cart, product, stock_of, monkeypatch):
        def always_conflict(session, product_id, previous_qty, delta):
            raise StockConflictError(product_id, expected_qty=previous_qty)

        monkeypatch.setattr(inventory_service, 'decrement_stock', always_conflict)
        orchestrator = CheckoutOrchestrator(session, stock_retry_limit=2, sleep=lambda s: None)
        cart.add(product, 1)

        result = _checkout(orchestrator, cart, [card('10.80')])

        assert not result.ok
        assert result.error.code == 'stock_conflict'
        assert result.retryable
        assert session.query(Sale).count() == 0
        assert stock_of(product.id) == 10

    def test_transient_storage_error_is_retried(self, session, cart, product, monkeypatch):
        real_commit_unit = CheckoutOrchestrator._commit_unit
        attempts = []

        def flaky_commit_unit(self, *args, **kwargs):
            attempts.append(1)
            if len(attempts) == 1:
                raise OperationalError('INSERT', {}, Exception('database is locked'))
            return real_commit_unit(self, *args, **kwargs)

        monkeypatch.setattr(CheckoutOrchestrator, '_commit_unit', flaky_commit_unit)
        delays = []
        orchestrator = CheckoutOrchestrator(session, retry_backoff=0.5, sleep=delays.append)
        cart.add(product, 1)

        result = _checkout(orchestrator, cart, [card('10.80')])

        assert result.ok, result.error
        assert len(attempts) == 2
        assert delays == [0.5]
        assert session.query(Sale).count() == 1

    def test_storage_unavailable_after_max_attempts(self, session, cart, product, monkeypatch):
        def down(self, *args, **kwargs):
            raise OperationalError('INSERT', {}, Exception('connection refused'))

        monkeypatch.setattr(CheckoutOrchestrator, '_commit_unit', down)
        delays = []
        orchestrator = CheckoutOrchestrator(session, max_attempts=3, retry_backoff=0.1, sleep=delays.append)
        cart.add(product, 1)

        result = _checkout(orchestrator, cart, [card('10.80')])

        assert not result.ok
        assert result.error.code == 'storage_unavailable'
        assert result.retryable
        assert delays == [0.1, 0.2]
        assert len(cart) == 1

    def test_sale_number_collision_is_regenerated(self, session, cart, make_product):
        numbers = iter(['S-FIXED', 'S-FIXED', 'S-OTHER'])
        orchestrator = CheckoutOrchestrator(session, sale_number_factory=lambda: next(numbers))
        first_product = make_product(price='1.00')
        cart.add(first_product, 1)
        assert _checkout(orchestrator, cart, [card('1.08')], key='a').ok

        cart.add(first_product, 1)
        result = _checkout(orchestrator, cart, [card('1.08')], key='b')

        assert result.ok, result.error
        assert result.sale_number == 'S-OTHER'

    def test_data_error_is_not_retried(self, session, cart, product, monkeypatch):
        attempts = []

        def rejected(self, *args, **kwargs):
            attempts.append(1)
            raise DataError('INSERT', {}, Exception('value too long for type character varying(4)'))

        monkeypatch.setattr(CheckoutOrchestrator, '_commit_unit', rejected)
        delays = []
        orchestrator = CheckoutOrchestrator(session, sleep=delays.append)
        cart.add(product, 1)

        result = _checkout(orchestrator, cart, [card('10.80')])

        assert not result.ok
        assert result.error.code == 'validation'
        assert not result.retryable
        assert len(attempts) == 1
        assert delays == []
        assert len(cart) == 1

    def test_programming_error_is_raised_without_retry(self, session, cart, product, monkeypatch):
        attempts = []

        def broken(self, *args, **kwargs):
            attempts.append(1)
            raise ProgrammingError('INSERT', {}, Exception('no such column'))

        monkeypatch.setattr(CheckoutOrchestrator, '_commit_unit', broken)
        orchestrator = CheckoutOrchestrator(session, sleep=lambda s: None)
        cart.add(product, 1)

        with pytest.raises(ProgrammingError):
            _checkout(orchestrator, cart, [card('10.80')])
        assert len(attempts) == 1
        assert orchestrator.state == CheckoutState.FAILED

    def test_dropped_connection_is_retried(self, session, cart, product, monkeypatch):
        real_commit_unit = CheckoutOrchestrator._commit_unit
        attempts = []

        def flaky(self, *args, **kwargs):
            attempts.append(1)
            if len(attempts) == 1:
                raise DBAPIError('INSERT', {}, Exception('server closed the connection'), connection_invalidated=True)
            return real_commit_unit(self, *args, **kwargs)

        monkeypatch.setattr(CheckoutOrchestrator, '_commit_unit', flaky)
        orchestrator = CheckoutOrchestrator(session, sleep=lambda s: None)
        cart.add(product, 1)

        result = _checkout(orchestrator, cart, [card('10.80')])

        assert result.ok, result.error
        assert len(attempts) == 2


class TestInputLimits:

    def test_idempotency_key_too_long(self, session, orchestrator, cart, product):
        cart.add(product, 1)

        result = _checkout(orchestrator, cart, [card('10.80')], key='k' * 65)

        assert not result.ok
        assert result.error.code == 'validation'
        assert session.query(Sale).count() == 0

    def test_card_last_four_too_long(self, session, orchestrator, cart, product):
        cart.add(product, 1)
        tender = Tender(TenderKind.CARD, Decimal('10.80'), card_last_four='12345')

        result = _checkout(orchestrator, cart, [tender])

        assert not result.ok
        assert result.error.code == 'validation'
        assert session.query(Sale).count() == 0


class TestFingerprint:

    def test_equivalent_amounts_hash_the_same(self, cart, product):
        cart.add(product, 2)
        snapshot = cart.snapshot()

        padded = request_fingerprint(snapshot, [cash('10.00'), card('11.60')], None)
        short = request_fingerprint(snapshot, [cash('10'), card('11.6')], None)

        assert padded == short

    def test_different_amounts_hash_differently(self, cart, product):
        cart.add(product, 2)
        snapshot = cart.snapshot()

        assert request_fingerprint(snapshot, [card('21.60')], None) != request_fingerprint(snapshot, [card('21.50')], None)

    def test_retry_with_reformatted_amount_is_duplicate(self, session, orchestrator, cart, product):
        cart.add(product, 2)
        first = _checkout(orchestrator, cart, [cash('10.00'), card('11.60')], key='reformatted')

        cart.add(product, 2)
        second = _checkout(orchestrator, cart, [cash('10'), card('11.6')], key='reformatted')

        assert first.ok and second.ok
        assert second.duplicate
        assert second.sale_id == first.sale_id
        assert session.query(Sale).count() == 1
