"""Checkout blueprint - JSON boundary over the cart and checkout engine."""
from flask import Blueprint, request, session, jsonify, current_app
from typing import Optional, Tuple

from pos_checkout.database import get_session
from pos_checkout.exceptions import ValidationError, NotFoundError
from pos_checkout.models import Product, Sale
from pos_checkout.services.cart_service import CartStore, Discount
from pos_checkout.services.checkout_service import CheckoutOrchestrator
from pos_checkout.services.pricing_service import compute_totals
from pos_checkout.services.tender_service import Tender, CheckoutMode, reconcile
from pos_checkout.utils.money import round_money, to_decimal

checkout_bp = Blueprint('checkout', __name__, url_prefix='/checkout')


def _json() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _store_id() -> str:
    """Store for this request; auth is upstream, so it arrives as plain data."""
    return str(
        _json().get('store_id')
        or request.args.get('store_id')
        or current_app.config.get('DEFAULT_STORE_ID', 'store-1')
    )


def _int_field(data: dict, name: str, required: bool = True) -> Optional[int]:
    value = data.get(name)
    if value is None or value == '':
        if required:
            raise ValidationError(f'{name} is required')
        return None
    if isinstance(value, bool):
        raise ValidationError(f'{name} must be a whole number')
    try:
        number = to_decimal(value)
    except ValueError:
        raise ValidationError(f'{name} must be a whole number')
    if number != number.to_integral_value():
        raise ValidationError(f'{name} must be a whole number')
    return int(number)


def _parse_mode(value) -> Optional[CheckoutMode]:
    if not value:
        return None
    try:
        return CheckoutMode(str(value).lower())
    except ValueError:
        raise ValidationError(f'Unknown checkout mode: {value}')


def _parse_tenders(data: dict) -> list:
    raw = data.get('tenders') or []
    if not isinstance(raw, list):
        raise ValidationError('tenders must be a list')
    if not all(isinstance(t, dict) for t in raw):
        raise ValidationError('each tender must be an object')
    return [Tender.from_dict(t) for t in raw]


def get_cart(store_id: str) -> CartStore:
    """Get cart from session for the store."""
    carts = session.get('cart_by_store') or {}
    return CartStore.from_dict(carts.get(store_id))


def save_cart(store_id: str, cart: CartStore) -> None:
    """Save cart to session for the store."""
    carts = dict(session.get('cart_by_store') or {})
    carts[store_id] = cart.to_dict()
    session['cart_by_store'] = carts
    session.modified = True


def _cart_payload(cart: CartStore) -> dict:
    totals = compute_totals(cart, current_app.config['TAX_RATE'])
    rounded = totals.rounded()
    lines = []
    for item, priced in zip(cart.snapshot(), totals.lines):
        lines.append({
            'product_id': item.product_id,
            'name': item.name,
            'qty': item.quantity,
            'unit_price': str(item.unit_price),
            'discount': (
                {'type': item.discount.kind.value, 'value': str(item.discount.value)}
                if item.discount else None
            ),
            'effective_price': str(priced.effective_price),
            'line_total': str(round_money(priced.line_total)),
        })
    return {
        'lines': lines,
        'item_count': cart.snapshot().item_count,
        'tax_rate': str(totals.tax_rate),
        'totals': rounded.to_dict(),
    }


def _sale_payload(sale: Sale) -> dict:
    return {
        'id': sale.id,
        'sale_number': sale.sale_number,
        'customer_id': sale.customer_id,
        'cashier_id': sale.cashier_id,
        'store_id': sale.store_id,
        'subtotal': str(sale.subtotal),
        'tax_amount': str(sale.tax_amount),
        'discount_amount': str(sale.discount_amount),
        'total_amount': str(sale.total_amount),
        'payment_status': sale.payment_status.value,
        'status': sale.status.value,
        'created_at': sale.created_at.isoformat() if sale.created_at else None,
        'lines': [
            {
                'product_id': line.product_id,
                'quantity': line.quantity,
                'unit_price': str(line.unit_price),
                'discount_amount': str(line.discount_amount),
                'line_total': str(line.line_total),
            }
            for line in sale.lines
        ],
        'tenders': [
            {
                'kind': t.kind,
                'amount': str(t.amount),
                'amount_received': str(t.amount_received) if t.amount_received is not None else None,
                'change_amount': str(t.change_amount) if t.change_amount is not None else None,
                'card_last_four': t.card_last_four,
                'approval_code': t.approval_code,
            }
            for t in sale.tenders
        ],
    }


# ============================================================================
# Cart
# ============================================================================

@checkout_bp.route('/cart', methods=['GET'])
def view_cart():
    """Cart lines with totals."""
    return jsonify(_cart_payload(get_cart(_store_id())))


@checkout_bp.route('/cart/add', methods=['POST'])
def cart_add():
    """Add a product at its current price (merges with an existing line)."""
    data = _json()
    product_id = _int_field(data, 'product_id')
    qty = _int_field(data, 'qty', required=False)
    if qty is None:
        qty = 1

    product = get_session().query(Product).filter(Product.id == product_id).first()
    if not product:
        raise NotFoundError('Product not found')

    store_id = _store_id()
    cart = get_cart(store_id)
    cart.add(product, qty)
    save_cart(store_id, cart)
    return jsonify(_cart_payload(cart))


@checkout_bp.route('/cart/update', methods=['POST'])
def cart_update():
    """Set a line's quantity; zero or less removes it."""
    data = _json()
    store_id = _store_id()
    cart = get_cart(store_id)
    cart.set_quantity(_int_field(data, 'product_id'), _int_field(data, 'qty'))
    save_cart(store_id, cart)
    return jsonify(_cart_payload(cart))


@checkout_bp.route('/cart/discount', methods=['POST'])
def cart_discount():
    """Set or clear (type null) a line discount."""
    data = _json()
    discount = Discount.parse(data['type'], data.get('value')) if data.get('type') else None
    store_id = _store_id()
    cart = get_cart(store_id)
    cart.apply_discount(_int_field(data, 'product_id'), discount)
    save_cart(store_id, cart)
    return jsonify(_cart_payload(cart))


@checkout_bp.route('/cart/remove', methods=['POST'])
def cart_remove():
    data = _json()
    store_id = _store_id()
    cart = get_cart(store_id)
    cart.remove(_int_field(data, 'product_id'))
    save_cart(store_id, cart)
    return jsonify(_cart_payload(cart))


@checkout_bp.route('/cart/clear', methods=['POST'])
def cart_clear():
    """Cancel: drop every line."""
    store_id = _store_id()
    cart = get_cart(store_id)
    cart.clear()
    save_cart(store_id, cart)
    return jsonify(_cart_payload(cart))


# ============================================================================
# Tenders and commit
# ============================================================================

@checkout_bp.route('/reconcile', methods=['POST'])
def reconcile_preview():
    """Check a tender set against the cart total without committing anything."""
    data = _json()
    cart = get_cart(_store_id())
    total = compute_totals(cart, current_app.config['TAX_RATE']).rounded().total
    result = reconcile(
        _parse_tenders(data),
        total,
        _parse_mode(data.get('mode')),
        current_app.config.get('SPLIT_TENDER_TOLERANCE')
    )
    return jsonify(result.to_dict())


@checkout_bp.route('/confirm', methods=['POST'])
def confirm() -> Tuple:
    """Commit the session cart as a sale."""
    data = _json()
    idempotency_key = (data.get('idempotency_key') or request.headers.get('Idempotency-Key') or '').strip()
    if not idempotency_key:
        raise ValidationError('Idempotency key is required')

    store_id = _store_id()
    cart = get_cart(store_id)
    orchestrator = CheckoutOrchestrator.from_config(get_session(), current_app.config)
    result = orchestrator.checkout(
        cart,
        _parse_tenders(data),
        idempotency_key=idempotency_key,
        cashier_id=str(data.get('cashier_id') or ''),
        store_id=store_id,
        customer_id=_int_field(data, 'customer_id', required=False),
        mode=_parse_mode(data.get('mode'))
    )
    # Cleared on success, untouched on failure
    save_cart(store_id, cart)

    if result.ok:
        return jsonify(result.to_dict()), (200 if result.duplicate else 201)
    return jsonify(result.to_dict()), result.error.status_code


@checkout_bp.route('/sales/<sale_number>', methods=['GET'])
def sale_detail(sale_number: str):
    sale = get_session().query(Sale).filter(Sale.sale_number == sale_number).first()
    if not sale:
        raise NotFoundError('Sale not found')
    return jsonify(_sale_payload(sale))
