"""
Inventory service - stock mutation and the movement audit log.

Every stock change goes through a compare-and-swap UPDATE guarded by the
quantity that was read, and writes one InventoryMovement row in the same
transaction. Stock levels are always re-read from the database, never cached.
"""
import logging
from typing import Optional

from sqlalchemy.sql import func

from pos_checkout.blueprints.metrics import stock_conflicts_total
from pos_checkout.exceptions import (
    ValidationError, NotFoundError, InsufficientStockError, StockConflictError
)
from pos_checkout.models import Product, ProductStock, InventoryMovement, MovementType

logger = logging.getLogger(__name__)


def get_stock_level(session, product_id: int, for_update: bool = True) -> int:
    """
    Read the current on-hand quantity.

    With for_update the row is locked (SELECT ... FOR UPDATE) until the
    surrounding transaction ends, on dialects that support it.
    """
    query = session.query(ProductStock.on_hand_qty).filter(ProductStock.product_id == product_id)
    if for_update:
        query = query.with_for_update()
    qty = query.scalar()
    if qty is None:
        raise NotFoundError(f'No stock record for product {product_id}')
    return int(qty)


def decrement_stock(session, product_id: int, previous_qty: int, delta: int) -> int:
    """
    Decrement stock by delta, only if it still equals previous_qty.

    Returns the new quantity.

    Raises:
        InsufficientStockError: if the decrement would go below zero.
        StockConflictError: if the stored quantity no longer matches previous_qty.
    """
    if delta <= 0:
        raise ValidationError('Quantity must be greater than 0')
    new_qty = previous_qty - delta
    if new_qty < 0:
        raise InsufficientStockError(f'product {product_id}', delta, previous_qty)

    updated = session.query(ProductStock).filter(
        ProductStock.product_id == product_id,
        ProductStock.on_hand_qty == previous_qty
    ).update(
        {ProductStock.on_hand_qty: new_qty, ProductStock.updated_at: func.now()},
        synchronize_session=False
    )
    if updated != 1:
        raise StockConflictError(product_id, expected_qty=previous_qty)
    return new_qty


def append_movement(
    session,
    product_id: int,
    store_id: str,
    movement_type: MovementType,
    quantity_change: int,
    previous_quantity: int,
    new_quantity: int,
    created_by: str,
    reference_id: Optional[int] = None,
    reason: Optional[str] = None
) -> InventoryMovement:
    """Append one movement record; flushed, committed by the caller's transaction."""
    if previous_quantity + quantity_change != new_quantity:
        raise ValidationError(
            f'Movement does not balance: {previous_quantity} + {quantity_change} != {new_quantity}'
        )
    if new_quantity < 0:
        raise ValidationError('Stock cannot go below zero')

    movement = InventoryMovement(
        product_id=product_id,
        store_id=store_id,
        movement_type=movement_type,
        quantity_change=quantity_change,
        previous_quantity=previous_quantity,
        new_quantity=new_quantity,
        reference_id=reference_id,
        reason=reason,
        created_by=created_by
    )
    session.add(movement)
    session.flush()
    return movement


def decrement_for_sale(
    session,
    product_id: int,
    qty: int,
    sale_id: int,
    actor: str,
    store_id: str,
    max_retries: int = 3,
    product_name: Optional[str] = None
) -> InventoryMovement:
    """
    Read -> compare-and-swap decrement -> log, for one sale line.

    A lost update is retried with a fresh reading up to max_retries times.

    Raises:
        InsufficientStockError: if the current reading cannot cover qty.
        StockConflictError: if every attempt lost the race.
    """
    label = product_name or f'product {product_id}'
    for attempt in range(max_retries + 1):
        current = get_stock_level(session, product_id)
        if current < qty:
            raise InsufficientStockError(label, qty, current)
        try:
            new_qty = decrement_stock(session, product_id, current, qty)
        except StockConflictError:
            stock_conflicts_total.inc()
            logger.warning(
                f"[STOCK] Conflict decrementing {label} (read {current}), "
                f"attempt {attempt + 1}/{max_retries + 1}"
            )
            continue

        logger.debug(f"[STOCK] {label}: {current} -> {new_qty} (sale {sale_id})")
        return append_movement(
            session,
            product_id=product_id,
            store_id=store_id,
            movement_type=MovementType.SALE,
            quantity_change=-qty,
            previous_quantity=current,
            new_quantity=new_qty,
            reference_id=sale_id,
            created_by=actor
        )

    raise StockConflictError(
        product_id,
        message=f'Stock for {label} kept changing; gave up after {max_retries + 1} attempts'
    )


def adjust_stock(
    session,
    product_id: int,
    new_qty: int,
    actor: str,
    store_id: str,
    reason: Optional[str] = None,
    movement_type: MovementType = MovementType.ADJUSTMENT
) -> Optional[InventoryMovement]:
    """
    Set stock to a counted quantity and log the difference.

    Creates the stock row when the product has none. Returns None when the
    count matches the stored quantity.
    """
    if new_qty < 0:
        raise ValidationError('Stock cannot go below zero')

    product = session.query(Product).filter(Product.id == product_id).first()
    if not product:
        raise NotFoundError('Product not found')

    stock = session.query(ProductStock).filter(ProductStock.product_id == product_id).first()
    if not stock:
        session.add(ProductStock(product_id=product_id, on_hand_qty=0))
        session.flush()

    current = get_stock_level(session, product_id)
    if current == new_qty:
        return None

    updated = session.query(ProductStock).filter(
        ProductStock.product_id == product_id,
        ProductStock.on_hand_qty == current
    ).update(
        {ProductStock.on_hand_qty: new_qty, ProductStock.updated_at: func.now()},
        synchronize_session=False
    )
    if updated != 1:
        raise StockConflictError(product_id, expected_qty=current)

    logger.info(f"[STOCK] {product.name}: adjusted {current} -> {new_qty} by {actor} ({movement_type.value})")
    return append_movement(
        session,
        product_id=product_id,
        store_id=store_id,
        movement_type=movement_type,
        quantity_change=new_qty - current,
        previous_quantity=current,
        new_quantity=new_qty,
        created_by=actor,
        reason=reason
    )
