"""Models package - exports all SQLAlchemy models."""
from pos_checkout.models.product import Product
from pos_checkout.models.product_stock import ProductStock
from pos_checkout.models.customer import Customer
from pos_checkout.models.sale import Sale, SaleStatus, PaymentStatus
from pos_checkout.models.sale_line import SaleLine
from pos_checkout.models.sale_tender import SaleTender
from pos_checkout.models.inventory_movement import InventoryMovement, MovementType

__all__ = [
    'Product', 'ProductStock', 'Customer',
    'Sale', 'SaleStatus', 'PaymentStatus', 'SaleLine', 'SaleTender',
    'InventoryMovement', 'MovementType',
]
