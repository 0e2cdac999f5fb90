"""
Flask CLI commands for store operations.

Commands:
- flask init-db: Create the database tables
- flask seed-product: Create a product with opening stock
- flask stock: Set a product's counted stock level
"""

import click
from decimal import InvalidOperation

from pos_checkout.database import get_session, create_all
from pos_checkout.exceptions import PosError
from pos_checkout.models import Product, MovementType
from pos_checkout.services.inventory_service import adjust_stock
from pos_checkout.utils.money import to_decimal, round_money


def init_cli_commands(app):
    """Register CLI commands with Flask app."""

    @app.cli.command('init-db')
    def init_db_command():
        """Create all tables that don't exist yet."""
        create_all()
        click.echo(click.style('✅ Database tables created', fg='green'))

    @app.cli.command('seed-product')
    @click.option('--sku', required=True, help='Unique product code')
    @click.option('--name', required=True, help='Product name')
    @click.option('--price', required=True, help='Unit price, e.g. 10.00')
    @click.option('--stock', default=0, type=int, show_default=True, help='Opening stock')
    @click.option('--barcode', default=None, help='Optional barcode')
    def seed_product(sku, name, price, stock, barcode):
        """Create a product and record its opening stock as a purchase."""
        db_session = get_session()
        try:
            unit_price = round_money(to_decimal(price))
        except (ValueError, InvalidOperation):
            click.echo(click.style(f'❌ Invalid price: {price}', fg='red'))
            return
        if unit_price < 0:
            click.echo(click.style('❌ Price cannot be negative', fg='red'))
            return

        if db_session.query(Product).filter_by(sku=sku).first():
            click.echo(click.style(f'❌ A product with SKU {sku} already exists', fg='red'))
            return

        try:
            product = Product(sku=sku, name=name, barcode=barcode, price=unit_price)
            db_session.add(product)
            db_session.flush()

            adjust_stock(
                db_session,
                product.id,
                stock,
                actor='cli',
                store_id=app.config.get('DEFAULT_STORE_ID', 'store-1'),
                reason='Opening stock',
                movement_type=MovementType.PURCHASE
            )
            db_session.commit()

            click.echo(click.style('\n✅ Product created', fg='green', bold=True))
            click.echo(f'   ID: {product.id}')
            click.echo(f'   SKU: {sku}')
            click.echo(f'   Price: {unit_price}')
            click.echo(f'   Stock: {stock}')

        except PosError as e:
            db_session.rollback()
            click.echo(click.style(f'❌ {e.message}', fg='red'))

    @app.cli.command('stock')
    @click.option('--sku', required=True, help='Product code')
    @click.option('--qty', required=True, type=int, help='Counted quantity')
    @click.option('--reason', default=None, help='Why the count changed')
    def set_stock(sku, qty, reason):
        """Set counted stock for a product and log the adjustment."""
        db_session = get_session()
        product = db_session.query(Product).filter_by(sku=sku).first()
        if not product:
            click.echo(click.style(f'❌ No product with SKU {sku}', fg='red'))
            return

        try:
            movement = adjust_stock(
                db_session,
                product.id,
                qty,
                actor='cli',
                store_id=app.config.get('DEFAULT_STORE_ID', 'store-1'),
                reason=reason
            )
            db_session.commit()
        except PosError as e:
            db_session.rollback()
            click.echo(click.style(f'❌ {e.message}', fg='red'))
            return

        if movement is None:
            click.echo(f'Stock for {sku} already at {qty}, nothing to do')
        else:
            click.echo(click.style(
                f'✅ {sku}: {movement.previous_quantity} -> {movement.new_quantity}', fg='green'
            ))
