import pytest
from decimal import Decimal
import os
import tempfile
import uuid

# Tests run against a throwaway SQLite file unless a database is provided (e.g. by Docker)
if 'DATABASE_URL' not in os.environ:
    _db_dir = tempfile.mkdtemp(prefix='pos-checkout-tests-')
    os.environ['DATABASE_URL'] = f"sqlite:///{os.path.join(_db_dir, 'test.db')}"
os.environ.setdefault('SECRET_KEY', 'test-secret-key')
os.environ.setdefault('FLASK_DEBUG', '0')

from pos_checkout import create_app
from pos_checkout.database import get_session, create_all, drop_all
from pos_checkout.models import Product, ProductStock, Customer
from pos_checkout.services.cart_service import CartStore


@pytest.fixture(scope='session')
def app():
    """Create application instance for testing."""
    app = create_app('config.Config')
    app.config['TESTING'] = True
    return app


@pytest.fixture(scope='function')
def client(app, session):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def session(app):
    """Fresh schema and database session for each test."""
    drop_all()
    create_all()
    session = get_session()
    yield session
    session.rollback()
    get_session().remove()


@pytest.fixture(scope='function')
def make_product(session):
    """Factory: product with a stock row."""
    def _make(name='Test Product', price='10.00', stock=10, active=True):
        suffix = str(uuid.uuid4())[:8]
        product = Product(
            sku=f'SKU-{suffix}',
            name=name,
            price=Decimal(price),
            active=active
        )
        session.add(product)
        session.flush()
        session.add(ProductStock(product_id=product.id, on_hand_qty=stock))
        session.commit()
        return product
    return _make


@pytest.fixture(scope='function')
def product(make_product):
    """Product priced 10.00 with 10 units on hand."""
    return make_product()


@pytest.fixture(scope='function')
def customer(session):
    """Customer with no loyalty points."""
    customer = Customer(first_name='Ada', last_name='Lovelace', email='ada@test.com')
    session.add(customer)
    session.commit()
    return customer


@pytest.fixture(scope='function')
def cart():
    return CartStore()


@pytest.fixture(scope='function')
def stock_of(session):
    """Reader for on-hand quantity straight from the database."""
    def _read(product_id):
        session.expire_all()
        return session.query(ProductStock.on_hand_qty).filter(ProductStock.product_id == product_id).scalar()
    return _read
