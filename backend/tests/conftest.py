"""
Pytest fixtures for marketplace backend tests.

Provides the application on in-memory SQLite, a per-test table wipe,
user/seller/product/cart factories and an auth header helper.
"""

import itertools
from decimal import Decimal

import pytest
from marketplace import create_app
from marketplace.extensions import db
from marketplace.models import Product
from marketplace.models.identity import ROLE_BUYER, ROLE_SELLER
from marketplace.services import auth_service, cart_service, token_service

PASSWORD = "Password123!"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'BCRYPT_ROUNDS': 4,
        'TAX_RATE_BPS': 0,
        'BASE_CURRENCY': 'THB',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def make_user(db_session):
    """Factory: make_user(role=ROLE_BUYER, email=None, password=PASSWORD)."""
    counter = itertools.count(1)

    def _make(role=ROLE_BUYER, email=None, password=PASSWORD, **kwargs):
        email = email or f"{role.lower()}{next(counter)}@example.com"
        return auth_service.create_user(email=email, password=password, role=role, **kwargs)

    return _make


@pytest.fixture(scope='function')
def buyer(make_user):
    return make_user(email="buyer@example.com")


@pytest.fixture(scope='function')
def seller(make_user):
    return make_user(role=ROLE_SELLER, email="seller@example.com")


@pytest.fixture(scope='function')
def other_seller(make_user):
    return make_user(role=ROLE_SELLER, email="other.seller@example.com")


@pytest.fixture(scope='function')
def make_product(db_session):
    """Factory: make_product(seller, price="100.00", stock=10, ...)."""
    counter = itertools.count(1)

    def _make(seller, price="100.00", stock=10, name=None, currency="THB", is_active=True, image_url=None):
        product = Product(
            seller_id=seller.id,
            name=name or f"Product {next(counter)}",
            price=Decimal(price),
            base_currency=currency,
            stock=stock,
            is_active=is_active,
            image_url=image_url,
        )
        db_session.add(product)
        db_session.commit()
        return product

    return _make


@pytest.fixture(scope='function')
def fill_cart():
    """fill_cart(user, [(product, quantity), ...]) through the cart engine."""
    def _fill(user, lines):
        return [cart_service.add_or_update(user.id, product.id, quantity) for product, quantity in lines]

    return _fill


@pytest.fixture(scope='function')
def auth_headers(db_session):
    """auth_headers(user) -> Authorization header for a fresh access session."""
    def _headers(user):
        tokens = token_service.issue_tokens(user)
        return {"Authorization": f"Bearer {tokens.access_token}"}

    return _headers
