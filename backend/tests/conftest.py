"""
Pytest fixtures for the storefront backend tests.

Provides an in-memory database shared by the session-scoped app, a table
wipe before each test, users with bearer tokens, and a small catalog.
"""

from decimal import Decimal

import pytest

from storefront import create_app
from storefront.extensions import db
from storefront.models import User, Category, Product, ProductVariant
from storefront.models.auth import ROLE_ADMIN, ROLE_STUDENT
from storefront.services import session_service
from storefront.services.notification_service import SCOPE_ADMIN, get_fanout, user_scope


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'ORDER_RETRY_ATTEMPTS': 3,
        'ORDER_RETRY_BACKOFF': 0,
        'LOW_STOCK_THRESHOLD': 5,
        'PAYMENT_WEBHOOK_SECRET': None,
        'NOTIFICATION_HEARTBEAT_SECONDS': 0.05,
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
def admin_user(db_session):
    user = User(name="Store Admin", email="admin@campus.test", role=ROLE_ADMIN, is_active=True)
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def student(db_session):
    user = User(name="Ana Cruz", email="ana@campus.test", student_id="2024-0001", role=ROLE_STUDENT, is_active=True)
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def other_student(db_session):
    user = User(name="Ben Reyes", email="ben@campus.test", student_id="2024-0002", role=ROLE_STUDENT, is_active=True)
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def admin_token(admin_user):
    _, token = session_service.create_session(admin_user.id)
    return token


@pytest.fixture(scope='function')
def student_token(student):
    _, token = session_service.create_session(student.id)
    return token


@pytest.fixture(scope='function')
def other_student_token(other_student):
    _, token = session_service.create_session(other_student.id)
    return token


@pytest.fixture(scope='function')
def shirt(db_session):
    """Product A: sized shirt at 450.00, size M holds 5 units."""
    category = Category(name="Apparel")
    db_session.add(category)
    db_session.flush()

    product = Product(name="Campus Shirt", price=Decimal("450.00"), category_id=category.id, stock=0)
    db_session.add(product)
    db_session.flush()

    db_session.add(ProductVariant(product_id=product.id, size="M", stock=5))
    db_session.add(ProductVariant(product_id=product.id, size="XL", stock=8, price=Decimal("480.00")))
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def size_m(shirt):
    return next(v for v in shirt.variants if v.size == "M")


@pytest.fixture(scope='function')
def size_xl(shirt):
    return next(v for v in shirt.variants if v.size == "XL")


@pytest.fixture(scope='function')
def mug(db_session):
    """Plain product without sizes: 10 units at 180.00."""
    product = Product(name="Campus Mug", price=Decimal("180.00"), stock=10)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def admin_events(app):
    """Subscription on the admin scope, removed after the test."""
    fanout = get_fanout()
    subscription = fanout.subscribe(SCOPE_ADMIN)
    yield subscription
    fanout.unsubscribe(subscription)


@pytest.fixture(scope='function')
def student_events(app, student):
    fanout = get_fanout()
    subscription = fanout.subscribe(user_scope(student.id))
    yield subscription
    fanout.unsubscribe(subscription)


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def admin_headers(admin_token):
    return auth_headers(admin_token)


@pytest.fixture(scope='function')
def student_headers(student_token):
    return auth_headers(student_token)


@pytest.fixture(scope='function')
def other_student_headers(other_student_token):
    return auth_headers(other_student_token)
