"""
Shared fixtures: a throwaway SQLite database per test, seeded directory data, settings.
"""
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from entitlement_sync import models  # noqa: F401
from entitlement_sync.config import Settings
from entitlement_sync.db import Base
from entitlement_sync.models import Product, ProductMapping, UserAccount


@pytest.fixture
def db_engine(tmp_path):
    """Create a temporary file-backed SQLite database (shared across sessions and threads)."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'entitlement_sync.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autocommit=False, autoflush=False)


@pytest.fixture
def temp_db(session_factory):
    """A session for arranging and asserting database state."""
    db = session_factory()
    try:
        yield db
    finally:
        db.rollback()
        db.close()


@pytest.fixture
def test_settings():
    return Settings(
        database_url="sqlite://",
        webhook_source="cartpanda",
        reconcile_timeout_seconds=5.0,
        reconcile_max_workers=2,
    )


@pytest.fixture
def seeded(temp_db):
    """
    User U1 (a@x.com) and three products mapped from CartPanda ids ext-42, ext-43, ext-44.
    """
    temp_db.add(UserAccount(id="U1", email="a@x.com", full_name="Ana Souza"))
    temp_db.add_all([
        Product(id="P1", name="Course One", slug="course-one"),
        Product(id="P2", name="Course Two", slug="course-two"),
        Product(id="P3", name="Community", slug="community"),
    ])
    temp_db.flush()
    temp_db.add_all([
        ProductMapping(source="cartpanda", external_product_id="ext-42", product_id="P1"),
        ProductMapping(source="cartpanda", external_product_id="ext-43", product_id="P2"),
        ProductMapping(source="cartpanda", external_product_id="ext-44", product_id="P3"),
        # A second platform SKU pointing at the same internal product
        ProductMapping(source="passthrough", external_product_id="sku-1", product_id="P1"),
    ])
    temp_db.commit()
    return temp_db


def paid_event(order_id="ORD-1", email="a@x.com", product_ids=("ext-42",)):
    return {
        "event": "order.paid",
        "order_id": order_id,
        "customer": {"email": email},
        "line_items": [{"product_id": pid} for pid in product_ids],
    }


def refunded_event(order_id="ORD-1", product_ids=("ext-42",)):
    return {
        "event": "order.refunded",
        "order_id": order_id,
        "line_items": [{"product_id": pid} for pid in product_ids],
    }
