import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["REDIS_URL"] = ""
os.environ.setdefault("SECRET_KEY", "test-secret")

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from cartsync.data.database import init_db
from cartsync.data.models.cart import CartModel
from cartsync.domain.errors import ProductUnavailableError
from cartsync.domain.identity import CartIdentity
from cartsync.domain.pricing import PricingRules
from cartsync.domain.status import LIVE_STATUS_VALUES
from cartsync.services.cart_service import CartService
from cartsync.services.lock_service import MemoryLockService
from cartsync.services.merge_service import MergeService
from cartsync.services.product_client import ProductInfo

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeProductClient:
    """Catalog stand-in; ``unreachable`` simulates a catalog outage."""

    def __init__(self, products):
        self.products = {p.id: p for p in products}
        self.unreachable = False
        self.calls = []

    def fetch_product(self, product_id: str) -> ProductInfo:
        self.calls.append(product_id)
        if self.unreachable:
            raise ProductUnavailableError(f"Catalog unreachable for product {product_id}")
        if product_id not in self.products:
            raise ProductUnavailableError(f"Product {product_id} not found", not_found=True)
        return self.products[product_id]


def product(product_id, price, **kwargs) -> ProductInfo:
    price = Decimal(price)
    return ProductInfo(id=product_id, name=kwargs.pop("name", f"Product {product_id}"), price=price,
                       base_price=kwargs.pop("base_price", price), **kwargs)


CATALOG = [
    product("A", "10.00", stock_quantity=100),
    product("B", "15.00", stock_quantity=100),
    product("C", "5.00", stock_quantity=100),
    product("P45", "45.00"),
    product("P55", "55.00"),
    product("LOW", "3.00", stock_quantity=2),
    product("GONE", "7.00", available=False),
    product(
        "BEAM",
        "0",
        name="Shelf board",
        is_variable_dimension=True,
        fixed_height=Decimal("0.5"),
        variable_dimension_rate=Decimal("20"),
        max_length=Decimal("3"),
    ),
]


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def product_client():
    return FakeProductClient(CATALOG)


@pytest.fixture
def lock_service():
    return MemoryLockService()


@pytest.fixture
def rules():
    return PricingRules.from_settings()


@pytest.fixture
def cart_service(db, product_client, lock_service, rules, clock):
    return CartService(db=db, product_client=product_client, lock_service=lock_service, rules=rules, clock=clock)


@pytest.fixture
def merge_service(cart_service):
    return MergeService(cart_service)


@pytest.fixture
def guest():
    return CartIdentity(session_id="sess-1", device_fingerprint="fp-1")


@pytest.fixture
def user():
    return CartIdentity(user_id="user-1")


def live_carts(db, **filters):
    query = select(CartModel).where(CartModel.status.in_(LIVE_STATUS_VALUES))
    for name, value in filters.items():
        query = query.where(getattr(CartModel, name) == value)
    return list(db.execute(query).scalars())


def quantities(snapshot) -> dict:
    return {item["product_id"]: item["quantity"] for item in snapshot["items"]}


def item_of(snapshot, product_id) -> dict:
    return next(item for item in snapshot["items"] if item["product_id"] == product_id)
