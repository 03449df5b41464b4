"""
Shared fixtures.

Every test gets its own SQLite database file (aiosqlite driver, NullPool so
each session holds a real connection). Settings are pinned through the
environment before anything from storefront is imported.
"""
import itertools
import os
import tempfile
from decimal import Decimal

_TEST_DIR = tempfile.mkdtemp(prefix="storefront-tests-")

os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DIR}/app.db"
os.environ["SECRET_KEY"] = "test-secret-key-for-unit-tests-only"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["CART_CLEANUP_ENABLED"] = "false"
os.environ["TOKEN_CLEANUP_ENABLED"] = "false"
os.environ["CONFLICT_RETRY_MAX_ATTEMPTS"] = "5"
os.environ["CONFLICT_RETRY_BASE_DELAY"] = "0.05"
os.environ["SENDGRID_API_KEY"] = ""

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from storefront.core.database import Base, get_db
from storefront.core.security import create_access_token, get_password_hash
from storefront.models import Cart, CartItem, Product, User, UserRole

DEFAULT_PASSWORD = "Secret123"


@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_user(db):
    counter = itertools.count(1)

    async def _make(email=None, password=DEFAULT_PASSWORD, role=UserRole.CUSTOMER.value, **kwargs):
        n = next(counter)
        user = User(
            email=email or f"customer{n}@example.com",
            hashed_password=get_password_hash(password),
            first_name=kwargs.pop("first_name", "Asha"),
            last_name=kwargs.pop("last_name", "Rao"),
            role=role,
            **kwargs,
        )
        db.add(user)
        await db.commit()
        return user

    return _make


@pytest.fixture
def make_product(db):
    counter = itertools.count(1)

    async def _make(quantity=10, price="1000.00", **kwargs):
        n = next(counter)
        product = Product(
            sku=kwargs.pop("sku", f"RING-{n:03d}"),
            title=kwargs.pop("title", f"Gold Ring {n}"),
            price=Decimal(str(price)),
            quantity=quantity,
            **kwargs,
        )
        db.add(product)
        await db.commit()
        return product

    return _make


@pytest.fixture
def seed_cart(db):
    """Put lines straight into a cart without touching reservations."""

    async def _seed(lines, user_id=None, session_id=None):
        cart = Cart(user_id=user_id, session_id=session_id, currency="INR", items=[])
        for product, quantity in lines:
            cart.items.append(CartItem(
                product_id=product.id,
                sku=product.sku,
                title=product.title,
                price=product.price,
                quantity=quantity,
                subtotal=product.price * quantity,
            ))
        db.add(cart)
        await db.commit()
        return cart

    return _seed


@pytest.fixture
def auth_headers():
    def _headers(user) -> dict:
        return {"Authorization": f"Bearer {create_access_token(user.id, user.email, user.role)}"}
    return _headers


@pytest_asyncio.fixture
async def client(session_factory):
    from storefront.main import app

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
    app.dependency_overrides.clear()
