"""Pytest fixtures for storefront tests.

Store-backed tests run against an in-memory SQLite database (aiosqlite) shared
through a StaticPool; route tests drive the FastAPI app through httpx's
ASGITransport with the session, gateway and change feed overridden.
"""
import hashlib
import hmac
import os
import time

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_123")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("MAINTENANCE_MODE", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from decimal import Decimal
from itertools import count

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from storefront.auth import create_access_token, get_password_hash
from storefront.database import Base, get_session
from storefront.gateway import GatewayError, PaymentGateway, get_gateway
from storefront.main import app
from storefront.models import Category, Coupon, Order, OrderItem, Product, ShippingProvider, User
from storefront.realtime import ChangeFeed, get_feed

WEBHOOK_SECRET = "whsec_test"

_seq = count(1)


def sign_payload(payload: bytes, secret: str, timestamp=None) -> str:
    """A ``Stripe-Signature`` header built the way Stripe signs webhook bodies."""
    timestamp = timestamp if timestamp is not None else int(time.time())
    digest = hmac.new(secret.encode(), f"{timestamp}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


class FakeGateway(PaymentGateway):
    """Records checkout sessions in memory instead of calling Stripe."""

    def __init__(self):
        super().__init__(api_key="sk_test_123", webhook_secret=WEBHOOK_SECRET)
        self.sessions = {}
        self.created = []
        self.fail_create = False
        self.fail_retrieve = False

    async def create_checkout_session(self, **kwargs):
        if self.fail_create:
            raise GatewayError("Payment gateway unavailable")
        session_id = f"cs_test_{len(self.created) + 1}"
        self.created.append(kwargs)
        self.sessions[session_id] = {
            "id": session_id,
            "url": f"https://checkout.test/{session_id}",
            "payment_status": "unpaid",
            "payment_intent": None,
            "metadata": dict(kwargs["metadata"]),
        }
        return dict(self.sessions[session_id])

    async def retrieve_session(self, session_id):
        if self.fail_retrieve or session_id not in self.sessions:
            raise GatewayError("No such checkout session")
        return dict(self.sessions[session_id])

    def pay(self, session_id, payment_intent="pi_test_1"):
        self.sessions[session_id].update(payment_status="paid", payment_intent=payment_intent)
        return dict(self.sessions[session_id])


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def session(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
async def feed():
    feed = ChangeFeed()
    yield feed
    await feed.close()


async def reload(session, model, pk):
    """Read a row straight from the database, bypassing stale identity-map state."""
    res = await session.execute(
        select(model).where(model.id == pk).execution_options(populate_existing=True)
    )
    return res.scalar_one_or_none()


async def make_user(session, email=None, full_name="Test User", role="customer"):
    user = User(
        email=email or f"user{next(_seq)}@example.com",
        full_name=full_name,
        password_hash=get_password_hash("password123"),
        role=role,
    )
    session.add(user)
    await session.commit()
    return user


async def make_category(session, slug="apparel", name="Apparel"):
    category = Category(name=name, slug=slug)
    session.add(category)
    await session.commit()
    return category


async def make_product(session, name="Cotton Tee", price="20.00", stock=10, category=None, **kwargs):
    n = next(_seq)
    product = Product(
        name=name,
        slug=kwargs.pop("slug", f"product-{n}"),
        price=Decimal(price),
        stock_quantity=stock,
        category_id=category.id if category is not None else None,
        **kwargs,
    )
    session.add(product)
    await session.commit()
    return product


async def make_order(session, user, products=(), status="pending", shipping_cost="0.00",
                     discount="0.00", currency="USD", **kwargs):
    """products: iterable of (product, quantity)."""
    order = Order(
        order_number=f"SF-TEST-{next(_seq)}",
        user_id=user.id,
        status=status,
        currency=currency,
        shipping_cost=Decimal(shipping_cost),
        discount=Decimal(discount),
        **kwargs,
    )
    session.add(order)
    await session.flush()

    subtotal = Decimal("0")
    for product, quantity in products:
        line = product.price * quantity
        session.add(OrderItem(
            order_id=order.id,
            product_id=product.id,
            product_title=product.name,
            product_image=product.image_url,
            price=product.price,
            quantity=quantity,
            subtotal=line,
        ))
        subtotal += line
    order.subtotal = subtotal
    order.total = subtotal + order.shipping_cost - order.discount
    await session.commit()
    return await reload(session, Order, order.id)


async def make_coupon(session, code="WELCOME10", type="percentage", value="10", **kwargs):
    coupon = Coupon(code=code, type=type, value=Decimal(value), **kwargs)
    session.add(coupon)
    await session.commit()
    return coupon


async def make_shipping_provider(session, code, name, services, **kwargs):
    provider = ShippingProvider(code=code, name=name, services=services, **kwargs)
    session.add(provider)
    await session.commit()
    return provider


@pytest.fixture
async def user(session):
    return await make_user(session, email="buyer@example.com", full_name="Buyer")


@pytest.fixture
def auth_headers(user):
    return {"Authorization": f"Bearer {create_access_token({'sub': user.email})}"}


@pytest.fixture
async def client(session_maker, gateway, feed):
    async def override_session():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_feed] = lambda: feed

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client

    app.dependency_overrides.clear()
