"""Seed the database with demo categories, products, coupons and shipping providers.

Idempotent: rows are matched by slug/code and only inserted when missing.
Tables are created first if they do not exist.

Usage:
    python scripts/db_seed.py

Reads DATABASE_URL from the environment (or .env).
"""
import asyncio
import sys
from decimal import Decimal
from pathlib import Path

# Ensure project root is on sys.path when run as a plain script
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sqlalchemy import select

from storefront.auth import get_password_hash
from storefront.database import Base, async_session_maker, engine
from storefront.logger import log
from storefront.models import Category, Coupon, Product, ShippingProvider, User

CATEGORIES = [
    {"name": "Apparel", "slug": "apparel"},
    {"name": "Accessories", "slug": "accessories"},
    {"name": "Home", "slug": "home"},
]

PRODUCTS = [
    {"name": "Classic Cotton Tee", "slug": "classic-cotton-tee", "price": Decimal("19.90"),
     "category": "apparel", "stock_quantity": 40, "weight_kg": 0.3,
     "description": "Soft everyday t-shirt in heavyweight cotton."},
    {"name": "Denim Jacket", "slug": "denim-jacket", "price": Decimal("89.00"),
     "category": "apparel", "stock_quantity": 12, "weight_kg": 1.1,
     "description": "Rigid denim jacket with a relaxed fit."},
    {"name": "Canvas Tote", "slug": "canvas-tote", "price": Decimal("24.50"),
     "category": "accessories", "stock_quantity": 30, "weight_kg": 0.4,
     "description": "Sturdy tote bag with an inner pocket."},
    {"name": "Leather Card Holder", "slug": "leather-card-holder", "price": Decimal("35.00"),
     "category": "accessories", "stock_quantity": 25, "weight_kg": 0.1,
     "description": "Slim holder for six cards."},
    {"name": "Ceramic Mug", "slug": "ceramic-mug", "price": Decimal("14.00"),
     "category": "home", "stock_quantity": 50, "weight_kg": 0.5,
     "description": "Stoneware mug, 350 ml."},
]

COUPONS = [
    {"code": "WELCOME10", "type": "percentage", "value": Decimal("10"), "max_discount": Decimal("50"),
     "description": "10% off your first order"},
    {"code": "SAVE20", "type": "fixed", "value": Decimal("20"), "min_purchase": Decimal("100"),
     "usage_limit": 100, "description": "20 off orders over 100"},
]

SHIPPING_PROVIDERS = [
    {
        "code": "poslaju", "name": "Pos Laju", "display_order": 1,
        "services": [
            {"name": "Standard", "base_cost": 8, "estimated_days": "3-5 days", "tracking_available": True,
             "regional_pricing": [
                 {"region": "semenanjung", "cost_per_kg": 5, "min_cost": 8},
                 {"region": "sabah", "cost_per_kg": 9, "min_cost": 12},
                 {"region": "sarawak", "cost_per_kg": 9, "min_cost": 12},
                 {"region": "brunei", "cost_per_kg": 6, "min_cost": 10},
             ]},
        ],
    },
    {
        "code": "dhl", "name": "DHL Express", "display_order": 2,
        "services": [
            {"name": "Express", "base_cost": 25, "cost_per_kg": 8, "estimated_days": "1-2 days",
             "tracking_available": True, "includes_insurance": True},
        ],
    },
]


async def ensure_tables():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def seed(session):
    categories = {}
    for data in CATEGORIES:
        res = await session.execute(select(Category).where(Category.slug == data["slug"]))
        category = res.scalar_one_or_none()
        if category is None:
            category = Category(**data)
            session.add(category)
            await session.flush()
        categories[data["slug"]] = category.id
    log.info(f"seed: {len(categories)} categories")

    for data in PRODUCTS:
        data = dict(data)
        data["category_id"] = categories[data.pop("category")]
        res = await session.execute(select(Product.id).where(Product.slug == data["slug"]))
        if res.scalar_one_or_none() is None:
            session.add(Product(**data))
    log.info(f"seed: {len(PRODUCTS)} products")

    for data in COUPONS:
        res = await session.execute(select(Coupon.id).where(Coupon.code == data["code"]))
        if res.scalar_one_or_none() is None:
            session.add(Coupon(**data))
    log.info(f"seed: {len(COUPONS)} coupons")

    for data in SHIPPING_PROVIDERS:
        res = await session.execute(select(ShippingProvider.id).where(ShippingProvider.code == data["code"]))
        if res.scalar_one_or_none() is None:
            session.add(ShippingProvider(**data))
    log.info(f"seed: {len(SHIPPING_PROVIDERS)} shipping providers")

    res = await session.execute(select(User.id).where(User.email == "demo@example.com"))
    if res.scalar_one_or_none() is None:
        session.add(User(email="demo@example.com", full_name="Demo User",
                         password_hash=get_password_hash("password123")))

    await session.commit()


async def main():
    log.info("DB seed starting")
    await ensure_tables()
    async with async_session_maker() as session:
        await seed(session)
    await engine.dispose()
    log.info("DB seed complete")


if __name__ == "__main__":
    asyncio.run(main())
