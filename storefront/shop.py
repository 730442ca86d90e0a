# storefront/shop.py
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import get_current_user
from .database import get_session
from .errors import NotFound, ValidationFailed
from .models import Category, Product, User
from .realtime import ChangeFeed, DELETE, INSERT, get_feed, publish_stock, stock_update
from .schemas import CategoryOut, ProductCreate, ProductOut, ProductsPage

router = APIRouter(prefix="/api/products", tags=["products"])
categories_router = APIRouter(prefix="/api/categories", tags=["products"])

SORT_OPTIONS = {
    "newest": (Product.created_at.desc(), Product.id.desc()),
    "price-asc": (Product.price.asc(), Product.id.asc()),
    "price-desc": (Product.price.desc(), Product.id.desc()),
    "bestselling": (Product.sold_count.desc(), Product.id.desc()),
    "rating": (Product.rating.desc(), Product.id.desc()),
}


def filter_products(query, q: Optional[str] = None, category_ids: Optional[List[int]] = None,
                    min_price: Optional[Decimal] = None, max_price: Optional[Decimal] = None,
                    in_stock: bool = False):
    if q:
        pattern = f"%{q.strip()}%"
        query = query.where(or_(Product.name.ilike(pattern), Product.description.ilike(pattern)))
    if category_ids is not None:
        query = query.where(Product.category_id.in_(category_ids))
    if min_price is not None:
        query = query.where(Product.price >= min_price)
    if max_price is not None:
        query = query.where(Product.price <= max_price)
    if in_stock:
        query = query.where(Product.stock_quantity > 0, Product.is_available.is_(True))
    return query


async def _get_product_or_404(session: AsyncSession, product_id: int) -> Product:
    result = await session.execute(select(Product).where(Product.id == product_id))
    product = result.scalar_one_or_none()
    if not product:
        raise NotFound("Product not found")
    return product


# 🛍️ Каталог с фильтрами, сортировкой и пагинацией
@router.get("", response_model=ProductsPage)
async def list_products(
    q: Optional[str] = None,
    category: Optional[str] = None,
    sort: str = "newest",
    min_price: Optional[Decimal] = Query(None, alias="min", ge=0),
    max_price: Optional[Decimal] = Query(None, alias="max", ge=0),
    in_stock: bool = Query(False, alias="inStock"),
    page: int = Query(1, ge=1),
    page_size: int = Query(12, ge=1, le=100, alias="pageSize"),
    session: AsyncSession = Depends(get_session),
):
    category_ids = None
    if category:
        slugs = [s.strip() for s in category.split(",") if s.strip()]
        res = await session.execute(select(Category.id).where(Category.slug.in_(slugs)))
        category_ids = list(res.scalars().all())

    query = filter_products(select(Product), q, category_ids, min_price, max_price, in_stock)
    total = (await session.execute(select(func.count()).select_from(query.subquery()))).scalar_one()

    # unknown sort values fall back to newest
    order_by = SORT_OPTIONS.get(sort, SORT_OPTIONS["newest"])
    result = await session.execute(query.order_by(*order_by).offset((page - 1) * page_size).limit(page_size))
    products = [ProductOut.model_validate(p) for p in result.scalars().all()]
    return ProductsPage(products=products, total=total, page=page, pageSize=page_size)


@router.get("/{product_id}", response_model=ProductOut)
async def get_product(product_id: int, session: AsyncSession = Depends(get_session)):
    return await _get_product_or_404(session, product_id)


@router.post("", response_model=ProductOut, status_code=status.HTTP_201_CREATED)
async def create_product(
    payload: ProductCreate,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
    feed: Optional[ChangeFeed] = Depends(get_feed),
):
    product = Product(**payload.model_dump())
    session.add(product)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise ValidationFailed("A product with this slug already exists")
    await session.refresh(product)
    await publish_stock(feed, product, INSERT)
    return product


@router.put("/{product_id}", response_model=ProductOut)
async def update_product(
    product_id: int,
    payload: ProductCreate,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
    feed: Optional[ChangeFeed] = Depends(get_feed),
):
    product = await _get_product_or_404(session, product_id)
    stock_before = (product.stock_quantity, product.is_available)

    for field, value in payload.model_dump().items():
        setattr(product, field, value)

    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise ValidationFailed("A product with this slug already exists")
    await session.refresh(product)

    if (product.stock_quantity, product.is_available) != stock_before:
        await publish_stock(feed, product)
    return product


@router.delete("/{product_id}", status_code=204)
async def delete_product(
    product_id: int,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
    feed: Optional[ChangeFeed] = Depends(get_feed),
):
    product = await _get_product_or_404(session, product_id)
    row = {**stock_update(product), "stock_quantity": 0, "is_available": False}
    await session.delete(product)
    await session.commit()
    if feed is not None:
        await feed.publish("products", DELETE, row)
    return


# 🗂️ Категории с количеством товаров
@categories_router.get("", response_model=List[CategoryOut])
async def list_categories(session: AsyncSession = Depends(get_session)):
    result = await session.execute(
        select(Category.id, Category.name, Category.slug, func.count(Product.id))
        .outerjoin(Product, Product.category_id == Category.id)
        .group_by(Category.id, Category.name, Category.slug)
        .order_by(Category.name)
    )
    return [
        CategoryOut(id=cid, name=name, slug=slug, product_count=count)
        for cid, name, slug, count in result.all()
    ]
