from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Any

from pydantic import BaseModel, EmailStr, Field


# 👤 Пользователь
class UserBase(BaseModel):
    email: EmailStr
    full_name: str


class UserCreate(UserBase):
    password: str


class UserOut(UserBase):
    id: int
    role: str

    class Config:
        from_attributes = True


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class AdminUserCreate(BaseModel):
    email: EmailStr
    password: str
    full_name: str


class AdminUserUpdate(BaseModel):
    user_id: int
    full_name: Optional[str] = None
    new_password: Optional[str] = None


# 🛍️ Каталог
class CategoryOut(BaseModel):
    id: int
    name: str
    slug: str
    product_count: int = 0


class ProductBase(BaseModel):
    name: str
    slug: str
    description: Optional[str] = None
    price: Decimal = Field(ge=0)
    image_url: Optional[str] = None
    category_id: Optional[int] = None
    weight_kg: float = 0.5


class ProductCreate(ProductBase):
    stock_quantity: int = Field(default=0, ge=0)
    is_available: bool = True


class ProductOut(ProductBase):
    id: int
    stock_quantity: int
    sold_count: int
    rating: float
    is_available: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ProductsPage(BaseModel):
    products: List[ProductOut]
    total: int
    page: int
    pageSize: int


# 📦 Заказы
class OrderItemOut(BaseModel):
    id: int
    product_id: Optional[int] = None
    product_title: str
    product_image: Optional[str] = None
    price: Decimal
    quantity: int
    subtotal: Decimal

    class Config:
        from_attributes = True


class OrderSummary(BaseModel):
    id: int
    order_number: str
    status: str
    total: Decimal
    currency: str
    created_at: Optional[datetime] = None
    items_count: int = 0


class OrderOut(BaseModel):
    id: int
    order_number: str
    status: str
    subtotal: Decimal
    shipping_cost: Decimal
    discount: Decimal
    total: Decimal
    currency: str
    tracking_number: Optional[str] = None
    cancel_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    processing_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    items: List[OrderItemOut] = []

    class Config:
        from_attributes = True


class OrderItemIn(BaseModel):
    product_id: int
    quantity: int = Field(gt=0)


class OrderCreate(BaseModel):
    items: List[OrderItemIn] = Field(min_length=1)
    shipping_cost: Decimal = Field(default=Decimal("0"), ge=0)
    shipping_courier: Optional[str] = None
    shipping_service: Optional[str] = None
    currency: Optional[str] = None


class OrderCancelRequest(BaseModel):
    reason: str = Field(min_length=1)


class OrderStatusUpdate(BaseModel):
    status: str
    reason: Optional[str] = None
    tracking_number: Optional[str] = None


class ProgressStep(BaseModel):
    key: str
    label: str
    description: str
    state: str  # completed/current/upcoming
    timestamp: Optional[datetime] = None


class OrderProgress(BaseModel):
    status: str
    terminal: Optional[str] = None  # cancelled/refunded
    terminal_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    steps: List[ProgressStep] = []


class OrderStats(BaseModel):
    total: int
    pending: int
    processing: int
    completed: int


# 💳 Оплата
class CheckoutRequest(BaseModel):
    orderId: Optional[int] = None


class CheckoutResponse(BaseModel):
    sessionId: str
    url: str


class VerifyResponse(BaseModel):
    success: bool
    orderId: Optional[int] = None


# 🎟️ Купоны
class CouponValidateRequest(BaseModel):
    code: str
    subtotal: Decimal
    category_id: Optional[int] = None


class CouponValidationResult(BaseModel):
    is_valid: bool
    coupon_id: Optional[int] = None
    discount_amount: Optional[Decimal] = None
    error_message: Optional[str] = None


class ApplyCouponRequest(BaseModel):
    code: str


# 🔔 Уведомления
class NotificationOut(BaseModel):
    id: int
    type: str
    title: str
    message: str
    data: Optional[Any] = None
    is_read: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class MaintenanceToggle(BaseModel):
    enabled: bool
