# storefront/admin.py
from fastapi import APIRouter, Depends, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import get_current_user, get_password_hash
from .database import get_session
from .errors import NotFound, ValidationFailed
from .logger import log
from .models import User
from .schemas import AdminUserCreate, AdminUserUpdate

router = APIRouter(prefix="/api/admin", tags=["admin"])

MIN_PASSWORD_LENGTH = 8


def _check_password(password: str) -> None:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationFailed(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")


# 👤 Новый администратор
@router.post("/create-user", status_code=status.HTTP_201_CREATED)
async def create_admin_user(
    payload: AdminUserCreate,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    if not payload.full_name.strip():
        raise ValidationFailed("Email, password and full name are required")
    _check_password(payload.password)

    user = User(
        email=payload.email,
        full_name=payload.full_name.strip(),
        password_hash=get_password_hash(payload.password),
        role="admin",
    )
    session.add(user)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise ValidationFailed("Email already registered")

    log.info(f"admin: user {user.id} ({user.email}) created by {current_user.id}")
    return {"success": True, "user": {"id": user.id, "email": user.email, "full_name": user.full_name}}


@router.put("/create-user")
async def update_admin_user(
    payload: AdminUserUpdate,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    result = await session.execute(select(User).where(User.id == payload.user_id))
    user = result.scalar_one_or_none()
    if user is None:
        raise NotFound("User not found")

    if payload.new_password:
        _check_password(payload.new_password)
        user.password_hash = get_password_hash(payload.new_password)
    if payload.full_name is not None:
        user.full_name = payload.full_name

    await session.commit()
    log.info(f"admin: user {user.id} updated by {current_user.id}")
    return {"success": True}
