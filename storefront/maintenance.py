# storefront/maintenance.py
from pathlib import Path

from fastapi import APIRouter, Request, Response
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates

from .config import settings
from .schemas import MaintenanceToggle

templates = Jinja2Templates(directory=str(Path(__file__).resolve().parent / "templates"))
router = APIRouter(tags=["maintenance"])

COOKIE_NAME = "maintenanceMode"
COOKIE_MAX_AGE = 60 * 60 * 24 * 7  # 7 дней

# reachable while maintenance is on
EXCLUDED_PREFIXES = (
    "/maintenance",
    "/api",
    "/ws",
    "/static",
    "/docs",
    "/redoc",
    "/openapi.json",
    "/favicon.ico",
    "/images",
    "/icons",
)


def cookie_enabled(request: Request) -> bool:
    return request.cookies.get(COOKIE_NAME) == "true"


def maintenance_active(request: Request) -> bool:
    return settings.MAINTENANCE_MODE or cookie_enabled(request)


def is_excluded(path: str) -> bool:
    return any(path.startswith(prefix) for prefix in EXCLUDED_PREFIXES)


async def maintenance_middleware(request: Request, call_next):
    if not is_excluded(request.url.path) and maintenance_active(request):
        return RedirectResponse(url="/maintenance", status_code=307)
    return await call_next(request)


@router.get("/maintenance", response_class=HTMLResponse)
async def maintenance_page(request: Request):
    return templates.TemplateResponse(request, "maintenance.html", {"title": "Storefront"}, status_code=503)


# ✅ Статус режима обслуживания
@router.get("/api/maintenance")
async def maintenance_status(request: Request):
    return {"maintenanceMode": cookie_enabled(request), "envMode": settings.MAINTENANCE_MODE}


@router.post("/api/maintenance")
async def toggle_maintenance(payload: MaintenanceToggle, response: Response):
    # client-side code reads this cookie too
    response.set_cookie(
        COOKIE_NAME,
        "true" if payload.enabled else "false",
        max_age=COOKIE_MAX_AGE,
        path="/",
        httponly=False,
        samesite="lax",
    )
    return {"success": True, "maintenanceMode": payload.enabled}
