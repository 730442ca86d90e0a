# storefront/main.py
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import uvicorn

from . import admin, auth, checkout, coupons, maintenance, notifications, orders, realtime, shipping, shop
from .config import settings
from .database import engine, Base
from .errors import StorefrontError
from .logger import log
from .realtime import ChangeFeed

app = FastAPI(
    title="Storefront",
    description="🛒 API магазина: каталог, заказы, купоны, доставка и оплата",
    version="1.0.0",
)

# ✅ CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.middleware("http")(maintenance.maintenance_middleware)

# ✅ Роутеры
app.include_router(auth.router)
app.include_router(shop.router)
app.include_router(shop.categories_router)
app.include_router(orders.router)
app.include_router(orders.admin_router)
app.include_router(coupons.router)
app.include_router(shipping.router)
app.include_router(checkout.router)
app.include_router(notifications.router)
app.include_router(admin.router)
app.include_router(maintenance.router)
app.include_router(realtime.router)


# ⚠️ Ошибки: всегда {"error": "..."}
@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError):
    if exc.status_code >= 500:
        log.error(f"{request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)},
                        headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{field}: {first.get('msg')}" if field else "Invalid request"
    return JSONResponse(status_code=400, content={"error": message})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    log.opt(exception=exc).error(f"Unhandled exception on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.get("/")
async def root():
    return {"message": "🚀 Storefront API работает!"}


@app.on_event("startup")
async def on_startup():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    app.state.feed = ChangeFeed()
    log.info(f"storefront started ({settings.ENVIRONMENT})")


@app.on_event("shutdown")
async def on_shutdown():
    feed = getattr(app.state, "feed", None)
    if feed is not None:
        await feed.close()
    await engine.dispose()


# ✅ OpenAPI с OAuth2 (кнопка Authorize в /docs)
def custom_openapi():
    if app.openapi_schema:
        return app.openapi_schema
    schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
    )
    schema.setdefault("components", {}).setdefault("securitySchemes", {})
    schema["components"]["securitySchemes"]["OAuth2PasswordBearer"] = {
        "type": "oauth2",
        "flows": {"password": {"tokenUrl": "/api/auth/login", "scopes": {}}}
    }
    schema["security"] = [{"OAuth2PasswordBearer": []}]
    app.openapi_schema = schema
    return app.openapi_schema


app.openapi = custom_openapi

if __name__ == "__main__":
    uvicorn.run("storefront.main:app", host="0.0.0.0", port=8000, reload=True)
