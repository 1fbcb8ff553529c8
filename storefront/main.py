# storefront/main.py
from contextlib import asynccontextmanager
import logging

from fastapi.middleware.cors import CORSMiddleware
from fastapi import FastAPI

from storefront.core.config import get_settings
from storefront.core.errors import CorrelationIdFilter, register_error_handlers
from storefront.database import create_db_and_tables

# Import models so SQLModel metadata is populated before create_all()
from storefront.models import user as _user_models  # noqa: F401
from storefront.models import product as _product_models  # noqa: F401
from storefront.models import order as _order_models  # noqa: F401
from storefront.models import shipment as _shipment_models  # noqa: F401
from storefront.models import app_config as _app_config_models  # noqa: F401

# Routers
from storefront.routers.admin_config import router as admin_config_router
from storefront.routers.admin_orders import router as admin_orders_router
from storefront.routers.admin_shipping import router as admin_shipping_router
from storefront.routers.currency import router as currency_router
from storefront.routers.files import router as files_router
from storefront.routers.payments import router as payments_router
from storefront.routers.products import router as products_router
from storefront.routers.support import router as support_router
from storefront.routers.users import auth_router, router as users_router

settings = get_settings()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s [cid=%(cid)s] %(message)s",
)
for _handler in logging.getLogger().handlers:
    _handler.addFilter(CorrelationIdFilter())
logger = logging.getLogger("uvicorn")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
      - Verify DB connectivity and create tables.

    Shutdown:
      - No special cleanup needed for sync engine.
    """
    logger.info("Startup: connecting to database...")
    try:
        create_db_and_tables()
        logger.info("Startup: DB connection OK, tables verified.")
    except Exception as e:
        logger.error("Startup: DB connection FAILED: %s", e)
        raise
    yield


app = FastAPI(
    title=settings.PROJECT_NAME,
    version="0.1.0",
    lifespan=lifespan,
)


# --- CORS configuration ---
origins = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:3002",
    settings.PUBLIC_BASE_URL.rstrip("/"),
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["x-correlation-id"],
)

register_error_handlers(app)

# Versioned API prefix, e.g. /api
app.include_router(auth_router, prefix=settings.API_V1_STR)
app.include_router(products_router, prefix=settings.API_V1_STR)
app.include_router(payments_router, prefix=settings.API_V1_STR)
app.include_router(currency_router, prefix=settings.API_V1_STR)
app.include_router(support_router, prefix=settings.API_V1_STR)
app.include_router(files_router, prefix=settings.API_V1_STR)
app.include_router(admin_orders_router, prefix=settings.API_V1_STR)
app.include_router(users_router, prefix=settings.API_V1_STR)
app.include_router(admin_shipping_router, prefix=settings.API_V1_STR)
app.include_router(admin_config_router, prefix=settings.API_V1_STR)


@app.get("/")
def root():
    """Health check endpoint."""
    return {"status": "ok", "service": "anoint-storefront"}
