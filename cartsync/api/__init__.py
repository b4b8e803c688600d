# cartsync/api/__init__.py
from contextlib import asynccontextmanager

from fastapi import FastAPI

from cartsync.api.routers import carts
from cartsync.api.routers.health import router as health_router
from cartsync.data.database import init_db
from cartsync.utils.logging import get_logger

logger = get_logger(__name__)


def create_app(init_database: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if init_database:
            logger.info("Initializing database tables")
            init_db()
        yield

    app = FastAPI(title="Cart Service", version="1.0.0", lifespan=lifespan)
    app.include_router(health_router)
    app.include_router(carts.router)
    return app
