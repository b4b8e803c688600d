#cartsync/api/routers/health.py
from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from cartsync.data.database import get_db
from cartsync.services.lock_service import LockService, _IdentityLocks, get_lock_service
from cartsync.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
def health(db: Session = Depends(get_db), lock_service: _IdentityLocks = Depends(get_lock_service)):
    database = "ok"
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error(f"Health check: database unavailable: {e}")
        database = "unavailable"

    return {
        "status": "ok" if database == "ok" else "degraded",
        "database": database,
        "locks": "redis" if isinstance(lock_service, LockService) else "memory",
    }
