# cartsync/tasks/expire.py
from cartsync.celery_worker import celery_app
from cartsync.data.database import SessionLocal
from cartsync.services.sweeper import CartSweeper
from cartsync.utils.logging import get_logger

logger = get_logger(__name__)


@celery_app.task(name="cartsync.tasks.expire.expire_carts_task")
def expire_carts_task():
    logger.info("Expire carts task started")

    db = SessionLocal()
    try:
        report = CartSweeper(db).run()
        return {
            "ran_at": report.ran_at.isoformat(),
            "expired": report.expired,
            "abandoned": report.abandoned,
            "purged": report.purged,
        }
    finally:
        db.close()
