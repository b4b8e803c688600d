# cartsync/services/sweeper.py
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.orm import Session

from cartsync.data.types import utcnow
from cartsync.repos.cart_repo import CartRepo
from cartsync.utils.logging import get_logger
from cartsync.utils.settings import ABANDON_AFTER_HOURS, CART_RETENTION_DAYS

logger = get_logger(__name__)


@dataclass
class SweepReport:
    ran_at: datetime
    expired: int = 0
    abandoned: int = 0
    purged: int = 0


class CartSweeper:
    """
    -zywe koszyki po expires_at -> EXPIRED
    -ACTIVE bez aktywnosci przez ABANDON_AFTER_HOURS -> ABANDONED
    -EXPIRED starsze niz retencja -> usuwane

    Only conditional UPDATE/DELETE statements, so running it twice or next to
    a cart mutation is harmless.
    """

    def __init__(
        self,
        db: Session,
        abandon_after: timedelta = timedelta(hours=ABANDON_AFTER_HOURS),
        retention: timedelta = timedelta(days=CART_RETENTION_DAYS),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repo = CartRepo(db)
        self.abandon_after = abandon_after
        self.retention = retention
        self.clock = clock

    def run(self, now: datetime | None = None) -> SweepReport:
        now = now or self.clock()
        report = SweepReport(ran_at=now)

        try:
            report.expired = self.repo.expire_due_carts(now)
            report.abandoned = self.repo.abandon_idle_carts(now - self.abandon_after, now)
            report.purged = self.repo.delete_old_carts(now - self.retention)
            self.repo.commit()
        except Exception:
            self.repo.rollback()
            raise

        logger.info(
            f"Sweep at {now.isoformat()}: expired={report.expired} "
            f"abandoned={report.abandoned} purged={report.purged}"
        )
        return report
