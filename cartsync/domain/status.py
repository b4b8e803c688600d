# cartsync/domain/status.py
from enum import Enum


class CartStatus(str, Enum):
    ACTIVE = "ACTIVE"
    ABANDONED = "ABANDONED"  # informacyjny, koszyk dalej zyje
    EXPIRED = "EXPIRED"
    CHECKED_OUT = "CHECKED_OUT"

    @property
    def is_live(self) -> bool:
        return self in LIVE_STATUSES


LIVE_STATUSES = (CartStatus.ACTIVE, CartStatus.ABANDONED)
LIVE_STATUS_VALUES = tuple(s.value for s in LIVE_STATUSES)
