# cartsync/domain/identity.py
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from cartsync.domain.errors import IdentityResolutionError
from cartsync.utils.settings import GUEST_CART_TTL_SECONDS, USER_CART_TTL_SECONDS


@dataclass(frozen=True)
class CartIdentity:
    """Who a cart request is for.

    user_id wins when present; session_id/device_fingerprint are then only
    hints carried along for logging and merge.
    """

    user_id: str | None = None
    session_id: str | None = None
    device_fingerprint: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None

    @property
    def is_guest(self) -> bool:
        return self.user_id is None

    @property
    def lock_key(self) -> str:
        if self.user_id is not None:
            return f"cart:user:{self.user_id}"
        return f"cart:session:{self.session_id}"

    def describe(self) -> str:
        if self.user_id is not None:
            return f"user {self.user_id}"
        return f"guest session {self.session_id}"

    def check(self) -> None:
        if self.user_id is None and not self.session_id:
            raise IdentityResolutionError("Guest request without a session id")

    def with_new_session(self) -> "CartIdentity":
        return replace(self, session_id=new_session_id())


def new_session_id() -> str:
    return uuid.uuid4().hex


def cart_ttl(is_guest: bool) -> timedelta:
    seconds = GUEST_CART_TTL_SECONDS if is_guest else USER_CART_TTL_SECONDS
    return timedelta(seconds=seconds)


def expiry_from(last_activity_at: datetime, is_guest: bool) -> datetime:
    # sliding expiration: liczone od ostatniej aktywnosci
    return last_activity_at + cart_ttl(is_guest)
