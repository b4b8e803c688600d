# cartsync/client/session.py
"""Client-side session identity.

One ``SessionContext`` is created when the application starts and handed to
``CartApiClient``/``CartSync``; ``close()`` is called on shutdown. Nothing in
here is a module-level singleton.

The device fingerprint only correlates guest activity on one machine. It is
not a credential and the server never treats it as one.
"""
import hashlib
import locale
import platform
import secrets
import time
import uuid
from datetime import datetime
from typing import Callable, Dict

from pydantic import BaseModel, ValidationError

from cartsync.client.storage import LocalStore
from cartsync.data.types import utcnow
from cartsync.domain.identity import cart_ttl
from cartsync.utils.logging import get_logger

logger = get_logger(__name__)

SESSION_KEY = "cart_session_v1"
CART_SESSION_KEY = "cart_session_data_v1"
DEVICE_SALT_KEY = "device_salt_v1"


class SessionInfo(BaseModel):
    session_id: str
    device_fingerprint: str
    is_guest: bool = True
    user_id: str | None = None
    created_at: datetime
    last_activity_at: datetime
    cart_id: str | None = None


class CartSessionData(BaseModel):
    """What the client remembers about its cart between runs."""

    session_id: str
    device_fingerprint: str
    cart_id: str | None = None
    expires_at: datetime
    item_count: int = 0
    last_sync_at: datetime


def generate_session_id() -> str:
    return uuid.uuid4().hex


def device_fingerprint(salt: str) -> str:
    try:
        language = locale.getlocale()[0] or ""
    except ValueError:
        language = ""

    parts = [
        platform.system(),
        platform.machine(),
        platform.python_implementation(),
        language,
        str(time.timezone),
        salt,
    ]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()[:32]


class SessionContext:
    def __init__(self, store: LocalStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock
        self._info: SessionInfo | None = None

    @property
    def info(self) -> SessionInfo:
        if self._info is None:
            return self.initialize()
        return self._info

    def initialize(self) -> SessionInfo:
        """Load the persisted identity or create a new one. Never raises."""
        try:
            raw = self.store.read_text(SESSION_KEY)
            if raw is None:
                self._info = self._new_session()
            else:
                self._info = SessionInfo.model_validate_json(raw)
        except (OSError, ValidationError, ValueError) as exc:
            logger.error(f"Failed to load session ({exc}), starting a fresh one")
            self._info = self._new_session()

        self._info = self._info.model_copy(update={"last_activity_at": self.clock()})
        self._save()
        return self._info

    def authenticate(self, user_id: str) -> SessionInfo:
        info = self.info
        self._info = info.model_copy(
            update={"user_id": user_id, "is_guest": False, "last_activity_at": self.clock()}
        )
        self._save()
        return self._info

    def logout(self) -> None:
        # session_id zostaje, rotuje dopiero reset()
        info = self.info
        self._info = info.model_copy(
            update={"user_id": None, "is_guest": True, "cart_id": None, "last_activity_at": self.clock()}
        )
        self._save()
        self.clear_cart_session()

    def reset(self) -> SessionInfo:
        for key in (SESSION_KEY, CART_SESSION_KEY, DEVICE_SALT_KEY):
            try:
                self.store.remove(key)
            except OSError as exc:
                logger.error(f"Failed to remove {key} during reset: {exc}")

        self._info = None
        return self.initialize()

    def close(self) -> None:
        if self._info is not None:
            self._save()
        self._info = None

    def headers(self) -> Dict[str, str]:
        info = self.info
        headers = {
            "X-Session-ID": info.session_id,
            "X-Device-Fingerprint": info.device_fingerprint,
        }
        if info.user_id:
            headers["X-User-ID"] = info.user_id
        return headers

    # ---- cart session descriptor ----
    def create_cart_session(self, cart_id: str, item_count: int = 0) -> CartSessionData:
        info = self.info
        now = self.clock()
        data = CartSessionData(
            session_id=info.session_id,
            device_fingerprint=info.device_fingerprint,
            cart_id=cart_id,
            expires_at=now + cart_ttl(info.is_guest),
            item_count=item_count,
            last_sync_at=now,
        )
        self._info = info.model_copy(update={"cart_id": cart_id})
        self._save()
        self._write(CART_SESSION_KEY, data.model_dump_json())
        return data

    def get_cart_session(self) -> CartSessionData | None:
        try:
            raw = self.store.read_text(CART_SESSION_KEY)
            if raw is None:
                return None
            return CartSessionData.model_validate_json(raw)
        except (OSError, ValidationError, ValueError) as exc:
            logger.error(f"Failed to read cart session: {exc}")
            return None

    def update_cart_activity(self, item_count: int) -> None:
        data = self.get_cart_session()
        if data is None:
            return
        now = self.clock()
        data = data.model_copy(
            update={
                "item_count": item_count,
                "last_sync_at": now,
                "expires_at": now + cart_ttl(self.info.is_guest),
            }
        )
        self._write(CART_SESSION_KEY, data.model_dump_json())

    def clear_cart_session(self) -> None:
        try:
            self.store.remove(CART_SESSION_KEY)
        except OSError as exc:
            logger.error(f"Failed to clear cart session: {exc}")

    def is_cart_session_expired(self) -> bool:
        data = self.get_cart_session()
        if data is None:
            return True
        return self.clock() > data.expires_at

    # ---- internals ----
    def _new_session(self) -> SessionInfo:
        now = self.clock()
        return SessionInfo(
            session_id=generate_session_id(),
            device_fingerprint=device_fingerprint(self._device_salt()),
            created_at=now,
            last_activity_at=now,
        )

    def _device_salt(self) -> str:
        try:
            salt = self.store.read_text(DEVICE_SALT_KEY)
        except OSError as exc:
            logger.error(f"Failed to read device salt: {exc}")
            salt = None
        if salt:
            return salt.strip()

        salt = secrets.token_hex(16)
        self._write(DEVICE_SALT_KEY, salt)
        return salt

    def _save(self) -> None:
        if self._info is not None:
            self._write(SESSION_KEY, self._info.model_dump_json())

    def _write(self, key: str, text: str) -> None:
        try:
            self.store.write_text(key, text)
        except OSError as exc:
            logger.error(f"Failed to save {key}: {exc}")
