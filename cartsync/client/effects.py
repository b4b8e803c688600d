# cartsync/client/effects.py
import threading
from datetime import datetime
from decimal import Decimal
from typing import Callable

from pydantic import ValidationError

from cartsync.client.api import CartApiClient, CartApiError
from cartsync.client.cache import (
    CartAction,
    CartCacheState,
    Cleared,
    ItemAdded,
    ItemRemoved,
    QuantityUpdated,
    ServerSynced,
    SessionChanged,
    reduce,
)
from cartsync.client.session import SessionContext
from cartsync.client.storage import LocalStore
from cartsync.data.types import utcnow
from cartsync.domain.errors import OfflineAddError
from cartsync.domain.pricing import PricingRules, line_key
from cartsync.domain.schemas import CartOut
from cartsync.utils.logging import get_logger

logger = get_logger(__name__)

CART_CACHE_KEY = "cart_cache_v1"


class CartSync:
    """
    Warstwa efektow dla cache koszyka:
    -jedna operacja naraz (lock per instancja)
    -stary cache -> najpierw pelny GET, serwer wygrywa
    -siec/5xx -> akcja lokalna przez reduce()
    -409 idzie do wywolujacego

    Only guest carts are persisted locally; an authenticated cart always
    comes from the server.
    """

    def __init__(
        self,
        session: SessionContext,
        api: CartApiClient,
        store: LocalStore,
        rules: PricingRules | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.api = api
        self.store = store
        self.rules = rules or PricingRules.from_settings()
        self.clock = clock
        self._lock = threading.Lock()
        self._merged_user_id: str | None = None

        info = session.info
        cached = self._load_cached(info.session_id) if info.is_guest else None
        if cached is not None and not session.is_cart_session_expired():
            self.state = cached
        else:
            self.state = CartCacheState(session_id=info.session_id, is_guest=info.is_guest, stale=True)

    # ---- operations ----
    def refresh(self) -> CartCacheState:
        with self._lock:
            self._reconcile(force=True)
            return self.state

    def add_item(
        self,
        product_id: str,
        quantity: int = 1,
        unit_price: Decimal | None = None,
        base_price: Decimal | None = None,
        tax_rate: Decimal | None = None,
        tax_included: bool = False,
        custom_length: Decimal | None = None,
        product_name: str | None = None,
        is_gift: bool = False,
        gift_message: str | None = None,
    ) -> CartCacheState:
        if quantity <= 0:
            raise ValueError("Quantity must be greater than 0")

        def local() -> ItemAdded:
            if unit_price is not None:
                return ItemAdded(
                    product_id=product_id,
                    quantity=quantity,
                    unit_price=unit_price,
                    base_price=base_price,
                    tax_rate=tax_rate,
                    tax_included=tax_included,
                    custom_length=custom_length,
                    product_name=product_name,
                    is_gift=is_gift,
                    gift_message=gift_message,
                )

            # bez ceny: bierzemy ceny z linii, ktora juz jest w cache
            line = self.state.find(line_key(product_id, custom_length))
            if line is None:
                raise OfflineAddError(
                    f"Cart server unavailable and no known price for product {product_id}", product_id
                )
            return ItemAdded(
                product_id=product_id,
                quantity=quantity,
                unit_price=line.unit_price,
                base_price=line.base_price,
                tax_rate=line.tax_rate,
                tax_included=line.tax_included,
                custom_length=line.custom_length,
                product_name=line.product_name,
                is_gift=is_gift,
                gift_message=gift_message,
            )

        return self._run(
            lambda: self.api.add_item(product_id, quantity, custom_length, is_gift, gift_message),
            local,
        )

    def update_quantity(self, item_id: str, quantity: int) -> CartCacheState:
        if item_id.startswith("local:"):
            # pozycja jeszcze nieznana serwerowi
            with self._lock:
                return self._dispatch(QuantityUpdated(item_id, quantity))
        return self._run(lambda: self.api.update_quantity(item_id, quantity), QuantityUpdated(item_id, quantity))

    def remove_item(self, item_id: str) -> CartCacheState:
        if item_id.startswith("local:"):
            with self._lock:
                return self._dispatch(ItemRemoved(item_id))
        return self._run(lambda: self.api.remove_item(item_id), ItemRemoved(item_id))

    def clear(self) -> CartCacheState:
        return self._run(self.api.clear, Cleared())

    def login(self, user_id: str, token: str) -> CartCacheState:
        """Authenticate and merge the guest cart into the user's cart, once per user."""
        with self._lock:
            info = self.session.info
            self.api.set_token(token)

            if not info.is_guest and info.user_id == user_id and self._merged_user_id == user_id:
                self._reconcile(force=True)
                return self.state

            guest_session_id = info.session_id
            fingerprint = info.device_fingerprint
            self.session.authenticate(user_id)
            self.state = reduce(self.state, SessionChanged(guest_session_id, is_guest=False), self.rules)
            self._forget_cache()

            try:
                result = self.api.merge(guest_session_id, fingerprint)
            except CartApiError as exc:
                if not exc.is_transient:
                    raise
                logger.warning(f"Merge for user {user_id} failed ({exc}), will sync later")
                return self.state

            self._merged_user_id = user_id
            if result.fallback:
                logger.warning(f"Server could not merge guest cart for user {user_id}, using the user cart")
            return self._synced(result.cart)

    def logout(self) -> CartCacheState:
        with self._lock:
            self.api.set_token(None)
            self._merged_user_id = None
            self.session.logout()
            self.state = reduce(self.state, SessionChanged(self.session.info.session_id, is_guest=True), self.rules)
            self._forget_cache()
            self._reconcile(force=True)
            return self.state

    # ---- internals ----
    def _run(
        self,
        remote: Callable[[], CartOut],
        local: CartAction | Callable[[], CartAction],
    ) -> CartCacheState:
        """``local`` may be a callable, built only once the server call has failed."""
        with self._lock:
            self._reconcile()
            try:
                cart = remote()
            except CartApiError as exc:
                if not exc.is_transient:
                    raise
                logger.warning(f"Cart server unavailable ({exc}), applying change locally")
                action = local() if callable(local) else local
                return self._dispatch(action)
            return self._synced(cart)

    def _reconcile(self, force: bool = False) -> None:
        if not (force or self.state.stale):
            return
        try:
            cart = self.api.get_cart()
        except CartApiError as exc:
            if not exc.is_transient:
                raise
            logger.warning(f"Could not refresh cart ({exc}), keeping the local copy")
            return
        self._synced(cart)

    def _synced(self, cart: CartOut) -> CartCacheState:
        previous_cart_id = self.state.cart_id
        self._dispatch(ServerSynced(cart, self.clock()))

        descriptor = self.session.get_cart_session()
        if descriptor is None or descriptor.cart_id != cart.cart_id or previous_cart_id != cart.cart_id:
            self.session.create_cart_session(cart.cart_id, cart.item_count)
        else:
            self.session.update_cart_activity(cart.item_count)
        return self.state

    def _dispatch(self, action: CartAction) -> CartCacheState:
        self.state = reduce(self.state, action, self.rules)
        self._persist()
        return self.state

    def _persist(self) -> None:
        if not self.state.is_guest:
            return
        try:
            self.store.write_text(CART_CACHE_KEY, self.state.model_dump_json())
        except OSError as exc:
            logger.error(f"Failed to persist guest cart cache: {exc}")

    def _forget_cache(self) -> None:
        try:
            self.store.remove(CART_CACHE_KEY)
        except OSError as exc:
            logger.error(f"Failed to remove cart cache: {exc}")

    def _load_cached(self, session_id: str) -> CartCacheState | None:
        try:
            raw = self.store.read_text(CART_CACHE_KEY)
            if raw is None:
                return None
            state = CartCacheState.model_validate_json(raw)
        except (OSError, ValidationError, ValueError) as exc:
            logger.error(f"Ignoring unreadable cart cache: {exc}")
            return None

        if state.session_id != session_id:
            return None
        return state
