# cartsync/services/merge_service.py
from dataclasses import dataclass
from typing import Any, Dict

from cartsync.data.models.cart import CartModel
from cartsync.data.models.cart_item import CartItemModel
from cartsync.domain import pricing
from cartsync.domain.errors import ConcurrentModificationError, MergeFailure
from cartsync.domain.identity import CartIdentity
from cartsync.domain.status import CartStatus
from cartsync.services.cart_service import CartService
from cartsync.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class MergeResult:
    cart: Dict[str, Any]
    merged: bool
    fallback: bool = False
    guest_cart_id: str | None = None


class MergeService:
    """
    Scalanie koszyka goscia z koszykiem usera, raz przy logowaniu.

    Both identity locks are held and everything happens in one transaction.
    On any failure the transaction is rolled back and the user simply gets
    their own (or a new) cart; the guest cart stays as it was and expires.
    """

    def __init__(self, cart_service: CartService):
        self.carts = cart_service
        self.repo = cart_service.repo
        self.lock_service = cart_service.lock_service
        self.clock = cart_service.clock

    def merge(self, session_id: str, device_fingerprint: str | None, user_id: str) -> MergeResult:
        guest_identity = CartIdentity(session_id=session_id, device_fingerprint=device_fingerprint)
        user_identity = CartIdentity(user_id=user_id)

        with self.lock_service.hold_many([guest_identity.lock_key, user_identity.lock_key]):
            try:
                return self._merge(guest_identity, user_identity)
            except Exception as exc:
                self.repo.rollback()
                failure = MergeFailure(f"Merge of session {session_id} into user {user_id} failed: {exc}")
                logger.error(f"{failure} - falling back to the user's cart")

            cart = self.carts.resolve(user_identity)
            self.repo.commit()
            return MergeResult(cart=self.carts.snapshot(cart), merged=False, fallback=True)

    def _merge(self, guest_identity: CartIdentity, user_identity: CartIdentity) -> MergeResult:
        guest = self._find_guest_cart(guest_identity)
        user_cart = self.repo.get_live_cart_by_user(user_identity.user_id)

        if guest is None and user_cart is None:
            cart = self.carts.resolve(user_identity)
            self.repo.commit()
            logger.info(f"Nothing to merge for user {user_identity.user_id}, created cart {cart.id}")
            return MergeResult(cart=self.carts.snapshot(cart), merged=False)

        if guest is None:
            # powtorny merge trafia tutaj, no-op
            self.repo.commit()
            return MergeResult(cart=self.carts.snapshot(user_cart), merged=False)

        if user_cart is None:
            self._rekey(guest, user_identity.user_id)
            self.carts._touch(guest)
            self.repo.commit()
            logger.info(f"Guest cart {guest.id} re-keyed to user {user_identity.user_id}")
            return MergeResult(cart=self.carts.snapshot(guest), merged=True, guest_cart_id=guest.id)

        guest_cart_id = guest.id
        self._combine(guest, user_cart)
        self._supersede(guest, user_cart)
        self.carts._touch(user_cart)
        self.repo.commit()

        logger.info(f"Merged guest cart {guest_cart_id} into cart {user_cart.id} of user {user_identity.user_id}")
        return MergeResult(cart=self.carts.snapshot(user_cart), merged=True, guest_cart_id=guest_cart_id)

    def _find_guest_cart(self, identity: CartIdentity) -> CartModel | None:
        cart = self.repo.get_live_guest_cart(identity.session_id)
        if cart is None and identity.device_fingerprint:
            candidates = self.repo.get_live_guest_carts_by_fingerprint(identity.device_fingerprint)
            cart = candidates[0] if candidates else None
        return cart

    def _rekey(self, guest: CartModel, user_id: str) -> None:
        guest.user_id = user_id
        guest.session_id = None
        guest.device_fingerprint = None
        self.repo.db.flush()

    def _combine(self, guest: CartModel, user_cart: CartModel) -> None:
        """Union of lines by line_key; shared keys sum quantities."""
        for guest_item in self.repo.get_cart_items(guest.id):
            existing = self.repo.get_item_by_key(user_cart.id, guest_item.line_key)

            if existing:
                existing.quantity += guest_item.quantity
                existing.total_price = pricing.money(existing.unit_price * existing.quantity)
                existing.is_gift = bool(existing.is_gift or guest_item.is_gift)
                existing.gift_message = existing.gift_message or guest_item.gift_message
                self.repo.add_cart_item(existing)
                continue

            self.repo.add_cart_item(
                CartItemModel(
                    cart_id=user_cart.id,
                    product_id=guest_item.product_id,
                    product_name=guest_item.product_name,
                    quantity=guest_item.quantity,
                    unit_price=guest_item.unit_price,
                    base_price=guest_item.base_price,
                    tax_rate=guest_item.tax_rate,
                    tax_included=guest_item.tax_included,
                    total_price=guest_item.total_price,
                    custom_length=guest_item.custom_length,
                    fixed_height=guest_item.fixed_height,
                    is_gift=guest_item.is_gift,
                    gift_message=guest_item.gift_message,
                    line_key=guest_item.line_key,
                    added_at=guest_item.added_at,
                )
            )

        # pola koszyka usera wygrywaja, gosc tylko uzupelnia braki
        if not user_cart.discount_code:
            user_cart.discount_code = guest.discount_code
        if not user_cart.is_gift and guest.is_gift:
            user_cart.is_gift = True
        if not user_cart.gift_message:
            user_cart.gift_message = guest.gift_message

    def _supersede(self, guest: CartModel, user_cart: CartModel) -> None:
        self.repo.db.flush()
        now = self.clock()
        rowcount = self.repo.update_cart_version(
            cart_id=guest.id,
            old_version=guest.version,
            new_data={
                "version": guest.version + 1,
                "status": CartStatus.EXPIRED.value,
                "superseded_by_id": user_cart.id,
                "updated_at": now,
            },
        )
        if rowcount == 0:
            raise ConcurrentModificationError(f"Guest cart {guest.id} changed during merge")
