from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cartsync.data.models.cart import CartModel
from cartsync.data.models.cart_item import CartItemModel
from cartsync.data.types import utcnow
from cartsync.domain import pricing
from cartsync.domain.errors import (
    CartItemNotFoundError,
    CartNotFoundError,
    ConcurrentModificationError,
    ConflictError,
    IdentityResolutionError,
    InvalidCartLineError,
    ProductUnavailableError,
)
from cartsync.domain.identity import CartIdentity, expiry_from
from cartsync.domain.pricing import PricedLine, PricingRules
from cartsync.domain.status import CartStatus
from cartsync.repos.cart_repo import CartRepo
from cartsync.services.lock_service import _IdentityLocks
from cartsync.services.product_client import ProductClient, ProductInfo
from cartsync.utils.logging import get_logger

logger = get_logger(__name__)


class CartService:
    """
    Jedyny autorytet koszyka po stronie serwera.
    commands (add, update, remove, clear, discount, checkout) modyfikuja stan
    query (get, validate, statistics) nic nie zmieniaja poza utworzeniem koszyka

    Every command runs under the identity lock, in one transaction, and ends
    with a version-conditional UPDATE, so it either lands completely or not at all.
    """

    def __init__(
        self,
        db: Session,
        product_client: ProductClient,
        lock_service: _IdentityLocks,
        rules: PricingRules | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repo = CartRepo(db)
        self.product_client = product_client
        self.lock_service = lock_service
        self.rules = rules or PricingRules.from_settings()
        self.clock = clock

    # =====================================================
    # QUERY
    # =====================================================
    def get_or_create(
        self,
        identity: CartIdentity,
        shipping_method: str | None = None,
        payment_method: str | None = None,
    ) -> Dict[str, Any]:
        identity = self.identify(identity)
        with self.lock_service.hold(identity.lock_key):
            cart = self.resolve(identity)
            self.repo.commit()
            return self.snapshot(cart, shipping_method, payment_method)

    def validate(
        self,
        identity: CartIdentity,
        shipping_method: str | None = None,
        payment_method: str | None = None,
    ) -> Dict[str, Any]:
        """Recompute components and report stock/price drift. Never mutates items."""
        identity = self.identify(identity)
        with self.lock_service.hold(identity.lock_key):
            cart = self.resolve(identity)
            self.repo.commit()

            errors: list[str] = []
            warnings: list[str] = []

            for item in self.repo.get_cart_items(cart.id):
                name = item.product_name or item.product_id
                try:
                    product = self.product_client.fetch_product(item.product_id)
                except ProductUnavailableError as exc:
                    if exc.not_found:
                        errors.append(f"Product {name} is no longer available")
                    else:
                        warnings.append(f"Could not verify {name}: catalog unavailable")
                    continue

                if not product.available:
                    errors.append(f"Product {name} is no longer available")
                    continue

                if product.stock_quantity is not None and product.stock_quantity < item.quantity:
                    errors.append(
                        f"Insufficient stock for {name} "
                        f"(requested: {item.quantity}, available: {product.stock_quantity})"
                    )
                    continue

                current = self._current_unit_price(product, item.custom_length)
                if current is not None and current != item.unit_price:
                    warnings.append(f"Price changed for {name} (was: {item.unit_price}, now: {current})")

            snapshot = self.snapshot(cart, shipping_method, payment_method)
            for component in snapshot["components"]:
                if component["type"] == pricing.ComponentType.DISCOUNT.value and component["amount"] == pricing.ZERO:
                    warnings.append(component["description"])

            return {
                "valid": not errors,
                "errors": errors,
                "warnings": warnings,
                "cart": snapshot,
            }

    def statistics(self) -> Dict[str, Any]:
        since = self.clock() - timedelta(days=30)
        return {
            "by_status": self.repo.count_by_status(),
            "active_guest_carts": self.repo.count_live_guest_carts(),
            "average_cart_size": self.repo.average_item_count(since),
        }

    # =====================================================
    # COMMANDS
    # =====================================================
    def add_item(
        self,
        identity: CartIdentity,
        product_id: str,
        quantity: int,
        custom_length: Decimal | None = None,
        is_gift: bool = False,
        gift_message: str | None = None,
    ) -> Dict[str, Any]:
        if quantity <= 0:
            raise InvalidCartLineError("Quantity must be greater than 0")

        # HTTP do katalogu przed lockiem, lock trzymamy krotko
        product = self.product_client.fetch_product(product_id)
        if not product.available:
            raise ProductUnavailableError(f"Product {product_id} is not available")

        unit_price, base_price, tax_included, custom_length = self._price_line(product, custom_length)
        key = pricing.line_key(product.id, custom_length)

        identity = self.identify(identity)
        with self.lock_service.hold(identity.lock_key):
            cart = self.resolve(identity)
            try:
                existing_item = self.repo.get_item_by_key(cart.id, key)
                new_quantity = quantity + (existing_item.quantity if existing_item else 0)

                if product.stock_quantity is not None and new_quantity > product.stock_quantity:
                    raise InvalidCartLineError(
                        f"Insufficient stock for {product.name} "
                        f"(requested: {new_quantity}, available: {product.stock_quantity})"
                    )

                if existing_item:
                    logger.info(
                        f"Product {product.id} already in cart {cart.id}, "
                        f"quantity {existing_item.quantity} -> {new_quantity}"
                    )
                    existing_item.quantity = new_quantity
                    existing_item.unit_price = unit_price  # update ceny
                    existing_item.base_price = base_price
                    existing_item.total_price = pricing.money(unit_price * new_quantity)
                    if is_gift:
                        existing_item.is_gift = True
                        existing_item.gift_message = gift_message or existing_item.gift_message
                    self.repo.add_cart_item(existing_item)
                else:
                    logger.info(f"Adding product {product.id} to cart {cart.id}")
                    self.repo.add_cart_item(
                        CartItemModel(
                            cart_id=cart.id,
                            product_id=product.id,
                            product_name=product.name,
                            quantity=quantity,
                            unit_price=unit_price,
                            base_price=base_price,
                            tax_rate=None if tax_included else product.tax_rate,
                            tax_included=tax_included,
                            total_price=pricing.money(unit_price * quantity),
                            custom_length=custom_length,
                            fixed_height=product.fixed_height if product.is_variable_dimension else None,
                            is_gift=is_gift,
                            gift_message=gift_message,
                            line_key=key,
                            added_at=self.clock(),
                        )
                    )

                self._touch(cart)
                self.repo.commit()
            except Exception:
                self.repo.rollback()
                raise

            return self.snapshot(cart)

    def update_item_quantity(self, identity: CartIdentity, item_id: str, quantity: int) -> Dict[str, Any]:
        if quantity <= 0:
            return self.remove_item(identity, item_id)

        identity = self.identify(identity)
        with self.lock_service.hold(identity.lock_key):
            item = self._owned_item(identity, item_id)
            if item is None:
                raise CartItemNotFoundError(f"Cart item {item_id} not found")

            cart = item.cart
            try:
                logger.info(f"Cart {cart.id}: item {item_id} quantity {item.quantity} -> {quantity}")
                item.quantity = quantity
                item.total_price = pricing.money(item.unit_price * quantity)
                self.repo.add_cart_item(item)

                self._touch(cart)
                self.repo.commit()
            except Exception:
                self.repo.rollback()
                raise

            return self.snapshot(cart)

    def remove_item(self, identity: CartIdentity, item_id: str) -> Dict[str, Any]:
        identity = self.identify(identity)
        with self.lock_service.hold(identity.lock_key):
            item = self._owned_item(identity, item_id)

            if item is None:
                # juz usuniete - no-op
                cart = self.resolve(identity)
                self.repo.commit()
                return self.snapshot(cart)

            cart = item.cart
            try:
                logger.info(f"Removing item {item_id} from cart {cart.id}")
                self.repo.delete_cart_item(item)
                self._touch(cart)
                self.repo.commit()
            except Exception:
                self.repo.rollback()
                raise

            return self.snapshot(cart)

    def clear(self, identity: CartIdentity) -> Dict[str, Any]:
        def _clear(cart: CartModel):
            removed = self.repo.delete_cart_items(cart.id)
            cart.discount_code = None
            logger.info(f"Cleared {removed} items from cart {cart.id}")

        return self._mutate(identity, _clear)

    def apply_discount(self, identity: CartIdentity, code: str) -> Dict[str, Any]:
        def _apply(cart: CartModel):
            cart.discount_code = code.strip().upper()
            logger.info(f"Discount code {cart.discount_code} attached to cart {cart.id}")

        return self._mutate(identity, _apply)

    def remove_discount(self, identity: CartIdentity) -> Dict[str, Any]:
        def _remove(cart: CartModel):
            cart.discount_code = None

        return self._mutate(identity, _remove)

    def checkout(
        self,
        identity: CartIdentity,
        shipping_method: str | None = None,
        payment_method: str | None = None,
    ) -> Dict[str, Any]:
        """Freeze the cart as CHECKED_OUT. The returned final_total is what gets charged."""
        identity = self.identify(identity)
        with self.lock_service.hold(identity.lock_key):
            cart = self.resolve(identity)
            try:
                if not self.repo.get_cart_items(cart.id):
                    raise InvalidCartLineError("Cannot check out an empty cart")

                self._touch(
                    cart,
                    status=CartStatus.CHECKED_OUT,
                    shipping_method=shipping_method,
                    payment_method=payment_method,
                )
                self.repo.commit()
            except Exception:
                self.repo.rollback()
                raise

            logger.info(f"Cart {cart.id} checked out for {identity.describe()}")
            return self.snapshot(cart, shipping_method, payment_method)

    # =====================================================
    # resolution
    # =====================================================
    def identify(self, identity: CartIdentity) -> CartIdentity:
        """A guest without a session id continues under a freshly minted one.

        The new id comes back to the caller in the snapshot's ``session_id``.
        """
        try:
            identity.check()
        except IdentityResolutionError as exc:
            minted = identity.with_new_session()
            logger.warning(f"{exc}, continuing as guest session {minted.session_id}")
            return minted
        return identity

    def find_live(self, identity: CartIdentity) -> CartModel:
        """Look up the live cart for the identity without creating one.

        Raises ``CartNotFoundError`` when there is none.
        """
        if identity.user_id is not None:
            cart = self.repo.get_live_cart_by_user(identity.user_id)
            if cart is None:
                raise CartNotFoundError(f"No live cart for user {identity.user_id}")
            return cart

        identity.check()

        cart = self.repo.get_live_guest_cart(identity.session_id)
        if cart:
            return cart

        # sesja sie zmienila, ale to samo urzadzenie
        if identity.device_fingerprint:
            candidates = self.repo.get_live_guest_carts_by_fingerprint(identity.device_fingerprint)
            if candidates:
                cart = candidates[0]
                logger.info(
                    f"Re-keying guest cart {cart.id} from session {cart.session_id} to {identity.session_id}"
                )
                cart.session_id = identity.session_id
                self.repo.db.flush()
                return cart

        raise CartNotFoundError(f"No live guest cart for session {identity.session_id}")

    def resolve(self, identity: CartIdentity) -> CartModel:
        """Return the single live cart for the identity, creating one if needed.

        Caller holds the identity lock and owns the transaction.
        """
        try:
            return self.find_live(identity)
        except CartNotFoundError:
            pass

        if identity.user_id is not None:
            return self._create(identity, lambda: self.repo.get_live_cart_by_user(identity.user_id))
        return self._create(identity, lambda: self.repo.get_live_guest_cart(identity.session_id))

    def _create(self, identity: CartIdentity, lookup: Callable[[], CartModel | None]) -> CartModel:
        now = self.clock()
        cart = CartModel(
            user_id=identity.user_id,
            session_id=identity.session_id if identity.is_guest else None,
            device_fingerprint=identity.device_fingerprint if identity.is_guest else None,
            status=CartStatus.ACTIVE.value,
            version=1,
            expires_at=expiry_from(now, identity.is_guest),
            last_activity_at=now,
            created_at=now,
            updated_at=now,
            ip_address=identity.ip_address if identity.is_guest else None,
            user_agent=identity.user_agent if identity.is_guest else None,
        )
        try:
            created = self.repo.create_cart(cart)
        except IntegrityError:
            # inny worker byl szybszy (unikalny indeks na zywych koszykach)
            self.repo.rollback()
            existing = lookup()
            if existing is None:
                raise
            return existing

        logger.info(f"Created cart {created.id} for {identity.describe()}")
        return created

    def _owned_item(self, identity: CartIdentity, item_id: str) -> CartItemModel | None:
        item = self.repo.get_cart_item(item_id)
        if item is None or not self._owns(identity, item.cart):
            return None

        status = CartStatus(item.cart.status)
        if not status.is_live:
            raise ConflictError(
                f"Cart {item.cart.id} is {status.value.lower()}, start a new cart", cart_id=item.cart.id
            )
        return item

    @staticmethod
    def _owns(identity: CartIdentity, cart: CartModel) -> bool:
        if identity.user_id is not None:
            return cart.user_id == identity.user_id
        return cart.user_id is None and cart.session_id is not None and cart.session_id == identity.session_id

    # =====================================================
    # write helpers
    # =====================================================
    def _mutate(self, identity: CartIdentity, change: Callable[[CartModel], None]) -> Dict[str, Any]:
        identity = self.identify(identity)
        with self.lock_service.hold(identity.lock_key):
            cart = self.resolve(identity)
            try:
                change(cart)
                self._touch(cart)
                self.repo.commit()
            except Exception:
                self.repo.rollback()
                raise
            return self.snapshot(cart)

    def _touch(
        self,
        cart: CartModel,
        status: CartStatus = CartStatus.ACTIVE,
        shipping_method: str | None = None,
        payment_method: str | None = None,
    ) -> None:
        """Slide the expiry, store current amounts and bump the version.

        Raises ConcurrentModificationError when somebody else changed the cart
        since it was loaded; the caller rolls back.
        """
        self.repo.db.flush()
        now = self.clock()
        result = self.price(cart, shipping_method, payment_method)

        new_data = {
            "version": cart.version + 1,
            "status": status.value,
            "last_activity_at": now,
            "expires_at": expiry_from(now, cart.is_guest),
            "updated_at": now,
            "tax_amount": result.tax,
            "shipping_amount": result.shipping,
            "discount_amount": result.discount,
            "fee_amount": result.fees,
        }

        # Optimistic locking, warunek na wersje
        rowcount = self.repo.update_cart_version(cart_id=cart.id, old_version=cart.version, new_data=new_data)
        if rowcount == 0:
            raise ConcurrentModificationError(f"Cart {cart.id} was modified by another operation")

    # =====================================================
    # pricing / snapshot
    # =====================================================
    def _price_line(self, product: ProductInfo, custom_length: Decimal | None):
        if product.is_variable_dimension:
            if custom_length is None:
                raise InvalidCartLineError(f"Product {product.id} needs a custom length")
            if product.fixed_height is None or product.variable_dimension_rate is None:
                raise InvalidCartLineError(f"Product {product.id} has no dimension pricing")

            custom_length = pricing.normalize_length(custom_length)
            if custom_length <= 0:
                raise InvalidCartLineError(f"Custom length must be at least {pricing.LENGTH_STEP}")
            if product.max_length is not None and custom_length > product.max_length:
                raise InvalidCartLineError(f"Custom length {custom_length} exceeds maximum {product.max_length}")

            unit = pricing.variable_dimension_price(product.fixed_height, custom_length, product.variable_dimension_rate)
            # cena wyliczona juz z podatkiem, bez osobnego TAX
            return unit, unit, True, custom_length

        if custom_length is not None:
            raise InvalidCartLineError(f"Product {product.id} does not take a custom length")

        if product.tax_included:
            return pricing.money(product.price), pricing.money(product.price), True, None
        return pricing.money(product.price), pricing.money(product.base_price), False, None

    def _current_unit_price(self, product: ProductInfo, custom_length: Decimal | None) -> Decimal | None:
        try:
            unit, _, _, _ = self._price_line(product, custom_length)
        except InvalidCartLineError:
            return None
        return unit

    @staticmethod
    def priced_lines(items) -> list[PricedLine]:
        return [
            PricedLine(
                product_id=item.product_id,
                quantity=item.quantity,
                unit_price=item.unit_price,
                base_price=item.base_price,
                tax_rate=item.tax_rate,
                tax_included=bool(item.tax_included),
                custom_length=item.custom_length,
            )
            for item in items
        ]

    def price(self, cart: CartModel, shipping_method: str | None = None, payment_method: str | None = None):
        items = self.repo.get_cart_items(cart.id)
        return pricing.calculate(
            self.priced_lines(items),
            self.rules,
            discount_code=cart.discount_code,
            shipping_method=shipping_method,
            payment_method=payment_method,
            as_of=self.clock(),
        )

    def snapshot(
        self,
        cart: CartModel,
        shipping_method: str | None = None,
        payment_method: str | None = None,
    ) -> Dict[str, Any]:
        items = self.repo.get_cart_items(cart.id)
        result = pricing.calculate(
            self.priced_lines(items),
            self.rules,
            discount_code=cart.discount_code,
            shipping_method=shipping_method,
            payment_method=payment_method,
            as_of=self.clock(),
        )

        #dict przeksztalcany w jsona
        return {
            "cart_id": cart.id,
            "status": cart.status,
            "is_guest": cart.is_guest,
            "user_id": cart.user_id,
            "session_id": cart.session_id,
            "items": [
                {
                    "id": i.id,
                    "product_id": i.product_id,
                    "product_name": i.product_name,
                    "quantity": i.quantity,
                    "unit_price": i.unit_price,
                    "base_price": i.base_price,
                    "tax_rate": i.tax_rate,
                    "tax_included": bool(i.tax_included),
                    "total_price": i.total_price,
                    "custom_length": i.custom_length,
                    "is_gift": bool(i.is_gift),
                    "gift_message": i.gift_message,
                }
                for i in items
            ],
            "subtotal": result.subtotal,
            "components": [c.to_dict() for c in result.components],
            "final_total": result.final_total,
            "item_count": result.item_count,
            "currency": result.currency,
            "discount_code": cart.discount_code,
            "is_gift": bool(cart.is_gift),
            "gift_message": cart.gift_message,
            "expires_at": cart.expires_at,
            "last_activity_at": cart.last_activity_at,
        }
