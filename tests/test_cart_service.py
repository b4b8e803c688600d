import random
from collections import Counter
from dataclasses import replace
from datetime import timedelta
from decimal import Decimal

import pytest
from conftest import T0, item_of, live_carts, quantities

from cartsync.data.models.cart import CartModel
from cartsync.domain.errors import (
    CartItemNotFoundError,
    CartNotFoundError,
    ConcurrentModificationError,
    ConflictError,
    IdentityResolutionError,
    InvalidCartLineError,
    ProductUnavailableError,
)
from cartsync.domain.identity import CartIdentity
from cartsync.domain.status import CartStatus
from cartsync.repos.cart_repo import CartRepo


class TestGetOrCreate:
    def test_creates_guest_cart_with_24h_expiry(self, cart_service, guest):
        snapshot = cart_service.get_or_create(guest)

        assert snapshot["is_guest"] is True
        assert snapshot["status"] == CartStatus.ACTIVE.value
        assert snapshot["items"] == []
        assert snapshot["expires_at"] == T0 + timedelta(hours=24)

    def test_creates_user_cart_with_30_day_expiry(self, cart_service, user):
        snapshot = cart_service.get_or_create(user)

        assert snapshot["is_guest"] is False
        assert snapshot["user_id"] == "user-1"
        assert snapshot["expires_at"] == T0 + timedelta(days=30)

    def test_returns_the_same_cart(self, cart_service, db, guest):
        first = cart_service.get_or_create(guest)
        second = cart_service.get_or_create(guest)

        assert first["cart_id"] == second["cart_id"]
        assert len(live_carts(db, session_id="sess-1")) == 1

    def test_guest_cart_found_by_fingerprint_after_session_change(self, cart_service, guest):
        original = cart_service.add_item(guest, "A", 1)

        new_session = CartIdentity(session_id="sess-2", device_fingerprint="fp-1")
        snapshot = cart_service.get_or_create(new_session)

        assert snapshot["cart_id"] == original["cart_id"]
        assert snapshot["session_id"] == "sess-2"
        assert quantities(snapshot) == {"A": 1}

    def test_user_hint_headers_do_not_create_guest_cart(self, cart_service, db):
        identity = CartIdentity(user_id="user-9", session_id="sess-9")
        snapshot = cart_service.get_or_create(identity)

        assert snapshot["session_id"] is None
        assert live_carts(db, session_id="sess-9") == []

    def test_find_live_does_not_create(self, cart_service, db, guest):
        with pytest.raises(CartNotFoundError):
            cart_service.find_live(guest)

        assert live_carts(db) == []

    def test_guest_without_session_gets_one_minted(self, cart_service, db):
        anonymous = CartIdentity(device_fingerprint="fp-9")

        with pytest.raises(IdentityResolutionError):
            cart_service.find_live(anonymous)

        snapshot = cart_service.add_item(anonymous, "A", 1)

        assert snapshot["is_guest"] is True
        assert snapshot["session_id"]
        assert len(live_carts(db, session_id=snapshot["session_id"])) == 1


class TestAddItem:
    def test_add_prices_the_cart(self, cart_service, guest):
        cart_service.add_item(guest, "A", 2)
        snapshot = cart_service.add_item(guest, "B", 1)

        assert snapshot["subtotal"] == Decimal("35.00")
        assert snapshot["final_total"] == Decimal("47.79")
        assert [c["type"] for c in snapshot["components"]] == ["TAX", "SHIPPING"]

    def test_same_product_increments_quantity(self, cart_service, guest):
        cart_service.add_item(guest, "A", 2)
        snapshot = cart_service.add_item(guest, "A", 3)

        assert len(snapshot["items"]) == 1
        assert snapshot["items"][0]["quantity"] == 5
        assert snapshot["items"][0]["total_price"] == Decimal("50.00")

    def test_variable_dimension_lines_keyed_by_length(self, cart_service, guest):
        cart_service.add_item(guest, "BEAM", 1, custom_length=Decimal("1.5"))
        cart_service.add_item(guest, "BEAM", 1, custom_length=Decimal("2"))
        snapshot = cart_service.add_item(guest, "BEAM", 2, custom_length=Decimal("1.50"))

        by_length = {item["custom_length"]: item for item in snapshot["items"]}
        assert len(snapshot["items"]) == 2
        assert by_length[Decimal("1.5")]["quantity"] == 3
        # 0.5 x 2 x 20, podatek juz w cenie
        assert by_length[Decimal("2")]["unit_price"] == Decimal("20.00")
        assert [c["type"] for c in snapshot["components"]] == ["SHIPPING"]

    def test_extra_length_precision_shares_a_line(self, cart_service, guest):
        cart_service.add_item(guest, "BEAM", 1, custom_length=Decimal("1.2345"))
        snapshot = cart_service.add_item(guest, "BEAM", 1, custom_length=Decimal("1.2346"))

        assert len(snapshot["items"]) == 1
        assert snapshot["items"][0]["quantity"] == 2
        assert snapshot["items"][0]["custom_length"] == Decimal("1.235")

    def test_length_rounding_to_zero_rejected(self, cart_service, guest):
        with pytest.raises(InvalidCartLineError):
            cart_service.add_item(guest, "BEAM", 1, custom_length=Decimal("0.0004"))

    def test_variable_dimension_requires_length(self, cart_service, guest):
        with pytest.raises(InvalidCartLineError):
            cart_service.add_item(guest, "BEAM", 1)

    def test_variable_dimension_max_length(self, cart_service, guest):
        with pytest.raises(InvalidCartLineError):
            cart_service.add_item(guest, "BEAM", 1, custom_length=Decimal("3.5"))

    def test_rejects_non_positive_quantity(self, cart_service, guest):
        with pytest.raises(InvalidCartLineError):
            cart_service.add_item(guest, "A", 0)

    def test_unknown_product(self, cart_service, guest):
        with pytest.raises(ProductUnavailableError) as exc:
            cart_service.add_item(guest, "NOPE", 1)
        assert exc.value.not_found

    def test_unavailable_product(self, cart_service, guest):
        with pytest.raises(ProductUnavailableError):
            cart_service.add_item(guest, "GONE", 1)

    def test_insufficient_stock_leaves_cart_unchanged(self, cart_service, guest):
        cart_service.add_item(guest, "LOW", 2)

        with pytest.raises(InvalidCartLineError):
            cart_service.add_item(guest, "LOW", 1)

        assert quantities(cart_service.get_or_create(guest)) == {"LOW": 2}

    def test_gift_flags_kept_per_item(self, cart_service, guest):
        snapshot = cart_service.add_item(guest, "A", 1, is_gift=True, gift_message="For you")

        assert snapshot["items"][0]["is_gift"] is True
        assert snapshot["items"][0]["gift_message"] == "For you"


class TestQuantityAndRemoval:
    def test_update_quantity(self, cart_service, guest):
        item_id = cart_service.add_item(guest, "A", 1)["items"][0]["id"]
        snapshot = cart_service.update_item_quantity(guest, item_id, 4)

        assert quantities(snapshot) == {"A": 4}

    def test_quantity_zero_removes_and_is_idempotent(self, cart_service, guest):
        cart_service.add_item(guest, "B", 1)
        item_id = item_of(cart_service.add_item(guest, "A", 1), "A")["id"]

        first = cart_service.update_item_quantity(guest, item_id, 0)
        second = cart_service.update_item_quantity(guest, item_id, 0)

        assert quantities(first) == {"B": 1}
        assert quantities(second) == {"B": 1}

    def test_negative_quantity_behaves_like_remove(self, cart_service, guest):
        item_id = cart_service.add_item(guest, "A", 1)["items"][0]["id"]
        assert cart_service.update_item_quantity(guest, item_id, -3)["items"] == []

    def test_update_absent_item_with_positive_quantity(self, cart_service, guest):
        cart_service.get_or_create(guest)
        with pytest.raises(CartItemNotFoundError):
            cart_service.update_item_quantity(guest, "missing", 2)

    def test_cannot_touch_another_identity_items(self, cart_service, guest):
        item_id = cart_service.add_item(guest, "A", 1)["items"][0]["id"]
        stranger = CartIdentity(session_id="other", device_fingerprint="fp-x")

        with pytest.raises(CartItemNotFoundError):
            cart_service.update_item_quantity(stranger, item_id, 5)
        assert quantities(cart_service.get_or_create(guest)) == {"A": 1}

    def test_remove_item_twice(self, cart_service, guest):
        item_id = cart_service.add_item(guest, "A", 1)["items"][0]["id"]

        assert cart_service.remove_item(guest, item_id)["items"] == []
        assert cart_service.remove_item(guest, item_id)["items"] == []

    def test_clear_drops_items_and_discount(self, cart_service, guest):
        cart_service.add_item(guest, "A", 1)
        cart_service.apply_discount(guest, "SAVE10")
        snapshot = cart_service.clear(guest)

        assert snapshot["items"] == []
        assert snapshot["discount_code"] is None
        assert snapshot["final_total"] == Decimal("0.00")

    def test_fixed_dimension_keys_stay_unique(self, cart_service, guest):
        rng = random.Random(7)
        for _ in range(60):
            snapshot = cart_service.get_or_create(guest)
            op = rng.choice(["add", "add", "update", "remove"])
            if op == "add" or not snapshot["items"]:
                cart_service.add_item(guest, rng.choice("ABC"), rng.randint(1, 3))
            elif op == "update":
                item = rng.choice(snapshot["items"])
                cart_service.update_item_quantity(guest, item["id"], rng.randint(-1, 4))
            else:
                item = rng.choice(snapshot["items"])
                cart_service.remove_item(guest, item["id"])

            counts = Counter(item["product_id"] for item in cart_service.get_or_create(guest)["items"])
            assert all(count == 1 for count in counts.values())


class TestLifecycle:
    def test_mutation_slides_expiry(self, cart_service, guest, clock):
        cart_service.get_or_create(guest)
        clock.advance(hours=10)

        snapshot = cart_service.add_item(guest, "A", 1)

        assert snapshot["last_activity_at"] == clock.now
        assert snapshot["expires_at"] == clock.now + timedelta(hours=24)

    def test_checkout_freezes_cart(self, cart_service, guest):
        cart_service.add_item(guest, "A", 6)
        snapshot = cart_service.checkout(guest, payment_method="cod")

        assert snapshot["status"] == CartStatus.CHECKED_OUT.value
        # 60 + 4.80 tax + free shipping + 2.99 cod
        assert snapshot["final_total"] == Decimal("67.79")

    def test_checked_out_items_reject_mutation(self, cart_service, guest):
        item_id = cart_service.add_item(guest, "A", 1)["items"][0]["id"]
        cart_service.checkout(guest)

        with pytest.raises(ConflictError):
            cart_service.update_item_quantity(guest, item_id, 3)
        with pytest.raises(ConflictError):
            cart_service.remove_item(guest, item_id)

    def test_new_cart_after_checkout(self, cart_service, guest):
        old = cart_service.add_item(guest, "A", 1)
        cart_service.checkout(guest)

        fresh = cart_service.get_or_create(guest)

        assert fresh["cart_id"] != old["cart_id"]
        assert fresh["items"] == []

    def test_empty_cart_cannot_check_out(self, cart_service, guest):
        with pytest.raises(InvalidCartLineError):
            cart_service.checkout(guest)

    def test_abandoned_cart_becomes_active_again(self, cart_service, db, guest):
        cart_id = cart_service.get_or_create(guest)["cart_id"]
        cart = db.get(CartModel, cart_id)
        cart.status = CartStatus.ABANDONED.value
        db.commit()

        snapshot = cart_service.add_item(guest, "A", 1)

        assert snapshot["cart_id"] == cart_id
        assert snapshot["status"] == CartStatus.ACTIVE.value

    def test_lost_update_is_rolled_back(self, cart_service, db, guest, monkeypatch):
        cart_service.add_item(guest, "A", 1)
        monkeypatch.setattr(CartRepo, "update_cart_version", lambda self, cart_id, old_version, new_data: 0)

        with pytest.raises(ConcurrentModificationError):
            cart_service.add_item(guest, "B", 1)

        monkeypatch.undo()
        assert quantities(cart_service.get_or_create(guest)) == {"A": 1}


class TestDiscountAndValidation:
    def test_discount_applied_at_calculation(self, cart_service, guest):
        cart_service.add_item(guest, "A", 10)
        snapshot = cart_service.apply_discount(guest, "save10")

        assert snapshot["discount_code"] == "SAVE10"
        discount = [c for c in snapshot["components"] if c["type"] == "DISCOUNT"][0]
        assert discount["amount"] == Decimal("10.00")

        assert cart_service.remove_discount(guest)["discount_code"] is None

    def test_validate_reports_without_mutating(self, cart_service, product_client, guest):
        cart_service.add_item(guest, "A", 1)
        cart_service.add_item(guest, "LOW", 2)
        before = cart_service.get_or_create(guest)

        catalog = product_client.products
        catalog["LOW"] = replace(catalog["LOW"], stock_quantity=1)
        catalog["A"] = replace(catalog["A"], price=Decimal("12.00"), base_price=Decimal("12.00"))

        report = cart_service.validate(guest)

        assert report["valid"] is False
        assert any("Insufficient stock" in e for e in report["errors"])
        assert any("Price changed" in w for w in report["warnings"])
        assert sorted(report["cart"]["items"], key=lambda i: i["id"]) == sorted(before["items"], key=lambda i: i["id"])

    def test_validate_with_catalog_down_only_warns(self, cart_service, product_client, guest):
        cart_service.add_item(guest, "A", 1)
        product_client.unreachable = True

        report = cart_service.validate(guest)

        assert report["valid"] is True
        assert report["warnings"]


class TestStatistics:
    def test_counts(self, cart_service, guest, user):
        cart_service.add_item(guest, "A", 2)
        cart_service.add_item(user, "B", 4)

        stats = cart_service.statistics()

        assert stats["by_status"] == {"ACTIVE": 2}
        assert stats["active_guest_carts"] == 1
        assert stats["average_cart_size"] == 3.0
