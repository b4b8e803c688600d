from datetime import timedelta

import pytest
from conftest import T0
from sqlalchemy import select

from cartsync.domain.status import CartStatus
from cartsync.data.models.cart import CartModel
from cartsync.repos.cart_repo import CartRepo
from cartsync.services.sweeper import CartSweeper
from cartsync.tasks import expire


def status_of(db, cart_id):
    return db.execute(select(CartModel.status).where(CartModel.id == cart_id)).scalar_one_or_none()


class TestExpiry:
    def test_guest_cart_expires_at_24h(self, cart_service, db, guest):
        cart_id = cart_service.get_or_create(guest)["cart_id"]
        sweeper = CartSweeper(db)

        sweeper.run(now=T0 + timedelta(hours=24) - timedelta(seconds=1))
        assert status_of(db, cart_id) != CartStatus.EXPIRED.value

        report = sweeper.run(now=T0 + timedelta(hours=24))
        assert report.expired == 1
        assert status_of(db, cart_id) == CartStatus.EXPIRED.value

    def test_user_cart_expires_at_30_days(self, cart_service, db, user):
        cart_id = cart_service.get_or_create(user)["cart_id"]
        sweeper = CartSweeper(db)

        sweeper.run(now=T0 + timedelta(hours=24))
        assert status_of(db, cart_id) == CartStatus.ABANDONED.value

        sweeper.run(now=T0 + timedelta(days=30))
        assert status_of(db, cart_id) == CartStatus.EXPIRED.value

    def test_activity_pushes_expiry(self, cart_service, db, guest, clock):
        cart_id = cart_service.get_or_create(guest)["cart_id"]
        clock.advance(hours=20)
        cart_service.add_item(guest, "A", 1)

        CartSweeper(db).run(now=T0 + timedelta(hours=24))

        assert status_of(db, cart_id) == CartStatus.ACTIVE.value

    def test_sweep_is_idempotent(self, cart_service, db, guest):
        cart_service.get_or_create(guest)
        sweeper = CartSweeper(db)

        first = sweeper.run(now=T0 + timedelta(days=2))
        second = sweeper.run(now=T0 + timedelta(days=2))

        assert first.expired == 1
        assert second.expired == 0

    def test_sweep_bumps_version(self, cart_service, db, guest):
        cart_id = cart_service.add_item(guest, "A", 1)["cart_id"]
        loaded_version = db.execute(select(CartModel.version).where(CartModel.id == cart_id)).scalar_one()

        CartSweeper(db).run(now=T0 + timedelta(days=2))

        # zapis z wersja sprzed sweepa nie moze wskrzesic koszyka
        rowcount = CartRepo(db).update_cart_version(cart_id, loaded_version, {"status": CartStatus.ACTIVE.value})
        assert rowcount == 0
        assert status_of(db, cart_id) == CartStatus.EXPIRED.value

    def test_checked_out_carts_are_left_alone(self, cart_service, db, guest):
        cart_service.add_item(guest, "A", 1)
        cart_id = cart_service.checkout(guest)["cart_id"]

        CartSweeper(db).run(now=T0 + timedelta(days=400))

        assert status_of(db, cart_id) == CartStatus.CHECKED_OUT.value

    def test_expired_guest_gets_a_new_cart(self, cart_service, db, guest, clock):
        old_id = cart_service.add_item(guest, "A", 1)["cart_id"]
        clock.advance(hours=25)
        CartSweeper(db).run(now=clock.now)

        fresh = cart_service.get_or_create(guest)

        assert fresh["cart_id"] != old_id
        assert fresh["items"] == []


class TestAbandonAndPurge:
    def test_idle_cart_marked_abandoned(self, cart_service, db, guest):
        cart_id = cart_service.get_or_create(guest)["cart_id"]

        report = CartSweeper(db, abandon_after=timedelta(hours=6)).run(now=T0 + timedelta(hours=7))

        assert report.abandoned == 1
        assert status_of(db, cart_id) == CartStatus.ABANDONED.value

    def test_old_expired_carts_are_purged(self, cart_service, db, guest):
        cart_id = cart_service.add_item(guest, "A", 1)["cart_id"]
        sweeper = CartSweeper(db, retention=timedelta(days=30))

        sweeper.run(now=T0 + timedelta(days=1))
        report = sweeper.run(now=T0 + timedelta(days=40))

        assert report.purged == 1
        assert status_of(db, cart_id) is None

    def test_merged_guest_cart_kept_until_retention(self, cart_service, merge_service, db, guest, user):
        guest_id = cart_service.add_item(guest, "A", 1)["cart_id"]
        cart_service.add_item(user, "B", 1)
        merge_service.merge("sess-1", "fp-1", "user-1")

        CartSweeper(db).run(now=T0 + timedelta(days=1))

        assert status_of(db, guest_id) == CartStatus.EXPIRED.value


class TestExpireTask:
    def test_task_runs_sweeper(self, cart_service, session_factory, guest, monkeypatch):
        cart_service.get_or_create(guest)
        monkeypatch.setattr(expire, "SessionLocal", session_factory)

        result = expire.expire_carts_task()

        # zegar rzeczywisty jest dawno po T0 + 24h
        assert result["expired"] == 1

    def test_beat_schedule_registered(self):
        from cartsync.celery_worker import celery_app

        schedule = celery_app.conf.beat_schedule["sweep-carts-hourly"]
        assert schedule["task"] == "cartsync.tasks.expire.expire_carts_task"
        assert schedule["schedule"] == pytest.approx(3600.0)
