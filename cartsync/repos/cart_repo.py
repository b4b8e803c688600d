# cartsync/repos/cart_repo.py
from datetime import datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session, selectinload

from cartsync.data.models.cart import CartModel
from cartsync.data.models.cart_item import CartItemModel
from cartsync.domain.status import LIVE_STATUS_VALUES, CartStatus


class CartRepo:
    """Data access for carts and their items.

    Nothing in here commits on its own except ``commit``; the service decides
    where a transaction ends so each mutation stays all-or-nothing.
    """

    def __init__(self, db: Session):
        self.db = db

    # ---- carts ----
    def get_live_cart_by_user(self, user_id: str) -> CartModel | None:
        return self.db.execute(
            select(CartModel)
            .options(selectinload(CartModel.items))
            .where(CartModel.user_id == user_id, CartModel.status.in_(LIVE_STATUS_VALUES))
        ).scalar_one_or_none()

    def get_live_guest_cart(self, session_id: str) -> CartModel | None:
        return self.db.execute(
            select(CartModel)
            .options(selectinload(CartModel.items))
            .where(
                CartModel.session_id == session_id,
                CartModel.user_id.is_(None),
                CartModel.status.in_(LIVE_STATUS_VALUES),
            )
        ).scalar_one_or_none()

    def get_live_guest_carts_by_fingerprint(self, device_fingerprint: str) -> list[CartModel]:
        # najnowszy pierwszy
        return list(
            self.db.execute(
                select(CartModel)
                .options(selectinload(CartModel.items))
                .where(
                    CartModel.device_fingerprint == device_fingerprint,
                    CartModel.user_id.is_(None),
                    CartModel.status.in_(LIVE_STATUS_VALUES),
                )
                .order_by(CartModel.last_activity_at.desc())
            ).scalars()
        )

    def create_cart(self, cart: CartModel) -> CartModel:
        self.db.add(cart)
        self.db.flush()
        return cart

    def update_cart_version(self, cart_id: str, old_version: int, new_data: dict) -> int:
        # UPDATE carts SET ... WHERE id = :id AND version = :old_version
        result = self.db.execute(
            update(CartModel)
            .where(CartModel.id == cart_id, CartModel.version == old_version)
            .values(**new_data)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    # ---- items ----
    def get_cart_items(self, cart_id: str) -> list[CartItemModel]:
        return list(
            self.db.execute(
                select(CartItemModel).where(CartItemModel.cart_id == cart_id).order_by(CartItemModel.added_at)
            ).scalars()
        )

    def get_cart_item(self, item_id: str) -> CartItemModel | None:
        return self.db.get(CartItemModel, item_id)

    def get_item_by_key(self, cart_id: str, line_key: str) -> CartItemModel | None:
        return self.db.execute(
            select(CartItemModel).where(CartItemModel.cart_id == cart_id, CartItemModel.line_key == line_key)
        ).scalar_one_or_none()

    def add_cart_item(self, item: CartItemModel) -> CartItemModel:
        self.db.add(item)
        self.db.flush()
        return item

    def delete_cart_item(self, item: CartItemModel) -> None:
        self.db.delete(item)
        self.db.flush()

    def delete_cart_items(self, cart_id: str) -> int:
        result = self.db.execute(delete(CartItemModel).where(CartItemModel.cart_id == cart_id))
        return result.rowcount

    # ---- sweeper ----
    def expire_due_carts(self, now: datetime) -> int:
        result = self.db.execute(
            update(CartModel)
            .where(CartModel.status.in_(LIVE_STATUS_VALUES), CartModel.expires_at <= now)
            .values(status=CartStatus.EXPIRED.value, version=CartModel.version + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def abandon_idle_carts(self, idle_before: datetime, now: datetime) -> int:
        result = self.db.execute(
            update(CartModel)
            .where(
                CartModel.status == CartStatus.ACTIVE.value,
                CartModel.last_activity_at <= idle_before,
                CartModel.expires_at > now,
            )
            .values(status=CartStatus.ABANDONED.value, version=CartModel.version + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def delete_old_carts(self, older_than: datetime) -> int:
        old_ids = select(CartModel.id).where(
            CartModel.status == CartStatus.EXPIRED.value,
            CartModel.updated_at <= older_than,
        )
        # sqlite nie robi ON DELETE CASCADE bez PRAGMA, wiec itemy osobno
        self.db.execute(
            delete(CartItemModel).where(CartItemModel.cart_id.in_(old_ids)).execution_options(synchronize_session=False)
        )
        result = self.db.execute(
            delete(CartModel)
            .where(CartModel.status == CartStatus.EXPIRED.value, CartModel.updated_at <= older_than)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    # ---- stats ----
    def count_by_status(self) -> dict[str, int]:
        rows = self.db.execute(select(CartModel.status, func.count()).group_by(CartModel.status)).all()
        return {status: count for status, count in rows}

    def count_live_guest_carts(self) -> int:
        return self.db.execute(
            select(func.count())
            .select_from(CartModel)
            .where(CartModel.user_id.is_(None), CartModel.status.in_(LIVE_STATUS_VALUES))
        ).scalar_one()

    def average_item_count(self, since: datetime) -> float:
        per_cart = (
            select(func.coalesce(func.sum(CartItemModel.quantity), 0).label("qty"))
            .select_from(CartModel)
            .outerjoin(CartItemModel, CartItemModel.cart_id == CartModel.id)
            .where(CartModel.created_at >= since)
            .group_by(CartModel.id)
            .subquery()
        )
        value = self.db.execute(select(func.avg(per_cart.c.qty))).scalar_one()
        return float(value or 0.0)

    # ---- transakcje ----
    def commit(self):
        self.db.commit()

    def rollback(self):
        self.db.rollback()
