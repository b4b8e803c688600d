#cartsync/data/models/cart.py
import uuid

from sqlalchemy import Boolean, Column, Index, Integer, Numeric, String, text
from sqlalchemy.orm import relationship

from cartsync.data.database import Base
from cartsync.data.types import UTCDateTime, utcnow

_LIVE = "status IN ('ACTIVE', 'ABANDONED')"


class CartModel(Base):
    __tablename__ = "carts"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # tozsamosc: user_id (zalogowany) albo session_id + fingerprint (gosc)
    user_id = Column(String(64), nullable=True, index=True)
    session_id = Column(String(128), nullable=True, index=True)
    device_fingerprint = Column(String(128), nullable=True, index=True)

    status = Column(String(20), nullable=False, default="ACTIVE")
    version = Column(Integer, nullable=False, default=1)
    expires_at = Column(UTCDateTime(), nullable=False)

    discount_code = Column(String(64), nullable=True)
    discount_amount = Column(Numeric(12, 2), nullable=False, default=0)
    tax_amount = Column(Numeric(12, 2), nullable=False, default=0)
    shipping_amount = Column(Numeric(12, 2), nullable=False, default=0)
    fee_amount = Column(Numeric(12, 2), nullable=False, default=0)

    is_gift = Column(Boolean, nullable=False, default=False)
    gift_message = Column(String(500), nullable=True)

    superseded_by_id = Column(String(36), nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(500), nullable=True)

    last_activity_at = Column(UTCDateTime(), nullable=False, default=utcnow)
    created_at = Column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow)

    items = relationship(
        "CartItemModel",
        back_populates="cart",
        cascade="all, delete-orphan",
        order_by="CartItemModel.added_at",
    )

    # jeden zywy koszyk na usera i jeden zywy koszyk goscia na sesje
    __table_args__ = (
        Index(
            "uq_carts_live_user",
            "user_id",
            unique=True,
            postgresql_where=text(f"{_LIVE} AND user_id IS NOT NULL"),
            sqlite_where=text(f"{_LIVE} AND user_id IS NOT NULL"),
        ),
        Index(
            "uq_carts_live_guest_session",
            "session_id",
            unique=True,
            postgresql_where=text(f"{_LIVE} AND user_id IS NULL AND session_id IS NOT NULL"),
            sqlite_where=text(f"{_LIVE} AND user_id IS NULL AND session_id IS NOT NULL"),
        ),
        Index("ix_carts_status_expires", "status", "expires_at"),
    )

    @property
    def is_guest(self) -> bool:
        return self.user_id is None
