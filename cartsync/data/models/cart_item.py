import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import relationship

from cartsync.data.database import Base
from cartsync.data.types import UTCDateTime, utcnow


class CartItemModel(Base):
    __tablename__ = "cart_items"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    cart_id = Column(String(36), ForeignKey("carts.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(String(64), nullable=False)
    product_name = Column(String(255), nullable=True)

    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)
    base_price = Column(Numeric(12, 2), nullable=False)
    tax_rate = Column(Numeric(6, 4), nullable=True)
    tax_included = Column(Boolean, nullable=False, default=False)
    total_price = Column(Numeric(12, 2), nullable=False)

    # produkty o zmiennym wymiarze (fixed_height x custom_length x rate)
    custom_length = Column(Numeric(10, 3), nullable=True)
    fixed_height = Column(Numeric(10, 3), nullable=True)

    is_gift = Column(Boolean, nullable=False, default=False)
    gift_message = Column(String(500), nullable=True)

    line_key = Column(String(128), nullable=False)

    added_at = Column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow)

    cart = relationship("CartModel", back_populates="items")

    __table_args__ = (UniqueConstraint("cart_id", "line_key", name="uq_cart_item_line"),)
