#import wszystkich modeli zeby SQLAlchemy je zarejestrowal w base metadata

from cartsync.data.models.cart import CartModel
from cartsync.data.models.cart_item import CartItemModel

__all__ = ["CartModel", "CartItemModel"]
