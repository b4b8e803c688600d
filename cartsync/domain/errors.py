# cartsync/domain/errors.py
"""Cart error taxonomy.

Only conditions that block checkout reach callers as errors (ConflictError and
friends). Identity and merge problems are recovered where they happen, and
pricing lookups degrade to a zero discount.
"""


class CartError(Exception):
    """Base class for everything the cart core raises on purpose."""


class IdentityResolutionError(CartError):
    """No usable identity in the request; CartService.identify mints a fresh guest session."""


class CartNotFoundError(CartError):
    """Resolved identity has no live cart. Always recoverable by creating one."""


class CartItemNotFoundError(CartError):
    pass


class ConflictError(CartError):
    """Mutation attempted on a cart that no longer accepts changes."""

    def __init__(self, message: str = "Cart can no longer be modified, start a new cart", cart_id: str | None = None):
        super().__init__(message)
        self.cart_id = cart_id


class ConcurrentModificationError(CartError):
    pass


class LockTimeoutError(CartError):
    pass


class MergeFailure(CartError):
    pass


class StaleCalculationError(CartError):
    pass


class ProductUnavailableError(CartError):
    """Catalog could not confirm the product.

    ``not_found`` separates "the catalog says it does not exist" from "the
    catalog could not be reached".
    """

    def __init__(self, message: str, not_found: bool = False):
        super().__init__(message)
        self.not_found = not_found


class InvalidCartLineError(CartError, ValueError):
    pass


class OfflineAddError(CartError):
    """Cart server unreachable and the product's price is not known locally.

    The cached cart is left as it was.
    """

    def __init__(self, message: str, product_id: str):
        super().__init__(message)
        self.product_id = product_id
