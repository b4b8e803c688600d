#cartsync/api/routers/carts.py
from fastapi import APIRouter, Depends, HTTPException, Query

from cartsync.api.deps import get_cart_service, get_identity, get_merge_service, require_user
from cartsync.domain.errors import (
    CartError,
    CartItemNotFoundError,
    ConcurrentModificationError,
    ConflictError,
    LockTimeoutError,
    ProductUnavailableError,
)
from cartsync.domain.identity import CartIdentity
from cartsync.domain.schemas import (
    CartOut,
    DiscountIn,
    ItemIn,
    MergeIn,
    MergeOut,
    QuantityIn,
    StatsOut,
    ValidationOut,
)
from cartsync.services.cart_service import CartService
from cartsync.services.merge_service import MergeService

router = APIRouter(prefix="/cart", tags=["cart"])


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, (ConflictError, ConcurrentModificationError, LockTimeoutError)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (CartItemNotFoundError, ProductUnavailableError)):
        return HTTPException(status_code=404, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


@router.get("", response_model=CartOut)
def get_cart(
    shipping_method: str | None = Query(None, alias="shippingMethod"),
    payment_method: str | None = Query(None, alias="paymentMethod"),
    identity: CartIdentity = Depends(get_identity),
    svc: CartService = Depends(get_cart_service),
):
    try:
        return svc.get_or_create(identity, shipping_method, payment_method)
    except CartError as e:
        raise _http_error(e)


@router.post("/items", response_model=CartOut)
def add_item(
    payload: ItemIn,
    identity: CartIdentity = Depends(get_identity),
    svc: CartService = Depends(get_cart_service),
):
    try:
        return svc.add_item(
            identity,
            product_id=payload.product_id,
            quantity=payload.quantity,
            custom_length=payload.custom_length,
            is_gift=payload.is_gift,
            gift_message=payload.gift_message,
        )
    except CartError as e:
        raise _http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.put("/items/{item_id}", response_model=CartOut)
def update_item(
    item_id: str,
    payload: QuantityIn,
    identity: CartIdentity = Depends(get_identity),
    svc: CartService = Depends(get_cart_service),
):
    # quantity <= 0 dziala jak DELETE
    try:
        return svc.update_item_quantity(identity, item_id, payload.quantity)
    except CartError as e:
        raise _http_error(e)


@router.delete("/items/{item_id}", response_model=CartOut)
def remove_item(
    item_id: str,
    identity: CartIdentity = Depends(get_identity),
    svc: CartService = Depends(get_cart_service),
):
    try:
        return svc.remove_item(identity, item_id)
    except CartError as e:
        raise _http_error(e)


@router.delete("", response_model=CartOut)
def clear_cart(
    identity: CartIdentity = Depends(get_identity),
    svc: CartService = Depends(get_cart_service),
):
    try:
        return svc.clear(identity)
    except CartError as e:
        raise _http_error(e)


@router.post("/merge", response_model=MergeOut)
def merge_cart(
    payload: MergeIn,
    identity: CartIdentity = Depends(require_user),
    merge_service: MergeService = Depends(get_merge_service),
):
    try:
        result = merge_service.merge(
            session_id=payload.session_id,
            device_fingerprint=payload.device_fingerprint or identity.device_fingerprint,
            user_id=identity.user_id,
        )
    except LockTimeoutError as e:
        raise _http_error(e)

    return {
        "merged": result.merged,
        "fallback": result.fallback,
        "guest_cart_id": result.guest_cart_id,
        "cart": result.cart,
    }


@router.post("/validate", response_model=ValidationOut)
def validate_cart(
    shipping_method: str | None = Query(None, alias="shippingMethod"),
    payment_method: str | None = Query(None, alias="paymentMethod"),
    identity: CartIdentity = Depends(get_identity),
    svc: CartService = Depends(get_cart_service),
):
    try:
        return svc.validate(identity, shipping_method, payment_method)
    except CartError as e:
        raise _http_error(e)


@router.post("/discount", response_model=CartOut)
def apply_discount(
    payload: DiscountIn,
    identity: CartIdentity = Depends(get_identity),
    svc: CartService = Depends(get_cart_service),
):
    try:
        return svc.apply_discount(identity, payload.code)
    except CartError as e:
        raise _http_error(e)


@router.delete("/discount", response_model=CartOut)
def remove_discount(
    identity: CartIdentity = Depends(get_identity),
    svc: CartService = Depends(get_cart_service),
):
    try:
        return svc.remove_discount(identity)
    except CartError as e:
        raise _http_error(e)


@router.post("/checkout", response_model=CartOut)
def checkout(
    shipping_method: str | None = Query(None, alias="shippingMethod"),
    payment_method: str | None = Query(None, alias="paymentMethod"),
    identity: CartIdentity = Depends(get_identity),
    svc: CartService = Depends(get_cart_service),
):
    try:
        return svc.checkout(identity, shipping_method, payment_method)
    except CartError as e:
        raise _http_error(e)


@router.get("/stats", response_model=StatsOut)
def cart_stats(svc: CartService = Depends(get_cart_service)):
    return svc.statistics()
