# cartsync/api/deps.py
from fastapi import Depends, Header, HTTPException, Request, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from cartsync.data.database import get_db
from cartsync.domain.identity import CartIdentity, new_session_id
from cartsync.services.cart_service import CartService
from cartsync.services.lock_service import _IdentityLocks, get_lock_service
from cartsync.services.merge_service import MergeService
from cartsync.services.product_client import ProductClient
from cartsync.utils.logging import get_logger
from cartsync.utils.security import verify_token

logger = get_logger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def get_product_client() -> ProductClient:
    return ProductClient()


def get_cart_service(
    db: Session = Depends(get_db),
    product_client: ProductClient = Depends(get_product_client),
    lock_service: _IdentityLocks = Depends(get_lock_service),
) -> CartService:
    return CartService(db=db, product_client=product_client, lock_service=lock_service)


def get_merge_service(cart_service: CartService = Depends(get_cart_service)) -> MergeService:
    return MergeService(cart_service)


def get_identity(
    request: Request,
    response: Response,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    x_session_id: str | None = Header(None),
    x_device_fingerprint: str | None = Header(None),
    x_user_id: str | None = Header(None),
) -> CartIdentity:
    """
    Tozsamosc z requestu:
    1. Bearer JWT (sub = user id) zawsze wygrywa
    2. X-Session-ID + X-Device-Fingerprint dla goscia
    3. brak sesji -> nowa sesja, odeslana w X-Session-ID

    X-User-ID is a hint from the client and is only logged.
    """
    user_id = None
    if credentials is not None:
        user_id = verify_token(credentials.credentials)
        if user_id is None:
            raise HTTPException(status_code=401, detail="Invalid or expired token")

    if x_user_id and x_user_id != user_id:
        logger.info(f"Ignoring X-User-ID hint {x_user_id} (authenticated user: {user_id})")

    session_id = x_session_id
    if not session_id and user_id is None:
        session_id = new_session_id()
        logger.info(f"No session header, minted guest session {session_id}")
    if session_id:
        response.headers["X-Session-ID"] = session_id

    return CartIdentity(
        user_id=user_id,
        session_id=session_id,
        device_fingerprint=x_device_fingerprint,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def require_user(identity: CartIdentity = Depends(get_identity)) -> CartIdentity:
    if identity.user_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return identity
