# cartsync/client/api.py
from decimal import Decimal

import requests
from requests import RequestException

from cartsync.client.session import SessionContext
from cartsync.domain.schemas import CartOut, MergeOut, ValidationOut
from cartsync.utils.logging import get_logger
from cartsync.utils.retry import http_retry
from cartsync.utils.settings import CART_API_URL, CLIENT_TIMEOUT_SECONDS

logger = get_logger(__name__)

IDEMPOTENT_METHODS = ("GET", "PUT", "DELETE")


class CartApiError(Exception):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_transient(self) -> bool:
        """Network failure or 5xx: the caller may fall back to the local cache."""
        return self.status_code is None or self.status_code >= 500


class CartConflictError(CartApiError):
    """409 from the server, e.g. the cart was already checked out."""


class CartApiClient:
    """HTTP client for the cart service.

    Identity headers come from the ``SessionContext`` on every call; the bearer
    token, when set, is what the server actually trusts.
    """

    def __init__(
        self,
        session: SessionContext,
        base_url: str | None = None,
        timeout: float = CLIENT_TIMEOUT_SECONDS,
        http: requests.Session | None = None,
    ):
        self.session = session
        self.base_url = (base_url or CART_API_URL).rstrip("/")
        self.timeout = timeout
        self.http = http or requests.Session()
        self.token: str | None = None

    def set_token(self, token: str | None) -> None:
        self.token = token

    def _send(self, method: str, url: str, **kwargs) -> requests.Response:
        if method in IDEMPOTENT_METHODS:
            return self._send_idempotent(method, url, **kwargs)
        return self._send_once(method, url, **kwargs)

    @http_retry(attempts=2)
    def _send_idempotent(self, method: str, url: str, **kwargs) -> requests.Response:
        return self.http.request(method, url, timeout=self.timeout, **kwargs)

    # POST powtarzamy tylko gdy polaczenie nie powstalo
    @http_retry(attempts=2, on=requests.ConnectionError)
    def _send_once(self, method: str, url: str, **kwargs) -> requests.Response:
        return self.http.request(method, url, timeout=self.timeout, **kwargs)

    def _request(self, method: str, path: str, json: dict | None = None, params: dict | None = None) -> dict:
        url = f"{self.base_url}{path}"
        headers = self.session.headers()
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            resp = self._send(method, url, json=json, params=params, headers=headers)
        except RequestException as exc:
            raise CartApiError(f"{method} {path} failed: {exc}") from exc

        if resp.status_code == 409:
            raise CartConflictError(self._detail(resp), status_code=409)
        if resp.status_code >= 400:
            raise CartApiError(self._detail(resp), status_code=resp.status_code)
        return resp.json()

    @staticmethod
    def _detail(resp: requests.Response) -> str:
        try:
            return str(resp.json().get("detail", resp.text))
        except ValueError:
            return resp.text or f"HTTP {resp.status_code}"

    @staticmethod
    def _params(shipping_method: str | None, payment_method: str | None) -> dict:
        params = {}
        if shipping_method:
            params["shippingMethod"] = shipping_method
        if payment_method:
            params["paymentMethod"] = payment_method
        return params

    # ---- endpoints ----
    def get_cart(self, shipping_method: str | None = None, payment_method: str | None = None) -> CartOut:
        data = self._request("GET", "/cart", params=self._params(shipping_method, payment_method))
        return CartOut.model_validate(data)

    def add_item(
        self,
        product_id: str,
        quantity: int = 1,
        custom_length: Decimal | None = None,
        is_gift: bool = False,
        gift_message: str | None = None,
    ) -> CartOut:
        body = {"productId": product_id, "quantity": quantity, "isGift": is_gift}
        if custom_length is not None:
            body["customLength"] = str(custom_length)
        if gift_message:
            body["giftMessage"] = gift_message
        return CartOut.model_validate(self._request("POST", "/cart/items", json=body))

    def update_quantity(self, item_id: str, quantity: int) -> CartOut:
        return CartOut.model_validate(self._request("PUT", f"/cart/items/{item_id}", json={"quantity": quantity}))

    def remove_item(self, item_id: str) -> CartOut:
        return CartOut.model_validate(self._request("DELETE", f"/cart/items/{item_id}"))

    def clear(self) -> CartOut:
        return CartOut.model_validate(self._request("DELETE", "/cart"))

    def merge(self, session_id: str, device_fingerprint: str | None) -> MergeOut:
        body = {"sessionId": session_id, "deviceFingerprint": device_fingerprint}
        return MergeOut.model_validate(self._request("POST", "/cart/merge", json=body))

    def validate(self, shipping_method: str | None = None, payment_method: str | None = None) -> ValidationOut:
        data = self._request("POST", "/cart/validate", params=self._params(shipping_method, payment_method))
        return ValidationOut.model_validate(data)

    def apply_discount(self, code: str) -> CartOut:
        return CartOut.model_validate(self._request("POST", "/cart/discount", json={"code": code}))

    def remove_discount(self) -> CartOut:
        return CartOut.model_validate(self._request("DELETE", "/cart/discount"))

    def checkout(self, shipping_method: str | None = None, payment_method: str | None = None) -> CartOut:
        data = self._request("POST", "/cart/checkout", params=self._params(shipping_method, payment_method))
        return CartOut.model_validate(data)
