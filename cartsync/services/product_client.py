# cartsync/services/product_client.py
from dataclasses import dataclass
from decimal import Decimal

import requests
from requests import RequestException

from cartsync.domain.errors import ProductUnavailableError
from cartsync.utils.logging import get_logger
from cartsync.utils.retry import http_retry
from cartsync.utils.settings import PRODUCT_SERVICE_URL

logger = get_logger(__name__)


def _dec(value) -> Decimal | None:
    if value is None:
        return None
    return Decimal(str(value))


@dataclass(frozen=True)
class ProductInfo:
    """What the cart needs to know about a catalog product."""

    id: str
    name: str
    price: Decimal
    base_price: Decimal
    tax_rate: Decimal | None = None
    tax_included: bool = False
    available: bool = True
    stock_quantity: int | None = None
    is_variable_dimension: bool = False
    fixed_height: Decimal | None = None
    variable_dimension_rate: Decimal | None = None
    max_length: Decimal | None = None

    @classmethod
    def from_payload(cls, data: dict) -> "ProductInfo":
        price = _dec(data["price"])
        # bez base_price traktujemy cene jako netto
        base_price = _dec(data.get("basePrice", data.get("base_price"))) or price
        return cls(
            id=str(data["id"]),
            name=data.get("name") or str(data["id"]),
            price=price,
            base_price=base_price,
            tax_rate=_dec(data.get("taxRate", data.get("tax_rate"))),
            tax_included=bool(data.get("taxIncluded", data.get("tax_included", False))),
            available=bool(data.get("available", data.get("isAvailable", True))),
            stock_quantity=data.get("stockQuantity", data.get("stock_quantity")),
            is_variable_dimension=bool(data.get("isVariableDimension", data.get("is_variable_dimension", False))),
            fixed_height=_dec(data.get("fixedHeight", data.get("fixed_height"))),
            variable_dimension_rate=_dec(data.get("variableDimensionRate", data.get("variable_dimension_rate"))),
            max_length=_dec(data.get("maxLength", data.get("max_length"))),
        )


class ProductClient:
    def __init__(self, base_url: str | None = None, timeout: int = 2, session: requests.Session | None = None):
        self.base_url = (base_url or PRODUCT_SERVICE_URL).rstrip("/")
        self.timeout = timeout
        self.http = session or requests.Session()

    @http_retry()
    def _get(self, url: str) -> requests.Response:
        return self.http.get(url, timeout=self.timeout)

    def fetch_product(self, product_id: str) -> ProductInfo:
        url = f"{self.base_url}/products/{product_id}"
        logger.info(f"ProductClient GET {url}")

        try:
            resp = self._get(url)
        except RequestException as exc:
            raise ProductUnavailableError(f"Catalog unreachable for product {product_id}: {exc}") from exc

        if resp.status_code == 404:
            raise ProductUnavailableError(f"Product {product_id} not found", not_found=True)
        try:
            resp.raise_for_status()
        except RequestException as exc:
            raise ProductUnavailableError(f"Catalog error for product {product_id}: {exc}") from exc

        return ProductInfo.from_payload(resp.json())
