"""
HTTP clients for the remote storefront services.

Three collaborators share one transport:
- RemoteCartClient: the authoritative server cart (bearer token required)
- ProductInfoClient: batch price / category / stock lookup
- DiscountClient: automatic discount rules and coupon validation

The transport is blocking (requests); the async methods hand each call to a
worker thread so the engine loop never blocks on the network. Each worker
thread gets its own requests.Session.
"""
import asyncio
import logging
import threading
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional

import requests

from storefront.exceptions import (
    AuthenticationRequired, NetworkError, ServerError, NotFoundError, StockExceeded
)
from storefront.models.cart_line import CartLine
from storefront.models.discount_rule import DiscountRule, DiscountKind, DiscountSource
from storefront.utils.number_format import ZERO, to_decimal, money_to_json

logger = logging.getLogger(__name__)


def _categories(data: Dict[str, Any]) -> FrozenSet[str]:
    """Category names from either ``categories``/``categoryNames`` or a single ``category``."""
    names = data.get('categories') or data.get('categoryNames')
    if isinstance(names, list) and names:
        return frozenset(str(n) for n in names if n)
    if data.get('category'):
        return frozenset([str(data['category'])])
    return frozenset()


@dataclass
class ProductInfo:
    """Authoritative product data used to enrich cart lines."""

    product_id: str
    price: Optional[Decimal] = None
    original_price: Optional[Decimal] = None
    categories: FrozenSet[str] = field(default_factory=frozenset)
    stock_quantity: Optional[int] = None
    discount_source: Optional[DiscountSource] = None
    discount_type: Optional[DiscountKind] = None
    name: Optional[str] = None
    image_url: Optional[str] = None


@dataclass
class CouponValidation:
    """Answer of the discount service for a coupon code."""

    valid: bool
    rule: Optional[DiscountRule] = None
    discount_amount: Decimal = ZERO
    automatic_discount_amount: Decimal = ZERO
    error_message: Optional[str] = None


class StorefrontClient:
    """Shared JSON transport with error mapping."""

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 10,
                 session_factory: Callable[[], requests.Session] = requests.Session):
        self.base_url = base_url.rstrip('/')
        self.token = token
        self.timeout = timeout
        self._session_factory = session_factory
        self._local = threading.local()

    def _session(self) -> requests.Session:
        """Session of the calling thread, created on first use."""
        session = getattr(self._local, 'session', None)
        if session is None:
            session = self._session_factory()
            self._local.session = session
        return session

    @property
    def is_authenticated(self) -> bool:
        return bool(self.token)

    def _headers(self) -> Dict[str, str]:
        headers = {'Content-Type': 'application/json'}
        if self.token:
            headers['Authorization'] = f'Bearer {self.token}'
        return headers

    def _request(self, method: str, path: str, json: Any = None, params: Optional[Dict[str, Any]] = None,
                 auth: bool = True) -> Dict[str, Any]:
        """
        Perform one call and return the decoded JSON body.

        Raises:
            AuthenticationRequired: no token, or HTTP 401
            NotFoundError: HTTP 404
            StockExceeded: HTTP 409 or a message mentioning stock
            ServerError: any other non-success status
            NetworkError: connection failures and timeouts
        """
        if auth and not self.token:
            raise AuthenticationRequired()

        url = f"{self.base_url}{path}"
        try:
            response = self._session().request(
                method, url, json=json, params=params, headers=self._headers(), timeout=self.timeout
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            logger.warning(f"[API] {method} {path} unreachable: {e}")
            raise NetworkError(str(e)) from e

        if response.ok:
            if not response.content:
                return {}
            try:
                return response.json()
            except ValueError as e:
                raise ServerError(response.status_code, "Invalid JSON from remote service") from e

        message = self._error_message(response)
        status = response.status_code
        logger.warning(f"[API] {method} {path} -> {status}: {message}")

        if status == 401:
            raise AuthenticationRequired(message)
        if status == 404:
            raise NotFoundError(message)
        if status == 409 or 'stock' in message.lower():
            raise StockExceeded(message)
        raise ServerError(status, message)

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return f"Error: {response.status_code} {response.reason}"
        if isinstance(data, dict) and data.get('message'):
            return str(data['message'])
        return f"Error: {response.status_code} {response.reason}"

    async def _call(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        return await asyncio.to_thread(self._request, method, path, **kwargs)


class RemoteCartClient(StorefrontClient):
    """Server-side cart of the authenticated customer."""

    async def get_cart(self) -> List[CartLine]:
        data = await self._call('GET', '/cart')
        cart = data.get('cart') or {}
        if not data.get('success', True) or not cart.get('items'):
            return []
        return [self._parse_item(item) for item in cart['items']]

    @staticmethod
    def _parse_item(item: Dict[str, Any]) -> CartLine:
        price = to_decimal(item.get('price'))
        stock = item.get('stock_quantity', item.get('stockQuantity'))
        return CartLine(
            product_id=str(item.get('productId') or item.get('id')),
            name=item.get('productName') or item.get('name') or '',
            quantity=max(1, int(item.get('quantity') or 1)),
            unit_price=price,
            original_unit_price=to_decimal(item.get('originalPrice'), default=price),
            stock_quantity=int(stock) if stock is not None else None,
            category_ids=_categories(item),
            image_url=item.get('imageUrl'),
            slug=item.get('slug') or item.get('productId'),
        )

    async def add_item(self, product_id: str, quantity: int = 1) -> Dict[str, Any]:
        return await self._call('POST', '/cart/add', json={'productId': product_id, 'quantity': quantity})

    async def add_items(self, product_ids: List[str]) -> Dict[str, Any]:
        return await self._call('POST', '/cart/add-multiple', json={'productIds': list(product_ids)})

    async def update_quantity(self, product_id: str, quantity: int) -> Dict[str, Any]:
        return await self._call('PUT', '/cart/update-item', json={'productId': product_id, 'quantity': quantity})

    async def remove_item(self, product_id: str) -> Dict[str, Any]:
        return await self._call('DELETE', '/cart/remove-item', json={'productId': product_id})


class ProductInfoClient(StorefrontClient):
    """Public product catalogue lookups."""

    async def get_products(self, product_ids: Iterable[str]) -> Dict[str, ProductInfo]:
        """
        Batch lookup of price, categories, discount hints and stock.

        Stock comes from its own endpoint; a product missing from either
        answer simply lacks that data.
        """
        unique_ids = list(dict.fromkeys(str(pid) for pid in product_ids))
        if not unique_ids:
            return {}
        params = {'ids': ','.join(unique_ids)}

        stocks_data, products_data = await asyncio.gather(
            self._call('GET', '/products/stock', params=params, auth=False),
            self._call('GET', '/products/batch', params=params, auth=False),
        )
        stocks = stocks_data.get('stocks') or {}

        infos: Dict[str, ProductInfo] = {}
        for product in products_data.get('products') or []:
            pid = str(product.get('id') or product.get('productId'))
            source = product.get('discountSource')
            kind = product.get('discountType')
            infos[pid] = ProductInfo(
                product_id=pid,
                price=to_decimal(product.get('price'), default=None),
                original_price=to_decimal(product.get('originalPrice'), default=None),
                categories=_categories(product),
                discount_source=DiscountSource(source) if source in ('automatic', 'manual') else None,
                discount_type=DiscountKind(kind) if kind in ('percentage', 'fixed') else None,
                name=product.get('name'),
                image_url=product.get('imageUrl'),
            )

        for pid, stock in stocks.items():
            info = infos.setdefault(str(pid), ProductInfo(product_id=str(pid)))
            if stock is not None:
                info.stock_quantity = int(stock)
        return infos


class DiscountClient(StorefrontClient):
    """Automatic discount rules and coupon validation."""

    async def list_automatic_discounts(self, context: Dict[str, Any]) -> List[DiscountRule]:
        data = await self._call('POST', '/discounts/automatic', json=context, auth=False)
        rules = []
        for item in data.get('discounts') or []:
            try:
                rules.append(DiscountRule.from_dict(item))
            except (KeyError, ValueError) as e:
                logger.warning(f"[DISCOUNT] Skipping malformed rule {item.get('id')}: {e}")
        return rules

    async def validate_coupon(self, code: str, subtotal: Decimal, product_ids: List[str],
                              prices: Dict[str, Decimal]) -> CouponValidation:
        payload = {
            'code': code,
            'orderAmount': money_to_json(subtotal),
            'productIds': list(product_ids),
            'productPrices': {pid: money_to_json(price) for pid, price in prices.items()},
        }
        data = await self._call('POST', '/discounts/validate', json=payload, auth=False)
        rule_data = data.get('discount')
        return CouponValidation(
            valid=bool(data.get('valid')),
            rule=DiscountRule.from_dict({**rule_data, 'isAutomatic': False}) if rule_data else None,
            discount_amount=to_decimal(data.get('discountAmount')),
            automatic_discount_amount=to_decimal(data.get('automaticDiscountAmount')),
            error_message=data.get('errorMessage') or data.get('message'),
        )
