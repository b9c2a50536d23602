"""
Fulfillment Client — Crossmint headless checkout orders.

Creates orders for physical products and fetches their status.
Payment for the product itself happens on-chain between the payer and
Crossmint; this service only relays the order and hands the serialized
transaction back to the caller.

API:
    POST {base}/2022-06-09/orders          create order
    GET  {base}/2022-06-09/orders/{id}     order status
"""

import logging
from typing import Any, Optional

import aiohttp

logger = logging.getLogger("purch.fulfillment")

ORDERS_PATH = "/2022-06-09/orders"
DEFAULT_LOCALE = "en-US"
ORDER_CURRENCY = "usdc"


class FulfillmentError(Exception):
    """Fulfillment API rejected a request or answered with an unexpected shape."""

    def __init__(self, message: str, status: int, details: Any = None):
        self.message = message
        self.status = status
        self.details = details
        super().__init__(message)


def _error_message(body: Any, fallback: str) -> str:
    if isinstance(body, str):
        return body or fallback
    if isinstance(body, dict):
        return body.get("message") or fallback
    return fallback


class CrossmintClient:
    """Async client for the Crossmint orders API."""

    def __init__(self, api_key: str, base_url: str = "https://www.crossmint.com/api",
                 timeout_seconds: float = 30):
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._session: Optional[aiohttp.ClientSession] = None
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self._timeout,
                headers={
                    "Content-Type": "application/json",
                    "X-API-KEY": self._api_key,
                },
            )
        return self._session

    @staticmethod
    async def _read_body(resp: aiohttp.ClientResponse) -> Any:
        if "application/json" in resp.headers.get("Content-Type", ""):
            return await resp.json(content_type=None)
        return await resp.text()

    async def create_order(
        self,
        email: str,
        payer_address: str,
        physical_address: dict,
        product_locator: str,
        payment_method: str,
        locale: Optional[str] = None,
    ) -> dict:
        """
        Create an order for one product.

        Returns the raw response: {"clientSecret": ..., "order": {"orderId": ..., ...}}.
        Raises FulfillmentError on any non-2xx status or malformed success body.
        """
        body = {
            "recipient": {
                "email": email,
                "physicalAddress": physical_address,
            },
            "locale": locale or DEFAULT_LOCALE,
            "payment": {
                "receiptEmail": email,
                "method": payment_method,
                "currency": ORDER_CURRENCY,
                "payerAddress": payer_address,
            },
            "lineItems": {
                "productLocator": product_locator,
            },
        }

        session = await self._get_session()
        async with session.post(f"{self._base_url}{ORDERS_PATH}", json=body) as resp:
            data = await self._read_body(resp)
            status = resp.status

        if status >= 400:
            raise FulfillmentError(
                _error_message(data, "Crossmint order creation failed"), status, data
            )

        if not isinstance(data, dict) or not data.get("clientSecret") \
                or not (data.get("order") or {}).get("orderId"):
            raise FulfillmentError("Unexpected Crossmint response shape", 502, data)

        return data

    async def get_order(self, order_id: str) -> dict:
        """Fetch order status. Raises FulfillmentError on failure."""
        url = f"{self._base_url}{ORDERS_PATH}/{order_id}"
        logger.info(f"Fetching order status {order_id}")

        session = await self._get_session()
        async with session.get(url) as resp:
            data = await self._read_body(resp)
            status = resp.status

        logger.info(f"Order status response {order_id}: HTTP {status}")

        if status >= 400:
            logger.error(f"Order status request failed {order_id}: HTTP {status} {data}")
            raise FulfillmentError(
                _error_message(data, "Failed to fetch order status"), status, data
            )

        if not isinstance(data, dict) or not data.get("orderId"):
            logger.error(f"Unexpected order status shape for {order_id}: {data}")
            raise FulfillmentError("Unexpected Crossmint response shape", 502, data)

        line_items = data.get("lineItems")
        first_item = line_items[0] if isinstance(line_items, list) and line_items else {}
        delivery = first_item.get("delivery") if isinstance(first_item, dict) else None
        logger.info(
            f"Order {data['orderId']} | phase={data.get('phase')} "
            f"| payment={(data.get('payment') or {}).get('status')} "
            f"| delivery={delivery.get('status') if isinstance(delivery, dict) else None}"
        )
        return data

    async def close(self):
        """Close HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
