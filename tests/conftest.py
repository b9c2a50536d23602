# tests/conftest.py
# Shared fixtures and fakes: probe transport, fulfillment client, facilitator

import asyncio
import base64
import json

import pytest
from fastapi.testclient import TestClient

from api.server import create_app
from core.locator import LocatorResolver, ProbeTransport, StorefrontProbe
from core.payments import PaymentGate, PaymentRequirement
from core.store import OrderStore

ORDER_ID = "0b5f6c2e-6a43-4d8e-9d1a-2f6a1b9c7e01"
CLIENT_SECRET = "cs_test_9f8e7d6c5b4a"
SOLANA_PAYER = "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin"
SOLANA_PAY_TO = "DRpbCBMxVnDK7maPM5tGv6MvB3v1sRMC86PZ8okm21hy"
BASE_PAYER = "0x52908400098527886E0F7030069857D2E4169EE7"
BASE_PAY_TO = "0x209693Bc6afc0C5328bA36FaF03C514EF312287C"

# EIP-3009 exact payload as signed by an EVM wallet
EVM_PAYLOAD = {
    "signature": "0x" + "ab" * 65,
    "authorization": {
        "from": BASE_PAYER,
        "to": BASE_PAY_TO,
        "value": "10000",
        "validAfter": "1760000000",
        "validBefore": "1760000600",
        "nonce": "0x" + "11" * 32,
    },
}


class FakeTransport(ProbeTransport):
    """
    Scripted probe transport.

    head / get: header pairs to return, or an exception instance to raise.
    delay: seconds to sleep before answering (for timeout tests).
    """

    def __init__(self, head=None, get=None, delay: float = 0):
        self._results = {"HEAD": head or [], "GET": get or []}
        self._delay = delay
        self.calls: list[tuple[str, str]] = []

    async def _answer(self, method: str, url: str):
        self.calls.append((method, url))
        if self._delay:
            await asyncio.sleep(self._delay)
        result = self._results[method]
        if isinstance(result, BaseException):
            raise result
        return result

    async def head(self, url: str):
        return await self._answer("HEAD", url)

    async def get(self, url: str):
        return await self._answer("GET", url)


class FakeFulfillment:
    """Stands in for CrossmintClient."""

    def __init__(self):
        self.created: list[dict] = []
        self.create_error = None
        self.status_error = None

    async def create_order(self, **kwargs):
        self.created.append(kwargs)
        if self.create_error:
            raise self.create_error
        return {
            "clientSecret": CLIENT_SECRET,
            "order": {
                "orderId": ORDER_ID,
                "payment": {
                    "status": "awaiting-payment",
                    "method": kwargs["payment_method"],
                    "currency": "usdc",
                    "preparation": {
                        "chain": kwargs["payment_method"],
                        "payerAddress": kwargs["payer_address"],
                        "serializedTransaction": "AQAAAAAAAAAAAA==",
                    },
                },
                "quote": {"status": "valid", "totalPrice": {"amount": "12.99", "currency": "usdc"}},
                "lineItems": [{"chain": kwargs["payment_method"], "metadata": {"name": "Widget"}}],
            },
        }

    async def get_order(self, order_id: str):
        if self.status_error:
            raise self.status_error
        return {
            "orderId": order_id,
            "phase": "delivery",
            "payment": {"status": "completed"},
            "lineItems": [{"delivery": {"status": "in-progress"}}],
        }


class FakeFacilitator:
    """Stands in for FacilitatorClient."""

    def __init__(self, valid: bool = True, settled: bool = True):
        self.valid = valid
        self.settled = settled
        self.verify_error = None
        self.verified: list[tuple[dict, dict]] = []
        self.settlements: list[tuple[dict, dict]] = []

    async def verify(self, payment, requirements):
        self.verified.append((payment, requirements))
        if self.verify_error:
            raise self.verify_error
        if not self.valid:
            return {"isValid": False, "invalidReason": "insufficient_funds"}
        return {"isValid": True, "payer": SOLANA_PAYER}

    async def settle(self, payment, requirements):
        self.settlements.append((payment, requirements))
        if not self.settled:
            return {"success": False, "errorReason": "transaction_expired"}
        return {"success": True, "transaction": "5h3kTx", "network": payment["network"], "payer": SOLANA_PAYER}


def encode_payment(network: str = "solana", payload=None) -> str:
    payment = {
        "x402Version": 1,
        "scheme": "exact",
        "network": network,
        "payload": payload if payload is not None else {"transaction": "AQID"},
    }
    return base64.b64encode(json.dumps(payment).encode()).decode()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def resolver(transport):
    return LocatorResolver(probe=StorefrontProbe(transport=transport, timeout_seconds=0.2))


@pytest.fixture
def fulfillment():
    return FakeFulfillment()


@pytest.fixture
def facilitator():
    return FakeFacilitator()


@pytest.fixture
def store(tmp_path):
    return OrderStore(data_dir=tmp_path)


@pytest.fixture
def client(resolver, fulfillment, store):
    """App without the payment gate."""
    app = create_app(resolver=resolver, fulfillment=fulfillment, store=store)
    return TestClient(app)


@pytest.fixture
def paid_client(resolver, fulfillment, store, facilitator):
    """App with x402 charging $0.01 on POST /orders/solana."""
    gate = PaymentGate(facilitator, {
        "POST /orders/solana": PaymentRequirement(
            network="solana",
            pay_to=SOLANA_PAY_TO,
            price_usd=0.01,
            description="Create an order",
        ),
    })
    app = create_app(resolver=resolver, fulfillment=fulfillment, store=store, payment_gate=gate)
    return TestClient(app)


@pytest.fixture
def order_payload():
    return {
        "email": "ada@lovelace.io",
        "payerAddress": SOLANA_PAYER,
        "productUrl": "https://www.amazon.com/dp/B08N5WRWNW",
        "physicalAddress": {
            "name": "Ada Lovelace",
            "line1": "12 Analytical Way",
            "city": "London",
            "postalCode": "N1 9GU",
            "country": "gb",
        },
    }
