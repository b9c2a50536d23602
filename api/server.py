"""
purch-api Server - FastAPI Backend

Endpoints:
- POST /orders/solana     Create a physical-goods order (x402 fee on Solana)
- POST /orders/base       Create a physical-goods order (x402 fee on Base)
- GET  /orders/{id}       Order status (Authorization: <clientSecret>)
- GET  /                  Endpoint listing
- GET  /health            Heartbeat

Order creation is paid: the x402 gate answers 402 until a valid X-PAYMENT
header is presented. Order status is free but requires the client secret
returned at creation time.
"""

import asyncio
import logging
import re
from typing import Optional

from eth_utils import is_address, to_checksum_address
from fastapi import FastAPI, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from core.client_secret import verify_client_secret
from core.fulfillment import FulfillmentError
from core.locator import LocatorError
from core.store import StoreError

logger = logging.getLogger("purch.orders")

SERVICE_NAME = "purch-api"

_SOLANA_ADDRESS_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")
# Hyphenated 8-4-4-4-12 form only
_ORDER_ID_RE = re.compile(r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}")


# ============================================================
# MODELS
# ============================================================

class PhysicalAddress(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1)
    line1: str = Field(..., min_length=1)
    line2: Optional[str] = None
    city: str = Field(..., min_length=1)
    state: Optional[str] = None
    postal_code: str = Field(..., alias="postalCode", min_length=1)
    country: str = Field(..., min_length=2, max_length=2)

    @field_validator("country")
    @classmethod
    def _upper_country(cls, value: str) -> str:
        return value.upper()


class CreateOrderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: EmailStr
    locale: Optional[str] = None
    physical_address: PhysicalAddress = Field(..., alias="physicalAddress")
    product_url: str = Field(..., alias="productUrl", max_length=4096)
    payer_address: str = Field(..., alias="payerAddress")


class SolanaCreateOrderRequest(CreateOrderRequest):
    @field_validator("payer_address")
    @classmethod
    def _solana_address(cls, value: str) -> str:
        if not _SOLANA_ADDRESS_RE.match(value):
            raise ValueError("payerAddress must be a valid Solana public key")
        return value


class BaseCreateOrderRequest(CreateOrderRequest):
    @field_validator("payer_address")
    @classmethod
    def _evm_address(cls, value: str) -> str:
        if not is_address(value):
            raise ValueError("payerAddress must be a valid EVM address")
        return to_checksum_address(value)


ORDER_REQUEST_MODELS = {
    "solana": SolanaCreateOrderRequest,
    "base": BaseCreateOrderRequest,
}


# ============================================================
# SERVER FACTORY
# ============================================================

def create_app(
    resolver,
    fulfillment,
    store,
    payment_gate=None,
    networks: tuple[str, ...] = ("solana", "base"),
    cors_origins: tuple[str, ...] = ("*",),
    lifespan=None,
) -> FastAPI:
    """
    Create FastAPI app wired to the order pipeline.

    resolver:     LocatorResolver (product URL → fulfillment locator)
    fulfillment:  CrossmintClient (create_order / get_order)
    store:        OrderStore (wallet + order upserts)
    payment_gate: PaymentGate middleware; None serves order creation unpaid
    networks:     which POST /orders/{network} routes to expose
    """
    app = FastAPI(
        title="purch-api",
        description="Pay a few cents in USDC, get a real product shipped.",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Last added runs outermost; CORS must wrap the gate so 402s carry its headers
    if payment_gate is not None:
        app.middleware("http")(payment_gate)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-PAYMENT-RESPONSE"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        if any(err.get("type") == "json_invalid" for err in errors):
            return JSONResponse(status_code=400, content={"error": "Invalid JSON payload"})

        logger.info(f"Request body validation failed: {request.method} {request.url.path}")
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid request body", "details": jsonable_encoder(errors)},
        )

    # ============================================================
    # ORDER CREATION
    # ============================================================

    async def _create_order(req: CreateOrderRequest, network: str):
        logger.info(
            f"Create order request | {network} | payer={req.payer_address} "
            f"| product={req.product_url}"
        )

        try:
            locator = await resolver.resolve(req.product_url)
        except LocatorError as e:
            logger.info(f"Product locator rejected ({e.kind.value}): {req.product_url}")
            return JSONResponse(status_code=400, content={"error": e.message, "code": e.kind.value})

        try:
            response = await fulfillment.create_order(
                email=req.email,
                payer_address=req.payer_address,
                physical_address=req.physical_address.model_dump(by_alias=True, exclude_none=True),
                product_locator=locator,
                payment_method=network,
                locale=req.locale,
            )
        except FulfillmentError as e:
            logger.error(f"Fulfillment order error: HTTP {e.status} {e.message} {e.details}")
            return JSONResponse(
                status_code=e.status,
                content={"error": e.message, "details": jsonable_encoder(e.details)},
            )
        except Exception as e:
            logger.error(f"Unexpected create order failure ({network}): {e}", exc_info=True)
            return JSONResponse(status_code=502, content={"error": "Failed to create order"})

        order = response["order"]
        order_id = order["orderId"]

        # bcrypt + file write, off the event loop
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(
                None,
                lambda: store.save_order(
                    order_id=order_id,
                    email=req.email,
                    payer_address=req.payer_address,
                    network=network,
                    client_secret=response["clientSecret"],
                ),
            )
        except StoreError as e:
            logger.error(f"Failed to persist order record {order_id}: {e}")
            return JSONResponse(status_code=500, content={"error": "Failed to persist order record"})

        payment = order.get("payment") or {}
        preparation = payment.get("preparation") or {}
        serialized_tx = preparation.get("serializedTransaction")

        logger.info(
            f"ORDER CREATED: {order_id} | {network} | locator={locator} "
            f"| payment={payment.get('status')} | quote={(order.get('quote') or {}).get('status')} "
            f"| tx_ready={bool(serialized_tx)}"
        )

        return JSONResponse(
            status_code=201,
            content=jsonable_encoder({
                "clientSecret": response["clientSecret"],
                "orderId": order_id,
                "serializedTransaction": serialized_tx,
                "payerAddress": preparation.get("payerAddress") or req.payer_address,
                "chain": preparation.get("chain") or network,
                "paymentStatus": payment.get("status"),
                "paymentCurrency": payment.get("currency"),
                "quote": order.get("quote"),
                "lineItems": order.get("lineItems"),
                "order": order,
            }),
        )

    def _register_create_route(network: str):
        model = ORDER_REQUEST_MODELS[network]

        async def create_order(req: model):  # type: ignore[valid-type]
            return await _create_order(req, network)

        create_order.__name__ = f"create_{network}_order"
        app.post(
            f"/orders/{network}",
            status_code=201,
            summary=f"Create an order paid with an x402 fee on {network}",
        )(create_order)

    for network in networks:
        _register_create_route(network)

    # ============================================================
    # ORDER STATUS
    # ============================================================

    @app.get("/orders/{order_id}")
    async def get_order_status(order_id: str, authorization: Optional[str] = Header(None)):
        """Order status, authorized by the order's client secret."""
        if not _ORDER_ID_RE.fullmatch(order_id):
            return JSONResponse(status_code=400, content={"error": "Invalid order ID format"})

        if not authorization:
            return JSONResponse(status_code=401, content={"error": "Authorization header is required"})

        secret_hash = store.get_order_secret_hash(order_id)
        if secret_hash is None:
            logger.info(f"Order not found in store: {order_id}")
            return JSONResponse(status_code=404, content={"error": "Order not found", "orderId": order_id})

        loop = asyncio.get_running_loop()
        secret_ok = await loop.run_in_executor(
            None, lambda: verify_client_secret(authorization, secret_hash)
        )
        if not secret_ok:
            logger.info(f"Invalid client secret for order {order_id}")
            return JSONResponse(status_code=403, content={"error": "Invalid client secret or access denied"})

        try:
            status = await fulfillment.get_order(order_id)
        except FulfillmentError as e:
            logger.error(f"Failed to fetch order status {order_id}: HTTP {e.status} {e.message}")
            if e.status == 404:
                return JSONResponse(status_code=404, content={"error": "Order not found", "orderId": order_id})
            if e.status == 403:
                return JSONResponse(status_code=403, content={"error": "Invalid client secret or access denied"})
            return JSONResponse(
                status_code=e.status,
                content={"error": e.message, "details": jsonable_encoder(e.details)},
            )
        except Exception as e:
            logger.error(f"Unexpected error fetching order status {order_id}: {e}", exc_info=True)
            return JSONResponse(status_code=500, content={"error": "Failed to fetch order status"})

        return status

    # ============================================================
    # SERVICE INFO
    # ============================================================

    @app.get("/")
    async def root():
        endpoints = {f"createOrder{n.capitalize()}": f"POST /orders/{n}" for n in networks}
        endpoints["getOrderStatus"] = "GET /orders/:orderId"
        return {"status": "ok", "endpoints": endpoints}

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": SERVICE_NAME}

    return app
