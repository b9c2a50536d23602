"""
x402 Payment Gate — HTTP 402 paywall in front of order creation.

Protocol flow (server side):
    POST /orders/solana                      (no X-PAYMENT)
    → 402 {"x402Version": 1, "accepts": [payment requirements]}
    client signs a USDC transfer for maxAmountRequired
    POST /orders/solana  X-PAYMENT: base64(json payment payload)
    → facilitator /verify   (signature + balance check, external)
    → route handler runs
    → facilitator /settle   (only after a 2xx handler response)
    → response + X-PAYMENT-RESPONSE: base64(json settlement)

Wire types and base64 framing come from the x402 SDK. EVM networks use its
typed PaymentRequirements / PaymentPayload models; the SDK ships no Solana
scheme, so Solana payloads are relayed to the facilitator as decoded JSON.
Cryptographic verification and settlement belong to the facilitator.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import aiohttp
from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from x402.encoding import safe_base64_decode, safe_base64_encode
from x402.types import PaymentPayload, PaymentRequirements

logger = logging.getLogger("purch.payments")

X402_VERSION = 1
USDC_DECIMALS = 6
PAYMENT_HEADER = "X-PAYMENT"
PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"

# Networks covered by the SDK's exact scheme (EIP-3009 payloads)
EVM_NETWORKS = ("base", "base-sepolia")

# USDC per supported network
USDC_ASSETS = {
    "base": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
    "base-sepolia": "0x036CbD53842c5426634e7929541eC2318f3dCF7e",
    "solana": "EPjFWJd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
}


class PaymentHeaderError(ValueError):
    """X-PAYMENT header is not a decodable x402 payment payload."""


class FacilitatorError(Exception):
    """Facilitator unreachable or answered with a non-JSON / error response."""

    def __init__(self, message: str, status: int = 502):
        self.status = status
        super().__init__(message)


# ============================================================
# PAYMENT REQUIREMENTS
# ============================================================

@dataclass(frozen=True)
class PaymentRequirement:
    """Price and destination for one gated route."""
    network: str               # "solana" or "base"
    pay_to: str                # wallet receiving the fee
    price_usd: float
    description: str = ""
    mime_type: str = "application/json"
    max_timeout_seconds: int = 60
    extra: dict = field(default_factory=dict)

    @property
    def max_amount_required(self) -> str:
        """Price in USDC base units (6 decimals)."""
        return str(int(round(self.price_usd * 10 ** USDC_DECIMALS)))

    def to_accepts(self, resource: str) -> dict:
        """One entry of the 402 "accepts" list, camelCase as on the wire."""
        accepts = {
            "scheme": "exact",
            "network": self.network,
            "maxAmountRequired": self.max_amount_required,
            "resource": resource,
            "description": self.description,
            "mimeType": self.mime_type,
            "payTo": self.pay_to,
            "maxTimeoutSeconds": self.max_timeout_seconds,
            "asset": USDC_ASSETS.get(self.network, ""),
        }
        if self.extra:
            accepts["extra"] = dict(self.extra)
        if self.network in EVM_NETWORKS:
            # EVM challenges go through the SDK model so they carry its exact field set
            return PaymentRequirements.model_validate(accepts).model_dump(by_alias=True, exclude_none=True)
        return accepts


def decode_payment_header(header: str) -> dict:
    """
    Decode the base64(JSON) X-PAYMENT header. Raises PaymentHeaderError.

    EVM payments must validate against the SDK's PaymentPayload model.
    """
    try:
        decoded = json.loads(safe_base64_decode(header))
    except ValueError as e:
        raise PaymentHeaderError(f"X-PAYMENT is not base64 JSON: {e}") from e

    if not isinstance(decoded, dict):
        raise PaymentHeaderError("X-PAYMENT must decode to an object")
    for key in ("scheme", "network", "payload"):
        if key not in decoded:
            raise PaymentHeaderError(f"X-PAYMENT missing '{key}'")
    if not isinstance(decoded["payload"], dict):
        raise PaymentHeaderError("X-PAYMENT payload must be an object")

    if decoded["network"] in EVM_NETWORKS:
        try:
            PaymentPayload.model_validate(decoded)
        except ValidationError as e:
            raise PaymentHeaderError(
                f"X-PAYMENT is not a valid {decoded['network']} exact payment: {e.error_count()} errors"
            ) from e
    return decoded


def extract_payer(payment: dict) -> Optional[str]:
    """
    Best-effort payer address from a decoded payment.

    EVM exact payloads carry an EIP-3009 authorization with a "from" field.
    Solana payloads carry a partially signed transaction; the payer is only
    known after the facilitator decodes it.
    """
    payload = payment.get("payload") or {}
    authorization = payload.get("authorization")
    if isinstance(authorization, dict) and authorization.get("from"):
        return authorization["from"]
    if "transaction" in payload:
        logger.debug(f"Payer not decodable locally for {payment.get('network')} transaction payload")
    return None


def encode_settlement(settlement: dict) -> str:
    return safe_base64_encode(json.dumps(settlement))


# ============================================================
# FACILITATOR CLIENT
# ============================================================

class FacilitatorClient:
    """Async client for an x402 facilitator (/verify, /settle, /discovery/resources)."""

    def __init__(self, base_url: str, timeout_seconds: float = 30):
        self._base_url = base_url.rstrip("/")
        self._session: Optional[aiohttp.ClientSession] = None
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        session = await self._get_session()
        url = f"{self._base_url}{path}"
        try:
            async with session.request(method, url, **kwargs) as resp:
                try:
                    data = await resp.json(content_type=None)
                except ValueError:
                    data = None
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise FacilitatorError(f"Facilitator request failed ({path}): {e}") from e

        if not isinstance(data, dict):
            raise FacilitatorError(f"Facilitator returned non-JSON response ({path}, HTTP {status})")
        if status >= 500:
            raise FacilitatorError(f"Facilitator error ({path}, HTTP {status}): {data}")
        return data

    async def verify(self, payment: dict, requirements: dict) -> dict:
        """Returns {"isValid": bool, "invalidReason": str | None, "payer": str | None}."""
        return await self._request("POST", "/verify", json={
            "x402Version": payment.get("x402Version", X402_VERSION),
            "paymentPayload": payment,
            "paymentRequirements": requirements,
        })

    async def settle(self, payment: dict, requirements: dict) -> dict:
        """Returns {"success": bool, "errorReason": ..., "transaction": ..., "network": ..., "payer": ...}."""
        return await self._request("POST", "/settle", json={
            "x402Version": payment.get("x402Version", X402_VERSION),
            "paymentPayload": payment,
            "paymentRequirements": requirements,
        })

    async def list_resources(self, limit: int = 100, offset: int = 0) -> dict:
        """One page of the facilitator's discovery listing: {"items": [...], "pagination": {...}}."""
        return await self._request(
            "GET", "/discovery/resources", params={"limit": str(limit), "offset": str(offset)}
        )

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()


# ============================================================
# PAYMENT GATE
# ============================================================

class PaymentGate:
    """
    Middleware that charges for selected routes.

    Register with: app.middleware("http")(gate)
    Routes are keyed by "METHOD /path"; everything else passes through.
    """

    def __init__(self, facilitator: Any, routes: Optional[dict[str, PaymentRequirement]] = None):
        self._facilitator = facilitator
        self._routes: dict[str, PaymentRequirement] = {}
        for route, requirement in (routes or {}).items():
            self.protect(route, requirement)

    def protect(self, route: str, requirement: PaymentRequirement):
        method, _, path = route.partition(" ")
        self._routes[f"{method.upper()} {path}"] = requirement
        logger.info(
            f"x402 gate: {method.upper()} {path} costs ${requirement.price_usd:.2f} "
            f"on {requirement.network}"
        )

    @property
    def routes(self) -> dict[str, PaymentRequirement]:
        return dict(self._routes)

    @staticmethod
    def _payment_required(error: str, accepts: dict) -> JSONResponse:
        return JSONResponse(
            status_code=402,
            content={"x402Version": X402_VERSION, "error": error, "accepts": [accepts]},
        )

    async def __call__(self, request: Request, call_next):
        route = f"{request.method.upper()} {request.url.path}"
        requirement = self._routes.get(route)
        if requirement is None:
            return await call_next(request)

        accepts = requirement.to_accepts(str(request.url))
        header = request.headers.get(PAYMENT_HEADER)
        if not header:
            return self._payment_required(f"{PAYMENT_HEADER} header is required", accepts)

        logger.debug(f"Payment header received on {route}: length={len(header)} prefix={header[:50]}")

        try:
            payment = decode_payment_header(header)
        except PaymentHeaderError as e:
            logger.warning(f"Failed to parse {PAYMENT_HEADER} on {route}: {e}")
            return self._payment_required(str(e), accepts)

        if payment["network"] != requirement.network:
            logger.warning(f"Payment network mismatch on {route}: {payment['network']} != {requirement.network}")
            return self._payment_required(
                f"Payment network must be {requirement.network}", accepts
            )

        try:
            verification = await self._facilitator.verify(payment, accepts)
        except FacilitatorError as e:
            logger.error(f"Facilitator verify failed on {route}: {e}")
            return JSONResponse(status_code=502, content={"error": "Payment facilitator unavailable"})

        if not verification.get("isValid"):
            reason = verification.get("invalidReason") or "Payment verification failed"
            logger.warning(f"Payment rejected on {route} despite {PAYMENT_HEADER} header: {reason}")
            return self._payment_required(reason, accepts)

        payer = verification.get("payer") or extract_payer(payment)
        request.state.x402_payer = payer
        logger.info(
            f"Payment authorized | {requirement.network} | {route} | payer={payer or 'unknown'}"
        )

        response = await call_next(request)
        if response.status_code >= 400:
            # Handler failed: nothing delivered, so the payment is not settled
            return response

        try:
            settlement = await self._facilitator.settle(payment, accepts)
        except FacilitatorError as e:
            logger.error(f"Facilitator settle failed on {route}: {e}")
            return self._payment_required("Payment settlement failed", accepts)

        if not settlement.get("success"):
            reason = settlement.get("errorReason") or "Payment settlement failed"
            logger.warning(f"Settlement rejected on {route}: {reason}")
            return self._payment_required(reason, accepts)

        logger.info(f"Payment settled | {requirement.network} | tx={settlement.get('transaction')}")
        response.headers[PAYMENT_RESPONSE_HEADER] = encode_settlement(settlement)
        response.headers["Access-Control-Expose-Headers"] = PAYMENT_RESPONSE_HEADER
        return response
