"""
purch-api - main entry point

Loads config, wires the locator resolver, fulfillment client, order store and
x402 gate into the FastAPI app, then serves it.

Usage:
    python main.py              # Start the gateway
    uvicorn main:app            # Or via uvicorn
"""

import logging
import os
import re
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv

# ============================================================
# BOOTSTRAP
# ============================================================

load_dotenv()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


class _SecretMaskingFilter(logging.Filter):
    """Redact configured API keys and client secrets from all log output."""
    _CLIENT_SECRET = re.compile(r'("?clientSecret"?\s*[:=]\s*"?)([^",\s}]+)')

    def __init__(self, secrets: list[str]):
        super().__init__()
        self._secrets = [s for s in secrets if s and len(s) >= 8]

    def _mask(self, text: str) -> str:
        for secret in self._secrets:
            text = text.replace(secret, "[REDACTED]")
        return self._CLIENT_SECRET.sub(r"\1[REDACTED]", text)

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            return True
        masked = self._mask(message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


_mask_filter = _SecretMaskingFilter([os.getenv("CROSSMINT_API_KEY", "")])
for _h in logging.root.handlers:
    _h.addFilter(_mask_filter)

logger = logging.getLogger("purch.main")


# ============================================================
# MODULE IMPORTS
# ============================================================

from core.config import load_settings
from core.fulfillment import CrossmintClient
from core.locator import LocatorResolver, StorefrontProbe
from core.payments import FacilitatorClient, PaymentGate, PaymentRequirement
from core.store import OrderStore
from api.server import create_app

settings = load_settings()


def build_payment_gate(facilitator: FacilitatorClient) -> PaymentGate:
    """One gated POST /orders/{network} route per configured wallet."""
    gate = PaymentGate(facilitator)
    for network, wallet in settings.payment_wallets.items():
        extra = {}
        if network == "base":
            # EIP-712 domain of USDC on Base
            extra = {"name": "USD Coin", "version": "2"}
        elif network == "solana" and settings.solana_fee_payer:
            extra = {"feePayer": settings.solana_fee_payer}

        gate.protect(
            f"POST /orders/{network}",
            PaymentRequirement(
                network=network,
                pay_to=wallet,
                price_usd=settings.price_usd,
                description=f"Create a product order payable with {settings.price_usd} USDC on {network}",
                extra=extra,
            ),
        )
    return gate


def create_gateway_app():
    resolver = LocatorResolver(
        probe=StorefrontProbe(timeout_seconds=settings.probe_timeout_seconds),
        amazon_policy=settings.amazon_policy,
    )
    fulfillment = CrossmintClient(
        api_key=settings.crossmint_api_key,
        base_url=settings.crossmint_base_url,
    )
    store = OrderStore(data_dir=settings.data_dir)
    facilitator = FacilitatorClient(settings.facilitator_url)

    @asynccontextmanager
    async def lifespan(app):
        logger.info(
            f"purch-api starting | networks={list(settings.payment_wallets)} "
            f"| fee=${settings.price_usd:.2f} | amazon_policy={settings.amazon_policy} "
            f"| store={store.get_status()}"
        )
        yield
        logger.info("purch-api shutting down, closing HTTP sessions")
        await fulfillment.close()
        await facilitator.close()

    return create_app(
        resolver=resolver,
        fulfillment=fulfillment,
        store=store,
        payment_gate=build_payment_gate(facilitator),
        networks=tuple(settings.payment_wallets),
        cors_origins=settings.cors_origins,
        lifespan=lifespan,
    )


# Module-level app for uvicorn
app = create_gateway_app()


# ============================================================
# ENTRY POINT
# ============================================================

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=os.getenv("DEV", "false").lower() in ("true", "1"),
    )
