"""
Gateway configuration — read once from the environment.

Values come from process env (populated from .env by main.py via
python-dotenv). Settings are frozen after load; components receive the
pieces they need at construction instead of reading os.environ themselves.

Environment variables:
  CROSSMINT_API_KEY            Fulfillment provider API key (required)
  CROSSMINT_API_BASE_URL       Fulfillment API base (default: https://www.crossmint.com/api)
  X402_SOLANA_WALLET_ADDRESS   Wallet receiving x402 fees on Solana
  X402_BASE_WALLET_ADDRESS     Wallet receiving x402 fees on Base (0x + 40 hex)
  X402_FACILITATOR_URL         x402 facilitator base URL (default: https://x402.org/facilitator)
  X402_SOLANA_FEE_PAYER        Facilitator fee payer advertised in Solana challenges (optional)
  X402_PRICE_USD               Paywall fee per order (default: 0.01)
  AMAZON_LOCATOR_POLICY        "url" (default) or "asin"
  PROBE_TIMEOUT_SECONDS        Storefront probe timeout per request (default: 5)
  DATA_DIR                     Order store directory (default: data)
  CORS_ORIGINS                 Comma-separated origins (default: *)
  LOG_LEVEL                    Logging level (default: INFO)
  HOST / PORT                  Bind address (default: 0.0.0.0:8080)
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

DEFAULT_CROSSMINT_BASE_URL = "https://www.crossmint.com/api"
DEFAULT_FACILITATOR_URL = "https://x402.org/facilitator"

_EVM_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_AMAZON_POLICIES = ("url", "asin")


class ConfigError(Exception):
    """Raised when required settings are missing or malformed."""

    def __init__(self, problems: list[str]):
        self.problems = problems
        super().__init__("Invalid configuration: " + "; ".join(problems))


@dataclass(frozen=True)
class Settings:
    crossmint_api_key: str
    crossmint_base_url: str = DEFAULT_CROSSMINT_BASE_URL
    solana_wallet_address: str = ""
    base_wallet_address: str = ""
    facilitator_url: str = DEFAULT_FACILITATOR_URL
    solana_fee_payer: str = ""
    price_usd: float = 0.01
    amazon_policy: str = "url"
    probe_timeout_seconds: float = 5.0
    data_dir: Path = Path("data")
    cors_origins: tuple[str, ...] = field(default=("*",))
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8080

    @property
    def payment_wallets(self) -> dict[str, str]:
        """Configured pay-to wallet per x402 network (only non-empty ones)."""
        wallets = {
            "solana": self.solana_wallet_address,
            "base": self.base_wallet_address,
        }
        return {network: addr for network, addr in wallets.items() if addr}


def _get(env: Mapping[str, str], key: str, default: str = "") -> str:
    # Empty strings count as unset
    value = env.get(key, "")
    return value.strip() if value and value.strip() else default


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build Settings from an environment mapping (os.environ by default).

    Collects every problem before raising so a misconfigured deploy
    reports all of them at once.
    """
    env = os.environ if env is None else env
    problems: list[str] = []

    api_key = _get(env, "CROSSMINT_API_KEY")
    if not api_key:
        problems.append("CROSSMINT_API_KEY is required")

    base_wallet = _get(env, "X402_BASE_WALLET_ADDRESS")
    if base_wallet and not _EVM_ADDRESS_RE.match(base_wallet):
        problems.append("X402_BASE_WALLET_ADDRESS must be 0x followed by 40 hex characters")

    solana_wallet = _get(env, "X402_SOLANA_WALLET_ADDRESS")
    if not solana_wallet and not base_wallet:
        problems.append("at least one of X402_SOLANA_WALLET_ADDRESS / X402_BASE_WALLET_ADDRESS is required")

    amazon_policy = _get(env, "AMAZON_LOCATOR_POLICY", "url").lower()
    if amazon_policy not in _AMAZON_POLICIES:
        problems.append(f"AMAZON_LOCATOR_POLICY must be one of {', '.join(_AMAZON_POLICIES)}")

    def _number(key: str, default: str, cast):
        raw = _get(env, key, default)
        try:
            value = cast(raw)
        except ValueError:
            problems.append(f"{key} must be a number, got {raw!r}")
            return cast(default)
        if value <= 0:
            problems.append(f"{key} must be positive")
        return value

    price = _number("X402_PRICE_USD", "0.01", float)
    probe_timeout = _number("PROBE_TIMEOUT_SECONDS", "5", float)
    port = _number("PORT", "8080", int)

    if problems:
        raise ConfigError(problems)

    origins = tuple(o.strip() for o in _get(env, "CORS_ORIGINS", "*").split(",") if o.strip())

    return Settings(
        crossmint_api_key=api_key,
        crossmint_base_url=_get(env, "CROSSMINT_API_BASE_URL", DEFAULT_CROSSMINT_BASE_URL).rstrip("/"),
        solana_wallet_address=solana_wallet,
        base_wallet_address=base_wallet,
        facilitator_url=_get(env, "X402_FACILITATOR_URL", DEFAULT_FACILITATOR_URL).rstrip("/"),
        solana_fee_payer=_get(env, "X402_SOLANA_FEE_PAYER"),
        price_usd=price,
        amazon_policy=amazon_policy,
        probe_timeout_seconds=probe_timeout,
        data_dir=Path(_get(env, "DATA_DIR", "data")),
        cors_origins=origins or ("*",),
        log_level=_get(env, "LOG_LEVEL", "INFO").upper(),
        host=_get(env, "HOST", "0.0.0.0"),
        port=port,
    )
