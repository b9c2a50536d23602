"""
Product Locator Resolver — turns a caller's product URL into a fulfillment locator.

The fulfillment provider understands three locator shapes:

    amazon:<product url>                      (or amazon:<ASIN> under the legacy policy)
    shopify:<product url without variant>:<variant id>
    url:<product url>                         (browser-automation fulfillment)

Resolution order (first match wins):
1. Empty input → EmptyInput
2. Already-prefixed locator → returned unchanged (idempotent)
3. Not an absolute URL → MalformedUrl
4. Hostname fast rules: Amazon, Shopify CDN, browser-automation brands
5. Unknown domain → live storefront probe (HEAD, then GET) for Shopify headers
6. Anything else → url:<product url>

Probe failures never fail resolution. A slow or broken third-party site only
changes which locator shape is produced; url: is always a working fallback.
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional
from urllib.parse import SplitResult, unquote_plus, urlsplit, urlunsplit

import aiohttp

logger = logging.getLogger("purch.locator")

PROBE_TIMEOUT_SECONDS = 5.0
SHOPIFY_HEADER_PREFIX = "x-shopify"
SHOPIFY_HEADER_MARKER = "shopify"
VARIANT_PARAM = "variant"

# Legacy policy: ASIN is the 10-char product code after a "/" or "=" in the URL
_ASIN_RE = re.compile(r"[/=]([A-Z0-9]{10})(?:[/?]|$)", re.IGNORECASE)

HeaderPairs = list[tuple[str, str]]


# ============================================================
# DATA TYPES
# ============================================================

class LocatorPrefix(str, Enum):
    """Fulfillment channel that understands the locator payload."""
    AMAZON = "amazon"
    SHOPIFY = "shopify"
    URL = "url"


class LocatorErrorKind(str, Enum):
    EMPTY_INPUT = "empty_input"
    MALFORMED_URL = "malformed_url"
    MISSING_VARIANT = "missing_variant"
    MISSING_ASIN = "missing_asin"       # only raised under the "asin" Amazon policy


class LocatorError(ValueError):
    """Caller supplied a product URL that cannot be turned into a locator."""

    def __init__(self, kind: LocatorErrorKind, message: str):
        self.kind = kind
        self.message = message
        super().__init__(message)


@dataclass(frozen=True)
class PlatformHostnameTable:
    """
    Static hostname classification data.

    amazon / shopify entries are matched as substrings of the hostname.
    browser_automation entries are matched as the exact hostname or any
    subdomain of it (nike.com matches www.nike.com, not notnike.com).
    """
    amazon: tuple[str, ...]
    shopify: tuple[str, ...]
    browser_automation: tuple[str, ...]

    def is_amazon(self, hostname: str) -> bool:
        return any(domain in hostname for domain in self.amazon)

    def is_shopify(self, hostname: str) -> bool:
        return any(domain in hostname for domain in self.shopify)

    def is_browser_automation(self, hostname: str) -> bool:
        return any(
            hostname == domain or hostname.endswith("." + domain)
            for domain in self.browser_automation
        )


DEFAULT_HOSTNAME_TABLE = PlatformHostnameTable(
    amazon=(
        "amazon.com",
        "amazon.co.uk",
        "amazon.ca",
        "amazon.de",
        "amazon.fr",
        "amazon.it",
        "amazon.es",
        "amazon.nl",
        "amazon.se",
        "amazon.pl",
        "amazon.in",
        "amazon.co.jp",
        "amazon.com.au",
        "amazon.com.mx",
        "amazon.com.br",
        "amazon.ae",
        "amazon.sg",
        "amzn.to",
        "amzn.eu",
    ),
    shopify=("myshopify.com",),
    # Brands whose checkout only works through browser automation
    browser_automation=(
        "nike.com",
        "adidas.com",
        "apple.com",
        "bestbuy.com",
        "target.com",
        "walmart.com",
        "lululemon.com",
        "zara.com",
        "uniqlo.com",
        "sephora.com",
    ),
)


# ============================================================
# PROBE TRANSPORT
# ============================================================

class ProbeTransport(ABC):
    """
    Issues a single request and returns the final response headers.

    Implementations follow redirects and raise on transport failure.
    Timeouts are applied by the caller, not the transport.
    """

    @abstractmethod
    async def head(self, url: str) -> HeaderPairs:
        ...

    @abstractmethod
    async def get(self, url: str) -> HeaderPairs:
        ...


class AiohttpProbeTransport(ProbeTransport):
    """Default transport: a fresh aiohttp session per request, nothing pooled across calls."""

    def __init__(self, user_agent: str = "Mozilla/5.0 (compatible; purch-api storefront probe)"):
        self._headers = {"User-Agent": user_agent, "Accept": "text/html,*/*"}

    async def _request(self, method: str, url: str) -> HeaderPairs:
        async with aiohttp.ClientSession(headers=self._headers) as session:
            async with session.request(method, url, allow_redirects=True) as resp:
                # Body is never read; headers of the final hop are enough
                return list(resp.headers.items())

    async def head(self, url: str) -> HeaderPairs:
        return await self._request("HEAD", url)

    async def get(self, url: str) -> HeaderPairs:
        return await self._request("GET", url)


# ============================================================
# STOREFRONT PROBE
# ============================================================

def headers_indicate_shopify(
    headers: Iterable[tuple[str, str]],
    prefix: str = SHOPIFY_HEADER_PREFIX,
    marker: str = SHOPIFY_HEADER_MARKER,
) -> bool:
    """True if any header name starts with the vendor prefix or any value mentions the marker."""
    for name, value in headers:
        if name.lower().startswith(prefix) or marker in str(value).lower():
            return True
    return False


class StorefrontProbe:
    """
    Detects Shopify storefronts that run on a custom domain.

    HEAD first, GET only if HEAD is inconclusive. Each request is bounded
    by timeout_seconds and abandoned when it fires; worst case is two
    timeouts back to back. Never raises.
    """

    def __init__(self, transport: Optional[ProbeTransport] = None,
                 timeout_seconds: float = PROBE_TIMEOUT_SECONDS):
        self._transport = transport or AiohttpProbeTransport()
        self._timeout = timeout_seconds

    async def is_shopify_storefront(self, url: str) -> bool:
        for method in ("HEAD", "GET"):
            headers = await self._fetch_headers(method, url)
            if headers is not None and headers_indicate_shopify(headers):
                logger.info(f"Storefront probe: {url} detected as Shopify via {method}")
                return True
        logger.debug(f"Storefront probe: no Shopify markers for {url}")
        return False

    async def _fetch_headers(self, method: str, url: str) -> Optional[HeaderPairs]:
        call = self._transport.head if method == "HEAD" else self._transport.get
        try:
            return await asyncio.wait_for(call(url), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.info(f"Storefront probe {method} timed out after {self._timeout:.1f}s: {url}")
        except Exception as e:
            logger.info(f"Storefront probe {method} failed for {url}: {e}")
        return None


# ============================================================
# LOCATOR BUILDERS
# ============================================================

def has_locator_prefix(value: str) -> bool:
    lowered = value.lower()
    return any(lowered.startswith(prefix.value + ":") for prefix in LocatorPrefix)


def parse_absolute_url(url: str) -> SplitResult:
    """Parse url, requiring a scheme and a hostname. Raises LocatorError(MALFORMED_URL)."""
    if any(ch.isspace() for ch in url):
        raise LocatorError(LocatorErrorKind.MALFORMED_URL, "productUrl must be a valid absolute URL")
    try:
        parts = urlsplit(url)
        parts.port  # raises ValueError on a non-numeric or out-of-range port
    except ValueError:
        raise LocatorError(LocatorErrorKind.MALFORMED_URL, "productUrl must be a valid absolute URL")

    if not parts.scheme or not parts.hostname:
        raise LocatorError(LocatorErrorKind.MALFORMED_URL, "productUrl must be a valid absolute URL")
    return parts


def build_shopify_locator(url: str) -> str:
    """
    shopify:<url without variant param>:<variant>

    Other query parameters keep their original order and encoding. Every
    "variant" occurrence is removed; the first one supplies the id.
    Consumers split on the first and last colon.
    """
    parts = urlsplit(url)
    variant: Optional[str] = None
    kept: list[str] = []

    for segment in parts.query.split("&") if parts.query else []:
        if not segment:
            continue
        key, _, value = segment.partition("=")
        if unquote_plus(key) == VARIANT_PARAM:
            if variant is None:
                variant = unquote_plus(value)
            continue
        kept.append(segment)

    if not variant:
        raise LocatorError(
            LocatorErrorKind.MISSING_VARIANT,
            "Shopify productUrl must include a variant query parameter",
        )

    canonical = urlunsplit((parts.scheme, parts.netloc, parts.path, "&".join(kept), parts.fragment))

    # Explicit ports and colons inside the variant make first/last-colon splitting
    # fragile downstream; they are passed through as-is.
    if parts.port is not None or ":" in variant:
        logger.warning(
            f"Shopify locator has an ambiguous colon (port={parts.port}, variant={variant!r}): {canonical}"
        )

    return f"{LocatorPrefix.SHOPIFY.value}:{canonical}:{variant}"


def extract_asin(url: str) -> Optional[str]:
    match = _ASIN_RE.search(url)
    return match.group(1).upper() if match else None


# ============================================================
# RESOLVER
# ============================================================

class LocatorResolver:
    """
    Resolves raw product URLs to fulfillment locators.

    hostnames:      classification table (DEFAULT_HOSTNAME_TABLE if omitted)
    probe:          storefront probe for unknown domains
    amazon_policy:  "url" keeps the full URL, "asin" extracts the ASIN
    """

    def __init__(
        self,
        hostnames: PlatformHostnameTable = DEFAULT_HOSTNAME_TABLE,
        probe: Optional[StorefrontProbe] = None,
        amazon_policy: str = "url",
    ):
        if amazon_policy not in ("url", "asin"):
            raise ValueError(f"Unknown Amazon locator policy: {amazon_policy}")
        self._hostnames = hostnames
        self._probe = probe or StorefrontProbe()
        self._amazon_policy = amazon_policy

    async def resolve(self, raw_url: str) -> str:
        url = (raw_url or "").strip()
        if not url:
            raise LocatorError(LocatorErrorKind.EMPTY_INPUT, "productUrl is required")

        if has_locator_prefix(url):
            return url

        hostname = parse_absolute_url(url).hostname

        if self._hostnames.is_amazon(hostname):
            return self._amazon_locator(url)

        if self._hostnames.is_shopify(hostname):
            return build_shopify_locator(url)

        if self._hostnames.is_browser_automation(hostname):
            return f"{LocatorPrefix.URL.value}:{url}"

        if await self._probe.is_shopify_storefront(url):
            return build_shopify_locator(url)

        return f"{LocatorPrefix.URL.value}:{url}"

    def _amazon_locator(self, url: str) -> str:
        if self._amazon_policy == "url":
            return f"{LocatorPrefix.AMAZON.value}:{url}"

        asin = extract_asin(url)
        if not asin:
            raise LocatorError(
                LocatorErrorKind.MISSING_ASIN,
                "Unable to extract Amazon ASIN from productUrl",
            )
        return f"{LocatorPrefix.AMAZON.value}:{asin}"
