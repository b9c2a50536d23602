"""
List x402 services from the facilitator's discovery endpoint.

Pages through /discovery/resources, keeps the services that accept payment
on the requested network, and writes them to a JSON file.

Usage:
    python scripts/list_services.py
    python scripts/list_services.py --network base --limit 200 --output base.json
"""

import os
import sys
import json
import asyncio
import logging
import argparse
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))
load_dotenv(ROOT / ".env")

from core.config import DEFAULT_FACILITATOR_URL
from core.payments import FacilitatorClient, FacilitatorError

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("purch.list_services")

MAX_PAGE_SIZE = 500


def _accepts_network(item: dict, network: str) -> bool:
    return any(
        str(req.get("network", "")).lower() == network
        for req in item.get("accepts") or []
        if isinstance(req, dict)
    )


async def collect_services(facilitator, network: str, limit: int = 100_000,
                           page_size: int = MAX_PAGE_SIZE, offset: int = 0) -> dict:
    """
    Fetch up to `limit` services accepting `network`.

    Returns the last page's envelope with "items" replaced by the filtered
    list and pagination rewritten to describe that list.
    """
    network = network.lower()
    limit = max(1, limit)
    page_size = max(1, min(page_size, MAX_PAGE_SIZE, limit))
    offset = max(0, offset)

    items: list[dict] = []
    total_available = float("inf")
    last_response: dict = {}

    while len(items) < limit and offset < total_available:
        remaining = limit - len(items)
        response = await facilitator.list_resources(limit=min(page_size, remaining), offset=offset)
        last_response = response

        page_items = response.get("items") or []
        if not page_items:
            break

        matching = [item for item in page_items if _accepts_network(item, network)]
        items.extend(matching[: limit - len(items)])

        pagination = response.get("pagination")
        if pagination:
            total_available = pagination.get("total", len(items))
            page_limit = pagination.get("limit")
            step = page_limit if isinstance(page_limit, int) and page_limit > 0 else len(page_items)
            echoed = pagination.get("offset")
            next_offset = (echoed if isinstance(echoed, int) else offset) + step
            # Always move forward, whatever the facilitator echoes back
            offset = next_offset if next_offset > offset else offset + len(page_items)
        else:
            break

    total = (last_response.get("pagination") or {}).get("total", len(items))
    services = {**last_response, "items": items}
    services["pagination"] = {"limit": len(items), "offset": 0, "total": total}
    return services


async def _run(args) -> int:
    facilitator = FacilitatorClient(args.facilitator)
    try:
        services = await collect_services(
            facilitator,
            network=args.network,
            limit=args.limit,
            page_size=args.page_size,
            offset=args.offset,
        )
    except FacilitatorError as e:
        logger.error(f"Failed to list services: {e}")
        return 1
    finally:
        await facilitator.close()

    output = Path(args.output or f"services-{args.network.lower()}.json")
    output.write_text(json.dumps(services, indent=2), encoding="utf-8")
    logger.info(f"Saved {len(services['items'])} {args.network} services to {output}")
    return 0


# ============================================================
# CLI
# ============================================================

def main():
    parser = argparse.ArgumentParser(description="List x402 services accepting a given network")
    parser.add_argument("--network", default="solana", help="Payment network (default: solana)")
    parser.add_argument("--limit", type=int, default=100_000, help="Max services to keep")
    parser.add_argument("--page-size", type=int, default=MAX_PAGE_SIZE,
                        help=f"Discovery page size (max {MAX_PAGE_SIZE})")
    parser.add_argument("--offset", type=int, default=0, help="Starting offset")
    parser.add_argument("--output", default=None, help="Output file (default: services-<network>.json)")
    parser.add_argument("--facilitator", default=os.getenv("X402_FACILITATOR_URL", DEFAULT_FACILITATOR_URL),
                        help="Facilitator base URL")
    args = parser.parse_args()

    sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
