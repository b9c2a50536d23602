# tests/test_list_services.py
# Discovery paging and network filtering

import pytest

from scripts.list_services import collect_services


def _service(n, network):
    return {"resource": f"https://svc{n}.test/api", "accepts": [{"scheme": "exact", "network": network}]}


class FakeDiscovery:
    """Serves a fixed catalog in pages, recording each request."""

    def __init__(self, catalog, with_pagination=True, echo=None):
        self.catalog = catalog
        self.with_pagination = with_pagination
        # Overrides for the pagination fields echoed back
        self.echo = echo or {}
        self.requests = []

    async def list_resources(self, limit=100, offset=0):
        self.requests.append((limit, offset))
        page = {"x402Version": 1, "items": self.catalog[offset:offset + limit]}
        if self.with_pagination:
            page["pagination"] = {"limit": limit, "offset": offset, "total": len(self.catalog), **self.echo}
        return page


class TestCollectServices:

    @pytest.mark.asyncio
    async def test_filters_by_network_across_pages(self):
        catalog = [_service(i, "solana" if i % 2 else "base") for i in range(10)]
        discovery = FakeDiscovery(catalog)

        result = await collect_services(discovery, "Solana", page_size=4)

        assert [item["resource"] for item in result["items"]] == [
            f"https://svc{i}.test/api" for i in (1, 3, 5, 7, 9)
        ]
        assert result["pagination"] == {"limit": 5, "offset": 0, "total": 10}
        assert result["x402Version"] == 1
        assert discovery.requests == [(4, 0), (4, 4), (4, 8)]

    @pytest.mark.asyncio
    async def test_limit_stops_early(self):
        discovery = FakeDiscovery([_service(i, "solana") for i in range(20)])
        result = await collect_services(discovery, "solana", limit=3, page_size=10)
        assert len(result["items"]) == 3
        assert discovery.requests == [(3, 0)]

    @pytest.mark.asyncio
    async def test_page_size_capped(self):
        discovery = FakeDiscovery([_service(1, "base")])
        await collect_services(discovery, "base", page_size=5000)
        assert discovery.requests[0][0] == 500

    @pytest.mark.asyncio
    async def test_single_page_without_pagination(self):
        discovery = FakeDiscovery([_service(i, "solana") for i in range(3)], with_pagination=False)
        result = await collect_services(discovery, "solana", page_size=2)
        assert len(result["items"]) == 2
        assert discovery.requests == [(2, 0)]

    @pytest.mark.asyncio
    async def test_ignores_malformed_accepts(self):
        catalog = [{"resource": "a", "accepts": None}, {"resource": "b", "accepts": ["solana"]}, _service(2, "SOLANA")]
        result = await collect_services(FakeDiscovery(catalog), "solana")
        assert [item["resource"] for item in result["items"]] == ["https://svc2.test/api"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("echo", [
        {"limit": 0}, {"limit": None}, {"offset": 0}, {"offset": None}, {"limit": 0, "offset": 0},
    ])
    async def test_advances_past_bad_pagination(self, echo):
        discovery = FakeDiscovery([_service(i, "solana") for i in range(6)], echo=echo)
        result = await collect_services(discovery, "solana", page_size=2)
        assert len(result["items"]) == 6
        assert discovery.requests == [(2, 0), (2, 2), (2, 4)]
