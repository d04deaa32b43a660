"""
Pytest fixtures for testing the cached IEX client.
"""

import asyncio
import json
from datetime import datetime

import httpx
import pytest

from src.core.cache import ChartCache, QuoteCache
from src.core.errors import UpstreamError
from src.core.metrics import Metrics
from src.core.models import Chart, ChartPoint, Quote, Source
from src.core.timeutil import NEW_YORK

TOKEN = "test-token"


class FakeClock:
    """A settable clock. Wednesday 2024-01-17 4pm in New York by default."""

    def __init__(self, t: datetime = datetime(2024, 1, 17, 16, 0, tzinfo=NEW_YORK)):
        self.t = t

    def __call__(self) -> datetime:
        return self.t


class FakeFetcher:
    """
    Stands in for IEXClient. Serves canned charts and quotes and records every call.

    chart_last > 0 is honoured by returning only the tail of the canned points.
    """

    def __init__(self, charts=None, quotes=None):
        self.charts: dict[str, list[ChartPoint]] = charts or {}
        self.quotes: dict[str, Quote] = quotes or {}
        self.chart_requests = []
        self.quote_requests = []
        self.fail_chart_last = None

    async def fetch_charts(self, req):
        self.chart_requests.append(req.model_copy(deep=True))
        await asyncio.sleep(0)
        if self.fail_chart_last is not None and req.chart_last == self.fail_chart_last:
            raise UpstreamError("iex: HTTP 500", status=500, body="internal error")

        charts = []
        for symbol in req.symbols:
            points = self.charts.get(symbol)
            if points is None:
                continue
            if req.chart_last > 0:
                points = points[-req.chart_last:]
            charts.append(Chart(symbol=symbol, points=[p.model_copy() for p in points]))
        return charts

    async def fetch_quotes(self, req):
        self.quote_requests.append(req.model_copy(deep=True))
        return [self.quotes[s].model_copy() for s in req.symbols if s in self.quotes]


def day(year: int, month: int, d: int) -> datetime:
    return datetime(year, month, d, tzinfo=NEW_YORK)


def daily_points(*dates: datetime, close: float = 100.0) -> list[ChartPoint]:
    """Daily points on the given dates with closes counting up from close."""
    return [
        ChartPoint(date=d, open=close + i, high=close + i + 1, low=close + i - 1, close=close + i, volume=1000 * (i + 1))
        for i, d in enumerate(dates)
    ]


def iex_chart_body(charts: dict[str, list[dict]]) -> bytes:
    return json.dumps({symbol: {"chart": points} for symbol, points in charts.items()}).encode()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def metrics():
    """A private metrics map so counters don't leak between tests."""
    return Metrics("test-stats")


@pytest.fixture
def cache_dir(tmp_path):
    path = tmp_path / "cache"
    path.mkdir()
    return path


@pytest.fixture
def chart_cache(cache_dir, clock, metrics):
    return ChartCache(cache_dir / "iex-chart-cache.parquet", clock, metrics=metrics)


@pytest.fixture
def quote_cache(cache_dir, clock, metrics):
    return QuoteCache(cache_dir / "iex-quote-cache.parquet", clock, metrics=metrics)


@pytest.fixture
def fake_fetcher():
    return FakeFetcher()


@pytest.fixture
def sample_quote():
    """Create a sample Quote for testing."""
    return Quote(
        symbol="AAPL",
        company_name="Apple Inc.",
        latest_price=225.74,
        latest_source=Source.CLOSE,
        latest_time=day(2018, 9, 28),
        latest_update=datetime(2018, 9, 28, 16, 0, 0, 414000, tzinfo=NEW_YORK),
        latest_volume=22067409,
        open=224.8,
        high=225.84,
        low=224.02,
        close=225.74,
        change=0.79,
        change_percent=0.00351,
    )


@pytest.fixture
def sample_chart():
    """Three daily MSFT points, 2017-07-05 through 2017-07-07."""
    return Chart(
        symbol="MSFT",
        points=daily_points(day(2017, 7, 5), day(2017, 7, 6), day(2017, 7, 7), close=67.0),
    )


@pytest.fixture
def upstream():
    """
    A fake IEX batch endpoint. Set `.body` and `.status` per test; every request
    is appended to `.requests`.
    """

    class Upstream:
        def __init__(self):
            self.body = b"{}"
            self.status = 200
            self.requests: list[httpx.Request] = []

        def handler(self, request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return httpx.Response(self.status, content=self.body)

        def client(self) -> httpx.AsyncClient:
            return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    return Upstream()
