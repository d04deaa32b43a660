"""
Unit tests for the IEX batch API client, using a mocked HTTP transport.
"""

import httpx
import pytest

from src.core.errors import BadRequestError, MalformedResponseError, UpstreamError
from src.core.models import GetChartsRequest, GetQuotesRequest, Range
from src.iex.client import BATCH_URL, CHART_FILTER, QUOTE_FILTER, IEXClient

from conftest import TOKEN, FakeClock, day, iex_chart_body

MSFT_BODY = iex_chart_body({
    "MSFT": [
        {"date": "2017-07-05", "open": 66.948, "high": 68.1103, "low": 66.9136, "close": 67.7572, "volume": 21176272},
        {"date": "2017-07-06", "open": 66.9627, "high": 67.4629, "low": 66.8156, "close": 67.2569, "volume": 21117572},
    ],
})


@pytest.fixture
def iex(upstream, tmp_path):
    return IEXClient(http_client=upstream.client(), dump_dir=tmp_path, clock=FakeClock(), max_attempts=1)


class TestFetchCharts:
    """Tests for chart requests."""

    @pytest.mark.asyncio
    async def test_url_and_params(self, iex, upstream):
        upstream.body = MSFT_BODY

        charts = await iex.fetch_charts(GetChartsRequest(token=TOKEN, symbols=["MSFT", "AAPL"], range=Range.TWO_YEARS))

        assert len(upstream.requests) == 1
        url = upstream.requests[0].url
        assert str(url).startswith(BATCH_URL)
        assert url.params["token"] == TOKEN
        assert url.params["symbols"] == "MSFT,AAPL"
        assert url.params["types"] == "chart"
        assert url.params["range"] == "2y"
        assert url.params["filter"] == CHART_FILTER
        assert "chartLast" not in url.params

        assert [c.symbol for c in charts] == ["MSFT"]
        assert [p.date for p in charts[0].points] == [day(2017, 7, 5), day(2017, 7, 6)]

    @pytest.mark.asyncio
    async def test_chart_last(self, iex, upstream):
        await iex.fetch_charts(GetChartsRequest(token=TOKEN, symbols=["MSFT"], range=Range.TWO_YEARS, chart_last=2))
        assert upstream.requests[0].url.params["chartLast"] == "2"

    @pytest.mark.asyncio
    async def test_one_day_range(self, iex, upstream):
        await iex.fetch_charts(GetChartsRequest(token=TOKEN, symbols=["MSFT"], range=Range.ONE_DAY))
        assert upstream.requests[0].url.params["range"] == "1d"

    @pytest.mark.asyncio
    async def test_empty_symbols_make_no_request(self, iex, upstream):
        assert await iex.fetch_charts(GetChartsRequest(token=TOKEN, range=Range.TWO_YEARS)) == []
        assert upstream.requests == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("req", [
        GetChartsRequest(token=TOKEN, symbols=["MSFT"]),
        GetChartsRequest(token=TOKEN, symbols=["MSFT"], range=Range.TWO_YEARS, chart_last=-1),
        GetChartsRequest(token="", symbols=["MSFT"], range=Range.TWO_YEARS),
    ])
    async def test_bad_requests(self, iex, upstream, req):
        with pytest.raises(BadRequestError):
            await iex.fetch_charts(req)
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_http_error_carries_body(self, iex, upstream):
        upstream.status = 500
        upstream.body = b"upstream exploded"

        with pytest.raises(UpstreamError) as exc:
            await iex.fetch_charts(GetChartsRequest(token=TOKEN, symbols=["MSFT"], range=Range.TWO_YEARS))

        assert exc.value.status == 500
        assert "upstream exploded" in exc.value.message

    @pytest.mark.asyncio
    async def test_malformed_body(self, iex, upstream):
        upstream.body = b"<html>not json</html>"
        with pytest.raises(MalformedResponseError):
            await iex.fetch_charts(GetChartsRequest(token=TOKEN, symbols=["MSFT"], range=Range.TWO_YEARS))

    @pytest.mark.asyncio
    async def test_dump_writes_identical_bytes(self, upstream, tmp_path):
        upstream.body = MSFT_BODY
        iex = IEXClient(http_client=upstream.client(), dump_api_responses=True, dump_dir=tmp_path, max_attempts=1)

        charts = await iex.fetch_charts(GetChartsRequest(token=TOKEN, symbols=["MSFT", "AAPL"], range=Range.TWO_YEARS))

        assert (tmp_path / "iex-chart-AAPL-MSFT-2y.txt").read_bytes() == MSFT_BODY
        assert len(charts[0].points) == 2


class TestFetchQuotes:
    """Tests for quote requests."""

    @pytest.mark.asyncio
    async def test_params(self, iex, upstream):
        upstream.body = b'{"SPY": {"quote": {"companyName": "SPDR S&P 500", "latestPrice": 470.5, "latestSource": "Close", "latestTime": "January 16, 2024"}}}'

        quotes = await iex.fetch_quotes(GetQuotesRequest(token=TOKEN, symbols=["SPY"]))

        params = upstream.requests[0].url.params
        assert params["types"] == "quote"
        assert params["filter"] == QUOTE_FILTER
        assert quotes[0].symbol == "SPY"
        assert quotes[0].latest_time == day(2024, 1, 16)

    @pytest.mark.asyncio
    async def test_missing_token(self, iex, upstream):
        with pytest.raises(BadRequestError):
            await iex.fetch_quotes(GetQuotesRequest(symbols=["SPY"]))
        assert upstream.requests == []


class TestRetries:
    """Tests for transport retries."""

    @pytest.mark.asyncio
    async def test_transport_error_is_retried_then_surfaced(self):
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        iex = IEXClient(http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)), max_attempts=2)

        with pytest.raises(UpstreamError):
            await iex.fetch_quotes(GetQuotesRequest(token=TOKEN, symbols=["SPY"]))
        assert len(attempts) == 2
