"""
IEX Cloud batch API client.
Stateless upstream fetcher: one HTTP GET per call, decoded into typed values.
Uses httpx for HTTP requests and tenacity to retry transport failures.
"""

from pathlib import Path
from typing import Optional

import httpx
from loguru import logger
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.core.config import settings
from src.core.errors import BadRequestError, UpstreamError
from src.core.models import Chart, GetChartsRequest, GetQuotesRequest, Quote, Range
from src.core.timeutil import Clock, now as default_now

from .codec import decode_charts, decode_quotes, dump_name

BATCH_URL = "https://cloud.iexapis.com/stable/stock/market/batch"

QUOTE_FILTER = ",".join([
    "companyName",
    "latestPrice",
    "latestSource",
    "latestTime",
    "latestUpdate",
    "latestVolume",
    "open",
    "high",
    "low",
    "close",
    "change",
    "changePercent",
])

CHART_FILTER = ",".join([
    "date",
    "minute",
    "open",
    "high",
    "low",
    "close",
    "volume",
    "change",
    "changePercent",
])

RANGE_PARAMS: dict[Range, str] = {
    Range.ONE_DAY: "1d",
    Range.TWO_YEARS: "2y",
}


class IEXClient:
    """
    Async client for the IEX batch endpoint.

    Example:
        async with IEXClient() as client:
            quotes = await client.fetch_quotes(GetQuotesRequest(token=TOKEN, symbols=["AAPL"]))
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        dump_api_responses: bool = False,
        dump_dir: Optional[Path] = None,
        clock: Clock = default_now,
        max_attempts: int = 3,
    ):
        self._client = http_client
        self._owns_client = http_client is None
        self.dump_api_responses = dump_api_responses
        self.dump_dir = Path(dump_dir) if dump_dir is not None else settings.dump_dir
        self._clock = clock
        self._max_attempts = max_attempts

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=settings.request_timeout)
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "IEXClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _get(self, params: dict[str, str]) -> bytes:
        """
        Issue one GET against the batch endpoint and return the raw body.

        Raises:
            UpstreamError: On non-2xx status or transport failure
        """
        client = self._get_client()
        logger.debug(f"IEX request: symbols={params.get('symbols')} types={params.get('types')}")

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._max_attempts),
                wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
                retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
                reraise=True,
            ):
                with attempt:
                    response = await client.get(BATCH_URL, params=params)
        except httpx.HTTPError as e:
            logger.error(f"IEX transport error: {e}")
            raise UpstreamError(f"iex: request failed: {e}") from e

        if not response.is_success:
            logger.warning(f"IEX returned HTTP {response.status_code}")
            raise UpstreamError(
                f"iex: HTTP {response.status_code}",
                status=response.status_code,
                body=response.text,
            )

        return response.content

    def _dump(self, file_name: str, body: bytes) -> None:
        path = self.dump_dir / file_name
        path.write_bytes(body)
        logger.debug(f"Dumped IEX response to {path}")

    async def fetch_quotes(self, req: GetQuotesRequest) -> list[Quote]:
        """
        Get quotes for stock symbols. Order of the result is unspecified.

        Raises:
            BadRequestError: If the token is missing
            UpstreamError: If the request fails
            MalformedResponseError, MalformedDateError: If the body can't be decoded
        """
        if not req.token:
            raise BadRequestError("missing token")

        if not req.symbols:
            return []

        params = {
            "token": req.token,
            "symbols": ",".join(req.symbols),
            "types": "quote",
            "filter": QUOTE_FILTER,
        }
        body = await self._get(params)

        if self.dump_api_responses:
            self._dump(dump_name("quote", req.symbols), body)

        quotes = decode_quotes(body, self._clock)
        logger.info(f"Retrieved {len(quotes)} quotes for {len(req.symbols)} symbols")
        return quotes

    async def fetch_charts(self, req: GetChartsRequest) -> list[Chart]:
        """
        Get charts for stock symbols. Order of the result is unspecified.

        Raises:
            BadRequestError: If the token, range, or chart_last is invalid
            UpstreamError: If the request fails
            MalformedResponseError, MalformedDateError: If the body can't be decoded
        """
        if not req.token:
            raise BadRequestError("missing token")

        if not req.symbols:
            return []

        if req.range == Range.UNSPECIFIED:
            raise BadRequestError("iex: missing range for chart req")

        range_str = RANGE_PARAMS.get(req.range)
        if range_str is None:
            raise BadRequestError(f"iex: unsupported range for chart req: {req.range.value}")

        if req.chart_last < 0:
            raise BadRequestError("iex: chart last must be greater than or equal to zero")

        params = {
            "token": req.token,
            "symbols": ",".join(req.symbols),
            "types": "chart",
            "range": range_str,
            "filter": CHART_FILTER,
        }
        if req.chart_last > 0:
            params["chartLast"] = str(req.chart_last)

        body = await self._get(params)

        if self.dump_api_responses:
            self._dump(dump_name("chart", req.symbols, range_str), body)

        charts = decode_charts(body)
        logger.info(
            f"Retrieved {len(charts)} charts for {len(req.symbols)} symbols "
            f"(range={range_str}, chartLast={req.chart_last})"
        )
        return charts
