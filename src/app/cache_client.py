"""
Cached, batched, incremental stock-data client.
Sits between front ends and the IEX fetcher, minimizing upstream calls.
"""

from datetime import datetime
from typing import Optional

from loguru import logger

from src.core.cache import ChartCache, NoOpChartCache, QuoteCache
from src.core.config import Settings, settings as default_settings
from src.core.errors import BadRequestError, CacheIOError, ErrorKind
from src.core.interfaces import UpstreamFetcher
from src.core.metrics import Metrics, cache_client_stats
from src.core.models import (
    Chart,
    ChartCacheKey,
    ChartCacheValue,
    ChartResult,
    GetChartsRequest,
    GetChartsResponse,
    GetQuotesRequest,
    GetQuotesResponse,
    Interval,
    Quote,
    QuoteCacheKey,
    QuoteCacheValue,
    QuoteResult,
    Range,
    SymbolError,
    validate_symbols,
)
from src.core.timeutil import Clock, midnight, now as default_now, to_reference_zone
from src.iex.client import IEXClient

from .planner import gather_fail_fast, group_by_chart_last, plan_symbol


def _unique(symbols: list[str]) -> list[str]:
    return list(dict.fromkeys(symbols))


def _not_found(symbol: str) -> SymbolError:
    return SymbolError(
        symbol=symbol,
        kind=ErrorKind.NOT_FOUND,
        message=f"no data returned for {symbol}",
    )


def _quotes_response(symbols: list[str], by_symbol: dict[str, Quote]) -> GetQuotesResponse:
    results = []
    for sym in symbols:
        q = by_symbol.get(sym)
        if q is None:
            results.append(QuoteResult(symbol=sym, error=_not_found(sym)))
        else:
            results.append(QuoteResult(symbol=sym, quote=q.model_copy(deep=True)))
    return GetQuotesResponse(results=results)


def _charts_response(symbols: list[str], by_symbol: dict[str, Chart]) -> GetChartsResponse:
    results = []
    for sym in symbols:
        ch = by_symbol.get(sym)
        if ch is None:
            results.append(ChartResult(symbol=sym, error=_not_found(sym)))
        else:
            results.append(ChartResult(symbol=sym, chart=ch.model_copy(deep=True)))
    return GetChartsResponse(results=results)


class CacheClient:
    """
    Serves quote and chart batches from the caches, fetching only what's missing.

    Example:
        client = CacheClient.from_settings()
        resp = await client.get_charts(GetChartsRequest(
            token=TOKEN, symbols=["AAPL", "MSFT"], range=Range.TWO_YEARS))
    """

    def __init__(
        self,
        fetcher: UpstreamFetcher,
        quote_cache: Optional[QuoteCache] = None,
        chart_cache: Optional[ChartCache] = None,
        cache_quotes: bool = True,
        persist_quotes: bool = True,
        clock: Clock = default_now,
        metrics: Metrics = cache_client_stats,
    ):
        self.fetcher = fetcher
        self.quote_cache = quote_cache if quote_cache is not None else QuoteCache(clock=clock)
        self.chart_cache = chart_cache if chart_cache is not None else NoOpChartCache(clock=clock)
        self.cache_quotes = cache_quotes
        self.persist_quotes = persist_quotes
        self._clock = clock
        self._metrics = metrics

    @classmethod
    def from_settings(
        cls,
        config: Settings = default_settings,
        fetcher: Optional[UpstreamFetcher] = None,
        clock: Clock = default_now,
    ) -> "CacheClient":
        """
        Build a client from settings, loading the cache snapshots from disk.

        Raises:
            CacheIOError: If a snapshot exists but can't be read
        """
        if fetcher is None:
            fetcher = IEXClient(
                dump_api_responses=config.dump_api_responses,
                dump_dir=config.dump_dir,
                clock=clock,
            )

        if config.enable_chart_cache:
            chart_cache = ChartCache.open(config.cache_dir, clock)
        else:
            logger.info("Chart cache disabled, forwarding chart requests upstream")
            chart_cache = NoOpChartCache(clock=clock)

        persist_quotes = config.enable_quote_cache and config.persist_quote_cache
        if persist_quotes:
            quote_cache = QuoteCache.open(config.cache_dir, clock)
        else:
            quote_cache = QuoteCache(clock=clock)

        return cls(
            fetcher,
            quote_cache=quote_cache,
            chart_cache=chart_cache,
            cache_quotes=config.enable_quote_cache,
            persist_quotes=persist_quotes,
            clock=clock,
        )

    async def close(self) -> None:
        close = getattr(self.fetcher, "close", None)
        if close is not None:
            await close()

    async def __aenter__(self) -> "CacheClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @property
    def chart_cache_enabled(self) -> bool:
        return not isinstance(self.chart_cache, NoOpChartCache)

    # ------------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------------

    def _quote_is_fresh(self, value: QuoteCacheValue, today: datetime) -> bool:
        return value.last_update_time is not None and midnight(to_reference_zone(value.last_update_time)) == today

    async def get_quotes(self, req: GetQuotesRequest) -> GetQuotesResponse:
        """
        Get quotes for stock symbols, asking upstream only for cache misses.

        Raises:
            BadRequestError: If the token or a symbol is invalid
            UpstreamError, MalformedResponseError, MalformedDateError: If the fetch fails
            CacheIOError: If the snapshot can't be saved; `response` still holds the result
        """
        self._metrics.add("get-quotes-requests")

        if not req.token:
            raise BadRequestError("missing token")
        validate_symbols(req.symbols)

        symbols = _unique(req.symbols)
        if not symbols:
            return GetQuotesResponse()

        if not self.cache_quotes:
            quotes = await self.fetcher.fetch_quotes(GetQuotesRequest(token=req.token, symbols=symbols))
            return _quotes_response(req.symbols, {q.symbol: q for q in quotes})

        today = midnight(to_reference_zone(self._clock()))

        by_symbol: dict[str, Quote] = {}
        missing: list[str] = []
        for sym in symbols:
            v = self.quote_cache.get(QuoteCacheKey(symbol=sym))
            if v is not None and self._quote_is_fresh(v, today):
                by_symbol[sym] = v.quote
            else:
                missing.append(sym)

        if not missing:
            return _quotes_response(req.symbols, by_symbol)

        logger.debug(f"Quote cache missed {len(missing)}/{len(symbols)} symbols: {missing}")
        fetched = await self.fetcher.fetch_quotes(GetQuotesRequest(token=req.token, symbols=missing))

        wanted = set(missing)
        for q in fetched:
            if q.symbol not in wanted:
                logger.warning(f"Ignoring unrequested quote for {q.symbol}")
                continue
            key = QuoteCacheKey(symbol=q.symbol)
            self.quote_cache.put(key, QuoteCacheValue(quote=q))
            v = self.quote_cache.get(key)
            if v is not None:
                by_symbol[q.symbol] = v.quote

        resp = _quotes_response(req.symbols, by_symbol)

        if self.persist_quotes:
            try:
                self.quote_cache.save()
            except CacheIOError as e:
                logger.error(f"Saving quote cache failed: {e}")
                raise CacheIOError(e.message, response=resp) from e

        return resp

    # ------------------------------------------------------------------------
    # Charts
    # ------------------------------------------------------------------------

    async def get_charts(self, req: GetChartsRequest) -> GetChartsResponse:
        """
        Get charts for stock symbols, fetching only the points the cache lacks.

        Raises:
            BadRequestError: If the token, a symbol, the range, or chart_last is invalid
            UpstreamError, MalformedResponseError, MalformedDateError: If any batch fails
            CacheIOError: If the snapshot can't be saved; `response` still holds the result
        """
        self._metrics.add("get-charts-requests")

        if not req.token:
            raise BadRequestError("missing token")
        validate_symbols(req.symbols)
        if req.chart_last < 0:
            raise BadRequestError("chart last must be greater than or equal to zero")

        symbols = _unique(req.symbols)
        if not symbols:
            return GetChartsResponse()

        if not self.chart_cache_enabled:
            charts = await self.fetcher.fetch_charts(
                req.model_copy(update={"symbols": symbols}, deep=True)
            )
            return _charts_response(req.symbols, {ch.symbol: ch for ch in charts})

        if req.range != Range.TWO_YEARS:
            raise BadRequestError("only the two years range is supported")

        # All per-symbol decisions share one clock reading.
        fixed_now = to_reference_zone(self._clock())
        today = midnight(fixed_now)

        plans = {}
        for sym in symbols:
            cached = self.chart_cache.get(ChartCacheKey(symbol=sym, interval=Interval.DAILY))
            plans[sym] = plan_symbol(sym, cached, today)

        requests = group_by_chart_last(plans.values(), req.token)
        logger.info(
            f"Chart plan for {len(symbols)} symbols: "
            + ", ".join(f"chartLast={r.chart_last} {r.symbols}" for r in requests)
            + f" ({len(symbols) - sum(len(r.symbols) for r in requests)} cache-only)"
        )

        responses = await gather_fail_fast(self.fetcher.fetch_charts, requests)

        for charts in responses:
            for ch in charts:
                plan = plans.get(ch.symbol)
                if plan is None or not plan.needs_fetch:
                    logger.warning(f"Ignoring unrequested chart for {ch.symbol}")
                    continue
                plan.response = ch

        finals: dict[str, Chart] = {}
        for sym, plan in plans.items():
            final = plan.final_chart()
            if final is None:
                logger.warning(f"Upstream omitted {sym}, leaving its cache entry untouched")
                continue
            finals[sym] = final

        for sym, final in finals.items():
            key = ChartCacheKey(symbol=sym, interval=Interval.DAILY)
            self.chart_cache.put(key, ChartCacheValue(chart=final, last_update_time=fixed_now))

        resp = _charts_response(req.symbols, finals)

        try:
            self.chart_cache.save()
        except CacheIOError as e:
            logger.error(f"Saving chart cache failed: {e}")
            raise CacheIOError(e.message, response=resp) from e

        return resp

    def trim_charts(self, symbols: list[str], num_points: int) -> dict[str, int]:
        """
        Drop the last num_points points of each cached chart and save once.

        Returns:
            Points left per symbol; -1 for symbols that aren't cached
        """
        validate_symbols(symbols)
        if num_points < 0:
            raise BadRequestError("number of points must be greater than or equal to zero")

        left = {sym: self.chart_cache.trim(sym, num_points) for sym in _unique(symbols)}
        self.chart_cache.save()
        logger.info(f"Trimmed {num_points} points from {len(left)} charts")
        return left
