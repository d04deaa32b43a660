"""
Incremental chart planning.

For every requested symbol the planner asks: given what is already cached,
what is the smallest upstream call that brings this symbol up to date? The
answer is a chart-last value:

    -1  the cache is current, make no call (CACHE_ONLY)
     0  nothing usable is cached, ask for the range default (FULL_FETCH)
    ≥1  ask for the last N points and merge them in (INCREMENTAL)

Symbols that share a chart-last value share one upstream batch.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Iterable, Optional, TypeVar

from loguru import logger

from src.core.models import Chart, ChartCacheValue, ChartPoint, GetChartsRequest, Range
from src.core.timeutil import business_days_between, time_key

T = TypeVar("T")
R = TypeVar("R")

CACHE_ONLY = -1
FULL_FETCH = 0


class FetchState(str, Enum):
    FULL_FETCH = "full_fetch"
    CACHE_ONLY = "cache_only"
    INCREMENTAL = "incremental"


def min_chart_last(cached: Optional[ChartCacheValue], today: datetime) -> int:
    """
    Compute the minimum chart-last that completes a cached chart up to today.

    Weekends are skipped; exchange holidays are not, so a holiday is asked
    for and simply comes back empty.
    """
    if cached is None or not cached.chart.points:
        return FULL_FETCH

    count = business_days_between(cached.chart.points[-1].date, today)
    if count == 0:
        return CACHE_ONLY
    return count


@dataclass
class SymbolPlan:
    """What the planner knows and decides about one symbol in a batch."""

    symbol: str

    # Chart found in the cache. None if not cached.
    cached: Optional[Chart]

    # Minimum chart-last to complete the data set.
    chart_last: int

    # Chart from the upstream response. None if not requested or omitted.
    response: Optional[Chart] = None

    @property
    def state(self) -> FetchState:
        if self.chart_last == CACHE_ONLY:
            return FetchState.CACHE_ONLY
        if self.chart_last == FULL_FETCH:
            return FetchState.FULL_FETCH
        return FetchState.INCREMENTAL

    @property
    def needs_fetch(self) -> bool:
        return self.chart_last >= 0

    def final_chart(self) -> Optional[Chart]:
        """
        The chart to cache and return, or None when upstream omitted the symbol.
        """
        if self.state == FetchState.CACHE_ONLY:
            return self.cached

        if self.response is None:
            return None

        cached_points = self.cached.points if self.cached else []
        return Chart(symbol=self.symbol, points=merge_points(cached_points, self.response.points))


def plan_symbol(symbol: str, cached: Optional[ChartCacheValue], today: datetime) -> SymbolPlan:
    return SymbolPlan(
        symbol=symbol,
        cached=cached.chart if cached is not None else None,
        chart_last=min_chart_last(cached, today),
    )


def merge_points(cached: Iterable[ChartPoint], fresh: Iterable[ChartPoint]) -> list[ChartPoint]:
    """
    Union two point sequences by date, fresh points winning on collision.
    The result is ascending by date with no duplicate dates.
    """
    date_to_point: dict[datetime, ChartPoint] = {}
    for pt in cached:
        date_to_point[time_key(pt.date)] = pt
    for pt in fresh:
        date_to_point[time_key(pt.date)] = pt
    return [date_to_point[k] for k in sorted(date_to_point)]


def group_by_chart_last(
    plans: Iterable[SymbolPlan],
    token: str,
    data_range: Range = Range.TWO_YEARS,
) -> list[GetChartsRequest]:
    """
    Pack symbols sharing a chart-last value into one request each.
    Cache-only symbols contribute nothing. Requests keep first-seen order.
    """
    requests: dict[int, GetChartsRequest] = {}
    for plan in plans:
        if not plan.needs_fetch:
            continue
        req = requests.get(plan.chart_last)
        if req is None:
            req = GetChartsRequest(token=token, range=data_range, chart_last=plan.chart_last)
            requests[plan.chart_last] = req
        req.symbols.append(plan.symbol)
    return list(requests.values())


async def gather_fail_fast(
    func: Callable[[T], Awaitable[R]],
    items: list[T],
) -> list[R]:
    """
    Run func over items concurrently and collect results positionally.

    The first failure cancels the remaining tasks and is re-raised as-is.
    """
    results: list[Optional[R]] = [None] * len(items)

    async def run(i: int, item: T) -> None:
        results[i] = await func(item)

    try:
        async with asyncio.TaskGroup() as tg:
            for i, item in enumerate(items):
                tg.create_task(run(i, item))
    except ExceptionGroup as eg:
        first = eg.exceptions[0]
        logger.warning(f"Batch of {len(items)} task(s) failed, siblings cancelled: {first}")
        raise first

    return results
