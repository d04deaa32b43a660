"""
Decoder for IEX batch responses.

The upstream returns a JSON object keyed by symbol, where each value may hold
a `quote` object and/or a `chart` array. Field names are camelCase.
"""

import json
from datetime import datetime
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from src.core.errors import MalformedDateError, MalformedResponseError
from src.core.models import Chart, ChartPoint, Quote, Source
from src.core.timeutil import NEW_YORK, Clock, now as default_now, time_key

# Maps the upstream latestSource text to a Source.
QUOTE_SOURCES: dict[str, Source] = {
    "": Source.UNSPECIFIED,
    "IEX real time price": Source.REAL_TIME,
    "15 minute delayed price": Source.FIFTEEN_MINUTE_DELAYED,
    "Close": Source.CLOSE,
    "Previous close": Source.PREVIOUS_CLOSE,
    "IEX price": Source.PRICE,
    "IEX last trade": Source.LAST_TRADE,
    "Last trade": Source.LAST_TRADE,
}

# Sources whose latestTime is a time of day like "3:04:05 PM".
_INTRADAY_SOURCES = {
    Source.REAL_TIME,
    Source.FIFTEEN_MINUTE_DELAYED,
    Source.PRICE,
    Source.LAST_TRADE,
}

# Sources whose latestTime is a date like "January 2, 2006".
_CLOSE_SOURCES = {Source.CLOSE, Source.PREVIOUS_CLOSE}


class _RawModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class _RawQuote(_RawModel):
    company_name: str = ""
    latest_price: Optional[float] = None
    latest_source: str = ""
    latest_time: str = ""
    latest_update: Optional[int] = None
    latest_volume: Optional[int] = None
    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    close: Optional[float] = None
    change: Optional[float] = None
    change_percent: Optional[float] = None


class _RawChartPoint(_RawModel):
    date: str
    minute: str = ""
    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    close: Optional[float] = None
    volume: Optional[float] = None
    change: Optional[float] = None
    change_percent: Optional[float] = None


class _RawStock(_RawModel):
    quote: Optional[_RawQuote] = None
    chart: Optional[list[_RawChartPoint]] = None


def _reject_constant(name: str):
    raise ValueError(f"non-finite number {name}")


def _load_stocks(body: Union[bytes, str]) -> dict[str, _RawStock]:
    try:
        data = json.loads(body, parse_constant=_reject_constant)
    except ValueError as e:
        raise MalformedResponseError(
            f"json decode failed: {e}, got: {_preview(body)}"
        ) from e

    if not isinstance(data, dict):
        raise MalformedResponseError(f"expected object keyed by symbol, got: {_preview(body)}")

    try:
        return {symbol: _RawStock.model_validate(stock or {}) for symbol, stock in data.items()}
    except ValidationError as e:
        raise MalformedResponseError(f"unexpected response shape: {e}") from e


def _preview(body: Union[bytes, str], limit: int = 200) -> str:
    text = body if isinstance(body, str) else body.decode("utf-8", errors="replace")
    return text if len(text) <= limit else text[:limit] + "..."


def _num(value: Optional[float]) -> float:
    return 0.0 if value is None else value


def quote_source(latest_source: str) -> Source:
    """Map the upstream latestSource string to a Source."""
    try:
        return QUOTE_SOURCES[latest_source]
    except KeyError:
        raise MalformedResponseError(f"unrecognized source: {latest_source!r}") from None


def quote_date(source: Source, latest_time: str, clock: Clock = default_now) -> Optional[datetime]:
    """
    Parse latestTime according to its source.

    Intraday sources report a wall-clock time which is combined with today's
    date; close-based sources report a calendar date.
    """
    if not latest_time:
        return None

    try:
        if source in _INTRADAY_SOURCES:
            t = datetime.strptime(latest_time, "%I:%M:%S %p")
            today = clock().astimezone(NEW_YORK)
            return datetime(
                today.year, today.month, today.day,
                t.hour, t.minute, t.second, tzinfo=NEW_YORK,
            )

        if source in _CLOSE_SOURCES:
            d = datetime.strptime(latest_time, "%B %d, %Y")
            return d.replace(tzinfo=NEW_YORK)
    except ValueError as e:
        raise MalformedDateError(
            f"couldn't parse quote date with source({source.value}) and time({latest_time!r}): {e}"
        ) from e

    raise MalformedDateError(
        f"couldn't parse quote date with source({source.value}) and time({latest_time!r})"
    )


def chart_date(date: str, minute: str = "") -> datetime:
    """Combine a YYYY-MM-DD date and an optional HH:MM minute in the reference zone."""
    try:
        if minute:
            d = datetime.strptime(f"{date} {minute}", "%Y-%m-%d %H:%M")
        else:
            d = datetime.strptime(date, "%Y-%m-%d")
    except ValueError as e:
        raise MalformedDateError(f"parsing date ({date} {minute}) failed: {e}") from e
    return d.replace(tzinfo=NEW_YORK)


def millis_to_time(ms: int) -> datetime:
    """Convert milliseconds since the epoch to a time in the reference zone."""
    sec, millis = divmod(ms, 1000)
    try:
        return datetime.fromtimestamp(sec, tz=NEW_YORK).replace(microsecond=millis * 1000)
    except (ValueError, OverflowError, OSError) as e:
        raise MalformedResponseError(f"latestUpdate out of range: {ms}") from e


def decode_quotes(body: Union[bytes, str], clock: Clock = default_now) -> list[Quote]:
    """Decode the quotes of a batch response. Symbols without a quote are skipped."""
    quotes = []
    for symbol, stock in _load_stocks(body).items():
        q = stock.quote
        if q is None:
            continue

        source = quote_source(q.latest_source)
        quotes.append(Quote(
            symbol=symbol,
            company_name=q.company_name,
            latest_price=_num(q.latest_price),
            latest_source=source,
            latest_time=quote_date(source, q.latest_time, clock),
            latest_update=millis_to_time(q.latest_update) if q.latest_update else None,
            latest_volume=q.latest_volume or 0,
            open=_num(q.open),
            high=_num(q.high),
            low=_num(q.low),
            close=_num(q.close),
            change=_num(q.change),
            change_percent=_num(q.change_percent),
        ))
    return quotes


def decode_charts(body: Union[bytes, str]) -> list[Chart]:
    """Decode the charts of a batch response, sorting each chart's points by date."""
    charts = []
    for symbol, stock in _load_stocks(body).items():
        if stock.chart is None:
            continue

        # Later points win when upstream repeats a date.
        by_date: dict[datetime, ChartPoint] = {}
        for pt in stock.chart:
            d = chart_date(pt.date, pt.minute)
            try:
                by_date[time_key(d)] = ChartPoint(
                    date=d,
                    open=_num(pt.open),
                    high=_num(pt.high),
                    low=_num(pt.low),
                    close=_num(pt.close),
                    volume=int(_num(pt.volume)),
                    change=_num(pt.change),
                    change_percent=_num(pt.change_percent),
                )
            except (ValueError, OverflowError) as e:
                raise MalformedResponseError(f"bad chart point for {symbol} on {pt.date}: {e}") from e

        points = [by_date[k] for k in sorted(by_date)]
        charts.append(Chart(symbol=symbol, points=points))
    return charts


def dump_name(kind: str, symbols: list[str], range_str: str = "") -> str:
    """File name for a dumped response: iex-<kind>-<sorted-symbols>[-<range>].txt"""
    name = f"iex-{kind}-{'-'.join(sorted(symbols))}"
    if range_str:
        name += f"-{range_str}"
    return name + ".txt"
