"""
Pydantic models for stock data.
Defines quotes, charts, request/response envelopes, and cache entries.
"""

import re
from datetime import datetime
from enum import Enum
from typing import Annotated, Optional

import numpy as np
from pydantic import AfterValidator, BaseModel, ConfigDict, Field

from .errors import BadRequestError, ErrorKind
from .timeutil import to_reference_zone

# Accepts valid stock symbols. Examples: X, FB, SPY, AAPL
VALID_SYMBOL = re.compile(r"^[A-Z]{1,5}$")


def to_float32(value: float) -> float:
    """Narrow a float to 32-bit precision."""
    return float(np.float32(value))


Float32 = Annotated[float, AfterValidator(to_float32)]
ReferenceTime = Annotated[datetime, AfterValidator(to_reference_zone)]


def validate_symbol(symbol: str) -> str:
    """Return the symbol unchanged or raise BadRequestError."""
    if not isinstance(symbol, str) or not VALID_SYMBOL.match(symbol):
        raise BadRequestError(f"bad symbol: got {symbol!r}, want: {VALID_SYMBOL.pattern}")
    return symbol


def validate_symbols(symbols: list[str]) -> list[str]:
    for symbol in symbols:
        validate_symbol(symbol)
    return symbols


# ============================================================================
# Enumerations
# ============================================================================

class Range(str, Enum):
    """Upstream window tag for chart requests."""

    UNSPECIFIED = "unspecified"
    ONE_DAY = "one_day"
    TWO_YEARS = "two_years"


class Interval(str, Enum):
    """Storage-side resolution of a cached chart."""

    MINUTE = "minute"
    DAILY = "daily"


class Source(str, Enum):
    """Freshness of a quote's latest price."""

    UNSPECIFIED = "unspecified"
    REAL_TIME = "real_time"
    FIFTEEN_MINUTE_DELAYED = "fifteen_minute_delayed"
    CLOSE = "close"
    PREVIOUS_CLOSE = "previous_close"
    PRICE = "price"
    LAST_TRADE = "last_trade"


# ============================================================================
# Market data
# ============================================================================

class Quote(BaseModel):
    """Latest quote for one symbol."""

    symbol: str = Field(..., description="Stock ticker symbol (e.g., AAPL)")
    company_name: str = Field(default="", description="Company name")
    latest_price: Float32 = 0.0
    latest_source: Source = Source.UNSPECIFIED
    latest_time: Optional[ReferenceTime] = Field(
        default=None, description="Human-reported time; a date for close-based sources"
    )
    latest_update: Optional[ReferenceTime] = Field(
        default=None, description="Millisecond-precision update time"
    )
    latest_volume: int = 0
    open: Float32 = 0.0
    high: Float32 = 0.0
    low: Float32 = 0.0
    close: Float32 = 0.0
    change: Float32 = 0.0
    change_percent: Float32 = 0.0


class ChartPoint(BaseModel):
    """OHLCV bar. Daily bars sit at midnight; minute bars carry the minute."""

    date: ReferenceTime
    open: Float32 = 0.0
    high: Float32 = 0.0
    low: Float32 = 0.0
    close: Float32 = 0.0
    volume: int = 0
    change: Float32 = 0.0
    change_percent: Float32 = 0.0


class Chart(BaseModel):
    """Points for one symbol, ascending by date."""

    symbol: str
    points: list[ChartPoint] = Field(default_factory=list)

    @property
    def latest_date(self) -> Optional[datetime]:
        return self.points[-1].date if self.points else None


# ============================================================================
# Requests and responses
# ============================================================================

class GetQuotesRequest(BaseModel):
    token: str = ""
    symbols: list[str] = Field(default_factory=list)


class GetChartsRequest(BaseModel):
    token: str = ""
    symbols: list[str] = Field(default_factory=list)
    range: Range = Range.UNSPECIFIED
    chart_last: int = 0


class SymbolError(BaseModel):
    """A failure that applies to one symbol and does not fail the batch."""

    symbol: str
    kind: ErrorKind = ErrorKind.NOT_FOUND
    message: str = ""


class QuoteResult(BaseModel):
    symbol: str
    quote: Optional[Quote] = None
    error: Optional[SymbolError] = None


class ChartResult(BaseModel):
    symbol: str
    chart: Optional[Chart] = None
    error: Optional[SymbolError] = None


class GetQuotesResponse(BaseModel):
    """Quotes in request order, with per-symbol errors in place of missing quotes."""

    results: list[QuoteResult] = Field(default_factory=list)

    @property
    def quotes(self) -> list[Quote]:
        return [r.quote for r in self.results if r.quote is not None]

    @property
    def not_found(self) -> list[str]:
        return [r.symbol for r in self.results if r.error and r.error.kind == ErrorKind.NOT_FOUND]

    def get(self, symbol: str) -> Optional[Quote]:
        for r in self.results:
            if r.symbol == symbol:
                return r.quote
        return None


class GetChartsResponse(BaseModel):
    """Charts in request order, with per-symbol errors in place of missing charts."""

    results: list[ChartResult] = Field(default_factory=list)

    @property
    def charts(self) -> list[Chart]:
        return [r.chart for r in self.results if r.chart is not None]

    @property
    def not_found(self) -> list[str]:
        return [r.symbol for r in self.results if r.error and r.error.kind == ErrorKind.NOT_FOUND]

    def get(self, symbol: str) -> Optional[Chart]:
        for r in self.results:
            if r.symbol == symbol:
                return r.chart
        return None


# ============================================================================
# Cache entries
# ============================================================================

class QuoteCacheKey(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: str


class QuoteCacheValue(BaseModel):
    quote: Quote
    last_update_time: Optional[ReferenceTime] = None


class ChartCacheKey(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: str
    interval: Interval = Interval.DAILY


class ChartCacheValue(BaseModel):
    chart: Chart
    last_update_time: Optional[ReferenceTime] = None
