"""
Storage module for cache snapshots.
Each cache is persisted as a single Parquet file using pandas.
"""

import os
from datetime import datetime
from pathlib import Path
from typing import Optional

import pandas as pd
from loguru import logger

from .config import settings
from .errors import CacheIOError
from .models import (
    Chart,
    ChartCacheKey,
    ChartCacheValue,
    ChartPoint,
    Interval,
    Quote,
    QuoteCacheKey,
    QuoteCacheValue,
    Source,
)

CHART_SNAPSHOT_NAME = "iex-chart-cache.parquet"
QUOTE_SNAPSHOT_NAME = "iex-quote-cache.parquet"

_POINT_FLOATS = ["open", "high", "low", "close", "change", "change_percent"]
_QUOTE_FLOATS = ["latest_price", "open", "high", "low", "close", "change", "change_percent"]


def user_cache_dir(cache_dir: Optional[Path] = None) -> Path:
    """Ensure the cache directory exists and return its path."""
    path = Path(cache_dir or settings.cache_dir).expanduser()
    try:
        path.mkdir(mode=0o755, parents=True, exist_ok=True)
    except OSError as e:
        raise CacheIOError(f"creating cache dir {path} failed: {e}") from e
    return path


def chart_snapshot_path(cache_dir: Optional[Path] = None) -> Path:
    return user_cache_dir(cache_dir) / CHART_SNAPSHOT_NAME


def quote_snapshot_path(cache_dir: Optional[Path] = None) -> Path:
    return user_cache_dir(cache_dir) / QUOTE_SNAPSHOT_NAME


def _to_timestamp(t: Optional[datetime]):
    return pd.NaT if t is None else pd.Timestamp(t).tz_convert("UTC")


def _to_datetime(value) -> Optional[datetime]:
    if value is None or pd.isna(value):
        return None
    return pd.Timestamp(value).to_pydatetime()


def _write_frame(df: pd.DataFrame, filepath: Path) -> None:
    """Write to a sibling temp file and swap it in, so readers never see a partial snapshot."""
    tmp_path = filepath.with_name(filepath.name + ".tmp")
    try:
        df.to_parquet(tmp_path, index=False)
        os.replace(tmp_path, filepath)
    except Exception as e:
        raise CacheIOError(f"writing snapshot {filepath} failed: {e}") from e
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def _read_frame(filepath: Path) -> Optional[pd.DataFrame]:
    if not filepath.exists():
        logger.debug(f"No snapshot found at {filepath}")
        return None
    try:
        return pd.read_parquet(filepath)
    except Exception as e:
        raise CacheIOError(f"reading snapshot {filepath} failed: {e}") from e


# ============================================================================
# Chart snapshots
# ============================================================================

def save_chart_snapshot(
    data: dict[ChartCacheKey, ChartCacheValue],
    filepath: Path,
) -> Path:
    """
    Save the chart cache as one row per point.
    A chart with no points is kept as a single row with a null date.

    Args:
        data: Cache contents to persist
        filepath: Snapshot file path

    Returns:
        Path to the saved file
    """
    rows = []
    for key, value in data.items():
        base = {
            "symbol": key.symbol,
            "interval": key.interval.value,
            "last_update_time": _to_timestamp(value.last_update_time),
        }
        if not value.chart.points:
            rows.append({**base, "date": pd.NaT})
            continue
        for pt in value.chart.points:
            rows.append({**base, "date": _to_timestamp(pt.date), **pt.model_dump(exclude={"date"})})

    df = pd.DataFrame(
        rows,
        columns=["symbol", "interval", "last_update_time", "date", *_POINT_FLOATS, "volume"],
    )
    df["last_update_time"] = pd.to_datetime(df["last_update_time"], utc=True)
    df["date"] = pd.to_datetime(df["date"], utc=True)
    df[_POINT_FLOATS] = df[_POINT_FLOATS].astype("float32")
    df["volume"] = df["volume"].astype("Int64")

    _write_frame(df, filepath)
    logger.debug(f"Saved {len(data)} charts ({len(df)} rows) to {filepath}")
    return filepath


def load_chart_snapshot(filepath: Path) -> dict[ChartCacheKey, ChartCacheValue]:
    """
    Load the chart cache. A missing file yields an empty cache.

    Raises:
        CacheIOError: If the file exists but can't be decoded
    """
    df = _read_frame(filepath)
    if df is None:
        return {}

    data: dict[ChartCacheKey, ChartCacheValue] = {}
    try:
        for (symbol, interval), group in df.groupby(["symbol", "interval"], sort=False):
            records = group.sort_values("date").to_dict("records")
            points = [
                ChartPoint(
                    date=_to_datetime(row["date"]),
                    volume=int(row["volume"]),
                    **{name: float(row[name]) for name in _POINT_FLOATS},
                )
                for row in records
                if not pd.isna(row["date"])
            ]
            key = ChartCacheKey(symbol=symbol, interval=Interval(interval))
            data[key] = ChartCacheValue(
                chart=Chart(symbol=symbol, points=points),
                last_update_time=_to_datetime(records[0]["last_update_time"]),
            )
    except Exception as e:
        raise CacheIOError(f"decoding chart snapshot {filepath} failed: {e}") from e

    logger.debug(f"Loaded {len(data)} charts from {filepath}")
    return data


# ============================================================================
# Quote snapshots
# ============================================================================

def save_quote_snapshot(
    data: dict[QuoteCacheKey, QuoteCacheValue],
    filepath: Path,
) -> Path:
    """Save the quote cache as one row per symbol."""
    rows = []
    for key, value in data.items():
        q = value.quote
        rows.append({
            **q.model_dump(exclude={"symbol", "latest_time", "latest_update"}),
            "symbol": key.symbol,
            "latest_source": q.latest_source.value,
            "latest_time": _to_timestamp(q.latest_time),
            "latest_update": _to_timestamp(q.latest_update),
            "last_update_time": _to_timestamp(value.last_update_time),
        })

    df = pd.DataFrame(
        rows,
        columns=[
            "symbol", "company_name", "latest_source", "latest_time", "latest_update",
            "latest_volume", *_QUOTE_FLOATS, "last_update_time",
        ],
    )
    for column in ["latest_time", "latest_update", "last_update_time"]:
        df[column] = pd.to_datetime(df[column], utc=True)
    df[_QUOTE_FLOATS] = df[_QUOTE_FLOATS].astype("float32")
    df["latest_volume"] = df["latest_volume"].astype("Int64")

    _write_frame(df, filepath)
    logger.debug(f"Saved {len(data)} quotes to {filepath}")
    return filepath


def load_quote_snapshot(filepath: Path) -> dict[QuoteCacheKey, QuoteCacheValue]:
    """Load the quote cache. A missing file yields an empty cache."""
    df = _read_frame(filepath)
    if df is None:
        return {}

    data: dict[QuoteCacheKey, QuoteCacheValue] = {}
    try:
        for row in df.to_dict("records"):
            quote = Quote(
                symbol=row["symbol"],
                company_name=row["company_name"],
                latest_source=Source(row["latest_source"]),
                latest_time=_to_datetime(row["latest_time"]),
                latest_update=_to_datetime(row["latest_update"]),
                latest_volume=int(row["latest_volume"]),
                **{name: float(row[name]) for name in _QUOTE_FLOATS},
            )
            data[QuoteCacheKey(symbol=quote.symbol)] = QuoteCacheValue(
                quote=quote,
                last_update_time=_to_datetime(row["last_update_time"]),
            )
    except Exception as e:
        raise CacheIOError(f"decoding quote snapshot {filepath} failed: {e}") from e

    logger.debug(f"Loaded {len(data)} quotes from {filepath}")
    return data
