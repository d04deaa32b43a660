"""
Command-line interface for the cached IEX stock-data client.
Provides commands for quotes, charts, cache trimming, metrics, and serving.
"""

import argparse
import asyncio
import json
import sys

from loguru import logger

from src.core.logging import configure_logging


def setup_logging(verbose: bool = False, intercept: bool = False):
    """Configure logging based on verbosity."""
    from src.core.config import settings

    configure_logging("DEBUG" if verbose else settings.log_level, intercept=intercept)


def parse_symbols(raw: str) -> list[str]:
    """Split a comma-separated symbol list, upper-casing each entry."""
    return [s.strip().upper() for s in raw.split(",") if s.strip()]


def build_settings(args):
    """Apply command-line overrides on top of the environment settings."""
    from src.core.config import settings

    overrides = {}
    if args.no_chart_cache:
        overrides["enable_chart_cache"] = False
    if args.no_quote_cache:
        overrides["enable_quote_cache"] = False
    if args.dump:
        overrides["dump_api_responses"] = True
    if args.remote:
        overrides["remote_url"] = args.remote
    return settings.model_copy(update=overrides)


def build_client(config):
    """Return a remote client if a server URL is configured, else a local cache client."""
    if config.remote_url:
        from src.remote.client import RemoteClient

        logger.debug(f"Using remote server at {config.remote_url}")
        return RemoteClient(config.remote_url)

    from src.app.cache_client import CacheClient

    return CacheClient.from_settings(config)


def get_token(args, config) -> str:
    return args.token or config.iex_token or ""


def print_quote(quote):
    print(f"\n{'='*50}")
    print(f"  {quote.symbol} Quote  {quote.company_name}")
    print(f"{'='*50}")
    print(f"  Price:    ${quote.latest_price:,.2f}")

    change_sign = "+" if quote.change >= 0 else ""
    print(f"  Change:   {change_sign}{quote.change:,.2f}")
    pct_sign = "+" if quote.change_percent >= 0 else ""
    print(f"  Change %: {pct_sign}{quote.change_percent * 100:.2f}%")

    if quote.latest_volume:
        print(f"  Volume:   {quote.latest_volume:,}")

    print(f"  Source:   {quote.latest_source.value}")
    if quote.latest_time:
        print(f"  Time:     {quote.latest_time.strftime('%Y-%m-%d %H:%M:%S %Z')}")
    print(f"{'='*50}")


def print_chart(chart, tail: int = 20):
    print(f"\n{'='*60}")
    print(f"  {chart.symbol} Chart ({len(chart.points)} points)")
    print(f"{'='*60}")
    if not chart.points:
        print("  No points")
        return

    print(f"  Period: {chart.points[0].date.strftime('%Y-%m-%d')} to {chart.points[-1].date.strftime('%Y-%m-%d')}")
    print(f"\n  {'Date':<16} {'Open':>10} {'High':>10} {'Low':>10} {'Close':>10} {'Volume':>12}")
    print(f"  {'-'*16} {'-'*10} {'-'*10} {'-'*10} {'-'*10} {'-'*12}")

    for pt in chart.points[-tail:]:
        print(f"  {pt.date.strftime('%Y-%m-%d %H:%M'):<16} {pt.open:>10.2f} {pt.high:>10.2f} {pt.low:>10.2f} {pt.close:>10.2f} {pt.volume:>12,}")

    print(f"{'='*60}")


def print_errors(results):
    for r in results:
        if r.error is not None:
            print(f"  {r.symbol}: {r.error.kind.value}: {r.error.message}")


async def _run_with_client(config, call):
    client = build_client(config)
    try:
        return await call(client)
    finally:
        await client.close()


def cmd_quote(args):
    """Handle quote command."""
    from src.core.errors import CacheIOError, StockDataError
    from src.core.models import GetQuotesRequest

    config = build_settings(args)
    symbols = parse_symbols(args.symbols)
    req = GetQuotesRequest(token=get_token(args, config), symbols=symbols)

    try:
        resp = asyncio.run(_run_with_client(config, lambda c: c.get_quotes(req)))
    except CacheIOError as e:
        logger.error(f"Quote cache not saved: {e}")
        if e.response is None:
            sys.exit(1)
        resp = e.response
    except StockDataError as e:
        logger.error(f"Failed to get quotes for {symbols}: {e}")
        sys.exit(1)

    for quote in resp.quotes:
        print_quote(quote)
    print_errors(resp.results)

    if args.json:
        print(json.dumps(resp.model_dump(mode="json"), indent=2))


def cmd_chart(args):
    """Handle chart command."""
    from src.core.errors import CacheIOError, StockDataError
    from src.core.models import GetChartsRequest, Range

    config = build_settings(args)
    symbols = parse_symbols(args.symbols)
    data_range = {"1d": Range.ONE_DAY, "2y": Range.TWO_YEARS}[args.range]
    req = GetChartsRequest(
        token=get_token(args, config),
        symbols=symbols,
        range=data_range,
        chart_last=args.last,
    )

    try:
        resp = asyncio.run(_run_with_client(config, lambda c: c.get_charts(req)))
    except CacheIOError as e:
        logger.error(f"Chart cache not saved: {e}")
        if e.response is None:
            sys.exit(1)
        resp = e.response
    except StockDataError as e:
        logger.error(f"Failed to get charts for {symbols}: {e}")
        sys.exit(1)

    for chart in resp.charts:
        print_chart(chart, tail=args.tail)
    print_errors(resp.results)

    if args.json:
        print(json.dumps(resp.model_dump(mode="json"), indent=2))


def cmd_trim(args):
    """Drop the most recent points from cached charts, forcing a refetch."""
    from src.app.cache_client import CacheClient
    from src.core.errors import StockDataError

    config = build_settings(args)
    if config.remote_url:
        logger.error("trim works on the local cache only")
        sys.exit(1)

    symbols = parse_symbols(args.symbols)
    try:
        client = CacheClient.from_settings(config)
        left = client.trim_charts(symbols, args.points)
    except StockDataError as e:
        logger.error(f"Failed to trim charts for {symbols}: {e}")
        sys.exit(1)

    for symbol, count in left.items():
        if count < 0:
            print(f"  {symbol:<6} not cached")
        else:
            print(f"  {symbol:<6} {count} points left")


def cmd_metrics(args):
    """Print cache client metrics, from the remote server if one is configured."""
    import httpx

    from src.core.errors import StockDataError
    from src.core.metrics import cache_client_stats

    config = build_settings(args)

    if config.remote_url:
        try:
            response = httpx.get(f"{config.remote_url.rstrip('/')}/debug/vars", timeout=config.request_timeout)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to get metrics from {config.remote_url}: {e}")
            sys.exit(1)
        data = response.json()
    else:
        from src.app.cache_client import CacheClient

        try:
            CacheClient.from_settings(config)
        except StockDataError as e:
            logger.error(f"Failed to open caches: {e}")
            sys.exit(1)
        data = {cache_client_stats.name: cache_client_stats.snapshot()}

    print(json.dumps(data, indent=2))


def cmd_serve(args):
    """Run the remote server."""
    from src.app.api import run

    setup_logging(verbose=args.verbose, intercept=True)
    run(port=args.port)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Cached, batched, incremental IEX stock-data client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  ponzi-iex quote AAPL,MSFT
  ponzi-iex chart SPY,QQQ --json
  ponzi-iex chart AAPL --range 1d --no-chart-cache
  ponzi-iex trim AAPL --points 5
  ponzi-iex serve --port 1337
  ponzi-iex --remote http://localhost:1337 chart SPY
        """
    )

    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose output")
    parser.add_argument("--token", help="IEX API token (default: IEX_TOKEN)")
    parser.add_argument("--remote", help="Remote server URL (default: PONZI_REMOTE_URL)")
    parser.add_argument("--no-chart-cache", action="store_true", help="Forward chart requests upstream")
    parser.add_argument("--no-quote-cache", action="store_true", help="Forward quote requests upstream")
    parser.add_argument("--dump", action="store_true", help="Write raw IEX responses to DUMP_DIR")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Quote command
    quote_parser = subparsers.add_parser("quote", help="Get quotes for symbols")
    quote_parser.add_argument("symbols", help="Comma-separated symbols (e.g., AAPL,MSFT)")
    quote_parser.add_argument("--json", action="store_true", help="Output as JSON")
    quote_parser.set_defaults(func=cmd_quote)

    # Chart command
    chart_parser = subparsers.add_parser("chart", help="Get charts for symbols")
    chart_parser.add_argument("symbols", help="Comma-separated symbols")
    chart_parser.add_argument("--range", choices=["2y", "1d"], default="2y", help="Chart range")
    chart_parser.add_argument("--last", type=int, default=0, help="Only the last N points (uncached path)")
    chart_parser.add_argument("--tail", type=int, default=20, help="Points to print per chart")
    chart_parser.add_argument("--json", action="store_true", help="Output as JSON")
    chart_parser.set_defaults(func=cmd_chart)

    # Trim command
    trim_parser = subparsers.add_parser("trim", help="Drop the latest points from cached charts")
    trim_parser.add_argument("symbols", help="Comma-separated symbols")
    trim_parser.add_argument("--points", type=int, default=1, help="Points to drop per chart")
    trim_parser.set_defaults(func=cmd_trim)

    # Metrics command
    metrics_parser = subparsers.add_parser("metrics", help="Print cache client metrics")
    metrics_parser.set_defaults(func=cmd_metrics)

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Run the remote server")
    serve_parser.add_argument("--port", type=int, help="Listening port (default: PORT or 1337)")
    serve_parser.set_defaults(func=cmd_serve)

    args = parser.parse_args()

    setup_logging(verbose=args.verbose)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    args.func(args)


if __name__ == "__main__":
    main()
