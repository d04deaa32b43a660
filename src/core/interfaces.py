"""
Interface definitions (Protocols) for stock data clients.

The cache client and the remote client both satisfy StockClient, so a front
end can talk to a local cache or a shared server without knowing which.
"""

from typing import Protocol, runtime_checkable

from .models import (
    Chart,
    GetChartsRequest,
    GetChartsResponse,
    GetQuotesRequest,
    GetQuotesResponse,
    Quote,
)


@runtime_checkable
class StockClient(Protocol):
    """Serves quote and chart batches."""

    async def get_quotes(self, req: GetQuotesRequest) -> GetQuotesResponse:
        """
        Get quotes for the requested symbols.

        Args:
            req: Token and symbols

        Returns:
            One result per requested symbol, in request order
        """
        ...

    async def get_charts(self, req: GetChartsRequest) -> GetChartsResponse:
        """
        Get charts for the requested symbols.

        Args:
            req: Token, symbols, range and chart_last

        Returns:
            One result per requested symbol, in request order
        """
        ...


@runtime_checkable
class UpstreamFetcher(Protocol):
    """Issues exactly one upstream request per call."""

    async def fetch_quotes(self, req: GetQuotesRequest) -> list[Quote]:
        ...

    async def fetch_charts(self, req: GetChartsRequest) -> list[Chart]:
        ...
