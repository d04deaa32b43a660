"""
Client for the remote server. Speaks the same interface as CacheClient.
"""

from typing import Optional

import httpx
from loguru import logger

from src.core.config import settings
from src.core.errors import StockDataError, UpstreamError, error_for_kind
from src.core.models import (
    GetChartsRequest,
    GetChartsResponse,
    GetQuotesRequest,
    GetQuotesResponse,
)

from .wire import CONTENT_TYPE, ERROR_KIND_HEADER, WireError, decode, encode


class RemoteClient:
    """
    Sends batch requests to a remote server.

    Example:
        async with RemoteClient("http://localhost:1337") as client:
            resp = await client.get_quotes(GetQuotesRequest(token=TOKEN, symbols=["SPY"]))
    """

    def __init__(self, base_url: str, http_client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self._client = http_client
        self._owns_client = http_client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=settings.request_timeout)
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "RemoteClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _call(self, path: str, req, response_model):
        url = f"{self.base_url}{path}"
        try:
            body = encode(req)
        except WireError as e:
            raise StockDataError(str(e)) from e

        try:
            # GET with a body, as the server expects.
            response = await self._get_client().request(
                "GET", url, content=body, headers={"Content-Type": CONTENT_TYPE}
            )
        except httpx.HTTPError as e:
            logger.error(f"Remote request to {url} failed: {e}")
            raise UpstreamError(f"remote: request failed: {e}") from e

        if not response.is_success:
            kind = response.headers.get(ERROR_KIND_HEADER)
            if kind:
                raise error_for_kind(kind, response.text)
            raise UpstreamError(f"remote: HTTP {response.status_code}", status=response.status_code, body=response.text)

        try:
            return decode(response.content, response_model)
        except WireError as e:
            raise UpstreamError(f"remote: {e}") from e

    async def get_quotes(self, req: GetQuotesRequest) -> GetQuotesResponse:
        return await self._call("/quote", req, GetQuotesResponse)

    async def get_charts(self, req: GetChartsRequest) -> GetChartsResponse:
        return await self._call("/chart", req, GetChartsResponse)
