"""
Remote server for the cached stock-data client.
Lets several processes share one cache and one upstream quota.

Endpoints take and return MessagePack bodies (see src.remote.wire).
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, Response
from fastapi.responses import PlainTextResponse

from src.core.config import settings
from src.core.errors import StockDataError
from src.core.interfaces import StockClient
from src.core.logging import configure_logging, get_logger
from src.core.metrics import cache_client_stats
from src.core.models import GetChartsRequest, GetQuotesRequest
from src.remote.wire import CONTENT_TYPE, ERROR_KIND_HEADER, WireError, decode, encode

log = get_logger("remote-server")


def _bad_request(message: str, kind: Optional[str] = None) -> PlainTextResponse:
    headers = {ERROR_KIND_HEADER: kind} if kind else None
    return PlainTextResponse(message, status_code=400, headers=headers)


def _encoded(value) -> Response:
    try:
        body = encode(value)
    except WireError as e:
        log.error(f"Encoding response failed: {e}")
        return PlainTextResponse(str(e), status_code=500)
    return Response(content=body, media_type=CONTENT_TYPE)


def create_app(client: Optional[StockClient] = None) -> FastAPI:
    """
    Build the server app.

    Args:
        client: Client to serve. If None, one is built from settings at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = None
        if getattr(app.state, "client", None) is None:
            from src.app.cache_client import CacheClient

            owned = CacheClient.from_settings(settings)
            app.state.client = owned
        log.info("Remote server ready")
        try:
            yield
        finally:
            if owned is not None:
                await owned.close()

    app = FastAPI(
        title="Ponzi IEX Remote",
        description="Shared cache in front of the IEX batch API",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.client = client

    @app.api_route("/quote", methods=["GET", "POST"], tags=["Stocks"])
    async def get_quotes(request: Request):
        """Serve a MessagePack GetQuotesRequest."""
        try:
            req = decode(await request.body(), GetQuotesRequest)
        except WireError as e:
            log.warning(f"Bad quote request: {e}")
            return _bad_request(str(e))

        log.info(f"Quote request for {len(req.symbols)} symbols")
        try:
            resp = await request.app.state.client.get_quotes(req)
        except StockDataError as e:
            log.warning(f"Quote request failed: {e}")
            return _bad_request(e.message, e.kind.value)

        return _encoded(resp)

    @app.api_route("/chart", methods=["GET", "POST"], tags=["Stocks"])
    async def get_charts(request: Request):
        """Serve a MessagePack GetChartsRequest."""
        try:
            req = decode(await request.body(), GetChartsRequest)
        except WireError as e:
            log.warning(f"Bad chart request: {e}")
            return _bad_request(str(e))

        log.info(f"Chart request for {len(req.symbols)} symbols (range={req.range.value})")
        try:
            resp = await request.app.state.client.get_charts(req)
        except StockDataError as e:
            log.warning(f"Chart request failed: {e}")
            return _bad_request(e.message, e.kind.value)

        return _encoded(resp)

    @app.get("/health", tags=["Health"])
    async def health_check():
        return {"status": "ok"}

    @app.get("/debug/vars", tags=["Health"])
    async def debug_vars():
        """Process metrics, keyed by map name."""
        return {cache_client_stats.name: cache_client_stats.snapshot()}

    return app


def run(port: Optional[int] = None) -> None:
    """Serve on all interfaces until interrupted."""
    import uvicorn

    port = port or settings.port
    log.info(f"Listening on port {port}")
    uvicorn.run(create_app(), host="0.0.0.0", port=port, log_config=None)


# ============================================================================
# Run with: PORT=1337 python -m src.app.api
# ============================================================================

if __name__ == "__main__":
    configure_logging(settings.log_level, intercept=True)
    run()
