"""
HTTP query surface for BlobSQL.

Endpoints:
    POST   /v1/query                       {"sql": "...", "params": [...]}
    POST   /v1/prepare                     {"name": "...", "sql": "..."}
    POST   /v1/execute                     {"name": "...", "params": [...]}
    POST   /v1/close                       {"name": "..."}
    DELETE /v1/connections/{connection_id}
    GET    /v1/health
    GET    /v1/metrics

Invariants:
    - Requests authenticate with HTTP basic auth against AuthConfig
    - X-Connection-ID selects the connection; it defaults to the user name
    - Statement errors return 400 with error_class, sqlstate and the
      connection's transaction status
    - Connection state (open transaction, prepared statements) lives until
      DELETE /v1/connections/{connection_id} or shutdown. Clients must
      disconnect; an abandoned open transaction keeps its engine connection
      and locks and is listed under stale_transactions in /v1/metrics

How to change safely:
    - Keep response fields stable; clients key off sqlstate
    - Bytes values are encoded as PostgreSQL hex bytea ("\\x..."), keep it
"""

from __future__ import annotations

import hmac
import json
import logging
from collections.abc import Callable
from typing import Any

from ..config import AuthConfig
from ..coordinator import StatementResult, TransactionCoordinator
from ..errors import BlobSqlError
from ..sync import SyncEngine
from ..typemap import column_types

logger = logging.getLogger(__name__)

# Try to import aiohttp
try:
    from aiohttp import BasicAuth, web

    AIOHTTP_AVAILABLE = True
except ImportError:
    AIOHTTP_AVAILABLE = False
    web = None

CONNECTION_HEADER = "X-Connection-ID"
PUBLIC_PATHS = frozenset({"/v1/health"})


def encode_value(value: Any) -> Any:
    """Make a result value JSON-serializable."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "\\x" + bytes(value).hex()
    return value


def result_to_dict(result: StatementResult) -> dict[str, Any]:
    body = {
        "command_tag": result.command_tag,
        "columns": result.columns,
        "types": column_types(result.columns, result.rows),
        "rows": [[encode_value(v) for v in row] for row in result.rows],
        "rows_affected": result.rows_affected,
    }
    if result.notice:
        body["notice"] = result.notice
    return body


def _bad_request(message: str) -> web.HTTPBadRequest:
    return web.HTTPBadRequest(
        text=json.dumps({"error": message}),
        content_type="application/json",
    )


def create_http_app(
    coordinator: TransactionCoordinator,
    auth: AuthConfig,
    sync_engine: SyncEngine | None = None,
    stale_transaction_seconds: float = 300.0,
    db_name: str = "",
) -> Any:
    """Create the aiohttp application.

    Args:
        coordinator: Statement router
        auth: Accepted credentials
        sync_engine: Reported in health and metrics, if given
        stale_transaction_seconds: Idle threshold for stale transaction reporting
        db_name: Logical database name reported by health

    Returns:
        aiohttp Application instance

    Raises:
        ImportError: If aiohttp is not installed
    """
    if not AIOHTTP_AVAILABLE:
        raise ImportError("aiohttp is required for HTTP server. Install with: pip install aiohttp")

    app = web.Application()

    @web.middleware
    async def error_middleware(request: web.Request, handler: Callable) -> web.Response:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except Exception as e:
            logger.error(f"HTTP handler error: {e}", exc_info=True)
            return web.json_response(
                {"error": str(e), "error_class": "internal", "sqlstate": "XX000"},
                status=500,
            )

    @web.middleware
    async def auth_middleware(request: web.Request, handler: Callable) -> web.Response:
        if request.path in PUBLIC_PATHS:
            return await handler(request)

        header = request.headers.get("Authorization", "")
        try:
            credentials = BasicAuth.decode(header) if header else None
        except ValueError:
            credentials = None

        if (
            credentials is None
            or not hmac.compare_digest(credentials.login.encode(), auth.user.encode())
            or not hmac.compare_digest(credentials.password.encode(), auth.password.encode())
        ):
            raise web.HTTPUnauthorized(
                text=json.dumps({"error": "authentication failed"}),
                content_type="application/json",
                headers={"WWW-Authenticate": 'Basic realm="blobsql"'},
            )

        request["user"] = credentials.login
        return await handler(request)

    app.middlewares.append(error_middleware)
    app.middlewares.append(auth_middleware)

    app["coordinator"] = coordinator
    app["sync_engine"] = sync_engine
    app["stale_transaction_seconds"] = stale_transaction_seconds
    app["db_name"] = db_name

    app.router.add_post("/v1/query", handle_query)
    app.router.add_post("/v1/prepare", handle_prepare)
    app.router.add_post("/v1/execute", handle_execute)
    app.router.add_post("/v1/close", handle_close)
    app.router.add_delete("/v1/connections/{connection_id}", handle_disconnect)
    app.router.add_get("/v1/health", handle_health)
    app.router.add_get("/v1/metrics", handle_metrics)

    return app


def connection_id(request: web.Request) -> str:
    return request.headers.get(CONNECTION_HEADER) or request["user"]


async def read_body(request: web.Request, *required: str) -> dict[str, Any]:
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise _bad_request("Invalid JSON body") from None
    if not isinstance(body, dict):
        raise _bad_request("JSON body must be an object")

    for key in required:
        if not isinstance(body.get(key), str):
            raise _bad_request(f"{key} is required")
    params = body.get("params", [])
    if not isinstance(params, list):
        raise _bad_request("params must be a list")
    return body


async def error_response(
    coordinator: TransactionCoordinator, conn_id: str, error: BlobSqlError
) -> web.Response:
    status = await coordinator.status(conn_id)
    return web.json_response(
        {
            "error": error.message,
            "error_class": error.error_class.name.lower(),
            "sqlstate": error.sqlstate,
            "transaction_status": status.value,
        },
        status=400,
    )


async def statement_response(
    coordinator: TransactionCoordinator, conn_id: str, result: StatementResult
) -> web.Response:
    body = result_to_dict(result)
    body["transaction_status"] = (await coordinator.status(conn_id)).value
    return web.json_response(body)


async def handle_query(request: web.Request) -> web.Response:
    """Handle POST /v1/query - Run one statement."""
    coordinator: TransactionCoordinator = request.app["coordinator"]
    conn_id = connection_id(request)
    body = await read_body(request, "sql")

    try:
        result = await coordinator.execute(conn_id, body["sql"], body.get("params", []))
    except BlobSqlError as e:
        return await error_response(coordinator, conn_id, e)
    return await statement_response(coordinator, conn_id, result)


async def handle_prepare(request: web.Request) -> web.Response:
    """Handle POST /v1/prepare - Prepare a named statement."""
    coordinator: TransactionCoordinator = request.app["coordinator"]
    conn_id = connection_id(request)
    body = await read_body(request, "name", "sql")

    try:
        await coordinator.prepare(conn_id, body["name"], body["sql"])
    except BlobSqlError as e:
        return await error_response(coordinator, conn_id, e)
    return web.json_response({"name": body["name"], "prepared": True})


async def handle_execute(request: web.Request) -> web.Response:
    """Handle POST /v1/execute - Run a prepared statement."""
    coordinator: TransactionCoordinator = request.app["coordinator"]
    conn_id = connection_id(request)
    body = await read_body(request, "name")

    try:
        result = await coordinator.execute_prepared(
            conn_id, body["name"], body.get("params", [])
        )
    except BlobSqlError as e:
        return await error_response(coordinator, conn_id, e)
    return await statement_response(coordinator, conn_id, result)


async def handle_close(request: web.Request) -> web.Response:
    """Handle POST /v1/close - Close a prepared statement."""
    coordinator: TransactionCoordinator = request.app["coordinator"]
    conn_id = connection_id(request)
    body = await read_body(request, "name")

    await coordinator.close_prepared(conn_id, body["name"])
    return web.json_response({"name": body["name"], "closed": True})


async def handle_disconnect(request: web.Request) -> web.Response:
    """Handle DELETE /v1/connections/{connection_id} - Release a connection."""
    coordinator: TransactionCoordinator = request.app["coordinator"]
    conn_id = request.match_info["connection_id"]

    rolled_back = await coordinator.disconnect(conn_id)
    return web.json_response({"connection_id": conn_id, "rolled_back": rolled_back})


async def handle_health(request: web.Request) -> web.Response:
    """Handle GET /v1/health - Liveness and sync state."""
    coordinator: TransactionCoordinator = request.app["coordinator"]
    sync_engine: SyncEngine | None = request.app["sync_engine"]

    result: dict[str, Any] = {
        "status": "healthy",
        "db_name": request.app["db_name"],
        "connections": len(coordinator.registry),
    }
    if sync_engine is not None:
        result["sync"] = sync_engine.stats
    return web.json_response(result)


async def handle_metrics(request: web.Request) -> web.Response:
    """Handle GET /v1/metrics - Transaction metrics."""
    coordinator: TransactionCoordinator = request.app["coordinator"]
    sync_engine: SyncEngine | None = request.app["sync_engine"]
    metrics = coordinator.metrics

    result: dict[str, Any] = {
        "transactions": metrics.snapshot().to_dict(),
        "active_transactions": [ctx.to_dict() for ctx in metrics.active_transactions()],
        "stale_transactions": metrics.stale_transactions(
            request.app["stale_transaction_seconds"]
        ),
        "statements": metrics.statement_count,
        "statement_errors": metrics.error_count,
        "connections": await coordinator.registry.snapshot(),
    }
    if sync_engine is not None:
        result["sync"] = sync_engine.stats
    return web.json_response(result)


class HttpServer:
    """Runs the HTTP application with an explicit start/stop lifecycle.

    Example:
        >>> server = HttpServer(app, "0.0.0.0", 8080)
        >>> await server.start()
        >>> await server.stop()
    """

    def __init__(self, app: Any, host: str = "0.0.0.0", port: int = 8080) -> None:
        self.app = app
        self.host = host
        self.port = port
        self._runner: web.AppRunner | None = None

    async def start(self) -> None:
        self._runner = web.AppRunner(self.app, access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"HTTP server running on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("HTTP server stopped")
