"""Health check endpoints for the rendezvous relay.

Provides HTTP endpoints for load balancers, monitoring systems, and
orchestration tools (e.g., Docker healthcheck, Kubernetes liveness checks),
plus a read-only view of the coordinator counters.
"""

import logging
import time
from collections.abc import Awaitable, Callable, MutableMapping

from aiohttp import web

from src.rendezvous.config import CorsConfig
from src.rendezvous.coordinator import SessionCoordinator
from src.rendezvous.transport.websocket_transport import HEALTH_TEXT

logger = logging.getLogger(__name__)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


class HealthCheckHandler:
    """Health check handler for the relay.

    Provides /, /health, /liveness and /stats. None of the health responses
    depend on coordinator state; /stats reports it.
    """

    def __init__(
        self,
        coordinator: SessionCoordinator | None = None,
        connection_count: Callable[[], int] | None = None,
    ) -> None:
        """Initialize health check handler.

        Args:
            coordinator: SessionCoordinator instance (optional)
            connection_count: Callable returning the number of live connections (optional)
        """
        self.coordinator = coordinator
        self.connection_count = connection_count
        self.start_time = time.time()

    async def index(self, request: web.Request) -> web.Response:
        """Static confirmation string."""
        return web.Response(text=HEALTH_TEXT)

    async def health_check(self, request: web.Request) -> web.Response:
        """Health check endpoint.

        Returns:
            200 OK: Service is healthy

        Response format:
        {
            "status": "healthy",
            "uptime_seconds": float
        }
        """
        return web.json_response(
            {
                "status": "healthy",
                "uptime_seconds": time.time() - self.start_time,
            },
            status=200,
        )

    async def liveness_check(self, request: web.Request) -> web.Response:
        """Liveness check endpoint.

        Returns:
            200 OK: Service is alive
        """
        return web.json_response(
            {
                "status": "alive",
                "uptime_seconds": time.time() - self.start_time,
            },
            status=200,
        )

    async def stats(self, request: web.Request) -> web.Response:
        """Coordinator summary endpoint.

        Returns:
            200 OK: Queue and pair counts in JSON format
        """
        summary = self.coordinator.get_summary() if self.coordinator is not None else {}
        connections = self.connection_count() if self.connection_count is not None else None

        logger.debug("Stats requested", extra={"summary": summary})

        return web.json_response(
            {
                "status": "ok",
                "uptime_seconds": time.time() - self.start_time,
                "connections": connections,
                "coordinator": summary,
            },
            status=200,
        )


def cors_middleware(cors: CorsConfig) -> Callable[[web.Request, Handler], Awaitable[web.StreamResponse]]:
    """Build a middleware adding CORS headers to every response.

    Args:
        cors: CORS configuration

    Returns:
        aiohttp middleware
    """

    def apply_headers(request: web.Request, headers: MutableMapping[str, str]) -> None:
        origin = request.headers.get("Origin")
        if cors.allow_any_origin:
            headers["Access-Control-Allow-Origin"] = "*"
        elif origin is not None and origin in cors.allowed_origins:
            headers["Access-Control-Allow-Origin"] = origin
            headers["Vary"] = "Origin"
        headers["Access-Control-Allow-Methods"] = ", ".join(cors.allowed_methods)

    @web.middleware
    async def middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        if request.method == "OPTIONS":
            response: web.StreamResponse = web.Response(status=204)
        else:
            try:
                response = await handler(request)
            except web.HTTPException as e:
                # Error statuses (404, 405) must stay readable cross-origin
                apply_headers(request, e.headers)
                raise

        apply_headers(request, response.headers)
        return response

    return middleware


def setup_health_routes(
    app: web.Application,
    coordinator: SessionCoordinator | None = None,
    connection_count: Callable[[], int] | None = None,
) -> None:
    """Set up health check routes on application.

    Args:
        app: aiohttp Application instance
        coordinator: SessionCoordinator instance (optional)
        connection_count: Callable returning the number of live connections (optional)
    """
    handler = HealthCheckHandler(coordinator=coordinator, connection_count=connection_count)

    app.router.add_get("/", handler.index)
    app.router.add_get("/health", handler.health_check)
    app.router.add_get("/liveness", handler.liveness_check)
    app.router.add_get("/stats", handler.stats)

    logger.info("Health check endpoints configured: /, /health, /liveness, /stats")


def create_health_app(
    coordinator: SessionCoordinator | None = None,
    connection_count: Callable[[], int] | None = None,
    cors: CorsConfig | None = None,
) -> web.Application:
    """Create the operational HTTP application with CORS applied."""
    app = web.Application(middlewares=[cors_middleware(cors or CorsConfig())])
    setup_health_routes(app, coordinator, connection_count)
    return app
