"""
WebSocket Gateway main application.

Real-time chat connections, presence and room fan-out. Any number of
instances can run side by side; they share state through Redis and never
talk to each other directly.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shared.config.logging import setup_logging, ws_gateway_logger as logger
from shared.config.settings import settings
from shared.infrastructure.redis.pool import close_redis_pool, get_redis_pool
from ws_gateway.components.core.constants import DEFAULT_ALLOWED_ORIGINS, WSConstants
from ws_gateway.components.core.exceptions import StoreUnavailableError
from ws_gateway.components.endpoints.chat import ChatEndpoint
from ws_gateway.components.store.kvs import KVSClient
from ws_gateway.connection_manager import ConnectionManager
from ws_gateway.redis_subscriber import get_subscriber_metrics


# =============================================================================
# Lifespan and background tasks
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Starts:
    - Broadcast channel subscriber (inside ConnectionManager.start)
    - Heartbeat cleanup task for stale and dead local connections
    - Instance liveness heartbeat and cluster reaper
    - Broker consumer
    """
    setup_logging()
    logger.info(
        "Starting WebSocket Gateway",
        port=settings.ws_gateway_port,
        env=settings.environment,
    )
    if settings.environment == "production":
        for problem in settings.validate_production_secrets():
            logger.error("Insecure production configuration", problem=problem)

    kvs = KVSClient(await get_redis_pool())
    manager = ConnectionManager(kvs)
    app.state.manager = manager
    await manager.start()

    tasks = [
        asyncio.create_task(start_heartbeat_cleanup(manager), name="heartbeat_cleanup"),
        asyncio.create_task(manager.reaper.run_heartbeat_loop(), name="instance_heartbeat"),
        asyncio.create_task(manager.reaper.run_reaper_loop(), name="cluster_reaper"),
        asyncio.create_task(manager.dispatcher.run(), name="broker_consumer"),
    ]

    yield

    logger.info("Shutting down WebSocket Gateway", instance_id=manager.instance_id)
    for task in tasks:
        task.cancel()
    for task in tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass

    await manager.shutdown()
    await kvs.close()
    await close_redis_pool()


async def start_heartbeat_cleanup(manager: ConnectionManager) -> None:
    """
    Periodically evict local connections that stopped responding.

    Runs every HEARTBEAT_CLEANUP_INTERVAL seconds:
    - Connections without recent activity are closed (1001)
    - Connections whose sends failed are disconnected
    """
    while True:
        try:
            await asyncio.sleep(WSConstants.HEARTBEAT_CLEANUP_INTERVAL)
            await manager.cleanup_stale_connections()
            await manager.cleanup_dead_connections()
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.error("Error in heartbeat cleanup", error=str(e), exc_info=True)


# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title="Chat WebSocket Gateway",
    description="Real-time chat delivery and presence",
    version="0.1.0",
    lifespan=lifespan,
)

DEFAULT_WS_ORIGINS = list(DEFAULT_ALLOWED_ORIGINS) + [
    origin.replace("http://", "https://") for origin in DEFAULT_ALLOWED_ORIGINS
]

ws_allowed_origins = (
    [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
    if settings.allowed_origins
    else DEFAULT_WS_ORIGINS
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ws_allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)


def get_manager(request: Request) -> ConnectionManager:
    return request.app.state.manager


# =============================================================================
# Health Check
# =============================================================================


@app.get("/ws/health")
def health_check(request: Request):
    """Basic health check: local stats only, no store round-trips."""
    try:
        stats = get_manager(request).get_stats_sync()
    except (AttributeError, RuntimeError) as e:
        logger.warning("Failed to get stats in health check", error=str(e))
        stats = {"error": "stats_unavailable"}
    return {
        "status": "healthy",
        "service": "ws-gateway",
        "version": app.version,
        "environment": settings.environment,
        **stats,
    }


@app.get("/ws/health/detailed")
async def detailed_health_check(request: Request):
    """Detailed health check with Redis, subscriber and cluster metrics."""
    manager = get_manager(request)
    subscriber = get_subscriber_metrics()
    checks = {
        "service": "ws-gateway",
        "environment": settings.environment,
        "instance_id": manager.instance_id,
        "connections": await manager.get_stats(),
        "dependencies": {},
        "subscriber_metrics": subscriber,
    }
    all_healthy = True

    try:
        redis_ok = await manager.kvs.ping()
    except StoreUnavailableError:
        redis_ok = False
    checks["dependencies"]["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
    if not redis_ok:
        all_healthy = False

    breaker_state = subscriber["circuit_breaker"]["state"]
    subscriber_down = (
        subscriber["disconnected_subscriptions"] > 0
        or manager.kvs.failed_subscriptions > 0
    )
    checks["dependencies"]["redis_subscriber"] = {
        "status": "disconnected" if subscriber_down else breaker_state
    }
    if breaker_state == "open" or subscriber_down:
        all_healthy = False

    checks["dependencies"]["broker"] = {
        "status": "healthy" if manager.dispatcher.is_connected else "disconnected"
    }

    checks["status"] = "healthy" if all_healthy else "degraded"
    if not all_healthy:
        return JSONResponse(content=checks, status_code=503)
    return checks


# =============================================================================
# WebSocket Endpoints
# =============================================================================


@app.websocket("/ws/chat")
async def chat_websocket(websocket: WebSocket):
    """
    Real-time chat endpoint.

    Authenticate with `?token=<jwt>`, an `Authorization: Bearer` header, or
    an `authenticate` frame sent right after connecting.
    """
    endpoint = ChatEndpoint(websocket, websocket.app.state.manager)
    await endpoint.run()


# =============================================================================
# Development entry point
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "ws_gateway.main:app",
        host="0.0.0.0",
        port=settings.ws_gateway_port,
        reload=True,
    )
