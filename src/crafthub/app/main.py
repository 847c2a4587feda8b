"""FastAPI application entry point."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from crafthub import __version__
from crafthub.adapters import DockerRuntimeAdapter, HttpVersionCatalog, JwtTokenVerifier
from crafthub.app.api.public import router as public_router
from crafthub.app.api.v1 import instances_router, versions_router
from crafthub.app.config import get_settings
from crafthub.app.logging import setup_logging
from crafthub.app.middleware import LoggingMiddleware
from crafthub.app.ws import router as ws_router
from crafthub.core.errors import CraftHubError
from crafthub.core.logging_schema import LogEvent
from crafthub.infra import close_db, close_docker, get_engine, get_session_factory, init_db
from crafthub.services import CommandPool, InstanceOrchestrator, SessionHub

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()

    await init_db()

    runtime = DockerRuntimeAdapter(settings.docker)
    versions = HttpVersionCatalog(settings.versions)
    verifier = JwtTokenVerifier(settings.auth)
    commands = CommandPool(settings.rcon)
    orchestrator = InstanceOrchestrator(
        get_session_factory(),
        runtime,
        versions,
        commands=commands,
        defaults=settings.instance,
    )
    hub = SessionHub(orchestrator, verifier, commands, settings.hub, settings.rcon.host)

    app.state.runtime = runtime
    app.state.versions = versions
    app.state.verifier = verifier
    app.state.commands = commands
    app.state.orchestrator = orchestrator
    app.state.hub = hub

    try:
        changed = await orchestrator.sync_all()
        if changed:
            logger.info("Reconciled %d instance statuses with the runtime", changed)
    except Exception as e:
        logger.warning(
            "Startup status sync skipped",
            extra={"event": LogEvent.RUNTIME_ERROR, "error": str(e)},
        )

    await commands.start()
    await hub.start()
    logger.info("Starting application", extra={"event": LogEvent.APP_STARTED})

    yield

    logger.info("Shutting down application", extra={"event": LogEvent.APP_STOPPED})
    await hub.shutdown()
    await commands.shutdown()
    await versions.close()
    await close_docker()
    await close_db()


app = FastAPI(title="CraftHub", version=__version__, lifespan=lifespan)
app.add_middleware(
    LoggingMiddleware, slow_threshold_ms=get_settings().logging.slow_threshold_ms
)


@app.exception_handler(CraftHubError)
async def crafthub_error_handler(request: Request, exc: CraftHubError) -> JSONResponse:
    """Handle CraftHubError exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_response().model_dump(),
    )


app.include_router(instances_router, prefix="/api/v1")
app.include_router(versions_router, prefix="/api/v1")
app.include_router(public_router, prefix="/api")
app.include_router(ws_router)


async def _check_service(check_fn: callable) -> str:
    """Check service health and return status string."""
    try:
        await check_fn()
        return "connected"
    except RuntimeError:
        return "not initialized"
    except Exception as e:
        return f"error: {e}"


async def _check_postgres() -> None:
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))


@app.get("/health")
async def health(request: Request):
    async def _check_docker() -> None:
        runtime = getattr(request.app.state, "runtime", None)
        if runtime is None:
            raise RuntimeError("Runtime not initialized")
        await runtime.ping()

    results = await asyncio.gather(
        _check_service(_check_postgres),
        _check_service(_check_docker),
    )

    services = {
        "database": results[0],
        "docker": results[1],
    }

    is_degraded = any(s != "connected" for s in services.values())

    return {
        "status": "degraded" if is_degraded else "ok",
        "version": __version__,
        "services": services,
    }
