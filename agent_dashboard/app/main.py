import os
import logging
from typing import List, Optional

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings, load_settings
from .engine import DashboardEngine
from .errors import ConversationError, TransportError
from .models import ConversationResponse, ErrorResponse, HealthResponse, PeerInstance, RelayStatus, Snapshot

VERSION = "0.9.3"

# Configure logging early
logging.basicConfig(level=os.getenv("AGENT_DASHBOARD_LOG_LEVEL", "INFO").upper(),
                    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


def create_app(engine: Optional[DashboardEngine] = None, settings: Optional[Settings] = None,
               run_polling: bool = True) -> FastAPI:
    """Builds the local API around an engine. ``run_polling=False`` serves whatever
    the engine has published without starting its timer (tests, one-shot tools)."""
    if engine is None:
        engine = DashboardEngine(settings or load_settings())

    app = FastAPI(
        title="Agent Dashboard API",
        description="Live state of every AI coding agent seen by this machine and its peers.",
        version=VERSION,
    )
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["GET", "OPTIONS"],
                       allow_headers=["Content-Type", "Authorization"])

    @app.on_event("startup")
    async def startup_event():
        if not run_polling:
            return
        logger.info(f"Starting dashboard engine for instance {engine.instance_id}")
        try:
            await engine.start()
        except Exception as e:
            logger.error(f"Error starting the polling loop: {e}", exc_info=True)

    @app.on_event("shutdown")
    async def shutdown_event():
        if run_polling:
            await engine.stop()

    @app.exception_handler(ConversationError)
    async def conversation_error_handler(request: Request, exc: ConversationError):
        body = ErrorResponse(code=exc.code, detail=exc.message)
        return JSONResponse(status_code=exc.status_code, content=body.model_dump(by_alias=True))

    @app.exception_handler(TransportError)
    async def transport_error_handler(request: Request, exc: TransportError):
        logger.warning(f"Upstream request failed: {exc}")
        body = ErrorResponse(code="relay_unreachable", detail=exc.message)
        return JSONResponse(status_code=502, content=body.model_dump(by_alias=True))

    @app.get("/api/state", response_model=Snapshot, tags=["State"])
    async def get_state(scope: str = Query("merged", pattern="^(merged|local)$")):
        """
        Returns the last published snapshot.
        ``scope=local`` leaves out agents contributed by peer instances; peers use it.
        """
        return engine.snapshot(scope)

    @app.get("/api/relay/state", response_model=Snapshot, tags=["State"],
             responses={404: {"model": ErrorResponse}, 502: {"model": ErrorResponse}})
    async def get_relay_state():
        """The relay's aggregate across every machine pushing to it."""
        if engine.relay is None:
            body = ErrorResponse(code="relay_not_configured", detail="No relay URL is configured")
            return JSONResponse(status_code=404, content=body.model_dump(by_alias=True))
        return await engine.relay.fetch_aggregate()

    @app.get("/api/health", response_model=HealthResponse, tags=["Health"])
    async def health_check():
        relay = engine.relay.status if engine.relay is not None else RelayStatus(configured=False)
        return HealthResponse(version=VERSION, instance_id=engine.instance_id,
                              uptime=round(engine.uptime(), 3), relay=relay)

    @app.get("/api/peers", response_model=List[PeerInstance], tags=["Peers"])
    async def list_peers():
        if engine.registry is None:
            return []
        return engine.registry.list_peers()

    @app.get("/api/agents/{agent_id}/conversation", response_model=ConversationResponse,
             responses={404: {"model": ErrorResponse}, 502: {"model": ErrorResponse}}, tags=["Agents"])
    async def get_conversation(agent_id: str):
        """Loads the full transcript on demand from the store that owns the agent."""
        return await engine.load_conversation(agent_id)

    return app


if __name__ == "__main__":
    import uvicorn
    settings = load_settings()
    app = create_app(settings=settings)
    logger.info(f"Attempting to start dashboard API on host {settings.api_host}, port: {settings.api_port}")
    uvicorn.run(app, host=settings.api_host, port=settings.api_port, log_level="info")
