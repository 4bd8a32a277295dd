import os
import logging
from typing import List, Optional

import httpx
from dotenv import load_dotenv, find_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from agent_dashboard.app.client import DashboardClient
from agent_dashboard.app.errors import ConversationError
from agent_dashboard.app.models import ConversationResponse, ErrorResponse, RelayPush, Snapshot

from .models import InstanceSummary, PushAck, RelayHealthResponse
from .store import InstanceStore

VERSION = "0.9.3"

# Configure logging early
logging.basicConfig(level=os.getenv("RELAY_LOG_LEVEL", "INFO").upper(),
                    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

# Load .env file for local execution - using find_dotenv for robustness
dotenv_path = find_dotenv(usecwd=True)
if dotenv_path:
    load_dotenv(dotenv_path=dotenv_path)
    logger.info(f".env file found and loaded from: {dotenv_path}")
else:
    logger.info("Running without .env file (expected in container/cloud run).")


def _float_env(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except ValueError:
        logger.warning(f"Invalid {name} value '{os.getenv(name)}'. Falling back to {default}.")
        return default


def create_app(store: Optional[InstanceStore] = None, auth_token: Optional[str] = None,
               http_client: Optional[httpx.AsyncClient] = None) -> FastAPI:
    token = auth_token if auth_token is not None else os.getenv("RELAY_AUTH_TOKEN", "")
    if not token:
        logger.warning("RELAY_AUTH_TOKEN is not set. Every authenticated request will be rejected.")
    store = store or InstanceStore(ttl_seconds=_float_env("RELAY_TTL_SECONDS", 60.0))
    proxy_timeout = _float_env("RELAY_PROXY_TIMEOUT_SECONDS", 10.0)
    owns_client = http_client is None
    client = http_client or httpx.AsyncClient(follow_redirects=True)

    app = FastAPI(
        title="Agent Dashboard Relay",
        description="Aggregates dashboard snapshots pushed by many machines.",
        version=VERSION,
    )
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["GET", "POST", "OPTIONS"],
                       allow_headers=["Content-Type", "Authorization"])

    async def require_token(authorization: Optional[str] = Header(None)):
        if not token or authorization != f"Bearer {token}":
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    @app.on_event("shutdown")
    async def shutdown_event():
        if owns_client:
            await client.aclose()

    @app.exception_handler(ConversationError)
    async def conversation_error_handler(request: Request, exc: ConversationError):
        body = ErrorResponse(code=exc.code, detail=exc.message)
        return JSONResponse(status_code=exc.status_code, content=body.model_dump(by_alias=True))

    @app.post("/api/state", response_model=PushAck, tags=["State"], dependencies=[Depends(require_token)])
    async def push_state(push: RelayPush):
        record = store.put(push)
        logger.debug(f"Stored {len(push.snapshot.agents)} agents from {push.instance_id}")
        return PushAck(updated_at=record.pushed_at)

    @app.get("/api/state", response_model=Snapshot, tags=["State"], dependencies=[Depends(require_token)])
    async def get_state():
        """Union of every instance snapshot that has not expired."""
        return store.aggregate()

    @app.get("/api/instances", response_model=List[InstanceSummary], tags=["Instances"],
             dependencies=[Depends(require_token)])
    async def list_instances():
        return store.summaries()

    @app.get("/api/agents/{agent_id}/conversation", response_model=ConversationResponse,
             responses={404: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
             tags=["Agents"], dependencies=[Depends(require_token)])
    async def get_conversation(agent_id: str):
        """Transcripts are not pushed; the request goes to the instance that owns the agent."""
        found = store.owner_of(agent_id)
        if found is None:
            raise ConversationError(ConversationError.AGENT_NOT_FOUND, f"Unknown agent '{agent_id}'")
        owner, local_id = found
        if not owner.api_url:
            raise ConversationError(ConversationError.STORE_UNREACHABLE,
                                    f"Instance {owner.instance_id} did not advertise an API URL")
        logger.info(f"Proxying conversation for {agent_id} to {owner.instance_id} at {owner.api_url}")
        remote = DashboardClient(owner.api_url, http_client=client, timeout=proxy_timeout)
        conversation = await remote.fetch_conversation(local_id)
        if conversation.agent_id != agent_id:
            conversation = conversation.model_copy(update={"agent_id": agent_id})
        return conversation

    @app.get("/api/health", response_model=RelayHealthResponse, tags=["Health"])
    async def health_check():
        return RelayHealthResponse(version=VERSION, instances=len(store.live()))

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    # Use PORT environment variable for Cloud Run compatibility, default to 8080 locally
    DEFAULT_PORT = 8080
    try:
        port = int(os.getenv("PORT", DEFAULT_PORT))
    except ValueError:
        logger.warning(f"Warning: Invalid PORT value '{os.getenv('PORT')}'. Falling back to default port {DEFAULT_PORT}.")
        port = DEFAULT_PORT

    logger.info(f"Attempting to start relay on host 0.0.0.0, port: {port}")
    uvicorn.run(app, host="0.0.0.0", port=port, log_level="info")
