"""FastAPI service for the n8n workflow builder co-pilot.

Routes:
  POST /ai/chat            one agent turn, blocking; returns {"response": …}
  POST /ai/chat/stream     one agent turn as Server-Sent Events:
                               data: {"token": "..."}   ← text delta
                               data: [DONE]             ← turn complete
                               data: {"error": "..."}   ← unhandled exception
  GET  /ai/status          SSE stream of agent status events
  GET  /settings           persisted settings, secrets masked
  POST /settings           update settings; reconfigures client / engine
  GET  /n8n/workflows      pass-through to the n8n public API
  GET  /n8n/workflows/{id}
  POST /n8n/workflows
  GET  /health

Auth is optional: when AGENT_API_KEY is set every request must carry
'Authorization: Bearer <key>'. The chat routes are rate limited per client IP.
"""

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Any

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from n8n_dev_agent.client import RuntimeNotConfiguredError, Settings
from n8n_dev_agent.settings_store import CONNECTION_KEYS, SECRET_KEYS, mask_secrets

logger = logging.getLogger("n8n_dev_agent.api")

_SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
_STATUS_KEEPALIVE_SECONDS = 15.0

_REASONING_KEYS: frozenset[str] = frozenset(
    {"REASONING_ENGINE", "REASONING_MODEL", "ANTHROPIC_API_KEY", "OPENAI_API_KEY"}
)
SETTINGS_KEYS: frozenset[str] = CONNECTION_KEYS | _REASONING_KEYS | SECRET_KEYS

# ---------------------------------------------------------------------------
# API key authentication (optional, enabled when AGENT_API_KEY is set)
# ---------------------------------------------------------------------------

_bearer = HTTPBearer(auto_error=False)


def _verify_api_key(
    credentials: HTTPAuthorizationCredentials | None = Security(_bearer),
) -> None:
    """Verify Bearer token matches AGENT_API_KEY env var.

    If AGENT_API_KEY is not set, all requests are allowed (open dev mode).
    """
    api_key = os.getenv("AGENT_API_KEY")
    if not api_key:
        return
    if not credentials or credentials.credentials != api_key:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


# ---------------------------------------------------------------------------
# Lifespan: build the agent once at startup, close client + store on shutdown
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        from dotenv import load_dotenv
        load_dotenv()
    except ImportError:
        pass

    from n8n_dev_agent.agent.graph import AgentSettings, create_agent
    from n8n_dev_agent.settings_store import SettingsStore

    store = await SettingsStore.open(os.getenv("SETTINGS_DB_PATH", "settings.db"))
    settings = AgentSettings()
    runner, client = await create_agent(settings, store=store)

    logger.info(
        "Starting n8n Dev Agent | n8n: %s | Engine: %s | Corpus: %s",
        client.settings.endpoint,
        runner.engine.model_id,
        settings.corpus_root,
    )

    app.state.store = store
    app.state.runner = runner
    app.state.client = client

    yield

    await client.close()
    await store.close()
    logger.info("Shutting down n8n Dev Agent")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

_rate_limit = os.getenv("RATE_LIMIT_CHAT_PER_MIN", "20")
limiter = Limiter(key_func=get_remote_address, default_limits=[f"{_rate_limit}/minute"])

app = FastAPI(
    title="n8n Development Agent API",
    description=(
        "Co-pilot agent for building n8n workflows. Searches a node capability index, "
        "validates connection graphs and creates or updates workflows through the n8n API."
    ),
    version="0.1.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

_CORS_ORIGINS: list[str] = [
    o.strip()
    for o in os.environ.get("CORS_ORIGINS", "http://localhost:5678,http://localhost:3000").split(",")
    if o.strip()
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class ChatTurn(BaseModel):
    role: str = Field(..., description="'user' or 'assistant'.")
    content: str


class ChatRequest(BaseModel):
    """Request body for POST /ai/chat and POST /ai/chat/stream."""

    message: str = Field(
        ...,
        min_length=1,
        description="What the user wants to build or ask.",
        examples=["Create a workflow that posts new Google Sheets rows to Slack"],
    )
    history: list[ChatTurn] = Field(
        default_factory=list,
        description="Prior conversation turns, oldest first.",
    )
    session_id: str | None = Field(
        None,
        description=(
            "Optional conversation id. Turns sharing an id share the validation "
            "failure counter."
        ),
    )


class ChatResponse(BaseModel):
    response: str


class SettingsUpdate(BaseModel):
    """Request body for POST /settings. Unknown keys are rejected."""

    values: dict[str, str] = Field(
        ...,
        description="Setting key → value, e.g. {'N8N_BASE_URL': 'http://localhost:5678'}.",
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get_runner(request: Request):
    runner = getattr(request.app.state, "runner", None)
    if runner is None:
        raise HTTPException(status_code=503, detail="Agent not initialized")
    return runner


def _get_client(request: Request):
    client = getattr(request.app.state, "client", None)
    if client is None:
        raise HTTPException(status_code=503, detail="n8n client not initialized")
    return client


def _get_store(request: Request):
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise HTTPException(status_code=503, detail="Settings store not initialized")
    return store


def _history(body: ChatRequest) -> list[dict[str, Any]]:
    return [turn.model_dump() for turn in body.history]


def _upstream_error(e: Exception) -> HTTPException:
    if isinstance(e, httpx.HTTPStatusError):
        return HTTPException(status_code=e.response.status_code, detail=e.response.text[:1000])
    if isinstance(e, RuntimeNotConfiguredError):
        return HTTPException(status_code=503, detail=str(e))
    return HTTPException(status_code=502, detail=str(e) or type(e).__name__)


def _sse(payload: Any) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


# ---------------------------------------------------------------------------
# Routes: system
# ---------------------------------------------------------------------------


@app.get("/health", tags=["system"], dependencies=[Depends(_verify_api_key)])
async def health(request: Request) -> dict:
    """Health check. Verifies the API and the n8n connection are both up."""
    client = _get_client(request)
    runner = _get_runner(request)
    try:
        await client.list_workflows(limit=1)
        n8n_ok = True
        detail: str | None = None
    except (httpx.HTTPError, RuntimeNotConfiguredError) as e:
        n8n_ok = False
        detail = str(e) or type(e).__name__

    return {
        "api": "ok",
        "n8n": "ok" if n8n_ok else "unreachable",
        "n8n_detail": detail,
        "engine": runner.engine.model_id,
        "node_types": len(runner.index.nodes),
    }


# ---------------------------------------------------------------------------
# Routes: chat
# ---------------------------------------------------------------------------


@app.post("/ai/chat", response_model=ChatResponse, tags=["chat"], dependencies=[Depends(_verify_api_key)])
@limiter.limit(f"{_rate_limit}/minute")
async def chat(request: Request, body: ChatRequest) -> ChatResponse:
    """Run one agent turn and return the final answer."""
    runner = _get_runner(request)
    logger.info("Chat: %r", body.message[:80])
    try:
        text = await runner.run(body.message, _history(body), session=runner.session(body.session_id))
    except Exception as e:
        logger.exception("Chat turn failed")
        raise HTTPException(status_code=500, detail=str(e))
    return ChatResponse(response=text)


@app.post("/ai/chat/stream", tags=["chat"], dependencies=[Depends(_verify_api_key)])
@limiter.limit(f"{_rate_limit}/minute")
async def chat_stream(request: Request, body: ChatRequest) -> StreamingResponse:
    """Run one agent turn and stream its text as Server-Sent Events.

    curl example:
      curl -N -X POST http://localhost:8000/ai/chat/stream \\
           -H "Content-Type: application/json" \\
           -d '{"message": "List my workflows"}'
    """
    runner = _get_runner(request)
    session = runner.session(body.session_id)
    history = _history(body)
    logger.info("Streaming chat: %r", body.message[:80])

    async def event_stream():
        yield ": connected\n\n"
        tokens: asyncio.Queue[str | None] = asyncio.Queue()

        async def produce() -> None:
            try:
                await runner.run_streaming(body.message, history, on_token=tokens.put_nowait, session=session)
            finally:
                tokens.put_nowait(None)

        task = asyncio.create_task(produce())
        while True:
            token = await tokens.get()
            if token is None:
                break
            yield _sse({"token": token})
        try:
            await task
        except Exception as e:
            logger.exception("SSE chat stream failed")
            yield _sse({"error": str(e)})
            return
        yield "data: [DONE]\n\n"

    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=_SSE_HEADERS)


@app.get("/ai/status", tags=["chat"], dependencies=[Depends(_verify_api_key)])
async def status_stream(request: Request) -> StreamingResponse:
    """Stream agent status events (thinking, tool_call, tool_result, …) as SSE."""
    runner = _get_runner(request)
    queue = runner.status.subscribe()
    logger.debug("Status subscriber connected (%d total)", runner.status.subscriber_count)

    async def event_stream():
        try:
            yield ": connected\n\n"
            while not await request.is_disconnected():
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=_STATUS_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield _sse(event.to_dict())
        finally:
            runner.status.unsubscribe(queue)
            logger.debug("Status subscriber disconnected")

    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=_SSE_HEADERS)


# ---------------------------------------------------------------------------
# Routes: settings
# ---------------------------------------------------------------------------


@app.get("/settings", tags=["settings"], dependencies=[Depends(_verify_api_key)])
async def get_settings(request: Request) -> dict:
    """Persisted settings with secrets masked, plus the active connection."""
    store = _get_store(request)
    client = _get_client(request)
    return {
        "values": mask_secrets(await store.get_all()),
        "n8n_base_url": client.settings.endpoint,
        "n8n_configured": client.settings.is_configured,
    }


@app.post("/settings", tags=["settings"], dependencies=[Depends(_verify_api_key)])
async def update_settings(request: Request, body: SettingsUpdate) -> dict:
    """Persist settings, then reconfigure the n8n client and/or reasoning engine."""
    store = _get_store(request)
    client = _get_client(request)

    unknown = sorted(set(body.values) - SETTINGS_KEYS)
    if unknown:
        raise HTTPException(status_code=400, detail=f"Unknown setting(s): {', '.join(unknown)}")

    for key, value in body.values.items():
        await store.set(key, value.strip())

    changed = set(body.values)
    if changed & CONNECTION_KEYS:
        await client.reconfigure(await Settings.resolve(store))
        logger.info("n8n client reconfigured: %s", client.settings.endpoint)

    if changed & _REASONING_KEYS:
        from n8n_dev_agent.reasoning import create_engine, settings_from_store

        runner = _get_runner(request)
        try:
            runner.replace_engine(create_engine(await settings_from_store(store)))
        except (ValueError, ImportError) as e:
            raise HTTPException(status_code=400, detail=str(e))

    return {
        "updated": sorted(changed),
        "values": mask_secrets(await store.get_all()),
    }


# ---------------------------------------------------------------------------
# Routes: n8n pass-through
# ---------------------------------------------------------------------------


@app.get("/n8n/workflows", tags=["n8n"], dependencies=[Depends(_verify_api_key)])
async def list_workflows(request: Request, active: bool | None = None, name: str | None = None) -> list[dict]:
    client = _get_client(request)
    try:
        return await client.list_workflows(active=active, name=name)
    except (httpx.HTTPError, RuntimeNotConfiguredError) as e:
        raise _upstream_error(e)


@app.get("/n8n/workflows/{workflow_id}", tags=["n8n"], dependencies=[Depends(_verify_api_key)])
async def get_workflow(request: Request, workflow_id: str) -> dict:
    client = _get_client(request)
    try:
        return await client.get_workflow(workflow_id)
    except (httpx.HTTPError, RuntimeNotConfiguredError) as e:
        raise _upstream_error(e)


@app.post("/n8n/workflows", tags=["n8n"], dependencies=[Depends(_verify_api_key)])
async def create_workflow(request: Request, workflow: dict[str, Any]) -> dict:
    client = _get_client(request)
    try:
        return await client.create_workflow(workflow)
    except (httpx.HTTPError, RuntimeNotConfiguredError) as e:
        raise _upstream_error(e)


# ---------------------------------------------------------------------------
# Entry point (for uvicorn programmatic launch)
# ---------------------------------------------------------------------------


def serve(host: str = "0.0.0.0", port: int = 8000, reload: bool = False) -> None:
    """Launch the FastAPI server via uvicorn."""
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run(
        "n8n_dev_agent.api:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info",
    )


if __name__ == "__main__":
    serve()
