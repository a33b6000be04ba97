"""
FastAPI application: the chatrelay entry point.

    POST   /api/chat            create a turn, stream it back as SSE
    GET    /api/chat?chatId=    resume the latest stream (Last-Event-ID aware)
    DELETE /api/chat?id=        delete a conversation
    GET    /api/health

Identity comes from headers set by the gateway in front of this service.
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Literal
from urllib.parse import unquote

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from pydantic import BaseModel, Field, ValidationError

from chatrelay import __version__
from chatrelay.backends import OpenAICompatibleBackend
from chatrelay.channels import ResumableChannelManager
from chatrelay.config import get_config
from chatrelay.errors import ChatError, MalformedRequest, Unauthenticated
from chatrelay.invoker import ModelInvoker
from chatrelay.multiplexer import StreamMultiplexer
from chatrelay.orchestrator import ChatOrchestrator, TurnRequest, User
from chatrelay.persistence import PersistenceCoordinator
from chatrelay.prompts import RequestHints
from chatrelay.retrieval import ContextRetriever
from chatrelay.storage.backends import make_backend
from chatrelay.storage.models import Message
from chatrelay.storage.sqlite_store import SQLiteStore
from chatrelay.storage.vector_store import ProductIndex
from chatrelay.tools.registry import ToolExecutor, ToolRegistry

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Globals, initialized at startup
# ---------------------------------------------------------------------------
sqlite_store: SQLiteStore | None = None
product_index: ProductIndex | None = None
channels: ResumableChannelManager | None = None
orchestrator: ChatOrchestrator | None = None
model_backend: OpenAICompatibleBackend | None = None

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _setup_logging(cfg: dict):
    log_cfg = cfg.get("logging", {})
    level = getattr(logging, log_cfg.get("level", "INFO").upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    global sqlite_store, product_index, channels, orchestrator, model_backend

    cfg = get_config()
    _setup_logging(cfg)

    # Storage
    storage_cfg = cfg["storage"]
    sqlite_store = SQLiteStore(storage_cfg["sqlite_path"])

    # Model backend
    backend_cfg = cfg["backend"]
    backend = model_backend = OpenAICompatibleBackend(
        name="primary",
        url=backend_cfg.get("url", ""),
        timeout=backend_cfg.get("timeout", 120),
        api_key=backend_cfg.get("api_key", ""),
    )

    # Product index (retrieval + search_products tool)
    retrieval_cfg = cfg.get("retrieval", {})
    product_index = None
    if retrieval_cfg.get("enabled", True):
        embed_cfg = cfg["embedding"]
        product_index = ProductIndex(
            embedding_model=embed_cfg["model"],
            embedding_url=embed_cfg.get("backend_url") or backend_cfg.get("url", ""),
            backend=make_backend(
                storage_cfg.get("vector_backend", "chromadb"),
                path=storage_cfg.get("chroma_path", "./data/chroma"),
            ),
        )

    # Tools
    models = cfg.get("models", {})
    tool_registry = ToolRegistry.from_config(
        cfg.get("tools", {}),
        product_index=product_index,
        backend=backend,
        store=sqlite_store,
        artifact_model=models.get("artifact-model", ""),
    )

    gen_cfg = cfg.get("generation", {})
    invoker = ModelInvoker(
        backend,
        ToolExecutor(tool_registry),
        models=models,
        reasoning_variants=cfg.get("reasoning_variants", []),
        max_steps=gen_cfg.get("max_steps", 5),
    )
    multiplexer = StreamMultiplexer(
        chunk_delay_ms=gen_cfg.get("chunk_delay_ms", 10),
        max_duration_seconds=gen_cfg.get("max_duration_seconds", 60),
    )

    # Resumable streams (degrade to direct streaming without Redis)
    streams_cfg = cfg.get("streams", {})
    channels = await ResumableChannelManager.connect(
        streams_cfg.get("redis_url"),
        key_prefix=streams_cfg.get("key_prefix", "chatrelay:stream"),
        ttl_seconds=streams_cfg.get("ttl_seconds", 86400),
        poll_interval=streams_cfg.get("poll_interval", 0.05),
        lease_seconds=streams_cfg.get("lease_seconds", gen_cfg.get("max_duration_seconds", 60) + 30),
    )

    orchestrator = ChatOrchestrator(
        store=sqlite_store,
        persistence=PersistenceCoordinator(sqlite_store),
        retriever=ContextRetriever(product_index, top_k=retrieval_cfg.get("top_k", 5)),
        invoker=invoker,
        multiplexer=multiplexer,
        channels=channels,
        backend=backend,
        tool_registry=tool_registry,
    )

    logger.info(
        "chatrelay started: listening on %s:%s, backend %s",
        cfg.get("server", {}).get("host", "0.0.0.0"),
        cfg.get("server", {}).get("port", 8000),
        backend_cfg.get("url", ""),
    )
    logger.info("Storage: SQLite=%s, retrieval=%s", storage_cfg["sqlite_path"], "on" if product_index else "off")
    logger.info("Tools: %s", tool_registry.list_tools())
    logger.info("Resumable streams: %s", "enabled" if channels.available else "disabled")

    yield

    logger.info("chatrelay shutting down")
    await channels.close()
    orchestrator.wire.close()


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(
    title="chatrelay",
    description="Streaming chat orchestrator with resumable streams.",
    version=__version__,
    lifespan=lifespan,
)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    return PlainTextResponse(exc.message, status_code=exc.status_code)


# ---------------------------------------------------------------------------
# Request body
# ---------------------------------------------------------------------------

class TextPart(BaseModel):
    type: Literal["text"]
    text: str = Field(min_length=1, max_length=2000)


class Attachment(BaseModel):
    url: str
    name: str = Field(min_length=1, max_length=2000)
    contentType: Literal["image/png", "image/jpg", "image/jpeg"]


class UserMessage(BaseModel):
    id: str = Field(min_length=1)
    createdAt: datetime | None = None
    role: Literal["user"]
    content: str = Field(min_length=1, max_length=2000)
    parts: list[TextPart]
    experimental_attachments: list[Attachment] = Field(default_factory=list)


class PostRequestBody(BaseModel):
    id: str = Field(min_length=1)
    message: UserMessage
    selectedChatModel: Literal["chat-model", "chat-model-reasoning"]
    selectedVisibilityType: Literal["public", "private"]


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------

def _current_user(request: Request) -> User:
    auth_cfg = get_config().get("auth", {})
    user_id = request.headers.get(auth_cfg.get("user_id_header", "X-User-Id"), "").strip()
    if not user_id:
        raise Unauthenticated()
    user_type = request.headers.get(auth_cfg.get("user_type_header", "X-User-Type"), "regular").strip().lower()
    if user_type not in ("guest", "regular"):
        user_type = "regular"
    return User(id=user_id, type=user_type)


def _request_hints(request: Request) -> RequestHints:
    def header(name):
        value = request.headers.get(name)
        return unquote(value) if value else None

    return RequestHints(
        latitude=header("x-vercel-ip-latitude"),
        longitude=header("x-vercel-ip-longitude"),
        city=header("x-vercel-ip-city"),
        country=header("x-vercel-ip-country"),
    )


def _to_message(body: PostRequestBody) -> Message:
    msg = body.message
    parts = [p.model_dump() for p in msg.parts] or [{"type": "text", "text": msg.content}]
    return Message(
        id=msg.id,
        conversation_id=body.id,
        role="user",
        parts=parts,
        attachments=[a.model_dump() for a in msg.experimental_attachments],
    )


async def _sse(events):
    async for event in events:
        data = json.dumps(event.data, ensure_ascii=False)
        yield f"id: {event.id}\ndata: {data}\n\n" if event.id else f"data: {data}\n\n"
    yield "data: [DONE]\n\n"


# ---------------------------------------------------------------------------
# Chat endpoints
# ---------------------------------------------------------------------------

@app.post("/api/chat")
async def create_turn(request: Request):
    try:
        body = PostRequestBody.model_validate(await request.json())
    except (ValidationError, ValueError) as e:
        logger.info("Invalid request body: %s", e)
        raise MalformedRequest() from e

    user = _current_user(request)
    result = await orchestrator.start_turn(
        TurnRequest(
            conversation_id=body.id,
            message=_to_message(body),
            variant=body.selectedChatModel,
            visibility=body.selectedVisibilityType,
            hints=_request_hints(request),
        ),
        user,
    )
    headers = {**SSE_HEADERS, "X-Stream-Id": result.stream_id}
    return StreamingResponse(_sse(result.events), media_type="text/event-stream", headers=headers)


@app.get("/api/chat")
async def resume_stream(request: Request, chatId: str | None = None):
    if not chatId:
        return PlainTextResponse("id is required", status_code=400)

    user = _current_user(request)
    result = await orchestrator.resume(chatId, user, after=request.headers.get("last-event-id"))
    if result.events is None:
        return JSONResponse({"message": result.message})
    headers = {**SSE_HEADERS, "X-Stream-Id": result.stream_id}
    return StreamingResponse(_sse(result.events), media_type="text/event-stream", headers=headers)


@app.delete("/api/chat")
async def delete_chat(request: Request, id: str | None = None):
    if not id:
        return PlainTextResponse("Not Found", status_code=404)

    user = _current_user(request)
    deleted = orchestrator.delete_conversation(id, user)
    return JSONResponse(deleted.to_dict())


@app.get("/api/health")
async def health():
    backend_ok = await model_backend.health_check() if model_backend else False
    return JSONResponse({
        "status": "ok" if backend_ok else "degraded",
        "version": __version__,
        "backend": backend_ok,
        "resumable_streams": channels.available if channels else False,
        "storage": sqlite_store.get_stats() if sqlite_store else {},
    })
