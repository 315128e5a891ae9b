"""
HTTP and websocket surface of the pipeline.

Provides:
- The live notification websocket (/v1/notifications)
- Operational signals: health, projector lag and last errors, producer state
- Read-back of the projections for reconciliation (cache, graph, comments)
- Operator control to resume a halted producer stream

Websocket protocol:
    inbound  {"action": "subscribe" | "unsubscribe", "topics": [...]}
    outbound {"action": "subscribed" | "unsubscribed", "topics": [...]}
             after each inbound message, then
             {"topic", "operation", "key", "entity_type", "payload"}
             per event on a subscribed topic

Invariants:
    - Read endpoints never write to a store
    - Components not running in this process answer 503, as do
      projection stores failing a read
    - A websocket's subscription ends with its connection

How to change safely:
    - Keep the notification shape stable, front ends depend on it
    - Version the API if breaking changes are needed
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Literal

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from .._version import __version__
from ..errors import ConnectionError, ProjectionWriteError
from ..notify import NotificationDispatcher, SubscriptionRegistry
from ..produce import ChangeProducer
from ..project import Projector
from ..schema import SchemaRegistry
from ..store import CommentStore, GraphStore, KeyValueStore, encode_version
from ..stream import StreamError, StreamLog

logger = logging.getLogger(__name__)

router = APIRouter(tags=["CDC pipeline"])


@dataclass
class ApiContext:
    """Components reachable from request handlers.

    Components not running in this process are None (or empty).
    """

    registry: SchemaRegistry
    stream_log: StreamLog | None = None
    producer: ChangeProducer | None = None
    projectors: list[Projector] = field(default_factory=list)
    cache_store: KeyValueStore | None = None
    graph_store: GraphStore | None = None
    comment_store: CommentStore | None = None
    subscriptions: SubscriptionRegistry | None = None
    dispatcher: NotificationDispatcher | None = None


# --- Request/Response Models ---


class SubscriptionMessage(BaseModel):
    """Inbound websocket message."""

    action: Literal["subscribe", "unsubscribe"]
    topics: list[str] = Field(..., description="Notification topics, e.g. 'comments'")


class HealthResponse(BaseModel):
    status: str
    service: str
    version: str
    components: dict[str, Any]


class CacheEntryResponse(BaseModel):
    """Cache entry with the version of the event that wrote it."""

    key: str
    value: dict[str, Any]
    version: str | None = None


class EdgeResponse(BaseModel):
    from_key: str = Field(..., alias="from")
    to_key: str = Field(..., alias="to")
    label: str

    model_config = {"populate_by_name": True}


class GraphNodeResponse(BaseModel):
    """Node with its incoming and outgoing edges."""

    key: str
    entity_type: str
    properties: dict[str, Any]
    edges_out: list[EdgeResponse]
    edges_in: list[EdgeResponse]
    version: str | None = None


class CommentResponse(BaseModel):
    key: str
    targets: list[str]
    payload: dict[str, Any]
    created_at: int
    updated_at: int


class CommentListResponse(BaseModel):
    items: list[CommentResponse]
    count: int


class ResumeResponse(BaseModel):
    stream_key: str
    republished: int
    halted: bool


# --- Dependencies ---


def get_context(request: Request) -> ApiContext:
    """Get the component context from app state."""
    return request.app.state.context


def _require(component: Any, name: str) -> Any:
    if component is None:
        raise HTTPException(status_code=503, detail=f"{name} is not running in this process")
    return component


# --- Operational Routes ---


@router.get("/health", response_model=HealthResponse)
async def health(ctx: ApiContext = Depends(get_context)):
    """
    Liveness and degradation summary.

    The pipeline is degraded when the producer gave up on an append, a
    stream is halted, or a projector has a failing stream loop or entries
    stuck pending. Details show up in /v1/projectors.
    """
    components: dict[str, Any] = {
        "stream_log": ctx.stream_log.is_connected if ctx.stream_log else None,
        "projectors": [p.name for p in ctx.projectors],
        "dispatcher": ctx.dispatcher.running if ctx.dispatcher else None,
        "connections": ctx.subscriptions.connection_count if ctx.subscriptions else None,
    }
    status = "healthy"
    if ctx.producer is not None:
        components["producer"] = {
            "healthy": ctx.producer.healthy,
            "halted_streams": sorted(ctx.producer.halted_streams),
        }
        if not ctx.producer.healthy or ctx.producer.halted_streams:
            status = "degraded"
    unhealthy = [p.name for p in ctx.projectors if not p.healthy]
    if unhealthy:
        components["unhealthy_projectors"] = unhealthy
        status = "degraded"
    return HealthResponse(
        status=status,
        service="cdc-stream-pipeline",
        version=__version__,
        components=components,
    )


@router.get("/v1/projectors")
async def list_projectors(ctx: ApiContext = Depends(get_context)) -> list[dict[str, Any]]:
    """
    Per projector: counters, last error, and per stream the pending count,
    lag, last delivered id and last entry id of its consumer group.
    """
    result = []
    for projector in ctx.projectors:
        try:
            streams = await projector.lag()
        except StreamError as e:
            logger.error(f"Lag query failed for {projector.name}: {e}")
            raise HTTPException(status_code=503, detail=f"Stream log unavailable: {e}")
        result.append({**projector.stats, "streams": streams})
    return result


@router.get("/v1/producer")
async def producer_stats(ctx: ApiContext = Depends(get_context)) -> dict[str, Any]:
    producer: ChangeProducer = _require(ctx.producer, "producer")
    return producer.stats


@router.post("/v1/producer/streams/{stream_key}/resume", response_model=ResumeResponse)
async def resume_stream(
    stream_key: str,
    drop_failed: bool = Query(False, description="Discard the change that halted the stream"),
    ctx: ApiContext = Depends(get_context),
):
    """
    Resume a stream halted by a decode failure.

    Parked changes are re-published in order. If the failing change still
    cannot be decoded the stream stays halted; pass drop_failed=true once
    the operator decided to skip it.
    """
    producer: ChangeProducer = _require(ctx.producer, "producer")
    if stream_key not in producer.halted_streams:
        raise HTTPException(status_code=404, detail=f"Stream {stream_key} is not halted")

    republished = await producer.resume_stream(stream_key, drop_failed=drop_failed)
    return ResumeResponse(
        stream_key=stream_key,
        republished=republished,
        halted=stream_key in producer.halted_streams,
    )


@router.get("/v1/schema")
async def get_schema(ctx: ApiContext = Depends(get_context)) -> dict[str, Any]:
    """Source catalog: tables, entity types, edges and topics."""
    return {**ctx.registry.to_dict(), "fingerprint": ctx.registry.fingerprint}


# --- Projection Read-back Routes ---


@router.get("/v1/cache/{key}", response_model=CacheEntryResponse)
async def get_cache_entry(key: str, ctx: ApiContext = Depends(get_context)):
    """Get a cached entity by entity key, e.g. movie:1."""
    store: KeyValueStore = _require(ctx.cache_store, "cache projector")
    value = await store.get(key)
    if value is None:
        raise HTTPException(status_code=404, detail=f"Key {key} not found")
    version = await store.get_version(key)
    return CacheEntryResponse(
        key=key,
        value=value,
        version=encode_version(version) if version else None,
    )


@router.get("/v1/graph/nodes/{key}", response_model=GraphNodeResponse)
async def get_graph_node(key: str, ctx: ApiContext = Depends(get_context)):
    """Get a graph node with its incoming and outgoing edges."""
    store: GraphStore = _require(ctx.graph_store, "graph projector")
    node = await store.get_node(key)
    if node is None:
        raise HTTPException(status_code=404, detail=f"Node {key} not found")
    version = await store.get_version(key)
    return GraphNodeResponse(
        key=node.key,
        entity_type=node.entity_type,
        properties=node.properties,
        edges_out=[EdgeResponse(**e.to_dict()) for e in await store.edges_from(key)],
        edges_in=[EdgeResponse(**e.to_dict()) for e in await store.edges_to(key)],
        version=encode_version(version) if version else None,
    )


@router.get("/v1/comments", response_model=CommentListResponse)
async def list_comments(
    target: str = Query(..., description="Referenced entity key, e.g. movie:1"),
    limit: int = Query(100, ge=1, le=500),
    ctx: ApiContext = Depends(get_context),
):
    """List comments referencing an entity, newest first."""
    store: CommentStore = _require(ctx.comment_store, "comment projector")
    comments = await store.list_by_target(target, limit=limit)
    return CommentListResponse(
        items=[CommentResponse(**c.to_dict()) for c in comments],
        count=len(comments),
    )


@router.get("/v1/comments/search", response_model=CommentListResponse)
async def search_comments(
    q: str = Query(..., min_length=1, description="Full-text query"),
    limit: int = Query(20, ge=1, le=100),
    ctx: ApiContext = Depends(get_context),
):
    """Full-text search over comment text."""
    store = _require(ctx.comment_store, "comment projector")
    search = getattr(store, "search", None)
    if search is None:
        raise HTTPException(status_code=501, detail="Comment store does not support search")
    comments = await search(q, limit=limit)
    return CommentListResponse(
        items=[CommentResponse(**c.to_dict()) for c in comments],
        count=len(comments),
    )


@router.get("/v1/comments/{key}", response_model=CommentResponse)
async def get_comment(key: str, ctx: ApiContext = Depends(get_context)):
    store: CommentStore = _require(ctx.comment_store, "comment projector")
    comment = await store.get(key)
    if comment is None:
        raise HTTPException(status_code=404, detail=f"Comment {key} not found")
    return CommentResponse(**comment.to_dict())


# --- Notifications ---


@router.get("/v1/notifications/connections")
async def list_connections(ctx: ApiContext = Depends(get_context)) -> dict[str, Any]:
    subscriptions: SubscriptionRegistry = _require(ctx.subscriptions, "notification fan-out")
    return {**subscriptions.stats, "items": subscriptions.describe()}


@router.websocket("/v1/notifications")
async def notifications(websocket: WebSocket):
    """
    Live notifications.

    Topics may also be given up front as ?topics=comments,movie.
    Nothing is replayed: only events dispatched while connected and
    subscribed are delivered.
    """
    ctx: ApiContext = websocket.app.state.context
    if ctx.subscriptions is None:
        await websocket.close(code=1013)
        return

    await websocket.accept()
    subscriptions = ctx.subscriptions
    send_lock = asyncio.Lock()

    async def send(message: dict[str, Any]) -> None:
        # Acks and the notification sender write to one socket, one frame at a time
        async with send_lock:
            await websocket.send_json(message)

    connection_id = subscriptions.connect(send)
    logger.info("Notification client connected", extra={"connection_id": connection_id})

    try:
        initial = [t.strip() for t in websocket.query_params.get("topics", "").split(",") if t.strip()]
        if initial:
            subscriptions.subscribe(connection_id, initial)

        while True:
            raw = await websocket.receive_text()
            try:
                message = SubscriptionMessage.model_validate_json(raw)
            except ValidationError as e:
                logger.warning(
                    "Ignoring invalid notification message",
                    extra={"connection_id": connection_id, "error": str(e)},
                )
                continue

            if message.action == "subscribe":
                topics = subscriptions.subscribe(connection_id, message.topics)
            else:
                topics = subscriptions.unsubscribe(connection_id, message.topics)
            await send({"action": f"{message.action}d", "topics": sorted(topics)})
    except WebSocketDisconnect:
        pass
    except ConnectionError as e:
        # The sender task already tore the connection down
        logger.info(f"Notification connection closed: {e.message}")
    finally:
        await subscriptions.disconnect(connection_id)
        logger.info("Notification client disconnected", extra={"connection_id": connection_id})


def create_app(context: ApiContext, cors_origins: tuple[str, ...] = ("*",)) -> FastAPI:
    """Create the FastAPI application.

    Args:
        context: Components the handlers read from
        cors_origins: Allowed CORS origins

    Returns:
        FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        yield
        if context.subscriptions is not None:
            await context.subscriptions.close()

    app = FastAPI(
        title="CDC stream pipeline",
        description="Projection read-back, operational signals and live notifications.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.context = context

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(cors_origins),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.exception_handler(ProjectionWriteError)
    async def store_unavailable(request: Request, exc: ProjectionWriteError) -> JSONResponse:
        logger.error(f"Projection store unavailable: {exc.message}", extra={"path": request.url.path})
        return JSONResponse(status_code=503, content={"detail": exc.message, "code": exc.code})

    app.include_router(router)
    return app
