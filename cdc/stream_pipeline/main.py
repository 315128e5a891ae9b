"""
CDC pipeline - Main entry point.

This module starts the components selected by COMPONENTS:
- producer: change feed -> stream log
- cache, graph, comments: projectors (stream log -> stores)
- notify: dispatcher (stream log -> websocket subscribers)
- api: HTTP read-back, operational signals and the notification websocket

Usage:
    cdc-pipeline
    python -m cdc.stream_pipeline.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - Components start only after the stream log is connected
    - Graceful shutdown lets in-flight projector batches finish and ack
    - All components share the same frozen schema catalog

How to change safely:
    - Add new components to config.COMPONENTS with their own flag
    - Test shutdown sequence thoroughly
    - Run one projector replica per CONSUMER_NAME
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path

import json_log_formatter
import uvicorn

from .api import ApiContext, create_app
from .config import CacheBackend, PipelineConfig
from .errors import AppendError
from .events import stream_key_for
from .notify import NotificationDispatcher, SubscriptionRegistry
from .produce import ChangeProducer, jsonl_feed
from .project import CacheProjector, CommentProjector, GraphProjector, Projector
from .schema import SchemaRegistry, load_catalog
from .store import (
    InMemoryKeyValueStore,
    KeyValueStore,
    RedisKeyValueStore,
    SqliteCommentStore,
    SqliteGraphStore,
)
from .stream import StreamLog, create_stream_log

logger = logging.getLogger(__name__)


def setup_logging(config: PipelineConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Pipeline configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiokafka").setLevel(logging.WARNING)
    logging.getLogger("redis").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


class PipelineServer:
    """CDC pipeline orchestrator.

    Manages the lifecycle of all pipeline components:
    - Stream log connection
    - Projection stores
    - Background loops (producer, projectors, dispatcher)
    - HTTP / websocket server

    Example:
        >>> server = PipelineServer()
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(self, config: PipelineConfig | None = None) -> None:
        """Initialize the server.

        Args:
            config: Optional pipeline configuration (loaded from env if not provided)
        """
        self.config = config or PipelineConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized in start())
        self.registry: SchemaRegistry | None = None
        self.stream_log: StreamLog | None = None
        self.producer: ChangeProducer | None = None
        self.cache_store: KeyValueStore | None = None
        self.graph_store: SqliteGraphStore | None = None
        self.comment_store: SqliteCommentStore | None = None
        self.projectors: list[Projector] = []
        self.subscriptions: SubscriptionRegistry | None = None
        self.dispatcher: NotificationDispatcher | None = None
        self.http_server: uvicorn.Server | None = None

        # Background tasks
        self._tasks: list[asyncio.Task] = []

    def entity_stream_keys(self, entity_types: list[str] | tuple[str, ...] | None = None) -> list[str]:
        """Stream keys of the given entity types (all catalog types if None)."""
        types = self.registry.entity_types() if entity_types is None else entity_types
        return [stream_key_for(t) for t in types]

    async def build(self) -> None:
        """Create and connect every enabled component without starting loops."""
        config = self.config

        data_dir = Path(config.storage.data_dir)
        data_dir.mkdir(parents=True, exist_ok=True)

        self.registry = load_catalog(config.catalog_path)
        logger.info(f"Schema catalog frozen, fingerprint: {self.registry.fingerprint}")

        self.stream_log = create_stream_log(config)
        await self.stream_log.connect()
        logger.info("Stream log connected")

        loop_kwargs = config.projector.loop_kwargs()
        consumer = config.projector.consumer_name

        if config.enabled("producer"):
            self.producer = ChangeProducer(
                self.stream_log,
                self.registry,
                max_retries=config.producer.max_retries,
                base_delay_ms=config.producer.base_delay_ms,
                max_delay_ms=config.producer.max_delay_ms,
                ordering_window=config.producer.ordering_window,
            )

        if config.enabled("cache"):
            if config.storage.cache_backend == CacheBackend.REDIS:
                redis_store = RedisKeyValueStore(config.redis)
                await redis_store.connect()
                self.cache_store = redis_store
            else:
                self.cache_store = InMemoryKeyValueStore()
            self.projectors.append(
                CacheProjector(
                    self.stream_log,
                    self.cache_store,
                    self.entity_stream_keys(),
                    group_id=config.projector.cache_group,
                    consumer=consumer,
                    **loop_kwargs,
                )
            )

        if config.enabled("graph"):
            self.graph_store = SqliteGraphStore(
                data_dir=str(data_dir),
                wal_mode=config.storage.wal_mode,
                busy_timeout_ms=config.storage.busy_timeout_ms,
            )
            await self.graph_store.initialize()
            self.projectors.append(
                GraphProjector(
                    self.stream_log,
                    self.graph_store,
                    self.registry,
                    self.entity_stream_keys(),
                    group_id=config.projector.graph_group,
                    consumer=consumer,
                    **loop_kwargs,
                )
            )

        if config.enabled("comments"):
            self.comment_store = SqliteCommentStore(
                data_dir=str(data_dir),
                wal_mode=config.storage.wal_mode,
                busy_timeout_ms=config.storage.busy_timeout_ms,
            )
            self.projectors.append(
                CommentProjector(
                    self.stream_log,
                    self.comment_store,
                    self.registry,
                    self.entity_stream_keys(config.projector.comment_entity_types),
                    group_id=config.projector.comments_group,
                    consumer=consumer,
                    **loop_kwargs,
                )
            )

        if config.enabled("api"):
            self.subscriptions = SubscriptionRegistry(buffer_size=config.notification.buffer_size)

        if config.enabled("notify"):
            topics = set(config.notification.topics)
            notify_types = [
                t for t in self.registry.entity_types()
                if not topics or self.registry.topic_for(t) in topics
            ]
            self.dispatcher = NotificationDispatcher(
                self.stream_log,
                self.registry,
                self.subscriptions,
                self.entity_stream_keys(notify_types),
                block_ms=config.projector.block_ms,
            )

    async def start(self) -> None:
        """Start the pipeline and wait for a shutdown request."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting CDC pipeline")
        self.config.log_config()

        try:
            await self.build()

            for projector in self.projectors:
                self._spawn(projector.start(), f"projector-{projector.name}")

            if self.dispatcher is not None:
                self._spawn(self.dispatcher.start(), "dispatcher")

            if self.producer is not None and self.config.producer.feed_path:
                self._spawn(self._run_producer(), "producer")

            if self.config.enabled("api"):
                app = create_app(self.api_context(), cors_origins=self.config.notification.cors_origins)
                self.http_server = uvicorn.Server(
                    uvicorn.Config(
                        app,
                        host=self.config.notification.host,
                        port=self.config.notification.port,
                        log_config=None,
                    )
                )
                http_task = self._spawn(self.http_server.serve(), "http")
                # uvicorn handles SIGTERM itself; follow it down
                http_task.add_done_callback(lambda _: self.request_shutdown())

            self._running = True
            logger.info("CDC pipeline started", extra={"components": list(self.config.components)})

            # Wait for shutdown signal
            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Pipeline startup failed: {e}", exc_info=True)
            await self.stop()
            raise

    def api_context(self) -> ApiContext:
        return ApiContext(
            registry=self.registry,
            stream_log=self.stream_log,
            producer=self.producer,
            projectors=list(self.projectors),
            cache_store=self.cache_store,
            graph_store=self.graph_store,
            comment_store=self.comment_store,
            subscriptions=self.subscriptions,
            dispatcher=self.dispatcher,
        )

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        task.add_done_callback(self._on_task_done)
        self._tasks.append(task)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                f"Component {task.get_name()} failed: {error}",
                exc_info=(type(error), error, error.__traceback__),
            )

    async def _run_producer(self) -> None:
        feed = jsonl_feed(self.config.producer.feed_path, follow=self.config.producer.follow)
        try:
            await self.producer.run(feed)
        except AppendError as e:
            # Fatal to the producer only; /health reports degraded
            logger.error(
                f"Producer stopped: {e.message}",
                extra={"code": e.code, **e.details},
            )

    async def stop(self) -> None:
        """Stop the pipeline gracefully."""
        if not self._running and self.stream_log is None:
            return

        logger.info("Stopping CDC pipeline")

        # Let loops finish their in-flight batch
        for projector in self.projectors:
            await projector.stop()
        if self.dispatcher:
            await self.dispatcher.stop()
        if self.producer:
            await self.producer.stop()
        if self.http_server:
            self.http_server.should_exit = True

        if self._tasks:
            _, pending = await asyncio.wait(
                self._tasks, timeout=self.config.projector.block_ms / 1000.0 + 5
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        if self.subscriptions:
            await self.subscriptions.close()
        if self.cache_store:
            await self.cache_store.close()
        if self.graph_store:
            await self.graph_store.close()
        if self.comment_store:
            await self.comment_store.close()
        if self.stream_log:
            await self.stream_log.close()
            self.stream_log = None

        self._running = False
        logger.info("CDC pipeline stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    # Load configuration
    try:
        config = PipelineConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    # Setup logging
    setup_logging(config)

    # Setup signal handlers
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    # Create server
    server = PipelineServer(config)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    # Run server
    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()
