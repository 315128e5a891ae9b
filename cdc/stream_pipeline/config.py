"""
Configuration management for the CDC stream pipeline.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set explicit values for critical settings
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
    - Keep env var names stable, deployments depend on them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from urllib.parse import urlsplit, urlunsplit

logger = logging.getLogger(__name__)

COMPONENTS = ("producer", "cache", "graph", "comments", "notify", "api")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_list(name: str, default: str = "") -> tuple[str, ...]:
    raw = os.getenv(name, default)
    return tuple(item.strip() for item in raw.split(",") if item.strip())


class StreamBackend(Enum):
    """Supported stream log backends."""

    MEMORY = "memory"
    REDIS = "redis"
    KAFKA = "kafka"


class CacheBackend(Enum):
    """Supported key-value cache backends."""

    MEMORY = "memory"
    REDIS = "redis"


@dataclass(frozen=True)
class RedisConfig:
    """Redis configuration, shared by the stream log and the cache.

    Attributes:
        url: Redis connection URL (may carry a password)
        max_connections: Connection pool size
        socket_timeout_s: Socket timeout; must exceed the longest blocking read
        stream_maxlen: Approximate MAXLEN applied on XADD (0 = unbounded)
        pending_scan_count: Page size for XPENDING / XAUTOCLAIM scans
        cache_prefix: Key prefix of cache entries
    """

    url: str = "redis://localhost:6379/0"
    max_connections: int = 32
    socket_timeout_s: float = 10.0
    stream_maxlen: int = 0
    pending_scan_count: int = 100
    cache_prefix: str = "cache:"

    @classmethod
    def from_env(cls) -> RedisConfig:
        """Load configuration from environment variables."""
        return cls(
            url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
            max_connections=int(os.getenv("REDIS_MAX_CONNECTIONS", "32")),
            socket_timeout_s=float(os.getenv("REDIS_SOCKET_TIMEOUT_S", "10")),
            stream_maxlen=int(os.getenv("REDIS_STREAM_MAXLEN", "0")),
            pending_scan_count=int(os.getenv("REDIS_PENDING_SCAN_COUNT", "100")),
            cache_prefix=os.getenv("REDIS_CACHE_PREFIX", "cache:"),
        )

    @property
    def redacted_url(self) -> str:
        """URL with any password replaced, safe to log."""
        parts = urlsplit(self.url)
        if parts.password is None:
            return self.url
        netloc = f"{parts.username or ''}:***@{parts.hostname}"
        if parts.port:
            netloc += f":{parts.port}"
        return urlunsplit(parts._replace(netloc=netloc))


@dataclass(frozen=True)
class KafkaConfig:
    """Kafka/Redpanda stream backend configuration.

    Attributes:
        brokers: Comma-separated list of broker addresses
        topic_prefix: Prefix of the per-stream-key topics
        sasl_mechanism: SASL authentication mechanism (PLAIN, SCRAM-SHA-256, etc.)
        sasl_username: SASL username (if authentication enabled)
        sasl_password: SASL password (if authentication enabled)
        security_protocol: Security protocol (PLAINTEXT, SSL, SASL_PLAINTEXT, SASL_SSL)
        acks: Producer acknowledgment level ('all' for strongest durability)
        enable_idempotence: Enable idempotent producer
        session_timeout_ms: Consumer group session timeout
    """

    brokers: str = "localhost:9092"
    topic_prefix: str = "cdc."
    sasl_mechanism: str | None = None
    sasl_username: str | None = None
    sasl_password: str | None = None
    security_protocol: str = "PLAINTEXT"
    # Producer durability settings
    acks: str = "all"
    enable_idempotence: bool = True
    # Consumer settings
    session_timeout_ms: int = 30000

    @classmethod
    def from_env(cls) -> KafkaConfig:
        """Load configuration from environment variables."""
        return cls(
            brokers=os.getenv("KAFKA_BROKERS", "localhost:9092"),
            topic_prefix=os.getenv("KAFKA_TOPIC_PREFIX", "cdc."),
            sasl_mechanism=os.getenv("KAFKA_SASL_MECHANISM"),
            sasl_username=os.getenv("KAFKA_SASL_USERNAME"),
            sasl_password=os.getenv("KAFKA_SASL_PASSWORD"),
            security_protocol=os.getenv("KAFKA_SECURITY_PROTOCOL", "PLAINTEXT"),
            acks=os.getenv("KAFKA_ACKS", "all"),
            enable_idempotence=_env_bool("KAFKA_ENABLE_IDEMPOTENCE", "true"),
            session_timeout_ms=int(os.getenv("KAFKA_SESSION_TIMEOUT_MS", "30000")),
        )


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        data_dir: Directory for the graph and comment SQLite databases
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        cache_backend: Where the Cache Projector writes
    """

    data_dir: str = "/var/lib/cdc-pipeline"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    cache_backend: CacheBackend = CacheBackend.MEMORY

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        backend_str = os.getenv("CACHE_BACKEND", "memory").lower()
        try:
            cache_backend = CacheBackend(backend_str)
        except ValueError:
            raise ValueError(f"Invalid CACHE_BACKEND '{backend_str}'. Must be one of: memory, redis")

        return cls(
            data_dir=os.getenv("DATA_DIR", "/var/lib/cdc-pipeline"),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            cache_backend=cache_backend,
        )


@dataclass(frozen=True)
class ProducerConfig:
    """Change producer configuration.

    Attributes:
        feed_path: JSON-lines change feed to publish (None = no feed)
        follow: Keep tailing the feed file after reaching its end
        max_retries: Append attempts before the producer gives up
        base_delay_ms: First retry delay, doubled per attempt
        max_delay_ms: Retry delay cap
        ordering_window: Number of entity keys tracked for ordering checks
    """

    feed_path: str | None = None
    follow: bool = False
    max_retries: int = 5
    base_delay_ms: int = 100
    max_delay_ms: int = 5000
    ordering_window: int = 10000

    @classmethod
    def from_env(cls) -> ProducerConfig:
        """Load configuration from environment variables."""
        return cls(
            feed_path=os.getenv("PRODUCER_FEED_PATH"),
            follow=_env_bool("PRODUCER_FOLLOW", "false"),
            max_retries=int(os.getenv("PRODUCER_MAX_RETRIES", "5")),
            base_delay_ms=int(os.getenv("PRODUCER_BASE_DELAY_MS", "100")),
            max_delay_ms=int(os.getenv("PRODUCER_MAX_DELAY_MS", "5000")),
            ordering_window=int(os.getenv("PRODUCER_ORDERING_WINDOW", "10000")),
        )


@dataclass(frozen=True)
class ProjectorConfig:
    """Projector loop configuration, shared by all projectors.

    Attributes:
        cache_group: Consumer group of the Cache Projector
        graph_group: Consumer group of the Graph Projector
        comments_group: Consumer group of the Comment Projector
        consumer_name: Member name within each group (unique per replica)
        comment_entity_types: Entity types the Comment Projector consumes
        batch_size: Maximum entries read per poll
        block_ms: Blocking read timeout
        max_retries: Store write attempts before an entry is left pending
        base_delay_ms: First retry delay, doubled per attempt
        max_delay_ms: Retry delay cap
        shards: Concurrent shards per stream key (by entity key hash)
        claim_idle_ms: Idle time after which another member's entry is claimed
        claim_interval_ms: Interval between claim scans
    """

    cache_group: str = "cache-projector"
    graph_group: str = "graph-projector"
    comments_group: str = "comment-projector"
    consumer_name: str = "projector-1"
    comment_entity_types: tuple[str, ...] = ("comment",)
    batch_size: int = 100
    block_ms: int = 1000
    max_retries: int = 5
    base_delay_ms: int = 50
    max_delay_ms: int = 2000
    shards: int = 1
    claim_idle_ms: int = 30000
    claim_interval_ms: int = 5000

    @classmethod
    def from_env(cls) -> ProjectorConfig:
        """Load configuration from environment variables."""
        return cls(
            cache_group=os.getenv("CACHE_GROUP", "cache-projector"),
            graph_group=os.getenv("GRAPH_GROUP", "graph-projector"),
            comments_group=os.getenv("COMMENTS_GROUP", "comment-projector"),
            consumer_name=os.getenv("CONSUMER_NAME", os.getenv("HOSTNAME", "projector-1")),
            comment_entity_types=_env_list("COMMENT_ENTITY_TYPES", "comment"),
            batch_size=int(os.getenv("PROJECTOR_BATCH_SIZE", "100")),
            block_ms=int(os.getenv("PROJECTOR_BLOCK_MS", "1000")),
            max_retries=int(os.getenv("PROJECTOR_MAX_RETRIES", "5")),
            base_delay_ms=int(os.getenv("PROJECTOR_BASE_DELAY_MS", "50")),
            max_delay_ms=int(os.getenv("PROJECTOR_MAX_DELAY_MS", "2000")),
            shards=int(os.getenv("PROJECTOR_SHARDS", "1")),
            claim_idle_ms=int(os.getenv("PROJECTOR_CLAIM_IDLE_MS", "30000")),
            claim_interval_ms=int(os.getenv("PROJECTOR_CLAIM_INTERVAL_MS", "5000")),
        )

    def loop_kwargs(self) -> dict[str, int]:
        """Keyword arguments shared by every Projector constructor."""
        return {
            "batch_size": self.batch_size,
            "block_ms": self.block_ms,
            "max_retries": self.max_retries,
            "base_delay_ms": self.base_delay_ms,
            "max_delay_ms": self.max_delay_ms,
            "shards": self.shards,
            "claim_idle_ms": self.claim_idle_ms,
            "claim_interval_ms": self.claim_interval_ms,
        }


@dataclass(frozen=True)
class NotificationConfig:
    """HTTP / websocket surface and notification fan-out configuration.

    Attributes:
        host: Bind host of the HTTP server
        port: Bind port of the HTTP server
        buffer_size: Outbound channel capacity per connection
        topics: Topics the dispatcher publishes (empty = all)
        cors_origins: Allowed CORS origins
    """

    host: str = "0.0.0.0"
    port: int = 8080
    buffer_size: int = 256
    topics: tuple[str, ...] = ()
    cors_origins: tuple[str, ...] = ("*",)

    @classmethod
    def from_env(cls) -> NotificationConfig:
        """Load configuration from environment variables."""
        return cls(
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("HTTP_PORT", "8080")),
            buffer_size=int(os.getenv("NOTIFY_BUFFER_SIZE", "256")),
            topics=_env_list("NOTIFY_TOPICS"),
            cors_origins=_env_list("CORS_ORIGINS", "*"),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Observability and logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class PipelineConfig:
    """Complete pipeline configuration.

    This aggregates all configuration sections and provides validation.

    Attributes:
        stream_backend: Which stream log backend to use
        components: Workers this process runs (subset of COMPONENTS)
        catalog_path: Source schema catalog (None = bundled movie catalog)
        redis: Redis configuration (stream and/or cache backend)
        kafka: Kafka configuration (if stream_backend is KAFKA)
        storage: Local storage configuration
        producer: Producer configuration
        projector: Projector configuration
        notification: Notification and HTTP configuration
        observability: Observability configuration
    """

    stream_backend: StreamBackend = StreamBackend.MEMORY
    components: tuple[str, ...] = COMPONENTS
    catalog_path: str | None = None
    redis: RedisConfig = field(default_factory=RedisConfig)
    kafka: KafkaConfig = field(default_factory=KafkaConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    producer: ProducerConfig = field(default_factory=ProducerConfig)
    projector: ProjectorConfig = field(default_factory=ProjectorConfig)
    notification: NotificationConfig = field(default_factory=NotificationConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> PipelineConfig:
        """Load complete configuration from environment variables.

        Returns:
            PipelineConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        backend_str = os.getenv("STREAM_BACKEND", "redis").lower()
        try:
            stream_backend = StreamBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid STREAM_BACKEND '{backend_str}'. Must be one of: memory, redis, kafka"
            )

        config = cls(
            stream_backend=stream_backend,
            components=_env_list("COMPONENTS", ",".join(COMPONENTS)),
            catalog_path=os.getenv("CATALOG_PATH"),
            redis=RedisConfig.from_env(),
            kafka=KafkaConfig.from_env(),
            storage=StorageConfig.from_env(),
            producer=ProducerConfig.from_env(),
            projector=ProjectorConfig.from_env(),
            notification=NotificationConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def enabled(self, component: str) -> bool:
        return component in self.components

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        unknown = [c for c in self.components if c not in COMPONENTS]
        if unknown:
            raise ValueError(f"Unknown COMPONENTS {unknown}. Must be among: {', '.join(COMPONENTS)}")
        if not self.components:
            raise ValueError("COMPONENTS must name at least one component")

        # Validate stream backend specific config
        if self.stream_backend == StreamBackend.KAFKA:
            if not self.kafka.brokers:
                raise ValueError("KAFKA_BROKERS is required when STREAM_BACKEND=kafka")
        elif self.stream_backend == StreamBackend.REDIS:
            if not self.redis.url:
                raise ValueError("REDIS_URL is required when STREAM_BACKEND=redis")
        elif self.stream_backend == StreamBackend.MEMORY:
            # An in-memory log is invisible to other processes
            logger.warning("STREAM_BACKEND=memory: events are not shared across processes")

        if self.storage.cache_backend == CacheBackend.REDIS and not self.redis.url:
            raise ValueError("REDIS_URL is required when CACHE_BACKEND=redis")

        if self.projector.batch_size < 1:
            raise ValueError("PROJECTOR_BATCH_SIZE must be at least 1")
        if self.projector.max_retries < 1:
            raise ValueError("PROJECTOR_MAX_RETRIES must be at least 1")
        if self.projector.shards < 1:
            raise ValueError("PROJECTOR_SHARDS must be at least 1")
        if self.producer.max_retries < 1:
            raise ValueError("PRODUCER_MAX_RETRIES must be at least 1")
        if self.notification.buffer_size < 1:
            raise ValueError("NOTIFY_BUFFER_SIZE must be at least 1")
        # Blocking reads must return before the socket gives up
        if (
            self.stream_backend == StreamBackend.REDIS
            and self.projector.block_ms / 1000.0 >= self.redis.socket_timeout_s
        ):
            raise ValueError("PROJECTOR_BLOCK_MS must be below REDIS_SOCKET_TIMEOUT_S")

        if self.enabled("notify") and not self.enabled("api"):
            raise ValueError("The notify component requires the api component")

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on startup."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Pipeline configuration loaded",
            extra={
                "stream_backend": self.stream_backend.value,
                "components": list(self.components),
                "catalog_path": self.catalog_path,
                "redis_url": self.redis.redacted_url
                if self.stream_backend == StreamBackend.REDIS
                or self.storage.cache_backend == CacheBackend.REDIS
                else None,
                "kafka_brokers": self.kafka.brokers
                if self.stream_backend == StreamBackend.KAFKA
                else None,
                "cache_backend": self.storage.cache_backend.value,
                "data_dir": self.storage.data_dir,
                "consumer_name": self.projector.consumer_name,
                "shards": self.projector.shards,
                "http_port": self.notification.port,
                "log_level": self.observability.log_level,
            },
        )
