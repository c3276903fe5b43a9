from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Literal, Mapping

from autoembed.core.time import now_epoch
from autoembed.domain.models.embedding import EmbeddingResult, EmbeddingTask

CHECKPOINT_VERSION = 1


class AlertType(str, Enum):
    HIGH_LATENCY = "HIGH_LATENCY"
    HIGH_QUEUE_DEPTH = "HIGH_QUEUE_DEPTH"
    HIGH_ERROR_RATE = "HIGH_ERROR_RATE"
    MODEL_UNHEALTHY = "MODEL_UNHEALTHY"
    STORAGE_UNAVAILABLE = "STORAGE_UNAVAILABLE"
    CHECKPOINT_FAILED = "CHECKPOINT_FAILED"


class AlertSeverity(str, Enum):
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass(slots=True)
class Alert:
    type: AlertType
    message: str
    severity: AlertSeverity
    timestamp: float = field(default_factory=now_epoch)
    context: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class LatencyMetrics:
    p50: float = 0.0
    p95: float = 0.0
    p99: float = 0.0


@dataclass(slots=True)
class PipelineMetrics:
    latency: LatencyMetrics
    embeddings_per_second: float
    embeddings_per_minute: float
    queue_depth: int
    pending_operations: int
    success_rate: float
    error_rate: float
    cache_hit_rate: float
    total_processed: int
    total_failed: int
    total_cached: int
    timestamp: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class ProgressEvent:
    processed: int
    total: int
    current: str | None = None


@dataclass(slots=True)
class DeadLetterItem:
    original_task: EmbeddingTask
    error: str
    attempt_count: int
    timestamp: float = field(default_factory=now_epoch)
    stack_trace: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "original_task": self.original_task.to_dict(),
            "error": self.error,
            "attempt_count": self.attempt_count,
            "timestamp": self.timestamp,
            "stack_trace": self.stack_trace,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> DeadLetterItem:
        return cls(
            original_task=EmbeddingTask.from_dict(payload["original_task"]),
            error=str(payload.get("error") or ""),
            attempt_count=int(payload.get("attempt_count") or 0),
            timestamp=float(payload.get("timestamp") or now_epoch()),
            stack_trace=payload.get("stack_trace"),
        )


@dataclass(slots=True)
class Checkpoint:
    version: int
    timestamp: float
    session_positions: dict[str, int]
    last_processed_id: str | None
    metrics: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "timestamp": self.timestamp,
            "session_positions": dict(self.session_positions),
            "last_processed_id": self.last_processed_id,
            "metrics": dict(self.metrics),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Checkpoint:
        return cls(
            version=int(payload.get("version") or 0),
            timestamp=float(payload.get("timestamp") or 0.0),
            session_positions={
                str(path): int(offset)
                for path, offset in dict(payload.get("session_positions") or {}).items()
            },
            last_processed_id=payload.get("last_processed_id"),
            metrics=dict(payload.get("metrics") or {}),
        )


EventKind = Literal["result", "alert", "progress", "stored"]


@dataclass(slots=True)
class PipelineEvent:
    kind: EventKind
    payload: EmbeddingResult | Alert | ProgressEvent | Any
    task: EmbeddingTask | None = None


@dataclass(slots=True)
class PipelineStatus:
    enabled: bool
    processing: bool
    queue_depth: int
    pending_operations: int
    model_healthy: bool
    model_loaded: bool
    relational_connected: bool
    qdrant_connected: bool
    circuit_breaker_open: bool
    dead_letter_count: int
    last_checkpoint: float | None
