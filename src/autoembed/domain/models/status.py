from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from autoembed.domain.models.pipeline import PipelineStatus

HealthState = Literal["unknown", "healthy", "unhealthy"]


@dataclass(slots=True)
class OllamaStatus:
    state: HealthState
    model_loaded: bool
    model: str
    model_digest: str | None
    last_health_check: float | None
    last_error: str | None = None

    @property
    def healthy(self) -> bool:
        return self.state == "healthy"


@dataclass(slots=True)
class CacheStats:
    total_entries: int
    total_size: int
    hit_count: int
    miss_count: int
    hit_rate: float


@dataclass(slots=True)
class BackendHealth:
    name: str
    enabled: bool
    connected: bool
    last_error: str | None = None


@dataclass(slots=True)
class VectorStoreHealth:
    initialized: bool
    relational: BackendHealth
    qdrant: BackendHealth


@dataclass(slots=True)
class WorkerStatus:
    running: bool
    watch_root: str
    files_tracked: int
    entries_submitted: int
    lines_skipped: int
    last_processed_at: float | None
    pending_files: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ManagerStatus:
    initialized: bool
    auto_embedding: bool
    model: OllamaStatus
    pipeline: PipelineStatus | None
    vector_store: VectorStoreHealth
    worker: WorkerStatus
