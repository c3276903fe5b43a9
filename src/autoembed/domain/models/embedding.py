from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

from autoembed.core.time import now_epoch
from autoembed.domain.models.chunk import ChunkMetadata, ContentChunk, ContentType


class TaskPriority(str, Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANKS[self]


_PRIORITY_RANKS = {TaskPriority.HIGH: 0, TaskPriority.NORMAL: 1, TaskPriority.LOW: 2}


@dataclass(slots=True, frozen=True)
class EmbeddingTask:
    idempotency_key: str
    text: str
    metadata: ChunkMetadata
    priority: TaskPriority = TaskPriority.NORMAL
    attempt_count: int = 0
    created_at: float = field(default_factory=now_epoch)

    @classmethod
    def for_chunk(
        cls,
        chunk: ContentChunk,
        *,
        key_prefix: str | None = None,
        priority: TaskPriority = TaskPriority.NORMAL,
    ) -> EmbeddingTask:
        prefix = key_prefix or chunk.metadata.session_id or chunk.metadata.source_id
        return cls(
            idempotency_key=f"{prefix}-{chunk.content_hash}",
            text=chunk.text,
            metadata=chunk.metadata,
            priority=priority,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "idempotency_key": self.idempotency_key,
            "text": self.text,
            "metadata": self.metadata.to_dict(),
            "priority": self.priority.value,
            "attempt_count": self.attempt_count,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> EmbeddingTask:
        return cls(
            idempotency_key=str(payload["idempotency_key"]),
            text=str(payload["text"]),
            metadata=ChunkMetadata.from_dict(payload.get("metadata") or {}),
            priority=TaskPriority(payload.get("priority") or TaskPriority.NORMAL.value),
            attempt_count=int(payload.get("attempt_count") or 0),
            created_at=float(payload.get("created_at") or now_epoch()),
        )


@dataclass(slots=True)
class EmbeddingResult:
    idempotency_key: str
    embedding: list[float]
    model: str
    processing_time: float
    cached: bool = False


@dataclass(slots=True)
class StoredEmbedding:
    id: str
    content_hash: str
    content: str
    embedding: list[float]
    source_type: ContentType
    source_id: str
    metadata: ChunkMetadata
    session_id: str | None = None
    created_at: float = field(default_factory=now_epoch)
    updated_at: float = field(default_factory=now_epoch)

    @property
    def project_path(self) -> str | None:
        return self.metadata.project_path


@dataclass(slots=True)
class SearchOptions:
    limit: int = 10
    threshold: float = 0.7
    source_type: ContentType | None = None
    session_id: str | None = None
    project_path: str | None = None
    include_content: bool = False


@dataclass(slots=True)
class SearchResult:
    id: str
    score: float
    metadata: ChunkMetadata
    content: str | None = None
