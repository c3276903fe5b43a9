from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

from autoembed.core.errors import ValidationError


class ContentType(str, Enum):
    CODE = "code"
    CONVERSATION = "conversation"
    TOOL_RESULT = "tool_result"
    LEARNING = "learning"
    DOCUMENTATION = "documentation"

    @classmethod
    def parse(cls, value: ContentType | str) -> ContentType:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            choices = ", ".join(member.value for member in cls)
            raise ValidationError(f"Unknown content type '{value}'. Expected one of: {choices}") from exc


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass(slots=True, frozen=True)
class LineRange:
    start: int
    end: int


@dataclass(slots=True)
class ChunkMetadata:
    source_id: str
    source_type: ContentType
    chunk_index: int
    total_chunks: int
    timestamp: float
    session_id: str | None = None
    project_path: str | None = None
    file_path: str | None = None
    line_range: LineRange | None = None
    speaker: MessageRole | None = None
    tool_name: str | None = None
    embedding_model: str | None = None

    def __post_init__(self) -> None:
        if self.total_chunks < 1 or not 0 <= self.chunk_index < self.total_chunks:
            raise ValidationError(
                f"chunk_index {self.chunk_index} out of range for total_chunks {self.total_chunks}"
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "source_type": self.source_type.value,
            "chunk_index": self.chunk_index,
            "total_chunks": self.total_chunks,
            "timestamp": self.timestamp,
            "session_id": self.session_id,
            "project_path": self.project_path,
            "file_path": self.file_path,
            "line_range": (
                {"start": self.line_range.start, "end": self.line_range.end}
                if self.line_range
                else None
            ),
            "speaker": self.speaker.value if self.speaker else None,
            "tool_name": self.tool_name,
            "embedding_model": self.embedding_model,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> ChunkMetadata:
        line_range_raw = payload.get("line_range")
        speaker_raw = payload.get("speaker")
        return cls(
            source_id=str(payload.get("source_id") or "unknown"),
            source_type=ContentType.parse(payload.get("source_type") or ContentType.CONVERSATION),
            chunk_index=int(payload.get("chunk_index") or 0),
            total_chunks=int(payload.get("total_chunks") or 1),
            timestamp=float(payload.get("timestamp") or 0.0),
            session_id=payload.get("session_id"),
            project_path=payload.get("project_path"),
            file_path=payload.get("file_path"),
            line_range=(
                LineRange(start=int(line_range_raw["start"]), end=int(line_range_raw["end"]))
                if isinstance(line_range_raw, Mapping)
                else None
            ),
            speaker=MessageRole(speaker_raw) if speaker_raw else None,
            tool_name=payload.get("tool_name"),
            embedding_model=payload.get("embedding_model"),
        )


@dataclass(slots=True, frozen=True)
class ContentChunk:
    text: str
    content_hash: str
    metadata: ChunkMetadata
