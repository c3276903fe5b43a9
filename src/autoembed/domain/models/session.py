from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping

from autoembed.core.errors import ValidationError
from autoembed.domain.models.chunk import MessageRole


@dataclass(slots=True)
class SessionPosition:
    path: str
    byte_offset: int
    line_number: int
    mtime: float
    session_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "byte_offset": self.byte_offset,
            "line_number": self.line_number,
            "mtime": self.mtime,
            "session_id": self.session_id,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> SessionPosition:
        return cls(
            path=str(payload["path"]),
            byte_offset=int(payload.get("byte_offset") or 0),
            line_number=int(payload.get("line_number") or 0),
            mtime=float(payload.get("mtime") or 0.0),
            session_id=str(payload.get("session_id") or ""),
        )


@dataclass(slots=True, frozen=True)
class TextContent:
    text: str

    def extract_text(self) -> str | None:
        return self.text or None


@dataclass(slots=True, frozen=True)
class ContentPart:
    type: str
    text: str | None = None


@dataclass(slots=True, frozen=True)
class PartsContent:
    parts: tuple[ContentPart, ...]

    def extract_text(self) -> str | None:
        texts = [part.text for part in self.parts if part.type == "text" and part.text]
        return "\n\n".join(texts) if texts else None


MessageContent = TextContent | PartsContent


def parse_message_content(raw: Any) -> MessageContent | None:
    if isinstance(raw, str):
        return TextContent(text=raw)
    if isinstance(raw, list):
        parts: list[ContentPart] = []
        for item in raw:
            if not isinstance(item, Mapping):
                continue
            text = item.get("text")
            if text is None:
                text = item.get("content")
            parts.append(
                ContentPart(
                    type=str(item.get("type") or ""),
                    text=text if isinstance(text, str) else None,
                )
            )
        return PartsContent(parts=tuple(parts))
    return None


@dataclass(slots=True, frozen=True)
class SessionMessage:
    role: MessageRole
    content: MessageContent | None

    def extract_text(self) -> str | None:
        return self.content.extract_text() if self.content is not None else None


@dataclass(slots=True, frozen=True)
class ToolResult:
    name: str | None
    content: str | None


@dataclass(slots=True, frozen=True)
class SessionEntry:
    entry_type: str
    timestamp: float | None
    session_id: str | None = None
    message: SessionMessage | None = None
    tool_result: ToolResult | None = None

    @classmethod
    def from_json(cls, payload: Any) -> SessionEntry:
        if not isinstance(payload, Mapping):
            raise ValidationError("Session entry must be a JSON object.")
        entry_type = str(payload.get("type") or "").strip()
        if not entry_type:
            raise ValidationError("Session entry has no type.")

        message: SessionMessage | None = None
        raw_message = payload.get("message")
        if entry_type in {"user", "assistant"} and isinstance(raw_message, Mapping):
            role_raw = str(raw_message.get("role") or entry_type)
            try:
                role = MessageRole(role_raw)
            except ValueError:
                role = MessageRole(entry_type)
            message = SessionMessage(role=role, content=parse_message_content(raw_message.get("content")))

        tool_result: ToolResult | None = None
        raw_tool = payload.get("toolResult") or payload.get("tool_result")
        if entry_type == "tool_result" and isinstance(raw_tool, Mapping):
            content = raw_tool.get("content")
            tool_result = ToolResult(
                name=raw_tool.get("name"),
                content=content if isinstance(content, str) else None,
            )

        return cls(
            entry_type=entry_type,
            timestamp=_parse_timestamp(payload.get("timestamp")),
            session_id=payload.get("sessionId") or payload.get("session_id"),
            message=message,
            tool_result=tool_result,
        )


def _parse_timestamp(raw: Any) -> float | None:
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        try:
            value = float(raw)
        except OverflowError:
            return None
        if not math.isfinite(value):
            return None
        # Millisecond epochs are common in JSONL logs.
        return value / 1000.0 if value > 1e11 else value
    if isinstance(raw, str):
        try:
            return datetime.fromisoformat(raw.replace("Z", "+00:00")).timestamp()
        except ValueError:
            return None
    return None
