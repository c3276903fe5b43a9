from __future__ import annotations

import re
from typing import Any, Mapping

from autoembed.core.config import DEFAULT_CHUNK_CONFIGS, ChunkConfig, merge
from autoembed.core.hashing import content_hash
from autoembed.core.time import now_epoch
from autoembed.domain.models.chunk import ChunkMetadata, ContentChunk, ContentType, LineRange, MessageRole

CHARS_PER_TOKEN = 4
OVERSIZE_FACTOR = 1.5
LINE_OVERLAP_COUNT = 3

_CODE_BOUNDARY_PATTERNS = (
    # JavaScript / TypeScript
    re.compile(r"^(?:export\s+)?(?:async\s+)?(?:function|class|interface|type|const|let|var)\s+\w+", re.M),
    # Python
    re.compile(r"^(?:def|class|async def)\s+\w+", re.M),
    # Go
    re.compile(r"^func\s+(?:\([^)]+\)\s+)?\w+", re.M),
    # Rust
    re.compile(r"^(?:pub\s+)?(?:fn|struct|enum|impl|trait)\s+\w+", re.M),
    # Java / C#
    re.compile(r"^(?:public|private|protected)?\s*(?:static\s+)?(?:class|interface|void|int|String)\s+\w+", re.M),
)

_CONVERSATION_BOUNDARY_PATTERNS = (
    re.compile(r"^(?:Human|User|Assistant|AI|System):\s*", re.M | re.I),
    re.compile(r"^(?:>>|>)\s*", re.M),
    re.compile(r"^-{3,}$", re.M),
)

_DOCUMENTATION_BOUNDARY_PATTERNS = (
    re.compile(r"^#{1,6}\s+.+$", re.M),
    re.compile(r"^[A-Z][A-Za-z ]+:?[ \t]*$", re.M),
)

_PARAGRAPH_SPLIT = re.compile(r"\n\s*\n")


class ContentChunker:
    def __init__(self, configs: Mapping[ContentType | str, ChunkConfig] | None = None) -> None:
        self._configs: dict[ContentType, ChunkConfig] = {
            ContentType(name): config for name, config in DEFAULT_CHUNK_CONFIGS.items()
        }
        for name, config in (configs or {}).items():
            self._configs[ContentType.parse(name)] = config

    def chunk(
        self,
        text: str,
        content_type: ContentType | str,
        base_metadata: Mapping[str, Any] | None = None,
    ) -> list[ContentChunk]:
        if not text or not text.strip():
            return []
        kind = ContentType.parse(content_type)
        config = self._configs[kind]
        max_chars = config.chunk_size * CHARS_PER_TOKEN
        overlap_chars = config.overlap_size * CHARS_PER_TOKEN

        if kind is ContentType.CODE:
            pieces = self._chunk_code(text, max_chars, overlap_chars)
        elif kind is ContentType.CONVERSATION:
            pieces = self._chunk_with_markers(text, _CONVERSATION_BOUNDARY_PATTERNS, max_chars, overlap_chars)
        elif kind is ContentType.DOCUMENTATION:
            pieces = self._chunk_with_markers(text, _DOCUMENTATION_BOUNDARY_PATTERNS, max_chars, overlap_chars)
        else:
            pieces = self._chunk_by_paragraphs(text, max_chars, overlap_chars)

        base = dict(base_metadata or {})
        speaker = base.get("speaker")
        line_range = base.get("line_range")
        total = len(pieces)
        timestamp = float(base.get("timestamp") or now_epoch())
        return [
            ContentChunk(
                text=piece,
                content_hash=content_hash(piece),
                metadata=ChunkMetadata(
                    source_id=str(base.get("source_id") or "unknown"),
                    source_type=kind,
                    chunk_index=index,
                    total_chunks=total,
                    timestamp=timestamp,
                    session_id=base.get("session_id"),
                    project_path=base.get("project_path"),
                    file_path=base.get("file_path"),
                    line_range=(
                        LineRange(**line_range) if isinstance(line_range, Mapping) else line_range
                    ),
                    speaker=MessageRole(speaker) if speaker else None,
                    tool_name=base.get("tool_name"),
                    embedding_model=base.get("embedding_model"),
                ),
            )
            for index, piece in enumerate(pieces)
        ]

    def estimate_tokens(self, text: str) -> int:
        return -(-len(text) // CHARS_PER_TOKEN)

    def get_config(self, content_type: ContentType | str) -> ChunkConfig:
        return self._configs[ContentType.parse(content_type)]

    def set_config(self, content_type: ContentType | str, **overrides: Any) -> ChunkConfig:
        kind = ContentType.parse(content_type)
        self._configs[kind] = merge(self._configs[kind], overrides)
        return self._configs[kind]

    def _chunk_code(self, text: str, max_chars: int, overlap_chars: int) -> list[str]:
        boundaries = _find_boundaries(text, _CODE_BOUNDARY_PATTERNS)
        if len(boundaries) > 1:
            return self._split_at_boundaries(text, boundaries, max_chars, overlap_chars)
        return self._chunk_by_lines(text, max_chars, overlap_chars)

    def _chunk_with_markers(
        self,
        text: str,
        patterns: tuple[re.Pattern[str], ...],
        max_chars: int,
        overlap_chars: int,
    ) -> list[str]:
        boundaries = _find_boundaries(text, patterns)
        if len(boundaries) > 1:
            return self._split_at_boundaries(text, boundaries, max_chars, overlap_chars)
        return self._chunk_by_paragraphs(text, max_chars, overlap_chars)

    def _split_at_boundaries(
        self,
        text: str,
        boundaries: list[int],
        max_chars: int,
        overlap_chars: int,
    ) -> list[str]:
        chunks: list[str] = []
        current = ""
        carried = 0
        ends = boundaries[1:] + [len(text)]
        for start, end in zip(boundaries, ends):
            segment = text[start:end]
            if len(current) > carried and len(current) + len(segment) > max_chars:
                chunks.append(current.strip())
                current = current[-overlap_chars:] if 0 < overlap_chars < len(current) else ""
                carried = len(current)
            current += segment
        if len(current) > carried and current.strip():
            chunks.append(current.strip())
        return self._enforce_ceiling([c for c in chunks if c], max_chars, overlap_chars)

    def _chunk_by_paragraphs(self, text: str, max_chars: int, overlap_chars: int) -> list[str]:
        chunks: list[str] = []
        current = ""
        carried = 0
        for paragraph in _PARAGRAPH_SPLIT.split(text):
            trimmed = paragraph.strip()
            if not trimmed:
                continue
            if len(current) > carried and len(current) + len(trimmed) + 2 > max_chars:
                chunks.append(current.strip())
                current = current[-overlap_chars:] if 0 < overlap_chars < len(current) else ""
                carried = len(current)
            current += ("\n\n" if current else "") + trimmed
        if len(current) > carried and current.strip():
            chunks.append(current.strip())
        return self._enforce_ceiling(chunks, max_chars, overlap_chars)

    def _enforce_ceiling(self, chunks: list[str], max_chars: int, overlap_chars: int) -> list[str]:
        out: list[str] = []
        for chunk in chunks:
            if len(chunk) > max_chars:
                out.extend(self._chunk_by_lines(chunk, max_chars, overlap_chars))
            else:
                out.append(chunk)
        return out

    def _chunk_by_lines(self, text: str, max_chars: int, overlap_chars: int) -> list[str]:
        chunks: list[str] = []
        lines: list[str] = []
        carried = 0
        size = 0
        for line in text.split("\n"):
            if len(lines) > carried and size + len(line) + 1 > max_chars:
                chunks.append("\n".join(lines).strip())
                tail = lines[-LINE_OVERLAP_COUNT:]
                tail_size = len("\n".join(tail))
                lines = tail if overlap_chars > 0 and tail_size < overlap_chars else []
                carried = len(lines)
                size = tail_size if lines else 0
            size += len(line) + (1 if lines else 0)
            lines.append(line)
        if len(lines) > carried and "\n".join(lines).strip():
            chunks.append("\n".join(lines).strip())

        out: list[str] = []
        for chunk in chunks:
            if not chunk:
                continue
            if len(chunk) > max_chars * OVERSIZE_FACTOR:
                out.extend(self._chunk_by_chars(chunk, max_chars, overlap_chars))
            else:
                out.append(chunk)
        return out

    def _chunk_by_chars(self, text: str, max_chars: int, overlap_chars: int) -> list[str]:
        chunks: list[str] = []
        start = 0
        length = len(text)
        while start < length:
            end = min(start + max_chars, length)
            if end < length:
                last_space = text.rfind(" ", start, end + 1)
                if last_space > start + max_chars * 0.5:
                    end = last_space
            piece = text[start:end].strip()
            if piece:
                chunks.append(piece)
            if end >= length:
                break
            next_start = end - overlap_chars
            start = next_start if next_start > start else end
        return chunks


def _find_boundaries(text: str, patterns: tuple[re.Pattern[str], ...]) -> list[int]:
    positions = {0}
    for pattern in patterns:
        positions.update(match.start() for match in pattern.finditer(text))
    return sorted(positions)
