from __future__ import annotations

import pytest

from autoembed.core.errors import ValidationError
from autoembed.domain.models.chunk import ChunkMetadata, ContentType, LineRange, MessageRole
from autoembed.domain.models.embedding import EmbeddingTask, TaskPriority
from autoembed.domain.models.session import PartsContent, SessionEntry, TextContent


def test_entry_with_plain_text_message() -> None:
    entry = SessionEntry.from_json(
        {
            "type": "user",
            "sessionId": "abc",
            "timestamp": "2026-01-01T00:00:00Z",
            "message": {"role": "user", "content": "hello there"},
        }
    )
    assert entry.session_id == "abc"
    assert entry.timestamp == 1_767_225_600.0
    assert entry.message is not None
    assert entry.message.role is MessageRole.USER
    assert isinstance(entry.message.content, TextContent)
    assert entry.message.extract_text() == "hello there"


def test_entry_with_content_parts_joins_text_parts() -> None:
    entry = SessionEntry.from_json(
        {
            "type": "assistant",
            "timestamp": 1_700_000_000_000,
            "message": {
                "role": "assistant",
                "content": [
                    {"type": "text", "text": "first"},
                    {"type": "tool_use", "name": "bash"},
                    {"type": "text", "text": "second"},
                ],
            },
        }
    )
    assert entry.timestamp == 1_700_000_000.0
    assert isinstance(entry.message.content, PartsContent)
    assert entry.message.extract_text() == "first\n\nsecond"


def test_tool_result_entry() -> None:
    entry = SessionEntry.from_json(
        {"type": "tool_result", "toolResult": {"name": "read_file", "content": "print('hi')"}}
    )
    assert entry.tool_result is not None
    assert entry.tool_result.name == "read_file"
    assert entry.timestamp is None


@pytest.mark.parametrize("payload", [[], "text", {"message": {}}, {"type": ""}])
def test_invalid_entries_raise(payload: object) -> None:
    with pytest.raises(ValidationError):
        SessionEntry.from_json(payload)


def test_chunk_metadata_rejects_out_of_range_index() -> None:
    with pytest.raises(ValidationError):
        ChunkMetadata(
            source_id="s",
            source_type=ContentType.CODE,
            chunk_index=2,
            total_chunks=2,
            timestamp=0.0,
        )


def test_task_round_trips_through_dict() -> None:
    meta = ChunkMetadata(
        source_id="file.py",
        source_type=ContentType.CODE,
        chunk_index=0,
        total_chunks=1,
        timestamp=12.5,
        line_range=LineRange(start=1, end=9),
        speaker=MessageRole.ASSISTANT,
    )
    task = EmbeddingTask(idempotency_key="k-1", text="body", metadata=meta, priority=TaskPriority.HIGH)
    restored = EmbeddingTask.from_dict(task.to_dict())
    assert restored == task
    assert TaskPriority.HIGH.rank < TaskPriority.NORMAL.rank < TaskPriority.LOW.rank
