from __future__ import annotations

import pytest

from autoembed.core.config import ChunkConfig
from autoembed.core.errors import ValidationError
from autoembed.core.hashing import content_hash
from autoembed.domain.models.chunk import ContentType, MessageRole
from autoembed.infrastructure.vector.chunking import CHARS_PER_TOKEN, OVERSIZE_FACTOR, ContentChunker


def _assert_chunk_invariants(chunker: ContentChunker, chunks: list, content_type: ContentType) -> None:
    max_chars = chunker.get_config(content_type).chunk_size * CHARS_PER_TOKEN
    assert chunks
    assert [chunk.metadata.chunk_index for chunk in chunks] == list(range(len(chunks)))
    for chunk in chunks:
        assert chunk.metadata.total_chunks == len(chunks)
        assert chunk.metadata.source_type is content_type
        assert chunk.text.strip()
        assert len(chunk.text) <= max_chars * OVERSIZE_FACTOR
        assert chunk.content_hash == content_hash(chunk.text)


def test_blank_input_yields_no_chunks() -> None:
    chunker = ContentChunker()
    assert chunker.chunk("", ContentType.CODE) == []
    assert chunker.chunk("   \n\t  ", "conversation") == []


def test_short_text_is_a_single_chunk_with_base_metadata() -> None:
    chunker = ContentChunker()
    chunks = chunker.chunk(
        "User: how do I read a file?",
        ContentType.CONVERSATION,
        {"source_id": "s1-1", "session_id": "s1", "speaker": "user", "timestamp": 1_700_000_000.0},
    )
    assert len(chunks) == 1
    meta = chunks[0].metadata
    assert meta.source_id == "s1-1"
    assert meta.session_id == "s1"
    assert meta.speaker is MessageRole.USER
    assert meta.timestamp == 1_700_000_000.0
    assert (meta.chunk_index, meta.total_chunks) == (0, 1)


def test_code_splits_on_declarations() -> None:
    chunker = ContentChunker({"code": ChunkConfig(chunk_size=100, overlap_size=5)})
    body = "\n".join(f"    value_{n} = compute({n})" for n in range(8))
    source = "\n\n".join(f"def handler_{n}(event):\n{body}\n    return value_0" for n in range(6))
    chunks = chunker.chunk(source, ContentType.CODE, {"source_id": "module.py"})
    _assert_chunk_invariants(chunker, chunks, ContentType.CODE)
    assert len(chunks) > 1
    assert all("def handler_" in chunk.text for chunk in chunks)


def test_conversation_splits_on_speaker_markers() -> None:
    chunker = ContentChunker({"conversation": ChunkConfig(chunk_size=30, overlap_size=5)})
    turns = []
    for n in range(10):
        turns.append(f"User: question number {n} " + "about the build " * 3)
        turns.append(f"Assistant: answer number {n} " + "with some detail " * 3)
    chunks = chunker.chunk("\n".join(turns), "conversation")
    _assert_chunk_invariants(chunker, chunks, ContentType.CONVERSATION)
    assert len(chunks) > 1


def test_unbroken_text_falls_back_to_character_splitting() -> None:
    chunker = ContentChunker()
    text = "x" * 5_000
    chunks = chunker.chunk(text, ContentType.TOOL_RESULT)
    _assert_chunk_invariants(chunker, chunks, ContentType.TOOL_RESULT)
    assert len(chunks) >= 6


def test_long_single_line_prefers_word_boundaries() -> None:
    chunker = ContentChunker()
    vocabulary = [f"word{n}" for n in range(2_000)]
    text = " ".join(vocabulary)
    chunks = chunker.chunk(text, ContentType.TOOL_RESULT)
    _assert_chunk_invariants(chunker, chunks, ContentType.TOOL_RESULT)
    assert all(chunk.text.split()[-1] in set(vocabulary) for chunk in chunks)


def test_paragraph_chunks_carry_overlap() -> None:
    chunker = ContentChunker({"learning": ChunkConfig(chunk_size=50, overlap_size=10)})
    paragraphs = [f"Paragraph {n}: " + "lesson " * 20 for n in range(8)]
    chunks = chunker.chunk("\n\n".join(paragraphs), ContentType.LEARNING)
    _assert_chunk_invariants(chunker, chunks, ContentType.LEARNING)
    for previous, current in zip(chunks, chunks[1:]):
        assert previous.text[-20:] in current.text


def test_set_config_validates_and_applies() -> None:
    chunker = ContentChunker()
    updated = chunker.set_config("documentation", chunk_size=100, overlap_size=10)
    assert chunker.get_config(ContentType.DOCUMENTATION) == updated
    with pytest.raises(ValidationError):
        chunker.get_config("poetry")


def test_estimate_tokens_rounds_up() -> None:
    chunker = ContentChunker()
    assert chunker.estimate_tokens("") == 0
    assert chunker.estimate_tokens("abcd") == 1
    assert chunker.estimate_tokens("abcde") == 2
