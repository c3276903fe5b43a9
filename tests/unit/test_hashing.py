from autoembed.core.hashing import compute_bytes_digest, compute_text_digest, content_hash, embedding_cache_key
from autoembed.core.ids import stored_embedding_id


def test_compute_bytes_digest_sha256() -> None:
    assert (
        compute_bytes_digest(b"")
        == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
    )


def test_content_hash_is_short_prefix_of_text_digest() -> None:
    digest = content_hash("hello world")
    assert len(digest) == 16
    assert compute_text_digest("hello world").startswith(digest)


def test_cache_key_depends_on_model_and_text() -> None:
    assert embedding_cache_key("m1", "text") == embedding_cache_key("m1", "text")
    assert embedding_cache_key("m1", "text") != embedding_cache_key("m2", "text")
    assert embedding_cache_key("m1", "text") != embedding_cache_key("m1", "other")


def test_stored_embedding_id_is_stable_per_chunk() -> None:
    first = stored_embedding_id("session-1", 0, "abc")
    assert first == stored_embedding_id("session-1", 0, "abc")
    assert first != stored_embedding_id("session-1", 1, "abc")
    assert first != stored_embedding_id("session-2", 0, "abc")
