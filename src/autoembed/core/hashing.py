from __future__ import annotations

import hashlib

CONTENT_HASH_LENGTH = 16


def compute_bytes_digest(data: bytes, alg: str = "sha256") -> str:
    h = hashlib.new(alg)
    h.update(data)
    return h.hexdigest()


def compute_text_digest(text: str, alg: str = "sha256") -> str:
    return compute_bytes_digest(text.encode("utf-8"), alg)


def content_hash(text: str) -> str:
    """Short content fingerprint used for chunk dedup and idempotency keys."""
    return compute_text_digest(text)[:CONTENT_HASH_LENGTH]


def embedding_cache_key(model: str, text: str) -> str:
    return compute_text_digest(f"{model}:{text}")
