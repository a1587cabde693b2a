"""
Vector helpers: cosine similarity and embedding blob encoding.

Embeddings are stored in SQLite as raw little-endian float64 blobs,
8 bytes per dimension, so a round trip is bit-exact.
"""

import math
import struct


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity in [-1, 1].

    Returns 0.0 when either vector is empty, the lengths differ, or either
    has zero magnitude. Callers treat 0.0 as "no signal".
    """
    if len(a) != len(b) or not a:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(x * x for x in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    # Rounding can push |dot| a hair past norm_a * norm_b
    return max(-1.0, min(1.0, dot / (norm_a * norm_b)))


def embedding_to_blob(embedding: list[float]) -> bytes:
    """Serialize an embedding to little-endian float64 bytes."""
    return struct.pack(f"<{len(embedding)}d", *embedding)


def blob_to_embedding(blob: bytes) -> list[float]:
    """Deserialize a blob produced by embedding_to_blob().

    Trailing bytes that don't make a whole float64 are ignored.
    """
    n = len(blob) // 8
    return list(struct.unpack_from(f"<{n}d", blob))
