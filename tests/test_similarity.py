"""
Tests for cosine similarity and embedding blob encoding.
"""

import math

import pytest

from factbase.similarity import blob_to_embedding, cosine_similarity, embedding_to_blob


class TestBlobEncoding:

    def test_round_trip_is_bit_exact(self):
        values = [0.1, -0.0, 1 / 3, math.pi, -1e-300, 1e300, 5e-324, 123456.789]
        restored = blob_to_embedding(embedding_to_blob(values))
        assert len(restored) == len(values)
        for original, back in zip(values, restored):
            assert math.copysign(1, original) == math.copysign(1, back)
            assert original.hex() == back.hex()

    def test_eight_bytes_per_dimension_little_endian(self):
        blob = embedding_to_blob([1.0, 2.0])
        assert len(blob) == 16
        assert blob[:8] == bytes.fromhex("000000000000f03f")

    def test_empty_embedding(self):
        assert embedding_to_blob([]) == b""
        assert blob_to_embedding(b"") == []

    def test_trailing_partial_value_ignored(self):
        blob = embedding_to_blob([1.5, 2.5]) + b"\x01\x02\x03"
        assert blob_to_embedding(blob) == [1.5, 2.5]


class TestCosineSimilarity:

    def test_self_similarity_is_one(self):
        v = [0.3, -1.2, 4.0, 0.0]
        assert cosine_similarity(v, v) == pytest.approx(1.0)

    def test_symmetric(self):
        a, b = [1.0, 2.0, 3.0], [3.0, -1.0, 0.5]
        assert cosine_similarity(a, b) == cosine_similarity(b, a)

    def test_orthogonal_and_opposite(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
        assert cosine_similarity([1.0, 2.0], [-1.0, -2.0]) == pytest.approx(-1.0)

    def test_scale_invariant(self):
        a = [1.0, 2.0, 3.0]
        b = [2.0, 0.5, 1.0]
        assert cosine_similarity(a, b) == pytest.approx(
            cosine_similarity([x * 10 for x in a], b)
        )

    @pytest.mark.parametrize("a,b", [
        ([], []),
        ([1.0, 2.0], [1.0]),
        ([0.0, 0.0], [1.0, 1.0]),
        ([1.0, 1.0], [0.0, 0.0]),
    ])
    def test_degenerate_inputs_score_zero(self, a, b):
        assert cosine_similarity(a, b) == 0.0

    def test_bounded(self):
        """Parallel vectors never round past 1."""
        a = [0.1, 0.7, 0.3]
        b = [0.2, 1.4, 0.6]
        assert -1.0 <= cosine_similarity(a, b) <= 1.0
        assert -1.0 <= cosine_similarity(a, [-x for x in b]) <= 1.0
