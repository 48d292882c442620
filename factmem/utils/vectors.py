"""
Vector math for embeddings held in memory.
"""

import math
from typing import Optional, Sequence


def cosine_similarity(a: Optional[Sequence[float]], b: Optional[Sequence[float]]) -> float:
    """Cosine similarity in [-1, 1]. Missing, empty or mismatched vectors score 0.0."""
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))


def cosine_distance(a: Optional[Sequence[float]], b: Optional[Sequence[float]]) -> float:
    """Cosine distance (1 - similarity), the same measure as a cosine nearest-neighbour operator."""
    return 1.0 - cosine_similarity(a, b)
