"""Vector math and scoring helpers shared by the stores."""

import math
import re
import struct
from typing import List, Sequence

from mnemo.protocols import ValidationError

_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9_]+$")


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two equal-length vectors.

    Zero-magnitude vectors score 0.0.

    Raises:
        ValidationError: If the vectors differ in dimension.
    """
    if len(a) != len(b):
        raise ValidationError(f"Vectors must have same dimension ({len(a)} != {len(b)})")

    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y

    magnitude = math.sqrt(norm_a) * math.sqrt(norm_b)
    if magnitude == 0:
        return 0.0
    return dot / magnitude


def text_match_score(content: str, query: str) -> float:
    """Score used when no embedding provider is available.

    1.0 for an exact (case-insensitive) match, partial credit for
    containment, 0.0 otherwise.
    """
    normalized = content.lower()
    q = query.lower()
    if not q:
        return 0.0
    if normalized == q:
        return 1.0
    if q in normalized:
        return min(0.9, len(q) / len(normalized) + 0.3)
    return 0.0


def distance_to_score(distance: float, metric: str) -> float:
    """Convert an ANN distance to a similarity score."""
    if distance is None or not math.isfinite(distance):
        return float("-inf")
    if metric == "cosine":
        return 1.0 - distance
    return 1.0 / (1.0 + distance)


def pack_embedding(embedding: Sequence[float]) -> bytes:
    """Serialize a vector as little-endian float32 bytes."""
    return struct.pack(f"<{len(embedding)}f", *embedding)


def unpack_embedding(data: bytes) -> List[float]:
    """Inverse of pack_embedding (4 bytes per float)."""
    count = len(data) // 4
    return list(struct.unpack(f"<{count}f", data[: count * 4]))


def validate_identifier(name: str) -> str:
    """Validate a SQL identifier before it is formatted into a statement.

    Raises:
        ValidationError: If the name contains anything but [A-Za-z0-9_].
    """
    if not isinstance(name, str) or not _IDENTIFIER_RE.match(name):
        raise ValidationError(f"Invalid sqlite identifier: {name!r}")
    return name
