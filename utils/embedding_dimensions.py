"""Utility helpers for working with embedding dimensions.

The pgvector columns are created with a fixed width, so every vector that
reaches storage is normalised to that width here. Keeping the logic in one
place avoids dimension errors surfacing at write time.
"""

from __future__ import annotations

import logging
import os
from typing import Any, List, Optional, Sequence

logger = logging.getLogger(__name__)

DEFAULT_EMBEDDING_DIMENSION: int = 1024


def _coerce_int(value: Any) -> Optional[int]:
    """Attempt to coerce *value* to ``int``; return ``None`` on failure."""

    if value is None:
        return None
    try:
        coerced = int(value)
    except (TypeError, ValueError):
        return None
    if coerced <= 0:
        return None
    return coerced


def get_target_embedding_dimension() -> int:
    """Return the configured vector width (``EMBEDDING_DIMENSIONS``)."""

    configured = _coerce_int(os.getenv("EMBEDDING_DIMENSIONS"))
    if configured:
        return configured
    return DEFAULT_EMBEDDING_DIMENSION


def adjust_embedding_vector(
    vector: Sequence[float],
    dimension: Optional[int] = None,
) -> List[float]:
    """Pad or truncate *vector* so it matches *dimension* exactly."""

    target = dimension or get_target_embedding_dimension()
    data = [float(x) for x in vector]

    if len(data) == target:
        return data

    logger.debug("Adjusting embedding from %d to %d dimensions", len(data), target)
    if len(data) > target:
        return data[:target]

    return data + [0.0] * (target - len(data))


def apply_embedding_dimension(sql: str, dimension: Optional[int] = None) -> str:
    """Replace ``vector(1024)`` placeholders in DDL with the configured width."""

    target = dimension or get_target_embedding_dimension()
    return sql.replace(f"vector({DEFAULT_EMBEDDING_DIMENSION})", f"vector({target})")
