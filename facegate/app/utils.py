import time
import zlib
from typing import Iterable, Union

import numpy as np

from facegate.app.errors import EmbeddingShapeError

EMBEDDING_DTYPE = np.dtype("<f8")


def now_ts() -> float:
    return time.time()


def as_embedding(values: Union[np.ndarray, Iterable[float]]) -> np.ndarray:
    """Coerce ``values`` into a 1-D finite float64 vector."""
    try:
        vec = np.asarray(values, dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise EmbeddingShapeError(f"embedding is not numeric: {exc}") from exc
    if vec.ndim != 1 or vec.size == 0:
        raise EmbeddingShapeError(f"embedding must be a non-empty 1-D vector, got shape {vec.shape}")
    if not np.all(np.isfinite(vec)):
        raise EmbeddingShapeError("embedding contains non-finite values")
    return vec


def compress_embedding(vec: np.ndarray) -> bytes:
    vec = as_embedding(vec)
    return zlib.compress(vec.astype(EMBEDDING_DTYPE).tobytes(), level=6)


def decompress_embedding(blob: bytes) -> np.ndarray:
    raw = zlib.decompress(blob)
    if len(raw) % EMBEDDING_DTYPE.itemsize:
        raise ValueError(f"embedding blob has {len(raw)} bytes, not a multiple of {EMBEDDING_DTYPE.itemsize}")
    return np.frombuffer(raw, dtype=EMBEDDING_DTYPE).astype(np.float64)
