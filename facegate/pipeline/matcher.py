import numpy as np

from facegate.app.errors import EmbeddingShapeError
from facegate.app.utils import as_embedding

DEFAULT_MATCH_THRESHOLD = 0.55


def distance(a, b) -> float:
    """Raw euclidean distance between two equal-length embeddings."""
    va = as_embedding(a)
    vb = as_embedding(b)
    if va.shape != vb.shape:
        raise EmbeddingShapeError(f"cannot compare embeddings of length {va.size} and {vb.size}")
    return float(np.linalg.norm(va - vb))


def is_match(d: float, threshold: float = DEFAULT_MATCH_THRESHOLD) -> bool:
    return d <= threshold
