import numpy as np
import pytest

from facegate.app.errors import EmbeddingShapeError
from facegate.app.utils import as_embedding, compress_embedding, decompress_embedding
from facegate.models.opencv_fallback import DCTEmbedder


def test_embedding_size_and_norm():
    emb = DCTEmbedder()
    dummy = np.zeros((112, 112, 3), dtype=np.uint8)
    v = emb.embed(dummy)
    assert v.shape[0] == emb.dim
    assert v.dtype == np.float64
    n = np.linalg.norm(v)
    assert 0.99 <= n <= 1.01


def test_blob_keeps_float64_precision():
    v = np.array([0.1, 1 / 3, -2.5e-9, 7.0])
    assert np.array_equal(decompress_embedding(compress_embedding(v)), v)


def test_bad_embeddings_rejected():
    for bad in ([], [[1.0, 2.0]], [1.0, float("nan")], ["x"]):
        with pytest.raises(EmbeddingShapeError):
            as_embedding(bad)
