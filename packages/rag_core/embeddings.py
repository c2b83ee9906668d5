from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, List, Sequence

import numpy as np

_log = logging.getLogger(__name__)

DEFAULT_MODEL_NAME = "BAAI/bge-m3"


class Embedder(ABC):
    """Text to dense vector."""

    @abstractmethod
    def embed_documents(self, texts: Sequence[str]) -> np.ndarray:
        """Return a (len(texts), dim) float32 array."""

    def embed_query(self, text: str) -> List[float]:
        return self.embed_documents([text])[0].tolist()


def _get_device() -> str:
    """Return device string, prefer GPU when available."""
    import torch

    if torch.cuda.is_available():
        return "cuda"
    return "cpu"


class BGEM3Embedder(Embedder):
    """
    Dense BGE-M3 embeddings via FlagEmbedding.

    The model is loaded on first use; concurrent first callers share one load.
    Sparse and ColBERT outputs are not used.
    """

    def __init__(
        self,
        model_name: str = DEFAULT_MODEL_NAME,
        batch_size: int = 16,
        max_length: int = 8192,
    ) -> None:
        self.model_name = model_name
        self.batch_size = batch_size
        self.max_length = max_length
        self._model: Any = None
        self._lock = threading.Lock()

    def get_model(self) -> Any:
        """Lazily load the BGE-M3 embedding model."""
        if self._model is not None:
            return self._model
        with self._lock:
            if self._model is None:
                from FlagEmbedding import BGEM3FlagModel

                device = _get_device()
                use_fp16 = device == "cuda"
                _log.info(
                    "Loading BGEM3FlagModel '%s' on device=%s (fp16=%s)",
                    self.model_name,
                    device,
                    use_fp16,
                )
                self._model = BGEM3FlagModel(self.model_name, use_fp16=use_fp16, device=device)
        return self._model

    def embed_documents(self, texts: Sequence[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, 0), dtype=np.float32)

        model = self.get_model()
        _log.debug(
            "Encoding %d texts with BGE-M3 (batch_size=%d, max_length=%d)",
            len(texts),
            self.batch_size,
            self.max_length,
        )
        outputs = model.encode(
            list(texts),
            batch_size=self.batch_size,
            max_length=self.max_length,
            return_dense=True,
            return_sparse=False,
            return_colbert_vecs=False,
        )
        return np.asarray(outputs["dense_vecs"], dtype=np.float32)


__all__ = ["Embedder", "BGEM3Embedder", "DEFAULT_MODEL_NAME"]
