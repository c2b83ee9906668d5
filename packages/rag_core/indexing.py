from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, TypeVar

import numpy as np
from qdrant_client import QdrantClient
from qdrant_client.http.exceptions import ResponseHandlingException
from qdrant_client.http.models import (
    Distance,
    FieldCondition,
    Filter,
    MatchValue,
    PayloadSchemaType,
    PointStruct,
    VectorParams,
)

from runbook_pipeline.config import RunbookRagSettings, get_settings

from .chunking import load_corpus_chunks
from .embeddings import Embedder
from .errors import EmptyCorpusError, VectorIndexConnectionError
from .mmr import maximal_marginal_relevance
from .models import Chunk, IndexBuildReport, IndexStatus

_log = logging.getLogger(__name__)

COLLECTION_NAME = "threat_improvement_runbooks"
DENSE_VECTOR_NAME = "dense"
CONTENT_KEY = "content"
FILTERABLE_FIELDS = ("technique_id", "threat_type", "event_ids")

_TRANSIENT_ERRORS = (ResponseHandlingException, ConnectionError, TimeoutError)

T = TypeVar("T")


@dataclass(frozen=True)
class VectorHit:
    """Raw hit returned by a VectorIndex."""

    content: str
    metadata: Dict[str, Any]
    score: Optional[float] = None
    vector: Optional[List[float]] = field(default=None, repr=False)


class VectorIndex(ABC):
    """Storage and nearest-neighbour primitives used by the retrieval core."""

    @abstractmethod
    def upsert(
        self,
        ids: Sequence[str],
        vectors: Sequence[Sequence[float]],
        payloads: Sequence[Mapping[str, Any]],
    ) -> None:
        ...

    @abstractmethod
    def query(
        self,
        vector: Sequence[float],
        k: int,
        metadata_filter: Optional[Mapping[str, str]] = None,
    ) -> List[VectorHit]:
        """Top-k by similarity, optionally restricted by exact-match metadata."""

    @abstractmethod
    def query_diverse(
        self,
        vector: Sequence[float],
        k: int,
        fetch_k: int,
        lambda_mult: float = 0.5,
    ) -> List[VectorHit]:
        """MMR selection of k hits out of fetch_k similarity candidates."""

    @abstractmethod
    def count(self) -> int:
        ...

    @abstractmethod
    def ping(self) -> None:
        """Raise if the backing store is unreachable."""

    @abstractmethod
    def delete_collection(self) -> None:
        ...


def encode_metadata(metadata: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Flatten metadata to the scalar values the index can store.

    ``None`` becomes an empty string; lists and mappings become JSON strings.
    """
    encoded: dict[str, Any] = {}
    for key, value in metadata.items():
        if value is None:
            encoded[key] = ""
        elif isinstance(value, (list, tuple, dict)):
            encoded[key] = json.dumps(value, ensure_ascii=False)
        elif isinstance(value, (str, int, float, bool)):
            encoded[key] = value
        else:
            encoded[key] = str(value)
    return encoded


def point_id_for(chunk_id: str) -> str:
    """Stable Qdrant point id derived from the chunk id."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, chunk_id))


def _to_qdrant_filter(metadata_filter: Optional[Mapping[str, str]]) -> Optional[Filter]:
    if not metadata_filter:
        return None
    return Filter(
        must=[
            FieldCondition(key=key, match=MatchValue(value=value))
            for key, value in metadata_filter.items()
        ]
    )


def get_qdrant_client(settings: RunbookRagSettings | None = None) -> QdrantClient:
    """Return a Qdrant client configured from settings or defaults."""
    if settings is None:
        settings = get_settings()
    if settings.qdrant_location:
        return QdrantClient(location=settings.qdrant_location, timeout=int(settings.qdrant_timeout))
    return QdrantClient(
        host=settings.qdrant_host,
        port=settings.qdrant_port,
        grpc_port=settings.qdrant_grpc_port,
        prefer_grpc=settings.qdrant_prefer_grpc,
        timeout=int(settings.qdrant_timeout),
    )


class QdrantVectorIndex(VectorIndex):
    """
    VectorIndex backed by a single Qdrant collection.

    The collection is created on first use. Creation is guarded so that
    concurrent first callers cannot race each other into duplicate creates.
    """

    def __init__(
        self,
        client: QdrantClient,
        collection_name: str = COLLECTION_NAME,
        vector_size: int = 1024,
        max_retries: int = 3,
        retry_backoff_seconds: float = 0.5,
    ) -> None:
        self.client = client
        self.collection_name = collection_name
        self.vector_size = vector_size
        self.max_retries = max(1, max_retries)
        self.retry_backoff_seconds = retry_backoff_seconds
        self._ready = False
        self._lock = threading.Lock()

    def _call(self, operation: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        delay = self.retry_backoff_seconds
        attempt = 1
        while True:
            try:
                return func(*args, **kwargs)
            except _TRANSIENT_ERRORS as exc:
                if attempt >= self.max_retries:
                    raise VectorIndexConnectionError(
                        f"Qdrant {operation} failed after {attempt} attempt(s): {exc}"
                    ) from exc
                _log.warning(
                    "Qdrant %s failed (attempt %d/%d): %s; retrying in %.1fs",
                    operation,
                    attempt,
                    self.max_retries,
                    exc,
                    delay,
                )
                time.sleep(delay)
                delay *= 2
                attempt += 1

    def ensure_collection(self) -> None:
        """Create the collection with dense vectors if it does not exist."""
        if self._ready:
            return
        with self._lock:
            if self._ready:
                return
            exists = self._call("collection_exists", self.client.collection_exists, self.collection_name)
            if not exists:
                _log.info(
                    "Creating Qdrant collection '%s' (dim=%d)", self.collection_name, self.vector_size
                )
                self._call(
                    "create_collection",
                    self.client.create_collection,
                    collection_name=self.collection_name,
                    vectors_config={
                        DENSE_VECTOR_NAME: VectorParams(size=self.vector_size, distance=Distance.COSINE)
                    },
                )
                for field_name in FILTERABLE_FIELDS:
                    self._call(
                        "create_payload_index",
                        self.client.create_payload_index,
                        collection_name=self.collection_name,
                        field_name=field_name,
                        field_schema=PayloadSchemaType.KEYWORD,
                    )
            else:
                _log.info("Connected to Qdrant collection '%s'", self.collection_name)
            self._ready = True

    def upsert(
        self,
        ids: Sequence[str],
        vectors: Sequence[Sequence[float]],
        payloads: Sequence[Mapping[str, Any]],
    ) -> None:
        if not (len(ids) == len(vectors) == len(payloads)):
            raise ValueError(
                f"ids/vectors/payloads length mismatch: {len(ids)}/{len(vectors)}/{len(payloads)}"
            )
        self.ensure_collection()
        points = [
            PointStruct(
                id=point_id_for(chunk_id),
                vector={DENSE_VECTOR_NAME: np.asarray(vector, dtype=np.float32).tolist()},
                payload=dict(payload),
            )
            for chunk_id, vector, payload in zip(ids, vectors, payloads)
        ]
        _log.info("Upserting %d points to Qdrant...", len(points))
        self._call(
            "upsert", self.client.upsert, collection_name=self.collection_name, points=points, wait=True
        )

    def _query_points(
        self,
        vector: Sequence[float],
        limit: int,
        query_filter: Optional[Filter] = None,
        with_vectors: bool = False,
    ) -> list:
        self.ensure_collection()
        response = self._call(
            "query_points",
            self.client.query_points,
            collection_name=self.collection_name,
            query=list(vector),
            using=DENSE_VECTOR_NAME,
            query_filter=query_filter,
            limit=limit,
            with_payload=True,
            with_vectors=[DENSE_VECTOR_NAME] if with_vectors else False,
        )
        return list(response.points)

    @staticmethod
    def _to_hit(point: Any, score: Optional[float]) -> VectorHit:
        payload = dict(point.payload or {})
        content = str(payload.pop(CONTENT_KEY, "") or "")
        vector = None
        if isinstance(point.vector, dict):
            vector = point.vector.get(DENSE_VECTOR_NAME)
        elif point.vector is not None:
            vector = point.vector
        return VectorHit(content=content, metadata=payload, score=score, vector=vector)

    def query(
        self,
        vector: Sequence[float],
        k: int,
        metadata_filter: Optional[Mapping[str, str]] = None,
    ) -> List[VectorHit]:
        points = self._query_points(vector, limit=k, query_filter=_to_qdrant_filter(metadata_filter))
        return [self._to_hit(point, point.score) for point in points]

    def query_diverse(
        self,
        vector: Sequence[float],
        k: int,
        fetch_k: int,
        lambda_mult: float = 0.5,
    ) -> List[VectorHit]:
        candidates = self._query_points(vector, limit=max(fetch_k, k), with_vectors=True)
        hits = [self._to_hit(point, None) for point in candidates]
        usable = [hit for hit in hits if hit.vector is not None]
        selected = maximal_marginal_relevance(
            vector, [hit.vector for hit in usable], k=k, lambda_mult=lambda_mult
        )
        return [usable[i] for i in selected]

    def count(self) -> int:
        # Read-only: a missing collection counts as empty and is not created.
        if not self._ready and not self._call(
            "collection_exists", self.client.collection_exists, self.collection_name
        ):
            return 0
        result = self._call("count", self.client.count, collection_name=self.collection_name, exact=True)
        return int(result.count)

    def ping(self) -> None:
        self._call("get_collections", self.client.get_collections)

    def delete_collection(self) -> None:
        with self._lock:
            self._call("delete_collection", self.client.delete_collection, collection_name=self.collection_name)
            self._ready = False
        _log.info("Deleted Qdrant collection '%s'", self.collection_name)


def create_vector_index(
    settings: RunbookRagSettings | None = None,
    client: QdrantClient | None = None,
) -> QdrantVectorIndex:
    if settings is None:
        settings = get_settings()
    return QdrantVectorIndex(
        client=client or get_qdrant_client(settings),
        collection_name=settings.collection_name,
        vector_size=settings.embedding_dim,
        max_retries=settings.max_retries,
        retry_backoff_seconds=settings.retry_backoff_seconds,
    )


def _batch_iter(seq: Sequence[T], batch_size: int) -> Iterable[Sequence[T]]:
    for i in range(0, len(seq), batch_size):
        yield seq[i : i + batch_size]


class Indexer:
    """Embeds chunks and writes them to a VectorIndex."""

    def __init__(self, index: VectorIndex, embedder: Embedder, batch_size: int = 64) -> None:
        self.index = index
        self.embedder = embedder
        self.batch_size = max(1, batch_size)

    def add_documents(self, chunks: Sequence[Chunk]) -> int:
        """Upsert chunks; returns how many were written."""
        if not chunks:
            _log.warning("No chunks to add to the index")
            return 0

        written = 0
        for batch in _batch_iter(list(chunks), self.batch_size):
            vectors = self.embedder.embed_documents([chunk.content for chunk in batch])
            payloads = []
            for chunk in batch:
                payload = encode_metadata(chunk.metadata.model_dump(mode="json"))
                payload[CONTENT_KEY] = chunk.content
                payloads.append(payload)
            self.index.upsert([chunk.metadata.chunk_key for chunk in batch], vectors, payloads)
            written += len(batch)

        _log.info("Added %d chunks to the index", written)
        return written

    def count(self) -> int:
        return self.index.count()

    def test_connection(self) -> bool:
        try:
            self.index.ping()
            self.index.count()
        except Exception as exc:  # noqa: BLE001
            _log.error("Vector index connection test failed: %s", exc)
            return False
        return True

    def delete_collection(self, confirm: bool = False) -> None:
        """Drop the whole collection. Requires ``confirm=True``."""
        if not confirm:
            raise ValueError("delete_collection is destructive; pass confirm=True")
        self.index.delete_collection()


def build_index(
    indexer: Indexer,
    runbooks_dir: Optional[Path] = None,
    rebuild: bool = False,
) -> IndexBuildReport:
    """
    Load, chunk and index every runbook.

    With ``rebuild`` the collection is dropped first. Queries running during a
    rebuild may see a partial collection.
    """
    if rebuild:
        try:
            indexer.delete_collection(confirm=True)
        except Exception as exc:  # noqa: BLE001
            _log.warning("Collection delete failed, continuing with indexing: %s", exc)

    chunks = load_corpus_chunks(runbooks_dir)
    if not chunks:
        raise EmptyCorpusError("No runbook chunks to index; check the runbooks directory")

    indexer.add_documents(chunks)
    collection_count = indexer.count()
    file_count = len({chunk.metadata.source for chunk in chunks})

    _log.info("Indexed %d runbooks -> %d chunks (collection=%d)", file_count, len(chunks), collection_count)
    return IndexBuildReport(
        file_count=file_count,
        chunk_count=len(chunks),
        collection_count=collection_count,
    )


def index_status(indexer: Indexer) -> IndexStatus:
    if not indexer.test_connection():
        return IndexStatus(connected=False, indexed=False, document_count=0)
    count = indexer.count()
    return IndexStatus(connected=True, indexed=count > 0, document_count=count)


__all__ = [
    "COLLECTION_NAME",
    "VectorHit",
    "VectorIndex",
    "QdrantVectorIndex",
    "Indexer",
    "encode_metadata",
    "point_id_for",
    "get_qdrant_client",
    "create_vector_index",
    "build_index",
    "index_status",
]
