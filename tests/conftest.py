"""
Shared fixtures: a deterministic embedder, an in-memory vector index and
sample runbooks. Nothing here needs the BGE-M3 model or a Qdrant server.
"""

from __future__ import annotations

import hashlib
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence

import numpy as np
import pytest

from rag_core.embeddings import Embedder
from rag_core.indexing import CONTENT_KEY, Indexer, VectorHit, VectorIndex
from rag_core.mmr import maximal_marginal_relevance
from rag_core.models import RunbookRecord

FAKE_DIM = 64
_TOKEN = re.compile(r"\w+", re.UNICODE)


class FakeEmbedder(Embedder):
    """Hashed bag-of-words vectors: same text, same vector."""

    def __init__(self, dim: int = FAKE_DIM) -> None:
        self.dim = dim
        self.calls: List[List[str]] = []

    def _vector(self, text: str) -> np.ndarray:
        vec = np.zeros(self.dim, dtype=np.float32)
        for token in _TOKEN.findall(text.lower()):
            digest = hashlib.md5(token.encode("utf-8")).digest()
            vec[int.from_bytes(digest[:4], "little") % self.dim] += 1.0
        if not vec.any():
            vec[0] = 1.0
        return vec / np.linalg.norm(vec)

    def embed_documents(self, texts: Sequence[str]) -> np.ndarray:
        self.calls.append(list(texts))
        return np.stack([self._vector(t) for t in texts]) if texts else np.zeros((0, self.dim))


class InMemoryVectorIndex(VectorIndex):
    """Brute-force cosine index with exact-match payload filters."""

    def __init__(self) -> None:
        self.points: Dict[str, tuple[np.ndarray, Dict[str, Any]]] = {}
        self.queries: List[Optional[Mapping[str, str]]] = []

    def upsert(self, ids, vectors, payloads) -> None:
        for point_id, vector, payload in zip(ids, vectors, payloads):
            self.points[point_id] = (np.asarray(vector, dtype=np.float32), dict(payload))

    def _ranked(self, vector: Sequence[float], metadata_filter=None):
        query = np.asarray(vector, dtype=np.float32)
        scored = []
        for stored, payload in self.points.values():
            if metadata_filter and any(payload.get(k) != v for k, v in metadata_filter.items()):
                continue
            denom = float(np.linalg.norm(stored) * np.linalg.norm(query)) or 1.0
            scored.append((float(stored @ query) / denom, stored, payload))
        # Python's sort is stable, so equal scores keep insertion order.
        scored.sort(key=lambda item: item[0], reverse=True)
        return scored

    @staticmethod
    def _hit(score, stored, payload) -> VectorHit:
        metadata = {k: v for k, v in payload.items() if k != CONTENT_KEY}
        return VectorHit(content=payload[CONTENT_KEY], metadata=metadata, score=score, vector=stored.tolist())

    def query(self, vector, k, metadata_filter=None) -> List[VectorHit]:
        self.queries.append(dict(metadata_filter) if metadata_filter else None)
        return [self._hit(*item) for item in self._ranked(vector, metadata_filter)[:k]]

    def query_diverse(self, vector, k, fetch_k, lambda_mult=0.5) -> List[VectorHit]:
        candidates = self._ranked(vector)[:fetch_k]
        picked = maximal_marginal_relevance(vector, [c[1] for c in candidates], k, lambda_mult)
        return [self._hit(None, candidates[i][1], candidates[i][2]) for i in picked]

    def count(self) -> int:
        return len(self.points)

    def ping(self) -> None:
        return None

    def delete_collection(self) -> None:
        self.points.clear()


def words_text(count: int, prefix: str = "w") -> str:
    """Space separated unique words, 6 characters per word."""
    return " ".join(f"{prefix}{i:04d}" for i in range(count))


@pytest.fixture
def fake_embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def memory_index() -> InMemoryVectorIndex:
    return InMemoryVectorIndex()


@pytest.fixture
def indexer(memory_index, fake_embedder) -> Indexer:
    return Indexer(index=memory_index, embedder=fake_embedder, batch_size=4)


@pytest.fixture
def t1003_record() -> RunbookRecord:
    return RunbookRecord.model_validate(
        {
            "case_id": "CRED-001",
            "threat_type": "CRED",
            "threat_type_kr": "자격 증명 탈취",
            "technique_id": "T1003",
            "technique_name_kr": "OS 자격 증명 덤핑",
            "event_ids": ["4656", "4663"],
            "summary": "LSASS 메모리에서 자격 증명을 덤프하는 공격입니다.",
            "policy_direction": words_text(340),
            "steps": [
                {"title": "LSA 보호 활성화", "details": "RunAsPPL 레지스트리 값을 1로 설정합니다."},
                {"title": "Credential Guard 설정", "details": "그룹 정책에서 Credential Guard를 구성합니다."},
            ],
        }
    )


@pytest.fixture
def runbook_yaml() -> str:
    return """\
case_id: CRED-002
threat_type: CRED
threat_type_kr: 자격 증명 탈취
technique_id: T1110
technique_name_kr: 무차별 대입
event_ids: [4625, 4625, 4771]
summary: 반복적인 로그인 실패로 계정을 추측하는 공격입니다.
log_reason:
  - 짧은 시간 동안 4625 이벤트가 급증합니다.
  - 동일 원본 IP에서 여러 계정으로 시도합니다.
steps:
  - title: 계정 잠금 정책 설정
    details: 5회 실패 시 30분 동안 잠급니다.
  - null
references:
  - title: MITRE T1110
    url: https://attack.mitre.org/techniques/T1110/
"""
