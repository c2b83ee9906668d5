from __future__ import annotations

import numpy as np
import pytest

from agents.query_agent import RunbookQueryAgent, create_agent
from rag_core.chunking import chunk_runbook_record
from rag_core.context import NO_RESULTS_CONTEXT
from rag_core.embeddings import BGEM3Embedder
from rag_core.indexing import QdrantVectorIndex
from rag_core.retrieval import Retriever
from runbook_pipeline.config import RunbookRagSettings


@pytest.fixture
def agent(memory_index, fake_embedder):
    return RunbookQueryAgent(retriever=Retriever(index=memory_index, embedder=fake_embedder))


def test_build_context_without_results(agent):
    result = agent.build_context("T1003 설정 방법")

    assert result.context == NO_RESULTS_CONTEXT
    assert result.sources == []
    assert result.has_results is False


def test_build_context_with_results(agent, indexer, t1003_record):
    indexer.add_documents(chunk_runbook_record(t1003_record, "T1003.yml"))

    result = agent.build_context("T1003 설정 방법", k=5)

    assert result.has_results
    assert result.context.startswith("\n=== [T1003] OS 자격 증명 덤핑 (CRED-001) ===")
    assert "단계별 설정 방법 (중요" in result.context
    assert result.summary.techniques == ["T1003"]
    assert len(result.sources) == result.summary.total_docs


def test_build_context_for_technique_filters(agent, indexer, memory_index, t1003_record):
    indexer.add_documents(chunk_runbook_record(t1003_record, "T1003.yml"))

    result = agent.build_context_for_technique("LSA 보호", "T1110")

    assert result.context == NO_RESULTS_CONTEXT
    assert memory_index.queries[0] == {"technique_id": "T1110"}


def test_retrieve_passes_options(agent, indexer, t1003_record):
    indexer.add_documents(chunk_runbook_record(t1003_record, "T1003.yml"))

    response = agent.retrieve("자격 증명", k=2, use_mmr=True)

    assert response.search_method == "MMR"


def test_create_agent_wires_settings():
    settings = RunbookRagSettings(
        qdrant_location=":memory:",
        collection_name="agent_test",
        embedding_model="local/bge-m3",
        embedding_dim=16,
    )

    agent = create_agent(settings)

    retriever = agent.retriever
    assert isinstance(retriever.index, QdrantVectorIndex)
    assert retriever.index.collection_name == "agent_test"
    assert retriever.index.vector_size == 16
    assert isinstance(retriever.embedder, BGEM3Embedder)
    assert retriever.embedder.model_name == "local/bge-m3"


def test_bge_m3_embedder_uses_dense_output():
    class StubModel:
        def __init__(self):
            self.kwargs = None

        def encode(self, texts, **kwargs):
            self.kwargs = kwargs
            return {"dense_vecs": np.ones((len(texts), 4))}

    embedder = BGEM3Embedder(batch_size=2, max_length=128)
    embedder._model = StubModel()

    vectors = embedder.embed_documents(["a", "b", "c"])

    assert vectors.shape == (3, 4)
    assert vectors.dtype == np.float32
    assert embedder._model.kwargs["return_sparse"] is False
    assert embedder._model.kwargs["max_length"] == 128
    assert embedder.embed_query("a") == [1.0, 1.0, 1.0, 1.0]
    assert embedder.embed_documents([]).shape == (0, 0)


def test_build_context_with_mapping_context(agent, indexer, t1003_record):
    indexer.add_documents(chunk_runbook_record(t1003_record, "T1003.yml"))

    context = {"technique_id": "T1003", "threat_type_kr": "자격 증명 탈취"}

    result = agent.build_context("무엇을 해야 하나요", context=context)

    assert result.has_results
    assert result.summary.techniques == ["T1003"]
