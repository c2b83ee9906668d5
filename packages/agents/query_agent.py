from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Optional

from pydantic import BaseModel, Field

from rag_core.context import (
    NO_RESULTS_CONTEXT,
    build_source_refs,
    format_search_results_as_context,
    summarize_search_results,
)
from rag_core.embeddings import BGEM3Embedder
from rag_core.indexing import create_vector_index
from rag_core.models import SearchFilters, SearchResponse, SearchSummary, SourceRef
from rag_core.retrieval import Retriever
from runbook_pipeline.config import RunbookRagSettings, get_settings

_log = logging.getLogger(__name__)


class RunbookContext(BaseModel):
    """Everything a generator needs to answer one question."""

    context: str
    sources: List[SourceRef] = Field(default_factory=list)
    summary: SearchSummary = Field(default_factory=SearchSummary)
    has_results: bool = False


@dataclass
class RunbookQueryAgent:
    """Retrieval front door: question in, generator-ready context out."""

    retriever: Retriever

    def retrieve(self, question: str, **options: Any) -> SearchResponse:
        """Forward to ``Retriever.search``; options are its keyword arguments."""
        return self.retriever.search(question, **options)

    def _to_context(self, response: SearchResponse) -> RunbookContext:
        if not response.results:
            _log.info("No runbook chunks matched: %s", response.query[:50])
            return RunbookContext(context=NO_RESULTS_CONTEXT)

        return RunbookContext(
            context=format_search_results_as_context(response),
            sources=build_source_refs(response),
            summary=summarize_search_results(response),
            has_results=True,
        )

    def build_context(self, question: str, **options: Any) -> RunbookContext:
        response = self.retrieve(question, **options)
        result = self._to_context(response)
        _log.info(
            "Built context: %d sources, techniques=%s",
            len(result.sources),
            result.summary.techniques,
        )
        return result

    def build_context_for_technique(
        self,
        question: str,
        technique_id: str,
        k: int = 3,
    ) -> RunbookContext:
        """Context restricted to one technique's runbook."""
        response = self.retriever.search(
            question,
            k=k,
            filters=SearchFilters(technique_id=technique_id),
        )
        return self._to_context(response)


def create_agent(settings: Optional[RunbookRagSettings] = None) -> RunbookQueryAgent:
    """Wire settings, embedder, Qdrant index and retriever into one agent."""
    if settings is None:
        settings = get_settings()

    embedder = BGEM3Embedder(
        model_name=settings.embedding_model,
        batch_size=settings.embedding_batch_size,
        max_length=settings.embedding_max_length,
    )
    index = create_vector_index(settings)
    _log.info(
        "Created runbook query agent (collection=%s, model=%s)",
        settings.collection_name,
        settings.embedding_model,
    )
    return RunbookQueryAgent(retriever=Retriever(index=index, embedder=embedder))


__all__ = ["RunbookQueryAgent", "RunbookContext", "create_agent"]
