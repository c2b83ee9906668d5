from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from pydantic import ValidationError

from .embeddings import Embedder
from .indexing import VectorHit, VectorIndex
from .models import (
    ChunkMetadata,
    QuestionType,
    SearchFilters,
    SearchResponse,
    SearchResult,
    ThreatContext,
    section_priority,
)
from .query import (
    FiltersLike,
    analyze_question_type,
    create_metadata_filter,
    enhance_query,
    extract_technique_id,
)

_log = logging.getLogger(__name__)

EXPANSION_K = 50
MAX_RESULTS_FLOOR = 20

ContextLike = Union[ThreatContext, Mapping[str, Any], None]


def _to_result(hit: VectorHit, rank: int) -> SearchResult:
    return SearchResult(
        rank=rank,
        content=hit.content,
        metadata=ChunkMetadata.model_validate(hit.metadata),
        score=hit.score,
    )


def most_common_technique_id(results: Sequence[SearchResult]) -> Optional[str]:
    """Most frequent technique id; ties go to the one seen first."""
    counts: Dict[str, int] = {}
    for result in results:
        tid = result.metadata.technique_id
        if tid:
            counts[tid] = counts.get(tid, 0) + 1
    if not counts:
        return None
    # max() keeps the first maximal key of an insertion-ordered dict.
    return max(counts, key=counts.__getitem__)


def resolve_technique_id(
    question: str,
    results: Sequence[SearchResult],
    context: Optional[ThreatContext] = None,
    filters: Optional[SearchFilters] = None,
) -> Optional[str]:
    """
    Pick the technique the answer should focus on.

    Order: id written in the question, then the dominant id among results,
    then whatever the caller's context or filters carry.
    """
    technique_id = extract_technique_id(question)
    if technique_id:
        return technique_id
    technique_id = most_common_technique_id(results)
    if technique_id:
        return technique_id
    if context is not None and context.technique_id:
        return context.technique_id
    if filters is not None and filters.technique_id:
        return filters.technique_id
    return None


def reorder_by_priority(results: Sequence[SearchResult], question_type: QuestionType) -> List[SearchResult]:
    """
    Stable sort by section priority when the question asks for procedures.

    Ties keep their current rank order; ranks are re-numbered from 1.
    """
    if question_type.priority_section is None:
        return list(results)

    ordered = sorted(
        results,
        key=lambda r: (section_priority(r.metadata.section_type), r.rank),
    )
    return [r.model_copy(update={"rank": position}) for position, r in enumerate(ordered, start=1)]


class Retriever:
    """
    Question to ranked runbook chunks.

    One primary search (similarity or MMR), an optional technique-scoped
    expansion pass, section-priority re-ranking and truncation.
    """

    def __init__(
        self,
        index: VectorIndex,
        embedder: Embedder,
        expansion_k: int = EXPANSION_K,
        max_results_floor: int = MAX_RESULTS_FLOOR,
    ) -> None:
        self.index = index
        self.embedder = embedder
        self.expansion_k = expansion_k
        self.max_results_floor = max_results_floor

    def _similarity(
        self,
        query: str,
        k: int,
        metadata_filter: Optional[Mapping[str, str]] = None,
    ) -> List[VectorHit]:
        vector = self.embedder.embed_query(query)
        return self.index.query(vector, k, metadata_filter)

    def expand_by_technique_id(self, results: List[SearchResult], technique_id: str) -> List[SearchResult]:
        """
        Append sibling chunks of ``technique_id`` missing from ``results``.

        A failed expansion search leaves ``results`` untouched; hits whose
        payload does not validate are skipped.
        """
        if not technique_id:
            return results

        try:
            related = self._similarity(
                f"MITRE ATT&CK {technique_id}",
                self.expansion_k,
                {"technique_id": str(technique_id)},
            )
        except Exception as exc:  # noqa: BLE001
            _log.error("Result expansion for %s failed: %s", technique_id, exc, exc_info=True)
            return results

        seen = {r.metadata.chunk_key for r in results}
        expanded = list(results)
        for hit in related:
            try:
                candidate = _to_result(hit, rank=0).model_copy(update={"score": None})
            except ValidationError as exc:
                _log.warning("Skipping expansion hit with invalid metadata for %s: %s", technique_id, exc)
                continue
            if candidate.metadata.chunk_key in seen:
                continue
            seen.add(candidate.metadata.chunk_key)
            expanded.append(candidate)

        _log.debug(
            "Expanded %d -> %d results for technique %s", len(results), len(expanded), technique_id
        )
        return expanded

    def search(
        self,
        question: str,
        k: int = 5,
        context: ContextLike = None,
        filters: FiltersLike = None,
        use_mmr: bool = False,
        lambda_mult: float = 0.5,
    ) -> SearchResponse:
        """Run the full retrieval chain. A failed primary search propagates."""
        if isinstance(filters, Mapping):
            filters = SearchFilters.model_validate(dict(filters))
        if isinstance(context, Mapping):
            context = ThreatContext.model_validate(dict(context))

        question_type = analyze_question_type(question)
        enhanced = enhance_query(question, context)
        metadata_filter = create_metadata_filter(filters)

        # MMR and metadata filters are mutually exclusive.
        use_diverse = use_mmr and not metadata_filter
        if use_diverse:
            vector = self.embedder.embed_query(enhanced)
            hits = self.index.query_diverse(vector, k=k, fetch_k=k * 2, lambda_mult=lambda_mult)
            results = [
                _to_result(hit, rank).model_copy(update={"score": None})
                for rank, hit in enumerate(hits, start=1)
            ]
        else:
            hits = self._similarity(enhanced, k, metadata_filter)
            results = [_to_result(hit, rank) for rank, hit in enumerate(hits, start=1)]

        technique_id = resolve_technique_id(question, results, context, filters)
        if technique_id and results:
            results = self.expand_by_technique_id(results, technique_id)

        results = reorder_by_priority(results, question_type)
        results = results[: max(k, self.max_results_floor)]

        method = "MMR" if use_diverse else "similarity"
        _log.info(
            "Search (%s) returned %d results; technique=%s, priority=%s",
            method,
            len(results),
            technique_id,
            question_type.priority_section.value if question_type.priority_section else None,
        )
        return SearchResponse(
            query=question,
            enhanced_query=enhanced,
            results=results,
            total_results=len(results),
            filters=metadata_filter,
            search_method=method,
            question_type=question_type,
            extracted_technique_id=technique_id,
        )

    def search_by_technique_id(self, question: str, technique_id: str, k: int = 3) -> SearchResponse:
        return self.search(question, k=k, filters=SearchFilters(technique_id=technique_id))

    def search_by_threat_type(self, question: str, threat_type: str, k: int = 5) -> SearchResponse:
        # MMR is requested but the threat_type filter takes precedence.
        return self.search(question, k=k, filters=SearchFilters(threat_type=threat_type), use_mmr=True)

    def search_by_event_ids(self, question: str, event_ids: Sequence[str], k: int = 5) -> SearchResponse:
        return self.search(question, k=k, filters=SearchFilters(event_ids=list(event_ids)))


__all__ = [
    "Retriever",
    "EXPANSION_K",
    "MAX_RESULTS_FLOOR",
    "most_common_technique_id",
    "resolve_technique_id",
    "reorder_by_priority",
]
