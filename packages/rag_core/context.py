from __future__ import annotations

from typing import Dict, List, Optional

from .models import SearchResponse, SearchResult, SearchSummary, SectionType, SourceRef

NO_RESULTS_CONTEXT = "관련 문서를 찾을 수 없습니다."
UNKNOWN_TECHNIQUE = "unknown"

# Header text and order are read by the downstream prompt; keep them stable.
CONTEXT_SECTIONS = (
    (SectionType.SUMMARY, "## 위협 요약"),
    (SectionType.POLICY_DIRECTION, "## 보안 대책 및 개선 방안"),
    (SectionType.STEP, "## 단계별 설정 방법 (중요: 이 섹션을 우선적으로 사용하세요)"),
    (SectionType.LOG_REASON, "## 로그 판단 근거"),
    (SectionType.LOG_SCENARIO, "## 로그 발생 시나리오"),
    (SectionType.OPERATIONS_GUIDANCE, "## 운영 가이드"),
)
# Bucketed so they never fall through to the unclassified tail.
_SILENT_SECTIONS = (SectionType.LOG_FIELDS, SectionType.REFERENCES)
_BUCKETED = {section for section, _ in CONTEXT_SECTIONS} | set(_SILENT_SECTIONS)


def _group_by_technique(results: List[SearchResult]) -> Dict[str, List[SearchResult]]:
    groups: dict[str, list[SearchResult]] = {}
    for result in results:
        groups.setdefault(result.metadata.technique_id or UNKNOWN_TECHNIQUE, []).append(result)
    return groups


def _technique_header(technique_id: str, first: SearchResult) -> str:
    case_id = first.metadata.case_id
    case_part = f"({case_id})" if case_id else ""
    return f"\n=== [{technique_id}] {first.metadata.technique_name} {case_part} ==="


def format_search_results_as_context(response: Optional[SearchResponse]) -> str:
    """
    Serialize ranked results into the context block handed to a generator.

    Results are grouped by technique id in first-seen order. Inside a group,
    known sections are emitted under fixed headers, then any chunk with a
    section type outside the table is appended as-is. Log field and
    reference chunks are not emitted.
    """
    if response is None or not response.results:
        return NO_RESULTS_CONTEXT

    parts: list[str] = []
    for technique_id, docs in _group_by_technique(response.results).items():
        parts.append(_technique_header(technique_id, docs[0]))

        buckets: dict[Optional[SectionType], list[SearchResult]] = {}
        other: list[SearchResult] = []
        for doc in docs:
            section_type = doc.metadata.section_type
            if section_type in _BUCKETED:
                buckets.setdefault(section_type, []).append(doc)
            else:
                other.append(doc)

        for section_type, header in CONTEXT_SECTIONS:
            section_docs = buckets.get(section_type)
            if not section_docs:
                continue
            parts.append(f"\n{header}")
            parts.extend(doc.content for doc in section_docs)

        parts.extend(f"\n{doc.content}" for doc in other)

    return "\n".join(parts)


def build_source_refs(response: Optional[SearchResponse]) -> List[SourceRef]:
    """One citation per result, in rank order."""
    if response is None:
        return []
    return [
        SourceRef(
            technique_id=r.metadata.technique_id or None,
            technique_name=r.metadata.technique_name or None,
            case_id=r.metadata.case_id or None,
            threat_type=r.metadata.threat_type or None,
            threat_type_label=r.metadata.threat_type_label or None,
        )
        for r in response.results
    ]


def summarize_search_results(response: Optional[SearchResponse]) -> SearchSummary:
    if response is None or not response.results:
        return SearchSummary()

    techniques: list[str] = []
    threat_types: list[str] = []
    for result in response.results:
        meta = result.metadata
        if meta.technique_id and meta.technique_id not in techniques:
            techniques.append(meta.technique_id)
        if meta.threat_type and meta.threat_type not in threat_types:
            threat_types.append(meta.threat_type)

    return SearchSummary(
        total_docs=response.total_results,
        techniques=techniques,
        threat_types=threat_types,
        search_method=response.search_method,
    )


__all__ = [
    "NO_RESULTS_CONTEXT",
    "CONTEXT_SECTIONS",
    "format_search_results_as_context",
    "build_source_refs",
    "summarize_search_results",
]
