from __future__ import annotations

import logging
import re
from typing import Any, Dict, Mapping, Optional, Union

from .models import QuestionType, SearchFilters, SectionType, ThreatContext

_log = logging.getLogger(__name__)

TECHNIQUE_ID_PATTERN = re.compile(r"T\d{4}(?:\.\d{3})?", re.IGNORECASE)

DETAIL_KEYWORDS = (
    "상세",
    "설정 방법",
    "어떻게",
    "방법",
    "단계",
    "구체적",
    "detailed",
    "how to",
    "steps",
    "specifically",
)
STEP_KEYWORDS = ("step", "단계별", "설정", "step-by-step", "configure")

FiltersLike = Union[SearchFilters, Mapping[str, Any], None]


def extract_technique_id(question: str) -> Optional[str]:
    """
    Return the first MITRE ATT&CK technique id in ``question``, upper-cased.

    >>> extract_technique_id("t1059.001 대응 방법")
    'T1059.001'
    """
    match = TECHNIQUE_ID_PATTERN.search(question or "")
    if match is None:
        return None
    return match.group(0).upper()


def analyze_question_type(question: str) -> QuestionType:
    """Classify whether the question asks for details or concrete steps."""
    lowered = (question or "").lower()
    is_detail = any(keyword in lowered for keyword in DETAIL_KEYWORDS)
    is_step = any(keyword in lowered for keyword in STEP_KEYWORDS)
    return QuestionType(
        is_detail_request=is_detail,
        is_step_request=is_step,
        priority_section=SectionType.STEP if (is_detail or is_step) else None,
    )


def enhance_query(question: str, context: Optional[ThreatContext] = None) -> str:
    """Append threat context terms to the question used for embedding."""
    if context is None:
        return question

    parts: list[str] = []
    if context.technique_id:
        parts.append(f"MITRE ATT&CK {context.technique_id}")
    if context.threat_type_label:
        parts.append(context.threat_type_label)
    if context.technique_name:
        parts.append(context.technique_name)
    if context.event_ids:
        parts.append(f"Event ID {', '.join(context.event_ids)}")

    if not parts:
        return question
    return f"{question} {' '.join(parts)}"


def _coerce_filters(filters: FiltersLike) -> Optional[SearchFilters]:
    if filters is None:
        return None
    if isinstance(filters, SearchFilters):
        return filters
    return SearchFilters.model_validate(dict(filters))


def create_metadata_filter(filters: FiltersLike) -> Optional[Dict[str, str]]:
    """
    Translate caller filters into exact-match metadata constraints.

    Only the first event id is used; chunks store event ids as one
    comma-joined string, so this matches runbooks with exactly that single id.
    """
    resolved = _coerce_filters(filters)
    if resolved is None:
        return None

    conditions: dict[str, str] = {}
    if resolved.technique_id:
        conditions["technique_id"] = resolved.technique_id
    if resolved.threat_type:
        conditions["threat_type"] = resolved.threat_type
    if resolved.event_ids:
        if len(resolved.event_ids) > 1:
            _log.debug("Only the first event id is used for filtering: %s", resolved.event_ids)
        conditions["event_ids"] = resolved.event_ids[0]

    return conditions or None


__all__ = [
    "TECHNIQUE_ID_PATTERN",
    "DETAIL_KEYWORDS",
    "STEP_KEYWORDS",
    "extract_technique_id",
    "analyze_question_type",
    "enhance_query",
    "create_metadata_filter",
]
