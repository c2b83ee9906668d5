from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SectionType(str, Enum):
    """Semantic category of a runbook chunk."""

    SUMMARY = "summary"
    TECHNIQUE_INFO = "technique_info"
    LOG_FIELDS = "log_fields"
    LOG_REASON = "log_reason"
    LOG_SCENARIO = "log_scenario"
    POLICY_DIRECTION = "policy_direction"
    STEP = "step"
    OPERATIONS_GUIDANCE = "operations_guidance"
    REFERENCES = "references"


# Lower value sorts first when a question asks for concrete procedures.
SECTION_PRIORITY: Dict[SectionType, int] = {
    SectionType.STEP: 1,
    SectionType.POLICY_DIRECTION: 2,
    SectionType.SUMMARY: 3,
    SectionType.LOG_REASON: 4,
    SectionType.OPERATIONS_GUIDANCE: 5,
    SectionType.LOG_FIELDS: 6,
    SectionType.LOG_SCENARIO: 7,
    SectionType.REFERENCES: 8,
}
UNKNOWN_SECTION_PRIORITY = 99


def section_priority(section_type: Optional[SectionType]) -> int:
    if section_type is None:
        return UNKNOWN_SECTION_PRIORITY
    return SECTION_PRIORITY.get(section_type, UNKNOWN_SECTION_PRIORITY)


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        return "\n".join(str(v) for v in value if v is not None)
    return str(value)


class RunbookStep(BaseModel):
    """One entry of the step-by-step configuration section."""

    title: Optional[str] = None
    details: Optional[str] = None

    @field_validator("title", "details", mode="before")
    @classmethod
    def coerce_text(cls, value: Any) -> Optional[str]:
        return _as_text(value)


class RunbookReference(BaseModel):
    """External reference (title + url)."""

    title: Optional[str] = None
    url: Optional[str] = None

    @field_validator("title", "url", mode="before")
    @classmethod
    def coerce_text(cls, value: Any) -> Optional[str]:
        return _as_text(value)


class RunbookRecord(BaseModel):
    """Parsed remediation runbook keyed by a MITRE ATT&CK technique id."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    case_id: Optional[str] = Field(default=None, description="Case identifier, e.g. 'CRED-001'.")
    threat_type: Optional[str] = Field(default=None, description="Threat type code, e.g. 'CRED'.")
    threat_type_label: Optional[str] = Field(
        default=None,
        alias="threat_type_kr",
        description="Human-readable threat type label.",
    )
    technique_id: Optional[str] = Field(default=None, description="MITRE ATT&CK technique id.")
    technique_name: Optional[str] = Field(
        default=None,
        alias="technique_name_kr",
        description="Human-readable technique name.",
    )
    event_ids: List[str] = Field(
        default_factory=list,
        description="Windows event ids associated with the technique (ordered, unique).",
    )

    summary: Optional[str] = None
    log_fields: Optional[str] = None
    log_reason: Optional[str] = None
    log_scenario: Optional[str] = None
    policy_direction: Optional[str] = None
    steps: List[RunbookStep] = Field(default_factory=list)
    operations_guidance: Optional[str] = None
    references: List[RunbookReference] = Field(default_factory=list)

    @field_validator(
        "case_id",
        "threat_type",
        "threat_type_label",
        "technique_id",
        "technique_name",
        "summary",
        "log_fields",
        "log_reason",
        "log_scenario",
        "policy_direction",
        "operations_guidance",
        mode="before",
    )
    @classmethod
    def coerce_text(cls, value: Any) -> Optional[str]:
        return _as_text(value)

    @field_validator("event_ids", mode="before")
    @classmethod
    def normalize_event_ids(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if not isinstance(value, (list, tuple)):
            value = [value]
        seen: set[str] = set()
        unique: list[str] = []
        for item in value:
            if item is None:
                continue
            text = str(item).strip()
            if text and text not in seen:
                seen.add(text)
                unique.append(text)
        return unique

    @field_validator("steps", "references", mode="before")
    @classmethod
    def drop_null_entries(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, list):
            return [item for item in value if isinstance(item, dict)]
        return value


class ChunkMetadata(BaseModel):
    """Typed chunk metadata; scalar encoding happens in the index adapter."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    case_id: str = ""
    threat_type: str = ""
    threat_type_label: str = ""
    technique_id: str = ""
    technique_name: str = ""
    event_ids: str = Field(default="", description="Comma-delimited event ids.")
    source: str = ""
    section_type: Optional[SectionType] = None
    section_title: str = ""
    chunk_index: int = 0
    sub_chunk_index: Optional[int] = None
    total_sub_chunks: Optional[int] = None
    total_chunks: int = 0
    chunk_id: str = ""

    @field_validator("section_type", mode="before")
    @classmethod
    def unknown_section_is_none(cls, value: Any) -> Optional[SectionType]:
        if isinstance(value, SectionType):
            return value
        try:
            return SectionType(str(value))
        except ValueError:
            return None

    @field_validator("sub_chunk_index", "total_sub_chunks", mode="before")
    @classmethod
    def blank_is_none(cls, value: Any) -> Any:
        if value == "":
            return None
        return value

    @field_validator(
        "case_id",
        "threat_type",
        "threat_type_label",
        "technique_id",
        "technique_name",
        "event_ids",
        "source",
        "section_title",
        "chunk_id",
        mode="before",
    )
    @classmethod
    def stringify(cls, value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, (list, tuple)):
            return ",".join(str(v) for v in value)
        return str(value)

    @property
    def chunk_key(self) -> str:
        """Identity used for de-duplication across searches."""
        if self.chunk_id:
            return self.chunk_id
        return f"{self.source or 'unknown'}_chunk_{self.chunk_index}"


class Chunk(BaseModel):
    """Unit of indexing and retrieval."""

    model_config = ConfigDict(frozen=True)

    id: str
    content: str = Field(..., min_length=1)
    metadata: ChunkMetadata


class SearchResult(BaseModel):
    """Ranked retrieval hit."""

    rank: int = Field(..., ge=0)
    content: str
    metadata: ChunkMetadata
    score: Optional[float] = None


class QuestionType(BaseModel):
    is_detail_request: bool = False
    is_step_request: bool = False
    priority_section: Optional[SectionType] = None


class ThreatContext(BaseModel):
    """Threat currently shown to the user; used to enrich the query."""

    model_config = ConfigDict(populate_by_name=True)

    technique_id: Optional[str] = None
    threat_type_label: Optional[str] = Field(default=None, alias="threat_type_kr")
    technique_name: Optional[str] = Field(default=None, alias="technique_name_kr")
    event_ids: List[str] = Field(default_factory=list)

    @field_validator("event_ids", mode="before")
    @classmethod
    def stringify_ids(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if not isinstance(value, (list, tuple)):
            value = [value]
        return [str(v) for v in value]


class SearchFilters(BaseModel):
    """Caller-supplied metadata constraints."""

    technique_id: Optional[str] = None
    threat_type: Optional[str] = None
    event_ids: List[str] = Field(default_factory=list)

    @field_validator("event_ids", mode="before")
    @classmethod
    def stringify_ids(cls, value: Any) -> List[str]:
        if value is None:
            return []
        return [str(v) for v in value]


class SearchResponse(BaseModel):
    query: str
    enhanced_query: str
    results: List[SearchResult] = Field(default_factory=list)
    total_results: int = 0
    filters: Optional[Dict[str, str]] = None
    search_method: str = "similarity"
    question_type: QuestionType = Field(default_factory=QuestionType)
    extracted_technique_id: Optional[str] = None


class SourceRef(BaseModel):
    """Lightweight citation shown next to a generated answer."""

    technique_id: Optional[str] = None
    technique_name: Optional[str] = None
    case_id: Optional[str] = None
    threat_type: Optional[str] = None
    threat_type_label: Optional[str] = None


class SearchSummary(BaseModel):
    total_docs: int = 0
    techniques: List[str] = Field(default_factory=list)
    threat_types: List[str] = Field(default_factory=list)
    search_method: Optional[str] = None


class IndexBuildReport(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_count: int = Field(..., alias="fileCount", ge=0)
    chunk_count: int = Field(..., alias="chunkCount", ge=0)
    collection_count: int = Field(..., alias="collectionCount", ge=0)


class IndexStatus(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    connected: bool
    indexed: bool
    document_count: int = Field(..., alias="documentCount", ge=0)


__all__ = [
    "SectionType",
    "SECTION_PRIORITY",
    "UNKNOWN_SECTION_PRIORITY",
    "section_priority",
    "RunbookStep",
    "RunbookReference",
    "RunbookRecord",
    "ChunkMetadata",
    "Chunk",
    "SearchResult",
    "QuestionType",
    "ThreatContext",
    "SearchFilters",
    "SearchResponse",
    "SourceRef",
    "SearchSummary",
    "IndexBuildReport",
    "IndexStatus",
]
