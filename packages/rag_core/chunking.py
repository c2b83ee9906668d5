from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from langchain_text_splitters import RecursiveCharacterTextSplitter

from runbook_pipeline.config import get_settings as get_pipeline_settings
from runbook_pipeline.loader import load_runbook_directory, load_runbook_file

from .models import Chunk, ChunkMetadata, RunbookRecord, SectionType

_log = logging.getLogger(__name__)

# Sections up to this many characters stay whole; longer ones are split.
SECTION_SPLIT_THRESHOLD = 1500
SUB_CHUNK_SIZE = 1200
SUB_CHUNK_OVERLAP = 150
SPLIT_SEPARATORS = ["\n\n", "\n", " ", ""]

SECTION_TITLES = {
    SectionType.SUMMARY: "## 위협 요약",
    SectionType.TECHNIQUE_INFO: "## 위협 유형",
    SectionType.LOG_FIELDS: "## 주요 로그 필드",
    SectionType.LOG_REASON: "## 로그 판단 근거",
    SectionType.LOG_SCENARIO: "## 로그 발생 시나리오",
    SectionType.POLICY_DIRECTION: "## 보안 대책 및 개선 방안",
    SectionType.STEP: "## 단계별 설정 방법",
    SectionType.OPERATIONS_GUIDANCE: "## 운영 가이드",
    SectionType.REFERENCES: "## 참고 자료",
}


@dataclass(frozen=True)
class _SectionPiece:
    """Chunk content before corpus-level ids are assigned."""

    content: str
    section_type: SectionType
    section_title: str
    sub_chunk_index: Optional[int] = None
    total_sub_chunks: Optional[int] = None


def _build_splitter() -> RecursiveCharacterTextSplitter:
    return RecursiveCharacterTextSplitter(
        chunk_size=SUB_CHUNK_SIZE,
        chunk_overlap=SUB_CHUNK_OVERLAP,
        separators=SPLIT_SEPARATORS,
        keep_separator=True,
    )


def split_long_text(text: str) -> List[str]:
    """
    Split a long section body into overlapping sub-chunks.

    Paragraph breaks are tried first, then line breaks, spaces and finally
    raw characters. Separators stay attached to the piece that follows them.
    """
    return [piece for piece in _build_splitter().split_text(text) if piece.strip()]


def _section_pieces(title: str, text: Optional[str], section_type: SectionType) -> List[_SectionPiece]:
    if not text or not text.strip():
        return []

    if len(text) <= SECTION_SPLIT_THRESHOLD:
        return [_SectionPiece(f"{title}\n{text.strip()}", section_type, title)]

    sub_chunks = split_long_text(text)
    return [
        _SectionPiece(
            content=f"{title}\n{sub.strip()}",
            section_type=section_type,
            section_title=title,
            sub_chunk_index=sub_index,
            total_sub_chunks=len(sub_chunks),
        )
        for sub_index, sub in enumerate(sub_chunks)
    ]


def _record_pieces(record: RunbookRecord) -> List[_SectionPiece]:
    """Walk the runbook sections in their fixed order."""
    pieces: list[_SectionPiece] = []

    def add(section_type: SectionType, text: Optional[str]) -> None:
        pieces.extend(_section_pieces(SECTION_TITLES[section_type], text, section_type))

    add(SectionType.SUMMARY, record.summary)
    if record.technique_name and record.technique_name.strip():
        add(SectionType.TECHNIQUE_INFO, f"위협 유형: {record.technique_name}")
    add(SectionType.LOG_FIELDS, record.log_fields)
    add(SectionType.LOG_REASON, record.log_reason)
    add(SectionType.LOG_SCENARIO, record.log_scenario)
    add(SectionType.POLICY_DIRECTION, record.policy_direction)

    # Numbering follows the position in the runbook, even if a step is skipped.
    for position, step in enumerate(record.steps, start=1):
        if step.title and step.details:
            add(SectionType.STEP, f"### {position}. {step.title}\n{step.details}")

    add(SectionType.OPERATIONS_GUIDANCE, record.operations_guidance)

    reference_lines = [
        f"- {ref.title}: {ref.url}" for ref in record.references if ref.title and ref.url
    ]
    if reference_lines:
        add(SectionType.REFERENCES, "\n".join(reference_lines))

    return pieces


def base_metadata(record: RunbookRecord, source: str) -> dict:
    """Record-level metadata shared by all chunks, flattened to scalars."""
    return {
        "case_id": record.case_id or "",
        "threat_type": record.threat_type or "",
        "threat_type_label": record.threat_type_label or "",
        "technique_id": record.technique_id or "",
        "technique_name": record.technique_name or "",
        "event_ids": ",".join(record.event_ids),
        "source": source,
    }


def chunk_runbook_record(record: RunbookRecord, source: str) -> List[Chunk]:
    """
    Turn one runbook into ordered, section-bounded chunks.

    ``total_chunks`` and ``chunk_id`` are only known after every section has
    been produced, so they are filled in on a second pass.
    """
    pieces = _record_pieces(record)
    base = base_metadata(record, source)
    total = len(pieces)
    source_label = source or "unknown"

    chunks: list[Chunk] = []
    for index, piece in enumerate(pieces):
        chunk_id = f"{source_label}_chunk_{index}"
        metadata = ChunkMetadata(
            **base,
            section_type=piece.section_type,
            section_title=piece.section_title,
            chunk_index=index,
            sub_chunk_index=piece.sub_chunk_index,
            total_sub_chunks=piece.total_sub_chunks,
            total_chunks=total,
            chunk_id=chunk_id,
        )
        chunks.append(Chunk(id=chunk_id, content=piece.content, metadata=metadata))
    return chunks


def create_chunks_from_runbook(yaml_path: Path) -> List[Chunk]:
    """Load and chunk a single runbook file."""
    record = load_runbook_file(yaml_path)
    return chunk_runbook_record(record, yaml_path.name)


def chunk_records(records: Iterable[Tuple[str, RunbookRecord]]) -> List[Chunk]:
    all_chunks: list[Chunk] = []
    for source, record in records:
        chunks = chunk_runbook_record(record, source)
        if not chunks:
            _log.warning("Runbook produced no chunks: %s", source)
            continue
        _log.info("Chunked %s (%d chunks)", source, len(chunks))
        all_chunks.extend(chunks)
    return all_chunks


def load_corpus_chunks(runbooks_dir: Optional[Path] = None) -> List[Chunk]:
    """
    Chunk every runbook under ``runbooks_dir``.

    Loading is best-effort: malformed files are skipped by the loader.
    """
    if runbooks_dir is None:
        runbooks_dir = get_pipeline_settings().runbooks_dir

    records = load_runbook_directory(runbooks_dir)
    chunks = chunk_records(records)
    _log.info("Total chunks created: %d from %d runbooks", len(chunks), len(records))
    return chunks


def write_chunks_jsonl(chunks: Iterable[Chunk], output_path: Path) -> Path:
    """Persist chunks as JSONL for inspection."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with output_path.open("w", encoding="utf-8") as f_jsonl:
        for chunk in chunks:
            f_jsonl.write(json.dumps(chunk.model_dump(mode="json"), ensure_ascii=False) + "\n")
    _log.info("Chunks written to %s", output_path)
    return output_path


__all__ = [
    "SECTION_SPLIT_THRESHOLD",
    "SUB_CHUNK_SIZE",
    "SUB_CHUNK_OVERLAP",
    "SECTION_TITLES",
    "split_long_text",
    "base_metadata",
    "chunk_runbook_record",
    "chunk_records",
    "create_chunks_from_runbook",
    "load_corpus_chunks",
    "write_chunks_jsonl",
]
