"""Tests for runbook YAML loading."""

from __future__ import annotations

import logging

import pytest

from rag_core.chunking import create_chunks_from_runbook, load_corpus_chunks
from rag_core.errors import RunbookParseError
from runbook_pipeline import loader as loader_module
from runbook_pipeline.loader import load_runbook_directory, load_runbook_file


def test_load_runbook_file_maps_aliases(tmp_path, runbook_yaml):
    path = tmp_path / "T1110.yml"
    path.write_text(runbook_yaml, encoding="utf-8")

    record = load_runbook_file(path)

    assert record.technique_id == "T1110"
    assert record.threat_type_label == "자격 증명 탈취"
    assert record.technique_name == "무차별 대입"
    assert record.event_ids == ["4625", "4771"]
    assert record.log_reason.splitlines()[0] == "짧은 시간 동안 4625 이벤트가 급증합니다."
    assert len(record.steps) == 1
    assert record.references[0].url == "https://attack.mitre.org/techniques/T1110/"


@pytest.mark.parametrize(
    "content, reason",
    [
        ("summary: [unclosed", "invalid YAML"),
        ("- just\n- a list\n", "must be a mapping"),
        ("steps: 42\n", "schema validation failed"),
    ],
)
def test_load_runbook_file_rejects_malformed(tmp_path, content, reason):
    path = tmp_path / "bad.yml"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(RunbookParseError) as excinfo:
        load_runbook_file(path)

    assert excinfo.value.source == "bad.yml"
    assert reason in str(excinfo.value)


def test_load_directory_skips_bad_files(tmp_path, runbook_yaml, caplog):
    (tmp_path / "a_good.yml").write_text(runbook_yaml, encoding="utf-8")
    (tmp_path / "b_bad.yaml").write_text("summary: [unclosed", encoding="utf-8")
    (tmp_path / "notes.txt").write_text("ignored", encoding="utf-8")

    with caplog.at_level(logging.WARNING):
        records = load_runbook_directory(tmp_path)

    assert [name for name, _ in records] == ["a_good.yml"]
    assert "b_bad.yaml" in caplog.text


def test_load_directory_missing_returns_empty(tmp_path):
    assert load_runbook_directory(tmp_path / "missing") == []


def test_create_chunks_from_runbook(tmp_path, runbook_yaml):
    path = tmp_path / "T1110.yml"
    path.write_text(runbook_yaml, encoding="utf-8")

    chunks = create_chunks_from_runbook(path)

    assert {c.metadata.source for c in chunks} == {"T1110.yml"}
    assert chunks[0].metadata.event_ids == "4625,4771"


def test_load_corpus_chunks(tmp_path, runbook_yaml):
    (tmp_path / "one.yml").write_text(runbook_yaml, encoding="utf-8")
    (tmp_path / "two.yml").write_text(runbook_yaml.replace("T1110", "T1110.001"), encoding="utf-8")

    chunks = load_corpus_chunks(tmp_path)

    assert {c.metadata.source for c in chunks} == {"one.yml", "two.yml"}
    assert len({c.metadata.chunk_id for c in chunks}) == len(chunks)


def test_scalar_event_ids_are_wrapped(tmp_path, runbook_yaml):
    (tmp_path / "a.yml").write_text(runbook_yaml, encoding="utf-8")
    (tmp_path / "b.yml").write_text("technique_id: T1003\nevent_ids: 4624.5\n", encoding="utf-8")
    (tmp_path / "c.yml").write_text("technique_id: T1059\nevent_ids: 2024-01-02\n", encoding="utf-8")

    records = dict(load_runbook_directory(tmp_path))

    assert sorted(records) == ["a.yml", "b.yml", "c.yml"]
    assert records["b.yml"].event_ids == ["4624.5"]
    assert records["c.yml"].event_ids == ["2024-01-02"]


def test_validator_type_error_becomes_parse_error(tmp_path, runbook_yaml, monkeypatch):
    class Exploding:
        @staticmethod
        def model_validate(data):
            raise TypeError("unsupported value")

    (tmp_path / "a.yml").write_text(runbook_yaml, encoding="utf-8")
    monkeypatch.setattr(loader_module, "RunbookRecord", Exploding)

    with pytest.raises(RunbookParseError, match="unsupported value"):
        load_runbook_file(tmp_path / "a.yml")
    assert load_runbook_directory(tmp_path) == []
