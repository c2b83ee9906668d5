from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional, Tuple

import click

from agents.query_agent import create_agent
from rag_core.chunking import load_corpus_chunks, write_chunks_jsonl
from rag_core.embeddings import BGEM3Embedder
from rag_core.errors import RunbookRagError
from rag_core.indexing import Indexer, build_index, create_vector_index, index_status
from rag_core.models import SearchFilters

from .config import RunbookRagSettings, get_settings

_log = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _make_embedder(settings: RunbookRagSettings) -> BGEM3Embedder:
    return BGEM3Embedder(
        model_name=settings.embedding_model,
        batch_size=settings.embedding_batch_size,
        max_length=settings.embedding_max_length,
    )


def _make_indexer(settings: RunbookRagSettings) -> Indexer:
    return Indexer(
        index=create_vector_index(settings),
        embedder=_make_embedder(settings),
        batch_size=settings.embedding_batch_size,
    )


def _echo_json(data: object) -> None:
    click.echo(json.dumps(data, ensure_ascii=False, indent=2))


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
def main(verbose: bool) -> None:
    """CLI entrypoint for runbook indexing and retrieval."""
    _configure_logging(verbose)


@main.command("index")
@click.option("--rebuild", is_flag=True, help="Drop the collection before indexing.")
@click.option(
    "--runbooks-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Override the configured runbooks directory.",
)
def index_cmd(rebuild: bool, runbooks_dir: Optional[Path]) -> None:
    """Chunk every runbook and upsert it into Qdrant."""
    settings = get_settings()
    runbooks_dir = runbooks_dir or settings.runbooks_dir
    _log.info("Using runbooks_dir=%s, collection=%s", runbooks_dir, settings.collection_name)

    try:
        report = build_index(_make_indexer(settings), runbooks_dir=runbooks_dir, rebuild=rebuild)
    except RunbookRagError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(report.model_dump(by_alias=True))


@main.command("status")
def status_cmd() -> None:
    """Report Qdrant connectivity and the number of indexed chunks."""
    settings = get_settings()
    indexer = Indexer(index=create_vector_index(settings), embedder=_make_embedder(settings))
    _echo_json(index_status(indexer).model_dump(by_alias=True))


@main.command("chunk-all")
@click.option(
    "--runbooks-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Override the configured runbooks directory.",
)
@click.option(
    "--output",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="JSONL output path (default: <chunks_dir>/chunks.jsonl).",
)
def chunk_all(runbooks_dir: Optional[Path], output: Optional[Path]) -> None:
    """Chunk all runbooks and write them to JSONL without indexing."""
    settings = get_settings()
    runbooks_dir = runbooks_dir or settings.runbooks_dir
    chunks = load_corpus_chunks(runbooks_dir)
    if not chunks:
        _log.warning("No chunks produced from %s", runbooks_dir)
        return

    output = output or settings.chunks_dir / "chunks.jsonl"
    write_chunks_jsonl(chunks, output)
    click.echo(f"Wrote {len(chunks)} chunks to {output}")


@main.command("search")
@click.argument("question")
@click.option("--k", "k", default=5, show_default=True, type=int)
@click.option("--mmr", "use_mmr", is_flag=True, help="Use MMR diversity search.")
@click.option("--lambda", "lambda_mult", default=0.5, show_default=True, type=click.FloatRange(0.0, 1.0))
@click.option("--technique-id", default=None)
@click.option("--threat-type", default=None)
@click.option("--event-id", "event_ids", multiple=True, help="Repeatable; only the first is used.")
@click.option("--json", "as_json", is_flag=True, help="Print the raw search response as JSON.")
def search_cmd(
    question: str,
    k: int,
    use_mmr: bool,
    lambda_mult: float,
    technique_id: Optional[str],
    threat_type: Optional[str],
    event_ids: Tuple[str, ...],
    as_json: bool,
) -> None:
    """Run one retrieval and print the assembled context with citations."""
    filters = None
    if technique_id or threat_type or event_ids:
        filters = SearchFilters(technique_id=technique_id, threat_type=threat_type, event_ids=list(event_ids))

    agent = create_agent(get_settings())
    options = dict(k=k, filters=filters, use_mmr=use_mmr, lambda_mult=lambda_mult)
    if as_json:
        _echo_json(agent.retrieve(question, **options).model_dump(mode="json"))
        return

    result = agent.build_context(question, **options)
    click.echo(result.context)
    if result.sources:
        click.echo("\nSources:")
        for rank, source in enumerate(result.sources, start=1):
            case = f" ({source.case_id})" if source.case_id else ""
            click.echo(f"  {rank}. [{source.technique_id or 'unknown'}] {source.technique_name or ''}{case}")


if __name__ == "__main__":
    main()
