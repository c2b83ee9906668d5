from __future__ import annotations


class RunbookRagError(Exception):
    """Base class for runbook RAG errors."""


class VectorIndexConnectionError(RunbookRagError):
    """Vector index could not be reached after bounded retries."""


class RunbookParseError(RunbookRagError):
    """A runbook file could not be read or validated."""

    def __init__(self, source: str, reason: str) -> None:
        super().__init__(f"{source}: {reason}")
        self.source = source
        self.reason = reason


class EmptyCorpusError(RunbookRagError):
    """Index build found nothing to index."""


__all__ = [
    "RunbookRagError",
    "VectorIndexConnectionError",
    "RunbookParseError",
    "EmptyCorpusError",
]
