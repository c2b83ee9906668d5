from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class RunbookRagSettings(BaseSettings):
    """Configuration for runbook ingestion, indexing and retrieval."""

    project_root: Path = Field(
        default_factory=lambda: Path(__file__).resolve().parents[2],
        description="Repository root directory.",
    )

    runbooks_dir: Path = Field(
        default_factory=lambda: Path("data") / "runbooks",
        description="Directory containing runbook YAML files.",
    )
    chunks_dir: Path = Field(
        default_factory=lambda: Path("data") / "chunks",
        description="Directory for exported chunk JSONL files.",
    )

    # Qdrant
    qdrant_host: str = "localhost"
    qdrant_port: int = 6333
    qdrant_grpc_port: int = 6334
    qdrant_prefer_grpc: bool = False
    qdrant_location: Optional[str] = Field(
        default=None,
        description="Alternative client location, e.g. ':memory:' for local tests.",
    )
    qdrant_timeout: float = Field(default=60.0, gt=0, description="Per-call timeout in seconds.")
    collection_name: str = "threat_improvement_runbooks"

    # Embeddings
    embedding_model: str = "BAAI/bge-m3"
    embedding_dim: int = 1024
    embedding_batch_size: int = 16
    embedding_max_length: int = 8192

    # Adapter retries for transient connection failures
    max_retries: int = Field(default=3, ge=1)
    retry_backoff_seconds: float = Field(default=0.5, ge=0)

    class Config:
        env_prefix = "RUNBOOK_RAG_"
        env_file = ".env"
        env_file_encoding = "utf-8"

    def resolve_paths(self) -> "RunbookRagSettings":
        """Return a copy with all relative paths resolved against project_root."""

        def _resolve(path: Path) -> Path:
            if path.is_absolute():
                return path
            return self.project_root / path

        return self.model_copy(
            update={
                "runbooks_dir": _resolve(self.runbooks_dir),
                "chunks_dir": _resolve(self.chunks_dir),
            }
        )


def get_settings() -> RunbookRagSettings:
    """Return settings with resolved paths."""
    return RunbookRagSettings().resolve_paths()


__all__ = ["RunbookRagSettings", "get_settings"]
