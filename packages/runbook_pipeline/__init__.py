"""
Runbook ingestion pipeline.

This package is responsible for:
- Settings shared by ingestion, indexing and retrieval
- Loading remediation runbooks from YAML files
- Providing a CLI for indexing, status checks and ad-hoc searches
"""
