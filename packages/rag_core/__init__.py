"""
Core retrieval logic for threat remediation runbooks.

This package contains:
- Data models for runbooks, chunks and search results
- Section-aware chunking of parsed runbooks
- BGE-M3 embeddings and the Qdrant vector index
- Query shaping, retrieval, expansion and re-ranking
- Context assembly for a downstream answer generator
"""
