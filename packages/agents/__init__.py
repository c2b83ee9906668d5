"""Query agents built on top of rag_core retrieval."""
