"""RAG (Retrieval-Augmented Generation) components for single-document QA.

This package contains modules for:
- Passage refinement with overlap and dedup
- Per-document vector storage with atomic persistence
- Incremental, crash-safe embedding jobs
- Multi-pass retrieval with lexical fallback
- Grounded answer synthesis
"""
