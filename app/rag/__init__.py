"""RAG (Retrieval-Augmented Generation) pipeline components.

This package contains modules for:
- Text extraction from uploaded files
- Document chunking with overlap
- Embedding generation
- Vector index access (Pinecone REST, in-process FAISS)
- Document listing and deletion
- Ingestion and question answering
"""
