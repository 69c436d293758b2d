"""
Ingestion: PDF text extraction, chunking, and embedding.

This module turns raw uploaded bytes into page-tagged chunks and their
embedding vectors, ready to be written to the tenant vector store.
"""
