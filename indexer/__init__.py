"""Chunking, embeddings, metadata filters and storage backends."""
