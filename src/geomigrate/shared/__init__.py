"""Shared adapters for external providers (LLM text generation, embeddings)."""
