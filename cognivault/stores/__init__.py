from .base import DocumentStore, GraphStore, VectorStore

__all__ = ["DocumentStore", "GraphStore", "VectorStore"]
