"""Retrieval components."""

from .service import IndexRetriever, RetrievalConfig, RetrievalFilters, Retriever

__all__ = ["IndexRetriever", "RetrievalConfig", "RetrievalFilters", "Retriever"]
