"""Data models for pubmed-server."""

from pubmed_server.models.model_pubmed import (
    ArticleSummary,
    FailedEntry,
    FullTextResult,
    NotFoundEntry,
    SearchOptions,
    SearchResult,
    SummaryEntry,
)

__all__ = [
    "ArticleSummary",
    "FailedEntry",
    "FullTextResult",
    "NotFoundEntry",
    "SearchOptions",
    "SearchResult",
    "SummaryEntry",
]
