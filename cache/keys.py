"""Search parameters and cache key fingerprints.

A cache key identifies one query + filters + user scope combination. The
user id and the normalized query appear verbatim in the key so that
pattern-based invalidation can target a user or a vocabulary term.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

_MONTHS = (
    r"january|february|march|april|may|june|july|august|september|october|"
    r"november|december|jan|feb|mar|apr|jun|jul|aug|sep|oct|nov|dec"
)

TEMPORAL_PATTERNS = [
    re.compile(rf"\b(from|since|after|before|during|in|on)\s+({_MONTHS})\b", re.IGNORECASE),
    re.compile(
        r"\b(yesterday|today|tomorrow|last\s+week|this\s+week|next\s+week|"
        r"last\s+month|this\s+month|next\s+month)\b",
        re.IGNORECASE,
    ),
    re.compile(r"\b\d{1,2}/\d{1,2}/\d{2,4}\b"),
    re.compile(r"\b\d{1,2}-\d{1,2}-\d{2,4}\b"),
    re.compile(rf"\b(from|since|after|before)\s+\d{{1,2}}\s+({_MONTHS})\b", re.IGNORECASE),
]


@dataclass
class SearchParams:
    """Parameters of a unified search request.

    Attributes:
        query: Natural language search query
        sources: Data sources to search (e.g. "receipts", "business_directory")
        filters: Structured filters (date range, amount range, categories...)
        similarity_threshold: Minimum similarity for semantic matches
        limit: Maximum number of results
        offset: Pagination offset
        language: Optional response language
    """
    query: str
    sources: List[str] = field(default_factory=list)
    filters: Dict[str, Any] = field(default_factory=dict)
    similarity_threshold: float = field(default=0.2)
    limit: int = field(default=20)
    offset: int = field(default=0)
    language: Optional[str] = field(default=None)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the request body shape expected by the search endpoint."""
        data: Dict[str, Any] = {
            "query": self.query,
            "sources": list(self.sources),
            "filters": dict(self.filters),
            "similarityThreshold": self.similarity_threshold,
            "limit": self.limit,
            "offset": self.offset,
        }
        if self.language:
            data["language"] = self.language
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SearchParams":
        return cls(
            query=data.get("query", ""),
            sources=list(data.get("sources") or []),
            filters=dict(data.get("filters") or {}),
            similarity_threshold=data.get("similarityThreshold", 0.2),
            limit=data.get("limit", 20),
            offset=data.get("offset", 0),
            language=data.get("language"),
        )


def normalize_query(query: str) -> str:
    return query.strip().lower()


def is_temporal_query(query: str) -> bool:
    """Check whether a query contains date or time-relative references.

    Args:
        query: Search query string

    Returns:
        True if the phrasing implies a time-relative answer
    """
    return any(pattern.search(query) for pattern in TEMPORAL_PATTERNS)


def make_cache_key(params: SearchParams, user_id: str) -> str:
    """Create a deterministic cache key from search parameters and user scope.

    The key includes every parameter that affects search results.

    Args:
        params: Search parameters
        user_id: Owner of the cached results

    Returns:
        String key for cache lookup
    """
    sources = ",".join(sorted(params.sources))
    filters = json.dumps(params.filters, sort_keys=True, default=str, separators=(",", ":"))
    key_parts = [
        f"u:{user_id}",
        f"q:{normalize_query(params.query)}",
        f"s:{sources}",
        f"f:{filters}",
        f"lang:{params.language or params.filters.get('language') or ''}",
        f"t:{params.similarity_threshold}",
        f"l:{params.limit}",
        f"o:{params.offset}",
    ]
    return "|".join(key_parts)
