"""Record types passed between the store, providers, and pipeline stages."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import FrozenSet, List, Optional, Tuple

DEFAULT_CONTENT_TYPE = "neutral"
CONTENT_TYPE_MAX_CHARS = 20
TOPIC_SUMMARY_MAX_CHARS = 500
PROVIDER_MAX_CHARS = 50
MODEL_VERSION_MAX_CHARS = 100


class AnalysisState(str, enum.Enum):
    UNANALYZED = "unanalyzed"
    ANALYZING = "analyzing"
    ANALYZED = "analyzed"
    FAILED = "failed"


@dataclass(frozen=True)
class Article:
    id: str
    feed_id: str
    title: str
    url: str
    author: Optional[str] = None
    summary: Optional[str] = None
    content: Optional[str] = None
    published_at: Optional[str] = None
    guid: Optional[str] = None
    created_at: Optional[str] = None

    @property
    def body(self) -> str:
        """Best available text for the article, possibly empty."""
        return (self.content or self.summary or "").strip()


@dataclass(frozen=True)
class Classification:
    """Raw provider verdict before normalization."""

    provider: str
    content_type: str = DEFAULT_CONTENT_TYPE
    bias_score: Optional[float] = None
    bias_confidence: Optional[float] = None
    bias_indicators: FrozenSet[str] = frozenset()
    topic_summary: Optional[str] = None
    model_version: Optional[str] = None


@dataclass(frozen=True)
class ArticleAnalysis:
    article_id: str
    provider: str
    content_type: str = DEFAULT_CONTENT_TYPE
    bias_score: Optional[float] = None
    bias_confidence: Optional[float] = None
    bias_indicators: FrozenSet[str] = frozenset()
    opposing_queries: Tuple[str, ...] = ()
    topic_summary: Optional[str] = None
    model_version: Optional[str] = None
    analyzed_at: Optional[str] = None
    id: Optional[str] = None


@dataclass(frozen=True)
class OpposingArticleLink:
    source_article_id: str
    opposing_article_id: str
    relevance_score: float
    created_at: Optional[str] = None
    id: Optional[str] = None


@dataclass(frozen=True)
class SearchHit:
    """One candidate returned by a search collaborator."""

    article: Article
    score: float
    bias_score: Optional[float] = None


@dataclass
class MatchResult:
    source_article_id: str
    links: List[OpposingArticleLink] = field(default_factory=list)
    links_inserted: int = 0
    queries_run: int = 0
    failed_queries: List[str] = field(default_factory=list)
    candidates_considered: int = 0
    error: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return bool(self.failed_queries)

    @property
    def failed(self) -> bool:
        return self.error is not None
