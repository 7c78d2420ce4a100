"""Per-article analysis: provider fallback, normalization, and at-most-once persistence."""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional, Sequence

from config import Config
from errors import (
    AnalysisFailedError,
    ConflictError,
    NotFoundError,
    OperationCancelled,
    PipelineError,
    ProviderError,
)
from matcher import OpposingArticleMatcher
from models import (
    CONTENT_TYPE_MAX_CHARS,
    DEFAULT_CONTENT_TYPE,
    MODEL_VERSION_MAX_CHARS,
    PROVIDER_MAX_CHARS,
    TOPIC_SUMMARY_MAX_CHARS,
    AnalysisState,
    Article,
    ArticleAnalysis,
    Classification,
    MatchResult,
)
from pipeline_utils import clamp, truncate_text
from providers import AnalysisProvider
from query_generator import generate_queries
from store import ArticleStore


logger = logging.getLogger(__name__)

INDICATOR_MAX_CHARS = 200


@dataclass
class _LockEntry:
    lock: threading.Lock
    holders: int = 0


class KeyedLocks:
    """Mutex per key, created on first use and dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: Dict[str, _LockEntry] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _LockEntry(threading.Lock())
            entry.holders += 1
        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._entries[key]

    def is_held(self, key: str) -> bool:
        with self._guard:
            return key in self._entries


def normalize_classification(article_id: str, classification: Classification) -> ArticleAnalysis:
    """Clamp scores and trim text so the record fits the storage constraints."""
    content_type = (classification.content_type or "").strip().lower()[:CONTENT_TYPE_MAX_CHARS]
    indicators = frozenset(
        item.strip()[:INDICATOR_MAX_CHARS] for item in classification.bias_indicators if item and item.strip()
    )
    return ArticleAnalysis(
        article_id=article_id,
        provider=classification.provider[:PROVIDER_MAX_CHARS],
        content_type=content_type or DEFAULT_CONTENT_TYPE,
        bias_score=clamp(classification.bias_score, -1.0, 1.0),
        bias_confidence=clamp(classification.bias_confidence, 0.0, 1.0),
        bias_indicators=indicators,
        topic_summary=truncate_text(classification.topic_summary, TOPIC_SUMMARY_MAX_CHARS),
        model_version=truncate_text(classification.model_version, MODEL_VERSION_MAX_CHARS),
    )


class AnalysisOrchestrator:
    """Runs the analyze -> generate queries -> match sequence for single articles.

    Safe to call from many threads at once. Calls for the same article
    serialize on a per-article lock; unrelated articles proceed in parallel.
    """

    def __init__(
        self,
        store: ArticleStore,
        providers: Sequence[AnalysisProvider],
        config: Config,
        matcher: Optional[OpposingArticleMatcher] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not providers:
            raise ValueError("At least one analysis provider is required")
        self.store = store
        self.providers: List[AnalysisProvider] = list(providers)[: max(1, config.max_providers)]
        self.config = config
        self.matcher = matcher
        self._attempts = max(1, config.provider_attempts)
        self._retry_backoff = max(0.0, config.provider_retry_backoff_seconds)
        self._sleep = sleep
        self._locks = KeyedLocks()
        self._failures: Dict[str, str] = {}
        self._state_guard = threading.Lock()
        self._match_results: Dict[str, MatchResult] = {}

    def status(self, article_id: str) -> AnalysisState:
        if self.store.get_analysis(article_id) is not None:
            return AnalysisState.ANALYZED
        if self._locks.is_held(article_id):
            return AnalysisState.ANALYZING
        with self._state_guard:
            if article_id in self._failures:
                return AnalysisState.FAILED
        return AnalysisState.UNANALYZED

    def last_failure(self, article_id: str) -> Optional[str]:
        with self._state_guard:
            return self._failures.get(article_id)

    def last_match(self, article_id: str) -> Optional[MatchResult]:
        """Outcome of the matching run that followed this article's analysis, if one ran."""
        with self._state_guard:
            return self._match_results.get(article_id)

    def _record_match(self, article_id: str, result: Optional[MatchResult]) -> None:
        if result is None:
            return
        with self._state_guard:
            self._match_results[article_id] = result

    def _record_failure(self, article_id: str, message: Optional[str]) -> None:
        with self._state_guard:
            if message is None:
                self._failures.pop(article_id, None)
            else:
                self._failures[article_id] = message

    def _wait_before_retry(self, wait: float, cancel_event: Optional[threading.Event], article_id: str) -> None:
        if wait <= 0:
            return
        if cancel_event is not None:
            if cancel_event.wait(wait):
                raise OperationCancelled(f"Analysis cancelled for article {article_id}")
        else:
            self._sleep(wait)

    def _classify(self, article: Article, cancel_event: Optional[threading.Event]) -> Classification:
        last_error: Optional[ProviderError] = None
        for provider in self.providers:
            for attempt in range(self._attempts):
                attempt_num = attempt + 1
                if cancel_event is not None and cancel_event.is_set():
                    raise OperationCancelled(f"Analysis cancelled for article {article.id}")
                try:
                    classification = provider.classify(article)
                except ProviderError as exc:
                    last_error = exc
                    logger.warning(
                        "Provider %s failed for article %s (attempt %d/%d): %s",
                        provider.name,
                        article.id,
                        attempt_num,
                        self._attempts,
                        exc,
                    )
                    if attempt_num < self._attempts:
                        wait = self._retry_backoff * attempt_num
                        if wait > 0:
                            logger.info("Retrying %s for article %s after %.1fs", provider.name, article.id, wait)
                        self._wait_before_retry(wait, cancel_event, article.id)
                    continue
                except ValueError as exc:
                    raise AnalysisFailedError(article.id, str(exc), exc) from exc
                if not classification.provider:
                    classification = dataclasses.replace(classification, provider=provider.name)
                return classification
            logger.warning("Giving up on provider %s for article %s", provider.name, article.id)

        names = ", ".join(provider.name for provider in self.providers)
        raise AnalysisFailedError(article.id, f"all providers failed ({names}): {last_error}", last_error)

    def analyze(self, article_id: str, cancel_event: Optional[threading.Event] = None) -> ArticleAnalysis:
        """Return the article's analysis, creating it if this is the first successful attempt.

        Raises NotFoundError for unknown articles, AnalysisFailedError when every
        provider failed (nothing is stored), and OperationCancelled when
        ``cancel_event`` fires before the record is committed.
        """
        existing = self.store.get_analysis(article_id)
        if existing is not None:
            logger.debug("Article %s already analyzed by %s; skipping", article_id, existing.provider)
            return existing

        try:
            article = self.store.get_article(article_id)
        except NotFoundError:
            logger.error("Cannot analyze article %s: not found", article_id)
            raise

        # Spans classification: a caller that waits here finds the stored row and never calls a provider.
        with self._locks.hold(article_id):
            existing = self.store.get_analysis(article_id)
            if existing is not None:
                logger.debug("Article %s was analyzed by a concurrent caller", article_id)
                return existing

            self._record_failure(article_id, None)
            try:
                classification = self._classify(article, cancel_event)
            except AnalysisFailedError as exc:
                self._record_failure(article_id, str(exc))
                logger.error("%s", exc)
                raise

            record = normalize_classification(article_id, classification)
            if cancel_event is not None and cancel_event.is_set():
                raise OperationCancelled(f"Analysis cancelled for article {article_id}")
            try:
                stored = self.store.insert_analysis(record)
            except ConflictError:
                winner = self.store.get_analysis(article_id)
                if winner is None:
                    raise
                logger.info("Analysis for article %s was stored by another writer; using it", article_id)
                return winner
            logger.info(
                "Analyzed article %s with %s: type=%s bias=%s confidence=%s",
                article_id,
                stored.provider,
                stored.content_type,
                stored.bias_score,
                stored.bias_confidence,
            )
            stored = self._cache_queries(stored)

        self._record_match(article_id, self._match(stored, cancel_event))
        return stored

    def _cache_queries(self, analysis: ArticleAnalysis) -> ArticleAnalysis:
        try:
            queries = generate_queries(analysis, self.config.max_queries)
            self.store.update_opposing_queries(analysis.article_id, queries)
        except Exception:
            logger.exception("Failed to generate opposing queries for article %s", analysis.article_id)
            return analysis
        logger.debug("Generated %d opposing queries for article %s", len(queries), analysis.article_id)
        return dataclasses.replace(analysis, opposing_queries=tuple(queries))

    def _match(self, analysis: ArticleAnalysis, cancel_event: Optional[threading.Event]) -> Optional[MatchResult]:
        """Run the matcher; failures come back as a MatchResult with ``error`` set."""
        if self.matcher is None:
            return None
        article_id = analysis.article_id
        try:
            return self.matcher.match(article_id, analysis.opposing_queries, cancel_event=cancel_event)
        except OperationCancelled as exc:
            logger.info("Opposing-article matching cancelled for article %s", article_id)
            return MatchResult(source_article_id=article_id, error=str(exc))
        except PipelineError as exc:
            logger.warning("Opposing-article matching failed for article %s: %s", article_id, exc)
            return MatchResult(source_article_id=article_id, error=str(exc))
        except Exception as exc:
            logger.exception("Unexpected error while matching opposing articles for %s", article_id)
            return MatchResult(source_article_id=article_id, error=f"{type(exc).__name__}: {exc}")
