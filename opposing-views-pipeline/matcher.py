"""Relevance-ranked linking of an article to candidate opposing articles."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Dict, List, Optional, Sequence, Set, Tuple

from config import Config
from errors import OperationCancelled, SearchError
from models import MatchResult, OpposingArticleLink, SearchHit
from pipeline_utils import clamp
from search import SearchCollaborator
from store import ArticleStore


logger = logging.getLogger(__name__)


def relevance_score(
    query_score: float,
    source_bias: Optional[float],
    candidate_bias: Optional[float],
    bias_weight: float,
) -> float:
    """Blend query match with bias distance; bias only counts when both sides are known."""
    query_score = clamp(query_score, 0.0, 1.0) or 0.0
    source_bias = clamp(source_bias, -1.0, 1.0)
    candidate_bias = clamp(candidate_bias, -1.0, 1.0)
    if source_bias is None or candidate_bias is None:
        return query_score
    distance = abs(source_bias - candidate_bias) / 2.0
    weight = clamp(bias_weight, 0.0, 1.0) or 0.0
    return clamp((1.0 - weight) * query_score + weight * distance, 0.0, 1.0) or 0.0


def select_links(scores: Dict[str, float], min_relevance: float, cap: int) -> List[Tuple[str, float]]:
    """Candidates at or above the threshold, best first, at most ``cap`` of them."""
    if cap <= 0:
        return []
    kept = [(candidate_id, score) for candidate_id, score in scores.items() if score >= min_relevance]
    kept.sort(key=lambda item: (-item[1], item[0]))
    return kept[:cap]


def _check_cancelled(cancel_event: Optional[threading.Event], article_id: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelled(f"Matching cancelled for article {article_id}")


class OpposingArticleMatcher:
    def __init__(self, store: ArticleStore, search: SearchCollaborator, config: Config):
        self.store = store
        self.search = search
        self.top_k = config.search_top_k
        self.min_relevance = config.min_relevance
        self.max_links = config.max_links_per_article
        self.bias_weight = config.bias_weight
        self.search_timeout = config.search_timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=max(2, config.batch_size), thread_name_prefix="search")

    def _search(self, query: str, excluding: Set[str]) -> List[SearchHit]:
        future = self._executor.submit(self.search.search, query, frozenset(excluding), self.top_k)
        try:
            return future.result(timeout=self.search_timeout)
        except FutureTimeoutError as exc:
            future.cancel()
            raise SearchError(f"search timed out after {self.search_timeout}s") from exc
        except SearchError:
            raise
        except Exception as exc:
            raise SearchError(str(exc)) from exc

    def match(
        self,
        article_id: str,
        queries: Sequence[str],
        cancel_event: Optional[threading.Event] = None,
    ) -> MatchResult:
        """Search each query, score candidates, and persist the best as opposing links.

        A failing query is skipped and flagged on the result. SearchError is
        raised only when every query failed; links from earlier runs stay put.
        """
        self.store.get_article(article_id)
        analysis = self.store.get_analysis(article_id)
        source_bias = analysis.bias_score if analysis is not None else None
        result = MatchResult(source_article_id=article_id)

        queries = [query.strip() for query in queries if query and query.strip()]
        if not queries:
            logger.debug("No opposing queries for article %s; nothing to match", article_id)
            return result

        existing = self.store.linked_opposing_ids(article_id)
        remaining = self.max_links - len(existing)
        if remaining <= 0:
            logger.debug("Article %s already has %d opposing links; skipping search", article_id, len(existing))
            return result
        excluding = set(existing)
        excluding.add(article_id)

        best: Dict[str, float] = {}
        last_error: Optional[SearchError] = None
        for query in queries:
            _check_cancelled(cancel_event, article_id)
            result.queries_run += 1
            try:
                hits = self._search(query, excluding)
            except SearchError as exc:
                logger.warning("Search failed for article %s query %r: %s", article_id, query, exc)
                last_error = exc
                result.failed_queries.append(query)
                continue
            for hit in hits:
                candidate_id = hit.article.id
                if candidate_id in excluding:
                    continue
                result.candidates_considered += 1
                score = relevance_score(hit.score, source_bias, hit.bias_score, self.bias_weight)
                if score > best.get(candidate_id, -1.0):
                    best[candidate_id] = score

        if len(result.failed_queries) == len(queries):
            raise SearchError(
                f"All {len(queries)} searches failed for article {article_id}; last error: {last_error}"
            ) from last_error

        result.links = [
            OpposingArticleLink(
                source_article_id=article_id,
                opposing_article_id=candidate_id,
                relevance_score=score,
            )
            for candidate_id, score in select_links(best, self.min_relevance, remaining)
            if candidate_id != article_id
        ]
        _check_cancelled(cancel_event, article_id)
        result.links_inserted = self.store.insert_opposing_links(result.links)

        if result.degraded:
            logger.warning(
                "Matched article %s with degraded search: %d of %d queries failed",
                article_id,
                len(result.failed_queries),
                len(queries),
            )
        logger.info(
            "Linked article %s to %d opposing article(s) (%d new, %d candidates considered)",
            article_id,
            len(result.links),
            result.links_inserted,
            result.candidates_considered,
        )
        return result

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
