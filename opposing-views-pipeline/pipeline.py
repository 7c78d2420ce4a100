"""End-to-end orchestration for the opposing views pipeline."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import List, Optional, Sequence

import requests
from tqdm.auto import tqdm

from config import Config, parse_cli_args
from errors import AnalysisFailedError, NotFoundError, OperationCancelled
from matcher import OpposingArticleMatcher
from orchestrator import AnalysisOrchestrator
from providers import AnalysisProvider, build_provider
from search import StoreSearch
from store import ArticleStore

__all__ = [
    "AnalysisOrchestrator",
    "SweepSummary",
    "analyze_articles",
    "build_provider_chain",
    "run_sweep",
    "main",
]


logger = logging.getLogger(__name__)


@dataclass
class ProgressBar:
    """Light wrapper around tqdm that guarantees visible output."""

    total: int
    desc: str

    def __post_init__(self) -> None:
        self._bar = tqdm(
            total=self.total,
            desc=self.desc,
            unit="article",
            leave=True,
            dynamic_ncols=True,
            mininterval=0.1,
            smoothing=0.2,
            disable=self.total == 0,
            bar_format="{l_bar}{bar}| {n_fmt}/{total_fmt} [{elapsed}<{remaining}]",
        )

    def update(self, advance: int = 1) -> None:
        if self._bar is not None:
            self._bar.update(advance)

    def close(self) -> None:
        if self._bar is not None:
            self._bar.close()


@dataclass
class SweepSummary:
    analyzed: int = 0
    failed: int = 0
    not_found: int = 0
    cancelled: int = 0
    match_degraded: int = 0
    match_failed: int = 0

    @property
    def total(self) -> int:
        return self.analyzed + self.failed + self.not_found + self.cancelled


def build_provider_chain(config: Config, session: Optional[requests.Session] = None) -> List[AnalysisProvider]:
    """Instantiate the configured providers in fallback order, skipping unusable ones."""
    providers: List[AnalysisProvider] = []
    for name in config.provider_chain():
        try:
            providers.append(build_provider(name, config, session=session))
        except ValueError as exc:
            logger.warning("Skipping provider %s: %s", name, exc)
    if not providers:
        raise ValueError(f"None of the configured providers could be initialised: {config.provider_chain()}")
    logger.info("Provider chain: %s", " -> ".join(provider.name for provider in providers))
    return providers


def analyze_articles(
    orchestrator: AnalysisOrchestrator,
    article_ids: Sequence[str],
    max_workers: int,
) -> SweepSummary:
    """Analyze articles on a bounded worker pool, one article per task."""
    summary = SweepSummary()
    if not article_ids:
        return summary

    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as executor:
        futures = {executor.submit(orchestrator.analyze, article_id): article_id for article_id in article_ids}
        progress = ProgressBar(total=len(futures), desc="analysis")
        try:
            for future in as_completed(futures):
                article_id = futures[future]
                try:
                    future.result()
                except AnalysisFailedError:
                    summary.failed += 1
                except NotFoundError:
                    summary.not_found += 1
                except OperationCancelled:
                    summary.cancelled += 1
                except Exception:
                    logger.exception("Failed to process article %s", article_id)
                    summary.failed += 1
                else:
                    summary.analyzed += 1
                    match = orchestrator.last_match(article_id)
                    if match is not None and match.failed:
                        summary.match_failed += 1
                    elif match is not None and match.degraded:
                        summary.match_degraded += 1
                progress.update(1)
        finally:
            progress.close()
    return summary


def run_sweep(
    store: ArticleStore,
    orchestrator: AnalysisOrchestrator,
    config: Config,
    limit: Optional[int] = None,
) -> SweepSummary:
    """Analyze a batch of articles that have no analysis yet."""
    if not config.analysis_enabled:
        logger.info("Article analysis is disabled; skipping sweep")
        return SweepSummary()

    batch_limit = limit if limit is not None else config.analysis_batch_limit
    articles = store.list_unanalyzed(batch_limit)
    if not articles:
        logger.info("No unanalyzed articles in %s", store.db_path)
        return SweepSummary()

    logger.info("Analyzing %d article(s) with %d worker(s)", len(articles), config.batch_size)
    summary = analyze_articles(orchestrator, [article.id for article in articles], config.batch_size)
    logger.info(
        "Sweep finished: analyzed=%d failed=%d not_found=%d cancelled=%d match_degraded=%d match_failed=%d",
        summary.analyzed,
        summary.failed,
        summary.not_found,
        summary.cancelled,
        summary.match_degraded,
        summary.match_failed,
    )
    return summary


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_cli_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s] %(message)s",
    )

    noisy_libs = [
        "urllib3",
        "requests",
    ]
    for name in noisy_libs:
        logging.getLogger(name).setLevel(logging.WARNING)

    config = Config.from_yaml(args.config)
    if args.db is not None:
        config.db_path = args.db

    store = ArticleStore(config.db_path)
    providers = build_provider_chain(config)
    matcher = OpposingArticleMatcher(store, StoreSearch(store, pool_size=config.search_pool_size), config)
    orchestrator = AnalysisOrchestrator(store, providers, config, matcher=matcher)

    try:
        if args.article_ids:
            summary = analyze_articles(orchestrator, args.article_ids, config.batch_size)
            logger.info(
                "Processed %d requested article(s): analyzed=%d failed=%d not_found=%d",
                summary.total,
                summary.analyzed,
                summary.failed,
                summary.not_found,
            )
        else:
            run_sweep(store, orchestrator, config, limit=args.limit)
    finally:
        matcher.close()
        for provider in providers:
            provider.close()


if __name__ == "__main__":
    main()
