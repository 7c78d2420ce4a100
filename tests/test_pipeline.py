import time
from pathlib import Path

import pytest

from conftest import FakeProvider, FakeSearch  # type: ignore
from errors import ProviderError, SearchError  # type: ignore
from matcher import OpposingArticleMatcher  # type: ignore
from models import Article, Classification  # type: ignore
import pipeline  # type: ignore
from orchestrator import AnalysisOrchestrator  # type: ignore


NEUTRAL = Classification(provider="ollama", content_type="news", bias_score=0.0, topic_summary="City budget")


def test_analyze_articles_parallel_execution(store, config, make_article) -> None:
    articles = [make_article(f"Story {i}") for i in range(6)]

    def slow_for_first(article: Article) -> Classification:
        # stagger work so results complete out of submission order
        time.sleep(0.05 if article.id == articles[0].id else 0.01)
        return NEUTRAL

    provider = FakeProvider("ollama", [slow_for_first])
    orchestrator = AnalysisOrchestrator(store, [provider], config)

    summary = pipeline.analyze_articles(orchestrator, [article.id for article in articles], max_workers=3)

    assert summary.analyzed == 6
    assert summary.total == 6
    assert provider.calls == 6
    assert store.list_unanalyzed(10) == []


def test_analyze_articles_counts_each_outcome(store, config, make_article) -> None:
    good = make_article("Good story")
    bad = make_article("Bad story")

    def flaky(article: Article) -> Classification:
        if article.id == bad.id:
            raise ProviderError(ProviderError.NETWORK)
        return NEUTRAL

    orchestrator = AnalysisOrchestrator(store, [FakeProvider("ollama", [flaky])], config)

    summary = pipeline.analyze_articles(orchestrator, [good.id, bad.id, "missing"], max_workers=2)

    assert (summary.analyzed, summary.failed, summary.not_found, summary.cancelled) == (1, 1, 1, 0)


def test_run_sweep_respects_limit_and_toggle(store, config, make_article) -> None:
    for i in range(3):
        make_article(f"Story {i}")
    orchestrator = AnalysisOrchestrator(store, [FakeProvider("ollama", [NEUTRAL])], config)

    config.analysis_enabled = False
    assert pipeline.run_sweep(store, orchestrator, config).total == 0
    assert len(store.list_unanalyzed(10)) == 3

    config.analysis_enabled = True
    summary = pipeline.run_sweep(store, orchestrator, config, limit=2)
    assert summary.analyzed == 2
    assert len(store.list_unanalyzed(10)) == 1

    pipeline.run_sweep(store, orchestrator, config)
    assert pipeline.run_sweep(store, orchestrator, config).total == 0


def test_build_provider_chain_skips_unconfigured_providers(config) -> None:
    config.primary_provider = "ollama"
    config.fallback_provider = "claude"
    config.anthropic_api_key = None

    providers = pipeline.build_provider_chain(config)
    try:
        assert [provider.name for provider in providers] == ["ollama"]
    finally:
        for provider in providers:
            provider.close()

    config.primary_provider = "claude"
    config.fallback_provider = None
    with pytest.raises(ValueError):
        pipeline.build_provider_chain(config)


def test_main_runs_sweep_from_config_file(
    tmp_path: Path, store, config, make_article, monkeypatch: pytest.MonkeyPatch
) -> None:
    article = make_article("Council approves city budget")
    config_path = tmp_path / "config.yaml"
    config_path.write_text("db_path: ./ignored.db\ntiktoken_encoding: null\nbatch_size: 2\n")
    provider = FakeProvider("ollama", [NEUTRAL])
    monkeypatch.setattr(pipeline, "build_provider_chain", lambda _config: [provider])

    pipeline.main(["--config", str(config_path), "--db", str(config.db_path)])

    assert store.get_analysis(article.id).content_type == "news"
    assert provider.calls == 1


def test_sweep_summary_counts_match_outcomes(store, config, make_article) -> None:
    topics = {topic: make_article(topic).id for topic in ("City budget", "School board", "Harbor plan")}
    by_id = {article_id: topic for topic, article_id in topics.items()}

    def classify_by_title(article: Article) -> Classification:
        return Classification(provider="ollama", content_type="news", bias_score=0.0, topic_summary=by_id[article.id])

    search = FakeSearch(
        {
            "city budget debate": SearchError("index offline"),
            "city budget criticism": SearchError("index offline"),
            "city budget support": SearchError("index offline"),
            "school board debate": SearchError("index offline"),
        }
    )
    matcher = OpposingArticleMatcher(store, search, config)
    orchestrator = AnalysisOrchestrator(store, [FakeProvider("ollama", [classify_by_title])], config, matcher=matcher)
    try:
        summary = pipeline.run_sweep(store, orchestrator, config)
    finally:
        matcher.close()

    assert summary.analyzed == 3
    assert summary.match_failed == 1
    assert summary.match_degraded == 1
    assert orchestrator.last_match(topics["City budget"]).failed
    assert orchestrator.last_match(topics["School board"]).failed_queries == ["school board debate"]
    assert not orchestrator.last_match(topics["Harbor plan"]).degraded
