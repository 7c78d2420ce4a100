import pytest

from models import ArticleAnalysis  # type: ignore
from query_generator import (  # type: ignore
    CENTER,
    LEFT,
    RIGHT,
    classify_lean,
    generate_queries,
    invert_indicator,
    topic_keywords,
)


def _analysis(topic=None, bias=None, indicators=()):
    return ArticleAnalysis(
        article_id="a1",
        provider="ollama",
        bias_score=bias,
        bias_indicators=frozenset(indicators),
        topic_summary=topic,
    )


@pytest.mark.parametrize(
    "score, lean",
    [(None, CENTER), (0.0, CENTER), (0.1, CENTER), (-0.14, CENTER), (-0.5, LEFT), (0.15, RIGHT), (1.0, RIGHT)],
)
def test_classify_lean(score, lean) -> None:
    assert classify_lean(score) == lean


def test_topic_keywords_drop_stopwords_and_duplicates() -> None:
    assert topic_keywords("The Senate passes the border bill, the Senate says") == ["senate", "passes", "border", "bill"]
    assert topic_keywords(None) == []


def test_invert_indicator_prefers_longest_phrase() -> None:
    assert invert_indicator("Undocumented immigrants", LEFT) == "illegal immigrants"
    assert invert_indicator("undocumented workers", LEFT) == "illegal workers"
    assert invert_indicator("pro-choice activists", LEFT) == "pro-life activists"
    assert invert_indicator("illegal immigrants", RIGHT) == "undocumented immigrants"
    assert invert_indicator("conservative", RIGHT) == "progressive"
    assert invert_indicator("housing costs", LEFT) is None
    assert invert_indicator("gun control", CENTER) is None


def test_right_leaning_analysis_asks_for_progressive_coverage() -> None:
    analysis = _analysis(
        topic="Senate passes border security bill",
        bias=0.7,
        indicators={"illegal immigrants", "border security"},
    )

    assert generate_queries(analysis) == [
        "senate passes border security bill progressive perspective",
        "senate passes border security bill asylum seekers undocumented immigrants",
        "senate passes border security bill criticism",
    ]


def test_center_analysis_asks_for_both_sides() -> None:
    queries = generate_queries(_analysis(topic="City council budget vote", bias=0.05))

    assert queries == [
        "city council budget vote debate",
        "city council budget vote criticism",
        "city council budget vote support",
    ]


def test_indicators_only_analysis() -> None:
    queries = generate_queries(_analysis(bias=-0.8, indicators={"gun control", "Gun Control "}))

    assert queries == ["gun rights conservative"]


def test_generation_is_deterministic_and_bounded() -> None:
    analysis = _analysis(
        topic="Climate policy debate in parliament",
        bias=-0.6,
        indicators={"climate crisis", "wealth inequality", "tax the rich"},
    )

    first = generate_queries(analysis, max_queries=2)

    assert first == generate_queries(analysis, max_queries=2)
    assert len(first) == 2
    assert generate_queries(analysis, max_queries=0) == []


def test_nothing_to_search_for_yields_no_queries() -> None:
    assert generate_queries(_analysis(bias=0.9)) == []
    assert generate_queries(_analysis(topic="the and of", bias=0.9)) == []
