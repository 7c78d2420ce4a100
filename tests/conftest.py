import sys
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Union

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
PIPELINE_DIR = ROOT_DIR / "opposing-views-pipeline"
sys.path.insert(0, str(PIPELINE_DIR))

from config import Config  # type: ignore  # noqa: E402
from models import Article, Classification, SearchHit  # type: ignore  # noqa: E402
from providers import AnalysisProvider  # type: ignore  # noqa: E402
from search import SearchCollaborator  # type: ignore  # noqa: E402
from store import ArticleStore  # type: ignore  # noqa: E402


Response = Union[Classification, Exception, Callable[[Article], Classification]]


class FakeProvider(AnalysisProvider):
    """Replays scripted responses; the last one repeats once the script runs out."""

    def __init__(self, name: str, responses: Sequence[Response], delay: float = 0.0):
        self.name = name
        self._responses = list(responses)
        self._delay = delay
        self._lock = threading.Lock()
        self.calls = 0

    def classify(self, article: Article) -> Classification:
        with self._lock:
            self.calls += 1
            response = self._responses[min(self.calls, len(self._responses)) - 1]
        if self._delay:
            time.sleep(self._delay)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(article)
        return response


class FakeSearch(SearchCollaborator):
    """Returns canned hits per query; ignores ``excluding`` so callers must filter."""

    def __init__(self, results: Dict[str, Union[List[SearchHit], Exception]], delay: float = 0.0):
        self.results = results
        self.delay = delay
        self.calls: List[str] = []

    def search(self, query, excluding, k):
        self.calls.append(query)
        if self.delay:
            time.sleep(self.delay)
        outcome = self.results.get(query, [])
        if isinstance(outcome, Exception):
            raise outcome
        return list(outcome)[:k]


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return Config(
        db_path=tmp_path / "articles.db",
        tiktoken_encoding=None,
        provider_retry_backoff_seconds=0.0,
        search_timeout_seconds=5.0,
        batch_size=4,
    )


@pytest.fixture
def store(config: Config) -> ArticleStore:
    return ArticleStore(config.db_path)


@pytest.fixture
def feed_id(store: ArticleStore) -> str:
    return store.insert_feed("Test Feed", "http://example.com/rss")


@pytest.fixture
def make_article(store: ArticleStore, feed_id: str) -> Callable[..., Article]:
    counter = {"n": 0}

    def factory(
        title: str = "Untitled story",
        summary: Optional[str] = None,
        content: Optional[str] = None,
        guid: Optional[str] = None,
        published_at: Optional[str] = None,
    ) -> Article:
        counter["n"] += 1
        return store.insert_article(
            feed_id,
            title,
            f"http://example.com/articles/{counter['n']}",
            summary=summary,
            content=content,
            guid=guid if guid is not None else f"guid-{counter['n']}",
            published_at=published_at,
        )

    return factory


