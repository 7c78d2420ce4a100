"""SQLite-backed store for articles, analyses, and opposing-article links."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from errors import ConflictError, NotFoundError
from models import Article, ArticleAnalysis, OpposingArticleLink
from pipeline_utils import (
    SCHEMA_SQL_PATH,
    dump_json_column,
    ensure_dir,
    load_json_column,
    new_id,
    utc_now,
)


logger = logging.getLogger(__name__)

_BUSY_TIMEOUT_SECONDS = 30.0

_ARTICLE_COLUMNS = "id, feed_id, title, url, author, summary, content, published_at, guid, created_at"
_ANALYSIS_COLUMNS = (
    "id, article_id, content_type, bias_score, bias_confidence, bias_indicators, "
    "opposing_queries, topic_summary, provider, model_version, analyzed_at"
)

EXPECTED_TABLE_COLUMNS: Dict[str, Tuple[str, ...]] = {
    "feeds": ("id", "title", "url", "created_at"),
    "articles": (
        "id",
        "feed_id",
        "title",
        "url",
        "author",
        "summary",
        "content",
        "published_at",
        "guid",
        "created_at",
    ),
    "article_analysis": (
        "id",
        "article_id",
        "content_type",
        "bias_score",
        "bias_confidence",
        "bias_indicators",
        "opposing_queries",
        "topic_summary",
        "provider",
        "model_version",
        "analyzed_at",
    ),
    "opposing_articles": (
        "id",
        "source_article_id",
        "opposing_article_id",
        "relevance_score",
        "created_at",
    ),
}


def _row_to_article(row: sqlite3.Row) -> Article:
    return Article(
        id=row["id"],
        feed_id=row["feed_id"],
        title=row["title"],
        url=row["url"],
        author=row["author"],
        summary=row["summary"],
        content=row["content"],
        published_at=row["published_at"],
        guid=row["guid"],
        created_at=row["created_at"],
    )


def _row_to_analysis(row: sqlite3.Row) -> ArticleAnalysis:
    indicators = load_json_column(row["bias_indicators"]) or []
    queries = load_json_column(row["opposing_queries"]) or []
    return ArticleAnalysis(
        id=row["id"],
        article_id=row["article_id"],
        content_type=row["content_type"],
        bias_score=row["bias_score"],
        bias_confidence=row["bias_confidence"],
        bias_indicators=frozenset(str(item) for item in indicators),
        opposing_queries=tuple(str(item) for item in queries),
        topic_summary=row["topic_summary"],
        provider=row["provider"],
        model_version=row["model_version"],
        analyzed_at=row["analyzed_at"],
    )


def _row_to_link(row: sqlite3.Row) -> OpposingArticleLink:
    return OpposingArticleLink(
        id=row["id"],
        source_article_id=row["source_article_id"],
        opposing_article_id=row["opposing_article_id"],
        relevance_score=row["relevance_score"],
        created_at=row["created_at"],
    )


class ArticleStore:
    """Durable record of articles and the pipeline rows hanging off them.

    Every public call opens its own connection, so a single store can be shared
    by worker threads. Writes run inside ``with conn:`` blocks: any exception,
    including cancellation, rolls the transaction back.
    """

    def __init__(self, db_path: Path, schema_path: Path = SCHEMA_SQL_PATH):
        self.db_path = Path(db_path)
        ensure_dir(self.db_path.parent)
        schema_sql = schema_path.read_text(encoding="utf-8")

        conn = sqlite3.connect(self.db_path, timeout=_BUSY_TIMEOUT_SECONDS)
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(schema_sql)
            missing = _missing_columns(conn)
            if missing:
                raise RuntimeError(f"Database {self.db_path} has an outdated schema; missing columns: {missing}")
        finally:
            conn.close()
        logger.debug("Opened article store at %s", self.db_path)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=_BUSY_TIMEOUT_SECONDS)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
        finally:
            conn.close()

    # Ingestion collaborator boundary

    def insert_feed(self, title: str, url: str) -> str:
        """Create a feed (or return the existing one with this URL) and return its id."""
        with self._connect() as conn:
            with conn:
                conn.execute(
                    "INSERT INTO feeds (id, title, url, created_at) VALUES (?, ?, ?, ?) "
                    "ON CONFLICT (url) DO NOTHING",
                    (new_id(), title, url, utc_now()),
                )
            row = conn.execute("SELECT id FROM feeds WHERE url = ?", (url,)).fetchone()
            return row["id"]

    def delete_feed(self, feed_id: str) -> None:
        with self._connect() as conn:
            with conn:
                conn.execute("DELETE FROM feeds WHERE id = ?", (feed_id,))

    def insert_article(
        self,
        feed_id: str,
        title: str,
        url: str,
        author: Optional[str] = None,
        summary: Optional[str] = None,
        content: Optional[str] = None,
        published_at: Optional[str] = None,
        guid: Optional[str] = None,
    ) -> Article:
        """Store a freshly fetched article; a known ``(feed_id, guid)`` returns the existing row."""
        article_id = new_id()
        with self._connect() as conn:
            try:
                with conn:
                    conn.execute(
                        f"""
                        INSERT INTO articles ({_ARTICLE_COLUMNS})
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT (feed_id, guid) DO NOTHING
                        """,
                        (article_id, feed_id, title, url, author, summary, content, published_at, guid, utc_now()),
                    )
            except sqlite3.IntegrityError as exc:
                if "FOREIGN KEY" in str(exc):
                    raise NotFoundError(f"Feed {feed_id} does not exist") from exc
                raise

            if guid is not None:
                row = conn.execute(
                    f"SELECT {_ARTICLE_COLUMNS} FROM articles WHERE feed_id = ? AND guid = ?",
                    (feed_id, guid),
                ).fetchone()
            else:
                row = conn.execute(f"SELECT {_ARTICLE_COLUMNS} FROM articles WHERE id = ?", (article_id,)).fetchone()
            return _row_to_article(row)

    def delete_article(self, article_id: str) -> None:
        with self._connect() as conn:
            with conn:
                conn.execute("DELETE FROM articles WHERE id = ?", (article_id,))

    # Article store boundary

    def get_article(self, article_id: str) -> Article:
        with self._connect() as conn:
            row = conn.execute(f"SELECT {_ARTICLE_COLUMNS} FROM articles WHERE id = ?", (article_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Article {article_id} not found")
        return _row_to_article(row)

    def list_unanalyzed(self, limit: int) -> List[Article]:
        """Newest articles that have no analysis row yet."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                SELECT a.id, a.feed_id, a.title, a.url, a.author, a.summary, a.content,
                       a.published_at, a.guid, a.created_at
                FROM articles a
                LEFT JOIN article_analysis aa ON aa.article_id = a.id
                WHERE aa.id IS NULL
                ORDER BY a.published_at IS NULL, a.published_at DESC, a.created_at DESC
                LIMIT ?
                """,
                (max(0, int(limit)),),
            )
            return [_row_to_article(row) for row in cursor]

    def get_analysis(self, article_id: str) -> Optional[ArticleAnalysis]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ANALYSIS_COLUMNS} FROM article_analysis WHERE article_id = ?",
                (article_id,),
            ).fetchone()
        return _row_to_analysis(row) if row is not None else None

    def insert_analysis(self, analysis: ArticleAnalysis) -> ArticleAnalysis:
        """Insert the single analysis row for an article.

        Raises ConflictError when the article already has one and NotFoundError
        when the article is gone.
        """
        analysis_id = analysis.id or new_id()
        analyzed_at = analysis.analyzed_at or utc_now()
        with self._connect() as conn:
            try:
                with conn:
                    conn.execute(
                        f"""
                        INSERT INTO article_analysis ({_ANALYSIS_COLUMNS})
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            analysis_id,
                            analysis.article_id,
                            analysis.content_type,
                            analysis.bias_score,
                            analysis.bias_confidence,
                            dump_json_column(sorted(analysis.bias_indicators)),
                            dump_json_column(list(analysis.opposing_queries)),
                            analysis.topic_summary,
                            analysis.provider,
                            analysis.model_version,
                            analyzed_at,
                        ),
                    )
            except sqlite3.IntegrityError as exc:
                message = str(exc)
                if "UNIQUE" in message and "article_analysis.article_id" in message:
                    raise ConflictError(f"Article {analysis.article_id} already has an analysis") from exc
                if "FOREIGN KEY" in message:
                    raise NotFoundError(f"Article {analysis.article_id} not found") from exc
                raise
            row = conn.execute(
                f"SELECT {_ANALYSIS_COLUMNS} FROM article_analysis WHERE id = ?",
                (analysis_id,),
            ).fetchone()
        return _row_to_analysis(row)

    def update_opposing_queries(self, article_id: str, queries: Sequence[str]) -> None:
        """Cache generated opposing queries on the analysis row."""
        with self._connect() as conn:
            with conn:
                updated = conn.execute(
                    "UPDATE article_analysis SET opposing_queries = ? WHERE article_id = ?",
                    (dump_json_column(list(queries)), article_id),
                ).rowcount
        if updated == 0:
            raise NotFoundError(f"No analysis stored for article {article_id}")

    def insert_opposing_link(self, link: OpposingArticleLink) -> bool:
        """Insert one link; returns False when the pair already existed."""
        return self.insert_opposing_links([link]) == 1

    def insert_opposing_links(self, links: Iterable[OpposingArticleLink]) -> int:
        """Insert links in one transaction, ignoring existing pairs. Returns the number inserted."""
        rows = [
            (
                link.id or new_id(),
                link.source_article_id,
                link.opposing_article_id,
                float(link.relevance_score),
                link.created_at or utc_now(),
            )
            for link in links
        ]
        if not rows:
            return 0
        inserted = 0
        with self._connect() as conn:
            with conn:
                for row in rows:
                    cursor = conn.execute(
                        """
                        INSERT INTO opposing_articles (
                            id, source_article_id, opposing_article_id, relevance_score, created_at
                        ) VALUES (?, ?, ?, ?, ?)
                        ON CONFLICT (source_article_id, opposing_article_id) DO NOTHING
                        """,
                        row,
                    )
                    inserted += cursor.rowcount
        return inserted

    def linked_opposing_ids(self, source_article_id: str) -> Set[str]:
        with self._connect() as conn:
            cursor = conn.execute(
                "SELECT opposing_article_id FROM opposing_articles WHERE source_article_id = ?",
                (source_article_id,),
            )
            return {row["opposing_article_id"] for row in cursor}

    def list_opposing_links(self, source_article_id: str) -> List[OpposingArticleLink]:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                SELECT id, source_article_id, opposing_article_id, relevance_score, created_at
                FROM opposing_articles
                WHERE source_article_id = ?
                ORDER BY relevance_score DESC, created_at ASC
                """,
                (source_article_id,),
            )
            return [_row_to_link(row) for row in cursor]

    def search_pool(self, excluding: Set[str], limit: int) -> List[Tuple[Article, Optional[float]]]:
        """Most recent articles (with their bias score, if analyzed) outside ``excluding``."""
        fetch_limit = max(0, int(limit)) + len(excluding)
        pool: List[Tuple[Article, Optional[float]]] = []
        with self._connect() as conn:
            cursor = conn.execute(
                """
                SELECT a.id, a.feed_id, a.title, a.url, a.author, a.summary, a.content,
                       a.published_at, a.guid, a.created_at, aa.bias_score
                FROM articles a
                LEFT JOIN article_analysis aa ON aa.article_id = a.id
                ORDER BY a.published_at IS NULL, a.published_at DESC, a.created_at DESC
                LIMIT ?
                """,
                (fetch_limit,),
            )
            for row in cursor:
                if row["id"] in excluding:
                    continue
                pool.append((_row_to_article(row), row["bias_score"]))
                if len(pool) >= limit:
                    break
        return pool


def _missing_columns(conn: sqlite3.Connection) -> Dict[str, List[str]]:
    missing: Dict[str, List[str]] = {}
    for table, expected_columns in EXPECTED_TABLE_COLUMNS.items():
        cursor = conn.execute(f"PRAGMA table_info({table})")
        existing_columns = [row[1] for row in cursor.fetchall()]
        absent = [column for column in expected_columns if column not in existing_columns]
        if absent:
            logger.debug("Table %s is missing columns %s", table, absent)
            missing[table] = absent
    return missing
