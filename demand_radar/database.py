"""SQLite database layer for Demand Radar.

This module handles all database operations including:
- Schema creation and migrations
- CRUD operations for posts, opportunities and their source links
- Transactional merges used by the deduplication engine
- Versioned cluster snapshots
- Atomic AI usage rollups
"""

import json
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator, Iterable

from demand_radar.errors import NotFoundError, PersistenceError, ValidationError

# Named sub-scores an opportunity may carry (0-10 each)
SUB_SCORES = (
    "speed",
    "convenience",
    "trust",
    "price",
    "status",
    "predictability",
    "ui_ux",
    "ease_of_use",
    "legal_friction",
    "emotional_comfort",
)

# Categorical tag fields compared by the similarity scorer
TAG_FIELDS = ("business_type", "industry_vertical", "niche")

UNKNOWN_TAG = "Unknown"
VIABILITY_THRESHOLD = 7.0
MAX_SCORE = 10

# SQLite caps bound parameters per statement; IN-lists are chunked below this
_IN_CHUNK = 500


def utc_day(timestamp: float) -> str:
    """Return the UTC calendar day (YYYY-MM-DD) of an epoch timestamp."""
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).date().isoformat()


def is_known_tag(value: str | None) -> bool:
    """Check whether a categorical tag carries information."""
    return bool(value) and value.strip().lower() != UNKNOWN_TAG.lower()


@dataclass
class Post:
    """Reddit post data."""
    reddit_id: str
    subreddit: str
    title: str
    body: str | None
    author: str
    score: int
    num_comments: int
    created_utc: float
    fetched_at: float
    processed_at: float | None = None
    processing_error: str | None = None
    id: int | None = None

    def __post_init__(self):
        if self.processing_error is not None and self.processed_at is not None:
            raise ValidationError(
                f"Post {self.reddit_id} cannot be both processed and failed"
            )

    @property
    def status(self) -> str:
        """Processing state: pending, processed or failed."""
        if self.processing_error is not None:
            return "failed"
        if self.processed_at is not None:
            return "processed"
        return "pending"


@dataclass
class Opportunity:
    """Business opportunity derived from one or more posts."""
    title: str
    description: str
    proposed_solution: str
    subreddit: str
    overall_score: float
    scores: dict[str, int] = field(default_factory=dict)
    business_type: str = UNKNOWN_TAG
    industry_vertical: str = UNKNOWN_TAG
    niche: str = UNKNOWN_TAG
    viable: bool | None = None
    created_at: float = field(default_factory=time.time)
    id: int | None = None
    source_post_ids: list[int] = field(default_factory=list)

    def __post_init__(self):
        unknown = set(self.scores) - set(SUB_SCORES)
        if unknown:
            raise ValidationError(f"Unknown sub-scores: {sorted(unknown)}")
        for name, value in self.scores.items():
            if not 0 <= value <= MAX_SCORE:
                raise ValidationError(f"Sub-score {name}={value} outside 0-{MAX_SCORE}")
        if not 0 <= self.overall_score <= MAX_SCORE:
            raise ValidationError(f"Overall score {self.overall_score} outside 0-{MAX_SCORE}")
        if self.viable is None:
            self.viable = self.overall_score >= VIABILITY_THRESHOLD

    @property
    def source_count(self) -> int:
        return len(self.source_post_ids)

    def tags(self) -> dict[str, str]:
        """Known categorical tags, normalized to lowercase."""
        return {
            name: getattr(self, name).strip().lower()
            for name in TAG_FIELDS
            if is_known_tag(getattr(self, name))
        }


@dataclass
class Source:
    """Link between an opportunity and a contributing post."""
    opportunity_id: int
    post_id: int
    source_type: str = "post"
    confidence: float = 0.9
    created_at: float = field(default_factory=time.time)


@dataclass
class ClusterSnapshotRow:
    """Persisted result of a clustering run."""
    generation: int
    computed_at: float
    opportunity_count: int
    clusters_json: str


@dataclass
class UsageEvent:
    """One AI call's token and cost footprint."""
    request_id: str
    model: str
    input_tokens: int
    output_tokens: int
    timestamp: float
    success: bool = True
    operation: str = "individual"  # individual / batch / fallback
    session_id: str | None = None
    batch_mode: bool = False
    cost: float | None = None

    @property
    def usage_date(self) -> str:
        return utc_day(self.timestamp)


@dataclass
class UsageTotals:
    """Counters shared by every usage rollup.

    Cost is kept in integer micro-dollars so that increments applied in any
    order produce identical totals.
    """
    requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    cost_micros: int = 0
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_cost(self) -> float:
        return self.cost_micros / 1_000_000

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def average_cost_per_request(self) -> float:
        return self.total_cost / self.requests if self.requests else 0.0

    @property
    def success_rate(self) -> float:
        return self.successful_requests / self.requests * 100 if self.requests else 0.0


@dataclass
class DailyUsage(UsageTotals):
    """Usage rollup for one UTC calendar day."""
    usage_date: str = ""


@dataclass
class ModelUsage(UsageTotals):
    """Usage rollup for one model on one day."""
    model: str = ""
    usage_date: str = ""


@dataclass
class SessionUsage(UsageTotals):
    """Usage rollup for one analysis session."""
    session_id: str = ""


ROLLUP_COLUMNS = (
    "requests",
    "successful_requests",
    "failed_requests",
    "cost_micros",
    "input_tokens",
    "output_tokens",
)


# SQL Schema
SCHEMA = """
-- Posts fetched from Reddit (reddit_id is not unique: double scrapes happen)
CREATE TABLE IF NOT EXISTS posts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    reddit_id TEXT NOT NULL,
    subreddit TEXT NOT NULL,
    title TEXT NOT NULL,
    body TEXT,
    author TEXT NOT NULL DEFAULT '[deleted]',
    score INTEGER DEFAULT 0,
    num_comments INTEGER DEFAULT 0,
    created_utc REAL NOT NULL,
    fetched_at REAL NOT NULL,
    processed_at REAL,
    processing_error TEXT,
    CHECK (processing_error IS NULL OR processed_at IS NULL)
);

-- Opportunities produced by the analyzer
CREATE TABLE IF NOT EXISTS opportunities (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    description TEXT NOT NULL,
    proposed_solution TEXT NOT NULL DEFAULT '',
    subreddit TEXT NOT NULL,
    scores_json TEXT NOT NULL DEFAULT '{}',
    overall_score REAL NOT NULL DEFAULT 0,
    viable INTEGER NOT NULL DEFAULT 0,
    business_type TEXT DEFAULT 'Unknown',
    industry_vertical TEXT DEFAULT 'Unknown',
    niche TEXT DEFAULT 'Unknown',
    created_at REAL NOT NULL
);

-- Opportunity <-> post links
CREATE TABLE IF NOT EXISTS opportunity_sources (
    opportunity_id INTEGER NOT NULL,
    post_id INTEGER NOT NULL,
    source_type TEXT NOT NULL DEFAULT 'post',
    confidence REAL NOT NULL DEFAULT 0.9,
    created_at REAL NOT NULL,
    PRIMARY KEY (opportunity_id, post_id),
    FOREIGN KEY (opportunity_id) REFERENCES opportunities(id) ON DELETE CASCADE,
    FOREIGN KEY (post_id) REFERENCES posts(id) ON DELETE CASCADE
);

-- Latest clustering result (one generation kept)
CREATE TABLE IF NOT EXISTS cluster_snapshots (
    generation INTEGER PRIMARY KEY AUTOINCREMENT,
    computed_at REAL NOT NULL,
    opportunity_count INTEGER NOT NULL DEFAULT 0,
    clusters_json TEXT NOT NULL
);

-- Raw AI usage events (request_id makes recording idempotent)
CREATE TABLE IF NOT EXISTS usage_events (
    request_id TEXT PRIMARY KEY,
    session_id TEXT,
    model TEXT NOT NULL,
    operation TEXT NOT NULL DEFAULT 'individual',
    input_tokens INTEGER NOT NULL DEFAULT 0,
    output_tokens INTEGER NOT NULL DEFAULT 0,
    cost_micros INTEGER NOT NULL DEFAULT 0,
    success INTEGER NOT NULL DEFAULT 1,
    batch_mode INTEGER NOT NULL DEFAULT 0,
    timestamp REAL NOT NULL,
    usage_date TEXT NOT NULL
);

-- Usage rollups
CREATE TABLE IF NOT EXISTS daily_usage (
    usage_date TEXT PRIMARY KEY,
    requests INTEGER NOT NULL DEFAULT 0,
    successful_requests INTEGER NOT NULL DEFAULT 0,
    failed_requests INTEGER NOT NULL DEFAULT 0,
    cost_micros INTEGER NOT NULL DEFAULT 0,
    input_tokens INTEGER NOT NULL DEFAULT 0,
    output_tokens INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS model_usage (
    model TEXT NOT NULL,
    usage_date TEXT NOT NULL,
    requests INTEGER NOT NULL DEFAULT 0,
    successful_requests INTEGER NOT NULL DEFAULT 0,
    failed_requests INTEGER NOT NULL DEFAULT 0,
    cost_micros INTEGER NOT NULL DEFAULT 0,
    input_tokens INTEGER NOT NULL DEFAULT 0,
    output_tokens INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (model, usage_date)
);

CREATE TABLE IF NOT EXISTS session_usage (
    session_id TEXT PRIMARY KEY,
    requests INTEGER NOT NULL DEFAULT 0,
    successful_requests INTEGER NOT NULL DEFAULT 0,
    failed_requests INTEGER NOT NULL DEFAULT 0,
    cost_micros INTEGER NOT NULL DEFAULT 0,
    input_tokens INTEGER NOT NULL DEFAULT 0,
    output_tokens INTEGER NOT NULL DEFAULT 0
);

-- Indexes for performance
CREATE INDEX IF NOT EXISTS idx_posts_reddit_id ON posts(reddit_id);
CREATE INDEX IF NOT EXISTS idx_posts_subreddit ON posts(subreddit);
CREATE INDEX IF NOT EXISTS idx_posts_created_utc ON posts(created_utc);
CREATE INDEX IF NOT EXISTS idx_opportunities_created_at ON opportunities(created_at);
CREATE INDEX IF NOT EXISTS idx_sources_post_id ON opportunity_sources(post_id);
CREATE INDEX IF NOT EXISTS idx_usage_events_date ON usage_events(usage_date);
"""


def _chunks(items: list, size: int = _IN_CHUNK) -> Generator[list, None, None]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _marks(items: list) -> str:
    return ", ".join("?" for _ in items)


class Database:
    """SQLite database manager for Demand Radar."""

    def __init__(self, db_path: str | Path = "./demand_radar.db", timeout: float = 30.0):
        """Initialize database connection.

        Args:
            db_path: Path to SQLite database file.
            timeout: Seconds to wait for a competing writer's lock.
        """
        self.db_path = Path(db_path)
        self.timeout = timeout
        self._ensure_directory()

    def _ensure_directory(self) -> None:
        """Ensure the database directory exists."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections.

        Storage failures surface as PersistenceError; the block's work is
        rolled back on any exception.

        Yields:
            SQLite connection with row factory set.
        """
        try:
            conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open database {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Database error: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Connection holding the write lock from the first statement.

        Concurrent writers queue on the lock (bounded by ``timeout``) instead
        of interleaving reads and writes.
        """
        with self.connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            yield conn

    def initialize(self) -> None:
        """Initialize database schema and run migrations."""
        with self.connection() as conn:
            conn.executescript(SCHEMA)
        self._run_migrations()

    def _run_migrations(self) -> None:
        """Run database migrations for schema updates.

        This handles adding new columns to existing tables without
        requiring users to delete their database.
        """
        with self.connection() as conn:
            cursor = conn.execute("PRAGMA table_info(opportunities)")
            columns = {row["name"] for row in cursor.fetchall()}

            # Migration 1: proposed_solution was added after the first release
            if "proposed_solution" not in columns:
                conn.execute("""
                    ALTER TABLE opportunities
                    ADD COLUMN proposed_solution TEXT NOT NULL DEFAULT ''
                """)

            # Migration 2: categorical tags
            for tag in TAG_FIELDS:
                if tag not in columns:
                    conn.execute(
                        f"ALTER TABLE opportunities ADD COLUMN {tag} TEXT DEFAULT 'Unknown'"
                    )

    # -------------------------------------------------------------------------
    # Post operations
    # -------------------------------------------------------------------------

    def insert_post(self, post: Post) -> int:
        """Insert a post.

        Args:
            post: Post data to insert. Its ``id`` is set on return.

        Returns:
            The new post's ID.
        """
        with self.connection() as conn:
            post.id = self._insert_post(conn, post)
        return post.id

    def insert_posts(self, posts: list[Post]) -> list[int]:
        """Insert multiple posts in one transaction.

        Args:
            posts: List of posts to insert.

        Returns:
            IDs of the new posts, in input order.
        """
        with self.connection() as conn:
            for post in posts:
                post.id = self._insert_post(conn, post)
        return [p.id for p in posts]

    @staticmethod
    def _insert_post(conn: sqlite3.Connection, post: Post) -> int:
        cursor = conn.execute(
            """
            INSERT INTO posts
            (reddit_id, subreddit, title, body, author, score, num_comments,
             created_utc, fetched_at, processed_at, processing_error)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                post.reddit_id,
                post.subreddit,
                post.title,
                post.body,
                post.author,
                post.score,
                post.num_comments,
                post.created_utc,
                post.fetched_at,
                post.processed_at,
                post.processing_error,
            ),
        )
        return cursor.lastrowid

    def get_post(self, post_id: int) -> Post | None:
        """Get a post by internal ID.

        Returns:
            Post if found, None otherwise.
        """
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM posts WHERE id = ?", (post_id,)
            ).fetchone()
            if row:
                return Post(**dict(row))
            return None

    def get_posts_by_reddit_id(self, reddit_id: str) -> list[Post]:
        """Get every stored copy of a Reddit post."""
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM posts WHERE reddit_id = ? ORDER BY id", (reddit_id,)
            ).fetchall()
            return [Post(**dict(row)) for row in rows]

    def get_posts_by_ids(self, post_ids: Iterable[int]) -> dict[int, Post]:
        """Get posts keyed by internal ID. Missing IDs are omitted."""
        ids = sorted(set(post_ids))
        result: dict[int, Post] = {}
        with self.connection() as conn:
            for chunk in _chunks(ids):
                rows = conn.execute(
                    f"SELECT * FROM posts WHERE id IN ({_marks(chunk)})", chunk
                ).fetchall()
                for row in rows:
                    result[row["id"]] = Post(**dict(row))
        return result

    def get_posts_by_title_author(self, title: str, author: str) -> list[Post]:
        """Get posts with the same title and author, ignoring case and padding."""
        with self.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM posts
                WHERE lower(trim(title)) = ? AND lower(trim(author)) = ?
                ORDER BY created_utc, id
                """,
                (title.strip().lower(), author.strip().lower()),
            ).fetchall()
            return [Post(**dict(row)) for row in rows]

    def get_recent_posts(self, subreddit: str, limit: int = 100) -> list[Post]:
        """Get the newest posts of a subreddit (case-insensitive)."""
        with self.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM posts WHERE lower(subreddit) = ?
                ORDER BY created_utc DESC, id DESC LIMIT ?
                """,
                (subreddit.strip().lower(), limit),
            ).fetchall()
            return [Post(**dict(row)) for row in rows]

    def update_post_engagement(self, reddit_id: str, score: int, num_comments: int) -> int:
        """Refresh score and comment count on every stored copy of a post.

        Returns:
            Number of rows updated. 0 means the post is not stored yet.
        """
        with self.connection() as conn:
            cursor = conn.execute(
                "UPDATE posts SET score = ?, num_comments = ? WHERE reddit_id = ?",
                (score, num_comments, reddit_id),
            )
            return cursor.rowcount

    def iter_posts(self, batch_size: int = 50) -> Generator[list[Post], None, None]:
        """Yield all posts in ID order, one page at a time."""
        last_id = 0
        while True:
            with self.connection() as conn:
                rows = conn.execute(
                    "SELECT * FROM posts WHERE id > ? ORDER BY id LIMIT ?",
                    (last_id, batch_size),
                ).fetchall()
            if not rows:
                return
            yield [Post(**dict(row)) for row in rows]
            last_id = rows[-1]["id"]

    def get_all_posts(self, batch_size: int = 50) -> list[Post]:
        """Read every post using paged reads."""
        posts: list[Post] = []
        for page in self.iter_posts(batch_size):
            posts.extend(page)
        return posts

    def get_unprocessed_posts(self, limit: int | None = None) -> list[Post]:
        """Get posts that are neither processed nor failed."""
        query = (
            "SELECT * FROM posts WHERE processed_at IS NULL "
            "AND processing_error IS NULL ORDER BY created_utc"
        )
        params: list = []
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self.connection() as conn:
            rows = conn.execute(query, params).fetchall()
            return [Post(**dict(row)) for row in rows]

    def mark_post_processed(self, post_id: int, processed_at: float | None = None) -> bool:
        """Mark a post as analyzed, clearing any previous error."""
        with self.connection() as conn:
            cursor = conn.execute(
                "UPDATE posts SET processed_at = ?, processing_error = NULL WHERE id = ?",
                (processed_at or time.time(), post_id),
            )
            return cursor.rowcount > 0

    def mark_post_failed(self, post_id: int, error: str) -> bool:
        """Mark a post as failed, clearing its processed timestamp."""
        with self.connection() as conn:
            cursor = conn.execute(
                "UPDATE posts SET processing_error = ?, processed_at = NULL WHERE id = ?",
                (error, post_id),
            )
            return cursor.rowcount > 0

    def delete_post(self, post_id: int) -> bool:
        """Delete a post and its source links. Returns True if deleted."""
        with self.connection() as conn:
            cursor = conn.execute("DELETE FROM posts WHERE id = ?", (post_id,))
            return cursor.rowcount > 0

    # -------------------------------------------------------------------------
    # Opportunity operations
    # -------------------------------------------------------------------------

    def insert_opportunity(
        self,
        opportunity: Opportunity,
        source_post_ids: Iterable[int] = (),
    ) -> int:
        """Insert an opportunity together with its source links.

        Args:
            opportunity: Opportunity to insert. Its ``id`` is set on return.
            source_post_ids: Posts the opportunity was derived from.

        Returns:
            The new opportunity's ID.
        """
        post_ids = list(dict.fromkeys(list(source_post_ids) or opportunity.source_post_ids))
        now = time.time()
        with self.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO opportunities
                (title, description, proposed_solution, subreddit, scores_json,
                 overall_score, viable, business_type, industry_vertical, niche,
                 created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    opportunity.title,
                    opportunity.description,
                    opportunity.proposed_solution,
                    opportunity.subreddit,
                    json.dumps(opportunity.scores, sort_keys=True),
                    opportunity.overall_score,
                    int(bool(opportunity.viable)),
                    opportunity.business_type,
                    opportunity.industry_vertical,
                    opportunity.niche,
                    opportunity.created_at,
                ),
            )
            opportunity.id = cursor.lastrowid
            conn.executemany(
                """
                INSERT OR IGNORE INTO opportunity_sources
                (opportunity_id, post_id, created_at)
                VALUES (?, ?, ?)
                """,
                [(opportunity.id, post_id, now) for post_id in post_ids],
            )
        opportunity.source_post_ids = post_ids
        return opportunity.id

    def link_source(
        self,
        opportunity_id: int,
        post_id: int,
        source_type: str = "post",
        confidence: float = 0.9,
    ) -> bool:
        """Link a post to an opportunity. Returns True if a new link was made."""
        with self.connection() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO opportunity_sources
                (opportunity_id, post_id, source_type, confidence, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (opportunity_id, post_id, source_type, confidence, time.time()),
            )
            return cursor.rowcount > 0

    def get_sources(self, opportunity_id: int | None = None) -> list[Source]:
        """Get source links, optionally for a single opportunity."""
        query = "SELECT * FROM opportunity_sources"
        params: list = []
        if opportunity_id is not None:
            query += " WHERE opportunity_id = ?"
            params.append(opportunity_id)
        query += " ORDER BY opportunity_id, post_id"

        with self.connection() as conn:
            rows = conn.execute(query, params).fetchall()
            return [Source(**dict(row)) for row in rows]

    @staticmethod
    def _row_to_opportunity(row: sqlite3.Row) -> Opportunity:
        data = dict(row)
        data["scores"] = json.loads(data.pop("scores_json") or "{}")
        data["viable"] = bool(data["viable"])
        return Opportunity(**data)

    @staticmethod
    def _attach_sources(conn: sqlite3.Connection, opportunities: list[Opportunity]) -> None:
        by_id = {o.id: o for o in opportunities}
        for opp in opportunities:
            opp.source_post_ids = []
        for chunk in _chunks(list(by_id)):
            rows = conn.execute(
                f"""
                SELECT opportunity_id, post_id FROM opportunity_sources
                WHERE opportunity_id IN ({_marks(chunk)})
                ORDER BY opportunity_id, post_id
                """,
                chunk,
            ).fetchall()
            for row in rows:
                by_id[row["opportunity_id"]].source_post_ids.append(row["post_id"])

    def get_opportunity(self, opportunity_id: int) -> Opportunity | None:
        """Get an opportunity with its source post IDs."""
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM opportunities WHERE id = ?", (opportunity_id,)
            ).fetchone()
            if not row:
                return None
            opportunity = self._row_to_opportunity(row)
            self._attach_sources(conn, [opportunity])
            return opportunity

    def iter_opportunities(
        self, batch_size: int = 50
    ) -> Generator[list[Opportunity], None, None]:
        """Yield all opportunities (with sources) in ID order, page by page."""
        last_id = 0
        while True:
            with self.connection() as conn:
                rows = conn.execute(
                    "SELECT * FROM opportunities WHERE id > ? ORDER BY id LIMIT ?",
                    (last_id, batch_size),
                ).fetchall()
                if not rows:
                    return
                page = [self._row_to_opportunity(row) for row in rows]
                self._attach_sources(conn, page)
            yield page
            last_id = page[-1].id

    def get_all_opportunities(self, batch_size: int = 50) -> list[Opportunity]:
        """Read every opportunity using paged reads."""
        opportunities: list[Opportunity] = []
        for page in self.iter_opportunities(batch_size):
            opportunities.extend(page)
        return opportunities

    def get_opportunities_by_title(
        self, title: str, niche: str | None = None
    ) -> list[Opportunity]:
        """Get opportunities with the same title, optionally in the same niche.

        Both comparisons ignore case and surrounding whitespace.
        """
        query = "SELECT * FROM opportunities WHERE lower(trim(title)) = ?"
        params: list = [title.strip().lower()]
        if niche is not None:
            query += " AND lower(trim(niche)) = ?"
            params.append(niche.strip().lower())
        query += " ORDER BY created_at, id"

        with self.connection() as conn:
            rows = conn.execute(query, params).fetchall()
            opportunities = [self._row_to_opportunity(row) for row in rows]
            self._attach_sources(conn, opportunities)
            return opportunities

    def get_recent_opportunities(self, limit: int = 200) -> list[Opportunity]:
        """Get the newest opportunities with their sources."""
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM opportunities ORDER BY created_at DESC, id DESC LIMIT ?",
                (limit,),
            ).fetchall()
            opportunities = [self._row_to_opportunity(row) for row in rows]
            self._attach_sources(conn, opportunities)
            return opportunities

    def delete_opportunity(self, opportunity_id: int) -> bool:
        """Delete an opportunity and its source links. Returns True if deleted."""
        with self.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM opportunities WHERE id = ?", (opportunity_id,)
            )
            return cursor.rowcount > 0

    # -------------------------------------------------------------------------
    # Merge operations
    # -------------------------------------------------------------------------

    def merge_posts(self, canonical_id: int, duplicate_ids: Iterable[int]) -> int:
        """Fold duplicate posts into a canonical post.

        Source links are re-pointed to the canonical post before the
        duplicates are deleted, all inside one transaction. Duplicates that
        are already gone are skipped.

        Returns:
            Number of posts deleted.

        Raises:
            NotFoundError: If the canonical post does not exist.
        """
        ids = [i for i in dict.fromkeys(duplicate_ids) if i != canonical_id]
        with self.transaction() as conn:
            canonical = conn.execute(
                "SELECT * FROM posts WHERE id = ?", (canonical_id,)
            ).fetchone()
            if canonical is None:
                raise NotFoundError(f"Canonical post {canonical_id} not found")
            if not ids:
                return 0

            rows = conn.execute(
                f"SELECT * FROM posts WHERE id IN ({_marks(ids)})", ids
            ).fetchall()
            present = [row["id"] for row in rows]
            if not present:
                return 0

            marks = _marks(present)
            conn.execute(
                f"UPDATE OR IGNORE opportunity_sources SET post_id = ? WHERE post_id IN ({marks})",
                [canonical_id, *present],
            )
            conn.execute(
                f"DELETE FROM opportunity_sources WHERE post_id IN ({marks})", present
            )

            # Keep the freshest engagement numbers and any completed analysis
            score = max([canonical["score"]] + [row["score"] for row in rows])
            num_comments = max(
                [canonical["num_comments"]] + [row["num_comments"] for row in rows]
            )
            processed_at = canonical["processed_at"]
            processing_error = canonical["processing_error"]
            if processed_at is None:
                done = [row["processed_at"] for row in rows if row["processed_at"] is not None]
                if done:
                    processed_at = max(done)
                    processing_error = None

            conn.execute(
                """
                UPDATE posts SET score = ?, num_comments = ?, processed_at = ?,
                processing_error = ? WHERE id = ?
                """,
                (score, num_comments, processed_at, processing_error, canonical_id),
            )
            cursor = conn.execute(f"DELETE FROM posts WHERE id IN ({marks})", present)
            return cursor.rowcount

    def merge_opportunities(self, canonical_id: int, duplicate_ids: Iterable[int]) -> int:
        """Fold duplicate opportunities into a canonical opportunity.

        Source links move to the canonical opportunity before the duplicates
        are deleted, inside one transaction.

        Returns:
            Number of opportunities deleted.

        Raises:
            NotFoundError: If the canonical opportunity does not exist.
        """
        ids = [i for i in dict.fromkeys(duplicate_ids) if i != canonical_id]
        with self.transaction() as conn:
            canonical = conn.execute(
                "SELECT id FROM opportunities WHERE id = ?", (canonical_id,)
            ).fetchone()
            if canonical is None:
                raise NotFoundError(f"Canonical opportunity {canonical_id} not found")
            if not ids:
                return 0

            marks = _marks(ids)
            conn.execute(
                f"""
                UPDATE OR IGNORE opportunity_sources SET opportunity_id = ?
                WHERE opportunity_id IN ({marks})
                """,
                [canonical_id, *ids],
            )
            conn.execute(
                f"DELETE FROM opportunity_sources WHERE opportunity_id IN ({marks})", ids
            )
            cursor = conn.execute(
                f"DELETE FROM opportunities WHERE id IN ({marks})", ids
            )
            return cursor.rowcount

    # -------------------------------------------------------------------------
    # Cluster snapshot operations
    # -------------------------------------------------------------------------

    def save_cluster_snapshot(
        self,
        clusters: list[dict],
        opportunity_count: int,
        computed_at: float | None = None,
    ) -> int:
        """Replace the stored clustering result with a new generation.

        Returns:
            The new generation number.
        """
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO cluster_snapshots (computed_at, opportunity_count, clusters_json)
                VALUES (?, ?, ?)
                """,
                (computed_at or time.time(), opportunity_count, json.dumps(clusters)),
            )
            generation = cursor.lastrowid
            conn.execute(
                "DELETE FROM cluster_snapshots WHERE generation < ?", (generation,)
            )
            return generation

    def get_latest_cluster_snapshot(self) -> ClusterSnapshotRow | None:
        """Get the most recent clustering result, if any."""
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM cluster_snapshots ORDER BY generation DESC LIMIT 1"
            ).fetchone()
            if row:
                return ClusterSnapshotRow(**dict(row))
            return None

    # -------------------------------------------------------------------------
    # Usage operations
    # -------------------------------------------------------------------------

    @staticmethod
    def _increment_rollup(
        conn: sqlite3.Connection,
        table: str,
        keys: dict[str, str],
        deltas: dict[str, int],
    ) -> None:
        columns = [*keys, *deltas]
        updates = ", ".join(f"{c} = {c} + excluded.{c}" for c in deltas)
        conn.execute(
            f"""
            INSERT INTO {table} ({", ".join(columns)})
            VALUES ({_marks(columns)})
            ON CONFLICT({", ".join(keys)}) DO UPDATE SET {updates}
            """,
            [*keys.values(), *deltas.values()],
        )

    def record_usage_event(self, event: UsageEvent, cost_micros: int) -> bool:
        """Store a usage event and fold it into the rollups.

        The event row and every rollup increment commit together. Events whose
        request_id is already stored are ignored.

        Returns:
            True if the event was new.
        """
        day = event.usage_date
        deltas = {
            "requests": 1,
            "successful_requests": 1 if event.success else 0,
            "failed_requests": 0 if event.success else 1,
            "cost_micros": cost_micros,
            "input_tokens": event.input_tokens,
            "output_tokens": event.output_tokens,
        }
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO usage_events
                (request_id, session_id, model, operation, input_tokens,
                 output_tokens, cost_micros, success, batch_mode, timestamp, usage_date)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.request_id,
                    event.session_id,
                    event.model,
                    event.operation,
                    event.input_tokens,
                    event.output_tokens,
                    cost_micros,
                    int(event.success),
                    int(event.batch_mode),
                    event.timestamp,
                    day,
                ),
            )
            if cursor.rowcount == 0:
                return False

            self._increment_rollup(conn, "daily_usage", {"usage_date": day}, deltas)
            self._increment_rollup(
                conn, "model_usage", {"model": event.model, "usage_date": day}, deltas
            )
            if event.session_id:
                self._increment_rollup(
                    conn, "session_usage", {"session_id": event.session_id}, deltas
                )
            return True

    def get_daily_usage(self, start_date: str, end_date: str) -> list[DailyUsage]:
        """Get stored daily rollups between two ISO dates (inclusive)."""
        with self.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM daily_usage
                WHERE usage_date BETWEEN ? AND ?
                ORDER BY usage_date
                """,
                (start_date, end_date),
            ).fetchall()
            return [DailyUsage(**dict(row)) for row in rows]

    def get_model_usage(self, start_date: str, end_date: str) -> list[ModelUsage]:
        """Get per-model rollups between two ISO dates (inclusive)."""
        with self.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM model_usage
                WHERE usage_date BETWEEN ? AND ?
                ORDER BY usage_date, model
                """,
                (start_date, end_date),
            ).fetchall()
            return [ModelUsage(**dict(row)) for row in rows]

    def get_session_usage(self, session_id: str) -> SessionUsage | None:
        """Get the rollup for one analysis session."""
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM session_usage WHERE session_id = ?", (session_id,)
            ).fetchone()
            if row:
                return SessionUsage(**dict(row))
            return None

    def rebuild_usage_rollups(self, usage_date: str) -> None:
        """Recompute a day's daily and per-model rollups from stored events."""
        aggregates = """
            COUNT(*), SUM(success), SUM(1 - success), SUM(cost_micros),
            SUM(input_tokens), SUM(output_tokens)
        """
        columns = ", ".join(ROLLUP_COLUMNS)
        with self.transaction() as conn:
            conn.execute("DELETE FROM daily_usage WHERE usage_date = ?", (usage_date,))
            conn.execute("DELETE FROM model_usage WHERE usage_date = ?", (usage_date,))
            conn.execute(
                f"""
                INSERT INTO daily_usage (usage_date, {columns})
                SELECT usage_date, {aggregates} FROM usage_events
                WHERE usage_date = ? GROUP BY usage_date
                """,
                (usage_date,),
            )
            conn.execute(
                f"""
                INSERT INTO model_usage (model, usage_date, {columns})
                SELECT model, usage_date, {aggregates} FROM usage_events
                WHERE usage_date = ? GROUP BY model, usage_date
                """,
                (usage_date,),
            )

    # -------------------------------------------------------------------------
    # Utility operations
    # -------------------------------------------------------------------------

    def get_stats(self) -> dict:
        """Get database statistics.

        Returns:
            Dictionary with counts for each table.
        """
        stats = {}
        tables = [
            "posts", "opportunities", "opportunity_sources", "cluster_snapshots",
            "usage_events", "daily_usage", "model_usage", "session_usage",
        ]

        with self.connection() as conn:
            for table in tables:
                try:
                    row = conn.execute(f"SELECT COUNT(*) as count FROM {table}").fetchone()
                    stats[table] = row["count"]
                except sqlite3.OperationalError:
                    stats[table] = 0

        return stats

    def get_subreddit_counts(self) -> dict[str, int]:
        """Count posts per subreddit."""
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT subreddit, COUNT(*) as count FROM posts GROUP BY subreddit"
            ).fetchall()
            return {row["subreddit"]: row["count"] for row in rows}


def get_database(db_path: str | Path | None = None) -> Database:
    """Get a database instance.

    Args:
        db_path: Optional path to database file.

    Returns:
        Database instance.
    """
    from demand_radar.config import get_config
    config = get_config()
    if db_path is None:
        db_path = config.database.path
    return Database(db_path, timeout=config.database.timeout_seconds)
