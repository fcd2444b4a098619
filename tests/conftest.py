"""Shared fixtures for Demand Radar tests."""

import itertools
import os
import sys
import tempfile
import time
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest

from demand_radar.database import Database, Opportunity, Post

NOW = time.time()


@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    db = Database(db_path, timeout=10.0)
    db.initialize()

    yield db

    # Cleanup
    os.unlink(db_path)


@pytest.fixture
def add_post(temp_db):
    """Insert a post; successive posts are created one minute apart."""
    minutes = itertools.count()

    def _add_post(reddit_id: str = "abc123", **overrides) -> Post:
        offset = next(minutes)
        data = dict(
            reddit_id=reddit_id,
            subreddit="startups",
            title=f"Post {reddit_id}",
            body="",
            author=f"user_{reddit_id}",
            score=10,
            num_comments=2,
            created_utc=NOW - 86400 + offset * 60,
            fetched_at=NOW,
        )
        data.update(overrides)
        post = Post(**data)
        temp_db.insert_post(post)
        return post

    return _add_post


@pytest.fixture
def add_opportunity(temp_db):
    """Insert an opportunity linked to the given post ids."""
    seconds = itertools.count()

    def _add_opportunity(
        title: str,
        description: str = "",
        sources: tuple = (),
        **overrides,
    ) -> Opportunity:
        data = dict(
            title=title,
            description=description,
            proposed_solution="",
            subreddit="startups",
            overall_score=7.5,
            created_at=NOW - 3600 + next(seconds),
        )
        data.update(overrides)
        opportunity = Opportunity(**data)
        temp_db.insert_opportunity(opportunity, source_post_ids=[p.id for p in sources])
        return opportunity

    return _add_opportunity
