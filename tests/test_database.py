"""Tests for the database module."""

import sqlite3
import time

import pytest

from demand_radar.database import Database, Opportunity, Post, UsageEvent, utc_day
from demand_radar.errors import NotFoundError, PersistenceError, ValidationError


@pytest.fixture
def sample_post() -> Post:
    """Create a sample post for testing."""
    return Post(
        reddit_id="abc123",
        subreddit="startups",
        title="Test Post Title",
        body="This is the body of the test post.",
        author="founder42",
        score=100,
        num_comments=25,
        created_utc=time.time(),
        fetched_at=time.time(),
    )


class TestDatabaseInitialization:
    """Tests for database initialization."""

    def test_create_database(self, temp_db):
        """Test database creation."""
        assert temp_db.db_path.exists()

    def test_schema_created(self, temp_db):
        """Test that all tables are created."""
        stats = temp_db.get_stats()
        expected_tables = [
            "posts", "opportunities", "opportunity_sources", "cluster_snapshots",
            "usage_events", "daily_usage", "model_usage", "session_usage",
        ]

        for table in expected_tables:
            assert table in stats
            assert stats[table] == 0

    def test_initialize_is_repeatable(self, temp_db):
        temp_db.initialize()
        assert temp_db.get_stats()["posts"] == 0

    def test_unopenable_path_raises_persistence_error(self, tmp_path):
        db = Database(tmp_path)  # a directory, not a file
        with pytest.raises(PersistenceError):
            db.initialize()


class TestPostOperations:
    """Tests for post CRUD operations."""

    def test_insert_post(self, temp_db, sample_post):
        post_id = temp_db.insert_post(sample_post)

        retrieved = temp_db.get_post(post_id)
        assert retrieved is not None
        assert retrieved.reddit_id == "abc123"
        assert retrieved.title == sample_post.title
        assert retrieved.status == "pending"

    def test_duplicate_reddit_id_is_stored(self, temp_db, sample_post):
        """Double scrapes must be storable so cleanup can find them."""
        temp_db.insert_post(sample_post)
        temp_db.insert_post(Post(**{**sample_post.__dict__, "id": None}))

        assert len(temp_db.get_posts_by_reddit_id("abc123")) == 2

    def test_insert_posts_batch(self, temp_db):
        posts = [
            Post(
                reddit_id=f"post_{i}",
                subreddit="startups",
                title=f"Post {i}",
                body=None,
                author="someone",
                score=100 - i,
                num_comments=10,
                created_utc=time.time(),
                fetched_at=time.time(),
            )
            for i in range(5)
        ]
        ids = temp_db.insert_posts(posts)

        assert len(ids) == 5
        assert temp_db.get_stats()["posts"] == 5

    def test_paged_reads_return_everything_in_order(self, temp_db, add_post):
        for i in range(7):
            add_post(f"p{i}")

        pages = list(temp_db.iter_posts(batch_size=3))
        assert [len(page) for page in pages] == [3, 3, 1]
        ids = [p.id for page in pages for p in page]
        assert ids == sorted(ids)

    def test_mark_processed_and_failed_are_exclusive(self, temp_db, sample_post):
        post_id = temp_db.insert_post(sample_post)

        temp_db.mark_post_failed(post_id, "model timeout")
        failed = temp_db.get_post(post_id)
        assert failed.status == "failed"
        assert failed.processed_at is None

        temp_db.mark_post_processed(post_id)
        processed = temp_db.get_post(post_id)
        assert processed.status == "processed"
        assert processed.processing_error is None

    def test_processed_and_failed_post_rejected(self, sample_post):
        with pytest.raises(ValidationError):
            Post(**{**sample_post.__dict__, "processed_at": 1.0, "processing_error": "boom"})

    def test_update_post_engagement(self, temp_db, add_post):
        first = add_post("abc", score=3, num_comments=1)
        second = add_post("abc", score=3, num_comments=1)
        other = add_post("def", score=3, num_comments=1)

        assert temp_db.update_post_engagement("abc", score=250, num_comments=48) == 2

        for post in (first, second):
            refreshed = temp_db.get_post(post.id)
            assert (refreshed.score, refreshed.num_comments) == (250, 48)
        assert temp_db.get_post(other.id).score == 3
        assert temp_db.update_post_engagement("missing", score=1, num_comments=1) == 0

    def test_lookup_by_title_and_author(self, temp_db, add_post):
        match = add_post("a", title="Need a CRM", author="Pipe_Guy")
        add_post("b", title="Need a CRM", author="someone")

        found = temp_db.get_posts_by_title_author("  need a crm ", "pipe_guy")

        assert [p.id for p in found] == [match.id]

    def test_recent_posts_by_subreddit(self, temp_db, add_post):
        older = add_post("a", subreddit="SaaS")
        newer = add_post("b", subreddit="saas")
        add_post("c", subreddit="startups")

        assert [p.id for p in temp_db.get_recent_posts("saas")] == [newer.id, older.id]
        assert [p.id for p in temp_db.get_recent_posts("saas", limit=1)] == [newer.id]

    def test_unprocessed_posts(self, temp_db, add_post):
        pending = add_post("a")
        done = add_post("b")
        temp_db.mark_post_processed(done.id)

        assert [p.id for p in temp_db.get_unprocessed_posts()] == [pending.id]


class TestOpportunityOperations:
    """Tests for opportunities and their source links."""

    def test_insert_opportunity_with_sources(self, temp_db, add_post):
        post = add_post("abc")
        opp = Opportunity(
            title="Invoice chasing bot",
            description="Automate overdue invoice reminders",
            proposed_solution="Email sequences",
            subreddit="smallbusiness",
            overall_score=8.0,
            scores={"speed": 7, "ui_ux": 9},
            niche="Finance",
        )
        temp_db.insert_opportunity(opp, source_post_ids=[post.id])

        stored = temp_db.get_opportunity(opp.id)
        assert stored.viable is True
        assert stored.scores == {"speed": 7, "ui_ux": 9}
        assert stored.source_post_ids == [post.id]
        assert stored.tags() == {"niche": "finance"}

    def test_viability_derived_from_score(self):
        assert Opportunity("t", "d", "", "s", overall_score=7.0).viable is True
        assert Opportunity("t", "d", "", "s", overall_score=6.9).viable is False

    @pytest.mark.parametrize("scores", [{"speed": 11}, {"speed": -1}, {"vibes": 5}])
    def test_invalid_sub_scores_rejected(self, scores):
        with pytest.raises(ValidationError):
            Opportunity("t", "d", "", "s", overall_score=5.0, scores=scores)

    def test_link_source_is_unique(self, temp_db, add_post, add_opportunity):
        post = add_post("abc")
        opp = add_opportunity("Idea", sources=(post,))

        assert temp_db.link_source(opp.id, post.id) is False
        assert len(temp_db.get_sources(opp.id)) == 1

    def test_deleting_post_cascades_to_sources(self, temp_db, add_post, add_opportunity):
        post = add_post("abc")
        opp = add_opportunity("Idea", sources=(post,))

        assert temp_db.delete_post(post.id)
        assert temp_db.get_sources(opp.id) == []
        assert temp_db.get_opportunity(opp.id) is not None

    def test_deleting_opportunity_cascades_to_sources(self, temp_db, add_post, add_opportunity):
        post = add_post("abc")
        opp = add_opportunity("Idea", sources=(post,))

        assert temp_db.delete_opportunity(opp.id)
        assert temp_db.get_sources() == []
        assert temp_db.get_post(post.id) is not None

    def test_lookup_by_title(self, temp_db, add_opportunity):
        meetings = add_opportunity("Meeting Notes Bot", niche="Meetings")
        legal = add_opportunity("meeting notes bot", niche="Legal")

        assert [o.id for o in temp_db.get_opportunities_by_title("MEETING NOTES BOT")] == [
            meetings.id, legal.id,
        ]
        assert [o.id for o in temp_db.get_opportunities_by_title(
            "Meeting notes bot", niche="meetings"
        )] == [meetings.id]

    def test_recent_opportunities(self, temp_db, add_post, add_opportunity):
        add_opportunity("Older idea")
        newest = add_opportunity("Newer idea", sources=(add_post("abc"),))

        recent = temp_db.get_recent_opportunities(limit=1)

        assert [o.id for o in recent] == [newest.id]
        assert recent[0].source_post_ids == newest.source_post_ids

    def test_source_to_missing_post_rejected(self, temp_db, add_opportunity):
        opp = add_opportunity("Idea")
        with pytest.raises(PersistenceError):
            temp_db.link_source(opp.id, 999)


class TestMergeOperations:
    """Tests for the transactional merges."""

    def test_merge_posts_repoints_sources(self, temp_db, add_post, add_opportunity):
        keep = add_post("abc", score=5)
        dup = add_post("abc", score=40, num_comments=9)
        opp = add_opportunity("Idea", sources=(dup,))

        assert temp_db.merge_posts(keep.id, [dup.id]) == 1

        assert temp_db.get_post(dup.id) is None
        merged = temp_db.get_post(keep.id)
        assert merged.score == 40
        assert merged.num_comments == 9
        assert temp_db.get_opportunity(opp.id).source_post_ids == [keep.id]

    def test_merge_posts_drops_colliding_links(self, temp_db, add_post, add_opportunity):
        keep = add_post("abc")
        dup = add_post("abc")
        opp = add_opportunity("Idea", sources=(keep, dup))

        temp_db.merge_posts(keep.id, [dup.id])

        assert temp_db.get_opportunity(opp.id).source_post_ids == [keep.id]

    def test_merge_posts_carries_processed_state(self, temp_db, add_post):
        keep = add_post("abc")
        dup = add_post("abc")
        temp_db.mark_post_processed(dup.id, processed_at=1234.0)

        temp_db.merge_posts(keep.id, [dup.id])

        assert temp_db.get_post(keep.id).processed_at == 1234.0

    def test_merge_into_missing_canonical(self, temp_db, add_post):
        dup = add_post("abc")
        with pytest.raises(NotFoundError):
            temp_db.merge_posts(999, [dup.id])
        assert temp_db.get_post(dup.id) is not None

    def test_merge_opportunities(self, temp_db, add_post, add_opportunity):
        a, b = add_post("a"), add_post("b")
        keep = add_opportunity("Idea", sources=(a,))
        dup = add_opportunity("Idea again", sources=(a, b))

        assert temp_db.merge_opportunities(keep.id, [dup.id]) == 1

        assert temp_db.get_opportunity(dup.id) is None
        assert temp_db.get_opportunity(keep.id).source_post_ids == [a.id, b.id]


class TestUsageOperations:
    """Tests for usage events and rollups."""

    def test_record_event_once(self, temp_db):
        event = UsageEvent("req-1", "gemini-2.5-flash", 1000, 500, timestamp=time.time())

        assert temp_db.record_usage_event(event, 250) is True
        assert temp_db.record_usage_event(event, 250) is False

        day = utc_day(event.timestamp)
        daily = temp_db.get_daily_usage(day, day)
        assert len(daily) == 1
        assert daily[0].requests == 1
        assert daily[0].cost_micros == 250
        assert daily[0].total_tokens == 1500

    def test_rebuild_matches_increments(self, temp_db):
        now = time.time()
        for i in range(3):
            temp_db.record_usage_event(
                UsageEvent(f"req-{i}", "gemini-2.5-pro", 10, 20, timestamp=now, success=i != 1),
                100,
            )
        day = utc_day(now)
        before = temp_db.get_daily_usage(day, day)[0]

        with temp_db.connection() as conn:
            conn.execute("UPDATE daily_usage SET requests = 0, cost_micros = 0")
        temp_db.rebuild_usage_rollups(day)

        assert temp_db.get_daily_usage(day, day)[0] == before
        assert before.failed_requests == 1


class TestSnapshotOperations:
    def test_generations_replace(self, temp_db):
        first = temp_db.save_cluster_snapshot([{"id": "a"}], opportunity_count=1)
        second = temp_db.save_cluster_snapshot([], opportunity_count=0)

        assert second > first
        latest = temp_db.get_latest_cluster_snapshot()
        assert latest.generation == second
        assert temp_db.get_stats()["cluster_snapshots"] == 1

    def test_no_snapshot(self, temp_db):
        assert temp_db.get_latest_cluster_snapshot() is None


class TestTransactions:
    def test_failed_block_rolls_back(self, temp_db, sample_post):
        with pytest.raises(RuntimeError):
            with temp_db.transaction() as conn:
                Database._insert_post(conn, sample_post)
                raise RuntimeError("abort")

        assert temp_db.get_stats()["posts"] == 0

    def test_sqlite_errors_are_wrapped(self, temp_db):
        with pytest.raises(PersistenceError) as exc_info:
            with temp_db.connection() as conn:
                conn.execute("SELECT * FROM missing_table")
        assert isinstance(exc_info.value.__cause__, sqlite3.Error)
