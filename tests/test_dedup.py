"""Tests for the deduplication engine."""

import threading

import pytest

from demand_radar.database import Opportunity, Post
from demand_radar.engine.dedup import DeduplicationEngine, group_duplicate_posts
from demand_radar.errors import NotFoundError, PartialFailure

from conftest import NOW

MEETING_TITLE = "AI meeting notes assistant"
MEETING_DESC = "Automatically transcribe meetings and summarize action items for remote teams"


@pytest.fixture
def engine(temp_db):
    return DeduplicationEngine(temp_db, threshold=0.92, max_passes=5, batch_size=2)


class TestFindDuplicatePosts:
    def test_same_reddit_id(self, engine, add_post):
        first = add_post("abc123")
        second = add_post("abc123")
        add_post("zzz999")

        assert engine.find_duplicate_posts() == [[first.id, second.id]]

    def test_same_title_and_author_case_insensitive(self, engine, add_post):
        first = add_post("a1", title="Need a CRM for plumbers", author="Pipe_Guy")
        second = add_post("a2", title="need a crm for plumbers ", author="pipe_guy")

        assert engine.find_duplicate_posts() == [[first.id, second.id]]

    def test_deleted_authors_not_matched_by_title(self, engine, add_post):
        add_post("a1", title="Help", author="[deleted]")
        add_post("a2", title="Help", author="[deleted]")

        assert engine.find_duplicate_posts() == []

    def test_reposted_text_in_same_subreddit(self, engine, add_post):
        original = add_post(
            "r1", title="Looking for a bookkeeping tool for my bakery",
            body="Receipts and invoices pile up every month", author="baker_a",
        )
        repost = add_post(
            "r2", title="Looking for a bookkeeping tool for my bakery!",
            body="Receipts and invoices pile up every month.", author="baker_b",
        )

        assert engine.find_duplicate_posts() == [[original.id, repost.id]]

    def test_reposted_text_in_other_subreddit_kept(self, engine, add_post):
        text = dict(title="Looking for a bookkeeping tool for my bakery",
                    body="Receipts and invoices pile up every month")
        add_post("r1", subreddit="smallbusiness", author="baker_a", **text)
        add_post("r2", subreddit="bakery", author="baker_b", **text)

        assert engine.find_duplicate_posts() == []

    def test_post_threshold_is_configurable(self, temp_db, add_post):
        add_post("r1", title="Bookkeeping tool for bakeries", author="baker_a")
        add_post("r2", title="Bookkeeping tool for florists", author="baker_b")

        assert DeduplicationEngine(temp_db, post_threshold=0.9).find_duplicate_posts() == []
        assert len(DeduplicationEngine(temp_db, post_threshold=0.5).find_duplicate_posts()) == 1

    def test_groups_are_transitive(self, engine, add_post):
        p1 = add_post("abc", title="First title", author="x")
        p2 = add_post("abc", title="Second title", author="y")
        p3 = add_post("def", title="Second title", author="y")

        assert engine.find_duplicate_posts() == [[p1.id, p2.id, p3.id]]

    def test_canonical_is_earliest_created(self, engine, add_post):
        later = add_post("abc", created_utc=2000.0)
        earlier = add_post("abc", created_utc=1000.0)

        assert engine.find_duplicate_posts() == [[earlier.id, later.id]]

    def test_ties_broken_by_lowest_id(self, add_post):
        a = add_post("abc", created_utc=1000.0)
        b = add_post("abc", created_utc=1000.0)

        assert group_duplicate_posts([b, a]) == [[a.id, b.id]]


class TestFindDuplicateOpportunities:
    def test_near_duplicates_in_same_subreddit(self, engine, add_post, add_opportunity):
        a = add_opportunity(MEETING_TITLE, MEETING_DESC, sources=(add_post("p1"),))
        b = add_opportunity(MEETING_TITLE, MEETING_DESC, sources=(add_post("p2"),))

        assert engine.find_duplicate_opportunities() == [[a.id, b.id]]

    def test_similar_but_unrelated_sources_kept(self, engine, add_post, add_opportunity):
        add_opportunity(MEETING_TITLE, MEETING_DESC, sources=(add_post("p1"),))
        add_opportunity(
            MEETING_TITLE, MEETING_DESC, sources=(add_post("p2"),), subreddit="productivity"
        )

        assert engine.find_duplicate_opportunities() == []

    def test_overlapping_sources_across_subreddits(self, engine, add_post, add_opportunity):
        shared = add_post("p1")
        a = add_opportunity(MEETING_TITLE, MEETING_DESC, sources=(shared,))
        b = add_opportunity(
            MEETING_TITLE, MEETING_DESC, sources=(shared, add_post("p2")), subreddit="saas"
        )

        assert engine.find_duplicate_opportunities() == [[a.id, b.id]]

    def test_below_threshold_kept(self, engine, add_post, add_opportunity):
        add_opportunity(MEETING_TITLE, MEETING_DESC, sources=(add_post("p1"),))
        add_opportunity(
            MEETING_TITLE, MEETING_DESC.replace("remote", "startup"), sources=(add_post("p2"),)
        )

        assert engine.find_duplicate_opportunities() == []

    def test_threshold_is_configurable(self, temp_db, add_post, add_opportunity):
        a = add_opportunity(MEETING_TITLE, MEETING_DESC, sources=(add_post("p1"),))
        b = add_opportunity(
            MEETING_TITLE, MEETING_DESC.replace("remote", "startup"), sources=(add_post("p2"),)
        )

        engine = DeduplicationEngine(temp_db, threshold=0.8)
        assert engine.find_duplicate_opportunities() == [[a.id, b.id]]

    def test_reanalysis_of_same_post(self, engine, add_post, add_opportunity):
        post = add_post("p1")
        a = add_opportunity("Bookkeeping autopilot", "Reconcile receipts", sources=(post,))
        b = add_opportunity("Receipt scanner", "Snap photos of invoices", sources=(post,))

        assert engine.find_duplicate_opportunities() == [[a.id, b.id]]

    def test_unsourced_opportunities_not_matched_by_sources(self, engine, add_opportunity):
        add_opportunity("Bookkeeping autopilot", "Reconcile receipts")
        add_opportunity("Receipt scanner", "Snap photos of invoices")

        assert engine.find_duplicate_opportunities() == []


class TestIngestChecks:
    def incoming_post(self, reddit_id="new1", **overrides) -> Post:
        data = dict(
            reddit_id=reddit_id, subreddit="startups", title="Need a CRM for plumbers",
            body="Spreadsheets are not cutting it anymore", author="new_author",
            score=1, num_comments=0, created_utc=NOW, fetched_at=NOW,
        )
        data.update(overrides)
        return Post(**data)

    def test_post_with_known_reddit_id(self, engine, add_post):
        stored = add_post("abc123")

        check = engine.check_post_duplication(self.incoming_post("abc123"))

        assert check == (True, stored.id, "Exact Reddit ID match", 1.0)

    def test_post_with_same_title_and_author(self, engine, add_post):
        stored = add_post("old1", title="need a crm for plumbers", author="New_Author")

        is_duplicate, existing_id, reason, _ = engine.check_post_duplication(self.incoming_post())

        assert is_duplicate is True
        assert existing_id == stored.id
        assert reason == "Same title and author"

    def test_post_with_similar_text(self, engine, add_post):
        stored = add_post(
            "old1", title="Need a CRM for plumbers!",
            body="Spreadsheets are not cutting it anymore.", author="someone_else",
        )

        check = engine.check_post_duplication(self.incoming_post())

        assert check.is_duplicate is True
        assert check.existing_id == stored.id
        assert check.reason == "High content similarity"
        assert check.score >= 0.9

    def test_new_post(self, engine, add_post):
        add_post("old1", title="Dog walking app", author="walker")
        add_post("old2", title="Need a CRM for plumbers", body="Same words", subreddit="plumbing")

        assert engine.check_post_duplication(self.incoming_post()) == (False, None, None, None)

    def test_stored_post_is_not_its_own_duplicate(self, engine, add_post):
        stored = add_post("abc123", title="Need a CRM for plumbers")

        assert engine.check_post_duplication(stored).is_duplicate is False

    def test_opportunity_with_same_title_in_same_niche(self, engine, add_opportunity):
        stored = add_opportunity(MEETING_TITLE, "Anything", niche="Meetings")
        incoming = Opportunity(
            title=MEETING_TITLE.upper(), description="Different words entirely",
            proposed_solution="", subreddit="saas", overall_score=6.0, niche="meetings",
        )

        check = engine.check_opportunity_duplication(incoming)

        assert check == (True, stored.id, "Exact title match in same niche", 1.0)

    def test_same_title_in_other_niche_is_not_exact_match(self, engine, add_opportunity):
        add_opportunity(MEETING_TITLE, "Anything", niche="Legal")
        incoming = Opportunity(
            title=MEETING_TITLE, description="Different words entirely",
            proposed_solution="", subreddit="saas", overall_score=6.0, niche="Meetings",
        )

        assert engine.check_opportunity_duplication(incoming).is_duplicate is False

    def test_same_title_with_unknown_niche(self, engine, add_opportunity):
        stored = add_opportunity(MEETING_TITLE, "Anything", niche="Legal")
        incoming = Opportunity(
            title=MEETING_TITLE, description="", proposed_solution="",
            subreddit="saas", overall_score=6.0,
        )

        check = engine.check_opportunity_duplication(incoming)

        assert check.existing_id == stored.id
        assert check.reason == "Exact title match"

    def test_opportunity_with_similar_text(self, engine, add_opportunity):
        add_opportunity("Dog walking marketplace", "Book trusted walkers nearby")
        stored = add_opportunity(MEETING_TITLE, MEETING_DESC, niche="Meetings")
        incoming = Opportunity(
            title="Meeting notes assistant",
            description=MEETING_DESC.replace("remote", "startup"),
            proposed_solution="", subreddit="productivity", overall_score=8.0,
            niche="Meetings",
        )

        check = engine.check_opportunity_duplication(incoming)

        assert check.is_duplicate is True
        assert check.existing_id == stored.id
        assert check.reason == "High opportunity similarity"
        assert 0.85 <= check.score < 1.0

    def test_new_opportunity(self, engine, add_opportunity):
        add_opportunity(MEETING_TITLE, MEETING_DESC)
        incoming = Opportunity(
            title="Dog walking marketplace", description="Book trusted walkers nearby",
            proposed_solution="", subreddit="dogs", overall_score=5.0,
        )

        assert engine.check_opportunity_duplication(incoming) == (False, None, None, None)


class TestCleanup:
    def test_double_scrape_is_merged_end_to_end(self, engine, temp_db, add_post, add_opportunity):
        first = add_post("abc123", title="Need a bookkeeping tool", author="u1")
        second = add_post("abc123", title="Need a bookkeeping tool", author="u1")
        opp = add_opportunity("Bookkeeping autopilot", "Reconcile receipts", sources=(first,))
        add_opportunity("Bookkeeping autopilot", "Reconcile receipts", sources=(second,))

        report = engine.cleanup()

        assert report.deleted_posts == 1
        assert report.deleted_opportunities == 1
        assert report.failures == []
        assert temp_db.get_stats()["posts"] == 1
        assert temp_db.get_opportunity(opp.id).source_post_ids == [first.id]

    def test_cleanup_is_idempotent(self, engine, add_post, add_opportunity):
        first = add_post("abc123")
        second = add_post("abc123")
        add_opportunity(MEETING_TITLE, MEETING_DESC, sources=(first,))
        add_opportunity(MEETING_TITLE, MEETING_DESC, sources=(second,))

        engine.cleanup()
        again = engine.cleanup()

        assert again.deleted_posts == 0
        assert again.deleted_opportunities == 0
        assert again.merged_groups == 0
        assert again.passes == 1

    def test_merging_preserves_sources(self, engine, temp_db, add_post, add_opportunity):
        a, b = add_post("p1"), add_post("p2")
        keep = add_opportunity(MEETING_TITLE, MEETING_DESC, sources=(a,))
        add_opportunity(MEETING_TITLE, MEETING_DESC, sources=(b,))

        engine.cleanup()

        assert temp_db.get_opportunity(keep.id).source_post_ids == [a.id, b.id]

    def test_failed_group_is_recorded_and_others_continue(
        self, engine, temp_db, add_post, monkeypatch
    ):
        bad = add_post("bad")
        bad_dup = add_post("bad")
        good = add_post("good")
        good_dup = add_post("good")

        real_merge = temp_db.merge_posts

        def flaky_merge(canonical_id, duplicate_ids):
            if canonical_id == bad.id:
                raise NotFoundError(f"Canonical post {canonical_id} not found")
            return real_merge(canonical_id, duplicate_ids)

        monkeypatch.setattr(temp_db, "merge_posts", flaky_merge)

        report = engine.cleanup()

        assert report.deleted_posts == 1
        assert temp_db.get_post(good_dup.id) is None
        assert temp_db.get_post(bad_dup.id) is not None
        assert len(report.failures) == 1
        assert report.failures[0].kind == "post"
        assert report.failures[0].ids == [bad.id, bad_dup.id]

        with pytest.raises(PartialFailure) as exc_info:
            report.raise_for_failures()
        assert exc_info.value.failures == report.failures

    def test_concurrent_cleanups_delete_each_duplicate_once(
        self, temp_db, add_post, add_opportunity
    ):
        for i in range(20):
            pair = [
                add_post(f"scrape{i}", title=f"Need a tracker for widget{i}", author=f"u{i}")
                for _ in range(2)
            ]
            for post in pair:
                add_opportunity(
                    f"Widget{i} tracker", f"Track widget{i} inventory", sources=(post,)
                )

        reports, errors = [], []

        def worker():
            try:
                reports.append(DeduplicationEngine(temp_db, threshold=0.92).cleanup())
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert all(report.failures == [] for report in reports)
        assert sum(report.deleted_posts for report in reports) == 20
        assert sum(report.deleted_opportunities for report in reports) == 20
        stats = temp_db.get_stats()
        assert stats["posts"] == 20
        assert stats["opportunities"] == 20
        assert stats["opportunity_sources"] == 20

    def test_clean_report_does_not_raise(self, engine):
        engine.cleanup().raise_for_failures()

    def test_report_to_dict(self, engine, add_post):
        add_post("abc")
        add_post("abc")

        data = engine.cleanup().to_dict()

        assert data["deleted_posts"] == 1
        assert data["total_deleted"] == 1
        assert data["failures"] == []


class TestStats:
    def test_stats(self, engine, add_post):
        add_post("abc", subreddit="startups")
        add_post("abc", subreddit="startups")
        add_post("def", subreddit="saas")

        stats = engine.get_stats()

        assert stats["total_posts"] == 3
        assert stats["subreddits"] == 2
        assert stats["avg_posts_per_subreddit"] == 1.5
        assert stats["duplicate_posts"] == 1
