"""Duplicate detection and merging for posts and opportunities.

Repeated scraping passes insert the same Reddit post twice, and re-analysis
produces a second opportunity for posts that already have one. The engine
groups duplicates, picks the earliest record of each group as canonical, and
asks the store to fold the rest into it.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Iterable, NamedTuple

from demand_radar.config import get_config
from demand_radar.database import Database, Opportunity, Post, is_known_tag
from demand_radar.engine.similarity import Scorer, content_tokens, record_text, similarity
from demand_radar.errors import NotFoundError, PartialFailure, PersistenceError

logger = logging.getLogger(__name__)

# Authors that say nothing about who wrote a post
ANONYMOUS_AUTHORS = {"", "[deleted]", "[removed]"}


@dataclass
class GroupFailure:
    """A duplicate group whose merge did not complete."""
    kind: str  # post / opportunity
    ids: list[int]
    error: str


@dataclass
class CleanupReport:
    """Outcome of a cleanup run."""
    deleted_posts: int = 0
    deleted_opportunities: int = 0
    merged_groups: int = 0
    passes: int = 0
    failures: list[GroupFailure] = field(default_factory=list)

    @property
    def total_deleted(self) -> int:
        return self.deleted_posts + self.deleted_opportunities

    def raise_for_failures(self) -> None:
        """Raise PartialFailure if any group failed to merge."""
        if self.failures:
            raise PartialFailure(
                f"{len(self.failures)} duplicate group(s) failed to merge",
                failures=list(self.failures),
            )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["total_deleted"] = self.total_deleted
        return data


class DuplicateCheck(NamedTuple):
    """Whether an incoming record is already stored, and why."""
    is_duplicate: bool
    existing_id: int | None = None
    reason: str | None = None
    score: float | None = None


NOT_DUPLICATE = DuplicateCheck(False)

# Newest rows compared when checking a single incoming record
POST_CHECK_CANDIDATES = 100
OPPORTUNITY_CHECK_CANDIDATES = 200


class _UnionFind:
    """Disjoint sets over record ids."""

    def __init__(self, ids: Iterable[int]):
        self.parent = {i: i for i in ids}

    def find(self, item: int) -> int:
        root = item
        while self.parent[root] != root:
            root = self.parent[root]
        while self.parent[item] != root:
            self.parent[item], item = root, self.parent[item]
        return root

    def union(self, a: int, b: int) -> None:
        root_a, root_b = self.find(a), self.find(b)
        if root_a != root_b:
            self.parent[max(root_a, root_b)] = min(root_a, root_b)

    def groups(self) -> list[list[int]]:
        members: dict[int, list[int]] = {}
        for item in self.parent:
            members.setdefault(self.find(item), []).append(item)
        return [ids for ids in members.values() if len(ids) > 1]


def _canonical_first(groups: list[list[int]], keys: dict[int, tuple]) -> list[list[int]]:
    """Order each group by creation key and the groups by their canonical."""
    ordered = [sorted(ids, key=lambda i: keys[i]) for ids in groups]
    return sorted(ordered, key=lambda ids: keys[ids[0]])


def _has_content(post: Post) -> bool:
    """Whether a post says enough to be matched on text alone."""
    return bool(content_tokens(record_text(post)))


def group_duplicate_posts(
    posts: list[Post],
    threshold: float | None = None,
    scorer: Scorer = similarity,
) -> list[list[int]]:
    """Group posts sharing a reddit_id or a (title, author) pair.

    With a ``threshold``, posts in the same subreddit that score at least
    that much are grouped too, catching reposts under a new reddit_id.
    Posts made only of filler ("Help", "Need advice?") are never matched
    on text.

    Returns:
        Groups of post ids, each sorted canonical-first (earliest
        created_utc, then lowest id).
    """
    uf = _UnionFind(p.id for p in posts)
    seen_reddit_ids: dict[str, int] = {}
    seen_title_authors: dict[tuple[str, str], int] = {}
    by_subreddit: dict[str, list[Post]] = {}

    for post in posts:
        first = seen_reddit_ids.setdefault(post.reddit_id, post.id)
        if first != post.id:
            uf.union(first, post.id)

        title = (post.title or "").strip().lower()
        author = (post.author or "").strip().lower()
        if title and author not in ANONYMOUS_AUTHORS:
            first = seen_title_authors.setdefault((title, author), post.id)
            if first != post.id:
                uf.union(first, post.id)

        if threshold is not None and _has_content(post):
            by_subreddit.setdefault(post.subreddit.strip().lower(), []).append(post)

    for members in by_subreddit.values():
        for index, a in enumerate(members):
            for b in members[index + 1:]:
                if uf.find(a.id) != uf.find(b.id) and scorer(a, b) >= threshold:
                    uf.union(a.id, b.id)

    keys = {p.id: (p.created_utc, p.id) for p in posts}
    return _canonical_first(uf.groups(), keys)



def group_duplicate_opportunities(
    opportunities: list[Opportunity],
    threshold: float,
    scorer: Scorer = similarity,
) -> list[list[int]]:
    """Group near-duplicate and re-analysed opportunities.

    Two opportunities are duplicates when they were derived from exactly the
    same posts, or when they score at least ``threshold`` and either share a
    source post or come from the same subreddit.

    Returns:
        Groups of opportunity ids, each sorted canonical-first (earliest
        created_at, then lowest id).
    """
    uf = _UnionFind(o.id for o in opportunities)
    sources = {o.id: frozenset(o.source_post_ids) for o in opportunities}

    for index, a in enumerate(opportunities):
        for b in opportunities[index + 1:]:
            if sources[a.id] and sources[a.id] == sources[b.id]:
                uf.union(a.id, b.id)
                continue
            related = bool(sources[a.id] & sources[b.id]) or (
                a.subreddit.strip().lower() == b.subreddit.strip().lower()
            )
            if related and scorer(a, b) >= threshold:
                uf.union(a.id, b.id)

    keys = {o.id: (o.created_at, o.id) for o in opportunities}
    return _canonical_first(uf.groups(), keys)


class DeduplicationEngine:
    """Finds and merges duplicate posts and opportunities in a store."""

    def __init__(
        self,
        db: Database,
        threshold: float | None = None,
        max_passes: int | None = None,
        batch_size: int | None = None,
        scorer: Scorer | None = None,
        post_threshold: float | None = None,
        check_threshold: float | None = None,
    ):
        config = get_config()
        self.db = db
        self.threshold = threshold if threshold is not None else config.dedup.similarity_threshold
        self.post_threshold = (
            post_threshold if post_threshold is not None
            else config.dedup.post_similarity_threshold
        )
        self.check_threshold = (
            check_threshold if check_threshold is not None
            else config.dedup.opportunity_check_threshold
        )
        self.max_passes = max_passes or config.dedup.max_passes
        self.batch_size = batch_size or config.database.batch_size
        self.scorer = scorer or similarity

    def find_duplicate_posts(self, exclude: Iterable[int] = ()) -> list[list[int]]:
        """Find groups of duplicate posts currently in the store."""
        skip = set(exclude)
        posts = [p for p in self.db.get_all_posts(self.batch_size) if p.id not in skip]
        return group_duplicate_posts(posts, self.post_threshold, self.scorer)

    def find_duplicate_opportunities(self, exclude: Iterable[int] = ()) -> list[list[int]]:
        """Find groups of duplicate opportunities currently in the store."""
        skip = set(exclude)
        opportunities = [
            o for o in self.db.get_all_opportunities(self.batch_size) if o.id not in skip
        ]
        return group_duplicate_opportunities(opportunities, self.threshold, self.scorer)

    def check_post_duplication(self, post: Post) -> DuplicateCheck:
        """Check an incoming post against the store before inserting it.

        Tries the reddit_id first, then title and author, then text
        similarity against recent posts of the same subreddit.

        Returns:
            DuplicateCheck naming the stored post it duplicates, if any.
        """
        same_id = [p for p in self.db.get_posts_by_reddit_id(post.reddit_id) if p.id != post.id]
        if same_id:
            return DuplicateCheck(True, same_id[0].id, "Exact Reddit ID match", 1.0)

        author = (post.author or "").strip().lower()
        if post.title.strip() and author not in ANONYMOUS_AUTHORS:
            matches = [
                p for p in self.db.get_posts_by_title_author(post.title, author)
                if p.id != post.id
            ]
            if matches:
                return DuplicateCheck(True, matches[0].id, "Same title and author", 1.0)

        if not _has_content(post):
            return NOT_DUPLICATE

        candidates = [
            p for p in self.db.get_recent_posts(post.subreddit, POST_CHECK_CANDIDATES)
            if p.id != post.id and _has_content(p)
        ]
        best = self._best_match(post, candidates, self.post_threshold)
        if best is None:
            return NOT_DUPLICATE
        score, match = best
        return DuplicateCheck(True, match.id, "High content similarity", score)

    def check_opportunity_duplication(self, opportunity: Opportunity) -> DuplicateCheck:
        """Check an incoming opportunity against the store before inserting it.

        An identical title counts when the niche matches too (any niche
        if the incoming one is unknown). Otherwise the newest opportunities
        are scored and the best one at or above ``check_threshold`` wins.
        """
        niche = opportunity.niche if is_known_tag(opportunity.niche) else None
        if opportunity.title.strip():
            matches = [
                o for o in self.db.get_opportunities_by_title(opportunity.title, niche)
                if o.id != opportunity.id
            ]
            if matches:
                reason = "Exact title match" + (" in same niche" if niche else "")
                return DuplicateCheck(True, matches[0].id, reason, 1.0)

        candidates = [
            o for o in self.db.get_recent_opportunities(OPPORTUNITY_CHECK_CANDIDATES)
            if o.id != opportunity.id
        ]
        best = self._best_match(opportunity, candidates, self.check_threshold)
        if best is None:
            return NOT_DUPLICATE
        score, match = best
        return DuplicateCheck(True, match.id, "High opportunity similarity", score)

    def _best_match(self, record, candidates: list, threshold: float):
        """Highest scoring candidate at or above threshold, lowest id on ties."""
        best = None
        for candidate in sorted(candidates, key=lambda c: c.id):
            score = self.scorer(record, candidate)
            if score >= threshold and (best is None or score > best[0]):
                best = (score, candidate)
        return best

    def cleanup(self) -> CleanupReport:
        """Merge duplicates until a pass finds nothing left to merge.

        Each pass merges post groups first and then re-reads opportunities,
        since folding posts together can make two opportunities share the
        same sources. A group that fails is recorded and its ids are left
        alone for the rest of the run.

        Returns:
            CleanupReport with deletion counts and per-group failures.
        """
        report = CleanupReport()
        failed_posts: set[int] = set()
        failed_opportunities: set[int] = set()

        for pass_number in range(1, self.max_passes + 1):
            report.passes = pass_number

            post_groups = self.find_duplicate_posts(exclude=failed_posts)
            for group in post_groups:
                canonical, *duplicates = group
                try:
                    deleted = self.db.merge_posts(canonical, duplicates)
                except (NotFoundError, PersistenceError) as e:
                    logger.warning(f"[Dedup] Failed to merge posts {group}: {e}")
                    report.failures.append(GroupFailure("post", group, str(e)))
                    failed_posts.update(group)
                    continue
                if deleted:
                    report.deleted_posts += deleted
                    report.merged_groups += 1

            opportunity_groups = self.find_duplicate_opportunities(exclude=failed_opportunities)
            for group in opportunity_groups:
                canonical, *duplicates = group
                try:
                    deleted = self.db.merge_opportunities(canonical, duplicates)
                except (NotFoundError, PersistenceError) as e:
                    logger.warning(f"[Dedup] Failed to merge opportunities {group}: {e}")
                    report.failures.append(GroupFailure("opportunity", group, str(e)))
                    failed_opportunities.update(group)
                    continue
                if deleted:
                    report.deleted_opportunities += deleted
                    report.merged_groups += 1

            logger.debug(
                f"[Dedup] Pass {pass_number}: {len(post_groups)} post group(s), "
                f"{len(opportunity_groups)} opportunity group(s)"
            )
            if not post_groups and not opportunity_groups:
                break

        logger.info(
            f"[Dedup] Removed {report.deleted_posts} duplicate posts and "
            f"{report.deleted_opportunities} duplicate opportunities "
            f"in {report.passes} pass(es)"
        )
        if report.failures:
            logger.warning(f"[Dedup] {len(report.failures)} group(s) failed to merge")
        return report

    def get_stats(self) -> dict:
        """Store totals plus the number of duplicate posts still detectable."""
        table_counts = self.db.get_stats()
        subreddit_counts = self.db.get_subreddit_counts()
        duplicate_posts = sum(len(group) - 1 for group in self.find_duplicate_posts())

        avg_per_subreddit = 0.0
        if subreddit_counts:
            avg_per_subreddit = round(table_counts["posts"] / len(subreddit_counts), 1)

        return {
            "total_posts": table_counts["posts"],
            "total_opportunities": table_counts["opportunities"],
            "total_sources": table_counts["opportunity_sources"],
            "subreddits": len(subreddit_counts),
            "avg_posts_per_subreddit": avg_per_subreddit,
            "duplicate_posts": duplicate_posts,
        }
