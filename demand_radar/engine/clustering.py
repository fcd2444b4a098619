"""Demand clustering for opportunities.

Groups similar opportunities into clusters with greedy seed clustering,
computes per-cluster aggregates and a trending score, ranks the clusters and
persists them as a versioned snapshot in the store.
"""

import json
import logging
import math
import time
from collections import Counter
from dataclasses import asdict, dataclass, field
from functools import partial
from typing import Callable

from demand_radar.config import get_config
from demand_radar.database import Database, Opportunity, Post, UNKNOWN_TAG, is_known_tag
from demand_radar.engine.similarity import Scorer, similarity
from demand_radar.errors import ValidationError

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400

# Trending score weights
RECENT_WEIGHT = 0.35
VOLUME_WEIGHT = 0.25
QUALITY_WEIGHT = 0.25
SPREAD_WEIGHT = 0.15
SPREAD_SATURATION = 5  # subreddits

TOP_NICHES = 10


@dataclass
class ClusterMember:
    """Opportunity as it appears inside a cluster."""
    id: int
    title: str
    overall_score: float
    viable: bool
    subreddit: str
    source_count: int
    created_at: float


@dataclass
class TopPost:
    """Highest-engagement source posts of a cluster."""
    id: int
    reddit_id: str
    title: str
    subreddit: str
    score: int
    num_comments: int
    created_utc: float
    # Snapshots written before authors were kept load as deleted
    author: str = "[deleted]"


@dataclass
class Cluster:
    """Group of similar opportunities. Members are seed-first."""
    id: str
    title: str
    description: str
    members: list[ClusterMember]
    source_post_ids: list[int]
    source_count: int
    avg_score: float
    viable_count: int
    trending_score: float
    first_seen: float
    last_seen: float
    subreddits: list[str]
    niche: str
    top_posts: list[TopPost] = field(default_factory=list)

    @property
    def seed_id(self) -> int:
        return self.members[0].id

    @property
    def opportunity_count(self) -> int:
        return len(self.members)

    @property
    def viability_rate(self) -> float:
        """Percentage of viable members."""
        if not self.members:
            return 0.0
        return self.viable_count / len(self.members) * 100

    @property
    def is_cross_subreddit(self) -> bool:
        return len(self.subreddits) > 1

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Cluster":
        data = dict(data)
        data["members"] = [ClusterMember(**m) for m in data["members"]]
        data["top_posts"] = [TopPost(**p) for p in data.get("top_posts", [])]
        return cls(**data)


@dataclass
class ClusterSnapshot:
    """A ranked clustering result and the generation it was stored as."""
    generation: int
    computed_at: float
    opportunity_count: int
    clusters: list[Cluster]


@dataclass
class TopIdeas:
    """Top-ranked clusters plus a summary of everything that qualified."""
    clusters: list[Cluster]
    summary: dict


def soft_saturate(count: int, k: float = 0.3) -> float:
    """Soft saturation using exponential decay: 1 - exp(-k * count).

    k=0.3: count=1 -> 0.26, count=3 -> 0.59, count=5 -> 0.78, count=10 -> 0.95
    """
    return 1.0 - math.exp(-k * count)


def compute_trending_score(
    recent_sources: int,
    source_count: int,
    avg_score: float,
    subreddit_count: int,
    k: float = 0.3,
) -> float:
    """Trending score in [0, 100].

    Non-decreasing in each argument: recent activity counts most, followed
    by total volume and average quality, then subreddit spread.
    """
    quality = min(max(avg_score / 10, 0.0), 1.0)
    spread = min(subreddit_count / SPREAD_SATURATION, 1.0)
    score = 100 * (
        RECENT_WEIGHT * soft_saturate(recent_sources, k)
        + VOLUME_WEIGHT * soft_saturate(source_count, k)
        + QUALITY_WEIGHT * quality
        + SPREAD_WEIGHT * spread
    )
    return round(score, 4)


def group_opportunities(
    opportunities: list[Opportunity],
    threshold: float,
    scorer: Scorer = similarity,
) -> list[list[Opportunity]]:
    """Partition opportunities with greedy seed clustering.

    Input order decides the seeds: each opportunity not yet clustered starts
    a cluster and absorbs every later unclustered opportunity that scores at
    least ``threshold`` against it.
    """
    clustered: set[int] = set()
    groups: list[list[Opportunity]] = []

    for index, seed in enumerate(opportunities):
        if seed.id in clustered:
            continue
        clustered.add(seed.id)
        group = [seed]
        for other in opportunities[index + 1:]:
            if other.id in clustered:
                continue
            if scorer(seed, other) >= threshold:
                group.append(other)
                clustered.add(other.id)
        groups.append(group)

    return groups


def _dominant_niche(members: list[Opportunity]) -> str:
    counts = Counter(m.niche.strip() for m in members if is_known_tag(m.niche))
    if not counts:
        return UNKNOWN_TAG
    return counts.most_common(1)[0][0]


def build_cluster(
    members: list[Opportunity],
    posts: dict[int, Post],
    now: float,
    recent_days: int = 7,
    saturation_k: float = 0.3,
    top_posts: int = 5,
) -> Cluster:
    """Compute a cluster's aggregates from its members and their posts.

    Args:
        members: Opportunities in the cluster, seed first.
        posts: Source posts by id. Links to posts missing here are ignored.
        now: Reference time for the recent-activity window.
        recent_days: Width of the recent-activity window.
        saturation_k: Soft saturation rate for the trending score.
        top_posts: Number of highest-engagement posts to keep.
    """
    seed = members[0]
    source_ids = sorted({
        post_id
        for member in members
        for post_id in member.source_post_ids
        if post_id in posts
    })
    sources = [posts[post_id] for post_id in source_ids]

    avg_score = sum(m.overall_score for m in members) / len(members)
    viable_count = sum(1 for m in members if m.viable)

    subreddits = sorted({m.subreddit for m in members if m.subreddit} |
                        {p.subreddit for p in sources if p.subreddit})

    timestamps = [m.created_at for m in members] + [p.created_utc for p in sources]

    cutoff = now - recent_days * SECONDS_PER_DAY
    recent_sources = sum(1 for p in sources if p.created_utc >= cutoff)

    # max() keeps the first of equal scores, members are in creation order
    representative = max(members, key=lambda m: m.overall_score)

    ranked_posts = sorted(sources, key=lambda p: (-p.score, p.id))[:top_posts]

    return Cluster(
        id=f"cluster_{seed.id}",
        title=representative.title,
        description=representative.description,
        members=[
            ClusterMember(
                id=m.id,
                title=m.title,
                overall_score=m.overall_score,
                viable=bool(m.viable),
                subreddit=m.subreddit,
                source_count=m.source_count,
                created_at=m.created_at,
            )
            for m in members
        ],
        source_post_ids=source_ids,
        source_count=len(source_ids),
        avg_score=avg_score,
        viable_count=viable_count,
        trending_score=compute_trending_score(
            recent_sources, len(source_ids), avg_score, len(subreddits), saturation_k
        ),
        first_seen=min(timestamps),
        last_seen=max(timestamps),
        subreddits=subreddits,
        niche=_dominant_niche(members),
        top_posts=[
            TopPost(
                id=p.id,
                reddit_id=p.reddit_id,
                title=p.title,
                subreddit=p.subreddit,
                score=p.score,
                num_comments=p.num_comments,
                created_utc=p.created_utc,
                author=p.author,
            )
            for p in ranked_posts
        ],
    )


def rank_clusters(clusters: list[Cluster]) -> list[Cluster]:
    """Order by trending score, then volume, then age, then seed id."""
    return sorted(
        clusters,
        key=lambda c: (-c.trending_score, -c.source_count, c.first_seen, c.seed_id),
    )


def summarize_clusters(clusters: list[Cluster], generation: int, limit: int) -> dict:
    """Summary statistics over a list of clusters."""
    total_opportunities = sum(c.opportunity_count for c in clusters)
    all_sources = {post_id for c in clusters for post_id in c.source_post_ids}

    niche_stats: dict[str, list[float]] = {}
    for cluster in clusters:
        if not is_known_tag(cluster.niche):
            continue
        for member in cluster.members:
            niche_stats.setdefault(cluster.niche, []).append(member.overall_score)
    top_niches = sorted(
        (
            {"niche": niche, "count": len(scores), "avg_score": round(sum(scores) / len(scores), 1)}
            for niche, scores in niche_stats.items()
        ),
        key=lambda n: (-n["count"], n["niche"]),
    )[:TOP_NICHES]

    return {
        "total_clusters": len(clusters),
        "total_opportunities": total_opportunities,
        "total_sources": len(all_sources),
        "avg_cluster_size": round(total_opportunities / len(clusters), 2) if clusters else 0.0,
        "limit_applied": min(limit, len(clusters)),
        "cross_subreddit_clusters": sum(1 for c in clusters if c.is_cross_subreddit),
        "high_viability_clusters": sum(1 for c in clusters if c.viability_rate > 50),
        "top_niches": top_niches,
        "generation": generation,
    }


class ClusteringEngine:
    """Clusters the store's opportunities and keeps the latest result."""

    def __init__(
        self,
        db: Database,
        threshold: float | None = None,
        batch_size: int | None = None,
        scorer: Scorer | None = None,
        clock: Callable[[], float] = time.time,
    ):
        config = get_config()
        self.db = db
        self.config = config.clustering
        self.report_config = config.report
        self.threshold = threshold if threshold is not None else self.config.similarity_threshold
        self.batch_size = batch_size or config.database.batch_size
        self.scorer = scorer or partial(similarity, category_weight=self.config.category_weight)
        self.clock = clock

    def get_latest_snapshot(self) -> ClusterSnapshot | None:
        """Load the most recently persisted clustering result."""
        row = self.db.get_latest_cluster_snapshot()
        if row is None:
            return None
        return ClusterSnapshot(
            generation=row.generation,
            computed_at=row.computed_at,
            opportunity_count=row.opportunity_count,
            clusters=[Cluster.from_dict(c) for c in json.loads(row.clusters_json)],
        )

    def cluster_similar_opportunities(self, force: bool = False) -> ClusterSnapshot:
        """Return the latest clustering, recomputing when forced or absent."""
        if not force:
            snapshot = self.get_latest_snapshot()
            if snapshot is not None:
                logger.debug(f"[Clustering] Using snapshot generation {snapshot.generation}")
                return snapshot
        return self.recompute()

    def recompute(self) -> ClusterSnapshot:
        """Cluster every opportunity from a fresh read and persist the result."""
        start = time.time()
        opportunities = sorted(
            self.db.get_all_opportunities(self.batch_size),
            key=lambda o: (o.created_at, o.id),
        )
        post_ids = {post_id for o in opportunities for post_id in o.source_post_ids}
        posts = self.db.get_posts_by_ids(post_ids)
        logger.info(
            f"[Clustering] Clustering {len(opportunities)} opportunities "
            f"from {len(posts)} source posts"
        )

        now = self.clock()
        groups = group_opportunities(opportunities, self.threshold, self.scorer)
        clusters = rank_clusters([
            build_cluster(
                members,
                posts,
                now,
                recent_days=self.config.recent_days,
                saturation_k=self.config.saturation_k,
                top_posts=self.report_config.top_posts,
            )
            for members in groups
        ])

        generation = self.db.save_cluster_snapshot(
            [c.to_dict() for c in clusters],
            opportunity_count=len(opportunities),
            computed_at=now,
        )
        logger.info(
            f"[Clustering] Stored {len(clusters)} clusters as generation {generation} "
            f"in {time.time() - start:.2f}s"
        )
        return ClusterSnapshot(
            generation=generation,
            computed_at=now,
            opportunity_count=len(opportunities),
            clusters=clusters,
        )

    def get_top_requested_ideas(
        self,
        limit: int | None = None,
        min_sources: int | None = None,
        force: bool = False,
    ) -> TopIdeas:
        """Top-ranked clusters with at least ``min_sources`` source posts.

        Raises:
            ValidationError: If limit or min_sources is out of range.
        """
        if limit is None:
            limit = self.report_config.default_limit
        if min_sources is None:
            min_sources = self.report_config.default_min_sources

        max_limit = self.report_config.max_limit
        if isinstance(limit, bool) or not isinstance(limit, int) or not 0 <= limit <= max_limit:
            raise ValidationError(f"limit must be an integer between 0 and {max_limit}")
        if isinstance(min_sources, bool) or not isinstance(min_sources, int) or min_sources < 1:
            raise ValidationError("min_sources must be an integer of at least 1")

        snapshot = self.cluster_similar_opportunities(force=force)
        eligible = [c for c in snapshot.clusters if c.source_count >= min_sources]

        return TopIdeas(
            clusters=eligible[:limit],
            summary=summarize_clusters(eligible, snapshot.generation, limit),
        )
