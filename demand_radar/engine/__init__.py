"""Engine module for Demand Radar.

Provides similarity scoring, deduplication, demand clustering and
AI usage aggregation over the SQLite store.
"""

from demand_radar.engine.similarity import (
    STOPWORDS,
    tokenize,
    content_tokens,
    similarity,
)

from demand_radar.engine.dedup import (
    CleanupReport,
    DeduplicationEngine,
    DuplicateCheck,
    GroupFailure,
    group_duplicate_opportunities,
    group_duplicate_posts,
)

from demand_radar.engine.clustering import (
    Cluster,
    ClusterSnapshot,
    ClusteringEngine,
    TopIdeas,
    compute_trending_score,
    group_opportunities,
    rank_clusters,
    soft_saturate,
)

from demand_radar.engine.report import (
    cluster_to_report,
    format_cluster_markdown,
    top_ideas_to_report,
)

from demand_radar.engine.usage import (
    PRICING,
    UsageAggregator,
    UsageStats,
    calculate_cost,
)

__all__ = [
    # Similarity
    "STOPWORDS",
    "tokenize",
    "content_tokens",
    "similarity",
    # Deduplication
    "CleanupReport",
    "DeduplicationEngine",
    "DuplicateCheck",
    "GroupFailure",
    "group_duplicate_opportunities",
    "group_duplicate_posts",
    # Clustering
    "Cluster",
    "ClusterSnapshot",
    "ClusteringEngine",
    "TopIdeas",
    "compute_trending_score",
    "group_opportunities",
    "rank_clusters",
    "soft_saturate",
    # Report
    "cluster_to_report",
    "format_cluster_markdown",
    "top_ideas_to_report",
    # Usage
    "PRICING",
    "UsageAggregator",
    "UsageStats",
    "calculate_cost",
]
