"""Cluster report formatting.

Turns ranked clusters into the JSON shape served by the API and into a
markdown summary for the CLI.
"""

from datetime import datetime, timezone

from demand_radar.engine.clustering import Cluster, TopIdeas

REDDIT_URL = "https://reddit.com/r/{subreddit}/comments/{reddit_id}"


def iso_utc(timestamp: float) -> str:
    """Format an epoch timestamp as ISO 8601 in UTC."""
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def cluster_to_report(cluster: Cluster) -> dict:
    """Convert a cluster to its report entry."""
    return {
        "id": cluster.id,
        "title": cluster.title,
        "description": cluster.description,
        "source_count": cluster.source_count,
        "opportunity_count": cluster.opportunity_count,
        "avg_score": round(cluster.avg_score, 1),
        "viability_rate": round(cluster.viability_rate),
        "subreddits": sorted(cluster.subreddits),
        "trending_score": round(cluster.trending_score),
        "first_seen": iso_utc(cluster.first_seen),
        "last_seen": iso_utc(cluster.last_seen),
        "niche": cluster.niche,
        "top_posts": [
            {
                "id": post.id,
                "title": post.title,
                "author": post.author,
                "subreddit": post.subreddit,
                "score": post.score,
                "num_comments": post.num_comments,
                "created_utc": iso_utc(post.created_utc),
                "url": REDDIT_URL.format(subreddit=post.subreddit, reddit_id=post.reddit_id),
            }
            for post in cluster.top_posts
        ],
        "opportunities": [
            {
                "id": member.id,
                "title": member.title,
                "score": member.overall_score,
                "viable": member.viable,
                "subreddit": member.subreddit,
            }
            for member in cluster.members
        ],
    }


def top_ideas_to_report(top_ideas: TopIdeas) -> dict:
    return {
        "clusters": [cluster_to_report(c) for c in top_ideas.clusters],
        "summary": top_ideas.summary,
    }


def _trend_bar(score: float) -> str:
    filled = min(max(round(score / 20), 0), 5)
    return "▲" * filled + "△" * (5 - filled)


def format_cluster_markdown(top_ideas: TopIdeas) -> str:
    """Format top clusters as markdown."""
    summary = top_ideas.summary
    lines = ["## Top Requested Ideas\n"]
    lines.append(
        f"{summary['limit_applied']} of {summary['total_clusters']} clusters, "
        f"{summary['total_opportunities']} opportunities from "
        f"{summary['total_sources']} posts (generation {summary['generation']})\n"
    )

    for rank, cluster in enumerate(top_ideas.clusters, start=1):
        lines.append(f"### {rank}. {cluster.title} {_trend_bar(cluster.trending_score)}")
        lines.append(f"- **Trending:** {round(cluster.trending_score)}/100")

        sub_info = f" across {len(cluster.subreddits)} subreddits" if cluster.is_cross_subreddit else ""
        lines.append(
            f"- **Demand:** {cluster.source_count} posts, "
            f"{cluster.opportunity_count} opportunities{sub_info}"
        )
        lines.append(
            f"- **Quality:** avg {cluster.avg_score:.1f}/10, "
            f"{round(cluster.viability_rate)}% viable"
        )
        if cluster.subreddits:
            lines.append("- **Subreddits:** " + ", ".join(f"r/{s}" for s in cluster.subreddits))
        if cluster.top_posts:
            links = ", ".join(
                f"[{p.score}]({REDDIT_URL.format(subreddit=p.subreddit, reddit_id=p.reddit_id)})"
                for p in cluster.top_posts[:3]
            )
            lines.append(f"- **Top sources:** {links}")
        lines.append("")

    return "\n".join(lines)
