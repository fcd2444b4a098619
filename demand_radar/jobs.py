"""Trigger entry points for Demand Radar.

Each job opens the store, runs one engine operation and returns a
JSON-serialisable dict with ``success`` and either a payload or ``error``.
Jobs never raise, so they can be called from the HTTP surface, the CLI or an
external scheduler alike.
"""

import logging
import time
import uuid

from demand_radar.database import Database, UsageEvent, get_database
from demand_radar.engine.clustering import ClusteringEngine
from demand_radar.engine.dedup import DeduplicationEngine
from demand_radar.engine.report import cluster_to_report, iso_utc, top_ideas_to_report
from demand_radar.engine.usage import UsageAggregator
from demand_radar.errors import (
    NotFoundError,
    PartialFailure,
    PersistenceError,
    ValidationError,
)

logger = logging.getLogger(__name__)

OPERATIONS = {"individual", "batch", "fallback"}


def _open_database(db: Database | None) -> Database:
    if db is None:
        db = get_database()
    db.initialize()
    return db


def _failure(job: str, error: Exception) -> dict:
    """Result for a job that could not complete."""
    if isinstance(error, ValidationError):
        error_type = "validation"
        logger.warning(f"[Jobs] {job} rejected: {error}")
    elif isinstance(error, NotFoundError):
        error_type = "not_found"
        logger.warning(f"[Jobs] {job} failed: {error}")
    elif isinstance(error, PersistenceError):
        error_type = "persistence"
        logger.error(f"[Jobs] {job} failed: {error}")
    else:
        error_type = "internal"
        logger.exception(f"[Jobs] {job} failed")
    return {"success": False, "error": str(error), "error_type": error_type}


def run_deduplication(db: Database | None = None, strict: bool = False) -> dict:
    """Remove duplicate posts and opportunities.

    Args:
        db: Store to clean. Defaults to the configured database.
        strict: Report failure when any duplicate group failed to merge.
    """
    try:
        db = _open_database(db)
        report = DeduplicationEngine(db).cleanup()
        if strict:
            try:
                report.raise_for_failures()
            except PartialFailure as e:
                logger.warning(f"[Jobs] Deduplication partially failed: {e}")
                return {
                    "success": False,
                    "error": str(e),
                    "error_type": "partial_failure",
                    "report": report.to_dict(),
                }
        return {"success": True, "report": report.to_dict()}
    except Exception as e:
        return _failure("Deduplication", e)


def run_clustering(force: bool = False, db: Database | None = None) -> dict:
    """Cluster opportunities, recomputing when forced or when nothing is stored."""
    try:
        db = _open_database(db)
        snapshot = ClusteringEngine(db).cluster_similar_opportunities(force=force)
        return {
            "success": True,
            "generation": snapshot.generation,
            "computed_at": iso_utc(snapshot.computed_at),
            "opportunity_count": snapshot.opportunity_count,
            "cluster_count": len(snapshot.clusters),
            "clusters": [cluster_to_report(c) for c in snapshot.clusters],
        }
    except Exception as e:
        return _failure("Clustering", e)


def get_cluster_report(
    limit: int | None = None,
    min_sources: int | None = None,
    force: bool = False,
    db: Database | None = None,
) -> dict:
    """Top requested ideas as a report."""
    try:
        db = _open_database(db)
        top_ideas = ClusteringEngine(db).get_top_requested_ideas(
            limit=limit, min_sources=min_sources, force=force
        )
        return {"success": True, **top_ideas_to_report(top_ideas)}
    except Exception as e:
        return _failure("Cluster report", e)


def _require_int(payload: dict, key: str, default: int | None = None) -> int:
    value = payload.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{key} must be an integer")
    return value


def usage_event_from_payload(payload: dict) -> UsageEvent:
    """Build a UsageEvent from a request body.

    Raises:
        ValidationError: If a field is missing or has the wrong type.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Usage event must be a JSON object")

    model = payload.get("model")
    if not isinstance(model, str) or not model:
        raise ValidationError("model is required")

    operation = payload.get("operation", "individual")
    if operation not in OPERATIONS:
        raise ValidationError(f"operation must be one of {sorted(OPERATIONS)}")

    timestamp = payload.get("timestamp", time.time())
    if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
        raise ValidationError("timestamp must be epoch seconds")

    cost = payload.get("cost")
    if cost is not None and (isinstance(cost, bool) or not isinstance(cost, (int, float))):
        raise ValidationError("cost must be a number")

    return UsageEvent(
        request_id=str(payload.get("request_id") or uuid.uuid4()),
        model=model,
        input_tokens=_require_int(payload, "input_tokens", 0),
        output_tokens=_require_int(payload, "output_tokens", 0),
        timestamp=float(timestamp),
        success=bool(payload.get("success", True)),
        operation=operation,
        session_id=payload.get("session_id"),
        batch_mode=bool(payload.get("batch_mode", operation == "batch")),
        cost=float(cost) if cost is not None else None,
    )


def record_usage_event(payload: dict, db: Database | None = None) -> dict:
    """Record one AI usage event."""
    try:
        event = usage_event_from_payload(payload)
        db = _open_database(db)
        recorded = UsageAggregator(db).record_usage(event)
        return {
            "success": True,
            "request_id": event.request_id,
            "recorded": recorded,
        }
    except Exception as e:
        return _failure("Usage recording", e)


def get_usage_stats(days: int | None = None, db: Database | None = None) -> dict:
    """Usage rollups for the last ``days`` days."""
    try:
        db = _open_database(db)
        aggregator = UsageAggregator(db)
        stats = aggregator.get_recent_stats(days)
        return {
            "success": True,
            **stats.to_dict(),
            "alert": aggregator.check_daily_threshold(stats.end_date),
        }
    except Exception as e:
        return _failure("Usage stats", e)


def get_store_stats(db: Database | None = None) -> dict:
    """Store totals and currently detectable duplicates."""
    try:
        db = _open_database(db)
        return {
            "success": True,
            "tables": db.get_stats(),
            "dedup": DeduplicationEngine(db).get_stats(),
        }
    except Exception as e:
        return _failure("Stats", e)
