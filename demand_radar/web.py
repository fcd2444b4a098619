"""FastAPI trigger surface for Demand Radar.

Exposes the job entry points as JSON endpoints so an external scheduler or
the dashboard can trigger deduplication, clustering and usage recording.
"""

import logging
from typing import Any, Optional

from fastapi import Body, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from demand_radar import jobs
from demand_radar.config import configure_logging
from demand_radar.database import Database, get_database

logger = logging.getLogger(__name__)


# Create FastAPI app
app = FastAPI(
    title="Demand Radar",
    description="Deduplicate, cluster and rank demand signals mined from Reddit",
    version="0.1.0",
)


def get_db() -> Database:
    """Store used by the request handlers."""
    return get_database()


def _respond(result: dict) -> JSONResponse:
    """Map a job result to an HTTP response."""
    if result.get("success"):
        status_code = 200
    elif result.get("error_type") == "validation":
        status_code = 400
    else:
        status_code = 500
    return JSONResponse(content=result, status_code=status_code)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed query or body parameters get the same 400 body as job validation."""
    problems = [
        f"{error['loc'][-1]}: {error['msg']}" if error.get("loc") else error["msg"]
        for error in exc.errors()
    ]
    message = "; ".join(problems) or "Invalid request"
    logger.warning(f"[API] {request.method} {request.url.path} rejected: {message}")
    return _respond({
        "success": False,
        "error": message,
        "error_type": "validation",
    })


@app.post("/api/deduplication")
async def api_deduplication(strict: bool = False, db: Database = Depends(get_db)):
    """Remove duplicate posts and opportunities."""
    return _respond(jobs.run_deduplication(db=db, strict=strict))


@app.post("/api/clusters/recompute")
async def api_recompute_clusters(db: Database = Depends(get_db)):
    """Recompute the demand clusters from the current opportunities."""
    return _respond(jobs.run_clustering(force=True, db=db))


@app.get("/api/clusters")
async def api_clusters(
    limit: Optional[int] = Query(None),
    min_sources: Optional[int] = Query(None),
    force: bool = False,
    db: Database = Depends(get_db),
):
    """Top requested ideas from the latest clustering."""
    return _respond(jobs.get_cluster_report(
        limit=limit, min_sources=min_sources, force=force, db=db,
    ))


@app.post("/api/usage")
async def api_record_usage(
    payload: Any = Body(...),
    db: Database = Depends(get_db),
):
    """Record an AI usage event."""
    return _respond(jobs.record_usage_event(payload, db=db))


@app.get("/api/usage")
async def api_usage(days: Optional[int] = Query(None), db: Database = Depends(get_db)):
    """Daily usage rollups for the last ``days`` days."""
    return _respond(jobs.get_usage_stats(days=days, db=db))


@app.get("/api/stats")
async def api_stats(db: Database = Depends(get_db)):
    """API endpoint for database stats."""
    return _respond(jobs.get_store_stats(db=db))


# ============================================================================
# Run the app
# ============================================================================

def run_server(host: str = "127.0.0.1", port: int = 8000, reload: bool = False):
    """Run the web server."""
    import uvicorn

    configure_logging()
    logging.getLogger("demand_radar").setLevel(logging.INFO)

    uvicorn.run(
        "demand_radar.web:app",
        host=host,
        port=port,
        reload=reload,
    )


if __name__ == "__main__":
    run_server()
