#!/usr/bin/env python3
"""Demand Radar - CLI Entry Point.

Deduplicate, cluster and rank the business opportunities mined from Reddit.
"""

import json
import logging
import sys
import time
import uuid
from pathlib import Path

import click
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from demand_radar.config import configure_logging, get_config, reload_config
from demand_radar.database import UsageEvent, get_database
from demand_radar.engine import (
    ClusteringEngine,
    DeduplicationEngine,
    UsageAggregator,
    format_cluster_markdown,
    top_ideas_to_report,
)
from demand_radar.engine.report import iso_utc
from demand_radar.errors import DemandRadarError, PartialFailure


console = Console()


def open_database():
    """Open and initialize the configured database."""
    db = get_database()
    db.initialize()
    return db


def fail(message: str) -> None:
    """Print an error and exit with status 1."""
    console.print(f"[red]Error: {message}[/red]")
    sys.exit(1)


@click.group()
@click.version_option(version="0.1.0", prog_name="demand-radar")
@click.option("--config", "config_path", default=None, help="Path to a YAML config file")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
def cli(config_path: str | None, verbose: bool):
    """Demand Radar - Find what Reddit keeps asking for."""
    configure_logging(logging.DEBUG if verbose else logging.WARNING)
    if config_path:
        try:
            reload_config(config_path)
        except FileNotFoundError as e:
            fail(str(e))


@cli.command()
def init():
    """Initialize Demand Radar (create the database)."""
    console.print("[bold]Initializing Demand Radar...[/bold]\n")

    config = get_config()
    try:
        open_database()
    except DemandRadarError as e:
        fail(str(e))
    console.print(f"[green]✓[/green] Initialized database: {config.database.path}")


@cli.command()
def stats():
    """Show database statistics."""
    try:
        db = open_database()
        table_counts = db.get_stats()
        dedup_stats = DeduplicationEngine(db).get_stats()
    except DemandRadarError as e:
        fail(str(e))

    console.print("\n[bold]Database Statistics[/bold]\n")

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Table", style="cyan")
    table.add_column("Records", justify="right")

    for table_name, count in table_counts.items():
        table.add_row(table_name, str(count))

    console.print(table)
    console.print(
        f"\n  Subreddits: {dedup_stats['subreddits']} "
        f"(avg {dedup_stats['avg_posts_per_subreddit']} posts each)"
    )
    console.print(f"  Duplicate posts pending cleanup: {dedup_stats['duplicate_posts']}")


@cli.command()
@click.option("--strict", is_flag=True, help="Exit non-zero if any duplicate group failed to merge")
def dedupe(strict: bool):
    """Merge duplicate posts and opportunities."""
    try:
        db = open_database()
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
        ) as progress:
            progress.add_task("Removing duplicates...", total=None)
            report = DeduplicationEngine(db).cleanup()
    except DemandRadarError as e:
        fail(str(e))

    console.print(Panel(
        f"Deleted posts: [bold]{report.deleted_posts}[/bold]\n"
        f"Deleted opportunities: [bold]{report.deleted_opportunities}[/bold]\n"
        f"Merged groups: {report.merged_groups}\n"
        f"Passes: {report.passes}",
        title="Deduplication",
        border_style="green" if not report.failures else "yellow",
    ))

    for failure in report.failures:
        console.print(f"[yellow]![/yellow] {failure.kind} group {failure.ids}: {failure.error}")

    if strict:
        try:
            report.raise_for_failures()
        except PartialFailure as e:
            fail(str(e))


@cli.command()
@click.option("--force", "-f", is_flag=True, help="Recompute even if a snapshot exists")
def cluster(force: bool):
    """Cluster opportunities into demand clusters."""
    try:
        db = open_database()
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
        ) as progress:
            progress.add_task("Clustering opportunities...", total=None)
            snapshot = ClusteringEngine(db).cluster_similar_opportunities(force=force)
    except DemandRadarError as e:
        fail(str(e))

    console.print(
        f"\n[green]✓[/green] Generation {snapshot.generation}: "
        f"{len(snapshot.clusters)} clusters from {snapshot.opportunity_count} opportunities "
        f"[dim](computed {iso_utc(snapshot.computed_at)})[/dim]\n"
    )

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Cluster", style="cyan")
    table.add_column("Sources", justify="right")
    table.add_column("Avg", justify="right")
    table.add_column("Trend", justify="right")

    for rank, c in enumerate(snapshot.clusters[:20], start=1):
        table.add_row(
            str(rank),
            c.title[:60],
            str(c.source_count),
            f"{c.avg_score:.1f}",
            str(round(c.trending_score)),
        )

    console.print(table)


@cli.command()
@click.option("--limit", "-l", default=None, type=int, help="Number of clusters to show")
@click.option("--min-sources", "-m", default=None, type=int, help="Minimum source posts per cluster")
@click.option("--force", "-f", is_flag=True, help="Recompute clusters first")
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON")
@click.option("--output", "-o", default=None, help="Output file path")
def report(limit: int | None, min_sources: int | None, force: bool, as_json: bool, output: str | None):
    """Show the top requested ideas."""
    try:
        db = open_database()
        top_ideas = ClusteringEngine(db).get_top_requested_ideas(
            limit=limit, min_sources=min_sources, force=force
        )
    except DemandRadarError as e:
        fail(str(e))

    if as_json:
        text = json.dumps(top_ideas_to_report(top_ideas), indent=2)
    else:
        text = format_cluster_markdown(top_ideas)

    if output:
        Path(output).write_text(text)
        console.print(f"[green]✓[/green] Report saved to: {output}")
    elif as_json:
        click.echo(text)
    else:
        console.print(Markdown(text))


@cli.command()
@click.option("--days", "-d", default=None, type=int, help="Number of days to show")
@click.option("--json", "as_json", is_flag=True, help="Print the stats as JSON")
def usage(days: int | None, as_json: bool):
    """Show AI cost and usage rollups."""
    try:
        db = open_database()
        aggregator = UsageAggregator(db)
        usage_stats = aggregator.get_recent_stats(days)
        alert = aggregator.check_daily_threshold(usage_stats.end_date)
    except DemandRadarError as e:
        fail(str(e))

    if as_json:
        click.echo(json.dumps({**usage_stats.to_dict(), "alert": alert}, indent=2))
        return

    console.print(
        f"\n[bold]AI Usage {usage_stats.start_date} → {usage_stats.end_date}[/bold]\n"
    )

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Date", style="cyan")
    table.add_column("Requests", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost", justify="right")

    for day in usage_stats.days:
        table.add_row(
            day.usage_date,
            str(day.requests),
            str(day.failed_requests),
            f"{day.total_tokens:,}",
            f"${day.total_cost:.4f}",
        )

    totals = usage_stats.totals
    table.add_row(
        "[bold]Total[/bold]",
        str(totals.requests),
        str(totals.failed_requests),
        f"{totals.total_tokens:,}",
        f"[bold]${totals.total_cost:.4f}[/bold]",
    )
    console.print(table)

    if alert["exceeded"]:
        console.print(
            f"\n[yellow]![/yellow] Today's cost ${alert['total_cost']:.2f} reached "
            f"the ${alert['threshold']:.2f} alert threshold"
        )


@cli.command("record-usage")
@click.option("--model", required=True, help="Model name, e.g. gemini-2.5-flash")
@click.option("--input-tokens", required=True, type=int, help="Prompt tokens")
@click.option("--output-tokens", required=True, type=int, help="Completion tokens")
@click.option("--request-id", default=None, help="Idempotency key (generated if omitted)")
@click.option("--session", "session_id", default=None, help="Analysis session ID")
@click.option("--batch", is_flag=True, help="Call was made in batch mode")
@click.option("--failed", is_flag=True, help="Call failed")
def record_usage(
    model: str,
    input_tokens: int,
    output_tokens: int,
    request_id: str | None,
    session_id: str | None,
    batch: bool,
    failed: bool,
):
    """Record a single AI usage event."""
    event = UsageEvent(
        request_id=request_id or str(uuid.uuid4()),
        model=model,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        timestamp=time.time(),
        success=not failed,
        operation="batch" if batch else "individual",
        session_id=session_id,
        batch_mode=batch,
    )
    try:
        recorded = UsageAggregator(open_database()).record_usage(event)
    except DemandRadarError as e:
        fail(str(e))

    if recorded:
        console.print(f"[green]✓[/green] Recorded {event.request_id}")
    else:
        console.print(f"[yellow]![/yellow] {event.request_id} was already recorded")


@cli.command("rebuild-usage")
@click.option("--date", "day", required=True, help="UTC day to rebuild (YYYY-MM-DD)")
def rebuild_usage(day: str):
    """Recompute a day's usage rollups from stored events."""
    try:
        daily = UsageAggregator(open_database()).rebuild_daily_usage(day)
    except DemandRadarError as e:
        fail(str(e))

    console.print(
        f"[green]✓[/green] {daily.usage_date}: {daily.requests} requests, "
        f"${daily.total_cost:.4f}"
    )


@cli.command()
@click.option("--host", "-h", default=None, help="Host to bind to")
@click.option("--port", "-p", default=None, type=int, help="Port to listen on")
@click.option("--reload", "-r", is_flag=True, help="Enable auto-reload for development")
def serve(host: str | None, port: int | None, reload: bool):
    """Launch the HTTP trigger API."""
    from demand_radar.web import run_server

    ui = get_config().ui
    host = host or ui.host
    port = port or ui.port

    console.print(f"\n[bold]Starting Demand Radar API[/bold]\n")
    console.print(f"  URL: [cyan]http://{host}:{port}/docs[/cyan]")
    console.print(f"  Reload: {'enabled' if reload else 'disabled'}")
    console.print("\n[dim]Press Ctrl+C to stop[/dim]\n")

    run_server(host=host, port=port, reload=reload)


if __name__ == "__main__":
    cli()
