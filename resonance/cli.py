from __future__ import annotations

import asyncio
import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any

import typer
from rich.box import ROUNDED
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from resonance import services
from resonance.config import get_settings
from resonance.db import init_db, session_scope
from resonance.embedder import StaticEmbedder
from resonance.learning import recommend_strategies
from resonance.matching import Candidate
from resonance.outcomes import OutcomeScope


app = typer.Typer(help="Campaign attribution and outcome memory")
console = Console()

_LOG_LEVELS = {0: logging.WARNING, 1: logging.INFO}


def _setup_logging(*, verbose: int, json_output: bool) -> None:
    level = _LOG_LEVELS.get(max(verbose, 0), logging.DEBUG)
    if json_output:
        # stdout is reserved for the JSON document
        handler: logging.Handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(name)s %(levelname)s: %(message)s"))
    else:
        handler = RichHandler(console=console, show_time=False, show_path=False, rich_tracebacks=True)
    logging.basicConfig(level=level, handlers=[handler], force=True)


@app.callback()
def app_callback(
    ctx: typer.Context,
    db_path: str | None = typer.Option(None, "--db-path", help="SQLite database file (overrides RESONANCE_DB_PATH)."),
    json_output: bool = typer.Option(False, "--json", help="Print machine-readable JSON instead of tables."),
    verbose: int = typer.Option(0, "-v", "--verbose", count=True, help="-v for INFO, -vv for DEBUG."),
) -> None:
    if db_path:
        os.environ["RESONANCE_DB_PATH"] = str(Path(db_path).expanduser().resolve())
        get_settings.cache_clear()
    ctx.obj = {"json": json_output}
    _setup_logging(verbose=verbose, json_output=json_output)


def _cell(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, float):
        return f"{value:.4f}"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


def _emit(ctx: typer.Context, title: str, data: dict[str, Any] | list[dict[str, Any]],
          columns: list[str] | None = None) -> None:
    """Print *data* as JSON (``--json``) or as a rich panel / table."""
    if (ctx.obj or {}).get("json"):
        typer.echo(json.dumps(data, indent=2, ensure_ascii=False, default=str))
        return
    if isinstance(data, dict):
        grid = Table(box=ROUNDED, show_header=False)
        grid.add_column(style="bold")
        grid.add_column()
        for key, value in data.items():
            grid.add_row(key, _cell(value))
        console.print(Panel(grid, title=title, border_style="cyan"))
        return
    table = Table(title=title, box=ROUNDED, header_style="bold cyan")
    for col in columns or []:
        table.add_column(col)
    for row in data:
        table.add_row(*(_cell(row.get(col)) for col in columns or []))
    console.print(table)


def _load_candidate(path: Path) -> Candidate:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise typer.BadParameter(f"Cannot read candidate JSON: {exc}") from exc
    if not isinstance(raw, dict) or not raw.get("content") or not raw.get("url"):
        raise typer.BadParameter("Candidate JSON needs at least 'content' and 'url'")
    published = raw.get("published_at")
    try:
        published_at = datetime.fromisoformat(published) if published else None
    except ValueError as exc:
        raise typer.BadParameter(f"Invalid published_at: {published!r}") from exc
    return Candidate(
        title=str(raw.get("title", "")),
        content=str(raw["content"]),
        url=str(raw["url"]),
        source_type=str(raw.get("source_type", "other")),
        source_outlet=raw.get("source_outlet"),
        published_at=published_at,
        estimated_reach=raw.get("estimated_reach"),
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command("init-db")
def init_db_command(ctx: typer.Context) -> None:
    """Create the database tables."""
    settings = get_settings()
    init_db(settings.database_path)
    _emit(ctx, "Database", {"database_path": str(settings.database_path)})


@app.command("serve")
def serve_command(
    host: str | None = typer.Option(None, help="Bind address."),
    port: int | None = typer.Option(None, help="Port."),
) -> None:
    """Run the HTTP API."""
    import uvicorn
    settings = get_settings()
    uvicorn.run("resonance.app:app", host=host or settings.host, port=port or settings.port)


@app.command("check")
def check_command(
    ctx: typer.Context,
    organization_id: str = typer.Option(..., "--org", help="Organization ID."),
    candidate_file: Path = typer.Argument(..., help="JSON file with title, content, url, source_type, ..."),
) -> None:
    """Attribute one candidate content item."""
    candidate = _load_candidate(candidate_file)
    init_db()
    with session_scope() as session:
        result = asyncio.run(services.check_attribution(session, organization_id, candidate))
    payload = {"match": result["match"], "reason": result.get("reason")}
    if result.get("attribution"):
        a = result["attribution"]
        payload.update({
            "attribution_id": a["id"], "fingerprint_id": a["fingerprint_id"],
            "campaign_id": a["campaign_id"], "match_type": a["match_type"],
            "confidence": a["confidence_score"], "created": result.get("created"),
        })
    if result.get("error"):
        payload["error"] = result["error"]
    _emit(ctx, "Attribution", payload)
    if result.get("reason") == "error":
        raise typer.Exit(code=1)


@app.command("record-outcome")
def record_outcome_command(
    ctx: typer.Context,
    organization_id: str = typer.Option(..., "--org", help="Organization ID."),
    campaign_id: str | None = typer.Option(None, "--campaign", help="Campaign ID scope."),
    strategy_id: str | None = typer.Option(None, "--strategy", help="Strategy ID scope."),
    content_id: str | None = typer.Option(None, "--content", help="Content ID scope."),
) -> None:
    """Aggregate attributions into a strategy outcome."""
    scope = OutcomeScope(campaign_id=campaign_id, strategy_id=strategy_id, content_id=content_id)
    if not scope.strategy_key:
        raise typer.BadParameter("Provide one of --campaign, --strategy or --content")
    init_db()
    with session_scope() as session:
        result = asyncio.run(services.run_outcome_recording(session, organization_id, scope))
    if not result["success"]:
        _emit(ctx, "Outcome", result)
        raise typer.Exit(code=1)
    outcome = result["outcome"]
    _emit(ctx, "Outcome", {
        "strategy_id": outcome["strategy_id"],
        "outcome_type": result["outcomeType"],
        "effectiveness_score": result["effectivenessScore"],
        "coverage": outcome["total_coverage"],
        "reach": outcome["total_reach"],
        "avg_confidence": outcome["avg_confidence"],
        "learnings": result["learnings"],
    })


@app.command("embed-fingerprints")
def embed_fingerprints_command(
    ctx: typer.Context,
    organization_id: str = typer.Option(..., "--org", help="Organization ID."),
) -> None:
    """Compute embeddings for active fingerprints that have none."""
    init_db()
    with session_scope() as session:
        with console.status("[bold cyan]Embedding fingerprints[/bold cyan]", spinner="dots"):
            count = asyncio.run(services.embed_missing_fingerprints(session, organization_id, StaticEmbedder()))
        session.commit()
    _emit(ctx, "Embeddings", {"embedded": count})


@app.command("recommend")
def recommend_command(
    ctx: typer.Context,
    organization_id: str = typer.Option(..., "--org", help="Organization ID."),
    from_strategy_id: str | None = typer.Option(None, "--from", help="Follow waypoints from this strategy."),
    limit: int = typer.Option(10, help="Max results."),
) -> None:
    """Rank strategies that worked."""
    init_db()
    with session_scope() as session:
        rows = recommend_strategies(session, organization_id, from_strategy_id, limit)
    _emit(
        ctx, "Recommendations", rows,
        columns=["strategy_id", "score", "effectiveness_score", "salience", "link_weight"],
    )


@app.command("stats")
def stats_command(
    ctx: typer.Context,
    organization_id: str = typer.Option(..., "--org", help="Organization ID."),
) -> None:
    """Show counts for an organization."""
    init_db()
    with session_scope() as session:
        payload = services.compute_stats(session, organization_id)
    _emit(ctx, "Stats", payload)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
