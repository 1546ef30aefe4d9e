from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime

from mcp.server.fastmcp import FastMCP

from resonance import services
from resonance.db import init_db, session_scope
from resonance.learning import recommend_strategies as _recommend
from resonance.matching import Candidate
from resonance.outcomes import OutcomeScope

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def resonance_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "Resonance",
    instructions=(
        "Resonance attributes external coverage to seeded campaign content and "
        "remembers which strategies worked. Use check_attribution() for new "
        "articles or posts, record_outcome() when a campaign period ends, and "
        "recommend_strategies() when planning the next campaign."
    ),
    lifespan=resonance_lifespan,
)


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("resonance://overview")
def resonance_overview() -> str:
    """Overview of Resonance: data model, matching cascade, and outcome types."""
    return json.dumps({
        "system": "Resonance: campaign attribution and outcome memory",
        "data_model": {
            "fingerprint": "Descriptor of one piece of seeded campaign content (key phrases, angles, tracking window).",
            "attribution": "Confirmed link between one external content item and one fingerprint. Append-only.",
            "strategy_outcome": "Aggregated verdict and 0-5 effectiveness score for a campaign/strategy.",
            "strategy_waypoint": "Weighted edge from a successful strategy to other successful strategies.",
        },
        "cascade": [
            "exact_phrase: >=2 key phrases verbatim, confidence 0.95",
            "semantic: embedding similarity >= 0.75 within 30 days of export",
            "contextual: LLM judgment with confidence > 0.65 (first 5 fingerprints)",
        ],
        "outcome_types": {
            "success": "coverage >= 10 and average confidence > 0.8",
            "partial": "coverage >= 5",
            "minimal": "coverage >= 1",
            "failed": "no coverage",
        },
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool()
async def check_attribution(
    organization_id: str, content: str, url: str,
    title: str = "", source_type: str = "other", source_outlet: str | None = None,
    published_at: str | None = None, estimated_reach: int | None = None,
) -> dict:
    """Match one piece of external content against the organization's active fingerprints.

    Args:
        organization_id: Organization whose campaigns are searched.
        content: Full text of the article or post.
        url: Canonical URL (the dedup key per fingerprint).
        title: Headline or first line.
        source_type: news, twitter, linkedin, blog, or other.
        source_outlet: Outlet name, e.g. "Reuters".
        published_at: ISO-8601 publication timestamp.
        estimated_reach: Estimated audience size.
    """
    try:
        published = datetime.fromisoformat(published_at) if published_at else None
    except ValueError:
        return {"match": False, "reason": "error", "error": f"Invalid published_at: {published_at!r}"}
    candidate = Candidate(
        title=title, content=content, url=url, source_type=source_type,
        source_outlet=source_outlet, published_at=published, estimated_reach=estimated_reach,
    )
    with session_scope() as session:
        return await services.check_attribution(session, organization_id, candidate)


@mcp.tool()
async def record_outcome(
    organization_id: str, campaign_id: str | None = None,
    strategy_id: str | None = None, content_id: str | None = None,
) -> dict:
    """Aggregate all attributions for a campaign, strategy, or content item into a scored outcome."""
    scope = OutcomeScope(campaign_id=campaign_id, strategy_id=strategy_id, content_id=content_id)
    if not scope.strategy_key:
        return {"success": False, "error": "One of campaign_id, strategy_id or content_id is required"}
    with session_scope() as session:
        return await services.run_outcome_recording(session, organization_id, scope)


@mcp.tool()
def list_attributions(organization_id: str, campaign_id: str | None = None, limit: int = 50) -> list[dict]:
    """List recorded attributions, newest first."""
    with session_scope() as session:
        return services.list_attributions(session, organization_id, campaign_id, max(1, min(limit, 500)))


@mcp.tool()
def recommend_strategies(organization_id: str, from_strategy_id: str | None = None, limit: int = 10) -> list[dict]:
    """Rank strategies that worked for the organization, optionally following one strategy's waypoints."""
    with session_scope() as session:
        return _recommend(session, organization_id, from_strategy_id, max(1, min(limit, 100)))


@mcp.tool()
def get_stats(organization_id: str) -> dict:
    """Counts of fingerprints, attributions, outcomes, and waypoints for an organization."""
    with session_scope() as session:
        return services.compute_stats(session, organization_id)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Resonance MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
