"""Learning graph: salience reinforcement and waypoints between successful strategies."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from resonance.models import (
    LINK_SUCCESSFUL_PATTERN, StrategyEmbedding, StrategyOutcome, StrategyWaypoint,
)
from resonance.utils import as_utc, to_json, utc_now

log = logging.getLogger(__name__)

SALIENCE_BOOST = 1.5
MAX_SALIENCE = 1.0
WAYPOINT_MIN_EFFECTIVENESS = 3.5
MAX_WAYPOINTS = 5
RECENCY_HALF_LIFE_DAYS = 90

# composite ranking weights for recommendations
W_LINK = 0.4
W_SALIENCE = 0.3
W_EFFECTIVENESS = 0.2
W_RECENCY = 0.1


def get_strategy_embedding(session: Session, organization_id: str, strategy_id: str) -> StrategyEmbedding | None:
    return session.execute(
        select(StrategyEmbedding).where(
            StrategyEmbedding.organization_id == organization_id,
            StrategyEmbedding.strategy_id == strategy_id,
        )
    ).scalars().first()


def register_strategy(
    session: Session,
    organization_id: str,
    strategy_id: str,
    *,
    content_summary: str = "",
    embedding: list[float] | None = None,
    baseline_salience: float = 0.5,
) -> StrategyEmbedding:
    """Create or refresh a strategy's retrievable representation (caller must commit).

    Salience is only set on creation; an existing row keeps its salience.
    """
    row = get_strategy_embedding(session, organization_id, strategy_id)
    if row is None:
        row = StrategyEmbedding(
            organization_id=organization_id,
            strategy_id=strategy_id,
            salience=max(0.0, min(MAX_SALIENCE, baseline_salience)),
            access_count=0,
        )
        session.add(row)
    if content_summary:
        row.content_summary = content_summary
    if embedding:
        row.embedding_json = to_json(embedding)
    session.flush()
    return row


# ---------------------------------------------------------------------------
# Step A: salience reinforcement
# ---------------------------------------------------------------------------


def boosted_salience(salience: float) -> float:
    return min(salience * SALIENCE_BOOST, MAX_SALIENCE)


def reinforce_salience(session: Session, organization_id: str, strategy_id: str) -> StrategyEmbedding | None:
    """Boost the strategy's salience if it has an embedding row. Returns the row or None."""
    row = get_strategy_embedding(session, organization_id, strategy_id)
    if row is None:
        log.debug("No strategy embedding for %s; skipping salience boost", strategy_id)
        return None
    row.salience = max(row.salience, boosted_salience(row.salience))
    row.access_count = (row.access_count or 0) + 1
    row.last_accessed_at = utc_now()
    return row


# ---------------------------------------------------------------------------
# Step B: waypoints
# ---------------------------------------------------------------------------


def latest_outcomes(session: Session, organization_id: str) -> dict[str, StrategyOutcome]:
    """Most recent outcome per strategy for the organization."""
    rows = session.execute(
        select(StrategyOutcome)
        .where(StrategyOutcome.organization_id == organization_id)
        .order_by(StrategyOutcome.id.desc())
    ).scalars().all()
    latest: dict[str, StrategyOutcome] = {}
    for row in rows:
        latest.setdefault(row.strategy_id, row)
    return latest


def successful_peers(
    session: Session, organization_id: str, strategy_id: str, limit: int = MAX_WAYPOINTS,
) -> list[StrategyOutcome]:
    """Other strategies whose latest outcome is a strong success, best first."""
    peers = [
        o for sid, o in latest_outcomes(session, organization_id).items()
        if sid != strategy_id
        and o.outcome_type == "success"
        and o.effectiveness_score >= WAYPOINT_MIN_EFFECTIVENESS
    ]
    peers.sort(key=lambda o: o.effectiveness_score, reverse=True)
    return peers[:limit]


def create_waypoints(session: Session, organization_id: str, strategy_id: str) -> list[StrategyWaypoint]:
    """Link *strategy_id* to the organization's strongest other successes (caller must commit)."""
    edges: list[StrategyWaypoint] = []
    for peer in successful_peers(session, organization_id, strategy_id):
        weight = min(peer.effectiveness_score / 5, 1.0)
        edge = session.execute(
            select(StrategyWaypoint).where(
                StrategyWaypoint.organization_id == organization_id,
                StrategyWaypoint.from_strategy_id == strategy_id,
                StrategyWaypoint.to_strategy_id == peer.strategy_id,
                StrategyWaypoint.link_type == LINK_SUCCESSFUL_PATTERN,
            )
        ).scalars().first()
        if edge is None:
            edge = StrategyWaypoint(
                organization_id=organization_id,
                from_strategy_id=strategy_id,
                to_strategy_id=peer.strategy_id,
                link_type=LINK_SUCCESSFUL_PATTERN,
                weight=weight,
            )
            session.add(edge)
        else:
            edge.weight = weight
        edges.append(edge)
    session.flush()
    return edges


@dataclass
class LearningUpdate:
    salience: float | None
    waypoints: list[StrategyWaypoint]


def apply_learning(session: Session, outcome: StrategyOutcome) -> LearningUpdate | None:
    """Reinforce the graph for a just-recorded outcome. No-op unless it is a success."""
    if outcome.outcome_type != "success":
        return None
    row = reinforce_salience(session, outcome.organization_id, outcome.strategy_id)
    edges = create_waypoints(session, outcome.organization_id, outcome.strategy_id)
    log.info(
        "Reinforced strategy %s: salience=%s, %d waypoint(s)",
        outcome.strategy_id, f"{row.salience:.2f}" if row else "n/a", len(edges),
    )
    return LearningUpdate(salience=row.salience if row else None, waypoints=edges)


# ---------------------------------------------------------------------------
# Recommendations ("what worked")
# ---------------------------------------------------------------------------


def recency_score(last_accessed: datetime | None, now: datetime | None = None) -> float:
    if last_accessed is None:
        return 0.1
    now = as_utc(now) or utc_now()
    days = max((now - as_utc(last_accessed)).total_seconds() / 86400, 0.0)
    return max(0.1, min(1.0, math.exp(-days / RECENCY_HALF_LIFE_DAYS)))


def recommend_strategies(
    session: Session,
    organization_id: str,
    from_strategy_id: str | None = None,
    limit: int = 10,
    now: datetime | None = None,
) -> list[dict]:
    """Rank strategies that worked, optionally following waypoints from one strategy.

    Read-only: salience and access counts are not touched.
    """
    latest = latest_outcomes(session, organization_id)
    if from_strategy_id:
        edges = session.execute(
            select(StrategyWaypoint).where(
                StrategyWaypoint.organization_id == organization_id,
                StrategyWaypoint.from_strategy_id == from_strategy_id,
            )
        ).scalars().all()
        links = {e.to_strategy_id: e.weight for e in edges}
    else:
        links = {
            sid: min(o.effectiveness_score / 5, 1.0)
            for sid, o in latest.items() if o.outcome_type == "success"
        }

    embeddings = {
        e.strategy_id: e for e in session.execute(
            select(StrategyEmbedding).where(StrategyEmbedding.organization_id == organization_id)
        ).scalars().all()
    }

    ranked = []
    for sid, link_weight in links.items():
        outcome = latest.get(sid)
        if outcome is None or outcome.outcome_type != "success":
            continue
        emb = embeddings.get(sid)
        salience = emb.salience if emb else 0.0
        recency = recency_score(emb.last_accessed_at if emb else None, now)
        effectiveness = outcome.effectiveness_score
        score = (
            W_LINK * link_weight
            + W_SALIENCE * salience
            + W_EFFECTIVENESS * min(effectiveness / 5, 1.0)
            + W_RECENCY * recency
        )
        ranked.append({
            "strategy_id": sid,
            "score": round(score, 4),
            "link_weight": link_weight,
            "salience": salience,
            "effectiveness_score": effectiveness,
            "recency": round(recency, 4),
            "summary": emb.content_summary if emb else "",
        })
    ranked.sort(key=lambda r: r["score"], reverse=True)
    return ranked[:limit]
