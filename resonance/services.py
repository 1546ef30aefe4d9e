"""Shared business logic for the Resonance API, MCP server and CLI."""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from resonance.classifier import ClassifierClient, LLMClassifier
from resonance.config import get_settings
from resonance.embedder import EmbeddingClient, StaticEmbedder
from resonance.fingerprints import (
    embedding, expected_channels, fingerprint_text, key_phrases, list_fingerprints,
    load_active_fingerprints, unique_angles,
)
from resonance.learning import apply_learning
from resonance.matching import Candidate, MatchingCascade, NoMatch
from resonance.models import (
    Attribution, Fingerprint, StrategyEmbedding, StrategyOutcome, StrategyWaypoint,
)
from resonance.outcomes import LLMLearningsWriter, OutcomeScope, TextGenClient, record_outcome
from resonance.recorder import record_attribution
from resonance.utils import json_parse, to_json

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Gateways
# ---------------------------------------------------------------------------


@dataclass
class Gateways:
    """External collaborators injected into the cascade and aggregator."""
    embedder: EmbeddingClient | None = None
    classifier: ClassifierClient | None = None
    writer: TextGenClient | None = None
    timeout: float = field(default_factory=lambda: get_settings().gateway_timeout_seconds)


def default_gateways() -> Gateways:
    # LLM clients are built on first use, so a missing API key only degrades the stage
    return Gateways(
        embedder=StaticEmbedder(),
        classifier=LLMClassifier(),
        writer=LLMLearningsWriter(),
    )


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def attribution_dict(a: Attribution) -> dict[str, Any]:
    return {
        "id": a.id, "organization_id": a.organization_id,
        "fingerprint_id": a.fingerprint_id, "campaign_id": a.campaign_id,
        "source_type": a.source_type, "source_url": a.source_url,
        "source_outlet": a.source_outlet, "content_title": a.content_title,
        "published_at": _iso(a.published_at),
        "confidence_score": a.confidence_score, "match_type": a.match_type,
        "match_details": json_parse(a.match_details_json, {}),
        "estimated_reach": a.estimated_reach, "sentiment": a.sentiment,
        "created_at": _iso(a.created_at),
    }


def outcome_dict(o: StrategyOutcome) -> dict[str, Any]:
    return {
        "id": o.id, "organization_id": o.organization_id, "strategy_id": o.strategy_id,
        "outcome_type": o.outcome_type, "effectiveness_score": o.effectiveness_score,
        "key_learnings": json_parse(o.key_learnings_json, []),
        "success_factors": json_parse(o.success_factors_json, {}),
        "failure_factors": json_parse(o.failure_factors_json, {}),
        "sentiment": json_parse(o.sentiment_json, {}),
        "scope": json_parse(o.scope_json, {}),
        "total_coverage": o.total_coverage, "total_reach": o.total_reach,
        "avg_confidence": o.avg_confidence,
        "created_at": _iso(o.created_at),
    }


def fingerprint_dict(fp: Fingerprint) -> dict[str, Any]:
    return {
        "id": fp.id, "organization_id": fp.organization_id,
        "campaign_id": fp.campaign_id, "content_id": fp.content_id,
        "key_phrases": key_phrases(fp), "unique_angles": unique_angles(fp),
        "content_type": fp.content_type, "expected_channels": expected_channels(fp),
        "export_status": fp.export_status,
        "exported_at": _iso(fp.exported_at),
        "tracking_window_end": fp.tracking_window_end.isoformat(),
        "has_embedding": embedding(fp) is not None,
    }


def strategy_dict(s: StrategyEmbedding) -> dict[str, Any]:
    return {
        "strategy_id": s.strategy_id, "salience": s.salience,
        "access_count": s.access_count, "last_accessed_at": _iso(s.last_accessed_at),
        "content_summary": s.content_summary,
    }


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


async def check_attribution(
    session: Session, organization_id: str, candidate: Candidate, gateways: Gateways | None = None,
) -> dict[str, Any]:
    """Run the cascade for one candidate and record the match, if any.

    Always returns a ``{match, attribution|reason}`` body; storage failures are
    reported as ``reason="error"``.
    """
    gateways = gateways or default_gateways()
    cascade = MatchingCascade(gateways.embedder, gateways.classifier, timeout=gateways.timeout)
    try:
        result = await cascade.match(session, organization_id, candidate)
        if isinstance(result, NoMatch):
            return {"match": False, "reason": result.reason}
        attribution, created = record_attribution(session, organization_id, result, candidate)
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        log.exception("Attribution check failed for %s", candidate.url)
        return {"match": False, "reason": "error", "error": str(exc)}
    return {"match": True, "attribution": attribution_dict(attribution), "created": created}


async def run_outcome_recording(
    session: Session, organization_id: str, scope: OutcomeScope, gateways: Gateways | None = None,
) -> dict[str, Any]:
    """Aggregate, persist, and (on success) feed the learning graph."""
    gateways = gateways or default_gateways()
    try:
        outcome = await record_outcome(session, organization_id, scope, gateways.writer)
        apply_learning(session, outcome)
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        log.exception("Outcome recording failed for %s", scope.strategy_key)
        return {"success": False, "error": str(exc)}
    return {
        "success": True,
        "outcome": outcome_dict(outcome),
        "outcomeType": outcome.outcome_type,
        "effectivenessScore": outcome.effectiveness_score,
        "learnings": json_parse(outcome.key_learnings_json, []),
    }


async def embed_missing_fingerprints(
    session: Session, organization_id: str, embedder: EmbeddingClient,
) -> int:
    """Compute embeddings for active fingerprints that lack one (caller must commit)."""
    count = 0
    for fp in load_active_fingerprints(session, organization_id):
        if embedding(fp) is not None:
            continue
        text = fingerprint_text(fp)
        if not text:
            continue
        fp.embedding_json = to_json(await embedder.embed(text))
        count += 1
    return count


def list_attributions(
    session: Session, organization_id: str, campaign_id: str | None = None, limit: int = 100,
) -> list[dict]:
    query = select(Attribution).where(Attribution.organization_id == organization_id)
    if campaign_id:
        query = query.where(Attribution.campaign_id == campaign_id)
    rows = session.execute(query.order_by(Attribution.id.desc()).limit(limit)).scalars().all()
    return [attribution_dict(a) for a in rows]


def list_outcomes(
    session: Session, organization_id: str, strategy_id: str | None = None, limit: int = 100,
) -> list[dict]:
    query = select(StrategyOutcome).where(StrategyOutcome.organization_id == organization_id)
    if strategy_id:
        query = query.where(StrategyOutcome.strategy_id == strategy_id)
    rows = session.execute(query.order_by(StrategyOutcome.id.desc()).limit(limit)).scalars().all()
    return [outcome_dict(o) for o in rows]


def compute_stats(session: Session, organization_id: str) -> dict:
    fingerprints = list_fingerprints(session, organization_id)
    active = load_active_fingerprints(session, organization_id)
    match_types = Counter(session.execute(
        select(Attribution.match_type).where(Attribution.organization_id == organization_id)
    ).scalars().all())
    outcome_types = Counter(session.execute(
        select(StrategyOutcome.outcome_type).where(StrategyOutcome.organization_id == organization_id)
    ).scalars().all())
    waypoints = session.execute(
        select(func.count(StrategyWaypoint.id)).where(StrategyWaypoint.organization_id == organization_id)
    ).scalar() or 0
    return {
        "fingerprints": len(fingerprints), "active_fingerprints": len(active),
        "attributions": sum(match_types.values()), "by_match_type": dict(match_types),
        "outcomes": sum(outcome_types.values()), "by_outcome_type": dict(outcome_types),
        "waypoints": waypoints,
    }
