"""Outcome aggregation: turn a strategy's attributions into a scored verdict.

The snapshot is fully recomputed from the attribution rows on every call.

- ``outcome_type``: first matching rule: success (coverage >= 10 and average
  confidence > 0.8), partial (coverage >= 5), minimal (coverage >= 1), failed.
- ``effectiveness_score``: 0-5: coverage and reach contribute up to 2 points
  each (saturating at 10 pieces and 1M reach), average confidence up to 1.
- ``key_learnings``: 3-5 strings from the text-generation gateway, or a
  single fallback string when it fails.
"""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from resonance.fingerprints import key_phrases, unique_angles
from resonance.llm import LLMClient
from resonance.models import Attribution, Fingerprint, StrategyEmbedding, StrategyOutcome
from resonance.utils import to_json

log = logging.getLogger(__name__)

SUCCESS_MIN_COVERAGE = 10
SUCCESS_MIN_CONFIDENCE = 0.8
PARTIAL_MIN_COVERAGE = 5
COVERAGE_SATURATION = 10
REACH_SATURATION = 1_000_000
MAX_EFFECTIVENESS = 5.0
TOP_OUTLETS = 5
MAX_LEARNINGS = 5


@dataclass
class OutcomeScope:
    campaign_id: str | None = None
    strategy_id: str | None = None
    content_id: str | None = None

    @property
    def strategy_key(self) -> str | None:
        return self.strategy_id or self.campaign_id or self.content_id

    def as_dict(self) -> dict[str, str]:
        return {k: v for k, v in asdict(self).items() if v}


@dataclass
class OutcomeStats:
    coverage: int = 0
    reach: int = 0
    avg_confidence: float = 0.0
    sentiment: dict[str, int] = field(default_factory=dict)
    top_outlets: list[str] = field(default_factory=list)

    @property
    def positive_rate(self) -> float:
        if not self.coverage:
            return 0.0
        return self.sentiment.get("positive", 0) / self.coverage


# ---------------------------------------------------------------------------
# Pure computations
# ---------------------------------------------------------------------------


def compute_statistics(attributions: list[Attribution]) -> OutcomeStats:
    coverage = len(attributions)
    reach = sum(a.estimated_reach or 0 for a in attributions)
    avg_confidence = sum(a.confidence_score for a in attributions) / coverage if coverage else 0.0
    sentiment = Counter((a.sentiment or "").lower() for a in attributions if a.sentiment)
    # most_common keeps first-seen order among equal counts
    outlets = Counter(a.source_outlet for a in attributions if a.source_outlet)
    return OutcomeStats(
        coverage=coverage,
        reach=reach,
        avg_confidence=avg_confidence,
        sentiment=dict(sentiment),
        top_outlets=[name for name, _ in outlets.most_common(TOP_OUTLETS)],
    )


def classify_outcome(coverage: int, avg_confidence: float) -> str:
    if coverage >= SUCCESS_MIN_COVERAGE and avg_confidence > SUCCESS_MIN_CONFIDENCE:
        return "success"
    if coverage >= PARTIAL_MIN_COVERAGE:
        return "partial"
    if coverage >= 1:
        return "minimal"
    return "failed"


def effectiveness_score(coverage: int, reach: int, avg_confidence: float) -> float:
    coverage_component = min(max(coverage, 0) / COVERAGE_SATURATION, 1.0) * 2
    reach_component = min(max(reach, 0) / REACH_SATURATION, 1.0) * 2
    confidence_component = max(avg_confidence, 0.0) * 1
    return min(coverage_component + reach_component + confidence_component, MAX_EFFECTIVENESS)


def failure_factors(stats: OutcomeStats) -> dict[str, bool]:
    return {
        "low_coverage": stats.coverage < 3,
        "low_confidence_matches": stats.avg_confidence < 0.7,
        "negative_sentiment": stats.sentiment.get("negative", 0) > stats.sentiment.get("positive", 0),
    }


def success_factors(stats: OutcomeStats) -> dict[str, Any]:
    return {
        "coverage_count": stats.coverage,
        "reach": stats.reach,
        "avg_confidence": stats.avg_confidence,
        "top_outlets": stats.top_outlets,
        "positive_sentiment_rate": stats.positive_rate,
    }


# ---------------------------------------------------------------------------
# Data access
# ---------------------------------------------------------------------------


def scoped_attributions(session: Session, organization_id: str, scope: OutcomeScope) -> list[Attribution]:
    """All attributions for the organization matching every given scope filter, in id order."""
    query = select(Attribution).where(Attribution.organization_id == organization_id)
    if scope.campaign_id:
        query = query.where(Attribution.campaign_id == scope.campaign_id)
    if scope.content_id or scope.strategy_id:
        query = query.join(Fingerprint, Attribution.fingerprint_id == Fingerprint.id)
    if scope.content_id:
        query = query.where(Fingerprint.content_id == scope.content_id)
    if scope.strategy_id:
        query = query.where(or_(
            Attribution.campaign_id == scope.strategy_id,
            Fingerprint.content_id == scope.strategy_id,
        ))
    return list(session.execute(query.order_by(Attribution.id)).scalars().all())


def strategy_metadata(session: Session, organization_id: str, scope: OutcomeScope) -> dict[str, Any] | None:
    """Campaign context for the learnings prompt, or None when nothing is known."""
    query = select(Fingerprint).where(Fingerprint.organization_id == organization_id)
    key = scope.strategy_key
    if scope.campaign_id:
        query = query.where(Fingerprint.campaign_id == scope.campaign_id)
    elif scope.content_id:
        query = query.where(Fingerprint.content_id == scope.content_id)
    elif key:
        query = query.where(or_(Fingerprint.campaign_id == key, Fingerprint.content_id == key))
    fingerprints = session.execute(query.order_by(Fingerprint.id)).scalars().all()

    meta: dict[str, Any] = {}
    if fingerprints:
        meta["content_types"] = sorted({fp.content_type for fp in fingerprints})
        meta["unique_angles"] = [a for fp in fingerprints for a in unique_angles(fp)][:10]
        meta["key_phrases"] = [p for fp in fingerprints for p in key_phrases(fp)][:10]
    if key:
        emb = session.execute(
            select(StrategyEmbedding).where(
                StrategyEmbedding.organization_id == organization_id,
                StrategyEmbedding.strategy_id == key,
            )
        ).scalars().first()
        if emb is not None and emb.content_summary:
            meta["summary"] = emb.content_summary
    return meta or None


# ---------------------------------------------------------------------------
# Key learnings
# ---------------------------------------------------------------------------


LEARNINGS_SYSTEM_PROMPT = """\
You are a communications strategist reviewing how a PR campaign performed. \
You are given measured coverage statistics and, when available, the campaign's \
framing.

Write 3 to 5 short, concrete learnings a planner should carry into the next \
campaign. Each learning is one sentence. Refer to the numbers and outlets where \
they explain the result; do not restate the statistics.

Respond with ONLY valid JSON:
{
  "learnings": ["<learning 1>", "<learning 2>", "<learning 3>"]
}
"""


class TextGenClient(Protocol):
    async def summarize(self, stats: dict[str, Any], metadata: dict[str, Any] | None) -> list[str]: ...


def build_learnings_brief(stats: dict[str, Any], metadata: dict[str, Any] | None) -> str:
    lines = [
        f"OUTCOME: {stats['outcome_type']}",
        f"EFFECTIVENESS: {stats['effectiveness_score']:.2f} / 5",
        f"COVERAGE: {stats['coverage']} pieces",
        f"ESTIMATED REACH: {stats['reach']:,}",
        f"AVERAGE MATCH CONFIDENCE: {stats['avg_confidence']:.2f}",
    ]
    if stats.get("top_outlets"):
        lines.append("TOP OUTLETS: " + ", ".join(stats["top_outlets"]))
    if stats.get("sentiment"):
        lines.append("SENTIMENT: " + ", ".join(f"{k}={v}" for k, v in stats["sentiment"].items()))
    flags = [k for k, v in stats.get("failure_factors", {}).items() if v]
    if flags:
        lines.append("WARNING SIGNS: " + ", ".join(flags))
    if metadata:
        lines.append("\n--- STRATEGY ---")
        if metadata.get("summary"):
            lines.append(f"SUMMARY: {metadata['summary']}")
        if metadata.get("content_types"):
            lines.append("CONTENT TYPES: " + ", ".join(metadata["content_types"]))
        if metadata.get("unique_angles"):
            lines.append("ANGLES: " + "; ".join(metadata["unique_angles"]))
        if metadata.get("key_phrases"):
            lines.append("KEY PHRASES: " + "; ".join(metadata["key_phrases"]))
    return "\n".join(lines)


class LLMLearningsWriter:
    """Text-generation gateway for key learnings, backed by :class:`LLMClient`."""

    def __init__(self, client: LLMClient | None = None):
        self._client = client

    @property
    def client(self) -> LLMClient:
        if self._client is None:
            self._client = LLMClient()
        return self._client

    async def summarize(self, stats: dict[str, Any], metadata: dict[str, Any] | None) -> list[str]:
        raw = await self.client.call(LEARNINGS_SYSTEM_PROMPT, build_learnings_brief(stats, metadata))
        learnings = raw.get("learnings", [])
        if not isinstance(learnings, list):
            return []
        return [str(item).strip() for item in learnings if str(item).strip()]


def fallback_learning(outcome_type: str, stats: OutcomeStats) -> str:
    return (
        f"Campaign recorded a {outcome_type} outcome with {stats.coverage} attributed "
        f"pieces and an estimated reach of {stats.reach:,}."
    )


async def generate_learnings(
    writer: TextGenClient | None,
    stats: dict[str, Any],
    metadata: dict[str, Any] | None,
    fallback: str,
) -> list[str]:
    """Ask the gateway for learnings. Never raises; falls back to ``[fallback]``."""
    if writer is None:
        return [fallback]
    try:
        learnings = await writer.summarize(stats, metadata)
    except Exception as exc:
        log.warning("Learnings generation failed, using fallback: %s", exc)
        return [fallback]
    learnings = [s for s in learnings if isinstance(s, str) and s.strip()][:MAX_LEARNINGS]
    if not learnings:
        log.warning("Learnings generation returned nothing usable, using fallback")
        return [fallback]
    return learnings


# ---------------------------------------------------------------------------
# Record one outcome
# ---------------------------------------------------------------------------


async def compute_outcome(
    session: Session,
    organization_id: str,
    scope: OutcomeScope,
    writer: TextGenClient | None = None,
) -> StrategyOutcome:
    """Aggregate all in-scope attributions into an unsaved StrategyOutcome."""
    key = scope.strategy_key
    if not key:
        raise ValueError("One of campaign_id, strategy_id or content_id is required")

    stats = compute_statistics(scoped_attributions(session, organization_id, scope))
    outcome_type = classify_outcome(stats.coverage, stats.avg_confidence)
    score = effectiveness_score(stats.coverage, stats.reach, stats.avg_confidence)
    failures = failure_factors(stats)
    successes = success_factors(stats)

    brief = {
        "outcome_type": outcome_type,
        "effectiveness_score": score,
        "coverage": stats.coverage,
        "reach": stats.reach,
        "avg_confidence": stats.avg_confidence,
        "top_outlets": stats.top_outlets,
        "sentiment": stats.sentiment,
        "failure_factors": failures,
    }
    metadata = strategy_metadata(session, organization_id, scope)
    learnings = await generate_learnings(writer, brief, metadata, fallback_learning(outcome_type, stats))

    return StrategyOutcome(
        organization_id=organization_id,
        strategy_id=key,
        outcome_type=outcome_type,
        effectiveness_score=score,
        key_learnings_json=to_json(learnings),
        success_factors_json=to_json(successes),
        failure_factors_json=to_json(failures),
        sentiment_json=to_json(stats.sentiment),
        scope_json=to_json(scope.as_dict()),
        total_coverage=stats.coverage,
        total_reach=stats.reach,
        avg_confidence=stats.avg_confidence,
    )


async def record_outcome(
    session: Session,
    organization_id: str,
    scope: OutcomeScope,
    writer: TextGenClient | None = None,
) -> StrategyOutcome:
    """Compute and persist a StrategyOutcome snapshot (caller must commit)."""
    outcome = await compute_outcome(session, organization_id, scope, writer)
    session.add(outcome)
    session.flush()
    log.info(
        "Outcome %s for strategy %s: %s (%.2f, coverage=%d)",
        outcome.id, outcome.strategy_id, outcome.outcome_type,
        outcome.effectiveness_score, outcome.total_coverage,
    )
    return outcome
