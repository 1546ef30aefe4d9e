"""Matching cascade: attribute one candidate content item to at most one fingerprint.

Architecture
------------
Three matchers run in a fixed order, cheapest and most precise first. Each
stage only runs when the previous one found nothing:

- **Exact phrase**: at least two of a fingerprint's key phrases appear
  verbatim (case-insensitive) in the candidate text. Confidence 0.95.
- **Semantic**: cosine similarity between the candidate embedding and the
  stored fingerprint embeddings (threshold 0.75, top 3). The best hit is
  accepted only when the candidate was published within 30 days of the
  fingerprint's export; confidence is the similarity.
- **Contextual**: an LLM classifier judges up to five fingerprints in load
  order. Calls run concurrently but the first fingerprint *in load order*
  judged a match (`is_match`) with confidence above 0.65 wins.

Embedding and classifier failures degrade their stage to "no result". Only
the fingerprint load is allowed to raise.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, Sequence

import numpy as np
from sqlalchemy.orm import Session

from resonance.classifier import ClassifierClient, ClassifierJudgment
from resonance.embedder import EmbeddingClient, MAX_EMBED_CHARS
from resonance.fingerprints import (
    export_time, find_similar_fingerprints, key_phrases, load_active_fingerprints,
)
from resonance.models import Fingerprint
from resonance.utils import as_utc, utc_now

log = logging.getLogger(__name__)

EXACT_PHRASE_CONFIDENCE = 0.95
MIN_PHRASE_HITS = 2
SEMANTIC_THRESHOLD = 0.75
SEMANTIC_TOP_K = 3
SEMANTIC_MAX_AGE_DAYS = 30
CONTEXTUAL_MAX_FINGERPRINTS = 5
CONTEXTUAL_THRESHOLD = 0.65

REASON_NO_ACTIVE = "no_active_fingerprints"
REASON_NO_MATCH = "no_sufficient_match"


@dataclass
class Candidate:
    """One externally observed content item."""
    title: str
    content: str
    url: str
    source_type: str = "other"
    source_outlet: str | None = None
    published_at: datetime | None = None
    estimated_reach: int | None = None

    @property
    def published(self) -> datetime:
        return as_utc(self.published_at) or utc_now()


@dataclass
class MatchResult:
    fingerprint: Fingerprint
    confidence: float
    match_type: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class NoMatch:
    reason: str


class Matcher(Protocol):
    name: str

    async def attempt(self, candidate: Candidate, fingerprints: Sequence[Fingerprint]) -> MatchResult | None: ...


# ---------------------------------------------------------------------------
# Stage 1: exact phrase
# ---------------------------------------------------------------------------


class ExactPhraseMatcher:
    name = "exact_phrase"

    async def attempt(self, candidate: Candidate, fingerprints: Sequence[Fingerprint]) -> MatchResult | None:
        text = candidate.content.lower()
        for fp in fingerprints:
            matched = [p for p in key_phrases(fp) if p.lower() in text]
            if len(matched) >= MIN_PHRASE_HITS:
                return MatchResult(
                    fingerprint=fp,
                    confidence=EXACT_PHRASE_CONFIDENCE,
                    match_type="exact_phrase",
                    details={"matched_phrases": matched, "phrase_hits": len(matched)},
                )
        return None


# ---------------------------------------------------------------------------
# Stage 2: semantic similarity
# ---------------------------------------------------------------------------


class SemanticMatcher:
    name = "semantic"

    def __init__(self, embedder: EmbeddingClient | None, timeout: float = 20.0):
        self.embedder = embedder
        self.timeout = timeout

    async def attempt(self, candidate: Candidate, fingerprints: Sequence[Fingerprint]) -> MatchResult | None:
        if self.embedder is None:
            return None
        try:
            raw = await asyncio.wait_for(
                self.embedder.embed(candidate.content[:MAX_EMBED_CHARS]), timeout=self.timeout,
            )
            vector = np.asarray(raw, dtype=np.float64)
        except Exception as exc:
            log.warning("Embedding gateway unavailable for %s: %s", candidate.url, exc)
            return None
        if vector.ndim != 1 or vector.size == 0 or not np.isfinite(vector).all():
            log.warning("Embedding gateway returned an unusable vector for %s", candidate.url)
            return None

        hits = find_similar_fingerprints(
            list(fingerprints), vector.tolist(), threshold=SEMANTIC_THRESHOLD, top_k=SEMANTIC_TOP_K,
        )
        if not hits:
            return None

        best, similarity = hits[0]
        elapsed_days = (candidate.published - export_time(best)).total_seconds() / 86400
        if elapsed_days > SEMANTIC_MAX_AGE_DAYS:
            log.debug(
                "Rejecting stale semantic match fp=%s (%.1f days after export)", best.id, elapsed_days,
            )
            return None
        return MatchResult(
            fingerprint=best,
            confidence=similarity,
            match_type="semantic",
            details={
                "similarity": similarity,
                "days_since_export": round(elapsed_days, 1),
                "alternatives": [{"fingerprint_id": fp.id, "similarity": s} for fp, s in hits[1:]],
            },
        )


# ---------------------------------------------------------------------------
# Stage 3: contextual classification
# ---------------------------------------------------------------------------


class ContextualMatcher:
    name = "contextual"

    def __init__(self, classifier: ClassifierClient | None, timeout: float = 20.0):
        self.classifier = classifier
        self.timeout = timeout

    async def _judge(self, fp: Fingerprint, candidate: Candidate) -> ClassifierJudgment:
        try:
            return await asyncio.wait_for(self.classifier.classify(fp, candidate), timeout=self.timeout)
        except Exception as exc:
            log.warning("Classifier unavailable for fp=%s: %s", fp.id, exc)
            return ClassifierJudgment()

    async def attempt(self, candidate: Candidate, fingerprints: Sequence[Fingerprint]) -> MatchResult | None:
        if self.classifier is None:
            return None
        batch = list(fingerprints[:CONTEXTUAL_MAX_FINGERPRINTS])
        if not batch:
            return None
        judgments = await asyncio.gather(*(self._judge(fp, candidate) for fp in batch))
        # gather preserves argument order, so this is load order regardless of completion order
        for fp, judgment in zip(batch, judgments):
            if judgment.is_match and judgment.confidence > CONTEXTUAL_THRESHOLD:
                return MatchResult(
                    fingerprint=fp,
                    confidence=judgment.confidence,
                    match_type="contextual",
                    details={
                        "matched_elements": judgment.matched_elements,
                        "reasoning": judgment.reasoning,
                        "is_match": judgment.is_match,
                    },
                )
        return None


# ---------------------------------------------------------------------------
# Cascade
# ---------------------------------------------------------------------------


class MatchingCascade:
    """Ordered list of matchers evaluated with short-circuit on the first hit."""

    def __init__(
        self,
        embedder: EmbeddingClient | None = None,
        classifier: ClassifierClient | None = None,
        *,
        timeout: float = 20.0,
        matchers: list[Matcher] | None = None,
    ):
        self.matchers: list[Matcher] = matchers if matchers is not None else [
            ExactPhraseMatcher(),
            SemanticMatcher(embedder, timeout=timeout),
            ContextualMatcher(classifier, timeout=timeout),
        ]

    async def match(
        self, session: Session, organization_id: str, candidate: Candidate,
        now: datetime | None = None,
    ) -> MatchResult | NoMatch:
        fingerprints = load_active_fingerprints(session, organization_id, now=now)
        if not fingerprints:
            return NoMatch(REASON_NO_ACTIVE)
        return await self.run(candidate, fingerprints)

    async def run(self, candidate: Candidate, fingerprints: Sequence[Fingerprint]) -> MatchResult | NoMatch:
        for matcher in self.matchers:
            result = await matcher.attempt(candidate, fingerprints)
            if result is not None:
                log.info(
                    "Matched %s to fingerprint %s via %s (%.2f)",
                    candidate.url, result.fingerprint.id, result.match_type, result.confidence,
                )
                return result
            log.debug("No %s match for %s", matcher.name, candidate.url)
        return NoMatch(REASON_NO_MATCH)
