"""Contextual classifier gateway: LLM judgment of whether a candidate reflects a campaign."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from resonance.fingerprints import expected_channels, export_time, key_phrases, unique_angles
from resonance.llm import LLMClient
from resonance.models import Fingerprint

if TYPE_CHECKING:
    from resonance.matching import Candidate

log = logging.getLogger(__name__)

EXCERPT_CHARS = 1500

CLASSIFIER_SYSTEM_PROMPT = """\
You are an attribution analyst for a communications team. You are given the \
narrative context of one seeded campaign asset and an excerpt of content that \
was published externally.

Decide whether the external content was plausibly influenced by the campaign \
asset: does it carry the asset's framing, claims, data points, or angle, \
rather than merely covering the same topic?

Be strict. Topical overlap alone is not a match. Coverage that reuses the \
angle, a distinctive claim, or a quoted spokesperson is.

Respond with ONLY valid JSON:
{
  "is_match": <true|false>,
  "confidence": <float 0.0-1.0>,
  "reasoning": "<1-2 sentences>",
  "matched_elements": ["<element of the campaign found in the content>"]
}
"""


@dataclass
class ClassifierJudgment:
    is_match: bool = False
    confidence: float = 0.0
    reasoning: str = ""
    matched_elements: list[str] = field(default_factory=list)


class ClassifierClient(Protocol):
    async def classify(self, fingerprint: Fingerprint, candidate: Candidate) -> ClassifierJudgment: ...


def parse_judgment(raw: Any) -> ClassifierJudgment:
    """Normalize a raw classifier payload. Anything malformed is a 0-confidence non-match."""
    if not isinstance(raw, dict):
        return ClassifierJudgment()
    try:
        confidence = float(raw.get("confidence", 0.0))
    except (TypeError, ValueError):
        return ClassifierJudgment()
    confidence = max(0.0, min(1.0, confidence))
    elements = raw.get("matched_elements", [])
    if not isinstance(elements, list):
        elements = []
    return ClassifierJudgment(
        is_match=bool(raw.get("is_match", False)),
        confidence=confidence,
        reasoning=str(raw.get("reasoning", "")),
        matched_elements=[str(e) for e in elements[:10]],
    )


def build_classifier_dossier(fp: Fingerprint, candidate: Candidate) -> str:
    """Assemble campaign context and candidate excerpt for a classifier call."""
    sections = [
        "--- CAMPAIGN ASSET ---",
        f"CONTENT TYPE: {fp.content_type}",
        f"EXPORTED: {export_time(fp).strftime('%Y-%m-%d')}",
    ]
    angles = unique_angles(fp)
    if angles:
        sections.append("UNIQUE ANGLES: " + "; ".join(angles))
    phrases = key_phrases(fp)
    if phrases:
        sections.append("KEY PHRASES: " + "; ".join(phrases))
    channels = expected_channels(fp)
    if channels:
        sections.append("EXPECTED CHANNELS: " + ", ".join(channels))

    sections.append("\n--- EXTERNAL CONTENT ---")
    sections.append(f"TITLE: {candidate.title}")
    source = candidate.source_outlet or candidate.source_type
    if source:
        sections.append(f"SOURCE: {source}")
    if candidate.published_at:
        sections.append(f"PUBLISHED: {candidate.published_at.strftime('%Y-%m-%d')}")
    sections.append(f"EXCERPT: {candidate.content[:EXCERPT_CHARS]}")
    return "\n".join(sections)


class LLMClassifier:
    """Classifier gateway backed by :class:`LLMClient`."""

    def __init__(self, client: LLMClient | None = None):
        self._client = client

    @property
    def client(self) -> LLMClient:
        if self._client is None:
            self._client = LLMClient()
        return self._client

    async def classify(self, fingerprint: Fingerprint, candidate: Candidate) -> ClassifierJudgment:
        raw = await self.client.call(
            CLASSIFIER_SYSTEM_PROMPT, build_classifier_dossier(fingerprint, candidate), max_tokens=512,
        )
        return parse_judgment(raw)
