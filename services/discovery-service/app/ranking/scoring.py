"""
Scoring engine — blends five signals into one ordinal score per candidate.

  final = (similarity·w_sim + temporal·w_time + diversity·w_div
           + engagement·w_eng + privacy·w_priv) / Σw
  final *= seen_multiplier

Diversity is order-dependent (only items presented earlier count), so the
ranking is built greedily: each step places the remaining candidate with the
best final score, then raises the match counts of every candidate that is a
near-duplicate of it. Match counts only grow, so the resulting list is
non-increasing in final score and equals a plain sort by
(final desc, created_at desc, id asc).
"""
import logging
from dataclasses import dataclass, fields, replace
from typing import Mapping, Optional, Sequence

import numpy as np

from app.domain import ContentItem, ScoredCandidate
from app.errors import ConfigurationError, InvalidInput
from app.ranking.vector_math import DIVERSITY_MATCH_PENALTY, batch_similarity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScoringWeights:
    """Five named, non-negative weights; the engine divides by their sum."""
    similarity: float = 0.3
    temporal: float = 0.2
    diversity: float = 0.2
    engagement: float = 0.2
    privacy: float = 0.1

    def __post_init__(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigurationError(f"weight '{f.name}' must be a number, got {value!r}")
            if not np.isfinite(value) or value < 0:
                raise ConfigurationError(f"weight '{f.name}' must be finite and >= 0, got {value}")
        if self.total <= 0:
            raise ConfigurationError("at least one scoring weight must be positive")

    @property
    def total(self) -> float:
        return self.similarity + self.temporal + self.diversity + self.engagement + self.privacy

    @classmethod
    def from_mapping(cls, data: Mapping[str, float]) -> "ScoringWeights":
        """Strict constructor: all five fields, nothing else."""
        names = {f.name for f in fields(cls)}
        missing = names - set(data)
        unknown = set(data) - names
        if missing or unknown:
            raise ConfigurationError(
                f"weights need exactly {sorted(names)} "
                f"(missing={sorted(missing)}, unknown={sorted(unknown)})"
            )
        return cls(**{name: data[name] for name in names})

    def with_overrides(self, overrides: Mapping[str, Optional[float]]) -> "ScoringWeights":
        """Per-request override; raises InvalidInput rather than ConfigurationError."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        if not changes:
            return self
        try:
            return replace(self, **changes)
        except (ConfigurationError, TypeError) as exc:
            raise InvalidInput(f"invalid weight override: {exc}") from exc


@dataclass(frozen=True)
class CandidateSignals:
    """Everything the engine needs for one candidate, before diversity."""
    item: ContentItem
    similarity: float
    engagement: float
    temporal: float
    privacy: float
    topic_novelty: float
    seen_multiplier: float
    content_type: str
    vector: Optional[np.ndarray] = None


def _tie_break_key(item: ContentItem) -> tuple:
    return (-item.created_at.timestamp(), item.content_id)


def rank_candidates(
    signals: Sequence[CandidateSignals],
    weights: ScoringWeights,
    diversity_threshold: float,
) -> list[ScoredCandidate]:
    """Score and order candidates; see the module docstring for the algorithm."""
    n = len(signals)
    if n == 0:
        return []

    total = weights.total
    partial = np.array(
        [
            max(0.0, s.similarity) * weights.similarity
            + s.temporal * weights.temporal
            + s.engagement * weights.engagement
            + s.privacy * weights.privacy
            for s in signals
        ],
        dtype=np.float64,
    )
    novelty = np.array([s.topic_novelty for s in signals], dtype=np.float64)
    seen = np.array([s.seen_multiplier for s in signals], dtype=np.float64)

    # Candidates without an embedding get a zero row and never match anything
    vectors = np.zeros((n, _dim(signals)), dtype=np.float32)
    has_vector = np.zeros(n, dtype=bool)
    for i, s in enumerate(signals):
        if s.vector is not None:
            vectors[i] = s.vector
            has_vector[i] = True

    matches = np.zeros(n, dtype=np.float64)
    remaining = np.ones(n, dtype=bool)
    ranked: list[ScoredCandidate] = []

    for _ in range(n):
        diversity = novelty / (1.0 + matches * DIVERSITY_MATCH_PENALTY)
        final = (partial + diversity * weights.diversity) / total * seen
        masked = np.where(remaining, final, -np.inf)
        best_score = masked.max()
        tied = np.flatnonzero(masked == best_score)
        chosen = min(tied, key=lambda i: _tie_break_key(signals[i].item))

        s = signals[chosen]
        ranked.append(
            ScoredCandidate(
                item=s.item,
                similarity=s.similarity,
                engagement=s.engagement,
                temporal=s.temporal,
                diversity=float(diversity[chosen]),
                privacy=s.privacy,
                seen_multiplier=s.seen_multiplier,
                final=float(final[chosen]),
                content_type=s.content_type,
            )
        )
        remaining[chosen] = False
        if s.vector is not None:
            # Same comparison diversity_penalty makes against preceding items
            open_rows = np.flatnonzero(remaining & has_vector)
            if open_rows.size:
                scores = batch_similarity(s.vector, vectors[open_rows])
                matches[open_rows] += scores > diversity_threshold

    return ranked


def _dim(signals: Sequence[CandidateSignals]) -> int:
    for s in signals:
        if s.vector is not None:
            return int(s.vector.shape[0])
    return 0


def order_scored(scored: Sequence[ScoredCandidate]) -> list[ScoredCandidate]:
    """Descending final score; ties by newest creation time, then id."""
    return sorted(scored, key=ScoredCandidate.sort_key)
