import math

import pytest

from app.errors import ConfigurationError, InvalidInput
from app.ranking.scoring import CandidateSignals, ScoringWeights, order_scored, rank_candidates
from app.ranking.vector_math import cosine_similarity, diversity_penalty

from conftest import USER_ALICE, make_item, nudge, unit


def _signals(item, similarity=0.5, engagement=0.0, temporal=1.0, privacy=1.0,
             novelty=1.0, seen=1.0, vector=None):
    return CandidateSignals(
        item=item,
        similarity=similarity,
        engagement=engagement,
        temporal=temporal,
        privacy=privacy,
        topic_novelty=novelty,
        seen_multiplier=seen,
        content_type="text",
        vector=vector,
    )


# ─────────────────────── Weights ──────────────────────────────────────────

def test_default_weights_sum_to_one():
    assert ScoringWeights().total == pytest.approx(1.0)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"similarity": -0.1},
        {"temporal": float("inf")},
        {"privacy": "high"},
        {"diversity": True},
        {"similarity": 0, "temporal": 0, "diversity": 0, "engagement": 0, "privacy": 0},
    ],
)
def test_invalid_weights_are_rejected(kwargs):
    with pytest.raises(ConfigurationError):
        ScoringWeights(**kwargs)


def test_from_mapping_requires_exactly_five_fields():
    ok = ScoringWeights.from_mapping(
        {"similarity": 1, "temporal": 1, "diversity": 1, "engagement": 1, "privacy": 1}
    )
    assert ok.total == 5
    with pytest.raises(ConfigurationError):
        ScoringWeights.from_mapping({"similarity": 1})
    with pytest.raises(ConfigurationError):
        ScoringWeights.from_mapping(
            {"similarity": 1, "temporal": 1, "diversity": 1, "engagement": 1,
             "privacy": 1, "recency": 1}
        )


def test_overrides_replace_only_given_fields_and_raise_invalid_input():
    weights = ScoringWeights().with_overrides({"similarity": 0.9, "privacy": None})
    assert weights.similarity == 0.9
    assert weights.privacy == 0.1
    with pytest.raises(InvalidInput):
        ScoringWeights().with_overrides({"temporal": -1})


# ─────────────────────── Ranking ──────────────────────────────────────────

def test_final_score_formula():
    weights = ScoringWeights()
    s = _signals(make_item(1, USER_ALICE), similarity=0.8, engagement=0.5,
                 temporal=0.6, privacy=1.0, novelty=1.0, seen=0.5)
    [scored] = rank_candidates([s], weights, 0.7)
    expected = (0.8 * 0.3 + 0.6 * 0.2 + 1.0 * 0.2 + 0.5 * 0.2 + 1.0 * 0.1) / 1.0 * 0.5
    assert scored.final == pytest.approx(expected)
    assert scored.diversity == 1.0


def test_negative_similarity_is_clamped():
    weights = ScoringWeights(similarity=1, temporal=0, diversity=0, engagement=0, privacy=0)
    [scored] = rank_candidates([_signals(make_item(1, USER_ALICE), similarity=-0.4)], weights, 0.7)
    assert scored.final == 0.0
    assert scored.similarity == -0.4


def test_equal_scores_break_by_newer_creation_time_then_id():
    older = make_item(1, USER_ALICE, hours_old=5)
    newer = make_item(2, USER_ALICE, hours_old=1)
    twin = make_item(3, USER_ALICE, hours_old=1)
    weights = ScoringWeights(similarity=1, temporal=0, diversity=0, engagement=0, privacy=0)
    ranked = rank_candidates(
        [_signals(older), _signals(twin), _signals(newer)], weights, 0.7
    )
    assert [r.content_id for r in ranked] == [newer.content_id, twin.content_id, older.content_id]


def test_near_duplicates_are_penalized_after_the_first_placement():
    base = unit(11)
    first = _signals(make_item(1, USER_ALICE), similarity=0.9, vector=base)
    dup = _signals(make_item(2, USER_ALICE), similarity=0.85, vector=nudge(base, 0.05, 12))
    other = _signals(make_item(3, USER_ALICE), similarity=0.8, vector=unit(13))
    ranked = rank_candidates([dup, other, first], ScoringWeights(), 0.7)

    assert [r.content_id for r in ranked] == [
        first.item.content_id, other.item.content_id, dup.item.content_id
    ]
    assert ranked[0].diversity == 1.0
    assert ranked[2].diversity == pytest.approx(1 / 1.5)


def test_topic_novelty_scales_diversity():
    [scored] = rank_candidates([_signals(make_item(1, USER_ALICE), novelty=0.5)], ScoringWeights(), 0.7)
    assert scored.diversity == pytest.approx(0.5)


def test_seen_posts_are_down_weighted_not_removed():
    fresh = _signals(make_item(1, USER_ALICE), similarity=0.5)
    seen = _signals(make_item(2, USER_ALICE), similarity=0.9, seen=0.1)
    ranked = rank_candidates([seen, fresh], ScoringWeights(), 0.7)
    assert [r.content_id for r in ranked] == [fresh.item.content_id, seen.item.content_id]


def test_ranking_is_non_increasing_and_matches_order_scored():
    signals = [
        _signals(make_item(i, USER_ALICE, hours_old=i), similarity=(i % 7) / 7,
                 engagement=(i % 3) / 3, vector=unit(100 + i % 4))
        for i in range(1, 30)
    ]
    ranked = rank_candidates(signals, ScoringWeights(), 0.7)
    finals = [r.final for r in ranked]
    assert all(a >= b for a, b in zip(finals, finals[1:]))
    assert [r.content_id for r in order_scored(ranked)] == [r.content_id for r in ranked]
    assert all(math.isfinite(f) for f in finals)


def test_empty_input():
    assert rank_candidates([], ScoringWeights(), 0.7) == []


def test_engine_diversity_agrees_with_kernel_penalty():
    base = unit(51)
    vectors = [base] + [nudge(base, 0.15 * k, 60 + k) for k in range(1, 8)]
    signals = [
        _signals(make_item(i, USER_ALICE, hours_old=i), similarity=1.0 - 0.05 * i, vector=v)
        for i, v in enumerate(vectors, start=1)
    ]
    # Threshold sits exactly on one pair's similarity: that pair must not match
    threshold = cosine_similarity(vectors[0], vectors[3])

    ranked = rank_candidates(signals, ScoringWeights(), threshold)

    by_id = {s.item.content_id: s.vector for s in signals}
    placed = []
    for scored in ranked:
        vector = by_id[scored.content_id]
        assert scored.diversity == diversity_penalty(vector, placed, threshold)
        placed.append(vector)
