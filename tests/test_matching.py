"""Tests for lead matching"""

import pytest

from homezy.errors import NotFoundError, ValidationFailedError
from homezy.services.matching import (
    TIER_THRESHOLDS,
    MatchCache,
    MatchingService,
    calculate_match,
    match_tier,
)
from homezy.services.questionnaires import QuestionnaireRegistry, get_registry

LEAD_ANSWERS = {"job_type": "leak-repair", "property_type": "apartment", "fixtures": ["sink"]}


@pytest.fixture
def plumbing():
    return get_registry().get("plumbing")


def test_full_match_is_perfect(plumbing):
    pro = {"job_type": ["leak-repair", "installation"], "property_type": ["apartment", "villa"], "fixtures": ["sink"]}

    result = calculate_match(plumbing, LEAD_ANSWERS, pro)

    assert result.match_percentage == 100
    assert result.tier == "perfect"
    assert result.insights.gaps == []
    assert result.insights.strengths == ["What do you need done?", "Which fixtures are involved?", "Property type"]


def test_no_overlap_scores_zero(plumbing):
    pro = {"job_type": ["installation"], "property_type": ["villa"], "fixtures": ["toilet"]}

    result = calculate_match(plumbing, LEAD_ANSWERS, pro)

    assert result.match_percentage == 0
    assert result.tier == "poor"
    assert result.insights.strengths == []


def test_partial_question_uses_overlap(plumbing):
    pro = {"job_type": ["leak-repair"], "property_type": ["apartment"], "fixtures": ["sink", "toilet"]}

    result = calculate_match(plumbing, LEAD_ANSWERS, pro)

    # (1.0 + 0.6 + 0.8 * 1/2) / 2.4
    assert result.match_percentage == 83
    assert result.tier == "excellent"
    fixtures = next(q for q in result.breakdown if q.question_id == "fixtures")
    assert fixtures.score == pytest.approx(0.4)


def test_direct_question_needs_every_requested_value(plumbing):
    lead = {"job_type": ["leak-repair", "installation"]}

    assert calculate_match(plumbing, lead, {"job_type": ["leak-repair"]}).match_percentage == 0
    assert calculate_match(plumbing, lead, {"job_type": ["installation", "leak-repair"]}).match_percentage == 100


def test_unanswered_by_professional_counts_against(plumbing):
    result = calculate_match(plumbing, LEAD_ANSWERS, {"job_type": "leak-repair"})

    # 1.0 / 2.4
    assert result.match_percentage == 42
    assert result.tier == "fair"
    assert [q.answered_by_professional for q in result.breakdown] == [True, False, False]


def test_flexible_question_always_matches(plumbing):
    result = calculate_match(plumbing, {"access_times": "evening"}, {})

    assert result.match_percentage == 100
    assert result.insights.strengths == []
    assert result.insights.gaps == []


def test_questions_homeowner_skipped_are_ignored(plumbing):
    result = calculate_match(plumbing, {"job_type": "leak-repair"}, {"job_type": "leak-repair", "fixtures": ["sink"]})

    assert result.total_weight == pytest.approx(1.0)
    assert result.match_percentage == 100


def test_nothing_answered_scores_zero(plumbing):
    result = calculate_match(plumbing, {}, {"job_type": "leak-repair"})

    assert result.match_percentage == 0
    assert result.total_weight == 0
    assert result.breakdown == []


def test_answers_compare_case_insensitively(plumbing):
    result = calculate_match(plumbing, {"job_type": " Leak-Repair"}, {"job_type": ["leak-repair"]})

    assert result.match_percentage == 100


def test_scoring_is_deterministic(plumbing):
    pro = {"fixtures": ["toilet", "sink"], "property_type": "villa", "job_type": ["leak-repair"]}
    reordered = dict(reversed(list(pro.items())))

    first = calculate_match(plumbing, LEAD_ANSWERS, pro)
    second = calculate_match(plumbing, dict(reversed(list(LEAD_ANSWERS.items()))), reordered)

    assert first == second


def test_percentage_rounds_half_up():
    registry = QuestionnaireRegistry.from_config({
        "tiling": {"questions": [
            {"id": "area", "weight": 0.625, "type": "direct"},
            {"id": "material", "weight": 0.375, "type": "direct"},
        ]},
    })

    result = calculate_match(registry.get("tiling"), {"area": "bathroom", "material": "marble"}, {"area": "bathroom"})

    assert result.match_percentage == 63


def test_gaps_list_heaviest_misses_first(plumbing):
    result = calculate_match(plumbing, LEAD_ANSWERS, {"property_type": "apartment"})

    assert result.insights.gaps == ["What do you need done?", "Which fixtures are involved?"]
    assert result.insights.strengths == ["Property type"]


def test_tiers_never_decrease_with_score():
    order = ["poor"] + [tier for _, tier in reversed(TIER_THRESHOLDS)]
    ranks = [order.index(match_tier(p)) for p in range(101)]

    assert ranks == sorted(ranks)
    assert (match_tier(39), match_tier(40), match_tier(60), match_tier(75), match_tier(90)) == (
        "poor", "fair", "good", "excellent", "perfect",
    )


def test_invalid_question_definition():
    with pytest.raises(ValidationFailedError):
        QuestionnaireRegistry.from_config({"x": {"questions": [{"id": "a", "weight": 1.5, "type": "direct"}]}})
    with pytest.raises(ValidationFailedError):
        QuestionnaireRegistry.from_config({"x": {"questions": [{"id": "a", "weight": 0.5, "type": "fuzzy"}]}})


def test_cache_evicts_least_recently_used(plumbing):
    cache = MatchCache(max_size=2)
    result = calculate_match(plumbing, LEAD_ANSWERS, {})
    cache.put("a", result)
    cache.put("b", result)
    cache.get("a")
    cache.put("c", result)

    assert cache.get("b") is None
    assert cache.get("a") is result
    assert len(cache) == 2


async def test_upsert_profile_bumps_version(test_db, clock):
    service = MatchingService(test_db, clock=clock)

    first = await service.upsert_profile("pro-1", "plumbing", {"job_type": ["leak-repair"]})
    assert first.version == 1
    second = await service.upsert_profile("pro-1", "plumbing", {"job_type": ["installation"]})

    assert second.version == 2
    assert second.answers == {"job_type": ["installation"]}


async def test_upsert_profile_rejects_unknown_questions(test_db, clock):
    service = MatchingService(test_db, clock=clock)

    with pytest.raises(ValidationFailedError):
        await service.upsert_profile("pro-1", "plumbing", {"favourite_colour": "blue"})
    with pytest.raises(NotFoundError):
        await service.upsert_profile("pro-1", "gardening", {})


async def test_score_follows_profile_updates(test_db, store, lead_fields, clock):
    lead = await store.create_lead("homeowner-1", **lead_fields())
    service = MatchingService(test_db, clock=clock)
    await service.upsert_profile("pro-1", "plumbing", {"job_type": ["installation"]})

    _, _, before = await service.score(lead.id, "pro-1")
    await service.upsert_profile(
        "pro-1", "plumbing",
        {"job_type": ["leak-repair"], "property_type": ["apartment"], "fixtures": ["sink"]},
    )
    _, profile, after = await service.score(lead.id, "pro-1")

    assert before.match_percentage == 0
    assert after.match_percentage == 100
    assert profile.version == 2


async def test_marketplace_ranked_by_match(test_db, store, lead_fields, clock):
    villa = await store.create_lead("homeowner-1", **lead_fields(service_answers={
        "service_id": "plumbing",
        "answers": {"job_type": "installation", "property_type": "villa"},
    }))
    clock.advance(minutes=1)
    apartment = await store.create_lead("homeowner-2", **lead_fields())
    clock.advance(minutes=1)
    painting = await store.create_lead("homeowner-3", **lead_fields(
        category="painting",
        service_answers={"service_id": "painting", "answers": {"surfaces": ["ceilings"]}},
    ))
    service = MatchingService(test_db, clock=clock)
    await service.upsert_profile("pro-1", "plumbing", {"job_type": ["installation"], "property_type": ["villa"]})
    await store.create_claim(villa.id, "pro-1", 10)

    entries, total = await service.rank_marketplace("pro-1")

    assert total == 3
    assert [entry["lead"].id for entry in entries] == [villa.id, painting.id, apartment.id]
    assert [entry["has_claimed"] for entry in entries] == [True, False, False]
    # Equal scores keep newest first
    assert entries[0]["match"].match_percentage == 100

    plumbing_only, total = await service.rank_marketplace("pro-1", category="plumbing", limit=1)
    assert total == 2
    assert [entry["lead"].id for entry in plumbing_only] == [villa.id]
