"""Weighted answer matching between a lead and a professional's service profile.

``calculate_match`` is a pure function of (questionnaire, lead answers,
professional answers) and is the only place scores are computed.
``MatchingService`` wraps it with database reads and a bounded cache keyed by
the lead and profile versions, so a cached result can never outlive either
input.
"""

import logging
import uuid
from collections import OrderedDict
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from homezy.config import settings
from homezy.db.models import Lead, ProServiceProfile
from homezy.errors import NotFoundError, ValidationFailedError
from homezy.schemas.matching import LeadMatchResult, MatchInsights, QuestionScore
from homezy.services.lead_store import LeadStore
from homezy.services.questionnaires import Questionnaire, QuestionnaireRegistry, get_registry
from homezy.utils.time import Clock, utcnow

logger = logging.getLogger(__name__)

# Lower bounds, highest first
TIER_THRESHOLDS = (
    (90, "perfect"),
    (75, "excellent"),
    (60, "good"),
    (40, "fair"),
)

INSIGHT_LIMIT = 3


def match_tier(percentage: int) -> str:
    for threshold, tier in TIER_THRESHOLDS:
        if percentage >= threshold:
            return tier
    return "poor"


def _normalize(value: Any) -> frozenset | None:
    """Answer as a set of comparable tokens; None when unanswered"""
    if value is None:
        return None
    items = value if isinstance(value, (list, tuple, set, frozenset)) else [value]
    tokens = set()
    for item in items:
        if isinstance(item, str):
            item = item.strip().lower()
            if not item:
                continue
        tokens.add(item)
    return frozenset(tokens) or None


def _percentage(total_score: float, total_weight: float) -> int:
    if total_weight <= 0:
        return 0
    raw = Decimal(repr(100 * total_score / total_weight))
    return max(0, min(100, int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP))))


def calculate_match(
    questionnaire: Questionnaire,
    lead_answers: Mapping[str, Any],
    pro_answers: Mapping[str, Any],
) -> LeadMatchResult:
    """Score a lead's answers against a professional's declared answers.

    Only questions the homeowner answered count. ``direct`` questions score
    their full weight when every value the homeowner picked is offered by the
    professional, ``partial`` questions score weight times the Jaccard overlap
    of the two answer sets, and ``flexible`` questions always score full
    weight. A question the professional left unanswered scores 0 but keeps its
    weight in the denominator.
    """
    breakdown = []
    ranked = []  # (weight, position, label, fraction)
    total_score = 0.0
    total_weight = 0.0

    for position, question in enumerate(questionnaire.questions):
        wanted = _normalize(lead_answers.get(question.id))
        if wanted is None:
            continue
        offered = _normalize(pro_answers.get(question.id))

        if question.type == "flexible":
            fraction = 1.0
        elif offered is None:
            fraction = 0.0
        elif question.type == "direct":
            fraction = 1.0 if wanted <= offered else 0.0
        else:
            fraction = len(wanted & offered) / len(wanted | offered)

        score = question.weight * fraction
        total_score += score
        total_weight += question.weight
        breakdown.append(QuestionScore(
            question_id=question.id,
            type=question.type,
            weight=question.weight,
            score=score,
            answered_by_professional=offered is not None,
        ))
        if question.type != "flexible":
            ranked.append((question.weight, position, question.label or question.id, fraction))

    # Highest weight first; questionnaire order breaks ties
    ranked.sort(key=lambda item: (-item[0], item[1]))
    strengths = [label for _, _, label, fraction in ranked if fraction >= 0.5][:INSIGHT_LIMIT]
    gaps = [label for _, _, label, fraction in ranked if fraction < 0.5][:INSIGHT_LIMIT]

    percentage = _percentage(total_score, total_weight)
    return LeadMatchResult(
        service_id=questionnaire.service_id,
        questionnaire_version=questionnaire.version,
        match_percentage=percentage,
        tier=match_tier(percentage),
        total_score=total_score,
        total_weight=total_weight,
        breakdown=breakdown,
        insights=MatchInsights(strengths=strengths, gaps=gaps),
    )


def lead_answers_of(lead: Lead) -> dict[str, Any]:
    payload = lead.service_answers or {}
    return dict(payload.get("answers") or {})


class MatchCache:
    """Bounded LRU of match results"""

    def __init__(self, max_size: int):
        self.max_size = max_size
        self._entries: OrderedDict[tuple, LeadMatchResult] = OrderedDict()

    def get(self, key: tuple) -> LeadMatchResult | None:
        result = self._entries.get(key)
        if result is not None:
            self._entries.move_to_end(key)
        return result

    def put(self, key: tuple, result: LeadMatchResult) -> None:
        if self.max_size <= 0:
            return
        self._entries[key] = result
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


match_cache = MatchCache(settings.match_cache_size)


class MatchingService:
    """Loads lead and profile, then scores them with ``calculate_match``"""

    def __init__(
        self,
        db: AsyncSession,
        registry: QuestionnaireRegistry | None = None,
        cache: MatchCache | None = None,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.registry = registry or get_registry()
        self.cache = match_cache if cache is None else cache
        self.clock = clock

    async def get_profile(self, professional_id: str, service_id: str) -> ProServiceProfile | None:
        result = await self.db.execute(
            select(ProServiceProfile)
            .where(
                ProServiceProfile.professional_id == professional_id,
                ProServiceProfile.service_id == service_id,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def upsert_profile(
        self,
        professional_id: str,
        service_id: str,
        answers: dict[str, Any],
    ) -> ProServiceProfile:
        """Replace a professional's declared answers for one service, bumping its version"""
        questionnaire = self.registry.get(service_id)
        known = {q.id for q in questionnaire.questions}
        unknown = sorted(set(answers) - known)
        if unknown:
            raise ValidationFailedError(
                f"Unknown questions for {service_id}: {', '.join(unknown)}",
                service_id=service_id,
            )

        for _ in range(settings.conflict_retry_attempts):
            now = self.clock()
            profile = await self.get_profile(professional_id, service_id)
            if profile is None:
                profile = ProServiceProfile(
                    id=uuid.uuid4(),
                    professional_id=professional_id,
                    service_id=service_id,
                    answers=dict(answers),
                    version=1,
                    created_at=now,
                    updated_at=now,
                )
                self.db.add(profile)
            else:
                profile.answers = dict(answers)
                profile.version = profile.version + 1
                profile.updated_at = now
            try:
                await self.db.commit()
            except IntegrityError:
                await self.db.rollback()
                continue
            logger.info(
                f"Updated {service_id} profile for {professional_id} (v{profile.version})",
                extra={"professional_id": professional_id},
            )
            return profile
        raise ValidationFailedError("Could not save profile, please retry", service_id=service_id)

    def _score(self, lead: Lead, professional_id: str, profile: ProServiceProfile | None) -> LeadMatchResult:
        questionnaire = self.registry.get(lead.service_id)
        key = (
            lead.id,
            lead.version,
            professional_id,
            profile.version if profile else 0,
            questionnaire.service_id,
            questionnaire.version,
        )
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        result = calculate_match(
            questionnaire,
            lead_answers_of(lead),
            profile.answers if profile else {},
        )
        self.cache.put(key, result)
        return result

    async def score(self, lead_id: uuid.UUID, professional_id: str) -> tuple[Lead, ProServiceProfile | None, LeadMatchResult]:
        lead = await self.db.get(Lead, lead_id, populate_existing=True)
        if lead is None:
            raise NotFoundError("Lead", lead_id)
        profile = await self.get_profile(professional_id, lead.service_id)
        return lead, profile, self._score(lead, professional_id, profile)

    async def rank_marketplace(
        self,
        professional_id: str,
        category: str | None = None,
        emirate: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[dict[str, Any]], int]:
        """Claimable public leads ordered by match percentage for this professional"""
        store = LeadStore(self.db, clock=self.clock)
        leads = await store.list_marketplace(category=category, emirate=emirate)
        claimed = await store.list_claimed_lead_ids(professional_id, [lead.id for lead in leads])

        profiles: dict[str, ProServiceProfile | None] = {}
        entries = []
        for lead in leads:
            if lead.service_id not in profiles:
                profiles[lead.service_id] = await self.get_profile(professional_id, lead.service_id)
            if self.registry.find(lead.service_id) is None:
                result = None
            else:
                result = self._score(lead, professional_id, profiles[lead.service_id])
            entries.append({"lead": lead, "match": result, "has_claimed": lead.id in claimed})

        # Leads are already newest first; sorted() keeps that order within equal scores
        entries = sorted(
            entries,
            key=lambda entry: -(entry["match"].match_percentage if entry["match"] else -1),
        )
        return entries[offset:offset + limit], len(entries)
