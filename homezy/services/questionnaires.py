"""Versioned service questionnaire registry.

Each service (e.g. ``plumbing``) has a questionnaire: an ordered list of
questions with a weight in [0, 1] and a match type that tells the matching
engine how to compare a homeowner's answer with a professional's. Built-in
questionnaires can be replaced by a JSON file pointed to by
``settings.questionnaire_path``::

    {"plumbing": {"version": 2, "questions": [
        {"id": "job_type", "weight": 1.0, "type": "direct", "options": [...]}
    ]}}
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

from homezy.config import settings
from homezy.errors import NotFoundError, ValidationFailedError

logger = logging.getLogger(__name__)

MATCH_TYPES = ("direct", "partial", "flexible")


@dataclass(frozen=True)
class Question:
    id: str
    weight: float
    type: str
    options: tuple[str, ...] = ()
    label: str = ""

    def __post_init__(self):
        if self.type not in MATCH_TYPES:
            raise ValidationFailedError(
                f"Question '{self.id}' has unknown match type '{self.type}'",
                question_id=self.id,
            )
        if not 0 <= self.weight <= 1:
            raise ValidationFailedError(
                f"Question '{self.id}' weight must be between 0 and 1",
                question_id=self.id,
                weight=self.weight,
            )


@dataclass(frozen=True)
class Questionnaire:
    service_id: str
    version: int
    questions: tuple[Question, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "service_id": self.service_id,
            "version": self.version,
            "questions": [
                {
                    "id": q.id,
                    "label": q.label,
                    "weight": q.weight,
                    "type": q.type,
                    "options": list(q.options),
                }
                for q in self.questions
            ],
        }


def _build(service_id: str, version: int, raw_questions: list[dict[str, Any]]) -> Questionnaire:
    questions = tuple(
        Question(
            id=raw["id"],
            weight=float(raw["weight"]),
            type=raw["type"],
            options=tuple(raw.get("options", ())),
            label=raw.get("label", ""),
        )
        for raw in raw_questions
    )
    ids = [q.id for q in questions]
    if len(ids) != len(set(ids)):
        raise ValidationFailedError(f"Questionnaire '{service_id}' has duplicate question ids")
    return Questionnaire(service_id=service_id, version=version, questions=questions)


DEFAULT_QUESTIONNAIRES: dict[str, dict[str, Any]] = {
    "plumbing": {
        "version": 1,
        "questions": [
            {"id": "job_type", "label": "What do you need done?", "weight": 1.0, "type": "direct",
             "options": ["leak-repair", "installation", "drain-cleaning", "water-heater"]},
            {"id": "property_type", "label": "Property type", "weight": 0.6, "type": "direct",
             "options": ["apartment", "villa", "townhouse", "office"]},
            {"id": "fixtures", "label": "Which fixtures are involved?", "weight": 0.8, "type": "partial",
             "options": ["sink", "toilet", "shower", "bathtub", "pipes"]},
            {"id": "access_times", "label": "Preferred visit times", "weight": 0.3, "type": "flexible",
             "options": ["morning", "afternoon", "evening"]},
        ],
    },
    "electrical": {
        "version": 1,
        "questions": [
            {"id": "job_type", "label": "What do you need done?", "weight": 1.0, "type": "direct",
             "options": ["wiring", "lighting", "panel-upgrade", "fault-finding"]},
            {"id": "property_type", "label": "Property type", "weight": 0.6, "type": "direct",
             "options": ["apartment", "villa", "townhouse", "office"]},
            {"id": "rooms", "label": "Rooms affected", "weight": 0.5, "type": "partial",
             "options": ["kitchen", "bedroom", "living", "bathroom", "outdoor"]},
            {"id": "dewa_approval", "label": "Needs DEWA approval?", "weight": 0.7, "type": "direct",
             "options": ["yes", "no"]},
        ],
    },
    "ac-repair": {
        "version": 1,
        "questions": [
            {"id": "job_type", "label": "Service needed", "weight": 1.0, "type": "direct",
             "options": ["repair", "servicing", "installation", "duct-cleaning"]},
            {"id": "system_type", "label": "AC system", "weight": 0.8, "type": "partial",
             "options": ["split", "central", "window", "ducted", "chiller"]},
            {"id": "unit_count", "label": "Number of units", "weight": 0.4, "type": "flexible"},
        ],
    },
    "painting": {
        "version": 1,
        "questions": [
            {"id": "surfaces", "label": "Surfaces to paint", "weight": 0.9, "type": "partial",
             "options": ["interior-walls", "ceilings", "exterior", "doors", "furniture"]},
            {"id": "property_type", "label": "Property type", "weight": 0.6, "type": "direct",
             "options": ["apartment", "villa", "townhouse", "office"]},
            {"id": "colour_consultation", "label": "Colour consultation", "weight": 0.2, "type": "flexible",
             "options": ["yes", "no"]},
        ],
    },
}


class QuestionnaireRegistry:
    """Read-only lookup from service id to its current questionnaire"""

    def __init__(self, questionnaires: Mapping[str, Questionnaire]):
        self._questionnaires = MappingProxyType(dict(questionnaires))

    @classmethod
    def from_config(cls, config: Mapping[str, Mapping[str, Any]]) -> "QuestionnaireRegistry":
        return cls({
            service_id: _build(service_id, int(raw.get("version", 1)), list(raw["questions"]))
            for service_id, raw in config.items()
        })

    @classmethod
    def from_file(cls, path: str | Path) -> "QuestionnaireRegistry":
        with open(path, encoding="utf-8") as f:
            config = json.load(f)
        logger.info(f"Loaded {len(config)} questionnaires from {path}")
        return cls.from_config(config)

    def get(self, service_id: str) -> Questionnaire:
        questionnaire = self._questionnaires.get(service_id)
        if questionnaire is None:
            raise NotFoundError("Questionnaire", service_id)
        return questionnaire

    def find(self, service_id: str) -> Questionnaire | None:
        return self._questionnaires.get(service_id)

    def service_ids(self) -> list[str]:
        return sorted(self._questionnaires)


_registry: QuestionnaireRegistry | None = None


def get_registry() -> QuestionnaireRegistry:
    """Process-wide registry, loaded on first use"""
    global _registry
    if _registry is None:
        if settings.questionnaire_path:
            _registry = QuestionnaireRegistry.from_file(settings.questionnaire_path)
        else:
            _registry = QuestionnaireRegistry.from_config(DEFAULT_QUESTIONNAIRES)
    return _registry
