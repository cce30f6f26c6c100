#!/usr/bin/env python3
"""Seed data script for a development database"""

import asyncio
import logging

from homezy.db.database import AsyncSessionLocal, close_db, init_db
from homezy.db.models import CreditType
from homezy.services.claims import ClaimCoordinator
from homezy.services.credit_ledger import CreditLedger
from homezy.services.lead_store import LeadStore
from homezy.services.matching import MatchingService
from homezy.utils.logging import setup_logging

logger = logging.getLogger(__name__)

PROFESSIONALS = {
    "pro-plumbing-dubai": {
        "free": 50,
        "package": "professional",
        "profiles": {
            "plumbing": {
                "job_type": ["leak-repair", "installation", "drain-cleaning"],
                "property_type": ["villa", "apartment"],
                "fixtures": ["sink", "toilet", "shower", "pipes"],
            },
        },
    },
    "pro-electric-sharjah": {
        "free": 20,
        "package": None,
        "profiles": {
            "electrical": {
                "job_type": ["wiring", "fault-finding"],
                "property_type": ["apartment"],
                "rooms": ["kitchen", "living"],
                "dewa_approval": "yes",
            },
        },
    },
    "pro-allrounder": {
        "free": 100,
        "package": "starter",
        "profiles": {
            "ac-repair": {
                "job_type": ["servicing", "repair"],
                "system_type": ["split", "ducted"],
            },
            "painting": {
                "surfaces": ["interior-walls", "ceilings"],
                "property_type": ["villa"],
            },
        },
    },
}

SAMPLE_LEADS = [
    {
        "homeowner_id": "homeowner-1",
        "title": "Leaking kitchen sink",
        "description": "Water pooling under the kitchen sink since yesterday evening.",
        "category": "plumbing",
        "location": {"emirate": "dubai", "neighborhood": "JLT"},
        "budget_bracket": "500-1k",
        "urgency": "urgent",
        "service_answers": {
            "service_id": "plumbing",
            "answers": {"job_type": "leak-repair", "property_type": "apartment", "fixtures": ["sink"]},
        },
    },
    {
        "homeowner_id": "homeowner-2",
        "title": "Full villa rewiring",
        "description": "Older villa needs complete rewiring and DEWA sign-off before sale.",
        "category": "electrical",
        "location": {"emirate": "dubai", "neighborhood": "Al Barsha"},
        "budget_bracket": "15k-50k",
        "urgency": "flexible",
        "service_answers": {
            "service_id": "electrical",
            "answers": {"job_type": "wiring", "property_type": "villa", "dewa_approval": "yes"},
        },
    },
    {
        "homeowner_id": "homeowner-3",
        "title": "AC not cooling",
        "description": "Split unit in master bedroom blowing warm air, need it fixed today.",
        "category": "ac-repair",
        "location": {"emirate": "sharjah"},
        "budget_bracket": "1k-5k",
        "urgency": "emergency",
        "service_answers": {
            "service_id": "ac-repair",
            "answers": {"job_type": "repair", "system_type": "split", "unit_count": "1"},
        },
    },
]

DIRECT_LEAD = {
    "homeowner_id": "homeowner-1",
    "target_professional_id": "pro-plumbing-dubai",
    "title": "Bathroom refit plumbing",
    "description": "Moving the shower and toilet as part of a bathroom refit.",
    "category": "plumbing",
    "location": {"emirate": "dubai", "neighborhood": "Marina"},
    "budget_bracket": "5k-15k",
    "urgency": "planning",
    "service_answers": {
        "service_id": "plumbing",
        "answers": {"job_type": "installation", "fixtures": ["shower", "toilet"]},
    },
}


async def seed_database() -> None:
    await init_db()

    async with AsyncSessionLocal() as session:
        ledger = CreditLedger(session)
        matching = MatchingService(session)
        for professional_id, data in PROFESSIONALS.items():
            await ledger.grant(professional_id, data["free"], CreditType.FREE, "Seed free credits")
            if data["package"]:
                await ledger.purchase_package(professional_id, data["package"], payment_reference="seed")
            for service_id, answers in data["profiles"].items():
                await matching.upsert_profile(professional_id, service_id, answers)
        logger.info(f"Seeded {len(PROFESSIONALS)} professionals")

        store = LeadStore(session)
        for lead_data in SAMPLE_LEADS:
            fields = dict(lead_data)
            homeowner_id = fields.pop("homeowner_id")
            await store.create_lead(homeowner_id, timeline=None, **fields)

        fields = dict(DIRECT_LEAD)
        homeowner_id = fields.pop("homeowner_id")
        target = fields.pop("target_professional_id")
        await ClaimCoordinator(session).create_direct_lead(homeowner_id, target, timeline=None, **fields)
        logger.info(f"Seeded {len(SAMPLE_LEADS)} public leads and 1 direct lead")

    await close_db()


if __name__ == "__main__":
    setup_logging()
    asyncio.run(seed_database())
