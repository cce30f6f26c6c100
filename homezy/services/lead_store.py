"""Lead storage and state machine.

Every mutation of a lead row is a single conditional UPDATE whose WHERE clause
encodes the transition's precondition; ``rowcount`` tells us whether this
caller won. Nothing here reads a counter and writes it back, so concurrent
claimers, accept/decline calls and sweeper replicas can never both succeed on
the same transition.
"""

import logging
import uuid
from datetime import timedelta
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from homezy.config import settings
from homezy.db.models import (
    LEAD_TRANSITIONS,
    TERMINAL_LEAD_STATUSES,
    DirectLeadStatus,
    Lead,
    LeadClaim,
    LeadStatus,
    LeadType,
)
from homezy.errors import (
    ConflictError,
    InvalidTransitionError,
    NotClaimableError,
    NotFoundError,
    PermissionDeniedError,
    QuotaExceededError,
    ValidationFailedError,
)
from homezy.services.pricing import EMIRATES, URGENCY_LEVELS, get_bracket
from homezy.utils.time import Clock, utcnow

logger = logging.getLogger(__name__)

ACTIVE_LEAD_STATUSES = (LeadStatus.OPEN, LeadStatus.FULL)

# Details a homeowner may still edit before the first claim
EDITABLE_LEAD_FIELDS = (
    "title",
    "description",
    "category",
    "location",
    "budget_bracket",
    "urgency",
    "timeline",
    "service_answers",
)


class LeadStore:
    """Service owning Lead and LeadClaim rows"""

    def __init__(self, db: AsyncSession, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    # Creation

    async def create_lead(
        self,
        homeowner_id: str,
        *,
        title: str,
        description: str,
        category: str,
        location: dict[str, Any],
        budget_bracket: str,
        urgency: str = "flexible",
        timeline: str | None = None,
        service_answers: dict[str, Any] | None = None,
    ) -> Lead:
        """Create a public (indirect) lead open for up to ``max_lead_claims`` claims"""
        lead = self._new_lead(
            homeowner_id,
            title=title,
            description=description,
            category=category,
            location=location,
            budget_bracket=budget_bracket,
            urgency=urgency,
            timeline=timeline,
            service_answers=service_answers,
        )
        self.db.add(lead)
        await self.db.commit()
        logger.info(f"Created lead {lead.id} in {category}", extra={"lead_id": lead.id})
        return lead

    async def create_direct_lead(
        self,
        homeowner_id: str,
        target_professional_id: str,
        **fields: Any,
    ) -> Lead:
        """Create a lead routed privately to one professional for a fixed response window"""
        if not target_professional_id:
            raise ValidationFailedError("A direct lead needs a target professional")
        lead = self._new_lead(homeowner_id, **fields)
        now = lead.created_at
        lead.lead_type = LeadType.DIRECT
        lead.target_professional_id = target_professional_id
        lead.direct_lead_status = DirectLeadStatus.PENDING
        lead.direct_lead_expires_at = now + timedelta(hours=settings.direct_lead_window_hours)
        lead.max_claims = 1
        self.db.add(lead)
        await self.db.commit()
        logger.info(
            f"Created direct lead {lead.id} for professional {target_professional_id}",
            extra={"lead_id": lead.id, "professional_id": target_professional_id},
        )
        return lead

    def _new_lead(
        self,
        homeowner_id: str,
        *,
        title: str,
        description: str,
        category: str,
        location: dict[str, Any],
        budget_bracket: str,
        urgency: str = "flexible",
        timeline: str | None = None,
        service_answers: dict[str, Any] | None = None,
    ) -> Lead:
        get_bracket(budget_bracket)
        if urgency not in URGENCY_LEVELS:
            raise ValidationFailedError(f"Unknown urgency '{urgency}'", urgency=urgency)
        emirate = (location or {}).get("emirate")
        if emirate not in EMIRATES:
            raise ValidationFailedError(f"Unknown emirate '{emirate}'", emirate=emirate)

        now = self.clock()
        return Lead(
            id=uuid.uuid4(),
            homeowner_id=homeowner_id,
            title=title,
            description=description,
            category=category,
            location=dict(location),
            budget_bracket=budget_bracket,
            urgency=urgency,
            timeline=timeline,
            service_answers=service_answers,
            lead_type=LeadType.INDIRECT,
            claim_count=0,
            max_claims=settings.max_lead_claims,
            status=LeadStatus.OPEN,
            expires_at=now + timedelta(days=settings.lead_expiry_days),
            reminder1_sent=False,
            reminder2_sent=False,
            version=1,
            created_at=now,
            updated_at=now,
        )

    # Reads

    async def _load(self, lead_id: uuid.UUID) -> Lead | None:
        result = await self.db.execute(
            select(Lead)
            .where(Lead.id == lead_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_lead(self, lead_id: uuid.UUID) -> Lead:
        """Fetch a lead, applying general expiry lazily"""
        lead = await self._load(lead_id)
        if lead is None:
            raise NotFoundError("Lead", lead_id)

        now = self.clock()
        if lead.status in ACTIVE_LEAD_STATUSES and now >= lead.expires_at:
            await self._expire(lead.id, now)
            lead = await self._load(lead_id)
        return lead

    async def get_claimable(self, lead_id: uuid.UUID) -> Lead:
        """Fetch a lead that can take a new public claim right now"""
        lead = await self.get_lead(lead_id)
        reason = self.not_claimable_reason(lead)
        if reason == "full":
            raise QuotaExceededError(lead.id)
        if reason is not None:
            raise NotClaimableError(lead.id, reason)
        return lead

    def not_claimable_reason(self, lead: Lead) -> str | None:
        if lead.status in TERMINAL_LEAD_STATUSES:
            return lead.status.value
        if self.clock() >= lead.expires_at:
            return "expired"
        if lead.lead_type == LeadType.DIRECT and lead.direct_lead_status == DirectLeadStatus.PENDING:
            return "direct_pending"
        if lead.lead_type == LeadType.DIRECT and lead.direct_lead_status == DirectLeadStatus.ACCEPTED:
            return "direct_accepted"
        if lead.status == LeadStatus.FULL or lead.claim_count >= lead.max_claims:
            return "full"
        if lead.lead_type == LeadType.DIRECT:
            return "direct_pending"
        return None

    # Claim accounting

    async def increment_claim(self, lead_id: uuid.UUID) -> Lead:
        """Atomically take one claim slot, flipping the lead to full on the last one"""
        now = self.clock()
        result = await self.db.execute(
            update(Lead)
            .where(
                Lead.id == lead_id,
                Lead.status == LeadStatus.OPEN,
                Lead.lead_type == LeadType.INDIRECT,
                Lead.claim_count < Lead.max_claims,
                Lead.expires_at > now,
            )
            .values(
                claim_count=Lead.claim_count + 1,
                version=Lead.version + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            lead = await self.get_lead(lead_id)
            reason = self.not_claimable_reason(lead) or "full"
            if reason == "full":
                logger.info(f"Lead {lead_id} filled by a concurrent claim", extra={"lead_id": lead_id})
                raise QuotaExceededError(lead_id)
            raise NotClaimableError(lead_id, reason)

        await self.db.execute(
            update(Lead)
            .where(
                Lead.id == lead_id,
                Lead.status == LeadStatus.OPEN,
                Lead.claim_count >= Lead.max_claims,
            )
            .values(status=LeadStatus.FULL)
            .execution_options(synchronize_session=False)
        )
        lead = await self._load(lead_id)
        await self.db.commit()
        return lead

    async def release_claim(self, lead_id: uuid.UUID) -> None:
        """Give back a claim slot taken by a claim that failed after incrementing"""
        now = self.clock()
        result = await self.db.execute(
            update(Lead)
            .where(
                Lead.id == lead_id,
                Lead.claim_count > 0,
                Lead.status.in_(ACTIVE_LEAD_STATUSES),
            )
            .values(
                claim_count=Lead.claim_count - 1,
                status=LeadStatus.OPEN,
                version=Lead.version + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.execute(
                update(Lead)
                .where(Lead.id == lead_id, Lead.claim_count > 0)
                .values(claim_count=Lead.claim_count - 1, version=Lead.version + 1, updated_at=now)
                .execution_options(synchronize_session=False)
            )
        await self.db.commit()
        logger.warning(f"Released claim slot on lead {lead_id}", extra={"lead_id": lead_id})

    # Direct leads

    async def accept_direct(self, lead_id: uuid.UUID, professional_id: str) -> Lead:
        """Target professional takes the single exclusive slot of a pending direct lead"""
        now = self.clock()
        result = await self.db.execute(
            update(Lead)
            .where(
                Lead.id == lead_id,
                Lead.lead_type == LeadType.DIRECT,
                Lead.direct_lead_status == DirectLeadStatus.PENDING,
                Lead.target_professional_id == professional_id,
                Lead.direct_lead_expires_at > now,
                Lead.status == LeadStatus.OPEN,
                Lead.expires_at > now,
                Lead.claim_count < Lead.max_claims,
            )
            .values(
                direct_lead_status=DirectLeadStatus.ACCEPTED,
                claim_count=Lead.claim_count + 1,
                status=LeadStatus.FULL,
                version=Lead.version + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            lead = await self.get_lead(lead_id)
            self.check_direct_action(lead, professional_id, "accept")
            raise InvalidTransitionError(
                "Direct lead can no longer be accepted",
                current=lead.direct_lead_status,
                attempted="accept",
            )
        lead = await self._load(lead_id)
        await self.db.commit()
        return lead

    async def release_direct_acceptance(self, lead_id: uuid.UUID) -> None:
        """Undo an acceptance whose credit debit could not be completed"""
        now = self.clock()
        await self.db.execute(
            update(Lead)
            .where(
                Lead.id == lead_id,
                Lead.direct_lead_status == DirectLeadStatus.ACCEPTED,
                Lead.claim_count > 0,
            )
            .values(
                direct_lead_status=DirectLeadStatus.PENDING,
                claim_count=Lead.claim_count - 1,
                status=LeadStatus.OPEN,
                version=Lead.version + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        logger.warning(f"Released direct acceptance on lead {lead_id}", extra={"lead_id": lead_id})

    def check_direct_action(self, lead: Lead, professional_id: str, action: str) -> None:
        """Raise the typed error explaining why a target professional cannot act on a direct lead"""
        if lead.lead_type != LeadType.DIRECT:
            raise InvalidTransitionError(
                "Lead is not a direct lead" if not lead.is_converted
                else "Direct lead has already been converted to the public marketplace",
                current=lead.direct_lead_status or lead.lead_type,
                attempted=action,
            )
        if lead.target_professional_id != professional_id:
            raise PermissionDeniedError("This lead was not sent to you", lead_id=lead.id)
        if lead.status in TERMINAL_LEAD_STATUSES:
            raise NotClaimableError(lead.id, lead.status.value)
        if lead.direct_lead_status != DirectLeadStatus.PENDING:
            raise InvalidTransitionError(
                f"Direct lead already {lead.direct_lead_status.value}",
                current=lead.direct_lead_status,
                attempted=action,
            )
        if action == "accept" and self.clock() >= lead.direct_lead_expires_at:
            raise InvalidTransitionError(
                "Direct lead response window has elapsed",
                current=lead.direct_lead_status,
                attempted=action,
            )

    async def decline_direct(
        self,
        lead_id: uuid.UUID,
        professional_id: str,
        reason: str | None = None,
    ) -> Lead:
        """Record the decline and hand the lead to the public marketplace in one transaction"""
        now = self.clock()
        result = await self.db.execute(
            update(Lead)
            .where(
                Lead.id == lead_id,
                Lead.lead_type == LeadType.DIRECT,
                Lead.direct_lead_status == DirectLeadStatus.PENDING,
                Lead.target_professional_id == professional_id,
                Lead.status.in_(ACTIVE_LEAD_STATUSES),
            )
            .values(
                direct_lead_status=DirectLeadStatus.DECLINED,
                declined_at=now,
                decline_reason=reason,
                version=Lead.version + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            lead = await self.get_lead(lead_id)
            self.check_direct_action(lead, professional_id, "decline")
            raise InvalidTransitionError(
                "Direct lead can no longer be declined",
                current=lead.direct_lead_status,
                attempted="decline",
            )
        await self._convert(lead_id, now, (DirectLeadStatus.DECLINED,))
        await self.db.commit()
        logger.info(
            f"Direct lead {lead_id} declined by {professional_id} and converted to public",
            extra={"lead_id": lead_id, "professional_id": professional_id},
        )
        return await self._load(lead_id)

    async def _convert(
        self,
        lead_id: uuid.UUID,
        now,
        from_statuses: tuple[DirectLeadStatus, ...],
        *extra_conditions,
    ) -> bool:
        result = await self.db.execute(
            update(Lead)
            .where(
                Lead.id == lead_id,
                Lead.lead_type == LeadType.DIRECT,
                Lead.direct_lead_status.in_(from_statuses),
                *extra_conditions,
            )
            .values(
                lead_type=LeadType.INDIRECT,
                direct_lead_status=DirectLeadStatus.CONVERTED,
                converted_to_public_at=now,
                max_claims=settings.max_lead_claims,
                version=Lead.version + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def convert_direct_to_public(self, lead_id: uuid.UUID) -> Lead:
        """Open a direct lead to the public marketplace; a no-op if already converted"""
        now = self.clock()
        converted = await self._convert(
            lead_id, now, (DirectLeadStatus.PENDING, DirectLeadStatus.DECLINED)
        )
        if converted:
            await self.db.commit()
            logger.info(f"Converted direct lead {lead_id} to public", extra={"lead_id": lead_id})
            return await self._load(lead_id)

        await self.db.rollback()
        lead = await self._load(lead_id)
        if lead is None:
            raise NotFoundError("Lead", lead_id)
        if lead.direct_lead_status == DirectLeadStatus.CONVERTED:
            return lead
        raise InvalidTransitionError(
            "Only pending or declined direct leads can be converted",
            current=lead.direct_lead_status or lead.lead_type,
            attempted="convert",
        )

    async def convert_if_window_elapsed(self, lead_id: uuid.UUID) -> bool:
        """Sweeper conversion; True only for the single caller that performed it"""
        now = self.clock()
        converted = await self._convert(
            lead_id,
            now,
            (DirectLeadStatus.PENDING,),
            Lead.direct_lead_expires_at <= now,
        )
        await self.db.commit()
        if converted:
            logger.info(
                f"Direct lead {lead_id} response window elapsed, converted to public",
                extra={"lead_id": lead_id},
            )
        return converted

    async def mark_reminder_sent(self, lead_id: uuid.UUID, reminder: int) -> bool:
        """Set a reminder flag once; True only for the caller that flipped it"""
        if reminder not in (1, 2):
            raise ValidationFailedError(f"Unknown reminder {reminder}")
        flag = Lead.reminder1_sent if reminder == 1 else Lead.reminder2_sent
        result = await self.db.execute(
            update(Lead)
            .where(
                Lead.id == lead_id,
                Lead.lead_type == LeadType.DIRECT,
                Lead.direct_lead_status == DirectLeadStatus.PENDING,
                flag.is_(False),
            )
            .values({flag.key: True, "updated_at": self.clock()})
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def list_pending_direct_leads(self, due_before) -> list[Lead]:
        """Pending direct leads whose first reminder is due by ``due_before``"""
        result = await self.db.execute(
            select(Lead)
            .where(
                Lead.lead_type == LeadType.DIRECT,
                Lead.direct_lead_status == DirectLeadStatus.PENDING,
                Lead.status == LeadStatus.OPEN,
                Lead.direct_lead_expires_at <= due_before,
            )
            .order_by(Lead.direct_lead_expires_at)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    # Homeowner-driven transitions

    async def _expire(self, lead_id: uuid.UUID, now) -> bool:
        result = await self.db.execute(
            update(Lead)
            .where(
                Lead.id == lead_id,
                Lead.status.in_(ACTIVE_LEAD_STATUSES),
                Lead.expires_at <= now,
            )
            .values(status=LeadStatus.EXPIRED, version=Lead.version + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount == 1:
            logger.info(f"Lead {lead_id} expired", extra={"lead_id": lead_id})
        return result.rowcount == 1

    async def expire_stale_leads(self, homeowner_id: str | None = None) -> int:
        """Bulk move open/full leads past their expiry to expired"""
        now = self.clock()
        conditions = [Lead.status.in_(ACTIVE_LEAD_STATUSES), Lead.expires_at <= now]
        if homeowner_id is not None:
            conditions.append(Lead.homeowner_id == homeowner_id)
        result = await self.db.execute(
            update(Lead)
            .where(*conditions)
            .values(status=LeadStatus.EXPIRED, version=Lead.version + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount:
            logger.info(f"Expired {result.rowcount} stale leads")
        return result.rowcount

    async def update_lead(self, lead_id: uuid.UUID, homeowner_id: str, **changes: Any) -> Lead:
        """Edit a lead's details; only while it is open and nobody has claimed it yet"""
        unknown = sorted(set(changes) - set(EDITABLE_LEAD_FIELDS))
        if unknown:
            raise ValidationFailedError(f"Cannot update fields: {', '.join(unknown)}")
        if "budget_bracket" in changes:
            get_bracket(changes["budget_bracket"])
        if "urgency" in changes and changes["urgency"] not in URGENCY_LEVELS:
            raise ValidationFailedError(f"Unknown urgency '{changes['urgency']}'", urgency=changes["urgency"])
        if "location" in changes:
            emirate = (changes["location"] or {}).get("emirate")
            if emirate not in EMIRATES:
                raise ValidationFailedError(f"Unknown emirate '{emirate}'", emirate=emirate)
            changes["location"] = dict(changes["location"])

        for _ in range(settings.conflict_retry_attempts):
            lead = await self.get_lead(lead_id)
            if lead.homeowner_id != homeowner_id:
                raise PermissionDeniedError("You can only update your own leads", lead_id=lead_id)
            if lead.claim_count > 0:
                raise InvalidTransitionError(
                    "Cannot update a lead after professionals have claimed it",
                    current=lead.status,
                    attempted="update",
                )
            if lead.status != LeadStatus.OPEN:
                raise InvalidTransitionError(
                    f"Cannot update a lead that is {lead.status.value}",
                    current=lead.status,
                    attempted="update",
                )
            if not changes:
                return lead

            now = self.clock()
            result = await self.db.execute(
                update(Lead)
                .where(
                    Lead.id == lead_id,
                    Lead.version == lead.version,
                    Lead.status == LeadStatus.OPEN,
                    Lead.claim_count == 0,
                )
                .values(**changes, version=Lead.version + 1, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                await self.db.commit()
                logger.info(
                    f"Lead {lead_id} updated: {', '.join(sorted(changes))}",
                    extra={"lead_id": lead_id},
                )
                return await self._load(lead_id)
            # A claim or another edit landed first; re-read and re-check
            await self.db.rollback()
        raise ConflictError(lead_id=lead_id)

    async def list_homeowner_leads(
        self,
        homeowner_id: str,
        status: LeadStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Lead], int]:
        """A homeowner's own leads, newest first, with the total count"""
        await self.expire_stale_leads(homeowner_id=homeowner_id)

        conditions = [Lead.homeowner_id == homeowner_id]
        if status is not None:
            conditions.append(Lead.status == status)
        total = (await self.db.execute(
            select(func.count()).select_from(Lead).where(*conditions)
        )).scalar_one()
        result = await self.db.execute(
            select(Lead)
            .where(*conditions)
            .order_by(Lead.created_at.desc(), Lead.id)
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), total

    async def list_direct_leads_for_professional(
        self,
        professional_id: str,
        direct_status: DirectLeadStatus | None = None,
    ) -> list[Lead]:
        """Direct-lead inbox of the targeted professional, including ones since converted"""
        conditions = [
            Lead.target_professional_id == professional_id,
            Lead.direct_lead_status.is_not(None),
        ]
        if direct_status is not None:
            conditions.append(Lead.direct_lead_status == direct_status)
        result = await self.db.execute(
            select(Lead)
            .where(*conditions)
            .order_by(Lead.created_at.desc(), Lead.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def cancel(self, lead_id: uuid.UUID, homeowner_id: str, reason: str | None = None) -> tuple[Lead, LeadStatus]:
        """Cancel a lead; returns the lead and the status it was cancelled from.

        Cancelling an already cancelled lead returns it unchanged with
        ``CANCELLED`` as the previous status, so an interrupted cancel can be re-run.
        """
        for _ in range(settings.conflict_retry_attempts):
            lead = await self.get_lead(lead_id)
            if lead.homeowner_id != homeowner_id:
                raise PermissionDeniedError("Only the lead owner can cancel it", lead_id=lead_id)
            previous = lead.status
            if previous == LeadStatus.CANCELLED:
                return lead, previous
            if (previous, LeadStatus.CANCELLED) not in LEAD_TRANSITIONS:
                raise InvalidTransitionError(
                    f"Cannot cancel a lead that is {previous.value}",
                    current=previous,
                    attempted="cancel",
                )
            now = self.clock()
            result = await self.db.execute(
                update(Lead)
                .where(Lead.id == lead_id, Lead.status == previous)
                .values(
                    status=LeadStatus.CANCELLED,
                    cancel_reason=reason,
                    version=Lead.version + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                await self.db.commit()
                logger.info(f"Lead {lead_id} cancelled from {previous.value}", extra={"lead_id": lead_id})
                return await self._load(lead_id), previous
            await self.db.rollback()
        raise ConflictError(lead_id=lead_id)

    async def accept_quote(self, lead_id: uuid.UUID, homeowner_id: str, professional_id: str) -> Lead:
        """Homeowner picks one claimant; the lead stops taking claims"""
        lead = await self.get_lead(lead_id)
        if lead.homeowner_id != homeowner_id:
            raise PermissionDeniedError("Only the lead owner can accept a quote", lead_id=lead_id)
        if await self.get_claim(lead_id, professional_id) is None:
            raise NotFoundError("LeadClaim", f"{lead_id}/{professional_id}")

        now = self.clock()
        result = await self.db.execute(
            update(Lead)
            .where(Lead.id == lead_id, Lead.status.in_(ACTIVE_LEAD_STATUSES))
            .values(
                status=LeadStatus.ACCEPTED,
                accepted_professional_id=professional_id,
                version=Lead.version + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            lead = await self.get_lead(lead_id)
            raise InvalidTransitionError(
                f"Cannot accept a quote on a lead that is {lead.status.value}",
                current=lead.status,
                attempted="accept_quote",
            )
        await self.db.commit()
        logger.info(
            f"Quote from {professional_id} accepted on lead {lead_id}",
            extra={"lead_id": lead_id, "professional_id": professional_id},
        )
        return await self._load(lead_id)

    # Claims

    async def get_claim(self, lead_id: uuid.UUID, professional_id: str) -> LeadClaim | None:
        result = await self.db.execute(
            select(LeadClaim)
            .where(LeadClaim.lead_id == lead_id, LeadClaim.professional_id == professional_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def create_claim(
        self,
        lead_id: uuid.UUID,
        professional_id: str,
        credits_cost: int,
        reservation_id: uuid.UUID | None = None,
    ) -> LeadClaim:
        """Insert the claim row; a duplicate (lead, professional) pair returns the existing row"""
        claim = LeadClaim(
            id=uuid.uuid4(),
            lead_id=lead_id,
            professional_id=professional_id,
            credits_cost=credits_cost,
            reservation_id=reservation_id,
            claimed_at=self.clock(),
            quote_submitted=False,
        )
        self.db.add(claim)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            existing = await self.get_claim(lead_id, professional_id)
            if existing is None:
                raise
            return existing
        return claim

    async def list_claims_for_lead(self, lead_id: uuid.UUID) -> list[LeadClaim]:
        result = await self.db.execute(
            select(LeadClaim).where(LeadClaim.lead_id == lead_id).order_by(LeadClaim.claimed_at)
        )
        return list(result.scalars().all())

    async def list_claims_for_professional(
        self,
        professional_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> list[LeadClaim]:
        result = await self.db.execute(
            select(LeadClaim)
            .where(LeadClaim.professional_id == professional_id)
            .order_by(LeadClaim.claimed_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def mark_quote_submitted(self, lead_id: uuid.UUID, professional_id: str) -> LeadClaim:
        lead = await self.get_lead(lead_id)
        if lead.status in TERMINAL_LEAD_STATUSES:
            raise NotClaimableError(lead_id, lead.status.value)
        claim = await self.get_claim(lead_id, professional_id)
        if claim is None:
            raise NotFoundError("LeadClaim", f"{lead_id}/{professional_id}")
        if not claim.quote_submitted:
            claim.quote_submitted = True
            claim.quote_submitted_at = self.clock()
            await self.db.commit()
        return claim

    # Marketplace

    async def list_marketplace(
        self,
        category: str | None = None,
        emirate: str | None = None,
    ) -> list[Lead]:
        """Public leads that can currently take claims"""
        now = self.clock()
        query = select(Lead).where(
            Lead.status == LeadStatus.OPEN,
            Lead.lead_type == LeadType.INDIRECT,
            Lead.claim_count < Lead.max_claims,
            Lead.expires_at > now,
        )
        if category:
            query = query.where(Lead.category == category)
        result = await self.db.execute(query.order_by(Lead.created_at.desc()))
        leads = list(result.scalars().all())
        if emirate:
            # location is JSON; filtered here to stay portable across backends
            leads = [lead for lead in leads if (lead.location or {}).get("emirate") == emirate]
        return leads

    async def list_claimed_lead_ids(self, professional_id: str, lead_ids: list[uuid.UUID]) -> set[uuid.UUID]:
        if not lead_ids:
            return set()
        result = await self.db.execute(
            select(LeadClaim.lead_id).where(
                LeadClaim.professional_id == professional_id,
                LeadClaim.lead_id.in_(lead_ids),
            )
        )
        return set(result.scalars().all())
