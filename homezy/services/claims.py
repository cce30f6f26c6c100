"""Claim coordination across the lead store and the credit ledger.

A claim touches two resources: a slot on the lead and credits on the
professional's account. The flow is reserve credits -> take the slot ->
commit the debit -> record the claim. Any failure before the debit is
committed gives both back; once the debit is committed the claim is valid,
and a missing claim row is rebuilt on the next attempt. If the lead is
cancelled while a debit is in flight, that debit is refunded instead.
"""

import logging
import uuid
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from homezy.config import settings
from homezy.db.models import Lead, LeadClaim, LeadStatus, ReservationStatus
from homezy.errors import AlreadyClaimedError, ConflictError, NotClaimableError
from homezy.services import notifications
from homezy.services.credit_ledger import CreditLedger, ReservationToken
from homezy.services.lead_store import LeadStore
from homezy.services.notifications import Notifier, safe_notify
from homezy.services.pricing import calculate_credit_cost
from homezy.utils.time import Clock, utcnow

logger = logging.getLogger(__name__)


class ClaimCoordinator:
    """Single entry point for actions that move a lead and credits together"""

    def __init__(self, db: AsyncSession, notifier: Notifier | None = None, clock: Clock = utcnow):
        self.db = db
        self.notifier = notifier
        self.clock = clock
        self.leads = LeadStore(db, clock=clock)
        self.ledger = CreditLedger(db, clock=clock)

    async def claim_lead(self, professional_id: str, lead_id: uuid.UUID) -> LeadClaim:
        """Claim a public lead, paying its credit cost"""
        await self.leads.get_lead(lead_id)
        await self._raise_if_claimed(professional_id, lead_id)

        lead = await self.leads.get_claimable(lead_id)
        cost = calculate_credit_cost(lead.budget_bracket, lead.urgency)
        token = await self._reserve(professional_id, lead_id, cost, f"Claimed lead: {lead.title}")
        claim = await self._settle(
            token,
            take_slot=lambda: self.leads.increment_claim(lead_id),
            give_back_slot=lambda: self.leads.release_claim(lead_id),
        )

        lead = await self.leads.get_lead(lead_id)
        logger.info(
            f"Professional {professional_id} claimed lead {lead_id} for {cost} credits "
            f"({lead.claim_count}/{lead.max_claims})",
            extra={"lead_id": lead_id, "professional_id": professional_id},
        )
        await safe_notify(self.notifier, lead.homeowner_id, notifications.LEAD_CLAIMED, {
            "lead_id": str(lead_id),
            "professional_id": professional_id,
            "claim_count": lead.claim_count,
        })
        return claim

    async def accept_direct_lead(self, professional_id: str, lead_id: uuid.UUID) -> LeadClaim:
        """Target professional accepts a pending direct lead, paying the normal claim cost"""
        lead = await self.leads.get_lead(lead_id)
        await self._raise_if_claimed(professional_id, lead_id)
        self.leads.check_direct_action(lead, professional_id, "accept")

        cost = calculate_credit_cost(lead.budget_bracket, lead.urgency)
        token = await self._reserve(professional_id, lead_id, cost, f"Accepted direct lead: {lead.title}")
        claim = await self._settle(
            token,
            take_slot=lambda: self.leads.accept_direct(lead_id, professional_id),
            give_back_slot=lambda: self.leads.release_direct_acceptance(lead_id),
        )

        lead = await self.leads.get_lead(lead_id)
        logger.info(
            f"Direct lead {lead_id} accepted by {professional_id}",
            extra={"lead_id": lead_id, "professional_id": professional_id},
        )
        await safe_notify(self.notifier, lead.homeowner_id, notifications.DIRECT_LEAD_ACCEPTED, {
            "lead_id": str(lead_id),
            "professional_id": professional_id,
        })
        return claim

    async def decline_direct_lead(
        self,
        professional_id: str,
        lead_id: uuid.UUID,
        reason: str | None = None,
    ) -> Lead:
        """Target professional passes; the lead goes straight to the marketplace"""
        lead = await self.leads.decline_direct(lead_id, professional_id, reason)
        await safe_notify(self.notifier, lead.homeowner_id, notifications.DIRECT_LEAD_DECLINED, {
            "lead_id": str(lead_id),
            "professional_id": professional_id,
            "reason": reason,
        })
        return lead

    async def _reserve(
        self,
        professional_id: str,
        lead_id: uuid.UUID,
        cost: int,
        description: str,
    ) -> ReservationToken:
        for attempt in range(1, settings.conflict_retry_attempts + 1):
            try:
                return await self.ledger.reserve(
                    professional_id,
                    cost,
                    reference_id=str(lead_id),
                    description=description,
                )
            except ConflictError:
                # A twin request from the same professional is mid-claim; if it finished, echo it
                await self._raise_if_claimed(professional_id, lead_id)
                logger.debug(
                    f"Reservation conflict for {professional_id} on lead {lead_id}, attempt {attempt}",
                    extra={"lead_id": lead_id, "professional_id": professional_id},
                )
        raise ConflictError(lead_id=lead_id, professional_id=professional_id)

    async def _raise_if_claimed(self, professional_id: str, lead_id: uuid.UUID) -> None:
        claim = await self.leads.get_claim(lead_id, professional_id)
        if claim is None:
            claim = await self._reconcile(professional_id, lead_id)
        if claim is not None:
            raise AlreadyClaimedError(lead_id, professional_id, claim)

    async def _reconcile(self, professional_id: str, lead_id: uuid.UUID) -> LeadClaim | None:
        """Rebuild a claim row whose debit was committed but never recorded"""
        reservation = await self.ledger.find_committed_reservation(professional_id, str(lead_id))
        if reservation is None:
            return None
        lead = await self.leads.get_lead(lead_id)
        if await self._refund_if_cancelled(lead, reservation.id):
            return None
        logger.warning(
            f"Reconciling missing claim for {professional_id} on lead {lead_id}",
            extra={"lead_id": lead_id, "professional_id": professional_id, "reservation_id": reservation.id},
        )
        return await self.leads.create_claim(
            lead_id,
            professional_id,
            reservation.amount,
            reservation_id=reservation.id,
        )

    async def _settle(
        self,
        token: ReservationToken,
        take_slot: Callable[[], Awaitable[Any]],
        give_back_slot: Callable[[], Awaitable[Any]],
    ) -> LeadClaim:
        lead_id = uuid.UUID(token.reference_id)
        try:
            await take_slot()
        except BaseException:
            await self._compensate(token)
            raise

        try:
            await self.ledger.commit(token)
        except BaseException:
            await self._compensate(token, give_back_slot)
            raise

        # A cancel that ran while the debit was in flight only refunds debits it could see
        lead = await self.leads.get_lead(lead_id)
        if await self._refund_if_cancelled(lead, token.id):
            raise NotClaimableError(lead_id, LeadStatus.CANCELLED.value)

        return await self.leads.create_claim(
            lead_id,
            token.professional_id,
            token.amount,
            reservation_id=token.id,
        )

    async def _compensate(
        self,
        token: ReservationToken,
        give_back_slot: Callable[[], Awaitable[Any]] | None = None,
    ) -> None:
        """Undo the steps of a failed claim; leftovers are caught by the reservation TTL"""
        try:
            await self.db.rollback()
            if give_back_slot is not None:
                await give_back_slot()
            await self.ledger.rollback(token)
        except Exception:
            logger.error(
                f"Failed to compensate claim on lead {token.reference_id}",
                extra={"professional_id": token.professional_id, "reservation_id": token.id},
                exc_info=True,
            )

    async def _refund_if_cancelled(self, lead: Lead, reservation_id: uuid.UUID) -> bool:
        """Refund a debit whose claim was never recorded because the lead got cancelled"""
        if lead.status != LeadStatus.CANCELLED:
            return False
        await self.ledger.refund_reservation(reservation_id, f"Refund for cancelled lead: {lead.title}")
        logger.info(
            f"Lead {lead.id} was cancelled mid-claim, refunded reservation {reservation_id}",
            extra={"lead_id": lead.id, "reservation_id": reservation_id},
        )
        return True

    # Homeowner-driven

    async def create_direct_lead(self, homeowner_id: str, target_professional_id: str, **fields: Any) -> Lead:
        lead = await self.leads.create_direct_lead(homeowner_id, target_professional_id, **fields)
        await safe_notify(self.notifier, target_professional_id, notifications.DIRECT_LEAD_RECEIVED, {
            "lead_id": str(lead.id),
            "title": lead.title,
            "expires_at": lead.direct_lead_expires_at.isoformat(),
        })
        return lead

    async def cancel_lead(
        self,
        homeowner_id: str,
        lead_id: uuid.UUID,
        reason: str | None = None,
    ) -> tuple[Lead, int]:
        """Cancel a lead, refunding every debit taken for it unless a quote was already accepted.

        Refunds are driven by the committed credit reservations against the
        lead rather than by claim rows, so a claim still in flight is covered
        too. Each reservation is refunded at most once, which makes the whole
        call safe to repeat after a partial failure. Returns the lead and the
        total credits refunded for it so far.
        """
        lead, previous = await self.leads.cancel(lead_id, homeowner_id, reason)
        refundable = lead.accepted_professional_id is None

        if refundable:
            committed = await self.ledger.list_reservations(str(lead_id), (ReservationStatus.COMMITTED,))
            for reservation in committed:
                await self.ledger.refund_reservation(
                    reservation.id,
                    f"Refund for cancelled lead: {lead.title}",
                )

        refunded = sum(
            reservation.amount
            for reservation in await self.ledger.list_reservations(str(lead_id), (ReservationStatus.REFUNDED,))
        )
        if refunded:
            logger.info(f"Refunded {refunded} credits on cancelled lead {lead_id}", extra={"lead_id": lead_id})

        if previous != LeadStatus.CANCELLED:
            for claim in await self.leads.list_claims_for_lead(lead_id):
                await safe_notify(self.notifier, claim.professional_id, notifications.LEAD_CANCELLED, {
                    "lead_id": str(lead_id),
                    "refunded": refundable,
                })
        return lead, refunded

    async def accept_quote(self, homeowner_id: str, lead_id: uuid.UUID, professional_id: str) -> Lead:
        lead = await self.leads.accept_quote(lead_id, homeowner_id, professional_id)
        await safe_notify(self.notifier, professional_id, notifications.QUOTE_ACCEPTED, {
            "lead_id": str(lead_id),
        })
        return lead

    async def submit_quote(self, professional_id: str, lead_id: uuid.UUID) -> LeadClaim:
        return await self.leads.mark_quote_submitted(lead_id, professional_id)
