"""Background sweeps: direct-lead reminders and conversion, lead expiry and credit housekeeping.

Every write goes through the same conditional updates the request path uses,
so any number of sweeper replicas can run alongside each other and alongside
live accept/decline calls; at most one of them wins each transition.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import NamedTuple

from sqlalchemy import distinct, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from homezy.config import settings
from homezy.db.models import CreditGrant
from homezy.services import notifications
from homezy.services.credit_ledger import CreditLedger
from homezy.services.lead_store import LeadStore
from homezy.services.notifications import Notifier, safe_notify
from homezy.utils.time import Clock, utcnow

logger = logging.getLogger(__name__)


class PendingDirectLead(NamedTuple):
    id: uuid.UUID
    homeowner_id: str
    target_professional_id: str
    expires_at: datetime


@dataclass
class SweepReport:
    reminders_sent: int = 0
    converted: int = 0
    failed: int = 0
    leads_expired: int = 0
    reservations_released: int = 0
    credits_expired: int = 0


class DirectLeadSweeper:
    """Walks pending direct leads and applies whatever their response window calls for"""

    def __init__(self, db: AsyncSession, notifier: Notifier | None = None, clock: Clock = utcnow):
        self.db = db
        self.notifier = notifier
        self.clock = clock
        self.leads = LeadStore(db, clock=clock)

    async def run_once(self) -> SweepReport:
        report = SweepReport()
        now = self.clock()
        horizon = now + timedelta(hours=settings.direct_lead_reminder1_hours)
        # Plain values: a rollback after one failure must not expire the rest
        candidates = [
            PendingDirectLead(
                lead.id,
                lead.homeowner_id,
                lead.target_professional_id,
                lead.direct_lead_expires_at,
            )
            for lead in await self.leads.list_pending_direct_leads(due_before=horizon)
        ]

        for lead in candidates:
            lead_id = lead.id
            try:
                await self._process(lead, report)
            except Exception:
                report.failed += 1
                await self.db.rollback()
                logger.error(f"Direct lead sweep failed for lead {lead_id}", extra={"lead_id": lead_id}, exc_info=True)

        if candidates:
            logger.info(
                f"Direct lead sweep: {len(candidates)} candidates, {report.reminders_sent} reminders, "
                f"{report.converted} converted, {report.failed} failed"
            )
        return report

    async def _process(self, lead: PendingDirectLead, report: SweepReport) -> None:
        lead_id = lead.id
        target = lead.target_professional_id
        homeowner = lead.homeowner_id
        remaining = lead.expires_at - self.clock()

        if remaining <= timedelta(0):
            if await self.leads.convert_if_window_elapsed(lead_id):
                report.converted += 1
                payload = {"lead_id": str(lead_id)}
                await safe_notify(self.notifier, homeowner, notifications.DIRECT_LEAD_CONVERTED, payload)
                await safe_notify(self.notifier, target, notifications.DIRECT_LEAD_CONVERTED, payload)
            return

        # The first reminder is still owed even if the sweep only runs inside the last hour
        reminders = [
            (1, settings.direct_lead_reminder1_hours, notifications.DIRECT_LEAD_REMINDER_1),
            (2, settings.direct_lead_reminder2_hours, notifications.DIRECT_LEAD_REMINDER_2),
        ]
        for number, hours, kind in reminders:
            if remaining > timedelta(hours=hours):
                continue
            if await self.leads.mark_reminder_sent(lead_id, number):
                report.reminders_sent += 1
                await safe_notify(self.notifier, target, kind, {
                    "lead_id": str(lead_id),
                    "hours_remaining": round(remaining.total_seconds() / 3600, 2),
                })


async def run_sweep(
    session_factory: async_sessionmaker,
    notifier: Notifier | None = None,
    clock: Clock = utcnow,
) -> SweepReport:
    """One full pass; each stage gets its own session so a failure in one never blocks the rest"""
    async with session_factory() as db:
        report = await DirectLeadSweeper(db, notifier=notifier, clock=clock).run_once()

    async with session_factory() as db:
        report.leads_expired = await LeadStore(db, clock=clock).expire_stale_leads()

    async with session_factory() as db:
        ledger = CreditLedger(db, clock=clock)
        report.reservations_released = await ledger.release_expired_reservations()

        now = clock()
        result = await db.execute(
            select(distinct(CreditGrant.professional_id)).where(
                CreditGrant.remaining > 0,
                CreditGrant.expires_at <= now,
            )
        )
        for professional_id in result.scalars().all():
            try:
                report.credits_expired += len(await ledger.expire_stale_free_credits(professional_id))
            except Exception:
                await db.rollback()
                logger.error(
                    f"Free credit expiry failed for {professional_id}",
                    extra={"professional_id": professional_id},
                    exc_info=True,
                )
    return report


class SweeperRunner:
    """Runs ``run_sweep`` every ``interval`` seconds until stopped"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        notifier: Notifier | None = None,
        interval: float | None = None,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.interval = interval or settings.sweep_interval_seconds
        self.clock = clock
        self._task: asyncio.Task | None = None
        self._stopping = asyncio.Event()

    async def _loop(self) -> None:
        logger.info(f"Sweeper started, interval {self.interval}s")
        while not self._stopping.is_set():
            try:
                await run_sweep(self.session_factory, notifier=self.notifier, clock=self.clock)
            except Exception:
                logger.error("Sweep pass failed", exc_info=True)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Sweeper stopped")

    def start(self) -> None:
        if self._task is None:
            self._stopping.clear()
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None


async def main() -> None:
    from homezy.db.database import AsyncSessionLocal, close_db, init_db
    from homezy.services.notifications import get_notifier
    from homezy.utils.logging import setup_logging

    setup_logging()
    await init_db()
    runner = SweeperRunner(AsyncSessionLocal, notifier=get_notifier())
    runner.start()
    try:
        await asyncio.Event().wait()
    finally:
        await runner.stop()
        await close_db()


if __name__ == "__main__":
    asyncio.run(main())
