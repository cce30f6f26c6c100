"""Tests for the background sweeps"""

import asyncio
from datetime import timedelta

from homezy.db.models import CreditType, DirectLeadStatus, LeadStatus, LeadType
from homezy.errors import InvalidTransitionError
from homezy.services import notifications
from homezy.services.claims import ClaimCoordinator
from homezy.services.credit_ledger import CreditLedger
from homezy.services.lead_store import LeadStore
from homezy.services.sweeper import DirectLeadSweeper, SweeperRunner, run_sweep
from homezy.utils.time import FrozenClock


async def test_no_reminder_before_twelve_hours(test_db, store, lead_fields, clock, notifier):
    await store.create_direct_lead("homeowner-1", "pro-p", **lead_fields())
    clock.advance(hours=11, minutes=59)

    report = await DirectLeadSweeper(test_db, notifier=notifier, clock=clock).run_once()

    assert report.reminders_sent == 0
    assert notifier.of_kind(notifications.DIRECT_LEAD_REMINDER_1) == []


async def test_first_reminder_sent_once_at_twelve_hours(test_db, store, lead_fields, clock, notifier):
    lead = await store.create_direct_lead("homeowner-1", "pro-p", **lead_fields())
    clock.advance(hours=12)
    sweeper = DirectLeadSweeper(test_db, notifier=notifier, clock=clock)

    first = await sweeper.run_once()
    second = await sweeper.run_once()

    assert (first.reminders_sent, second.reminders_sent) == (1, 0)
    reminders = notifier.of_kind(notifications.DIRECT_LEAD_REMINDER_1)
    assert len(reminders) == 1
    assert reminders[0][0] == "pro-p"
    lead = await store.get_lead(lead.id)
    assert lead.reminder1_sent is True
    assert lead.reminder2_sent is False
    assert lead.direct_lead_status == DirectLeadStatus.PENDING


async def test_second_reminder_in_final_hour(test_db, store, lead_fields, clock, notifier):
    await store.create_direct_lead("homeowner-1", "pro-p", **lead_fields())
    sweeper = DirectLeadSweeper(test_db, notifier=notifier, clock=clock)
    clock.advance(hours=12)
    await sweeper.run_once()
    clock.advance(hours=11, minutes=30)
    await sweeper.run_once()

    assert len(notifier.of_kind(notifications.DIRECT_LEAD_REMINDER_1)) == 1
    assert len(notifier.of_kind(notifications.DIRECT_LEAD_REMINDER_2)) == 1


async def test_late_sweep_still_sends_first_reminder(test_db, store, lead_fields, clock, notifier):
    await store.create_direct_lead("homeowner-1", "pro-p", **lead_fields())
    clock.advance(hours=23, minutes=30)

    report = await DirectLeadSweeper(test_db, notifier=notifier, clock=clock).run_once()

    assert report.reminders_sent == 2


async def test_conversion_at_twenty_four_hours(test_db, store, lead_fields, clock, notifier):
    lead = await store.create_direct_lead("homeowner-1", "pro-p", **lead_fields())
    clock.advance(hours=24)

    report = await DirectLeadSweeper(test_db, notifier=notifier, clock=clock).run_once()

    assert report.converted == 1
    lead = await store.get_lead(lead.id)
    assert lead.lead_type == LeadType.INDIRECT
    assert lead.direct_lead_status == DirectLeadStatus.CONVERTED
    assert lead.converted_to_public_at == clock.now
    assert lead.max_claims == 5
    recipients = {event[0] for event in notifier.of_kind(notifications.DIRECT_LEAD_CONVERTED)}
    assert recipients == {"homeowner-1", "pro-p"}


async def test_concurrent_sweepers_convert_exactly_once(session_factory, lead_fields, clock, notifier):
    async with session_factory() as session:
        lead = await LeadStore(session, clock=clock).create_direct_lead("homeowner-1", "pro-p", **lead_fields())
    lead_id = lead.id
    clock.advance(hours=24)

    async def sweep():
        async with session_factory() as session:
            return await DirectLeadSweeper(session, notifier=notifier, clock=clock).run_once()

    reports = await asyncio.gather(sweep(), sweep())

    assert sum(report.converted for report in reports) == 1
    assert len(notifier.of_kind(notifications.DIRECT_LEAD_CONVERTED)) == 2
    async with session_factory() as session:
        lead = await LeadStore(session, clock=clock).get_lead(lead_id)
        assert lead.direct_lead_status == DirectLeadStatus.CONVERTED


async def test_accepted_direct_lead_is_left_alone(test_db, store, lead_fields, clock, notifier):
    lead = await store.create_direct_lead("homeowner-1", "pro-p", **lead_fields())
    await store.accept_direct(lead.id, "pro-p")
    clock.advance(hours=25)

    report = await DirectLeadSweeper(test_db, notifier=notifier, clock=clock).run_once()

    assert (report.reminders_sent, report.converted) == (0, 0)
    lead = await store.get_lead(lead.id)
    assert lead.direct_lead_status == DirectLeadStatus.ACCEPTED


async def test_failing_notifier_does_not_block_conversion(test_db, store, lead_fields, clock):
    class BrokenNotifier(notifications.Notifier):
        async def notify(self, recipient_id, kind, payload):
            raise RuntimeError("delivery down")

    lead = await store.create_direct_lead("homeowner-1", "pro-p", **lead_fields())
    clock.advance(hours=24)

    report = await DirectLeadSweeper(test_db, notifier=BrokenNotifier(), clock=clock).run_once()

    assert report.converted == 1
    assert report.failed == 0
    lead = await store.get_lead(lead.id)
    assert lead.lead_type == LeadType.INDIRECT


async def test_run_sweep_housekeeping(session_factory, lead_fields, clock, notifier):
    async with session_factory() as session:
        store = LeadStore(session, clock=clock)
        await store.create_lead("homeowner-1", **lead_fields())
        ledger = CreditLedger(session, clock=clock)
        await ledger.grant("pro-a", 10, CreditType.FREE, "Bonus")
        await ledger.grant("pro-b", 10, CreditType.PAID, "Purchase")
        await ledger.reserve("pro-b", 10, reference_id="lead-x")

    clock.advance(days=95)
    report = await run_sweep(session_factory, notifier=notifier, clock=clock)

    assert report.leads_expired == 1
    assert report.reservations_released == 1
    assert report.credits_expired == 1
    async with session_factory() as session:
        ledger = CreditLedger(session, clock=clock)
        assert (await ledger.get_balance("pro-a")).free == 0
        assert (await ledger.get_balance("pro-b")).reserved == 0


async def test_runner_start_and_stop(session_factory, clock, notifier):
    runner = SweeperRunner(session_factory, notifier=notifier, interval=3600, clock=clock)

    runner.start()
    await asyncio.sleep(0.1)
    await runner.stop()

    assert runner._task is None


async def test_expired_lead_status_after_sweep(session_factory, lead_fields, clock):
    async with session_factory() as session:
        lead = await LeadStore(session, clock=clock).create_lead("homeowner-1", **lead_fields())
    clock.advance(days=8)

    await run_sweep(session_factory, clock=clock)

    async with session_factory() as session:
        lead = await LeadStore(session, clock=clock).get_lead(lead.id)
        assert lead.status == LeadStatus.EXPIRED


async def test_conversion_racing_acceptance_has_one_winner(session_factory, lead_fields, clock, fund):
    expected_paid = 0
    for _ in range(4):
        async with session_factory() as session:
            lead = await LeadStore(session, clock=clock).create_direct_lead("homeowner-1", "pro-p", **lead_fields())
        lead_id = lead.id
        await fund("pro-p", paid=10)
        expected_paid += 10
        accept_clock = FrozenClock(lead.direct_lead_expires_at - timedelta(seconds=1))
        sweep_clock = FrozenClock(lead.direct_lead_expires_at)

        async def accept():
            async with session_factory() as session:
                try:
                    await ClaimCoordinator(session, clock=accept_clock).accept_direct_lead("pro-p", lead_id)
                except InvalidTransitionError:
                    return False
                return True

        async def sweep():
            async with session_factory() as session:
                report = await DirectLeadSweeper(session, clock=sweep_clock).run_once()
                return report.converted == 1

        accepted, converted = await asyncio.gather(accept(), sweep())

        assert accepted != converted
        async with session_factory() as session:
            coordinator = ClaimCoordinator(session, clock=accept_clock)
            lead = await coordinator.leads.get_lead(lead_id)
            claim = await coordinator.leads.get_claim(lead_id, "pro-p")
            if accepted:
                expected_paid -= 10
                assert (lead.lead_type, lead.direct_lead_status) == (LeadType.DIRECT, DirectLeadStatus.ACCEPTED)
                assert claim is not None
            else:
                assert (lead.lead_type, lead.direct_lead_status) == (LeadType.INDIRECT, DirectLeadStatus.CONVERTED)
                assert claim is None
            balance = await coordinator.ledger.get_balance("pro-p")
            assert (balance.paid, balance.reserved) == (expected_paid, 0)
            assert (await coordinator.ledger.verify_account("pro-p"))["consistent"] is True
