"""Tests for claim coordination across leads and credits"""

import asyncio

import pytest
from sqlalchemy import func, select

from homezy.config import settings
from homezy.db.models import (
    CreditReservation,
    CreditTransaction,
    CreditTransactionType,
    DirectLeadStatus,
    LeadClaim,
    LeadStatus,
    LeadType,
    ReservationStatus,
)
from homezy.errors import (
    AlreadyClaimedError,
    ConflictError,
    InsufficientCreditsError,
    InvalidTransitionError,
    NotClaimableError,
    PermissionDeniedError,
    QuotaExceededError,
)
from homezy.services import notifications
from homezy.services.claims import ClaimCoordinator
from homezy.services.credit_ledger import CreditLedger


async def test_claim_debits_credits_and_records_claim(coordinator, lead_fields, fund, notifier):
    lead = await coordinator.leads.create_lead("homeowner-1", **lead_fields())
    await fund("pro-a", paid=15)

    claim = await coordinator.claim_lead("pro-a", lead.id)

    assert claim.credits_cost == 10
    balance = await coordinator.ledger.get_balance("pro-a")
    assert balance.paid == 5
    assert balance.reserved == 0
    lead = await coordinator.leads.get_lead(lead.id)
    assert lead.claim_count == 1
    assert notifier.of_kind(notifications.LEAD_CLAIMED)[0][0] == "homeowner-1"


async def test_claim_with_insufficient_credits_changes_nothing(coordinator, lead_fields, fund):
    lead = await coordinator.leads.create_lead("homeowner-1", **lead_fields())
    await fund("pro-a", paid=15)
    await fund("pro-b", paid=5)
    await coordinator.claim_lead("pro-a", lead.id)

    with pytest.raises(InsufficientCreditsError) as exc_info:
        await coordinator.claim_lead("pro-b", lead.id)

    assert exc_info.value.shortfall == 5
    balance = await coordinator.ledger.get_balance("pro-b")
    assert balance.paid == 5
    lead = await coordinator.leads.get_lead(lead.id)
    assert lead.claim_count == 1


async def test_emergency_lead_costs_more(coordinator, lead_fields, fund):
    lead = await coordinator.leads.create_lead("homeowner-1", **lead_fields(budget_bracket="500-1k", urgency="emergency"))
    await fund("pro-a", paid=20)

    claim = await coordinator.claim_lead("pro-a", lead.id)

    assert claim.credits_cost == 8


async def test_repeated_claim_echoes_original_without_charging(coordinator, lead_fields, fund):
    lead = await coordinator.leads.create_lead("homeowner-1", **lead_fields())
    await fund("pro-a", paid=30)
    claim = await coordinator.claim_lead("pro-a", lead.id)

    with pytest.raises(AlreadyClaimedError) as exc_info:
        await coordinator.claim_lead("pro-a", lead.id)

    assert exc_info.value.claim.id == claim.id
    balance = await coordinator.ledger.get_balance("pro-a")
    assert balance.paid == 20
    lead = await coordinator.leads.get_lead(lead.id)
    assert lead.claim_count == 1


async def test_missing_claim_row_is_reconciled(coordinator, lead_fields, fund, test_db):
    lead = await coordinator.leads.create_lead("homeowner-1", **lead_fields())
    await fund("pro-a", paid=30)
    token = await coordinator.ledger.reserve("pro-a", 10, reference_id=str(lead.id))
    await coordinator.leads.increment_claim(lead.id)
    await coordinator.ledger.commit(token)
    # Crash before the claim row was written

    with pytest.raises(AlreadyClaimedError) as exc_info:
        await coordinator.claim_lead("pro-a", lead.id)

    assert exc_info.value.claim.reservation_id == token.id
    balance = await coordinator.ledger.get_balance("pro-a")
    assert balance.paid == 20


async def test_claim_on_full_lead_is_quota_exceeded(coordinator, lead_fields, fund):
    lead = await coordinator.leads.create_lead("homeowner-1", **lead_fields())
    for i in range(6):
        await fund(f"pro-{i}", paid=10)
    for i in range(5):
        await coordinator.claim_lead(f"pro-{i}", lead.id)

    with pytest.raises(QuotaExceededError):
        await coordinator.claim_lead("pro-5", lead.id)

    balance = await coordinator.ledger.get_balance("pro-5")
    assert (balance.paid, balance.reserved) == (10, 0)
    lead = await coordinator.leads.get_lead(lead.id)
    assert lead.status == LeadStatus.FULL


async def test_claim_on_cancelled_lead(coordinator, lead_fields, fund):
    lead = await coordinator.leads.create_lead("homeowner-1", **lead_fields())
    await coordinator.cancel_lead("homeowner-1", lead.id)
    await fund("pro-a", paid=10)

    with pytest.raises(NotClaimableError) as exc_info:
        await coordinator.claim_lead("pro-a", lead.id)
    assert exc_info.value.reason == "cancelled"


async def test_twenty_professionals_race_for_five_slots(session_factory, clock, lead_fields, fund):
    async with session_factory() as session:
        lead = await ClaimCoordinator(session, clock=clock).leads.create_lead("homeowner-1", **lead_fields())
    lead_id = lead.id
    professionals = [f"pro-{i:02d}" for i in range(20)]
    for professional_id in professionals:
        await fund(professional_id, paid=10)

    async def attempt(professional_id: str):
        async with session_factory() as session:
            try:
                await ClaimCoordinator(session, clock=clock).claim_lead(professional_id, lead_id)
                return "claimed"
            except QuotaExceededError:
                return "quota"

    outcomes = await asyncio.gather(*(attempt(p) for p in professionals))

    assert outcomes.count("claimed") == 5
    assert outcomes.count("quota") == 15

    async with session_factory() as session:
        coordinator = ClaimCoordinator(session, clock=clock)
        lead = await coordinator.leads.get_lead(lead_id)
        assert lead.claim_count == 5
        assert lead.status == LeadStatus.FULL

        claims = await coordinator.leads.list_claims_for_lead(lead_id)
        winners = {claim.professional_id for claim in claims}
        assert len(claims) == 5

        spend_count = (await session.execute(
            select(func.count()).select_from(CreditTransaction)
            .where(CreditTransaction.type == CreditTransactionType.SPEND)
        )).scalar_one()
        assert spend_count == 5

        for professional_id in professionals:
            balance = await coordinator.ledger.get_balance(professional_id)
            expected = 0 if professional_id in winners else 10
            assert (balance.paid, balance.reserved) == (expected, 0)

        pending = (await session.execute(
            select(func.count()).select_from(CreditReservation)
            .where(CreditReservation.status == ReservationStatus.PENDING)
        )).scalar_one()
        assert pending == 0


async def test_same_professional_concurrent_retries_charge_once(session_factory, clock, lead_fields, fund):
    async with session_factory() as session:
        lead = await ClaimCoordinator(session, clock=clock).leads.create_lead("homeowner-1", **lead_fields())
    lead_id = lead.id
    await fund("pro-a", paid=50)

    async def attempt():
        async with session_factory() as session:
            try:
                claim = await ClaimCoordinator(session, clock=clock).claim_lead("pro-a", lead_id)
                return claim.id
            except AlreadyClaimedError as e:
                return e.claim.id
            except Exception as e:
                return type(e).__name__

    outcomes = await asyncio.gather(*(attempt() for _ in range(4)))

    async with session_factory() as session:
        claims = (await session.execute(select(LeadClaim))).scalars().all()
        assert len(claims) == 1
        assert claims[0].id in outcomes
        ledger = CreditLedger(session, clock=clock)
        balance = await ledger.get_balance("pro-a")
        assert balance.paid == 40
        assert (await ledger.verify_account("pro-a"))["consistent"] is True


async def test_accept_direct_lead(coordinator, lead_fields, fund, notifier):
    lead = await coordinator.create_direct_lead("homeowner-1", "pro-p", **lead_fields())
    await fund("pro-p", paid=10)

    claim = await coordinator.accept_direct_lead("pro-p", lead.id)

    assert claim.professional_id == "pro-p"
    lead = await coordinator.leads.get_lead(lead.id)
    assert lead.direct_lead_status == DirectLeadStatus.ACCEPTED
    assert lead.status == LeadStatus.FULL
    balance = await coordinator.ledger.get_balance("pro-p")
    assert balance.paid == 0
    assert notifier.of_kind(notifications.DIRECT_LEAD_RECEIVED)[0][0] == "pro-p"
    assert notifier.of_kind(notifications.DIRECT_LEAD_ACCEPTED)[0][0] == "homeowner-1"


async def test_accept_direct_lead_without_credits_leaves_it_pending(coordinator, lead_fields, fund):
    lead = await coordinator.create_direct_lead("homeowner-1", "pro-p", **lead_fields())
    await fund("pro-p", paid=3)

    with pytest.raises(InsufficientCreditsError):
        await coordinator.accept_direct_lead("pro-p", lead.id)

    lead = await coordinator.leads.get_lead(lead.id)
    assert lead.direct_lead_status == DirectLeadStatus.PENDING
    assert lead.claim_count == 0


async def test_only_target_can_accept_direct_lead(coordinator, lead_fields, fund):
    lead = await coordinator.create_direct_lead("homeowner-1", "pro-p", **lead_fields())
    await fund("pro-q", paid=10)

    with pytest.raises(PermissionDeniedError):
        await coordinator.accept_direct_lead("pro-q", lead.id)
    with pytest.raises(NotClaimableError):
        await coordinator.claim_lead("pro-q", lead.id)


async def test_declined_direct_lead_opens_to_everyone(coordinator, lead_fields, fund, notifier):
    lead = await coordinator.create_direct_lead("homeowner-1", "pro-p", **lead_fields())

    lead = await coordinator.decline_direct_lead("pro-p", lead.id, "too far")

    assert lead.lead_type == LeadType.INDIRECT
    assert lead.direct_lead_status == DirectLeadStatus.CONVERTED
    assert lead.declined_at is not None
    assert lead.decline_reason == "too far"
    assert lead.max_claims == 5
    assert notifier.of_kind(notifications.DIRECT_LEAD_DECLINED)[0][2]["reason"] == "too far"

    with pytest.raises(InvalidTransitionError):
        await coordinator.accept_direct_lead("pro-p", lead.id)

    for professional_id in ("pro-x", "pro-y"):
        await fund(professional_id, paid=10)
        await coordinator.claim_lead(professional_id, lead.id)
    lead = await coordinator.leads.get_lead(lead.id)
    assert lead.claim_count == 2


async def test_cancel_refunds_claimants(coordinator, lead_fields, fund, notifier):
    lead = await coordinator.leads.create_lead("homeowner-1", **lead_fields())
    for professional_id in ("pro-a", "pro-b"):
        await fund(professional_id, free=10)
        await coordinator.claim_lead(professional_id, lead.id)

    lead, refunded = await coordinator.cancel_lead("homeowner-1", lead.id, "Changed my mind")

    assert lead.status == LeadStatus.CANCELLED
    assert refunded == 20
    for professional_id in ("pro-a", "pro-b"):
        balance = await coordinator.ledger.get_balance(professional_id)
        assert (balance.free, balance.paid) == (0, 10)
    assert len(notifier.of_kind(notifications.LEAD_CANCELLED)) == 2


async def test_cancel_after_accepted_quote_keeps_credits_spent(coordinator, lead_fields, fund):
    lead = await coordinator.leads.create_lead("homeowner-1", **lead_fields())
    await fund("pro-a", paid=10)
    await coordinator.claim_lead("pro-a", lead.id)
    await coordinator.submit_quote("pro-a", lead.id)
    await coordinator.accept_quote("homeowner-1", lead.id, "pro-a")

    lead, refunded = await coordinator.cancel_lead("homeowner-1", lead.id)

    assert lead.status == LeadStatus.CANCELLED
    assert refunded == 0
    balance = await coordinator.ledger.get_balance("pro-a")
    assert balance.paid == 0


async def test_submit_quote_marks_claim(coordinator, lead_fields, fund, clock):
    lead = await coordinator.leads.create_lead("homeowner-1", **lead_fields())
    await fund("pro-a", paid=10)
    await coordinator.claim_lead("pro-a", lead.id)

    claim = await coordinator.submit_quote("pro-a", lead.id)

    assert claim.quote_submitted is True
    assert claim.quote_submitted_at == clock.now


async def test_credits_are_conserved_across_claims_and_refunds(coordinator, lead_fields, fund):
    leads = [await coordinator.leads.create_lead("homeowner-1", **lead_fields()) for _ in range(3)]
    await fund("pro-a", paid=15, free=10)

    await coordinator.claim_lead("pro-a", leads[0].id)
    await coordinator.claim_lead("pro-a", leads[1].id)
    with pytest.raises(InsufficientCreditsError):
        await coordinator.claim_lead("pro-a", leads[2].id)
    await coordinator.cancel_lead("homeowner-1", leads[0].id)

    balance = await coordinator.ledger.get_balance("pro-a")
    transactions, _ = await coordinator.ledger.get_transactions("pro-a", limit=100)
    assert balance.total == sum(t.amount for t in transactions) == 15
    assert (await coordinator.ledger.verify_account("pro-a"))["consistent"] is True


async def _refund_count(session, professional_id: str) -> int:
    return (await session.execute(
        select(func.count()).select_from(CreditTransaction).where(
            CreditTransaction.professional_id == professional_id,
            CreditTransaction.type == CreditTransactionType.REFUND,
        )
    )).scalar_one()


async def test_claim_at_exact_expiry_is_not_claimable(coordinator, lead_fields, fund, clock):
    lead = await coordinator.leads.create_lead("homeowner-1", **lead_fields())
    await fund("pro-a", paid=10)
    clock.now = lead.expires_at

    with pytest.raises(NotClaimableError) as exc_info:
        await coordinator.claim_lead("pro-a", lead.id)

    assert not isinstance(exc_info.value, QuotaExceededError)
    assert exc_info.value.reason == "expired"
    balance = await coordinator.ledger.get_balance("pro-a")
    assert (balance.paid, balance.reserved) == (10, 0)


async def test_accepted_direct_lead_is_not_claimable_by_others(coordinator, lead_fields, fund):
    lead = await coordinator.create_direct_lead("homeowner-1", "pro-p", **lead_fields())
    await fund("pro-p", paid=10)
    await fund("pro-q", paid=10)
    await coordinator.accept_direct_lead("pro-p", lead.id)

    with pytest.raises(NotClaimableError) as exc_info:
        await coordinator.claim_lead("pro-q", lead.id)

    assert not isinstance(exc_info.value, QuotaExceededError)
    assert exc_info.value.reason == "direct_accepted"
    assert (await coordinator.ledger.get_balance("pro-q")).paid == 10


async def test_cancel_while_debit_in_flight_refunds_claimant(
    coordinator, session_factory, clock, lead_fields, fund, monkeypatch,
):
    lead = await coordinator.leads.create_lead("homeowner-1", **lead_fields())
    await fund("pro-a", paid=10)
    real_commit = coordinator.ledger.commit
    seen = []

    async def cancel_then_commit(token):
        async with session_factory() as session:
            _, refunded = await ClaimCoordinator(session, clock=clock).cancel_lead("homeowner-1", lead.id)
            seen.append(refunded)
        return await real_commit(token)

    monkeypatch.setattr(coordinator.ledger, "commit", cancel_then_commit)

    with pytest.raises(NotClaimableError) as exc_info:
        await coordinator.claim_lead("pro-a", lead.id)

    assert exc_info.value.reason == "cancelled"
    assert seen == [0]
    balance = await coordinator.ledger.get_balance("pro-a")
    assert (balance.paid, balance.reserved) == (10, 0)
    assert await coordinator.leads.get_claim(lead.id, "pro-a") is None
    assert await _refund_count(coordinator.db, "pro-a") == 1
    assert (await coordinator.ledger.verify_account("pro-a"))["consistent"] is True


async def test_cancel_after_debit_committed_refunds_once(
    coordinator, session_factory, clock, lead_fields, fund, monkeypatch,
):
    lead = await coordinator.leads.create_lead("homeowner-1", **lead_fields())
    await fund("pro-a", paid=10)
    real_commit = coordinator.ledger.commit
    seen = []

    async def commit_then_cancel(token):
        transactions = await real_commit(token)
        async with session_factory() as session:
            _, refunded = await ClaimCoordinator(session, clock=clock).cancel_lead("homeowner-1", lead.id)
            seen.append(refunded)
        return transactions

    monkeypatch.setattr(coordinator.ledger, "commit", commit_then_cancel)

    with pytest.raises(NotClaimableError):
        await coordinator.claim_lead("pro-a", lead.id)

    assert seen == [10]
    balance = await coordinator.ledger.get_balance("pro-a")
    assert (balance.paid, balance.reserved) == (10, 0)
    assert await _refund_count(coordinator.db, "pro-a") == 1
    assert (await coordinator.ledger.verify_account("pro-a"))["consistent"] is True

    # Retrying the claim neither rebuilds a claim nor refunds again
    with pytest.raises(NotClaimableError):
        await coordinator.claim_lead("pro-a", lead.id)
    assert await _refund_count(coordinator.db, "pro-a") == 1


async def test_interrupted_cancel_finishes_refunds_when_repeated(coordinator, lead_fields, fund, monkeypatch):
    lead = await coordinator.leads.create_lead("homeowner-1", **lead_fields())
    for professional_id in ("pro-a", "pro-b"):
        await fund(professional_id, paid=10)
        await coordinator.claim_lead(professional_id, lead.id)

    real_refund = coordinator.ledger.refund_reservation
    calls = []

    async def refund_then_drop(reservation_id, reason):
        calls.append(reservation_id)
        if len(calls) == 2:
            raise ConnectionError("database went away")
        return await real_refund(reservation_id, reason)

    monkeypatch.setattr(coordinator.ledger, "refund_reservation", refund_then_drop)
    with pytest.raises(ConnectionError):
        await coordinator.cancel_lead("homeowner-1", lead.id)
    monkeypatch.setattr(coordinator.ledger, "refund_reservation", real_refund)

    lead, refunded = await coordinator.cancel_lead("homeowner-1", lead.id)
    again, refunded_again = await coordinator.cancel_lead("homeowner-1", lead.id)

    assert lead.status == again.status == LeadStatus.CANCELLED
    assert refunded == refunded_again == 20
    for professional_id in ("pro-a", "pro-b"):
        balance = await coordinator.ledger.get_balance(professional_id)
        assert balance.paid == 10
        assert await _refund_count(coordinator.db, professional_id) == 1
        assert (await coordinator.ledger.verify_account(professional_id))["consistent"] is True


@pytest.mark.parametrize("failure", [asyncio.CancelledError, RuntimeError])
async def test_claim_failing_at_commit_gives_everything_back(coordinator, lead_fields, fund, monkeypatch, failure):
    lead = await coordinator.leads.create_lead("homeowner-1", **lead_fields())
    await fund("pro-a", paid=10)

    async def broken_commit(token):
        raise failure()

    monkeypatch.setattr(coordinator.ledger, "commit", broken_commit)
    with pytest.raises(failure):
        await coordinator.claim_lead("pro-a", lead.id)

    lead = await coordinator.leads.get_lead(lead.id)
    assert (lead.claim_count, lead.status) == (0, LeadStatus.OPEN)
    balance = await coordinator.ledger.get_balance("pro-a")
    assert (balance.paid, balance.reserved) == (10, 0)
    statuses = (await coordinator.db.execute(
        select(CreditReservation.status).where(CreditReservation.professional_id == "pro-a")
    )).scalars().all()
    assert statuses == [ReservationStatus.ROLLED_BACK]
    spends = (await coordinator.db.execute(
        select(func.count()).select_from(CreditTransaction).where(
            CreditTransaction.type == CreditTransactionType.SPEND,
        )
    )).scalar_one()
    assert spends == 0

    monkeypatch.undo()
    claim = await coordinator.claim_lead("pro-a", lead.id)
    assert claim.credits_cost == 10


async def test_reservation_conflict_is_retried(coordinator, lead_fields, fund, monkeypatch):
    lead = await coordinator.leads.create_lead("homeowner-1", **lead_fields())
    await fund("pro-a", paid=10)
    real_reserve = coordinator.ledger.reserve
    attempts = []

    async def busy_once(*args, **kwargs):
        attempts.append(1)
        if len(attempts) == 1:
            raise ConflictError("A debit for this reference is already in progress")
        return await real_reserve(*args, **kwargs)

    monkeypatch.setattr(coordinator.ledger, "reserve", busy_once)

    claim = await coordinator.claim_lead("pro-a", lead.id)

    assert len(attempts) == 2
    assert claim.professional_id == "pro-a"


async def test_persistent_reservation_conflict_asks_caller_to_retry(coordinator, lead_fields, fund, monkeypatch):
    lead = await coordinator.leads.create_lead("homeowner-1", **lead_fields())
    await fund("pro-a", paid=10)
    attempts = []

    async def always_busy(*args, **kwargs):
        attempts.append(1)
        raise ConflictError("A debit for this reference is already in progress")

    monkeypatch.setattr(coordinator.ledger, "reserve", always_busy)

    with pytest.raises(ConflictError) as exc_info:
        await coordinator.claim_lead("pro-a", lead.id)

    assert len(attempts) == settings.conflict_retry_attempts
    assert exc_info.value.message == "Concurrent update detected, please try again"
    assert (await coordinator.ledger.get_balance("pro-a")).paid == 10
    assert (await coordinator.leads.get_lead(lead.id)).claim_count == 0
