"""Credit ledger: typed balances, append-only transactions and two-phase debits.

Balances on ``credit_accounts`` are a cached projection; ``credit_transactions``
is the source of truth and every balance change appends to it in the same
database transaction. Claims debit through ``reserve`` -> ``commit`` (or
``rollback``); a pending reservation holds part of the available balance and
is released automatically once its TTL passes.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from homezy.config import settings
from homezy.db.models import (
    CreditAccount,
    CreditGrant,
    CreditReservation,
    CreditTransaction,
    CreditTransactionType,
    CreditType,
    ReservationStatus,
)
from homezy.errors import (
    ConflictError,
    InsufficientCreditsError,
    InvalidTransitionError,
    NotFoundError,
    ValidationFailedError,
)
from homezy.services.pricing import get_package
from homezy.utils.time import Clock, add_months, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReservationToken:
    """Handle for a staged debit"""
    id: uuid.UUID
    professional_id: str
    amount: int
    reference_id: str | None
    expires_at: datetime


@dataclass(frozen=True)
class ExpiringGrant:
    grant_id: uuid.UUID
    amount: int
    expires_at: datetime


@dataclass(frozen=True)
class CreditBalance:
    professional_id: str
    free: int
    paid: int
    reserved: int
    expiring_soon: list[ExpiringGrant] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.free + self.paid

    @property
    def available(self) -> int:
        return self.total - self.reserved


class CreditLedger:
    """The only service permitted to change a professional's credit balances"""

    def __init__(self, db: AsyncSession, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    # Accounts

    async def _load_account(self, professional_id: str) -> CreditAccount | None:
        result = await self.db.execute(
            select(CreditAccount)
            .where(CreditAccount.professional_id == professional_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_account(self, professional_id: str) -> CreditAccount:
        """Fetch the account, opening an empty one on first use"""
        account = await self._load_account(professional_id)
        if account is not None:
            return account

        now = self.clock()
        self.db.add(CreditAccount(
            professional_id=professional_id,
            free_credits=0,
            paid_credits=0,
            reserved_credits=0,
            lifetime_earned=0,
            lifetime_spent=0,
            version=1,
            created_at=now,
            updated_at=now,
        ))
        try:
            await self.db.commit()
        except IntegrityError:
            # Opened concurrently by another request
            await self.db.rollback()
            return await self._load_account(professional_id)

        logger.info(f"Opened credit account for {professional_id}", extra={"professional_id": professional_id})
        if settings.welcome_bonus_credits > 0:
            await self.grant(
                professional_id,
                settings.welcome_bonus_credits,
                CreditType.FREE,
                "Welcome bonus",
            )
        return await self._load_account(professional_id)

    async def get_balance(self, professional_id: str) -> CreditBalance:
        """Current balance with expired free credits and stale holds already removed"""
        await self.get_account(professional_id)
        await self.expire_stale_free_credits(professional_id)
        await self.release_expired_reservations(professional_id)
        account = await self._load_account(professional_id)

        now = self.clock()
        result = await self.db.execute(
            select(CreditGrant)
            .where(
                CreditGrant.professional_id == professional_id,
                CreditGrant.remaining > 0,
                CreditGrant.expires_at > now,
                CreditGrant.expires_at <= now + timedelta(days=settings.expiring_soon_days),
            )
            .order_by(CreditGrant.expires_at, CreditGrant.granted_at)
        )
        expiring = [
            ExpiringGrant(grant_id=g.id, amount=g.remaining, expires_at=g.expires_at)
            for g in result.scalars().all()
        ]
        return CreditBalance(
            professional_id=professional_id,
            free=account.free_credits,
            paid=account.paid_credits,
            reserved=account.reserved_credits,
            expiring_soon=expiring,
        )

    # Credits in

    async def grant(
        self,
        professional_id: str,
        amount: int,
        credit_type: CreditType,
        reason: str,
        transaction_type: CreditTransactionType | None = None,
        reference_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> CreditTransaction:
        """Add credits to one bucket; free credits get their own expiring grant"""
        if amount <= 0:
            raise ValidationFailedError("Grant amount must be positive", amount=amount)
        if transaction_type is None:
            transaction_type = (
                CreditTransactionType.PURCHASE if credit_type == CreditType.PAID
                else CreditTransactionType.BONUS
            )
        if transaction_type in (CreditTransactionType.SPEND, CreditTransactionType.EXPIRY):
            raise ValidationFailedError(f"Cannot grant with transaction type {transaction_type.value}")

        await self.get_account(professional_id)
        now = self.clock()
        bucket = CreditAccount.free_credits if credit_type == CreditType.FREE else CreditAccount.paid_credits
        values = {
            bucket.key: bucket + amount,
            "version": CreditAccount.version + 1,
            "updated_at": now,
        }
        if transaction_type in (CreditTransactionType.PURCHASE, CreditTransactionType.BONUS):
            values["lifetime_earned"] = CreditAccount.lifetime_earned + amount
        if transaction_type == CreditTransactionType.PURCHASE:
            values["last_purchase_at"] = now

        await self.db.execute(
            update(CreditAccount)
            .where(CreditAccount.professional_id == professional_id)
            .values(values)
            .execution_options(synchronize_session=False)
        )
        # The row is write-locked until commit, so the read-back is exact
        account = await self._load_account(professional_id)
        after = getattr(account, bucket.key)

        transaction = CreditTransaction(
            id=uuid.uuid4(),
            professional_id=professional_id,
            type=transaction_type,
            amount=amount,
            credit_type=credit_type,
            balance_before=after - amount,
            balance_after=after,
            description=reason,
            reference_id=reference_id,
            extra_metadata=metadata or {},
            created_at=now,
        )
        self.db.add(transaction)
        if credit_type == CreditType.FREE:
            self.db.add(CreditGrant(
                id=uuid.uuid4(),
                professional_id=professional_id,
                amount=amount,
                remaining=amount,
                granted_at=now,
                expires_at=add_months(now, settings.free_credit_expiry_months),
                transaction_id=transaction.id,
                created_at=now,
                updated_at=now,
            ))
        await self.db.commit()

        logger.info(
            f"Granted {amount} {credit_type.value} credits to {professional_id} ({transaction_type.value})",
            extra={"professional_id": professional_id},
        )
        return transaction

    async def refund(
        self,
        professional_id: str,
        amount: int,
        reason: str,
        reference_id: str | None = None,
    ) -> CreditTransaction:
        """Refunds always land in the paid bucket so they never expire"""
        return await self.grant(
            professional_id,
            amount,
            CreditType.PAID,
            reason,
            transaction_type=CreditTransactionType.REFUND,
            reference_id=reference_id,
        )

    async def purchase_package(
        self,
        professional_id: str,
        package_id: str,
        payment_reference: str | None = None,
    ) -> list[CreditTransaction]:
        """Record a completed package purchase: paid credits plus any bonus as free credits"""
        package = get_package(package_id)
        metadata = {"package_id": package.id, "price_aed": package.price_aed}
        transactions = [
            await self.grant(
                professional_id,
                package.credits,
                CreditType.PAID,
                f"Purchased {package.label} package",
                transaction_type=CreditTransactionType.PURCHASE,
                reference_id=payment_reference,
                metadata=metadata,
            )
        ]
        if package.bonus > 0:
            transactions.append(await self.grant(
                professional_id,
                package.bonus,
                CreditType.FREE,
                f"{package.label} package bonus",
                transaction_type=CreditTransactionType.BONUS,
                reference_id=payment_reference,
                metadata=metadata,
            ))
        return transactions

    # Two-phase debit

    async def reserve(
        self,
        professional_id: str,
        amount: int,
        reference_id: str | None = None,
        description: str = "",
    ) -> ReservationToken:
        """Hold ``amount`` of the available balance; no transaction is written yet"""
        if amount <= 0:
            raise ValidationFailedError("Reservation amount must be positive", amount=amount)

        await self.get_account(professional_id)
        await self.expire_stale_free_credits(professional_id)
        await self.release_expired_reservations(professional_id)

        now = self.clock()
        result = await self.db.execute(
            update(CreditAccount)
            .where(
                CreditAccount.professional_id == professional_id,
                CreditAccount.free_credits + CreditAccount.paid_credits
                - CreditAccount.reserved_credits >= amount,
            )
            .values(
                reserved_credits=CreditAccount.reserved_credits + amount,
                version=CreditAccount.version + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            account = await self._load_account(professional_id)
            logger.info(
                f"Insufficient credits for {professional_id}: need {amount}, have {account.available_credits}",
                extra={"professional_id": professional_id},
            )
            raise InsufficientCreditsError(professional_id, amount, account.available_credits)

        reservation = CreditReservation(
            id=uuid.uuid4(),
            professional_id=professional_id,
            amount=amount,
            status=ReservationStatus.PENDING,
            reference_id=reference_id,
            description=description,
            expires_at=now + timedelta(seconds=settings.reservation_ttl_seconds),
            created_at=now,
            updated_at=now,
        )
        self.db.add(reservation)
        try:
            await self.db.commit()
        except IntegrityError:
            # Another live reservation holds this reference; the hold above is rolled back with it
            await self.db.rollback()
            raise ConflictError(
                "A debit for this reference is already in progress",
                professional_id=professional_id,
                reference_id=reference_id,
            )

        logger.debug(
            f"Reserved {amount} credits for {professional_id}",
            extra={"professional_id": professional_id, "reservation_id": reservation.id},
        )
        return ReservationToken(
            id=reservation.id,
            professional_id=professional_id,
            amount=amount,
            reference_id=reference_id,
            expires_at=reservation.expires_at,
        )

    async def _load_reservation(self, reservation_id: uuid.UUID) -> CreditReservation:
        result = await self.db.execute(
            select(CreditReservation)
            .where(CreditReservation.id == reservation_id)
            .execution_options(populate_existing=True)
        )
        reservation = result.scalar_one_or_none()
        if reservation is None:
            raise NotFoundError("CreditReservation", reservation_id)
        return reservation

    async def _active_grants(self, professional_id: str, now: datetime) -> list[CreditGrant]:
        if settings.free_credit_spend_order == "granted":
            order = (CreditGrant.granted_at, CreditGrant.id)
        else:
            order = (CreditGrant.expires_at, CreditGrant.granted_at, CreditGrant.id)
        result = await self.db.execute(
            select(CreditGrant)
            .where(
                CreditGrant.professional_id == professional_id,
                CreditGrant.remaining > 0,
                CreditGrant.expires_at > now,
            )
            .order_by(*order)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def commit(self, token: ReservationToken) -> list[CreditTransaction]:
        """Turn a reservation into spend transactions, free credits first (oldest grant first)"""
        await self.expire_stale_free_credits(token.professional_id)

        for attempt in range(1, settings.conflict_retry_attempts + 1):
            reservation = await self._load_reservation(token.id)
            if reservation.status == ReservationStatus.COMMITTED:
                return await self._transactions_for_reservation(token)
            if reservation.status != ReservationStatus.PENDING:
                raise InvalidTransitionError(
                    f"Reservation is {reservation.status.value}",
                    current=reservation.status,
                    attempted="commit",
                )
            now = self.clock()
            if reservation.expires_at <= now:
                await self.release_expired_reservations(token.professional_id)
                raise InvalidTransitionError(
                    "Reservation expired before it was committed",
                    current=ReservationStatus.EXPIRED,
                    attempted="commit",
                )

            account = await self._load_account(token.professional_id)
            grants = await self._active_grants(token.professional_id, now)

            free_take = min(token.amount, account.free_credits, sum(g.remaining for g in grants))
            paid_take = token.amount - free_take
            if paid_take > account.paid_credits:
                raise InsufficientCreditsError(token.professional_id, token.amount, account.total_credits)

            takes: list[tuple[uuid.UUID, int]] = []
            outstanding = free_take
            for grant in grants:
                if outstanding == 0:
                    break
                take = min(grant.remaining, outstanding)
                takes.append((grant.id, take))
                outstanding -= take

            result = await self.db.execute(
                update(CreditAccount)
                .where(
                    CreditAccount.professional_id == token.professional_id,
                    CreditAccount.version == account.version,
                )
                .values(
                    free_credits=CreditAccount.free_credits - free_take,
                    paid_credits=CreditAccount.paid_credits - paid_take,
                    reserved_credits=CreditAccount.reserved_credits - token.amount,
                    lifetime_spent=CreditAccount.lifetime_spent + token.amount,
                    last_spend_at=now,
                    version=CreditAccount.version + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            won = result.rowcount == 1
            for grant_id, take in takes:
                if not won:
                    break
                result = await self.db.execute(
                    update(CreditGrant)
                    .where(CreditGrant.id == grant_id, CreditGrant.remaining >= take)
                    .values(remaining=CreditGrant.remaining - take, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                won = result.rowcount == 1
            if won:
                result = await self.db.execute(
                    update(CreditReservation)
                    .where(
                        CreditReservation.id == token.id,
                        CreditReservation.status == ReservationStatus.PENDING,
                    )
                    .values(status=ReservationStatus.COMMITTED, resolved_at=now, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                won = result.rowcount == 1
            if not won:
                await self.db.rollback()
                logger.debug(
                    f"Credit commit conflict for {token.professional_id}, attempt {attempt}",
                    extra={"professional_id": token.professional_id, "reservation_id": token.id},
                )
                continue

            metadata = {"reservation_id": str(token.id)}
            transactions = []
            for credit_type, take, before in (
                (CreditType.FREE, free_take, account.free_credits),
                (CreditType.PAID, paid_take, account.paid_credits),
            ):
                if take == 0:
                    continue
                transactions.append(CreditTransaction(
                    id=uuid.uuid4(),
                    professional_id=token.professional_id,
                    type=CreditTransactionType.SPEND,
                    amount=-take,
                    credit_type=credit_type,
                    balance_before=before,
                    balance_after=before - take,
                    description=reservation.description or "Credit spend",
                    reference_id=token.reference_id,
                    extra_metadata=metadata,
                    created_at=now,
                ))
            self.db.add_all(transactions)
            await self.db.commit()

            logger.info(
                f"Spent {token.amount} credits for {token.professional_id} "
                f"({free_take} free, {paid_take} paid)",
                extra={"professional_id": token.professional_id, "reservation_id": token.id},
            )
            return transactions

        raise ConflictError(professional_id=token.professional_id, reservation_id=token.id)

    async def find_committed_reservation(
        self,
        professional_id: str,
        reference_id: str,
    ) -> CreditReservation | None:
        result = await self.db.execute(
            select(CreditReservation)
            .where(
                CreditReservation.professional_id == professional_id,
                CreditReservation.reference_id == reference_id,
                CreditReservation.status == ReservationStatus.COMMITTED,
            )
            .order_by(CreditReservation.resolved_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_reservations(
        self,
        reference_id: str,
        statuses: tuple[ReservationStatus, ...],
    ) -> list[CreditReservation]:
        """Reservations of every professional taken against one reference (e.g. a lead)"""
        result = await self.db.execute(
            select(CreditReservation)
            .where(
                CreditReservation.reference_id == reference_id,
                CreditReservation.status.in_(statuses),
            )
            .order_by(CreditReservation.created_at, CreditReservation.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def refund_reservation(self, reservation_id: uuid.UUID, reason: str) -> CreditTransaction | None:
        """Give back a committed debit as paid credits, at most once per reservation.

        The status flip and the refund transaction commit together, so a call
        that fails halfway leaves the reservation committed and can be re-run.
        Returns None when the reservation was already refunded.
        """
        reservation = await self._load_reservation(reservation_id)
        now = self.clock()
        result = await self.db.execute(
            update(CreditReservation)
            .where(
                CreditReservation.id == reservation_id,
                CreditReservation.status == ReservationStatus.COMMITTED,
            )
            .values(status=ReservationStatus.REFUNDED, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            return None

        return await self.grant(
            reservation.professional_id,
            reservation.amount,
            CreditType.PAID,
            reason,
            transaction_type=CreditTransactionType.REFUND,
            reference_id=reservation.reference_id,
            metadata={"reservation_id": str(reservation.id)},
        )

    async def _transactions_for_reservation(self, token: ReservationToken) -> list[CreditTransaction]:
        result = await self.db.execute(
            select(CreditTransaction)
            .where(
                CreditTransaction.professional_id == token.professional_id,
                CreditTransaction.type == CreditTransactionType.SPEND,
                CreditTransaction.reference_id == token.reference_id,
            )
            .order_by(CreditTransaction.created_at)
        )
        return [
            t for t in result.scalars().all()
            if (t.extra_metadata or {}).get("reservation_id") == str(token.id)
        ]

    async def rollback(self, token: ReservationToken) -> bool:
        """Release a pending reservation; a no-op once it is resolved"""
        released = await self._release(token.id, token.professional_id, token.amount, ReservationStatus.ROLLED_BACK)
        await self.db.commit()
        if released:
            logger.info(
                f"Rolled back reservation of {token.amount} credits for {token.professional_id}",
                extra={"professional_id": token.professional_id, "reservation_id": token.id},
            )
        return released

    async def _release(
        self,
        reservation_id: uuid.UUID,
        professional_id: str,
        amount: int,
        status: ReservationStatus,
    ) -> bool:
        now = self.clock()
        result = await self.db.execute(
            update(CreditReservation)
            .where(
                CreditReservation.id == reservation_id,
                CreditReservation.status == ReservationStatus.PENDING,
            )
            .values(status=status, resolved_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        await self.db.execute(
            update(CreditAccount)
            .where(CreditAccount.professional_id == professional_id)
            .values(
                reserved_credits=CreditAccount.reserved_credits - amount,
                version=CreditAccount.version + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return True

    async def release_expired_reservations(self, professional_id: str | None = None) -> int:
        """Roll back every pending reservation older than its TTL"""
        now = self.clock()
        query = select(
            CreditReservation.id,
            CreditReservation.professional_id,
            CreditReservation.amount,
        ).where(
            CreditReservation.status == ReservationStatus.PENDING,
            CreditReservation.expires_at <= now,
        )
        if professional_id is not None:
            query = query.where(CreditReservation.professional_id == professional_id)
        rows = (await self.db.execute(query)).all()

        released = 0
        for reservation_id, owner_id, amount in rows:
            if await self._release(reservation_id, owner_id, amount, ReservationStatus.EXPIRED):
                released += 1
                logger.warning(
                    f"Reservation of {amount} credits for {owner_id} expired uncommitted",
                    extra={"professional_id": owner_id, "reservation_id": reservation_id},
                )
            await self.db.commit()
        return released

    # Expiry

    async def expire_stale_free_credits(self, professional_id: str | None = None) -> list[CreditTransaction]:
        """Zero free-credit grants past expiry, writing one expiry transaction per grant"""
        now = self.clock()
        query = select(
            CreditGrant.id,
            CreditGrant.professional_id,
            CreditGrant.remaining,
        ).where(
            CreditGrant.remaining > 0,
            CreditGrant.expires_at <= now,
        )
        if professional_id is not None:
            query = query.where(CreditGrant.professional_id == professional_id)
        rows = (await self.db.execute(query.order_by(CreditGrant.expires_at))).all()

        transactions = []
        for grant_id, owner_id, remaining in rows:
            result = await self.db.execute(
                update(CreditGrant)
                .where(CreditGrant.id == grant_id, CreditGrant.remaining == remaining)
                .values(remaining=0, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                # Spent or expired concurrently; the next pass sees the new remainder
                await self.db.rollback()
                continue
            await self.db.execute(
                update(CreditAccount)
                .where(CreditAccount.professional_id == owner_id)
                .values(
                    free_credits=CreditAccount.free_credits - remaining,
                    version=CreditAccount.version + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            account = await self._load_account(owner_id)
            transaction = CreditTransaction(
                id=uuid.uuid4(),
                professional_id=owner_id,
                type=CreditTransactionType.EXPIRY,
                amount=-remaining,
                credit_type=CreditType.FREE,
                balance_before=account.free_credits + remaining,
                balance_after=account.free_credits,
                description="Free credits expired",
                reference_id=str(grant_id),
                extra_metadata={"grant_id": str(grant_id)},
                created_at=now,
            )
            self.db.add(transaction)
            await self.db.commit()
            transactions.append(transaction)
            logger.info(
                f"Expired {remaining} free credits for {owner_id}",
                extra={"professional_id": owner_id},
            )
        return transactions

    # Reporting

    async def get_transactions(
        self,
        professional_id: str,
        limit: int = 50,
        offset: int = 0,
        transaction_type: CreditTransactionType | None = None,
    ) -> tuple[list[CreditTransaction], int]:
        """Page of transactions (newest first) and the total count"""
        conditions = [CreditTransaction.professional_id == professional_id]
        if transaction_type is not None:
            conditions.append(CreditTransaction.type == transaction_type)

        total = (await self.db.execute(
            select(func.count()).select_from(CreditTransaction).where(*conditions)
        )).scalar_one()
        result = await self.db.execute(
            select(CreditTransaction)
            .where(*conditions)
            .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id)
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), total

    async def verify_account(self, professional_id: str) -> dict[str, Any]:
        """Rebuild bucket balances from the transaction log and compare with the cached account"""
        account = await self._load_account(professional_id)
        if account is None:
            raise NotFoundError("CreditAccount", professional_id)

        result = await self.db.execute(
            select(CreditTransaction.credit_type, func.coalesce(func.sum(CreditTransaction.amount), 0))
            .where(CreditTransaction.professional_id == professional_id)
            .group_by(CreditTransaction.credit_type)
        )
        ledger = {CreditType.FREE: 0, CreditType.PAID: 0}
        for credit_type, total in result.all():
            ledger[credit_type] = int(total)

        grants_remaining = (await self.db.execute(
            select(func.coalesce(func.sum(CreditGrant.remaining), 0))
            .where(CreditGrant.professional_id == professional_id)
        )).scalar_one()
        pending_reserved = (await self.db.execute(
            select(func.coalesce(func.sum(CreditReservation.amount), 0))
            .where(
                CreditReservation.professional_id == professional_id,
                CreditReservation.status == ReservationStatus.PENDING,
            )
        )).scalar_one()

        report = {
            "professional_id": professional_id,
            "account": {
                "free": account.free_credits,
                "paid": account.paid_credits,
                "reserved": account.reserved_credits,
            },
            "ledger": {
                "free": ledger[CreditType.FREE],
                "paid": ledger[CreditType.PAID],
                "grants_remaining": int(grants_remaining),
                "pending_reservations": int(pending_reserved),
            },
        }
        report["consistent"] = (
            account.free_credits == ledger[CreditType.FREE]
            and account.paid_credits == ledger[CreditType.PAID]
            and account.free_credits == int(grants_remaining)
            and account.reserved_credits == int(pending_reserved)
        )
        if not report["consistent"]:
            logger.error(
                f"Ledger drift detected for {professional_id}: {report}",
                extra={"professional_id": professional_id},
            )
        return report
