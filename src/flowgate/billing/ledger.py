"""Credit ledger: append-only transactions plus a cached per-tenant balance.

Every mutation follows the same shape:

    tenant lock (in-process) → one DB transaction → account row FOR UPDATE
    → ledger rows + cached balance → commit

so the cached ``credit_accounts`` row always equals the fold of the tenant's
``credit_transactions``. Failures raise before anything is written.

Debit order
-----------
  prefer_bonus_first = False   regular first, remainder from bonus
  prefer_bonus_first = True    bonus first, remainder from regular

A debit that touches both kinds writes one row per kind.
"""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flowgate.billing.plans import DEFAULT_TIER, PlanResolver
from flowgate.db.models import CreditAccount, CreditKind, CreditTransaction
from flowgate.db.session import db_session
from flowgate.errors import AccountNotFound, InsufficientCredits, InvalidRequest
from flowgate.infra.locks import KeyedMutex

logger = structlog.get_logger()

REASON_INITIAL = "initial_allocation"
REASON_PLAN_CHANGE = "plan_change"
REASON_RENEWAL = "period_renewal"


@dataclass(frozen=True)
class AccountSnapshot:
    """Detached copy of a ``CreditAccount`` row."""

    tenant_id: str
    tier: str
    regular: int
    bonus: int
    prefer_bonus_first: bool
    period_started_at: datetime | None = None

    @property
    def total(self) -> int:
        return self.regular + self.bonus

    @classmethod
    def of(cls, account: CreditAccount) -> AccountSnapshot:
        return cls(
            tenant_id=account.tenant_id,
            tier=account.tier,
            regular=account.regular_balance,
            bonus=account.bonus_balance,
            prefer_bonus_first=account.prefer_bonus_first,
            period_started_at=account.period_started_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "tier": self.tier,
            "regular": self.regular,
            "bonus": self.bonus,
            "total": self.total,
            "prefer_bonus_first": self.prefer_bonus_first,
            "period_started_at": self.period_started_at.isoformat() if self.period_started_at else None,
        }


@dataclass
class TransactionResult:
    """Outcome of one ledger mutation."""

    account: AccountSnapshot
    transactions: list[CreditTransaction] = field(default_factory=list)
    regular_used: int = 0
    bonus_used: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "account": self.account.to_dict(),
            "transactions": [t.to_row() for t in self.transactions],
            "regular_used": self.regular_used,
            "bonus_used": self.bonus_used,
        }


def split_debit(regular: int, bonus: int, amount: int, *, prefer_bonus_first: bool) -> tuple[int, int]:
    """How much of *amount* comes from each kind: ``(regular_used, bonus_used)``."""
    if regular + bonus < amount:
        raise InsufficientCredits(required=amount, regular=regular, bonus=bonus)
    if prefer_bonus_first:
        bonus_used = min(bonus, amount)
        return amount - bonus_used, bonus_used
    regular_used = min(regular, amount)
    return regular_used, amount - regular_used


def _require_positive(amount: Any, what: str) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidRequest(f"{what} amount must be a positive integer", amount=amount)
    return amount


class Reservation:
    """Funds check taken while holding the tenant's write slot.

    Yielded by ``CreditLedger.reserve``. ``commit`` performs the debit inside
    the same slot; leaving the block without committing writes nothing.
    """

    def __init__(self, ledger: CreditLedger, tenant_id: str, amount: int) -> None:
        self.tenant_id = tenant_id
        self.amount = amount
        self._ledger = ledger
        self._open = True
        self.result: TransactionResult | None = None

    @property
    def committed(self) -> bool:
        return self.result is not None

    async def commit(self, reason: str, *, connection_id: uuid.UUID | None = None) -> TransactionResult | None:
        if not self._open:
            raise RuntimeError("Reservation is no longer held")
        if self.result is not None:
            raise RuntimeError("Reservation already committed")
        if self.amount == 0:
            return None
        self.result = await self._ledger._debit_locked(
            self.tenant_id, self.amount, reason, connection_id=connection_id
        )
        return self.result

    def _release(self) -> None:
        self._open = False


class CreditLedger:
    """Atomic credit operations over ``credit_accounts`` / ``credit_transactions``."""

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession] | None = None,
        resolver: PlanResolver | None = None,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._resolver = resolver or PlanResolver()
        self._locks = KeyedMutex("credit_ledger")

    @property
    def resolver(self) -> PlanResolver:
        return self._resolver

    # ─────────────────────────────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────────────────────────────

    async def get_account(self, tenant_id: str) -> AccountSnapshot:
        async with db_session(self._sessionmaker) as db:
            account = await db.get(CreditAccount, tenant_id)
            if account is None:
                raise AccountNotFound(f"No credit account for tenant {tenant_id}", tenant_id=tenant_id)
            return AccountSnapshot.of(account)

    async def find_account(self, tenant_id: str) -> AccountSnapshot | None:
        async with db_session(self._sessionmaker) as db:
            account = await db.get(CreditAccount, tenant_id)
            return AccountSnapshot.of(account) if account is not None else None

    async def balance(self, tenant_id: str) -> dict[str, Any]:
        snapshot = await self.get_account(tenant_id)
        return {
            "regular": snapshot.regular,
            "bonus": snapshot.bonus,
            "total": snapshot.total,
            "tier": snapshot.tier,
        }

    async def transactions(self, tenant_id: str, limit: int = 50) -> list[CreditTransaction]:
        """Newest first."""
        if limit <= 0:
            raise InvalidRequest("limit must be positive", limit=limit)
        async with db_session(self._sessionmaker) as db:
            rows = await db.execute(
                select(CreditTransaction)
                .where(CreditTransaction.tenant_id == tenant_id)
                .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
                .limit(limit)
            )
            return list(rows.scalars().all())

    async def verify(self, tenant_id: str) -> bool:
        """True when the cached balances equal the fold of the ledger."""
        async with db_session(self._sessionmaker) as db:
            account = await db.get(CreditAccount, tenant_id)
            if account is None:
                raise AccountNotFound(f"No credit account for tenant {tenant_id}", tenant_id=tenant_id)
            rows = await db.execute(
                select(CreditTransaction.kind, func.coalesce(func.sum(CreditTransaction.amount), 0))
                .where(CreditTransaction.tenant_id == tenant_id)
                .group_by(CreditTransaction.kind)
            )
            folded = {CreditKind(kind): int(total) for kind, total in rows.all()}
        regular = folded.get(CreditKind.REGULAR, 0)
        bonus = folded.get(CreditKind.BONUS, 0)
        consistent = regular == account.regular_balance and bonus == account.bonus_balance
        if not consistent:
            logger.error(
                "credit_ledger_drift",
                tenant_id=tenant_id,
                cached_regular=account.regular_balance,
                cached_bonus=account.bonus_balance,
                folded_regular=regular,
                folded_bonus=bonus,
            )
        return consistent

    # ─────────────────────────────────────────────────────────────────────
    # Writes
    # ─────────────────────────────────────────────────────────────────────

    async def open_account(self, tenant_id: str, tier: str = DEFAULT_TIER) -> AccountSnapshot:
        """Create the tenant's account with its tier's allocation. Idempotent."""
        if not self._resolver.is_known(tier):
            raise InvalidRequest(f"Unknown subscription tier '{tier}'", tier=tier)
        async with self._locks.hold(tenant_id):
            async with db_session(self._sessionmaker) as db:
                existing = await db.get(CreditAccount, tenant_id)
                if existing is not None:
                    return AccountSnapshot.of(existing)

                allocation = self._resolver.monthly_allocation(tier)
                account = CreditAccount(
                    tenant_id=tenant_id,
                    tier=tier,
                    regular_balance=allocation,
                    bonus_balance=0,
                    prefer_bonus_first=False,
                    period_started_at=_utcnow(),
                )
                db.add(account)
                await db.flush()
                if allocation:
                    db.add(self._row(tenant_id, allocation, CreditKind.REGULAR, REASON_INITIAL))
                await db.flush()
                logger.info("credit_account_opened", tenant_id=tenant_id, tier=tier, regular=allocation)
                return AccountSnapshot.of(account)

    async def debit(
        self,
        tenant_id: str,
        amount: int,
        reason: str,
        *,
        connection_id: uuid.UUID | None = None,
    ) -> TransactionResult:
        amount = _require_positive(amount, "Debit")
        async with self._locks.hold(tenant_id):
            return await self._debit_locked(tenant_id, amount, reason, connection_id=connection_id)

    async def credit(
        self,
        tenant_id: str,
        amount: int,
        kind: CreditKind | str,
        reason: str,
    ) -> TransactionResult:
        amount = _require_positive(amount, "Credit")
        try:
            kind = CreditKind(kind)
        except ValueError as e:
            raise InvalidRequest(f"Unknown credit kind '{kind}'", kind=str(kind)) from e

        async with self._locks.hold(tenant_id):
            async with db_session(self._sessionmaker) as db:
                account = await self._load_for_update(db, tenant_id)
                if kind == CreditKind.REGULAR:
                    account.regular_balance += amount
                else:
                    account.bonus_balance += amount
                row = self._row(tenant_id, amount, kind, reason)
                db.add(row)
                await db.flush()
                logger.info("credits_granted", tenant_id=tenant_id, amount=amount, kind=kind.value, reason=reason)
                return TransactionResult(account=AccountSnapshot.of(account), transactions=[row])

    async def apply_plan_change(self, tenant_id: str, new_tier: str) -> TransactionResult:
        """Switch tier; regular balance is overwritten with the new allocation.

        Leftover regular credits are not carried over. Bonus is untouched.
        The net delta is recorded as one regular row.
        """
        if not self._resolver.is_known(new_tier):
            raise InvalidRequest(f"Unknown subscription tier '{new_tier}'", tier=new_tier)

        async with self._locks.hold(tenant_id):
            async with db_session(self._sessionmaker) as db:
                account = await self._load_for_update(db, tenant_id)
                old_tier, old_regular = account.tier, account.regular_balance
                allocation = self._resolver.monthly_allocation(new_tier)

                account.tier = new_tier
                account.regular_balance = allocation
                account.period_started_at = _utcnow()
                row = self._row(
                    tenant_id,
                    allocation - old_regular,
                    CreditKind.REGULAR,
                    f"{REASON_PLAN_CHANGE}:{old_tier}->{new_tier}",
                )
                db.add(row)
                await db.flush()
                logger.info(
                    "plan_changed",
                    tenant_id=tenant_id,
                    old_tier=old_tier,
                    new_tier=new_tier,
                    forfeited_regular=old_regular,
                    regular=allocation,
                )
                return TransactionResult(account=AccountSnapshot.of(account), transactions=[row])

    async def renew_period(self, tenant_id: str) -> TransactionResult:
        """Start a new billing period: allocation plus capped rollover."""
        async with self._locks.hold(tenant_id):
            async with db_session(self._sessionmaker) as db:
                account = await self._load_for_update(db, tenant_id)
                plan = self._resolver.get_plan(account.tier)
                leftover = account.regular_balance
                rollover = min(leftover, plan.rollover_max)
                new_regular = plan.monthly_credits + rollover

                account.regular_balance = new_regular
                account.period_started_at = _utcnow()
                rows: list[CreditTransaction] = []
                if new_regular != leftover:
                    rows.append(self._row(tenant_id, new_regular - leftover, CreditKind.REGULAR, REASON_RENEWAL))
                db.add_all(rows)
                await db.flush()
                logger.info(
                    "credit_period_renewed",
                    tenant_id=tenant_id,
                    tier=plan.tier,
                    allocation=plan.monthly_credits,
                    rollover=rollover,
                    regular=new_regular,
                )
                return TransactionResult(account=AccountSnapshot.of(account), transactions=rows)

    async def set_prefer_bonus_first(self, tenant_id: str, prefer: bool) -> AccountSnapshot:
        async with self._locks.hold(tenant_id):
            async with db_session(self._sessionmaker) as db:
                account = await self._load_for_update(db, tenant_id)
                account.prefer_bonus_first = bool(prefer)
                await db.flush()
                return AccountSnapshot.of(account)

    @asynccontextmanager
    async def reserve(self, tenant_id: str, amount: int) -> AsyncIterator[Reservation]:
        """Hold the tenant's write slot and verify *amount* is affordable.

        Usage:
            async with ledger.reserve(tenant_id, 1) as hold:
                await do_upstream_call()
                await hold.commit("toggle")

        Raises ``InsufficientCredits`` on entry. Exiting without ``commit``
        (exception, cancellation) leaves the balance untouched.
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
            raise InvalidRequest("Reservation amount must be a non-negative integer", amount=amount)

        reservation = Reservation(self, tenant_id, amount)
        if amount == 0:
            try:
                yield reservation
            finally:
                reservation._release()
            return

        async with self._locks.hold(tenant_id):
            snapshot = await self.get_account(tenant_id)
            if snapshot.total < amount:
                raise InsufficientCredits(required=amount, regular=snapshot.regular, bonus=snapshot.bonus)
            try:
                yield reservation
            finally:
                reservation._release()
                if not reservation.committed:
                    logger.debug("credit_reservation_released", tenant_id=tenant_id, amount=amount)

    # ─────────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────────

    async def _debit_locked(
        self,
        tenant_id: str,
        amount: int,
        reason: str,
        *,
        connection_id: uuid.UUID | None = None,
    ) -> TransactionResult:
        """Debit with the tenant lock already held by the caller."""
        async with db_session(self._sessionmaker) as db:
            account = await self._load_for_update(db, tenant_id)
            regular_used, bonus_used = split_debit(
                account.regular_balance,
                account.bonus_balance,
                amount,
                prefer_bonus_first=account.prefer_bonus_first,
            )
            rows: list[CreditTransaction] = []
            if regular_used:
                account.regular_balance -= regular_used
                rows.append(self._row(tenant_id, -regular_used, CreditKind.REGULAR, reason, connection_id))
            if bonus_used:
                account.bonus_balance -= bonus_used
                rows.append(self._row(tenant_id, -bonus_used, CreditKind.BONUS, reason, connection_id))
            db.add_all(rows)
            await db.flush()
            logger.info(
                "credits_debited",
                tenant_id=tenant_id,
                amount=amount,
                reason=reason,
                regular_used=regular_used,
                bonus_used=bonus_used,
                remaining=account.total_balance,
            )
            return TransactionResult(
                account=AccountSnapshot.of(account),
                transactions=rows,
                regular_used=regular_used,
                bonus_used=bonus_used,
            )

    @staticmethod
    async def _load_for_update(db: AsyncSession, tenant_id: str) -> CreditAccount:
        result = await db.execute(
            select(CreditAccount).where(CreditAccount.tenant_id == tenant_id).with_for_update()
        )
        account = result.scalar_one_or_none()
        if account is None:
            raise AccountNotFound(f"No credit account for tenant {tenant_id}", tenant_id=tenant_id)
        return account

    @staticmethod
    def _row(
        tenant_id: str,
        amount: int,
        kind: CreditKind,
        reason: str,
        connection_id: uuid.UUID | None = None,
    ) -> CreditTransaction:
        return CreditTransaction(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            amount=amount,
            kind=kind,
            reason=reason[:255],
            connection_id=connection_id,
            created_at=_utcnow(),
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)
