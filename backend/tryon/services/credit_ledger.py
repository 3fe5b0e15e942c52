"""CreditLedger: the only code path that changes credits or free-trial counters.

Every mutation:
1. holds the per-account Redis lock (AccountLock.hold)
2. opens one DB transaction and loads the account row FOR UPDATE
3. applies a guarded UPDATE (WHERE credits/free_trials still match the read)
4. appends the LedgerEntry in the same transaction

Either both the balance change and the entry commit, or neither does. A
guarded UPDATE that matches no row means someone wrote around the lock; the
whole transaction is retried (tenacity) before giving up.
"""

from dataclasses import dataclass
from datetime import UTC, datetime

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from tryon.core.exceptions import (
    AccountNotFound,
    ConcurrentBalanceUpdate,
    InvalidInput,
    LedgerInconsistency,
    NoBalance,
)
from tryon.core.locking import AccountLock
from tryon.db.models.account import Account
from tryon.db.models.generation import Generation
from tryon.db.models.ledger_entry import (
    REASON_FREE_TRIAL,
    REASON_GENERATION,
    REASON_PURCHASE,
    LedgerEntry,
)

logger = structlog.get_logger(__name__)

GENERATION_COST = 1
GUARDED_UPDATE_ATTEMPTS = 3


class _StaleRead(Exception):
    """Guarded UPDATE matched no row; the balance moved after we read it."""


_retry_stale = retry(
    retry=retry_if_exception_type(_StaleRead),
    stop=stop_after_attempt(GUARDED_UPDATE_ATTEMPTS),
    wait=wait_exponential(multiplier=0.02, max=0.2),
    reraise=True,
    before_sleep=lambda rs: logger.warning("ledger_stale_read_retrying", attempt=rs.attempt_number),
)


@dataclass(frozen=True)
class DebitResult:
    used_free_trial: bool
    amount: int
    new_balance: int
    free_trials_remaining: int
    entry_id: int


class CreditLedger:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        account_lock: AccountLock,
        generation_cost: int = GENERATION_COST,
    ):
        self.session_factory = session_factory
        self.lock = account_lock
        self.generation_cost = generation_cost

    # ── Reads ───────────────────────────────────────────────────────

    async def get_account(self, account_id: str) -> Account:
        async with self.session_factory() as session:
            account = await session.get(Account, account_id)
            if account is None:
                raise AccountNotFound(account_id)
            return account

    async def ensure_can_debit(self, account_id: str) -> Account:
        """Fail with NoBalance before any provider work if nothing is left to spend.

        Advisory only: the authoritative check is repeated under the lock in
        ``debit_for_generation``.
        """
        account = await self.get_account(account_id)
        if account.free_trials_used >= account.free_trials_limit and account.credits < self.generation_cost:
            logger.info("debit_precheck_no_balance", account_id=account_id)
            raise NoBalance(account_id)
        return account

    async def find_entry_by_order(self, order_id: str) -> LedgerEntry | None:
        async with self.session_factory() as session:
            result = await session.execute(select(LedgerEntry).where(LedgerEntry.order_id == order_id))
            return result.scalar_one_or_none()

    # ── Mutations ───────────────────────────────────────────────────

    async def debit_for_generation(self, account_id: str, generation: Generation | None = None) -> DebitResult:
        """Spend one free trial if any remain, else ``generation_cost`` credits.

        When ``generation`` is given it is stamped with what was charged and
        inserted in the same transaction as the ledger entry.

        Raises:
            AccountNotFound, NoBalance, AccountLockTimeout, ConcurrentBalanceUpdate
        """
        async with self.lock.hold(account_id):
            try:
                result = await self._debit_once(account_id, generation)
            except _StaleRead:
                raise ConcurrentBalanceUpdate(account_id) from None

        logger.info(
            "ledger_debit_applied",
            account_id=account_id,
            used_free_trial=result.used_free_trial,
            amount=result.amount,
            new_balance=result.new_balance,
        )
        return result

    @_retry_stale
    async def _debit_once(self, account_id: str, generation: Generation | None) -> DebitResult:
        now = datetime.now(UTC)
        async with self.session_factory() as session, session.begin():
            account = await self._load_for_update(session, account_id)
            before = account.credits
            trials_used = account.free_trials_used
            trials_limit = account.free_trials_limit

            if trials_used < trials_limit:
                guarded = (
                    update(Account)
                    .where(Account.id == account_id, Account.free_trials_used == trials_used)
                    .values(
                        free_trials_used=trials_used + 1,
                        total_generations=Account.total_generations + 1,
                        last_generation_at=now,
                    )
                )
                amount, used_free_trial, reason = 0, True, REASON_FREE_TRIAL
                trials_used += 1
            elif before >= self.generation_cost:
                guarded = (
                    update(Account)
                    .where(Account.id == account_id, Account.credits == before)
                    .values(
                        credits=before - self.generation_cost,
                        total_generations=Account.total_generations + 1,
                        last_generation_at=now,
                    )
                )
                amount, used_free_trial, reason = -self.generation_cost, False, REASON_GENERATION
            else:
                raise NoBalance(account_id)

            await self._apply_guarded(session, guarded)

            entry = LedgerEntry(
                account_id=account_id,
                amount=amount,
                balance_before=before,
                balance_after=before + amount,
                reason=reason,
            )
            session.add(entry)
            if generation is not None:
                generation.account_id = account_id
                generation.was_free_trial = used_free_trial
                generation.credits_used = -amount
                session.add(generation)
            await session.flush()

            return DebitResult(
                used_free_trial=used_free_trial,
                amount=-amount,
                new_balance=entry.balance_after,
                free_trials_remaining=max(0, trials_limit - trials_used),
                entry_id=entry.id,
            )

    async def credit_account(
        self,
        account_id: str,
        amount: int,
        order_id: str | None,
        reason: str = REASON_PURCHASE,
        gateway: str | None = None,
    ) -> int:
        """Add ``amount`` credits, at most once per ``order_id``.

        Replaying an order that already has an entry changes nothing and
        returns that entry's ``balance_after``.

        Returns:
            Balance after the (possibly earlier) credit
        """
        if not isinstance(amount, int) or amount <= 0:
            raise InvalidInput("amount must be a positive integer")

        if order_id:
            existing = await self.find_entry_by_order(order_id)
            if existing is not None:
                return self._replayed(existing, account_id)

        async with self.lock.hold(account_id):
            if order_id:
                # Another holder may have credited this order while we waited
                existing = await self.find_entry_by_order(order_id)
                if existing is not None:
                    return self._replayed(existing, account_id)
            try:
                new_balance = await self._credit_once(account_id, amount, order_id, reason, gateway)
            except _StaleRead:
                raise ConcurrentBalanceUpdate(account_id) from None
            except IntegrityError:
                # Unique order_id lost a race with a writer outside this process
                existing = await self.find_entry_by_order(order_id) if order_id else None
                if existing is None:
                    raise
                return self._replayed(existing, account_id)

        logger.info(
            "ledger_credit_applied",
            account_id=account_id,
            amount=amount,
            order_id=order_id,
            reason=reason,
            new_balance=new_balance,
        )
        return new_balance

    @_retry_stale
    async def _credit_once(
        self,
        account_id: str,
        amount: int,
        order_id: str | None,
        reason: str,
        gateway: str | None,
    ) -> int:
        async with self.session_factory() as session, session.begin():
            account = await self._load_for_update(session, account_id)
            before = account.credits

            session.add(
                LedgerEntry(
                    account_id=account_id,
                    amount=amount,
                    balance_before=before,
                    balance_after=before + amount,
                    reason=reason,
                    order_id=order_id,
                    gateway=gateway,
                )
            )
            await session.flush()

            values = {"credits": before + amount}
            if reason == REASON_PURCHASE:
                values["last_payment_at"] = datetime.now(UTC)
            await self._apply_guarded(
                session,
                update(Account).where(Account.id == account_id, Account.credits == before).values(**values),
            )
            return before + amount

    # ── Audit ───────────────────────────────────────────────────────

    async def audit_account(self, account_id: str) -> int:
        """Walk the entry chain and compare it with the stored balance.

        Returns:
            Number of entries checked

        Raises:
            LedgerInconsistency: on any broken link (logged at critical)
        """
        async with self.session_factory() as session:
            account = await session.get(Account, account_id)
            if account is None:
                raise AccountNotFound(account_id)
            result = await session.execute(
                select(LedgerEntry).where(LedgerEntry.account_id == account_id).order_by(LedgerEntry.id)
            )
            entries = result.scalars().all()

        previous: LedgerEntry | None = None
        for entry in entries:
            if entry.balance_after != entry.balance_before + entry.amount:
                self._inconsistent(account_id, f"entry {entry.id} does not add up")
            if previous is not None and entry.balance_before != previous.balance_after:
                self._inconsistent(account_id, f"entry {entry.id} does not continue entry {previous.id}")
            if entry.balance_after < 0:
                self._inconsistent(account_id, f"entry {entry.id} leaves a negative balance")
            previous = entry

        if previous is not None and previous.balance_after != account.credits:
            self._inconsistent(
                account_id,
                f"stored balance {account.credits} != ledger balance {previous.balance_after}",
            )
        return len(entries)

    # ── Helpers ─────────────────────────────────────────────────────

    @staticmethod
    async def _load_for_update(session: AsyncSession, account_id: str) -> Account:
        result = await session.execute(select(Account).where(Account.id == account_id).with_for_update())
        account = result.scalar_one_or_none()
        if account is None:
            raise AccountNotFound(account_id)
        return account

    @staticmethod
    async def _apply_guarded(session: AsyncSession, statement) -> None:
        result = await session.execute(statement.execution_options(synchronize_session=False))
        if result.rowcount != 1:
            raise _StaleRead()

    @staticmethod
    def _replayed(entry: LedgerEntry, account_id: str) -> int:
        if entry.account_id != account_id:
            logger.error(
                "ledger_order_credited_to_other_account",
                order_id=entry.order_id,
                requested_account_id=account_id,
                credited_account_id=entry.account_id,
            )
        else:
            logger.info("ledger_credit_replayed", account_id=account_id, order_id=entry.order_id)
        return entry.balance_after

    @staticmethod
    def _inconsistent(account_id: str, detail: str) -> None:
        logger.critical("ledger_inconsistency", account_id=account_id, detail=detail)
        raise LedgerInconsistency(account_id, detail)
