"""AccountService: account lifecycle and read-side views over the ledger.

Balance changes never happen here; they go through CreditLedger.
"""

from dataclasses import dataclass

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tryon.core.exceptions import AccountNotFound, InvalidInput
from tryon.db.models.account import Account
from tryon.db.models.generation import Generation
from tryon.db.models.ledger_entry import REASON_GENERATION, REASON_PURCHASE, LedgerEntry

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AccountStats:
    account_id: str
    credits: int
    total_purchased: int
    total_spent: int
    free_trials_remaining: int
    total_generations: int


class AccountService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], default_free_trials_limit: int = 1):
        self.session_factory = session_factory
        self.default_free_trials_limit = default_free_trials_limit

    async def create_anonymous_account(self) -> Account:
        async with self.session_factory() as session:
            account = Account(
                is_anonymous=True,
                credits=0,
                free_trials_used=0,
                free_trials_limit=self.default_free_trials_limit,
            )
            session.add(account)
            await session.commit()
            await session.refresh(account)

        logger.info("account_created", account_id=account.id, anonymous=True)
        return account

    async def get_account(self, account_id: str) -> Account:
        async with self.session_factory() as session:
            account = await session.get(Account, account_id)
            if account is None:
                raise AccountNotFound(account_id)
            return account

    async def attach_contact(self, account_id: str, email: str) -> bool:
        """Attach ``email`` to an anonymous account that has none.

        Attach only: accounts are never merged or deleted. If another account
        already owns the address the account stays anonymous.

        Returns:
            True if the address was attached
        """
        email = email.strip().lower()
        if not email or "@" not in email:
            raise InvalidInput(f"Invalid email: {email!r}")

        async with self.session_factory() as session:
            try:
                result = await session.execute(
                    update(Account)
                    .where(Account.id == account_id, Account.email.is_(None))
                    .values(email=email, is_anonymous=False)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
            except IntegrityError:
                # Unique email constraint: the address belongs to another account
                await session.rollback()
                logger.warning("contact_already_claimed", account_id=account_id)
                return False

            if result.rowcount == 1:
                logger.info("contact_attached", account_id=account_id)
                return True

            if await session.get(Account, account_id) is None:
                raise AccountNotFound(account_id)
            return False

    async def credit_history(self, account_id: str, limit: int = 50) -> list[LedgerEntry]:
        """Ledger entries, newest first."""
        await self.get_account(account_id)
        async with self.session_factory() as session:
            result = await session.execute(
                select(LedgerEntry)
                .where(LedgerEntry.account_id == account_id)
                .order_by(LedgerEntry.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def generation_history(self, account_id: str, limit: int = 10) -> list[Generation]:
        await self.get_account(account_id)
        async with self.session_factory() as session:
            result = await session.execute(
                select(Generation)
                .where(Generation.account_id == account_id)
                .order_by(Generation.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def account_stats(self, account_id: str) -> AccountStats:
        account = await self.get_account(account_id)
        async with self.session_factory() as session:
            purchased = await session.scalar(
                select(func.coalesce(func.sum(LedgerEntry.amount), 0)).where(
                    LedgerEntry.account_id == account_id,
                    LedgerEntry.reason == REASON_PURCHASE,
                )
            )
            spent = await session.scalar(
                select(func.coalesce(func.sum(LedgerEntry.amount), 0)).where(
                    LedgerEntry.account_id == account_id,
                    LedgerEntry.reason == REASON_GENERATION,
                )
            )
        return AccountStats(
            account_id=account_id,
            credits=account.credits,
            total_purchased=int(purchased or 0),
            total_spent=-int(spent or 0),
            free_trials_remaining=account.free_trials_remaining,
            total_generations=account.total_generations,
        )
