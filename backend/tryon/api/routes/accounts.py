"""Account routes: anonymous sign-up, balance, ledger and generation history."""

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from tryon.api.deps import get_accounts
from tryon.db.models.account import Account
from tryon.services.accounts import AccountService

router = APIRouter()


# ── Response schemas ────────────────────────────────────────────────


class AccountResponse(BaseModel):
    id: str
    email: str | None
    is_anonymous: bool
    credits: int
    free_trials_used: int
    free_trials_limit: int
    free_trials_remaining: int
    total_generations: int
    created_at: datetime

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            email=account.email,
            is_anonymous=account.is_anonymous,
            credits=account.credits,
            free_trials_used=account.free_trials_used,
            free_trials_limit=account.free_trials_limit,
            free_trials_remaining=account.free_trials_remaining,
            total_generations=account.total_generations,
            created_at=account.created_at,
        )


class LedgerEntryResponse(BaseModel):
    id: int
    amount: int
    balance_before: int
    balance_after: int
    reason: str
    order_id: str | None
    gateway: str | None
    created_at: datetime


class GenerationResponse(BaseModel):
    id: str
    provider: str
    category: str
    result_url: str
    fallback: bool
    was_free_trial: bool
    credits_used: int
    processing_ms: int
    created_at: datetime


class StatsResponse(BaseModel):
    account_id: str
    credits: int
    total_purchased: int
    total_spent: int
    free_trials_remaining: int
    total_generations: int


# ── Endpoints ───────────────────────────────────────────────────────


@router.post("/anonymous", response_model=AccountResponse, status_code=201)
async def create_anonymous_account(accounts: AccountService = Depends(get_accounts)):
    account = await accounts.create_anonymous_account()
    return AccountResponse.from_account(account)


@router.get("/{account_id}", response_model=AccountResponse)
async def get_account(account_id: str, accounts: AccountService = Depends(get_accounts)):
    return AccountResponse.from_account(await accounts.get_account(account_id))


@router.get("/{account_id}/ledger", response_model=list[LedgerEntryResponse])
async def get_ledger(
    account_id: str,
    limit: int = Query(50, ge=1, le=500),
    accounts: AccountService = Depends(get_accounts),
):
    """Ledger entries, newest first."""
    entries = await accounts.credit_history(account_id, limit=limit)
    return [
        LedgerEntryResponse(
            id=e.id,
            amount=e.amount,
            balance_before=e.balance_before,
            balance_after=e.balance_after,
            reason=e.reason,
            order_id=e.order_id,
            gateway=e.gateway,
            created_at=e.created_at,
        )
        for e in entries
    ]


@router.get("/{account_id}/generations", response_model=list[GenerationResponse])
async def get_generations(
    account_id: str,
    limit: int = Query(10, ge=1, le=100),
    accounts: AccountService = Depends(get_accounts),
):
    generations = await accounts.generation_history(account_id, limit=limit)
    return [
        GenerationResponse(
            id=g.id,
            provider=g.provider,
            category=g.category,
            result_url=g.result_locator,
            fallback=g.fallback,
            was_free_trial=g.was_free_trial,
            credits_used=g.credits_used,
            processing_ms=g.processing_ms,
            created_at=g.created_at,
        )
        for g in generations
    ]


@router.get("/{account_id}/stats", response_model=StatsResponse)
async def get_stats(account_id: str, accounts: AccountService = Depends(get_accounts)):
    stats = await accounts.account_stats(account_id)
    return StatsResponse(**stats.__dict__)
