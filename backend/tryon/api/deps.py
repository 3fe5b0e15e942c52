"""Request-scoped accessors for the services built in ``tryon.main.build_services``."""

from fastapi import Request

from tryon.providers.registry import ProviderRegistry
from tryon.services.accounts import AccountService
from tryon.services.credit_ledger import CreditLedger
from tryon.services.tryon_service import TryOnService
from tryon.services.webhook_reconciler import WebhookReconciler


def get_registry(request: Request) -> ProviderRegistry:
    return request.app.state.registry


def get_ledger(request: Request) -> CreditLedger:
    return request.app.state.ledger


def get_accounts(request: Request) -> AccountService:
    return request.app.state.accounts


def get_tryon_service(request: Request) -> TryOnService:
    return request.app.state.tryon


def get_reconciler(request: Request) -> WebhookReconciler:
    return request.app.state.reconciler
