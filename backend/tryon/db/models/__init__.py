"""Re-export all models so Base.metadata sees them."""

from tryon.db.models.account import Account
from tryon.db.models.generation import Generation
from tryon.db.models.ledger_entry import LedgerEntry
from tryon.db.models.payment_event import PaymentEventRecord

__all__ = [
    "Account",
    "Generation",
    "LedgerEntry",
    "PaymentEventRecord",
]
