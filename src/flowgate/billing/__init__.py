"""Subscription plans and the credit ledger."""

from flowgate.billing.ledger import (
    AccountSnapshot,
    CreditLedger,
    Reservation,
    TransactionResult,
    split_debit,
)
from flowgate.billing.plans import (
    N8N_MONITORING,
    N8N_PUSH,
    PLANS,
    WORKFLOW_CONTROL,
    WORKFLOW_LISTING,
    PlanResolver,
    SubscriptionPlan,
)

__all__ = [
    "AccountSnapshot",
    "CreditLedger",
    "N8N_MONITORING",
    "N8N_PUSH",
    "PLANS",
    "PlanResolver",
    "Reservation",
    "SubscriptionPlan",
    "TransactionResult",
    "WORKFLOW_CONTROL",
    "WORKFLOW_LISTING",
    "split_debit",
]
