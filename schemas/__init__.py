# Schemas module for TrustWork
# Organizes all Pydantic schemas in a modular structure

from schemas.marketplace import (
    # Assignment schemas
    AssignmentCreate,
    AssignmentResponse,

    # Application schemas
    ApplicationCreate,
    ApplicationDecision,
    ApplicationResponse,
    ApplicationStatusUpdate,
    ApplicationWithdraw,

    # Gig schemas
    GigCreate,
    GigResponse,
    MilestoneDraft,
    MilestoneResponse,
    MilestoneTransition,
)
from schemas.payments import (
    # Escrow schemas
    CheckoutCreate,
    CheckoutResponse,
    EscrowPaymentResponse,

    # Bank account schemas
    BankAccountUpsert,
    BankAccountResponse,

    # Dispute schemas
    DisputeCreate,
    DisputeResolve,
    DisputeResponse,
)
from schemas.notifications import NotificationResponse

__all__ = [
    "AssignmentCreate",
    "AssignmentResponse",
    "ApplicationCreate",
    "ApplicationDecision",
    "ApplicationResponse",
    "ApplicationStatusUpdate",
    "ApplicationWithdraw",
    "GigCreate",
    "GigResponse",
    "MilestoneDraft",
    "MilestoneResponse",
    "MilestoneTransition",
    "CheckoutCreate",
    "CheckoutResponse",
    "EscrowPaymentResponse",
    "BankAccountUpsert",
    "BankAccountResponse",
    "DisputeCreate",
    "DisputeResolve",
    "DisputeResponse",
    "NotificationResponse",
]
