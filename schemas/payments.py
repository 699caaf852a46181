# Pydantic Schemas for escrow payments, bank accounts and disputes

from pydantic import BaseModel, EmailStr, Field, validator
from typing import Optional, List
from datetime import datetime
from decimal import Decimal

from config import app_config
from database.models import (
    BankAccountType, DisputeDecision, DisputeStatus, EscrowStatus, PaymentMethod, PayoutStatus,
)


# ============================================================================
# ESCROW SCHEMAS
# ============================================================================

class CheckoutCreate(BaseModel):
    """Schema for funding escrow for a gig."""
    gig_id: str
    freelancer_id: str
    application_id: Optional[str] = None
    milestone_id: Optional[str] = None
    gross_amount: Decimal = Field(..., gt=0, le=app_config.PROPOSED_RATE_MAX)
    buyer_email: EmailStr
    method: PaymentMethod = PaymentMethod.EFT
    agreed_to_terms: bool = False

    @validator('agreed_to_terms')
    def validate_agreement(cls, v):
        if not v:
            raise ValueError('You must accept the escrow terms before paying')
        return v


class CheckoutResponse(BaseModel):
    payment_id: str
    redirect_url: str
    gateway_ref: str
    amount: Decimal
    payment_fee: Decimal
    platform_fee: Decimal
    total_charge: Decimal
    freelancer_net: Decimal


class EscrowPaymentResponse(BaseModel):
    """Schema for escrow payment response."""
    id: str
    gig_id: str
    milestone_id: Optional[str] = None
    application_id: Optional[str] = None
    payer_id: str
    recipient_id: str
    amount: Decimal
    platform_fee: Decimal
    payment_method: PaymentMethod
    payment_fee: Decimal
    freelancer_net: Decimal
    total_charge: Decimal
    status: EscrowStatus
    payout_status: Optional[PayoutStatus] = None
    gateway_ref: Optional[str] = None
    payout_error: Optional[str] = None
    created_at: datetime
    held_at: Optional[datetime] = None
    released_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    payout_completed_at: Optional[datetime] = None
    version: int

    class Config:
        from_attributes = True


class PaymentHistory(BaseModel):
    sent: List[EscrowPaymentResponse] = []
    received: List[EscrowPaymentResponse] = []


class PaymentStats(BaseModel):
    total_paid: Decimal = Decimal("0.00")
    total_received: Decimal = Decimal("0.00")
    pending_payments: int = 0
    held_in_escrow: Decimal = Decimal("0.00")
    pending_payouts: Decimal = Decimal("0.00")


class CallbackAck(BaseModel):
    status: str
    payment_id: Optional[str] = None
    escrow_status: Optional[EscrowStatus] = None


# ============================================================================
# BANK ACCOUNT SCHEMAS
# ============================================================================

class BankAccountUpsert(BaseModel):
    """Schema for saving a freelancer's payout bank account."""
    bank_name: str = Field(..., min_length=2, max_length=100)
    account_number: str
    account_holder: str = Field(..., min_length=2, max_length=150)
    branch_code: Optional[str] = None
    account_type: BankAccountType = BankAccountType.CHEQUE

    @validator('account_number')
    def validate_account_number(cls, v):
        digits = (v or "").replace(" ", "").replace("-", "")
        if not digits.isdigit() or not 6 <= len(digits) <= 16:
            raise ValueError('Account number must be 6 to 16 digits')
        return digits

    @validator('branch_code')
    def validate_branch_code(cls, v):
        if v is None or not v.strip():
            return None
        code = v.strip()
        if not code.isdigit() or len(code) > 10:
            raise ValueError('Branch code must be numeric')
        return code


class BankAccountResponse(BaseModel):
    id: str
    owner_id: str
    bank_name: str
    account_number: str
    account_holder: str
    branch_code: Optional[str] = None
    account_type: BankAccountType
    verified: bool
    verified_at: Optional[datetime] = None
    version: int

    class Config:
        from_attributes = True


# ============================================================================
# DISPUTE SCHEMAS
# ============================================================================

class DisputeCreate(BaseModel):
    payment_id: str
    reason: str = Field(..., min_length=3, max_length=100)
    description: Optional[str] = Field(None, max_length=5000)


class DisputeRespond(BaseModel):
    response: str = Field(..., min_length=10, max_length=5000)


class DisputeResolve(BaseModel):
    decision: DisputeDecision
    notes: Optional[str] = Field(None, max_length=5000)


class DisputeResponse(BaseModel):
    id: str
    gig_id: str
    escrow_payment_id: str
    initiated_by: str
    respondent_id: str
    reason: str
    description: Optional[str] = None
    response: Optional[str] = None
    status: DisputeStatus
    decision: Optional[DisputeDecision] = None
    resolution_notes: Optional[str] = None
    resolved_by: Optional[str] = None
    response_deadline: datetime
    responded_at: Optional[datetime] = None
    escalated_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    created_at: datetime
    version: int

    class Config:
        from_attributes = True
