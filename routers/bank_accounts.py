# Bank Accounts Router for TrustWork
# Freelancer payout accounts; payouts wait until an admin verifies one

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from auth.decorators import require_permission
from auth.principal import Principal
from auth.roles import Permission
from core.deadline import Deadline
from database.config import get_db
from routers.deps import get_deadline
from schemas.payments import BankAccountResponse, BankAccountUpsert
from services.bank_account_service import BankAccountService

router = APIRouter(prefix="/bank-account", tags=["Bank Accounts"])

account_owner = require_permission(Permission.MANAGE_BANK_ACCOUNT)


def get_bank_account_service(
    db: Session = Depends(get_db),
    deadline: Deadline = Depends(get_deadline),
) -> BankAccountService:
    return BankAccountService(db, deadline)


@router.get("", response_model=BankAccountResponse)
def get_my_bank_account(
    principal: Principal = Depends(account_owner),
    service: BankAccountService = Depends(get_bank_account_service),
):
    return service.get_mine(principal)


@router.put("", response_model=BankAccountResponse)
def save_bank_account(
    data: BankAccountUpsert,
    principal: Principal = Depends(account_owner),
    service: BankAccountService = Depends(get_bank_account_service),
):
    """
    Create or replace the payout account. Changing it clears verification.
    """
    return service.save(principal, data)


@router.delete("", status_code=status.HTTP_204_NO_CONTENT)
def delete_bank_account(
    principal: Principal = Depends(account_owner),
    service: BankAccountService = Depends(get_bank_account_service),
):
    service.delete_mine(principal)


@router.post("/admin/{owner_id}/verify", response_model=BankAccountResponse)
def verify_bank_account(
    owner_id: str,
    principal: Principal = Depends(require_permission(Permission.VERIFY_BANK_ACCOUNTS)),
    service: BankAccountService = Depends(get_bank_account_service),
):
    return service.verify(principal, owner_id)
