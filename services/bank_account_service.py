# Bank Account Service for TrustWork
# Freelancer payout destinations; an admin verifies them before payouts flow

import logging
from typing import Optional, Union

from sqlalchemy.orm import Session

from auth.principal import Principal
from auth.roles import Permission
from core.deadline import Deadline
from core.errors import NotFound
from database.models import BankAccount, BankAccountType, Profile, utcnow
from schemas.base import validated
from schemas.payments import BankAccountUpsert
from services.persistence import transaction

logger = logging.getLogger(__name__)


class BankAccountService:

    def __init__(self, db: Session, deadline: Optional[Deadline] = None):
        self.db = db
        self.deadline = deadline or Deadline.none()

    def _find(self, owner_id: str) -> Optional[BankAccount]:
        return self.db.query(BankAccount).filter(BankAccount.owner_id == owner_id).first()

    def save(self, principal: Principal, data: Union[BankAccountUpsert, dict]) -> BankAccount:
        """Create or replace the principal's account. Any change needs re-verification."""
        principal.require_permission(Permission.MANAGE_BANK_ACCOUNT)
        data = validated(BankAccountUpsert, data)

        with transaction(self.db, None, self.deadline):
            account = self._find(principal.user_id)
            if account is None:
                account = BankAccount(owner_id=principal.user_id)
                self.db.add(account)
            account.bank_name = data.bank_name
            account.account_number = data.account_number
            account.account_holder = data.account_holder
            account.branch_code = data.branch_code
            account.account_type = BankAccountType(data.account_type)
            account.verified = False
            account.verified_at = None
            self.db.flush()

        logger.info(f"Bank account saved for {principal.user_id}; awaiting verification")
        return account

    def get_mine(self, principal: Principal) -> BankAccount:
        account = self._find(principal.user_id)
        if account is None:
            raise NotFound("No bank account on file")
        return account

    def delete_mine(self, principal: Principal) -> None:
        with transaction(self.db, None, self.deadline):
            account = self._find(principal.user_id)
            if account is None:
                raise NotFound("No bank account on file")
            self.db.delete(account)

    def verify(self, principal: Principal, owner_id: str) -> BankAccount:
        """Admin: confirm the account details so payouts can proceed."""
        principal.require_permission(Permission.VERIFY_BANK_ACCOUNTS)

        with transaction(self.db, None, self.deadline):
            account = self._find(owner_id)
            if account is None:
                raise NotFound("No bank account on file for this user")
            if not account.verified:
                account.verified = True
                account.verified_at = utcnow()
            self.db.flush()

        logger.info(f"Bank account of {owner_id} verified by {principal.user_id}")
        return account


def recipient_bank_details(account: BankAccount, owner: Optional[Profile] = None) -> dict:
    """The recipientBank object sent with a payout instruction."""
    return {
        "bankName": account.bank_name,
        "accountNumber": account.account_number,
        "accountHolder": account.account_holder,
        "branchCode": account.branch_code,
        "accountType": BankAccountType(account.account_type).value,
        "email": owner.email if owner is not None else None,
    }
