"""
Account management module for financial accounts.

This module provides CRUD operations for a user's accounts (savings, credit
cards, cash, wallets). Names and balances are encrypted before they reach the
database and decrypted before they are returned.
"""

import logging
from typing import Any, Dict, List, Optional

from database_ops import (
    AccountType,
    DatabaseManager,
    FinancialAccount,
    RecurringTransaction,
    Transaction,
)
from encrypted_database import EncryptedDatabaseService
from exceptions import AccountError, AccountNotFoundError

# Configure logging
logger = logging.getLogger(__name__)


class AccountManager:
    """
    Manages a user's financial accounts.

    Provides CRUD operations; balance changes go through the record
    service's locked compare-and-swap path.
    """

    def __init__(self, db_manager: DatabaseManager, encrypted_db: EncryptedDatabaseService):
        """
        Initialize the account manager.

        Args:
            db_manager: DatabaseManager instance
            encrypted_db: Record encryption service
        """
        self.db_manager = db_manager
        self.encrypted_db = encrypted_db

    def create_account(
        self,
        user_id: str,
        name: str,
        account_type: AccountType,
        initial_balance: float = 0.0
    ) -> Dict[str, Any]:
        """
        Create a new account.

        Args:
            user_id: Owning user
            name: Account name
            account_type: Account type (AccountType enum or its value)
            initial_balance: Initial account balance

        Returns:
            The stored account, decrypted

        Raises:
            AccountError: If the name is empty or the type is unknown
        """
        if not name or not name.strip():
            raise AccountError("Account name cannot be empty")
        try:
            account_type = AccountType(account_type)
        except ValueError as e:
            raise AccountError(
                "Unknown account type", details={"type": account_type}, original_error=e
            ) from e

        payload = self.encrypted_db.encrypt_account_data(
            {"name": name, "balance": initial_balance}, user_id
        )
        with self.db_manager.session_scope() as session:
            account = FinancialAccount(
                user_id=user_id,
                name=payload["name"],
                type=account_type,
                balance=payload["balance"],
            )
            session.add(account)
            session.flush()
            stored = account.to_dict()

        logger.info("Created %s account %s for user %s", account_type.value, stored["id"], user_id)
        return self.encrypted_db.decrypt_account(stored, user_id)

    def get_account(self, user_id: str, account_id: str) -> Dict[str, Any]:
        """
        Get an account by ID.

        Raises:
            AccountNotFoundError: If the account does not exist for the user
        """
        with self.db_manager.session_scope() as session:
            account = self._query(session, user_id, account_id)
            stored = account.to_dict()
        return self.encrypted_db.decrypt_account(stored, user_id)

    def list_accounts(
        self,
        user_id: str,
        account_type: Optional[AccountType] = None
    ) -> List[Dict[str, Any]]:
        """
        List a user's accounts, newest first, optionally filtered by type.

        Args:
            user_id: Owning user
            account_type: Optional filter by account type

        Returns:
            List of decrypted account dictionaries
        """
        with self.db_manager.session_scope() as session:
            query = session.query(FinancialAccount).filter(FinancialAccount.user_id == user_id)
            if account_type is not None:
                query = query.filter(FinancialAccount.type == AccountType(account_type))
            rows = [row.to_dict() for row in query.order_by(FinancialAccount.created_at.desc())]
        return self.encrypted_db.batch_decrypt_accounts(rows, user_id)

    def update_account(
        self,
        user_id: str,
        account_id: str,
        name: Optional[str] = None,
        account_type: Optional[AccountType] = None,
        balance: Optional[float] = None
    ) -> Dict[str, Any]:
        """
        Update an account.

        Only the given fields change. A new balance is written with a
        compare-and-swap under the account lock.

        Returns:
            The updated account, decrypted
        """
        if name is not None and not name.strip():
            raise AccountError("Account name cannot be empty")

        changes: Dict[str, Any] = {}
        if name is not None:
            changes["name"] = name
        payload = self.encrypted_db.encrypt_account_data(changes, user_id)
        if account_type is not None:
            payload["type"] = AccountType(account_type)

        with self.db_manager.session_scope() as session:
            account = self._query(session, user_id, account_id)
            for field, value in payload.items():
                setattr(account, field, value)

        if balance is not None:
            with self.encrypted_db.balance_lock(account_id):
                _, version = self.encrypted_db.read_balance(account_id, user_id)
                self.encrypted_db.update_encrypted_balance(
                    account_id, user_id, balance, expected_version=version
                )

        logger.info("Updated account %s for user %s", account_id, user_id)
        return self.get_account(user_id, account_id)

    def delete_account(self, user_id: str, account_id: str) -> None:
        """
        Delete an account together with the transactions and recurring
        transactions that reference it.

        Raises:
            AccountNotFoundError: If the account does not exist for the user
        """
        with self.db_manager.session_scope() as session:
            account = self._query(session, user_id, account_id)
            for model in (Transaction, RecurringTransaction):
                session.query(model).filter(
                    model.user_id == user_id,
                    (model.account_id == account_id) | (model.to_account_id == account_id),
                ).delete(synchronize_session=False)
            session.delete(account)
        logger.info("Deleted account %s for user %s", account_id, user_id)

    def get_total_balance(self, user_id: str) -> float:
        """Return the sum of all account balances for a user."""
        return sum(account["balance"] or 0.0 for account in self.list_accounts(user_id))

    @staticmethod
    def _query(session, user_id: str, account_id: str) -> FinancialAccount:
        account = session.query(FinancialAccount).filter(
            FinancialAccount.id == account_id,
            FinancialAccount.user_id == user_id,
        ).one_or_none()
        if account is None:
            raise AccountNotFoundError(
                "Account not found", details={"account_id": account_id, "user_id": user_id}
            )
        return account
