"""
Transaction posting module.

Creates, lists, updates and deletes transactions and keeps account balances in
step with them. Every balance change goes through
EncryptedDatabaseService.adjust_balance; stored balances are never touched
directly.

Balance effects:
    INCOME      +amount on account_id
    EXPENSE     -amount on account_id
    INVESTMENT  -amount on account_id
    TRANSFER    two legs sharing transfer_group_id; the outgoing leg takes
                -amount from account_id, the incoming leg adds +amount to
                to_account_id
"""

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from database_ops import (
    DatabaseManager,
    FinancialAccount,
    Transaction,
    TransactionType,
    TransferDirection,
    new_id,
)
from encrypted_database import EncryptedDatabaseService
from exceptions import AccountNotFoundError, FinanceAppError, RecordNotFoundError, TransactionError

logger = logging.getLogger(__name__)

BALANCE_SIGN = {
    TransactionType.INCOME: 1,
    TransactionType.EXPENSE: -1,
    TransactionType.INVESTMENT: -1,
}

TRANSFER_LOCKED_FIELDS = ("amount", "account_id", "to_account_id", "type")

OUTGOING_NOTE = "Transfer to account"
INCOMING_NOTE = "Transfer from account"


def _parse_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value), "%Y-%m-%d").date()
    except ValueError as e:
        raise TransactionError("Invalid date; use YYYY-MM-DD", details={"date": value}) from e


def _transfer_note(prefix: str, notes: Optional[str]) -> str:
    return f"{prefix} ({notes})" if notes else prefix


class TransactionManager:
    """Posts transactions and applies their balance effects."""

    def __init__(self, db_manager: DatabaseManager, encrypted_db: EncryptedDatabaseService):
        self.db_manager = db_manager
        self.encrypted_db = encrypted_db

    def create_transaction(self, user_id: str, data: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Record a transaction and post its balance effect.

        Args:
            user_id: Owning user
            data: account_id, amount, type, category, date and optional
                notes / to_account_id

        Returns:
            The stored transaction (the outgoing leg for transfers), decrypted

        Raises:
            TransactionError: If the payload is invalid
            AccountNotFoundError: If a referenced account does not exist
        """
        tx_type = self._parse_type(data.get("type"))
        amount = self._parse_amount(data.get("amount"))
        account_id = data.get("account_id")
        to_account_id = data.get("to_account_id")
        tx_date = _parse_date(data.get("date"))

        if tx_type is TransactionType.TRANSFER:
            return self._create_transfer(user_id, data, amount, account_id, to_account_id, tx_date)

        payload = self.encrypted_db.encrypt_transaction_data(
            {"amount": amount, "category": data.get("category"), "notes": data.get("notes")},
            user_id,
        )
        with self.db_manager.session_scope() as session:
            self._require_accounts(session, user_id, account_id)
            row = Transaction(
                user_id=user_id,
                account_id=account_id,
                to_account_id=None,
                type=tx_type,
                date=tx_date,
                **payload,
            )
            session.add(row)
            session.flush()
            stored = row.to_dict()

        try:
            self.encrypted_db.adjust_balance(account_id, user_id, BALANCE_SIGN[tx_type] * amount)
        except FinanceAppError:
            logger.error("Balance posting failed; removing transaction %s", stored["id"])
            self._delete_rows(user_id, [stored["id"]])
            raise

        logger.info("Created %s transaction %s for user %s", tx_type.value, stored["id"], user_id)
        return self.encrypted_db.decrypt_transaction(stored, user_id)

    def _create_transfer(
        self,
        user_id: str,
        data: Mapping[str, Any],
        amount: float,
        account_id: str,
        to_account_id: Optional[str],
        tx_date: date,
    ) -> Dict[str, Any]:
        if not to_account_id:
            raise TransactionError("Transfers require a destination account")
        if to_account_id == account_id:
            raise TransactionError("Cannot transfer to the same account")

        notes = data.get("notes")
        group_id = new_id()
        legs = (
            (account_id, to_account_id, TransferDirection.OUTGOING, _transfer_note(OUTGOING_NOTE, notes)),
            (to_account_id, account_id, TransferDirection.INCOMING, _transfer_note(INCOMING_NOTE, notes)),
        )
        stored_legs = []
        with self.db_manager.session_scope() as session:
            self._require_accounts(session, user_id, account_id, to_account_id)
            for leg_account, leg_counterpart, direction, leg_notes in legs:
                payload = self.encrypted_db.encrypt_transaction_data(
                    {"amount": amount, "category": data.get("category"), "notes": leg_notes},
                    user_id,
                )
                row = Transaction(
                    user_id=user_id,
                    account_id=leg_account,
                    to_account_id=leg_counterpart,
                    type=TransactionType.TRANSFER,
                    date=tx_date,
                    transfer_group_id=group_id,
                    transfer_direction=direction,
                    **payload,
                )
                session.add(row)
                session.flush()
                stored_legs.append(row.to_dict())

        try:
            self._apply_postings(user_id, [(account_id, -amount), (to_account_id, amount)])
        except FinanceAppError:
            logger.error("Transfer posting failed; rolling back transfer %s", group_id)
            self._delete_rows(user_id, [leg["id"] for leg in stored_legs])
            raise

        logger.info("Created transfer %s for user %s", group_id, user_id)
        return self.encrypted_db.decrypt_transaction(stored_legs[0], user_id)

    def get_transaction(self, user_id: str, transaction_id: str) -> Dict[str, Any]:
        """
        Get a single transaction, decrypted.

        Raises:
            RecordNotFoundError: If the transaction does not exist for the user
        """
        with self.db_manager.session_scope() as session:
            stored = self._query(session, user_id, transaction_id).to_dict()
        return self.encrypted_db.decrypt_transaction(stored, user_id)

    def list_transactions(self, user_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        List a user's transactions, newest first.

        Each row carries joined "financial_accounts" and
        "to_financial_accounts" sub-objects with the account name and type.
        """
        with self.db_manager.session_scope() as session:
            accounts = {
                account.id: {"name": account.name, "type": account.type.value}
                for account in session.query(FinancialAccount).filter(
                    FinancialAccount.user_id == user_id
                )
            }
            query = session.query(Transaction).filter(Transaction.user_id == user_id).order_by(
                Transaction.date.desc(), Transaction.created_at.desc()
            )
            if limit is not None:
                query = query.limit(limit)
            rows = []
            for transaction in query:
                row = transaction.to_dict()
                row["financial_accounts"] = accounts.get(transaction.account_id)
                row["to_financial_accounts"] = accounts.get(transaction.to_account_id)
                rows.append(row)
        return self.encrypted_db.batch_decrypt_transactions(rows, user_id)

    def get_recent_transactions(self, user_id: str, limit: int = 5) -> List[Dict[str, Any]]:
        return self.list_transactions(user_id, limit=limit)

    def update_transaction(
        self, user_id: str, transaction_id: str, changes: Mapping[str, Any]
    ) -> Dict[str, Any]:
        """
        Update a transaction and re-post its balance effect.

        The old effect is reversed and the new one applied when amount, type
        or account change. Transfer legs may only change category, notes and
        date; anything else must be deleted and re-created.

        Raises:
            TransactionError: If the change is not allowed
            RecordNotFoundError: If the transaction does not exist
        """
        with self.db_manager.session_scope() as session:
            original = self._query(session, user_id, transaction_id).to_dict()
        old = self.encrypted_db.decrypt_transaction(original, user_id)

        is_transfer = old["type"] == TransactionType.TRANSFER.value
        if is_transfer and any(field in changes for field in TRANSFER_LOCKED_FIELDS):
            raise TransactionError(
                "Transfers cannot change amount, accounts or type; delete and re-create instead",
                details={"transaction_id": transaction_id},
            )

        new_type = self._parse_type(changes.get("type", old["type"]))
        if not is_transfer and new_type is TransactionType.TRANSFER:
            raise TransactionError("Cannot convert a transaction into a transfer")
        new_amount = self._parse_amount(changes.get("amount", old["amount"]))
        new_account_id = changes.get("account_id", old["account_id"])

        update: Dict[str, Any] = {}
        for field in ("category", "notes"):
            if field in changes:
                update[field] = changes[field]
        if "amount" in changes:
            update["amount"] = new_amount
        update = self.encrypted_db.encrypt_transaction_data(update, user_id)
        if "date" in changes:
            update["date"] = _parse_date(changes["date"])
        if "type" in changes:
            update["type"] = new_type
        if "account_id" in changes:
            update["account_id"] = new_account_id

        if "account_id" in changes:
            with self.db_manager.session_scope() as session:
                self._require_accounts(session, user_id, new_account_id)

        postings: List[Tuple[str, float]] = []
        if not is_transfer:
            old_effect = (old["account_id"], BALANCE_SIGN[TransactionType(old["type"])] * old["amount"])
            new_effect = (new_account_id, BALANCE_SIGN[new_type] * new_amount)
            if old_effect != new_effect:
                postings = [(old_effect[0], -old_effect[1]), new_effect]

        # Balances move first; the row only changes once every posting landed.
        posted = self._apply_postings(user_id, postings)
        try:
            with self.db_manager.session_scope() as session:
                row = self._query(session, user_id, transaction_id)
                for field, value in update.items():
                    setattr(row, field, value)
        except FinanceAppError:
            logger.error("Updating transaction %s failed; reversing its re-post", transaction_id)
            self._reverse_postings(user_id, posted)
            raise

        logger.info("Updated transaction %s for user %s", transaction_id, user_id)
        return self.get_transaction(user_id, transaction_id)

    def delete_transaction(self, user_id: str, transaction_id: str) -> None:
        """
        Delete a transaction and reverse its balance effect.

        Deleting either leg of a transfer deletes and reverses both legs.

        Raises:
            RecordNotFoundError: If the transaction does not exist
        """
        with self.db_manager.session_scope() as session:
            row = self._query(session, user_id, transaction_id)
            if row.type is TransactionType.TRANSFER and row.transfer_group_id:
                legs = session.query(Transaction).filter(
                    Transaction.user_id == user_id,
                    Transaction.transfer_group_id == row.transfer_group_id,
                ).all()
            else:
                legs = [row]
            stored_legs = [leg.to_dict() for leg in legs]

        reversals = [
            (leg["account_id"], -self._leg_delta(leg))
            for leg in self.encrypted_db.batch_decrypt_transactions(stored_legs, user_id)
        ]
        posted = self._apply_postings(user_id, reversals)
        try:
            self._delete_rows(user_id, [leg["id"] for leg in stored_legs])
        except FinanceAppError:
            logger.error("Deleting transaction %s failed; restoring balances", transaction_id)
            self._reverse_postings(user_id, posted)
            raise
        logger.info(
            "Deleted transaction %s (%d row(s)) for user %s",
            transaction_id, len(stored_legs), user_id,
        )

    def _apply_postings(
        self, user_id: str, postings: List[Tuple[str, float]]
    ) -> List[Tuple[str, float]]:
        """
        Apply balance deltas in order, all or nothing.

        If one posting fails the ones already applied are reversed before
        the error propagates.
        """
        posted: List[Tuple[str, float]] = []
        try:
            for account_id, delta in postings:
                self.encrypted_db.adjust_balance(account_id, user_id, delta)
                posted.append((account_id, delta))
        except FinanceAppError:
            self._reverse_postings(user_id, posted)
            raise
        return posted

    def _reverse_postings(self, user_id: str, posted: List[Tuple[str, float]]) -> None:
        for account_id, delta in reversed(posted):
            self.encrypted_db.adjust_balance(account_id, user_id, -delta)

    @staticmethod
    def _leg_delta(leg: Mapping[str, Any]) -> float:
        """Balance change a stored row applied to its own account_id."""
        tx_type = TransactionType(leg["type"])
        if tx_type is TransactionType.TRANSFER:
            if leg.get("transfer_direction") == TransferDirection.INCOMING.value:
                return leg["amount"]
            return -leg["amount"]
        return BALANCE_SIGN[tx_type] * leg["amount"]

    def _delete_rows(self, user_id: str, ids: List[str]) -> None:
        with self.db_manager.session_scope() as session:
            session.query(Transaction).filter(
                Transaction.user_id == user_id,
                Transaction.id.in_(ids),
            ).delete(synchronize_session=False)

    @staticmethod
    def _parse_type(value: Any) -> TransactionType:
        try:
            return TransactionType(value)
        except ValueError as e:
            raise TransactionError("Unknown transaction type", details={"type": value}) from e

    @staticmethod
    def _parse_amount(value: Any) -> float:
        try:
            amount = float(value)
        except (TypeError, ValueError) as e:
            raise TransactionError("Amount must be a number", details={"amount": value}) from e
        if amount < 0:
            raise TransactionError("Amount must not be negative", details={"amount": value})
        return amount

    @staticmethod
    def _require_accounts(session, user_id: str, *account_ids: Optional[str]) -> None:
        for account_id in account_ids:
            exists = session.query(FinancialAccount.id).filter(
                FinancialAccount.id == account_id,
                FinancialAccount.user_id == user_id,
            ).first()
            if exists is None:
                raise AccountNotFoundError(
                    "Account not found", details={"account_id": account_id, "user_id": user_id}
                )

    @staticmethod
    def _query(session, user_id: str, transaction_id: str) -> Transaction:
        row = session.query(Transaction).filter(
            Transaction.id == transaction_id,
            Transaction.user_id == user_id,
        ).one_or_none()
        if row is None:
            raise RecordNotFoundError(
                "Transaction not found",
                details={"transaction_id": transaction_id, "user_id": user_id},
            )
        return row
