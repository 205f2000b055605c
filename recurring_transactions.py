"""
Recurring transaction scheduling and processing.

A recurring transaction is a template (description, amount, category, type)
plus a MONTHLY or YEARLY frequency and a next_due_date. process_due posts
every template whose next_due_date has arrived through the regular
TransactionManager path, so balances are updated with the same locked
decrypt-add-encrypt cycle as manual postings, then advances next_due_date by
one period. How process_due is triggered (cron, scheduler, CLI) is up to the
caller.
"""

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional

from database_ops import (
    DatabaseManager,
    FinancialAccount,
    Frequency,
    RecurringTransaction,
    TransactionType,
)
from encrypted_database import EncryptedDatabaseService
from exceptions import (
    AccountNotFoundError,
    FinanceAppError,
    RecordNotFoundError,
    RecurringTransactionError,
)
from transaction_management import TransactionManager
from utils import add_months

logger = logging.getLogger(__name__)

RECURRING_NOTE_SUFFIX = " (Recurring)"

UPDATABLE_FIELDS = (
    "account_id",
    "to_account_id",
    "description",
    "amount",
    "type",
    "category",
    "frequency",
    "start_date",
    "next_due_date",
)


def next_occurrence(current: date, frequency: Frequency) -> date:
    """Return the due date one period after current."""
    frequency = Frequency(frequency)
    if frequency is Frequency.MONTHLY:
        return add_months(current, 1)
    return add_months(current, 12)


def _coerce_date(value: Any, field: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value), "%Y-%m-%d").date()
    except ValueError as e:
        raise RecurringTransactionError(
            "Invalid date; use YYYY-MM-DD", details={field: value}
        ) from e


class RecurringTransactionManager:
    """Manages recurring transaction templates and posts them when due."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        encrypted_db: EncryptedDatabaseService,
        transaction_manager: TransactionManager,
    ):
        self.db_manager = db_manager
        self.encrypted_db = encrypted_db
        self.transaction_manager = transaction_manager

    def create_recurring_transaction(self, user_id: str, data: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Create a recurring transaction.

        The first due date is one period after start_date.

        Returns:
            The stored template, decrypted
        """
        try:
            tx_type = TransactionType(data.get("type"))
            frequency = Frequency(data.get("frequency"))
        except ValueError as e:
            raise RecurringTransactionError(
                "Unknown type or frequency",
                details={"type": data.get("type"), "frequency": data.get("frequency")},
            ) from e
        start_date = _coerce_date(data.get("start_date"), "start_date")

        payload = self.encrypted_db.encrypt_recurring_transaction_data(
            {
                "description": data.get("description"),
                "amount": data.get("amount"),
                "category": data.get("category"),
            },
            user_id,
        )
        with self.db_manager.session_scope() as session:
            for account_id in (data.get("account_id"), data.get("to_account_id")):
                if account_id is not None:
                    self._require_account(session, user_id, account_id)
            row = RecurringTransaction(
                user_id=user_id,
                account_id=data.get("account_id"),
                to_account_id=data.get("to_account_id"),
                type=tx_type,
                frequency=frequency,
                start_date=start_date,
                next_due_date=next_occurrence(start_date, frequency),
                **payload,
            )
            session.add(row)
            session.flush()
            stored = row.to_dict()

        logger.info(
            "Created %s recurring transaction %s for user %s",
            frequency.value, stored["id"], user_id,
        )
        return self.encrypted_db.decrypt_recurring_transaction(stored, user_id)

    def list_recurring_transactions(self, user_id: str) -> List[Dict[str, Any]]:
        """List templates by next due date, each with its joined account."""
        with self.db_manager.session_scope() as session:
            accounts = {
                account.id: {"name": account.name, "type": account.type.value}
                for account in session.query(FinancialAccount).filter(
                    FinancialAccount.user_id == user_id
                )
            }
            rows = []
            for recurring in session.query(RecurringTransaction).filter(
                RecurringTransaction.user_id == user_id
            ).order_by(RecurringTransaction.next_due_date.asc()):
                row = recurring.to_dict()
                row["financial_accounts"] = accounts.get(recurring.account_id)
                row["to_financial_accounts"] = accounts.get(recurring.to_account_id)
                rows.append(row)
        return self.encrypted_db.batch_decrypt_recurring_transactions(rows, user_id)

    def update_recurring_transaction(
        self, user_id: str, recurring_id: str, changes: Mapping[str, Any]
    ) -> Dict[str, Any]:
        """Update the given template fields; absent fields are left untouched."""
        update = {field: changes[field] for field in UPDATABLE_FIELDS if field in changes}
        update = self.encrypted_db.encrypt_recurring_transaction_data(update, user_id)
        try:
            if "type" in update:
                update["type"] = TransactionType(update["type"])
            if "frequency" in update:
                update["frequency"] = Frequency(update["frequency"])
        except ValueError as e:
            raise RecurringTransactionError("Unknown type or frequency") from e
        for field in ("start_date", "next_due_date"):
            if field in update:
                update[field] = _coerce_date(update[field], field)

        with self.db_manager.session_scope() as session:
            row = self._query(session, user_id, recurring_id)
            for field, value in update.items():
                setattr(row, field, value)
            session.flush()
            stored = row.to_dict()

        logger.info("Updated recurring transaction %s for user %s", recurring_id, user_id)
        return self.encrypted_db.decrypt_recurring_transaction(stored, user_id)

    def delete_recurring_transaction(self, user_id: str, recurring_id: str) -> None:
        with self.db_manager.session_scope() as session:
            session.delete(self._query(session, user_id, recurring_id))
        logger.info("Deleted recurring transaction %s for user %s", recurring_id, user_id)

    def process_due(
        self, today: Optional[date] = None, user_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """
        Post every template due on or before today.

        Each due template produces one transaction dated at its due date and
        has its next_due_date advanced by one period. A failure on one
        template is logged and reported without stopping the others.

        Args:
            today: Processing date (defaults to date.today())
            user_id: Restrict processing to one user

        Returns:
            One result per template: {"id", "status"} plus "error" on failure.
            Status "partial" means the transaction was posted but next_due_date
            was not advanced, so the template will post again on the next run.
        """
        today = today or date.today()
        with self.db_manager.session_scope() as session:
            query = session.query(RecurringTransaction).filter(
                RecurringTransaction.next_due_date <= today
            )
            if user_id is not None:
                query = query.filter(RecurringTransaction.user_id == user_id)
            due = [row.to_dict() for row in query.order_by(RecurringTransaction.next_due_date)]

        results = []
        for stored in due:
            try:
                recurring = self._post(stored)
            except FinanceAppError as e:
                logger.error("Error processing recurring transaction %s: %s", stored["id"], e)
                results.append({"id": stored["id"], "status": "error", "error": e.message})
                continue
            try:
                self._advance(stored["id"], recurring)
            except FinanceAppError as e:
                logger.error(
                    "Posted recurring transaction %s but could not advance its due date: %s",
                    stored["id"], e,
                )
                results.append({"id": stored["id"], "status": "partial", "error": e.message})
                continue
            results.append({"id": stored["id"], "status": "success"})

        logger.info("Processed %d recurring transactions", len(due))
        return results

    def _post(self, stored: Mapping[str, Any]) -> Dict[str, Any]:
        owner = stored["user_id"]
        recurring = self.encrypted_db.decrypt_recurring_transaction(stored, owner)
        self.transaction_manager.create_transaction(
            owner,
            {
                "account_id": recurring["account_id"],
                "to_account_id": recurring["to_account_id"],
                "amount": recurring["amount"],
                "type": recurring["type"],
                "category": recurring["category"],
                "notes": f"{recurring['description']}{RECURRING_NOTE_SUFFIX}",
                "date": recurring["next_due_date"],
            },
        )
        return recurring

    def _advance(self, recurring_id: str, recurring: Mapping[str, Any]) -> None:
        advanced = next_occurrence(recurring["next_due_date"], recurring["frequency"])
        with self.db_manager.session_scope() as session:
            row = self._query(session, recurring["user_id"], recurring_id)
            row.next_due_date = advanced

    @staticmethod
    def _require_account(session, user_id: str, account_id: str) -> None:
        exists = session.query(FinancialAccount.id).filter(
            FinancialAccount.id == account_id,
            FinancialAccount.user_id == user_id,
        ).first()
        if exists is None:
            raise AccountNotFoundError(
                "Account not found", details={"account_id": account_id, "user_id": user_id}
            )

    @staticmethod
    def _query(session, user_id: str, recurring_id: str) -> RecurringTransaction:
        row = session.query(RecurringTransaction).filter(
            RecurringTransaction.id == recurring_id,
            RecurringTransaction.user_id == user_id,
        ).one_or_none()
        if row is None:
            raise RecordNotFoundError(
                "Recurring transaction not found",
                details={"recurring_id": recurring_id, "user_id": user_id},
            )
        return row
