"""
Loan management module.

CRUD operations for loans; the loan name and all three amounts are stored
encrypted.
"""

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Mapping

from database_ops import DatabaseManager, Loan
from encrypted_database import EncryptedDatabaseService
from exceptions import LoanError, RecordNotFoundError

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = (
    "name",
    "total_amount",
    "outstanding_balance",
    "emi_amount",
    "start_date",
    "duration_months",
)


def _coerce_date(value: Any) -> date:
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value), "%Y-%m-%d").date()
    except ValueError as e:
        raise LoanError("Invalid start date; use YYYY-MM-DD", details={"start_date": value}) from e


class LoanManager:
    """Manages a user's loans."""

    def __init__(self, db_manager: DatabaseManager, encrypted_db: EncryptedDatabaseService):
        self.db_manager = db_manager
        self.encrypted_db = encrypted_db

    def create_loan(self, user_id: str, data: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Create a loan.

        Args:
            user_id: Owning user
            data: name, total_amount, outstanding_balance, emi_amount,
                start_date and duration_months

        Returns:
            The stored loan, decrypted
        """
        missing = [field for field in UPDATABLE_FIELDS if data.get(field) is None]
        if missing:
            raise LoanError("Missing loan fields", details={"fields": ",".join(missing)})

        payload = self.encrypted_db.encrypt_loan_data(
            {field: data[field] for field in UPDATABLE_FIELDS}, user_id
        )
        payload["start_date"] = _coerce_date(payload["start_date"])
        payload["duration_months"] = int(payload["duration_months"])

        with self.db_manager.session_scope() as session:
            loan = Loan(user_id=user_id, **payload)
            session.add(loan)
            session.flush()
            stored = loan.to_dict()

        logger.info("Created loan %s for user %s", stored["id"], user_id)
        return self.encrypted_db.decrypt_loan(stored, user_id)

    def list_loans(self, user_id: str) -> List[Dict[str, Any]]:
        """List a user's loans, newest first."""
        with self.db_manager.session_scope() as session:
            rows = [
                loan.to_dict()
                for loan in session.query(Loan).filter(Loan.user_id == user_id).order_by(
                    Loan.created_at.desc()
                )
            ]
        return self.encrypted_db.batch_decrypt_loans(rows, user_id)

    def get_loan(self, user_id: str, loan_id: str) -> Dict[str, Any]:
        with self.db_manager.session_scope() as session:
            stored = self._query(session, user_id, loan_id).to_dict()
        return self.encrypted_db.decrypt_loan(stored, user_id)

    def update_loan(self, user_id: str, loan_id: str, changes: Mapping[str, Any]) -> Dict[str, Any]:
        """Update the given loan fields; absent fields are left untouched."""
        update = {field: changes[field] for field in UPDATABLE_FIELDS if field in changes}
        update = self.encrypted_db.encrypt_loan_data(update, user_id)
        if "start_date" in update:
            update["start_date"] = _coerce_date(update["start_date"])
        if "duration_months" in update:
            update["duration_months"] = int(update["duration_months"])

        with self.db_manager.session_scope() as session:
            loan = self._query(session, user_id, loan_id)
            for field, value in update.items():
                setattr(loan, field, value)
            session.flush()
            stored = loan.to_dict()

        logger.info("Updated loan %s for user %s", loan_id, user_id)
        return self.encrypted_db.decrypt_loan(stored, user_id)

    def delete_loan(self, user_id: str, loan_id: str) -> None:
        with self.db_manager.session_scope() as session:
            session.delete(self._query(session, user_id, loan_id))
        logger.info("Deleted loan %s for user %s", loan_id, user_id)

    def get_total_debt(self, user_id: str) -> float:
        """Sum of outstanding balances across a user's loans."""
        return sum(loan["outstanding_balance"] or 0.0 for loan in self.list_loans(user_id))

    @staticmethod
    def _query(session, user_id: str, loan_id: str) -> Loan:
        loan = session.query(Loan).filter(Loan.id == loan_id, Loan.user_id == user_id).one_or_none()
        if loan is None:
            raise RecordNotFoundError(
                "Loan not found", details={"loan_id": loan_id, "user_id": user_id}
            )
        return loan
