"""
Dashboard statistics computed on decrypted data.

All aggregation happens in Python after batch decryption; the database only
ever sees ciphertext for amounts, categories and balances.
"""

import logging
import re
from datetime import date
from typing import Any, Dict, List, Optional

import pandas as pd

from account_management import AccountManager
from loan_management import LoanManager
from transaction_management import TransactionManager

logger = logging.getLogger(__name__)

TRANSACTION_COLUMNS = ["date", "type", "category", "amount"]


def category_key(category: Optional[str]) -> str:
    """Chart-friendly category key: lower case with whitespace removed."""
    return re.sub(r"\s+", "", (category or "").lower())


class DashboardService:
    """Builds the summary figures shown on the dashboard."""

    def __init__(
        self,
        account_manager: AccountManager,
        transaction_manager: TransactionManager,
        loan_manager: LoanManager,
    ):
        self.account_manager = account_manager
        self.transaction_manager = transaction_manager
        self.loan_manager = loan_manager

    def _transactions_frame(self, user_id: str) -> pd.DataFrame:
        transactions = self.transaction_manager.list_transactions(user_id)
        df = pd.DataFrame(transactions, columns=TRANSACTION_COLUMNS)
        if not df.empty:
            df["date"] = pd.to_datetime(df["date"])
            df["amount"] = df["amount"].astype(float)
        return df

    def get_dashboard_stats(self, user_id: str, today: Optional[date] = None) -> Dict[str, Any]:
        """
        Return balance, income, expense and debt totals for a user.

        Income and expenses cover the calendar month containing today.
        """
        today = today or date.today()
        accounts = self.account_manager.list_accounts(user_id)
        loans = self.loan_manager.list_loans(user_id)
        df = self._transactions_frame(user_id)

        total_balance = float(sum(account["balance"] or 0.0 for account in accounts))
        total_debt = float(sum(loan["outstanding_balance"] or 0.0 for loan in loans))

        monthly_income = 0.0
        monthly_expenses = 0.0
        expenses_by_category: Dict[str, float] = {}
        if not df.empty:
            current = df[(df["date"].dt.year == today.year) & (df["date"].dt.month == today.month)]
            income = current[current["type"] == "INCOME"]
            expenses = current[current["type"] == "EXPENSE"]
            monthly_income = float(income["amount"].sum())
            monthly_expenses = float(expenses["amount"].sum())
            expenses_by_category = {
                category: float(total)
                for category, total in expenses.groupby("category")["amount"].sum().items()
            }

        return {
            "total_balance": total_balance,
            "monthly_income": monthly_income,
            "monthly_expenses": monthly_expenses,
            "total_debt": total_debt,
            "net_worth": total_balance - total_debt,
            "expenses_by_category": expenses_by_category,
            "accounts_count": len(accounts),
            "transactions_count": int(len(df)),
            "loans_count": len(loans),
        }

    def get_monthly_expense_data(
        self, user_id: str, months: int = 6, today: Optional[date] = None
    ) -> List[Dict[str, Any]]:
        """
        Return per-month expense totals by category for the last N months.

        Every row has a "month" abbreviation and one key per expense
        category ever recorded (see category_key), zero-filled.
        """
        today = today or date.today()
        end = pd.Timestamp(today).to_period("M")
        periods = [end - offset for offset in range(months - 1, -1, -1)]

        df = self._transactions_frame(user_id)
        expenses = df[df["type"] == "EXPENSE"].copy() if not df.empty else df
        categories = sorted({category_key(c) for c in expenses["category"]}) if not expenses.empty else []

        totals: Dict[Any, float] = {}
        if not expenses.empty:
            expenses["period"] = expenses["date"].dt.to_period("M")
            expenses["category_key"] = expenses["category"].map(category_key)
            in_window = expenses[expenses["period"].isin(periods)]
            if not in_window.empty:
                totals = in_window.groupby(["period", "category_key"])["amount"].sum().to_dict()

        return [
            {
                "month": period.strftime("%b"),
                **{key: float(totals.get((period, key), 0.0)) for key in categories},
            }
            for period in periods
        ]
