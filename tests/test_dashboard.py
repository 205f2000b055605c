"""
Tests for loans and the dashboard aggregation over decrypted data.
"""

from datetime import date

import pytest

from database_ops import AccountType, Loan
from dashboard import category_key
from exceptions import LoanError, RecordNotFoundError

TODAY = date(2024, 5, 20)


@pytest.fixture
def populated(app):
    checking = app.accounts.create_account("u1", "Checking", AccountType.SAVINGS, 1000)["id"]
    savings = app.accounts.create_account("u1", "Savings", AccountType.SAVINGS, 0)["id"]

    def post(amount, tx_type, category, day, **extra):
        app.transactions.create_transaction("u1", {
            "account_id": checking, "amount": amount, "type": tx_type,
            "category": category, "date": day, **extra,
        })

    post(3000, "INCOME", "Salary", "2024-05-01")
    post(200, "EXPENSE", "Groceries", "2024-05-03")
    post(50, "EXPENSE", "Eating Out", "2024-05-04")
    post(100, "EXPENSE", "Groceries", "2024-04-10")
    post(500, "TRANSFER", "Transfer", "2024-05-05", to_account_id=savings)

    app.loans.create_loan("u1", {
        "name": "Car loan", "total_amount": 5000, "outstanding_balance": 1500,
        "emi_amount": 250, "start_date": "2023-01-01", "duration_months": 24,
    })
    return checking, savings


def _loan(**overrides):
    data = {
        "name": "Home", "total_amount": 100000, "outstanding_balance": 80000.5,
        "emi_amount": 1200, "start_date": "2022-06-01", "duration_months": 120,
    }
    data.update(overrides)
    return data


class TestLoans:

    def test_create_and_read(self, app):
        loan = app.loans.create_loan("u1", _loan())

        assert loan["name"] == "Home"
        assert loan["outstanding_balance"] == 80000.5
        assert loan["start_date"] == date(2022, 6, 1)
        fetched = app.loans.get_loan("u1", loan["id"])
        assert {k: v for k, v in fetched.items() if k != "created_at"} == {
            k: v for k, v in loan.items() if k != "created_at"
        }

    def test_encrypted_at_rest(self, app):
        loan = app.loans.create_loan("u1", _loan())
        with app.db_manager.session_scope() as session:
            row = session.get(Loan, loan["id"]).to_dict()
        assert row["name"] != "Home"
        assert row["emi_amount"] != "1200"
        assert row["duration_months"] == 120

    def test_missing_fields(self, app):
        with pytest.raises(LoanError):
            app.loans.create_loan("u1", _loan(emi_amount=None))

    def test_update_and_delete(self, app):
        loan = app.loans.create_loan("u1", _loan())

        updated = app.loans.update_loan("u1", loan["id"], {"outstanding_balance": 79000})
        assert updated["outstanding_balance"] == 79000.0
        assert updated["name"] == "Home"

        app.loans.delete_loan("u1", loan["id"])
        with pytest.raises(RecordNotFoundError):
            app.loans.get_loan("u1", loan["id"])

    def test_total_debt(self, app):
        app.loans.create_loan("u1", _loan())
        app.loans.create_loan("u1", _loan(name="Bike", outstanding_balance=999.5))
        assert app.loans.get_total_debt("u1") == pytest.approx(81000.0)


class TestDashboard:

    def test_category_key(self):
        assert category_key("Eating Out") == "eatingout"
        assert category_key(" Groceries ") == "groceries"
        assert category_key(None) == ""

    def test_stats(self, app, populated):
        stats = app.dashboard.get_dashboard_stats("u1", today=TODAY)

        assert stats["total_balance"] == pytest.approx(3650.0)
        assert stats["monthly_income"] == pytest.approx(3000.0)
        assert stats["monthly_expenses"] == pytest.approx(250.0)
        assert stats["expenses_by_category"] == {"Groceries": 200.0, "Eating Out": 50.0}
        assert stats["total_debt"] == pytest.approx(1500.0)
        assert stats["net_worth"] == pytest.approx(2150.0)
        assert stats["accounts_count"] == 2
        assert stats["transactions_count"] == 6
        assert stats["loans_count"] == 1

    def test_stats_for_new_user(self, app):
        stats = app.dashboard.get_dashboard_stats("nobody", today=TODAY)

        assert stats["total_balance"] == 0
        assert stats["monthly_expenses"] == 0
        assert stats["expenses_by_category"] == {}
        assert stats["transactions_count"] == 0

    def test_monthly_expense_data(self, app, populated):
        data = app.dashboard.get_monthly_expense_data("u1", months=3, today=TODAY)

        assert data == [
            {"month": "Mar", "eatingout": 0.0, "groceries": 0.0},
            {"month": "Apr", "eatingout": 0.0, "groceries": 100.0},
            {"month": "May", "eatingout": 50.0, "groceries": 200.0},
        ]

    def test_monthly_expense_data_without_expenses(self, app):
        data = app.dashboard.get_monthly_expense_data("nobody", months=2, today=TODAY)
        assert data == [{"month": "Apr"}, {"month": "May"}]
