"""
Tests for transaction posting, transfers and balance reconciliation.
"""

from datetime import date
from unittest.mock import patch

import pytest

from database_ops import AccountType, Transaction
from exceptions import (
    AccountNotFoundError,
    ConcurrentUpdateError,
    DatabaseError,
    RecordNotFoundError,
    TransactionError,
)


@pytest.fixture
def accounts(app):
    checking = app.accounts.create_account("u1", "Checking", AccountType.SAVINGS, 1000)
    savings = app.accounts.create_account("u1", "Rainy Day", AccountType.SAVINGS, 500)
    return checking["id"], savings["id"]


def _balance(app, account_id):
    return app.accounts.get_account("u1", account_id)["balance"]


def _row_count(app, user_id="u1"):
    with app.db_manager.session_scope() as session:
        return session.query(Transaction).filter(Transaction.user_id == user_id).count()


def _tx(account_id, amount, tx_type="EXPENSE", **extra):
    data = {
        "account_id": account_id,
        "amount": amount,
        "type": tx_type,
        "category": "Groceries",
        "date": "2024-05-10",
    }
    data.update(extra)
    return data


class TestPosting:

    @pytest.mark.parametrize("tx_type, expected", [
        ("INCOME", 1250.0),
        ("EXPENSE", 750.0),
        ("INVESTMENT", 750.0),
    ])
    def test_balance_effect_by_type(self, app, accounts, tx_type, expected):
        checking, _ = accounts
        app.transactions.create_transaction("u1", _tx(checking, 250, tx_type))
        assert _balance(app, checking) == expected

    def test_created_transaction_is_decrypted(self, app, accounts):
        checking, _ = accounts
        created = app.transactions.create_transaction(
            "u1", _tx(checking, 250.75, notes="weekly shop")
        )

        assert created["amount"] == 250.75
        assert created["category"] == "Groceries"
        assert created["notes"] == "weekly shop"
        assert created["date"] == date(2024, 5, 10)

    def test_sensitive_fields_are_ciphertext_at_rest(self, app, accounts):
        checking, _ = accounts
        created = app.transactions.create_transaction(
            "u1", _tx(checking, 250.75, notes="weekly shop")
        )
        with app.db_manager.session_scope() as session:
            row = session.get(Transaction, created["id"]).to_dict()

        assert row["amount"] != "250.75"
        assert row["category"] != "Groceries"
        assert row["notes"] != "weekly shop"
        assert row["type"] == "EXPENSE"

    def test_unknown_account_creates_nothing(self, app, accounts):
        with pytest.raises(AccountNotFoundError):
            app.transactions.create_transaction("u1", _tx("missing", 10))
        assert _row_count(app) == 0

    def test_other_users_account_is_rejected(self, app, accounts):
        checking, _ = accounts
        with pytest.raises(AccountNotFoundError):
            app.transactions.create_transaction("intruder", _tx(checking, 10))
        assert _balance(app, checking) == 1000.0

    @pytest.mark.parametrize("amount, changes", [
        (-5, {}),
        ("ten", {}),
        (10, {"type": "GIFT"}),
        (10, {"date": "10/05/2024"}),
    ])
    def test_invalid_payload(self, app, accounts, amount, changes):
        checking, _ = accounts
        with pytest.raises(TransactionError):
            app.transactions.create_transaction("u1", _tx(checking, amount, **changes))
        assert _row_count(app) == 0

    def test_failed_posting_removes_the_row(self, app, accounts):
        checking, _ = accounts
        conflict = ConcurrentUpdateError("changed")
        with patch.object(app.encrypted_db, "adjust_balance", side_effect=conflict):
            with pytest.raises(ConcurrentUpdateError):
                app.transactions.create_transaction("u1", _tx(checking, 10))

        assert _row_count(app) == 0
        assert _balance(app, checking) == 1000.0


class TestTransfers:

    def test_transfer_moves_money(self, app, accounts):
        checking, savings = accounts
        app.transactions.create_transaction(
            "u1", _tx(checking, 200, "TRANSFER", to_account_id=savings, category="Transfer")
        )
        assert _balance(app, checking) == 800.0
        assert _balance(app, savings) == 700.0

    def test_transfer_creates_two_linked_legs(self, app, accounts):
        checking, savings = accounts
        app.transactions.create_transaction(
            "u1", _tx(checking, 200, "TRANSFER", to_account_id=savings,
                      category="Transfer", notes="rent buffer")
        )
        legs = {leg["account_id"]: leg for leg in app.transactions.list_transactions("u1")}

        outgoing, incoming = legs[checking], legs[savings]
        assert outgoing["transfer_group_id"] == incoming["transfer_group_id"]
        assert outgoing["transfer_direction"] == "OUTGOING"
        assert incoming["transfer_direction"] == "INCOMING"
        assert outgoing["notes"] == "Transfer to account (rent buffer)"
        assert incoming["notes"] == "Transfer from account (rent buffer)"
        assert outgoing["to_account_id"] == savings
        assert incoming["to_account_id"] == checking

    def test_joined_account_names_are_plaintext(self, app, accounts):
        checking, savings = accounts
        app.transactions.create_transaction(
            "u1", _tx(checking, 200, "TRANSFER", to_account_id=savings, category="Transfer")
        )
        outgoing = next(
            leg for leg in app.transactions.list_transactions("u1") if leg["account_id"] == checking
        )
        assert outgoing["financial_accounts"] == {"name": "Checking", "type": "SAVINGS"}
        assert outgoing["to_financial_accounts"] == {"name": "Rainy Day", "type": "SAVINGS"}

    def test_transfer_validation(self, app, accounts):
        checking, _ = accounts
        with pytest.raises(TransactionError):
            app.transactions.create_transaction("u1", _tx(checking, 10, "TRANSFER"))
        with pytest.raises(TransactionError):
            app.transactions.create_transaction(
                "u1", _tx(checking, 10, "TRANSFER", to_account_id=checking)
            )
        with pytest.raises(AccountNotFoundError):
            app.transactions.create_transaction(
                "u1", _tx(checking, 10, "TRANSFER", to_account_id="missing")
            )
        assert _row_count(app) == 0
        assert _balance(app, checking) == 1000.0

    def test_failed_incoming_leg_rolls_back(self, app, accounts):
        checking, savings = accounts
        real_adjust = app.encrypted_db.adjust_balance

        def adjust(account_id, user_id, delta):
            if account_id == savings:
                raise ConcurrentUpdateError("changed")
            return real_adjust(account_id, user_id, delta)

        with patch.object(app.encrypted_db, "adjust_balance", side_effect=adjust):
            with pytest.raises(ConcurrentUpdateError):
                app.transactions.create_transaction(
                    "u1", _tx(checking, 200, "TRANSFER", to_account_id=savings)
                )

        assert _row_count(app) == 0
        assert _balance(app, checking) == 1000.0
        assert _balance(app, savings) == 500.0


class TestUpdateAndDelete:

    def test_get_and_missing_transaction(self, app, accounts):
        checking, _ = accounts
        created = app.transactions.create_transaction("u1", _tx(checking, 10))
        assert app.transactions.get_transaction("u1", created["id"])["amount"] == 10.0
        with pytest.raises(RecordNotFoundError):
            app.transactions.get_transaction("u1", "missing")
        with pytest.raises(RecordNotFoundError):
            app.transactions.get_transaction("someone-else", created["id"])

    def test_delete_reverses_balance(self, app, accounts):
        checking, _ = accounts
        created = app.transactions.create_transaction("u1", _tx(checking, 300, "INCOME"))
        assert _balance(app, checking) == 1300.0

        app.transactions.delete_transaction("u1", created["id"])

        assert _balance(app, checking) == 1000.0
        assert _row_count(app) == 0

    def test_deleting_either_leg_removes_the_transfer(self, app, accounts):
        checking, savings = accounts
        app.transactions.create_transaction(
            "u1", _tx(checking, 200, "TRANSFER", to_account_id=savings)
        )
        incoming = next(
            leg for leg in app.transactions.list_transactions("u1") if leg["account_id"] == savings
        )

        app.transactions.delete_transaction("u1", incoming["id"])

        assert _row_count(app) == 0
        assert _balance(app, checking) == 1000.0
        assert _balance(app, savings) == 500.0

    def test_update_amount_reposts(self, app, accounts):
        checking, _ = accounts
        created = app.transactions.create_transaction("u1", _tx(checking, 100))

        updated = app.transactions.update_transaction("u1", created["id"], {"amount": 40})

        assert updated["amount"] == 40.0
        assert _balance(app, checking) == 960.0

    def test_update_type_and_account_reposts(self, app, accounts):
        checking, savings = accounts
        created = app.transactions.create_transaction("u1", _tx(checking, 100))

        app.transactions.update_transaction(
            "u1", created["id"], {"type": "INCOME", "account_id": savings}
        )

        assert _balance(app, checking) == 1000.0
        assert _balance(app, savings) == 600.0

    def test_update_descriptive_fields_leaves_balance(self, app, accounts):
        checking, _ = accounts
        created = app.transactions.create_transaction("u1", _tx(checking, 100))

        updated = app.transactions.update_transaction(
            "u1", created["id"], {"category": "Dining", "notes": "dinner", "date": "2024-06-01"}
        )

        assert updated["category"] == "Dining"
        assert updated["notes"] == "dinner"
        assert updated["date"] == date(2024, 6, 1)
        assert _balance(app, checking) == 900.0

    def test_transfer_amount_cannot_change(self, app, accounts):
        checking, savings = accounts
        outgoing = app.transactions.create_transaction(
            "u1", _tx(checking, 200, "TRANSFER", to_account_id=savings)
        )
        with pytest.raises(TransactionError):
            app.transactions.update_transaction("u1", outgoing["id"], {"amount": 50})

        updated = app.transactions.update_transaction("u1", outgoing["id"], {"category": "Savings"})
        assert updated["category"] == "Savings"
        assert _balance(app, checking) == 800.0

    def test_cannot_convert_to_transfer(self, app, accounts):
        checking, _ = accounts
        created = app.transactions.create_transaction("u1", _tx(checking, 10))
        with pytest.raises(TransactionError):
            app.transactions.update_transaction("u1", created["id"], {"type": "TRANSFER"})

    def test_failed_repost_leaves_transaction_and_balances(self, app, accounts):
        checking, savings = accounts
        created = app.transactions.create_transaction("u1", _tx(checking, 100))
        real_adjust = app.encrypted_db.adjust_balance

        def adjust(account_id, user_id, delta):
            if account_id == savings:
                raise ConcurrentUpdateError("changed")
            return real_adjust(account_id, user_id, delta)

        with patch.object(app.encrypted_db, "adjust_balance", side_effect=adjust):
            with pytest.raises(ConcurrentUpdateError):
                app.transactions.update_transaction("u1", created["id"], {"account_id": savings})

        assert app.transactions.get_transaction("u1", created["id"])["account_id"] == checking
        assert _balance(app, checking) == 900.0
        assert _balance(app, savings) == 500.0

    def test_failed_row_update_reverses_repost(self, app, accounts):
        checking, _ = accounts
        created = app.transactions.create_transaction("u1", _tx(checking, 100))
        real_query = app.transactions._query
        calls = []

        def query(session, user_id, transaction_id):
            calls.append(transaction_id)
            if len(calls) == 2:
                raise DatabaseError("write failed")
            return real_query(session, user_id, transaction_id)

        with patch.object(app.transactions, "_query", side_effect=query):
            with pytest.raises(DatabaseError):
                app.transactions.update_transaction("u1", created["id"], {"amount": 300})

        assert app.transactions.get_transaction("u1", created["id"])["amount"] == 100.0
        assert _balance(app, checking) == 900.0

    def test_failed_leg_reversal_restores_transfer(self, app, accounts):
        checking, savings = accounts
        outgoing = app.transactions.create_transaction(
            "u1", _tx(checking, 200, "TRANSFER", to_account_id=savings)
        )
        real_adjust = app.encrypted_db.adjust_balance
        calls = []

        def adjust(account_id, user_id, delta):
            calls.append(account_id)
            if len(calls) == 2:
                raise ConcurrentUpdateError("changed")
            return real_adjust(account_id, user_id, delta)

        with patch.object(app.encrypted_db, "adjust_balance", side_effect=adjust):
            with pytest.raises(ConcurrentUpdateError):
                app.transactions.delete_transaction("u1", outgoing["id"])

        assert _row_count(app) == 2
        assert _balance(app, checking) == 800.0
        assert _balance(app, savings) == 700.0

        app.transactions.delete_transaction("u1", outgoing["id"])

        assert _row_count(app) == 0
        assert _balance(app, checking) == 1000.0
        assert _balance(app, savings) == 500.0

    def test_failed_row_delete_restores_balance(self, app, accounts):
        checking, _ = accounts
        created = app.transactions.create_transaction("u1", _tx(checking, 100))

        with patch.object(
            app.transactions, "_delete_rows", side_effect=DatabaseError("delete failed")
        ):
            with pytest.raises(DatabaseError):
                app.transactions.delete_transaction("u1", created["id"])

        assert _row_count(app) == 1
        assert _balance(app, checking) == 900.0


class TestListing:

    def test_newest_first_with_limit(self, app, accounts):
        checking, _ = accounts
        for day in (1, 3, 2, 5, 4, 6):
            app.transactions.create_transaction(
                "u1", _tx(checking, day, date=f"2024-05-0{day}")
            )

        recent = app.transactions.get_recent_transactions("u1")

        assert [tx["date"].day for tx in recent] == [6, 5, 4, 3, 2]
        assert len(app.transactions.list_transactions("u1")) == 6

    def test_list_is_scoped_to_user(self, app, accounts):
        checking, _ = accounts
        app.transactions.create_transaction("u1", _tx(checking, 10))
        assert app.transactions.list_transactions("u2") == []
