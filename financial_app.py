"""
Application wiring for the finance tracker.

Builds the database manager, the encryption stack and every data-access
manager from one configuration dictionary so the CLI and tests share the same
object graph.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from account_management import AccountManager
from config_manager import get_default_preferences
from dashboard import DashboardService
from database_ops import DatabaseManager
from encrypted_database import EncryptedDatabaseService, build_encrypted_database
from key_store import KeyStore
from loan_management import LoanManager
from preferences import PreferencesManager
from recurring_transactions import RecurringTransactionManager
from transaction_management import TransactionManager
from utils import resolve_connection_string

logger = logging.getLogger(__name__)


@dataclass
class FinanceApp:
    """Container for the shared managers of one process."""

    db_manager: DatabaseManager
    key_store: KeyStore
    encrypted_db: EncryptedDatabaseService
    accounts: AccountManager
    transactions: TransactionManager
    loans: LoanManager
    recurring: RecurringTransactionManager
    preferences: PreferencesManager
    dashboard: DashboardService

    def erase_user(self, user_id: str) -> None:
        """Delete all of a user's rows and their key, and forget the cached key."""
        self.db_manager.delete_user_data(user_id)
        self.encrypted_db.encryption.cache.invalidate(user_id)

    def close(self) -> None:
        self.encrypted_db.encryption.clear_cache()
        self.db_manager.close()


def create_app(
    config: Optional[Dict[str, Any]] = None,
    connection_string: Optional[str] = None,
    create_tables: bool = True,
) -> FinanceApp:
    """
    Build a FinanceApp.

    Args:
        config: Configuration dictionary (see config_manager.DEFAULT_CONFIG)
        connection_string: Overrides the database URL resolved from config
        create_tables: Create missing tables on startup
    """
    config = config or {}
    db_manager = DatabaseManager(connection_string or resolve_connection_string(config))
    if create_tables:
        db_manager.create_tables()

    encrypted_db = build_encrypted_database(db_manager, config)
    accounts = AccountManager(db_manager, encrypted_db)
    transactions = TransactionManager(db_manager, encrypted_db)
    loans = LoanManager(db_manager, encrypted_db)
    app = FinanceApp(
        db_manager=db_manager,
        key_store=encrypted_db.encryption.key_store,
        encrypted_db=encrypted_db,
        accounts=accounts,
        transactions=transactions,
        loans=loans,
        recurring=RecurringTransactionManager(db_manager, encrypted_db, transactions),
        preferences=PreferencesManager(
            db_manager, encrypted_db, defaults=get_default_preferences(config)
        ),
        dashboard=DashboardService(accounts, transactions, loans),
    )
    logger.info("Finance app initialized")
    return app
