"""
Database operations module for the finance tracker.

This module defines the SQLAlchemy ORM schema and the DatabaseManager that
owns engine and session lifecycle. Sensitive columns are plain TEXT holding
ciphertext blobs; the encryption layer is the only code that reads or writes
their plaintext. Supports SQLite by default with easy migration to other
databases.
"""

import enum
import logging
import uuid
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any, Dict, Iterator

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    create_engine,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from exceptions import DatabaseError

# Configure logging
logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    """
    Get current UTC datetime with timezone awareness.

    Returns:
        Current datetime in UTC with timezone info
    """
    return datetime.now(UTC)


def new_id() -> str:
    """Return a new UUID4 primary key string."""
    return str(uuid.uuid4())


# Base class for declarative models
Base = declarative_base()


class AccountType(enum.Enum):
    """Enumeration of account types."""
    SAVINGS = "SAVINGS"
    CREDIT_CARD = "CREDIT_CARD"
    CASH = "CASH"
    WALLET = "WALLET"


class TransactionType(enum.Enum):
    """Enumeration of transaction types."""
    INCOME = "INCOME"
    EXPENSE = "EXPENSE"
    INVESTMENT = "INVESTMENT"
    TRANSFER = "TRANSFER"


class Frequency(enum.Enum):
    """Recurrence period of a recurring transaction."""
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class TransferDirection(enum.Enum):
    """Which leg of a transfer a transaction row represents."""
    OUTGOING = "OUTGOING"
    INCOMING = "INCOMING"


class RowMixin:
    """Plain-dict conversion shared by all models."""

    def to_dict(self) -> Dict[str, Any]:
        """
        Return the row as a plain dictionary.

        Enum columns are rendered as their string values so rows have the
        same shape as the storage layer returns.
        """
        row: Dict[str, Any] = {}
        for column in self.__table__.columns:
            value = getattr(self, column.name)
            if isinstance(value, enum.Enum):
                value = value.value
            row[column.name] = value
        return row


class UserEncryptionKey(RowMixin, Base):
    """
    One symmetric key per user.

    Attributes:
        user_id: Owning user (unique)
        encryption_key: Base64 encoded 256-bit AES key
        created_at: When the key was provisioned
    """

    __tablename__ = "user_encryption_keys"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, unique=True, index=True)
    encryption_key = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    def __repr__(self) -> str:
        # Never render key material.
        return f"<UserEncryptionKey(user_id='{self.user_id}')>"


class FinancialAccount(RowMixin, Base):
    """
    SQLAlchemy model representing a financial account.

    Attributes:
        id: UUID primary key
        user_id: Owning user
        name: Encrypted account name
        type: Account type
        balance: Encrypted balance
        version: Incremented on every balance write (compare-and-swap token)
        created_at: Timestamp when account was created
    """

    __tablename__ = "financial_accounts"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, index=True)
    name = Column(Text, nullable=False)
    type = Column(Enum(AccountType), nullable=False)
    balance = Column(Text, nullable=False)
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    def __repr__(self) -> str:
        return f"<FinancialAccount(id={self.id}, user_id='{self.user_id}', type={self.type})>"


class Transaction(RowMixin, Base):
    """
    SQLAlchemy model representing a posted transaction.

    Transfers are stored as two rows sharing a transfer_group_id, one per
    direction.
    """

    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, index=True)
    account_id = Column(String(36), ForeignKey("financial_accounts.id"), nullable=False, index=True)
    to_account_id = Column(String(36), ForeignKey("financial_accounts.id"), nullable=True)
    amount = Column(Text, nullable=False)
    type = Column(Enum(TransactionType), nullable=False)
    category = Column(Text, nullable=False)
    notes = Column(Text, nullable=True)
    date = Column(Date, nullable=False)
    transfer_group_id = Column(String(36), nullable=True, index=True)
    transfer_direction = Column(Enum(TransferDirection), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    __table_args__ = (
        Index('idx_transactions_user_date', 'user_id', 'date'),
    )

    def __repr__(self) -> str:
        return f"<Transaction(id={self.id}, type={self.type}, date={self.date})>"


class Loan(RowMixin, Base):
    """SQLAlchemy model representing a loan with encrypted amounts."""

    __tablename__ = "loans"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, index=True)
    name = Column(Text, nullable=False)
    total_amount = Column(Text, nullable=False)
    outstanding_balance = Column(Text, nullable=False)
    emi_amount = Column(Text, nullable=False)
    start_date = Column(Date, nullable=False)
    duration_months = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    def __repr__(self) -> str:
        return f"<Loan(id={self.id}, user_id='{self.user_id}')>"


class RecurringTransaction(RowMixin, Base):
    """SQLAlchemy model representing a scheduled monthly or yearly posting."""

    __tablename__ = "recurring_transactions"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, index=True)
    account_id = Column(String(36), ForeignKey("financial_accounts.id"), nullable=False)
    to_account_id = Column(String(36), ForeignKey("financial_accounts.id"), nullable=True)
    description = Column(Text, nullable=False)
    amount = Column(Text, nullable=False)
    type = Column(Enum(TransactionType), nullable=False)
    category = Column(Text, nullable=False)
    frequency = Column(Enum(Frequency), nullable=False)
    start_date = Column(Date, nullable=False)
    next_due_date = Column(Date, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<RecurringTransaction(id={self.id}, frequency={self.frequency}, "
            f"next_due_date={self.next_due_date})>"
        )


class UserPreferences(RowMixin, Base):
    """Encrypted JSON preferences blob, one row per user."""

    __tablename__ = "user_preferences"

    user_id = Column(String(64), primary_key=True)
    preferences = Column(Text, nullable=True)


USER_OWNED_MODELS = (Transaction, RecurringTransaction, Loan, FinancialAccount, UserPreferences)


class DatabaseManager:
    """
    Manages database connections and sessions.

    This class handles engine creation, schema creation and provides a
    transactional session scope used by every data-access module.
    """

    def __init__(self, connection_string: str):
        """
        Initialize the database manager.

        Args:
            connection_string: SQLAlchemy connection string (e.g., 'sqlite:///data/finance.db')

        Raises:
            DatabaseError: If the engine cannot be created
        """
        try:
            self.engine = create_engine(connection_string, echo=False)
            self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)
            logger.info("Database manager initialized with connection: %s", connection_string)
        except SQLAlchemyError as e:
            logger.error("Failed to initialize database: %s", e)
            raise DatabaseError("Failed to initialize database", original_error=e) from e

    def create_tables(self) -> None:
        """
        Create all database tables if they don't exist.

        Raises:
            DatabaseError: If table creation fails
        """
        try:
            Base.metadata.create_all(self.engine)
            logger.info("Database tables created/verified successfully")
        except SQLAlchemyError as e:
            logger.error("Failed to create database tables: %s", e)
            raise DatabaseError("Failed to create database tables", original_error=e) from e

    def get_session(self) -> Session:
        """
        Get a new database session.

        Returns:
            SQLAlchemy session object

        Note:
            Caller is responsible for closing the session.
        """
        return self.SessionLocal()

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """
        Provide a transactional scope around a series of operations.

        Commits on success, rolls back and re-raises on failure. Storage
        errors are wrapped in DatabaseError; domain errors pass through.
        """
        session = self.get_session()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("Database operation failed: %s", e)
            raise DatabaseError("Database operation failed", original_error=e) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def delete_user_data(self, user_id: str) -> None:
        """
        Delete every row owned by a user, including the encryption key.

        Used for full account erasure; this is the only path that removes a key.
        """
        with self.session_scope() as session:
            for model in USER_OWNED_MODELS:
                session.query(model).filter(model.user_id == user_id).delete(
                    synchronize_session=False
                )
            session.query(UserEncryptionKey).filter(
                UserEncryptionKey.user_id == user_id
            ).delete(synchronize_session=False)
        logger.info("Erased all data for user %s", user_id)

    def close(self) -> None:
        """Dispose of the engine connection pool."""
        self.engine.dispose()
        logger.info("Database connections closed")
