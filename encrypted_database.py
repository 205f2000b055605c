"""
Record-level encryption service.

The single integration point between data-access code and the encryption
layer: entity-shaped encrypt/decrypt helpers (single and batch), decryption of
joined account names, and the sanctioned balance read-modify-write cycle.

Balances are ciphertext, so they are only ever changed by reading and
decrypting the current value, doing the arithmetic in Python, and writing the
re-encrypted result with a compare-and-swap on the account's version column.
adjust_balance runs that cycle under a per-account lock.
"""

from __future__ import annotations

import logging
import threading
import weakref
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from config_manager import get_encryption_settings
from database_ops import DatabaseManager, FinancialAccount
from encryption_utils import EncryptionService, build_encryption_service
from exceptions import AccountNotFoundError, ConcurrentUpdateError, DecryptionError
from field_codec import EntityKind, FieldCodec

logger = logging.getLogger(__name__)

# Relation names under which a transaction or recurring transaction row
# carries its joined account as {"name": <ciphertext>, "type": ...}.
JOINED_ACCOUNT_RELATIONS = ("financial_accounts", "to_financial_accounts")

DEFAULT_BALANCE_RETRY_LIMIT = 3


class EncryptedDatabaseService:
    """Encrypts write payloads, decrypts read rows and owns balance mutation."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        encryption: EncryptionService,
        balance_retry_limit: int = DEFAULT_BALANCE_RETRY_LIMIT,
    ) -> None:
        self.db_manager = db_manager
        self.encryption = encryption
        self.codec = FieldCodec(encryption)
        self.balance_retry_limit = max(1, balance_retry_limit)
        # Entries live only while some caller holds or waits on the lock.
        self._locks: weakref.WeakValueDictionary[str, Any] = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Generic record helpers
    # ------------------------------------------------------------------

    def encrypt_record(self, kind: EntityKind, data: Mapping[str, Any], user_id: str) -> Dict[str, Any]:
        return self.codec.encrypt_fields(kind, data, user_id)

    def decrypt_record(self, kind: EntityKind, record: Mapping[str, Any], user_id: str) -> Dict[str, Any]:
        return self.codec.decrypt_fields(kind, record, user_id)

    def batch_decrypt(
        self, kind: EntityKind, records: Sequence[Mapping[str, Any]], user_id: str
    ) -> List[Dict[str, Any]]:
        """
        Decrypt rows in order.

        Fails fast: the first undecryptable row aborts the batch and nothing
        is returned, so callers never see a partially decrypted list.
        """
        decrypted = []
        for index, record in enumerate(records):
            try:
                decrypted.append(self.decrypt_record(kind, record, user_id))
            except DecryptionError as exc:
                exc.details.setdefault("index", index)
                exc.details.setdefault("record_id", record.get("id"))
                logger.error(
                    "Aborting batch decrypt of %s at row %d for user %s",
                    kind.value, index, user_id,
                )
                raise
        return decrypted

    def decrypt_joined_account_names(
        self,
        record: Mapping[str, Any],
        user_id: str,
        relations: Sequence[str] = JOINED_ACCOUNT_RELATIONS,
    ) -> Dict[str, Any]:
        """Decrypt the name of each joined account sub-object present on record."""
        result = dict(record)
        for relation in relations:
            joined = result.get(relation)
            if not isinstance(joined, Mapping):
                continue
            joined = dict(joined)
            if joined.get("name") is not None:
                joined["name"] = self.encryption.decrypt_string(joined["name"], user_id)
            result[relation] = joined
        return result

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def encrypt_account_data(self, data: Mapping[str, Any], user_id: str) -> Dict[str, Any]:
        return self.encrypt_record(EntityKind.ACCOUNT, data, user_id)

    def decrypt_account(self, account: Mapping[str, Any], user_id: str) -> Dict[str, Any]:
        return self.decrypt_record(EntityKind.ACCOUNT, account, user_id)

    def batch_decrypt_accounts(self, accounts: Sequence[Mapping[str, Any]], user_id: str) -> List[Dict[str, Any]]:
        return self.batch_decrypt(EntityKind.ACCOUNT, accounts, user_id)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def encrypt_transaction_data(self, data: Mapping[str, Any], user_id: str) -> Dict[str, Any]:
        return self.encrypt_record(EntityKind.TRANSACTION, data, user_id)

    def decrypt_transaction(self, transaction: Mapping[str, Any], user_id: str) -> Dict[str, Any]:
        decrypted = self.decrypt_record(EntityKind.TRANSACTION, transaction, user_id)
        return self.decrypt_joined_account_names(decrypted, user_id)

    def batch_decrypt_transactions(
        self, transactions: Sequence[Mapping[str, Any]], user_id: str
    ) -> List[Dict[str, Any]]:
        decrypted = self.batch_decrypt(EntityKind.TRANSACTION, transactions, user_id)
        return [self.decrypt_joined_account_names(row, user_id) for row in decrypted]

    # ------------------------------------------------------------------
    # Loans
    # ------------------------------------------------------------------

    def encrypt_loan_data(self, data: Mapping[str, Any], user_id: str) -> Dict[str, Any]:
        return self.encrypt_record(EntityKind.LOAN, data, user_id)

    def decrypt_loan(self, loan: Mapping[str, Any], user_id: str) -> Dict[str, Any]:
        return self.decrypt_record(EntityKind.LOAN, loan, user_id)

    def batch_decrypt_loans(self, loans: Sequence[Mapping[str, Any]], user_id: str) -> List[Dict[str, Any]]:
        return self.batch_decrypt(EntityKind.LOAN, loans, user_id)

    # ------------------------------------------------------------------
    # Recurring transactions
    # ------------------------------------------------------------------

    def encrypt_recurring_transaction_data(self, data: Mapping[str, Any], user_id: str) -> Dict[str, Any]:
        return self.encrypt_record(EntityKind.RECURRING_TRANSACTION, data, user_id)

    def decrypt_recurring_transaction(self, recurring: Mapping[str, Any], user_id: str) -> Dict[str, Any]:
        decrypted = self.decrypt_record(EntityKind.RECURRING_TRANSACTION, recurring, user_id)
        return self.decrypt_joined_account_names(decrypted, user_id)

    def batch_decrypt_recurring_transactions(
        self, recurring: Sequence[Mapping[str, Any]], user_id: str
    ) -> List[Dict[str, Any]]:
        decrypted = self.batch_decrypt(EntityKind.RECURRING_TRANSACTION, recurring, user_id)
        return [self.decrypt_joined_account_names(row, user_id) for row in decrypted]

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------

    def encrypt_preferences_data(self, data: Mapping[str, Any], user_id: str) -> Dict[str, Any]:
        return self.encrypt_record(EntityKind.USER_PREFERENCES, data, user_id)

    def decrypt_preferences(self, row: Mapping[str, Any], user_id: str) -> Dict[str, Any]:
        return self.decrypt_record(EntityKind.USER_PREFERENCES, row, user_id)

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    @contextmanager
    def balance_lock(self, account_id: str) -> Iterator[None]:
        """Hold the per-account lock guarding balance read-modify-write."""
        with self._locks_guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[account_id] = lock
        with lock:
            yield

    def read_balance(self, account_id: str, user_id: str) -> Tuple[float, int]:
        """
        Return the decrypted balance and its version.

        Raises:
            AccountNotFoundError: If the account does not exist for the user
            DecryptionError: If the stored balance is empty or cannot be decrypted
        """
        with self.db_manager.session_scope() as session:
            row = session.query(FinancialAccount.balance, FinancialAccount.version).filter(
                FinancialAccount.id == account_id,
                FinancialAccount.user_id == user_id,
            ).one_or_none()
        if row is None:
            raise AccountNotFoundError(
                "Account not found", details={"account_id": account_id, "user_id": user_id}
            )
        balance = self.encryption.decrypt_number(row.balance, user_id)
        if balance is None:
            raise DecryptionError(
                "Stored balance is empty", details={"account_id": account_id, "user_id": user_id}
            )
        return balance, row.version

    def get_decrypted_balance(self, account_id: str, user_id: str) -> float:
        """
        Return the decrypted balance of an account.

        Raises:
            AccountNotFoundError: If the account does not exist for the user
            DecryptionError: If the stored balance cannot be decrypted
        """
        balance, _ = self.read_balance(account_id, user_id)
        return balance

    def update_encrypted_balance(
        self,
        account_id: str,
        user_id: str,
        new_balance: float,
        expected_version: Optional[int] = None,
    ) -> None:
        """
        Encrypt and store a new balance, bumping the account version.

        With expected_version the write only succeeds if the version is
        unchanged since it was read.

        Raises:
            AccountNotFoundError: If the account does not exist for the user
            ConcurrentUpdateError: If expected_version no longer matches
        """
        encrypted = self.encryption.encrypt_number(new_balance, user_id)
        with self.db_manager.session_scope() as session:
            query = session.query(FinancialAccount).filter(
                FinancialAccount.id == account_id,
                FinancialAccount.user_id == user_id,
            )
            if expected_version is not None:
                query = query.filter(FinancialAccount.version == expected_version)
            updated = query.update(
                {
                    FinancialAccount.balance: encrypted,
                    FinancialAccount.version: FinancialAccount.version + 1,
                },
                synchronize_session=False,
            )

        if updated:
            logger.debug("Updated balance of account %s for user %s", account_id, user_id)
            return
        details = {"account_id": account_id, "user_id": user_id}
        if expected_version is not None and self._account_exists(account_id, user_id):
            details["expected_version"] = expected_version
            raise ConcurrentUpdateError("Account balance changed concurrently", details=details)
        raise AccountNotFoundError("Account not found", details=details)

    def adjust_balance(self, account_id: str, user_id: str, delta: float) -> float:
        """
        Add delta to an account balance and return the new balance.

        Runs read, decrypt, add, encrypt and compare-and-swap under the
        account lock, retrying on version conflicts from other processes.

        Raises:
            AccountNotFoundError: If the account does not exist for the user
            ConcurrentUpdateError: If every attempt lost a race
        """
        with self.balance_lock(account_id):
            for attempt in range(1, self.balance_retry_limit + 1):
                current, version = self.read_balance(account_id, user_id)
                new_balance = current + delta
                try:
                    self.update_encrypted_balance(
                        account_id, user_id, new_balance, expected_version=version
                    )
                    return new_balance
                except ConcurrentUpdateError:
                    logger.warning(
                        "Balance of account %s changed during update (attempt %d/%d)",
                        account_id, attempt, self.balance_retry_limit,
                    )
        raise ConcurrentUpdateError(
            "Account balance kept changing; giving up",
            details={"account_id": account_id, "attempts": self.balance_retry_limit},
        )

    def _account_exists(self, account_id: str, user_id: str) -> bool:
        with self.db_manager.session_scope() as session:
            return session.query(FinancialAccount.id).filter(
                FinancialAccount.id == account_id,
                FinancialAccount.user_id == user_id,
            ).first() is not None


def build_encrypted_database(
    db_manager: DatabaseManager, config: Optional[Dict[str, Any]] = None
) -> EncryptedDatabaseService:
    """Construct the record service and its encryption stack from configuration."""
    settings = get_encryption_settings(config or {})
    return EncryptedDatabaseService(
        db_manager,
        build_encryption_service(db_manager, config),
        balance_retry_limit=int(settings["balance_retry_limit"]),
    )
