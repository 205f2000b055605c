"""
Per-user encryption key storage.

Each user owns exactly one 256-bit AES key, generated from the operating
system CSPRNG and stored base64 encoded in the user_encryption_keys table.
Keys are never updated or rotated; they are only removed by account erasure.
"""

from __future__ import annotations

import base64
import logging

from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from database_ops import DatabaseManager, UserEncryptionKey
from exceptions import DatabaseError, DuplicateKeyError, KeyNotFoundError

logger = logging.getLogger(__name__)

KEY_BITS = 256


class KeyStore:
    """Creates and looks up user encryption keys."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    @staticmethod
    def generate_key() -> str:
        """Return a fresh random 256-bit key as standard base64 text."""
        key = AESGCM.generate_key(bit_length=KEY_BITS)
        return base64.b64encode(key).decode("ascii")

    def create_user_key(self, user_id: str) -> None:
        """
        Generate and persist a key for a user.

        Raises:
            DuplicateKeyError: If the user already has a key
            DatabaseError: If the insert fails for any other reason
        """
        session = self.db_manager.get_session()
        try:
            if self._find(session, user_id) is not None:
                raise DuplicateKeyError(
                    "Encryption key already exists", details={"user_id": user_id}
                )
            session.add(UserEncryptionKey(user_id=user_id, encryption_key=self.generate_key()))
            session.commit()
            logger.info("Created encryption key for user %s", user_id)
        except IntegrityError as e:
            # Lost a race with a concurrent creator; the unique index held.
            session.rollback()
            raise DuplicateKeyError(
                "Encryption key already exists",
                details={"user_id": user_id},
                original_error=e,
            ) from e
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("Failed to create encryption key for user %s: %s", user_id, e)
            raise DatabaseError(
                "Failed to create encryption key",
                details={"user_id": user_id},
                original_error=e,
            ) from e
        except DuplicateKeyError:
            session.rollback()
            raise
        finally:
            session.close()

    def get_user_key(self, user_id: str) -> str:
        """
        Return the stored base64 key for a user.

        Raises:
            KeyNotFoundError: If no key exists
        """
        session = self.db_manager.get_session()
        try:
            row = self._find(session, user_id)
        except SQLAlchemyError as e:
            logger.error("Failed to load encryption key for user %s: %s", user_id, e)
            raise DatabaseError(
                "Failed to load encryption key",
                details={"user_id": user_id},
                original_error=e,
            ) from e
        finally:
            session.close()

        if row is None:
            raise KeyNotFoundError("Encryption key not found", details={"user_id": user_id})
        return row.encryption_key

    def has_user_key(self, user_id: str) -> bool:
        """Return True if a key row exists for the user."""
        session = self.db_manager.get_session()
        try:
            return self._find(session, user_id) is not None
        finally:
            session.close()

    def delete_user_key(self, user_id: str) -> bool:
        """
        Remove a user's key as part of account erasure.

        Every ciphertext written for the user becomes unreadable afterwards.

        Returns:
            True if a key was deleted
        """
        with self.db_manager.session_scope() as session:
            deleted = session.query(UserEncryptionKey).filter(
                UserEncryptionKey.user_id == user_id
            ).delete(synchronize_session=False)
        if deleted:
            logger.warning("Deleted encryption key for user %s", user_id)
        return bool(deleted)

    @staticmethod
    def _find(session, user_id: str):
        return session.query(UserEncryptionKey).filter(
            UserEncryptionKey.user_id == user_id
        ).one_or_none()
