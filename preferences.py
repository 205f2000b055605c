"""
User preferences stored as an encrypted JSON blob.

Reading preferences is the one place where a failure falls back to defaults:
preferences hold display settings such as the currency code, never financial
values, so an unreadable blob must not block the rest of the app.
"""

import logging
from typing import Any, Dict, Mapping, Optional

from config_manager import get_default_preferences
from database_ops import DatabaseManager, UserPreferences
from encrypted_database import EncryptedDatabaseService
from exceptions import DatabaseError, EncryptionError

logger = logging.getLogger(__name__)


class PreferencesManager:
    """Reads and writes a user's encrypted preferences."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        encrypted_db: EncryptedDatabaseService,
        defaults: Optional[Mapping[str, Any]] = None,
    ):
        self.db_manager = db_manager
        self.encrypted_db = encrypted_db
        self.defaults = dict(defaults) if defaults is not None else get_default_preferences()

    def get_user_preferences(self, user_id: str) -> Dict[str, Any]:
        """
        Return the user's preferences merged over the defaults.

        Missing rows, undecryptable blobs and storage errors all yield the
        defaults.
        """
        try:
            stored = self._load(user_id)
        except (EncryptionError, DatabaseError) as e:
            logger.warning("Failed to get preferences for user %s, using defaults: %s", user_id, e)
            return dict(self.defaults)
        if stored is None:
            return dict(self.defaults)
        return {**self.defaults, **stored}

    def update_user_preferences(self, user_id: str, new_preferences: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Merge new_preferences into the stored ones and save them.

        Errors propagate; a failed write is never reported as success.

        Returns:
            The preferences now stored
        """
        current = self.get_user_preferences(user_id)
        updated = {**current, **new_preferences}
        payload = self.encrypted_db.encrypt_preferences_data({"preferences": updated}, user_id)

        with self.db_manager.session_scope() as session:
            row = session.get(UserPreferences, user_id)
            if row is None:
                session.add(UserPreferences(user_id=user_id, preferences=payload["preferences"]))
            else:
                row.preferences = payload["preferences"]

        logger.info("Updated preferences for user %s", user_id)
        return updated

    def _load(self, user_id: str) -> Optional[Dict[str, Any]]:
        with self.db_manager.session_scope() as session:
            row = session.get(UserPreferences, user_id)
            stored = row.to_dict() if row is not None else None
        if stored is None:
            return None
        preferences = self.encrypted_db.decrypt_preferences(stored, user_id)["preferences"]
        if not isinstance(preferences, dict):
            return None
        return preferences
