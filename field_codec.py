"""
Sensitive field metadata and bulk field encryption.

Declares, per entity table, which columns hold ciphertext and what kind of
value each one decrypts to. FieldCodec applies those declarations to plain
row dictionaries and delegates the cryptography to EncryptionService.
"""

from __future__ import annotations

import enum
import json
from typing import Any, Dict, Mapping

from encryption_utils import EncryptionService
from exceptions import DecryptionError, EncryptionError


class EntityKind(enum.Enum):
    """Entity types with encrypted columns, valued by table name."""
    ACCOUNT = "financial_accounts"
    TRANSACTION = "transactions"
    LOAN = "loans"
    RECURRING_TRANSACTION = "recurring_transactions"
    USER_PREFERENCES = "user_preferences"


class FieldKind(enum.Enum):
    """Plaintext type of an encrypted column."""
    STRING = "string"
    NUMBER = "number"
    JSON = "json"


SENSITIVE_FIELDS: Dict[EntityKind, Dict[str, FieldKind]] = {
    EntityKind.ACCOUNT: {
        "name": FieldKind.STRING,
        "balance": FieldKind.NUMBER,
    },
    EntityKind.TRANSACTION: {
        "amount": FieldKind.NUMBER,
        "category": FieldKind.STRING,
        "notes": FieldKind.STRING,
    },
    EntityKind.LOAN: {
        "name": FieldKind.STRING,
        "total_amount": FieldKind.NUMBER,
        "outstanding_balance": FieldKind.NUMBER,
        "emi_amount": FieldKind.NUMBER,
    },
    EntityKind.RECURRING_TRANSACTION: {
        "description": FieldKind.STRING,
        "amount": FieldKind.NUMBER,
        "category": FieldKind.STRING,
    },
    EntityKind.USER_PREFERENCES: {
        "preferences": FieldKind.JSON,
    },
}


def sensitive_fields(kind: EntityKind) -> Dict[str, FieldKind]:
    """Return the encrypted column map for an entity kind."""
    return SENSITIVE_FIELDS[kind]


class FieldCodec:
    """
    Encrypts and decrypts the sensitive columns of row dictionaries.

    Holds no state beyond the EncryptionService it delegates to.
    """

    def __init__(self, encryption: EncryptionService) -> None:
        self.encryption = encryption

    def encrypt_fields(
        self, kind: EntityKind, record: Mapping[str, Any], user_id: str
    ) -> Dict[str, Any]:
        """
        Return a copy of record with its present sensitive fields encrypted.

        Fields absent from record stay absent, None values stay None, and
        non-sensitive fields pass through unchanged.
        """
        result = dict(record)
        for field, field_kind in sensitive_fields(kind).items():
            if field not in result or result[field] is None:
                continue
            result[field] = self._encrypt_value(field, field_kind, result[field], user_id)
        return result

    def decrypt_fields(
        self, kind: EntityKind, record: Mapping[str, Any], user_id: str
    ) -> Dict[str, Any]:
        """Return a copy of record with its sensitive fields decrypted to their types."""
        result = dict(record)
        for field, field_kind in sensitive_fields(kind).items():
            if field not in result or result[field] is None:
                continue
            result[field] = self._decrypt_value(field, field_kind, result[field], user_id)
        return result

    def _encrypt_value(self, field: str, field_kind: FieldKind, value: Any, user_id: str) -> Any:
        if field_kind is FieldKind.NUMBER:
            try:
                return self.encryption.encrypt_number(value, user_id)
            except EncryptionError as exc:
                exc.details.setdefault("field", field)
                raise
        if field_kind is FieldKind.JSON:
            return self.encryption.encrypt_string(
                json.dumps(value, sort_keys=True, separators=(",", ":")), user_id
            )
        return self.encryption.encrypt_string(str(value), user_id)

    def _decrypt_value(self, field: str, field_kind: FieldKind, value: Any, user_id: str) -> Any:
        try:
            if field_kind is FieldKind.NUMBER:
                return self.encryption.decrypt_number(value, user_id)
            if field_kind is FieldKind.JSON:
                plaintext = self.encryption.decrypt_string(value, user_id)
                if not plaintext:
                    return None
                try:
                    return json.loads(plaintext)
                except json.JSONDecodeError as exc:
                    raise DecryptionError("Decrypted value is not valid JSON") from exc
            return self.encryption.decrypt_string(value, user_id)
        except DecryptionError as exc:
            exc.details.setdefault("field", field)
            raise
