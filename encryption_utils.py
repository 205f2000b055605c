"""
Encryption utilities for per-user field protection across the finance tracker.

Provides the AES-256-GCM primitive layer: key resolution with one-shot
self-healing provisioning, a bounded per-instance key cache, and helpers for
encrypting bytes, strings and numbers into the stored blob format

    base64( 12-byte nonce || ciphertext || 16-byte tag )

Numbers are encrypted as their canonical base-10 string ("1234.5") and parsed
back with float() on the way out.
"""

from __future__ import annotations

import base64
import binascii
import logging
import math
import os
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Mapping, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from config_manager import get_encryption_settings
from database_ops import DatabaseManager
from exceptions import (
    DatabaseError,
    DecryptionError,
    DuplicateKeyError,
    EncryptionError,
    EncryptionKeyError,
    KeyNotFoundError,
    KeyUnavailableError,
)
from key_store import KeyStore

logger = logging.getLogger(__name__)

NONCE_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32

DEFAULT_CACHE_SIZE = 256
DEFAULT_CACHE_TTL_SECONDS = 900.0


class KeyCache:
    """
    Thread-safe LRU cache of imported keys with a time-to-live.

    Entries are keyed by user id. Expired entries are dropped on access so a
    long-lived process re-reads keys from storage periodically.
    """

    def __init__(
        self,
        max_size: int = DEFAULT_CACHE_SIZE,
        ttl_seconds: Optional[float] = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size < 1:
            raise ValueError("KeyCache max_size must be at least 1")
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: "OrderedDict[str, tuple[AESGCM, float]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, user_id: str) -> Optional[AESGCM]:
        with self._lock:
            entry = self._entries.get(user_id)
            if entry is None:
                return None
            key, stored_at = entry
            if self.ttl_seconds is not None and self._clock() - stored_at >= self.ttl_seconds:
                del self._entries[user_id]
                return None
            self._entries.move_to_end(user_id)
            return key

    def put(self, user_id: str, key: AESGCM) -> None:
        with self._lock:
            self._entries[user_id] = (key, self._clock())
            self._entries.move_to_end(user_id)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)

    def invalidate(self, user_id: str) -> None:
        with self._lock:
            self._entries.pop(user_id, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, user_id: object) -> bool:
        with self._lock:
            return user_id in self._entries


def format_number(value: Any) -> str:
    """
    Render a number in canonical base-10 form.

    Integral values drop the fractional part ("1000", not "1000.0"); other
    values use the shortest repr that round-trips through float().

    Raises:
        EncryptionError: If the value is not a finite number
    """
    if isinstance(value, bool):
        raise EncryptionError("Boolean is not a numeric amount", details={"value_type": "bool"})
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise EncryptionError(
            "Value is not numeric", details={"value_type": type(value).__name__}
        ) from exc
    if not math.isfinite(number):
        raise EncryptionError("Refusing to encrypt a non-finite number")
    if number.is_integer() and abs(number) < 1e21:
        return str(int(number))
    return repr(number)


def parse_number(text: str) -> float:
    """
    Parse decrypted numeric plaintext.

    Raises:
        DecryptionError: If the plaintext is not a finite decimal number
    """
    try:
        number = float(text)
    except ValueError as exc:
        raise DecryptionError("Decrypted value is not numeric") from exc
    if not math.isfinite(number):
        raise DecryptionError("Decrypted value is not a finite number")
    return number


class EncryptionService:
    """
    AES-256-GCM encryption under per-user keys.

    Key handles are resolved through the KeyStore and held in the instance's
    KeyCache; each service instance owns its own cache.
    """

    def __init__(self, key_store: KeyStore, cache: Optional[KeyCache] = None) -> None:
        self.key_store = key_store
        self.cache = cache if cache is not None else KeyCache()
        # Serializes first-time provisioning per process; lookups stay concurrent.
        self._provision_lock = threading.Lock()

    def resolve_key(self, user_id: str) -> AESGCM:
        """
        Return a usable key handle for the user.

        On a cache miss the key is fetched from the KeyStore. A missing key
        triggers a single provisioning attempt followed by one re-fetch.

        Raises:
            KeyUnavailableError: If the key is missing and cannot be provisioned
            EncryptionKeyError: If the stored key material is malformed
        """
        cached = self.cache.get(user_id)
        if cached is not None:
            return cached

        try:
            raw_key = self.key_store.get_user_key(user_id)
        except KeyNotFoundError:
            raw_key = self._provision_key(user_id)

        key = self._import_key(raw_key, user_id)
        self.cache.put(user_id, key)
        return key

    def _provision_key(self, user_id: str) -> str:
        logger.warning("Encryption key not found for user %s; provisioning one", user_id)
        with self._provision_lock:
            try:
                self.key_store.create_user_key(user_id)
            except DuplicateKeyError:
                logger.info("Encryption key for user %s was created concurrently", user_id)
            except DatabaseError as exc:
                logger.error("Failed to provision encryption key for user %s", user_id)
                raise KeyUnavailableError(
                    "User encryption key not found and could not be created",
                    details={"user_id": user_id},
                    original_error=exc,
                ) from exc

            try:
                return self.key_store.get_user_key(user_id)
            except KeyNotFoundError as exc:
                raise KeyUnavailableError(
                    "User encryption key not found and could not be created",
                    details={"user_id": user_id},
                    original_error=exc,
                ) from exc

    @staticmethod
    def _import_key(raw_key: str, user_id: str) -> AESGCM:
        try:
            key_bytes = base64.b64decode(raw_key, validate=True)
        except (binascii.Error, ValueError, TypeError) as exc:
            raise EncryptionKeyError(
                "Stored encryption key is not valid base64", details={"user_id": user_id}
            ) from exc
        if len(key_bytes) != KEY_SIZE:
            raise EncryptionKeyError(
                "Stored encryption key has the wrong length",
                details={"user_id": user_id, "length": len(key_bytes)},
            )
        return AESGCM(key_bytes)

    def encrypt_bytes(self, plaintext: Optional[bytes], user_id: str) -> Any:
        """
        Encrypt bytes under the user's key with a fresh 96-bit nonce.

        Empty or None plaintext is returned unchanged.
        """
        if not plaintext:
            return plaintext
        key = self.resolve_key(user_id)
        nonce = os.urandom(NONCE_SIZE)
        ciphertext = key.encrypt(nonce, bytes(plaintext), None)
        return base64.b64encode(nonce + ciphertext).decode("ascii")

    def decrypt_bytes(self, blob: Optional[str], user_id: str) -> Any:
        """
        Decrypt a stored blob and verify its authentication tag.

        Empty or None input is returned unchanged.

        Raises:
            DecryptionError: If the blob is malformed, truncated, tampered with
                or was produced under a different key
        """
        if not blob:
            return blob
        try:
            combined = base64.b64decode(blob, validate=True)
        except (binascii.Error, ValueError, TypeError) as exc:
            raise DecryptionError(
                "Failed to decrypt data: blob is not valid base64", details={"user_id": user_id}
            ) from exc
        if len(combined) < NONCE_SIZE + TAG_SIZE:
            raise DecryptionError(
                "Failed to decrypt data: blob is truncated", details={"user_id": user_id}
            )

        key = self.resolve_key(user_id)
        nonce, ciphertext = combined[:NONCE_SIZE], combined[NONCE_SIZE:]
        try:
            return key.decrypt(nonce, ciphertext, None)
        except InvalidTag as exc:
            logger.error("Authentication tag check failed for user %s", user_id)
            raise DecryptionError(
                "Failed to decrypt data", details={"user_id": user_id}
            ) from exc

    def encrypt_string(self, value: Optional[str], user_id: str) -> Optional[str]:
        if value is None or value == "":
            return value
        return self.encrypt_bytes(str(value).encode("utf-8"), user_id)

    def decrypt_string(self, blob: Optional[str], user_id: str) -> Optional[str]:
        if blob is None or blob == "":
            return blob
        plaintext = self.decrypt_bytes(blob, user_id)
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError(
                "Decrypted value is not valid UTF-8", details={"user_id": user_id}
            ) from exc

    def encrypt_number(self, value: Any, user_id: str) -> Optional[str]:
        """Encrypt a number via its canonical decimal string; None passes through."""
        if value is None:
            return None
        return self.encrypt_string(format_number(value), user_id)

    def decrypt_number(self, blob: Optional[str], user_id: str) -> Optional[float]:
        """
        Decrypt a numeric blob back to a float; empty or None input gives None.

        Raises:
            DecryptionError: If the plaintext is not a finite number
        """
        if blob is None or blob == "":
            return None
        return parse_number(self.decrypt_string(blob, user_id))

    def batch_encrypt_strings(self, values: Mapping[str, str], user_id: str) -> Dict[str, str]:
        return {name: self.encrypt_string(value, user_id) for name, value in values.items()}

    def batch_decrypt_strings(self, values: Mapping[str, str], user_id: str) -> Dict[str, str]:
        return {name: self.decrypt_string(value, user_id) for name, value in values.items()}

    def clear_cache(self) -> None:
        self.cache.clear()


def build_encryption_service(
    db_manager: DatabaseManager,
    config: Optional[Dict[str, Any]] = None,
) -> EncryptionService:
    """Construct an EncryptionService with a cache sized from configuration."""
    settings = get_encryption_settings(config or {})
    cache = KeyCache(
        max_size=int(settings["key_cache_size"]),
        ttl_seconds=settings["key_cache_ttl_seconds"],
    )
    return EncryptionService(KeyStore(db_manager), cache)
