"""
Encrypted Durable Key-Value Storage.

Backs the session layer's ``get/set/remove(key)`` storage contract with
the local SQLite ``secure_storage`` table.  Each value is encrypted
individually so that tokens never sit on disk in clear text.

Security model
--------------
- The encryption key is derived at runtime from machine identity
  (hostname + OS username) via PBKDF2-HMAC-SHA256 with a per-machine
  random salt.  The key is **never** persisted.
- Values are encrypted with AES-256-GCM; the row key is bound as
  associated data so ciphertexts cannot be swapped between keys.
- A row that fails authentication (corruption, machine identity
  changed) reads as absent.

Storage layout::

    secure_storage
    ├── key             TEXT PRIMARY KEY
    ├── encrypted_value BLOB
    ├── nonce           BLOB
    └── tag             BLOB
"""

from __future__ import annotations

import getpass
import os
import socket
import sqlite3
import stat
from pathlib import Path
from typing import Optional, Protocol

from Crypto.Cipher import AES
from Crypto.Hash import SHA256
from Crypto.Protocol.KDF import PBKDF2

from authcore.database import DatabaseManager
from authcore.logger import StructuredLogger


class KeyValueStore(Protocol):
    """Durable string storage consumed by the session layer."""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


class EncryptedKeyValueStore:
    """AES-256-GCM encrypted ``KeyValueStore`` over SQLite.

    Write failures are logged and not raised: losing persistence
    downgrades the session to process lifetime, it never blocks a login
    or a logout.

    Parameters
    ----------
    db:
        Database manager whose schema has been initialised.
    logger:
        Structured logger.
    salt_path:
        Location of the per-machine salt file.
    kdf_iterations:
        PBKDF2 iteration count.
    """

    _KEY_LENGTH: int = 32  # 256 bits
    _SALT_LENGTH: int = 32

    def __init__(
        self,
        db: DatabaseManager,
        logger: StructuredLogger,
        salt_path: Path,
        kdf_iterations: int = 600_000,
    ) -> None:
        self._db: DatabaseManager = db
        self._logger: StructuredLogger = logger
        self._salt_path: Path = salt_path
        self._kdf_iterations: int = kdf_iterations
        self._derived_key: Optional[bytes] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get(self, key: str) -> Optional[str]:
        """Return the decrypted value for *key*, or ``None``."""
        try:
            row = self._db.sqlite.execute(
                "SELECT encrypted_value, nonce, tag FROM secure_storage WHERE key = ?",
                (key,),
            ).fetchone()
        except sqlite3.Error as exc:
            self._logger.warning("Failed to read '%s' from secure storage: %s", key, exc)
            return None

        if row is None:
            return None

        try:
            derived = self._key()
        except OSError as exc:
            self._logger.warning("Storage key unavailable, cannot read '%s': %s", key, exc)
            return None

        try:
            cipher = AES.new(derived, AES.MODE_GCM, nonce=row["nonce"])
            cipher.update(key.encode("utf-8"))
            plaintext: bytes = cipher.decrypt_and_verify(row["encrypted_value"], row["tag"])
        except (ValueError, KeyError) as exc:
            self._logger.warning(
                "Decryption of '%s' failed (corrupted data or machine "
                "identity changed): %s",
                key,
                exc,
            )
            return None

        return plaintext.decode("utf-8")

    def set(self, key: str, value: str) -> None:
        """Encrypt *value* and upsert it under *key*."""
        try:
            cipher = AES.new(self._key(), AES.MODE_GCM)
            cipher.update(key.encode("utf-8"))
            ciphertext, tag = cipher.encrypt_and_digest(value.encode("utf-8"))

            with self._db.write_lock:
                self._db.sqlite.execute(
                    """
                    INSERT INTO secure_storage (key, encrypted_value, nonce, tag)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        encrypted_value = excluded.encrypted_value,
                        nonce           = excluded.nonce,
                        tag             = excluded.tag,
                        updated_at      = CURRENT_TIMESTAMP
                    """,
                    (key, ciphertext, cipher.nonce, tag),
                )
                self._db.sqlite.commit()
        except (sqlite3.Error, OSError) as exc:
            self._logger.warning("Failed to write '%s' to secure storage: %s", key, exc)

    def remove(self, key: str) -> None:
        """Delete *key*.  Safe to call when the key does not exist."""
        try:
            with self._db.write_lock:
                self._db.sqlite.execute("DELETE FROM secure_storage WHERE key = ?", (key,))
                self._db.sqlite.commit()
        except sqlite3.Error as exc:
            self._logger.error("Failed to remove '%s' from secure storage: %s", key, exc)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _key(self) -> bytes:
        """Derive (once per instance) the AES key from machine identity.

        Raises
        ------
        OSError
            If the salt file cannot be created or read; storage is refused
            rather than falling back to a static salt.
        """
        if self._derived_key is None:
            password: str = f"{socket.gethostname()}:{getpass.getuser()}"
            self._derived_key = PBKDF2(
                password=password,
                salt=self._get_or_create_salt(),
                dkLen=self._KEY_LENGTH,
                count=self._kdf_iterations,
                hmac_hash_module=SHA256,
            )
        return self._derived_key

    def _get_or_create_salt(self) -> bytes:
        if self._salt_path.exists():
            data: bytes = self._salt_path.read_bytes()
            if len(data) == self._SALT_LENGTH:
                return data
            self._logger.warning(
                "Salt file has unexpected length (%d); regenerating.",
                len(data),
            )
        salt: bytes = os.urandom(self._SALT_LENGTH)
        self._salt_path.parent.mkdir(parents=True, exist_ok=True)
        self._salt_path.write_bytes(salt)
        try:
            self._salt_path.chmod(stat.S_IRUSR | stat.S_IWUSR)  # 0o600
        except OSError as exc:
            self._logger.warning("Could not restrict salt file permissions: %s", exc)

        self._logger.info("Per-machine storage salt created at %s.", self._salt_path)
        return salt
