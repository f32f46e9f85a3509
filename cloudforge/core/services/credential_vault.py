"""
Credential vault — per-user provider credentials.

Populated when a user logs in, read on every deploy/render call.
Callers only ever talk to :class:`CredentialVault`; where the bundle
actually lives is a pluggable :class:`CredentialBackend`:

  - ``MemoryCredentialBackend``         process-local dict (default)
  - ``EncryptedFileCredentialBackend``  AES-256-GCM file, key derived
                                         with PBKDF2-SHA256 from a passphrase

Credentials are never logged: secret fields are ``SecretStr`` and the
vault only logs user ids and provider names.

Thread safety: every read and write goes through one lock, so no
reader can observe a half-written record.
"""

from __future__ import annotations

import base64
import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from cloudforge.core.errors import AuthenticationRequired, InternalError
from cloudforge.core.models.credentials import (
    AwsCredentials,
    AzureCredentials,
    dump_credentials,
    parse_credentials,
)

logger = logging.getLogger(__name__)

Credentials = AwsCredentials | AzureCredentials

# ── Crypto constants ────────────────────────────────────────────────
SALT_BYTES = 16
IV_BYTES = 12
KEY_BYTES = 32
KDF_ITERATIONS = 480_000


# ═══════════════════════════════════════════════════════════════════
#  Backends
# ═══════════════════════════════════════════════════════════════════


class CredentialBackend(ABC):
    """Storage contract behind the vault.

    Backends are called with the vault lock held; they need not be
    thread-safe themselves.
    """

    @abstractmethod
    def load(self, user_id: str) -> dict[str, Credentials]:
        """Return provider → credentials for a user (empty if unknown)."""

    @abstractmethod
    def store(self, user_id: str, bundle: dict[str, Credentials]) -> None:
        """Replace the user's provider → credentials mapping."""

    @abstractmethod
    def delete(self, user_id: str) -> bool:
        """Forget a user.  Returns False if the user was unknown."""


class MemoryCredentialBackend(CredentialBackend):
    """Process-local store.  Lost on restart."""

    def __init__(self) -> None:
        self._data: dict[str, dict[str, Credentials]] = {}

    def load(self, user_id: str) -> dict[str, Credentials]:
        return dict(self._data.get(user_id, {}))

    def store(self, user_id: str, bundle: dict[str, Credentials]) -> None:
        self._data[user_id] = dict(bundle)

    def delete(self, user_id: str) -> bool:
        return self._data.pop(user_id, None) is not None


def _derive_key(passphrase: str, salt: bytes, iterations: int = KDF_ITERATIONS) -> bytes:
    """Derive AES-256 key from passphrase using PBKDF2-SHA256."""
    from cryptography.hazmat.primitives import hashes
    from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_BYTES,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(passphrase.encode("utf-8"))


class EncryptedFileCredentialBackend(CredentialBackend):
    """All users' credentials in one AES-256-GCM encrypted JSON file.

    The key is derived once per instance (salt is generated on first
    write and stored in the envelope).  Writes are atomic: temp file
    in the same directory, then rename.
    """

    def __init__(self, path: Path, passphrase: str, *, iterations: int = KDF_ITERATIONS) -> None:
        if not passphrase or len(passphrase) < 8:
            raise ValueError("Credential store passphrase must be at least 8 characters")
        self._path = path
        self._passphrase = passphrase
        self._iterations = iterations
        self._cache: dict[str, dict[str, Any]] | None = None
        self._salt: bytes | None = None
        self._key: bytes | None = None

    @property
    def path(self) -> Path:
        return self._path

    # ── Envelope I/O ────────────────────────────────────────────

    def _key_for(self, salt: bytes) -> bytes:
        if self._key is None or self._salt != salt:
            self._key = _derive_key(self._passphrase, salt, self._iterations)
            self._salt = salt
        return self._key

    def _read_all(self) -> dict[str, dict[str, Any]]:
        if self._cache is not None:
            return self._cache
        if not self._path.is_file():
            self._cache = {}
            return self._cache

        from cryptography.exceptions import InvalidTag
        from cryptography.hazmat.primitives.ciphers.aead import AESGCM

        try:
            envelope = json.loads(self._path.read_text(encoding="utf-8"))
            salt = base64.b64decode(envelope["salt"])
            iv = base64.b64decode(envelope["iv"])
            ciphertext = base64.b64decode(envelope["ciphertext"])
        except (OSError, ValueError, KeyError) as e:
            raise InternalError(f"Credential store {self._path} is unreadable: {e}") from e

        self._iterations = int(envelope.get("kdf_iterations", self._iterations))
        try:
            plaintext = AESGCM(self._key_for(salt)).decrypt(iv, ciphertext, None)
        except InvalidTag as e:
            raise InternalError("Credential store passphrase is wrong or data is corrupt") from e

        self._cache = json.loads(plaintext.decode("utf-8"))
        return self._cache

    def _write_all(self, data: dict[str, dict[str, Any]]) -> None:
        from cryptography.hazmat.primitives.ciphers.aead import AESGCM

        if self._salt is None:
            self._salt = os.urandom(SALT_BYTES)
        iv = os.urandom(IV_BYTES)
        key = self._key_for(self._salt)
        ciphertext = AESGCM(key).encrypt(iv, json.dumps(data, sort_keys=True).encode("utf-8"), None)

        envelope = {
            "vault": True,
            "version": 1,
            "algorithm": "aes-256-gcm",
            "kdf": "pbkdf2-sha256",
            "kdf_iterations": self._iterations,
            "salt": base64.b64encode(self._salt).decode("ascii"),
            "iv": base64.b64encode(iv).decode("ascii"),
            "ciphertext": base64.b64encode(ciphertext).decode("ascii"),
        }

        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self._path.parent, prefix=".creds_", suffix=".tmp")
        tmp = Path(tmp_path)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(json.dumps(envelope, indent=2) + "\n")
            os.chmod(tmp, 0o600)
            tmp.replace(self._path)
        except Exception:
            tmp.unlink(missing_ok=True)
            raise
        self._cache = data

    # ── Backend contract ────────────────────────────────────────

    def load(self, user_id: str) -> dict[str, Credentials]:
        raw = self._read_all().get(user_id, {})
        return {provider: parse_credentials(data, provider) for provider, data in raw.items()}

    def store(self, user_id: str, bundle: dict[str, Credentials]) -> None:
        data = dict(self._read_all())
        data[user_id] = {provider: dump_credentials(c) for provider, c in bundle.items()}
        self._write_all(data)

    def delete(self, user_id: str) -> bool:
        data = dict(self._read_all())
        if user_id not in data:
            return False
        del data[user_id]
        self._write_all(data)
        return True


# ═══════════════════════════════════════════════════════════════════
#  Vault
# ═══════════════════════════════════════════════════════════════════


class CredentialVault:
    """Keyed store: user id → provider credentials."""

    def __init__(self, backend: CredentialBackend | None = None) -> None:
        self._backend = backend or MemoryCredentialBackend()
        self._lock = threading.Lock()

    @property
    def backend(self) -> CredentialBackend:
        return self._backend

    def put(self, user_id: str, credentials: Credentials) -> None:
        """Store (or replace) a user's credentials for one provider."""
        if not user_id:
            raise ValueError("user_id must not be empty")
        with self._lock:
            bundle = self._backend.load(user_id)
            bundle[credentials.provider] = credentials
            self._backend.store(user_id, bundle)
        logger.info("Stored %s credentials for user %s", credentials.provider, user_id)

    def get(self, user_id: str, provider: str | None = None) -> Credentials:
        """Fetch a user's credentials.

        Args:
            user_id: Opaque user identifier.
            provider: ``aws`` / ``azure``.  When None, the user must have
                exactly one provider stored.

        Raises:
            AuthenticationRequired: Nothing stored for this user/provider.
        """
        with self._lock:
            bundle = self._backend.load(user_id) if user_id else {}

        if provider is not None:
            creds = bundle.get(provider)
            if creds is None:
                raise AuthenticationRequired(
                    f"Authentication required: no {provider} credentials for this user"
                )
            return creds

        if len(bundle) == 1:
            return next(iter(bundle.values()))
        if not bundle:
            raise AuthenticationRequired("Authentication required: no credentials for this user")
        raise AuthenticationRequired(
            f"Multiple providers stored ({', '.join(sorted(bundle))}); specify one"
        )

    def has(self, user_id: str, provider: str | None = None) -> bool:
        try:
            self.get(user_id, provider)
        except AuthenticationRequired:
            return False
        return True

    def forget(self, user_id: str) -> bool:
        """Remove all credentials for a user (logout)."""
        with self._lock:
            removed = self._backend.delete(user_id)
        if removed:
            logger.info("Forgot credentials for user %s", user_id)
        return removed
