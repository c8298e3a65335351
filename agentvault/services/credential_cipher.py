"""AES-256-GCM credential cipher for connection bundles at rest.

Every blob gets a fresh random salt and IV. The per-blob key is derived
from the master secret with scrypt, and the salt is bound into the GCM
tag as associated data.

Blob format (base64 of the concatenation):
    salt (32 bytes) | iv (16 bytes) | tag (16 bytes) | ciphertext

Master secret source precedence:
    1. AGENTVAULT_MASTER_SECRET env var (base64, at least 32 bytes)
    2. AGENTVAULT_MASTER_SECRET_FILE env var (path to a regular file)
    3. production mode: MasterSecretMissing
       development/test mode: ephemeral random secret (lost on restart)
"""

import base64
import binascii
import json
import logging
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from agentvault.errors import DecryptionFailed, MasterSecretMissing

logger = logging.getLogger(__name__)

SALT_LENGTH = 32
IV_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32
MIN_SECRET_LENGTH = 32
_HEADER_LENGTH = SALT_LENGTH + IV_LENGTH + TAG_LENGTH

ENV_SECRET = "AGENTVAULT_MASTER_SECRET"
ENV_SECRET_FILE = "AGENTVAULT_MASTER_SECRET_FILE"


class EncryptedBlob:
    """Opaque encrypted credential bundle.

    The token is only meaningful to CredentialCipher. repr/str never show it.
    """

    __slots__ = ("_token",)

    def __init__(self, token: str) -> None:
        self._token = token

    def __repr__(self) -> str:
        return f"<EncryptedBlob ({len(self._token)} chars)>"

    __str__ = __repr__

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, EncryptedBlob):
            return NotImplemented
        return self._token == other._token

    def __hash__(self) -> int:
        return hash(self._token)


class CredentialCipher:
    """Encrypts and decrypts credential bundles under one master secret.

    Args:
        master_secret: Raw master secret bytes (at least 32).
        scrypt_n: scrypt CPU/memory cost (power of two).
        scrypt_r: scrypt block size.
        scrypt_p: scrypt parallelism.

    Raises:
        ValueError: If the master secret is too short.
    """

    def __init__(
        self,
        master_secret: bytes,
        *,
        scrypt_n: int = 2**14,
        scrypt_r: int = 8,
        scrypt_p: int = 1,
    ) -> None:
        if len(master_secret) < MIN_SECRET_LENGTH:
            raise ValueError(
                f"Master secret must be at least {MIN_SECRET_LENGTH} bytes "
                f"(got {len(master_secret)})"
            )
        self._secret = master_secret
        self._n = scrypt_n
        self._r = scrypt_r
        self._p = scrypt_p

    def __repr__(self) -> str:
        return f"<CredentialCipher scrypt(n={self._n}, r={self._r}, p={self._p})>"

    def _derive_key(self, salt: bytes) -> bytes:
        kdf = Scrypt(salt=salt, length=KEY_LENGTH, n=self._n, r=self._r, p=self._p)
        return kdf.derive(self._secret)

    def encrypt(self, bundle: dict[str, Any]) -> EncryptedBlob:
        """Encrypt a credential bundle.

        Args:
            bundle: Field name to value mapping.

        Returns:
            EncryptedBlob. Two calls on the same bundle never produce the same blob.
        """
        salt = os.urandom(SALT_LENGTH)
        iv = os.urandom(IV_LENGTH)
        plaintext = json.dumps(bundle, sort_keys=True).encode("utf-8")
        sealed = AESGCM(self._derive_key(salt)).encrypt(iv, plaintext, salt)
        # AESGCM appends the tag; the blob layout puts it before the ciphertext.
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        token = base64.b64encode(salt + iv + tag + ciphertext).decode("ascii")
        return EncryptedBlob(token)

    def decrypt(self, blob: EncryptedBlob) -> dict[str, Any]:
        """Decrypt a blob back into its bundle.

        Raises:
            DecryptionFailed: Malformed blob, tag mismatch, wrong master
                secret, or a payload that is not a JSON object.
        """
        if not isinstance(blob, EncryptedBlob):
            raise DecryptionFailed("Not an encrypted blob")
        try:
            raw = base64.b64decode(blob._token, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecryptionFailed("Malformed blob encoding") from e

        if len(raw) <= _HEADER_LENGTH:
            raise DecryptionFailed("Blob is truncated")

        salt = raw[:SALT_LENGTH]
        iv = raw[SALT_LENGTH:SALT_LENGTH + IV_LENGTH]
        tag = raw[SALT_LENGTH + IV_LENGTH:_HEADER_LENGTH]
        ciphertext = raw[_HEADER_LENGTH:]

        try:
            plaintext = AESGCM(self._derive_key(salt)).decrypt(iv, ciphertext + tag, salt)
        except InvalidTag as e:
            raise DecryptionFailed("Credential blob failed authentication") from e

        try:
            result = json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise DecryptionFailed("Decrypted payload is not JSON") from e
        if not isinstance(result, dict):
            raise DecryptionFailed(
                f"Decrypted payload is not an object (got {type(result).__name__})"
            )
        return result

    @staticmethod
    def to_storage(blob: EncryptedBlob) -> str:
        """Return the persisted text form of a blob."""
        return blob._token

    @staticmethod
    def from_storage(token: str) -> EncryptedBlob:
        """Wrap persisted text as a blob. Validation happens on decrypt."""
        return EncryptedBlob(token)


def generate_master_secret() -> str:
    """Return a fresh base64-encoded 32-byte master secret."""
    return base64.b64encode(os.urandom(MIN_SECRET_LENGTH)).decode("ascii")


def master_secret_source() -> dict:
    """Return metadata about the active master secret source (never the secret).

    Returns:
        {"source": "env"|"env_file"|"ephemeral", "path": str | None}
    """
    if os.environ.get(ENV_SECRET, "").strip():
        return {"source": "env", "path": None}
    secret_file = os.environ.get(ENV_SECRET_FILE, "").strip()
    if secret_file:
        return {"source": "env_file", "path": secret_file}
    return {"source": "ephemeral", "path": None}


def _read_secret_file(path: str) -> bytes:
    if not os.path.exists(path):
        raise ValueError(f"{ENV_SECRET_FILE} path does not exist: {path}")
    if os.path.islink(path):
        raise ValueError(
            f"{ENV_SECRET_FILE} is a symlink: {path}. "
            "Symlinks are rejected to prevent link-following attacks."
        )
    if not os.path.isfile(path):
        raise ValueError(f"{ENV_SECRET_FILE} is not a regular file: {path}")
    with open(path, "rb") as f:
        return f.read().strip()


def resolve_master_secret(mode: str = "development") -> bytes:
    """Load the master secret according to the source precedence.

    Args:
        mode: Vault mode ("production", "development" or "test").

    Returns:
        Master secret bytes.

    Raises:
        MasterSecretMissing: No secret configured in production mode.
        ValueError: A configured secret is malformed or too short.
    """
    env_secret = os.environ.get(ENV_SECRET, "").strip()
    if env_secret:
        try:
            secret = base64.b64decode(env_secret, validate=True)
        except binascii.Error as e:
            raise ValueError(f"{ENV_SECRET} contains invalid base64: {e}") from e
        if len(secret) < MIN_SECRET_LENGTH:
            raise ValueError(
                f"{ENV_SECRET} decodes to {len(secret)} bytes "
                f"(need at least {MIN_SECRET_LENGTH})"
            )
        return secret

    secret_file = os.environ.get(ENV_SECRET_FILE, "").strip()
    if secret_file:
        secret = _read_secret_file(secret_file)
        if len(secret) < MIN_SECRET_LENGTH:
            raise ValueError(
                f"Master secret file {secret_file} holds {len(secret)} bytes "
                f"(need at least {MIN_SECRET_LENGTH})"
            )
        return secret

    if mode == "production":
        raise MasterSecretMissing(
            f"No master secret configured. Set {ENV_SECRET} or {ENV_SECRET_FILE}."
        )

    logger.warning(
        "No master secret configured (mode=%s). Using an EPHEMERAL secret: "
        "every stored connection becomes unreadable on restart. Set %s for "
        "persistent storage.",
        mode, ENV_SECRET,
    )
    return os.urandom(MIN_SECRET_LENGTH)
