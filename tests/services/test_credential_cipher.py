"""Tests for the AES-256-GCM credential cipher and master secret resolution."""

import base64

import pytest

from agentvault.errors import DecryptionFailed, MasterSecretMissing
from agentvault.services.credential_cipher import (
    CredentialCipher,
    EncryptedBlob,
    generate_master_secret,
    master_secret_source,
    resolve_master_secret,
)
from tests.fakes import TEST_SECRET


def _flip_byte(blob: EncryptedBlob, index: int) -> EncryptedBlob:
    raw = bytearray(base64.b64decode(CredentialCipher.to_storage(blob)))
    raw[index] ^= 0x01
    return CredentialCipher.from_storage(base64.b64encode(bytes(raw)).decode("ascii"))


class TestEncryptDecrypt:
    """Round trip and blob shape."""

    def test_decrypt_returns_original_bundle(self, cipher):
        """Decrypting an encrypted bundle yields the same mapping."""
        bundle = {"apiKey": "sk-or-abcdef1234567890", "endpoint": "https://x.example"}
        assert cipher.decrypt(cipher.encrypt(bundle)) == bundle

    def test_same_bundle_encrypts_differently(self, cipher):
        """Fresh salt and IV per call: two blobs never match."""
        bundle = {"token": "ghp_" + "a" * 36}
        assert cipher.encrypt(bundle) != cipher.encrypt(bundle)

    def test_blob_layout_has_header(self, cipher):
        """Blob is base64 of salt(32) + iv(16) + tag(16) + ciphertext."""
        blob = cipher.encrypt({"k": "v"})
        raw = base64.b64decode(CredentialCipher.to_storage(blob))
        assert len(raw) > 64

    def test_repr_hides_token(self, cipher):
        """Blob repr never shows the encoded ciphertext."""
        blob = cipher.encrypt({"token": "secret-value"})
        assert CredentialCipher.to_storage(blob) not in repr(blob)
        assert "secret" not in repr(cipher)

    def test_short_master_secret_rejected(self):
        with pytest.raises(ValueError, match="at least 32"):
            CredentialCipher(b"short")


class TestTamperDetection:
    """Any modification must fail authentication."""

    @pytest.mark.parametrize("index", [0, 40, 56, -1])
    def test_flipped_byte_fails(self, cipher, index):
        """Flipping a byte in salt, IV, tag, or ciphertext is detected."""
        blob = cipher.encrypt({"apiKey": "value-1234567890"})
        with pytest.raises(DecryptionFailed):
            cipher.decrypt(_flip_byte(blob, index))

    def test_truncated_blob_fails(self, cipher):
        token = base64.b64encode(b"x" * 64).decode("ascii")
        with pytest.raises(DecryptionFailed, match="truncated"):
            cipher.decrypt(CredentialCipher.from_storage(token))

    def test_non_base64_fails(self, cipher):
        with pytest.raises(DecryptionFailed, match="Malformed"):
            cipher.decrypt(CredentialCipher.from_storage("not base64 !!"))

    def test_other_master_secret_fails(self, cipher):
        """A blob sealed under one secret cannot be opened under another."""
        blob = cipher.encrypt({"k": "v"})
        other = CredentialCipher(bytes(reversed(TEST_SECRET)), scrypt_n=2**4)
        with pytest.raises(DecryptionFailed):
            other.decrypt(blob)

    def test_plain_string_is_not_a_blob(self, cipher):
        with pytest.raises(DecryptionFailed):
            cipher.decrypt("plain text")


class TestMasterSecret:
    """Master secret source precedence."""

    def test_env_secret_wins(self, monkeypatch):
        secret = generate_master_secret()
        monkeypatch.setenv("AGENTVAULT_MASTER_SECRET", secret)
        assert resolve_master_secret("production") == base64.b64decode(secret)
        assert master_secret_source()["source"] == "env"

    def test_env_secret_too_short(self, monkeypatch):
        monkeypatch.setenv("AGENTVAULT_MASTER_SECRET", base64.b64encode(b"x" * 8).decode())
        with pytest.raises(ValueError, match="need at least 32"):
            resolve_master_secret()

    def test_secret_file(self, monkeypatch, tmp_path):
        path = tmp_path / "secret"
        path.write_bytes(b"k" * 40)
        monkeypatch.setenv("AGENTVAULT_MASTER_SECRET_FILE", str(path))
        assert resolve_master_secret("production") == b"k" * 40
        assert master_secret_source() == {"source": "env_file", "path": str(path)}

    def test_secret_file_symlink_rejected(self, monkeypatch, tmp_path):
        target = tmp_path / "secret"
        target.write_bytes(b"k" * 40)
        link = tmp_path / "link"
        link.symlink_to(target)
        monkeypatch.setenv("AGENTVAULT_MASTER_SECRET_FILE", str(link))
        with pytest.raises(ValueError, match="symlink"):
            resolve_master_secret()

    def test_production_without_secret_raises(self):
        with pytest.raises(MasterSecretMissing):
            resolve_master_secret("production")

    def test_development_falls_back_to_ephemeral(self, caplog):
        """Development mode logs a warning and returns a random secret."""
        secret = resolve_master_secret("development")
        assert len(secret) == 32
        assert "EPHEMERAL" in caplog.text
        assert master_secret_source()["source"] == "ephemeral"
