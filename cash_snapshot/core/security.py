from cryptography.fernet import Fernet, InvalidToken


class DecryptionError(Exception):
    """Stored ciphertext could not be decrypted with the configured key."""


# ─── Fernet encryption (for Plaid tokens at rest) ──────
class Cipher:
    """Encrypts and decrypts access tokens with one Fernet key.

    Built once at process start from ``Settings.encryption_key`` and passed to
    whoever needs to read a linked item's credential.
    """

    def __init__(self, key: str | bytes):
        self._fernet = Fernet(key.encode() if isinstance(key, str) else key)

    def encrypt(self, value: str) -> str:
        return self._fernet.encrypt(value.encode()).decode()

    def decrypt(self, encrypted: str) -> str:
        try:
            return self._fernet.decrypt(encrypted.encode()).decode()
        except InvalidToken as exc:
            raise DecryptionError("stored access token could not be decrypted") from exc
