import dataclasses
import os

from cryptography.fernet import Fernet, InvalidToken

from ytrelay.models import AccountBinding

SECRET_KEY_ENV = "YTRELAY_SECRET_KEY"


class CredentialError(Exception):
    """Raised when the secret key is missing/invalid or a value cannot be decrypted."""


class CredentialCipher:
    """Encrypts account cookies and tokens at rest."""

    def __init__(self, key: str | bytes):
        try:
            self._fernet = Fernet(key)
        except (ValueError, TypeError) as e:
            raise CredentialError(f"{SECRET_KEY_ENV} is not a valid Fernet key: {e}") from e

    @classmethod
    def from_env(cls) -> "CredentialCipher":
        key = os.environ.get(SECRET_KEY_ENV)
        if not key:
            raise CredentialError(
                f"{SECRET_KEY_ENV} is not set. Generate one with: "
                "python -c 'from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())'"
            )
        return cls(key)

    def encrypt(self, value: str) -> str:
        if not value:
            return ""
        return self._fernet.encrypt(value.encode("utf-8")).decode("ascii")

    def decrypt(self, value: str) -> str:
        if not value:
            return ""
        try:
            return self._fernet.decrypt(value.encode("ascii")).decode("utf-8")
        except (InvalidToken, ValueError) as e:
            raise CredentialError("Stored credential could not be decrypted (wrong key?)") from e

    def seal_binding(self, binding: AccountBinding) -> AccountBinding:
        return dataclasses.replace(binding, cookies=self.encrypt(binding.cookies), token=self.encrypt(binding.token))

    def open_binding(self, binding: AccountBinding) -> AccountBinding:
        return dataclasses.replace(binding, cookies=self.decrypt(binding.cookies), token=self.decrypt(binding.token))
