import pytest
from cryptography.fernet import Fernet

from ytrelay.credentials import SECRET_KEY_ENV, CredentialCipher, CredentialError
from ytrelay.db import get_latest_binding, save_binding
from ytrelay.models import AccountBinding


@pytest.fixture
def cipher():
    return CredentialCipher(Fernet.generate_key())


class TestCredentialCipher:
    def test_ciphertext_differs_from_plaintext(self, cipher):
        sealed = cipher.encrypt("SESSDATA=secret")
        assert "secret" not in sealed
        assert cipher.decrypt(sealed) == "SESSDATA=secret"

    def test_empty_values_stay_empty(self, cipher):
        assert cipher.encrypt("") == ""
        assert cipher.decrypt("") == ""

    def test_wrong_key(self, cipher):
        sealed = cipher.encrypt("x")
        with pytest.raises(CredentialError, match="wrong key"):
            CredentialCipher(Fernet.generate_key()).decrypt(sealed)

    def test_invalid_key(self):
        with pytest.raises(CredentialError, match="not a valid Fernet key"):
            CredentialCipher("too-short")

    def test_from_env(self, monkeypatch):
        key = Fernet.generate_key().decode()
        monkeypatch.setenv(SECRET_KEY_ENV, key)
        assert CredentialCipher.from_env().decrypt(CredentialCipher(key).encrypt("v")) == "v"

    def test_from_env_missing(self, monkeypatch):
        monkeypatch.delenv(SECRET_KEY_ENV, raising=False)
        with pytest.raises(CredentialError, match=SECRET_KEY_ENV):
            CredentialCipher.from_env()

    def test_binding_stored_encrypted(self, conn, cipher):
        binding = AccountBinding("system", "bilibili", "42", cookies="SESSDATA=s; bili_jct=c", token="tok")
        save_binding(conn, cipher.seal_binding(binding))

        stored = get_latest_binding(conn, "bilibili")
        assert "SESSDATA" not in stored.cookies
        opened = cipher.open_binding(stored)
        assert (opened.cookies, opened.token) == ("SESSDATA=s; bili_jct=c", "tok")
        assert binding.cookies == "SESSDATA=s; bili_jct=c"
