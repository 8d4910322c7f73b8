import pytest

from podcal_sync.crypto import TokenCipher


def test_ciphertext_hides_token():
    cipher = TokenCipher("site-secret", "site-salt")
    encrypted = cipher.encrypt("ya29.access-token")
    assert encrypted != "ya29.access-token"
    assert "access-token" not in encrypted
    assert cipher.decrypt(encrypted) == "ya29.access-token"


def test_rotated_secret_cannot_read_old_tokens():
    encrypted = TokenCipher("old-secret", "site-salt").encrypt("refresh-token")
    assert TokenCipher("new-secret", "site-salt").decrypt(encrypted) is None


@pytest.mark.parametrize("value", [None, "", "not base64!", "c2hvcnQ="])
def test_invalid_values_decrypt_to_none(value):
    assert TokenCipher("site-secret", "site-salt").decrypt(value) is None


def test_requires_secret_key():
    with pytest.raises(ValueError):
        TokenCipher("", "salt")
