from __future__ import annotations

import pytest

from recovery_engine.vault import (
    DECRYPTION_PLACEHOLDER,
    CriticalVaultError,
    SealedValue,
    Vault,
    redact_email,
    redact_name,
)
from recovery_fakes import TEST_ENCRYPTION_KEY, make_vault


def test_encrypt_then_open_returns_plaintext() -> None:
    vault = make_vault()

    sealed = vault.encrypt("jane.doe@example.com")

    assert sealed.ciphertext != "jane.doe@example.com"
    assert len(sealed.iv) == 24
    assert len(sealed.tag) == 32
    assert vault.open(sealed) == "jane.doe@example.com"


def test_each_encryption_uses_a_fresh_iv() -> None:
    vault = make_vault()

    first = vault.encrypt("same value")
    second = vault.encrypt("same value")

    assert first.iv != second.iv
    assert first.ciphertext != second.ciphertext


def test_short_key_is_rejected() -> None:
    with pytest.raises(CriticalVaultError) as exc_info:
        Vault("too-short")
    assert "at least 32 bytes" in str(exc_info.value)


def test_only_first_32_bytes_of_key_are_used() -> None:
    sealed = Vault(TEST_ENCRYPTION_KEY[:32] + "-suffix-a").encrypt("value")

    assert Vault(TEST_ENCRYPTION_KEY[:32] + "-suffix-b").open(sealed) == "value"


def test_invalid_iv_is_rejected_before_decryption() -> None:
    vault = make_vault()
    sealed = vault.encrypt("value")

    with pytest.raises(CriticalVaultError) as exc_info:
        vault.decrypt(sealed.ciphertext, sealed.iv[:10], sealed.tag)
    assert "invalid IV length" in str(exc_info.value)


def test_tampered_tag_fails_authentication() -> None:
    vault = make_vault()
    sealed = vault.encrypt("value")
    flipped = ("0" if sealed.tag[0] != "0" else "1") + sealed.tag[1:]

    with pytest.raises(CriticalVaultError):
        vault.open(SealedValue(ciphertext=sealed.ciphertext, iv=sealed.iv, tag=flipped))


def test_wrong_key_yields_placeholder_instead_of_raising() -> None:
    sealed = make_vault().encrypt("jane.doe@example.com")
    other = Vault("another-encryption-key-abcdefghijklmnop")

    value = other.decrypt_or_placeholder(sealed.ciphertext, sealed.iv, sealed.tag, field="email")

    assert value == DECRYPTION_PLACEHOLDER


def test_self_test_and_diagnostic_pass_with_a_valid_key() -> None:
    vault = make_vault()

    assert vault.self_test() is True
    diagnostic = vault.diagnostic()
    assert diagnostic.encrypt_ms >= 0
    assert diagnostic.decrypt_ms >= 0


def test_redact_email() -> None:
    assert redact_email("jane.doe@example.com") == "jan***@***.com"
    assert redact_email("") == "[INVALID]"
    assert redact_email(None) == "[INVALID]"
    assert redact_email("not-an-address") == "[MALFORMED]"


def test_redact_name() -> None:
    assert redact_name("Jane Doe") == "Jan*** Doe***"
    assert redact_name(None) == "[INVALID]"
