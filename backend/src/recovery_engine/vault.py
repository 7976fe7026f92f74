"""AES-256-GCM encryption for personally identifying fields at rest."""

from __future__ import annotations

import logging
import os
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .config import MIN_ENCRYPTION_KEY_LENGTH, Settings

logger = logging.getLogger(__name__)

NONCE_BYTES = 12
TAG_BYTES = 16
KEY_BYTES = 32
DECRYPTION_PLACEHOLDER = "ENCRYPTION_ERROR"
DIAGNOSTIC_MARKER = "RECOVERY_VAULT_INTEGRITY_TEST"

_IV_RE = re.compile(r"^[0-9a-fA-F]{24}$")


class CriticalVaultError(Exception):
    """Raised when the vault cannot encrypt or decrypt with the configured key."""


@dataclass(frozen=True)
class SealedValue:
    ciphertext: str
    iv: str
    tag: str


@dataclass(frozen=True)
class VaultDiagnostic:
    encrypt_ms: float
    decrypt_ms: float


class Vault:
    def __init__(self, key: str) -> None:
        raw = key.encode("utf-8")
        if len(raw) < MIN_ENCRYPTION_KEY_LENGTH:
            raise CriticalVaultError(
                f"encryption key must be at least {MIN_ENCRYPTION_KEY_LENGTH} bytes"
            )
        self._aead = AESGCM(raw[:KEY_BYTES])

    @classmethod
    def from_settings(cls, settings: Settings) -> Vault:
        return cls(settings.encryption_key)

    def encrypt(self, plaintext: str) -> SealedValue:
        nonce = os.urandom(NONCE_BYTES)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return SealedValue(
            ciphertext=sealed[:-TAG_BYTES].hex(),
            iv=nonce.hex(),
            tag=sealed[-TAG_BYTES:].hex(),
        )

    def decrypt(self, ciphertext: str, iv: str, tag: str) -> str:
        if not _IV_RE.match(iv or ""):
            raise CriticalVaultError(f"invalid IV length: expected 24 hex characters, got {len(iv or '')}")
        try:
            sealed = bytes.fromhex(ciphertext) + bytes.fromhex(tag)
            plaintext = self._aead.decrypt(bytes.fromhex(iv), sealed, None)
        except (InvalidTag, ValueError) as exc:
            raise CriticalVaultError("decryption failed: authentication tag mismatch or corrupt data") from exc
        return plaintext.decode("utf-8")

    def open(self, value: SealedValue) -> str:
        return self.decrypt(value.ciphertext, value.iv, value.tag)

    def decrypt_or_placeholder(self, ciphertext: str, iv: str, tag: str, *, field: str) -> str:
        """Decrypt a stored field, substituting a visible placeholder on failure."""
        try:
            return self.decrypt(ciphertext, iv, tag)
        except CriticalVaultError as exc:
            logger.error("stored field decryption failed field=%s error=%s", field, exc)
            return DECRYPTION_PLACEHOLDER

    def self_test(self) -> bool:
        marker = f"RECOVERY_VAULT_SELF_TEST_{int(datetime.now(timezone.utc).timestamp() * 1000)}"
        try:
            passed = self.open(self.encrypt(marker)) == marker
        except CriticalVaultError as exc:
            logger.error("vault self-test failed: %s", exc)
            return False
        if not passed:
            logger.error("vault self-test failed: round trip mismatch")
        return passed

    def diagnostic(self) -> VaultDiagnostic:
        try:
            started = time.perf_counter()
            sealed = self.encrypt(DIAGNOSTIC_MARKER)
            encrypted_at = time.perf_counter()
            opened = self.open(sealed)
            finished = time.perf_counter()
        except CriticalVaultError as exc:
            raise CriticalVaultError(f"CRITICAL_VAULT_ERROR: {exc}") from exc
        if opened != DIAGNOSTIC_MARKER:
            raise CriticalVaultError("CRITICAL_VAULT_ERROR: round trip mismatch")
        return VaultDiagnostic(
            encrypt_ms=round((encrypted_at - started) * 1000, 3),
            decrypt_ms=round((finished - encrypted_at) * 1000, 3),
        )


def redact_email(email: str | None) -> str:
    if not email:
        return "[INVALID]"
    if "@" not in email:
        return "[MALFORMED]"
    local, domain = email.split("@", 1)
    tld = domain.rsplit(".", 1)[-1] if "." in domain else domain
    return f"{local[:3]}***@***.{tld}"


def redact_name(name: str | None) -> str:
    if not name:
        return "[INVALID]"
    return " ".join(f"{part[:3]}***" for part in name.split())
