"""AES-256-GCM envelopes for request payloads and stored fields.

Every user gets a key derived from the master secret, so a client holding the
master value can compute the same key locally. Two envelope formats share that
key:

* transit - ``{"iv", "authTag", "encryptedData"}`` with base64 fields, used for
  request bodies;
* at rest - ``"ivHex:cipherHex:tagHex"``, used for sensitive database columns.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import os
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from reistandard.config import get_settings
from reistandard.errors import ConfigurationError

NONCE_BYTES = 12
TAG_BYTES = 16


class EncryptionError(Exception):
    """Base class for envelope failures."""


class InvalidEnvelope(EncryptionError):
    """The envelope is missing fields or its fields cannot be decoded."""


class DecryptionFailed(EncryptionError):
    """Authentication failed: wrong key or tampered data, deliberately indistinguishable."""


class InvalidPayloadFormat(EncryptionError):
    """The decrypted plaintext is not valid JSON."""


def derive_user_key(master_secret: Optional[str], user_id: str) -> bytes:
    """Derive the 256-bit key for ``user_id`` from the master secret."""
    if not master_secret:
        raise ConfigurationError("ENCRYPTION_CONFIG_ERROR", "Encryption master key is not configured")
    if not user_id:
        raise ValueError("user_id is required for key derivation")
    return hashlib.sha256(f"{master_secret}{user_id}".encode("utf-8")).digest()


def get_user_key(user_id: str) -> bytes:
    """Derive a user's key from the configured master secret."""
    return derive_user_key(get_settings().encryption_key, user_id)


# ── Transit channel ──────────────────────────────────────────────────


@dataclass(frozen=True)
class TransitEnvelope:
    """One AES-GCM operation as carried in a request body."""

    iv: str
    auth_tag: str
    encrypted_data: str

    @classmethod
    def from_mapping(cls, body: Any) -> "TransitEnvelope":
        if not isinstance(body, Mapping):
            raise InvalidEnvelope("encrypted payload must be an object")
        missing = [k for k in ("iv", "authTag", "encryptedData") if not body.get(k)]
        if missing:
            raise InvalidEnvelope(f"encrypted payload is missing: {', '.join(missing)}")
        return cls(iv=body["iv"], auth_tag=body["authTag"], encrypted_data=body["encryptedData"])

    def to_dict(self) -> dict[str, str]:
        return {"iv": self.iv, "authTag": self.auth_tag, "encryptedData": self.encrypted_data}


def _b64decode(value: str, field: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError, TypeError) as exc:
        raise InvalidEnvelope(f"{field} is not valid base64") from exc


def _open(key: bytes, nonce: bytes, ciphertext: bytes, tag: bytes) -> bytes:
    if len(tag) != TAG_BYTES:
        raise InvalidEnvelope("authentication tag must be 16 bytes")
    try:
        cipher = AESGCM(key)
        return cipher.decrypt(nonce, ciphertext + tag, None)
    except InvalidTag as exc:
        raise DecryptionFailed("payload could not be decrypted") from exc
    except ValueError as exc:
        # Raised for nonce lengths AES-GCM does not accept.
        raise InvalidEnvelope(str(exc)) from exc


def _seal(key: bytes, plaintext: bytes) -> tuple[bytes, bytes, bytes]:
    nonce = os.urandom(NONCE_BYTES)
    sealed = AESGCM(key).encrypt(nonce, plaintext, None)
    return nonce, sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]


def encrypt_transit(payload: Any, key: bytes) -> TransitEnvelope:
    """JSON-encode ``payload`` and seal it into a transit envelope."""
    plaintext = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    nonce, ciphertext, tag = _seal(key, plaintext)
    return TransitEnvelope(
        iv=base64.b64encode(nonce).decode("ascii"),
        auth_tag=base64.b64encode(tag).decode("ascii"),
        encrypted_data=base64.b64encode(ciphertext).decode("ascii"),
    )


def decrypt_transit(envelope: TransitEnvelope | Mapping[str, Any], key: bytes) -> Any:
    """Open a transit envelope and parse the plaintext as JSON.

    Browser clients send 16-byte IVs; any nonce length AES-GCM accepts is
    allowed on this path.
    """
    if not isinstance(envelope, TransitEnvelope):
        envelope = TransitEnvelope.from_mapping(envelope)
    nonce = _b64decode(envelope.iv, "iv")
    tag = _b64decode(envelope.auth_tag, "authTag")
    ciphertext = _b64decode(envelope.encrypted_data, "encryptedData")
    plaintext = _open(key, nonce, ciphertext, tag)
    try:
        return json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise InvalidPayloadFormat("decrypted payload is not valid JSON") from exc


# ── At-rest channel ──────────────────────────────────────────────────


def encrypt_at_rest(text: str, key: bytes) -> str:
    """Encrypt a field for storage as ``ivHex:cipherHex:tagHex``."""
    nonce, ciphertext, tag = _seal(key, text.encode("utf-8"))
    return f"{nonce.hex()}:{ciphertext.hex()}:{tag.hex()}"


def decrypt_at_rest(token: str, key: bytes) -> str:
    """Decrypt a stored ``ivHex:cipherHex:tagHex`` field."""
    parts = token.split(":") if isinstance(token, str) else []
    if len(parts) != 3:
        raise InvalidEnvelope("stored value must have three colon-separated segments")
    try:
        nonce, ciphertext, tag = (bytes.fromhex(p) for p in parts)
    except ValueError as exc:
        raise InvalidEnvelope("stored value is not valid hex") from exc
    if len(nonce) != NONCE_BYTES:
        raise InvalidEnvelope("stored IV must be 12 bytes")
    plaintext = _open(key, nonce, ciphertext, tag)
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise InvalidPayloadFormat("stored value is not valid UTF-8") from exc
