"""Key derivation and authenticated encryption."""

from reistandard.security.encryption import (
    DecryptionFailed,
    EncryptionError,
    InvalidEnvelope,
    InvalidPayloadFormat,
    TransitEnvelope,
    decrypt_at_rest,
    decrypt_transit,
    derive_user_key,
    encrypt_at_rest,
    encrypt_transit,
    get_user_key,
)

__all__ = [
    "DecryptionFailed",
    "EncryptionError",
    "InvalidEnvelope",
    "InvalidPayloadFormat",
    "TransitEnvelope",
    "decrypt_at_rest",
    "decrypt_transit",
    "derive_user_key",
    "encrypt_at_rest",
    "encrypt_transit",
    "get_user_key",
]
