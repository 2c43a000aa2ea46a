"""
voucher_jose - JWE compact serialization for voucher exchange.

Usage:
    from voucher_jose import (
        JWK, Compact, Header, RegisteredHeader,
        KeyManagementAlgorithm, ContentEncryptionAlgorithm, AesGcmOptions,
    )

    key = JWK.new_octet_key(shared_key_bytes)
    header = Header.from_registered(
        RegisteredHeader(
            cek_algorithm=KeyManagementAlgorithm.A256GCMKW,
            enc_algorithm=ContentEncryptionAlgorithm.A256GCM,
        )
    )

    # Encrypt a signed voucher
    token = str(Compact.new_decrypted(header, signed_voucher).encrypt(key))

    # Decrypt, refusing any other algorithms
    jwe = Compact.new_encrypted(token).decrypt(
        key, KeyManagementAlgorithm.A256GCMKW, ContentEncryptionAlgorithm.A256GCM
    )
    signed_voucher = jwe.payload()
"""

import logging

from voucher_jose.core.claims import ClaimsSet, ValidationOptions
from voucher_jose.core.compact import CompactPart, Container
from voucher_jose.core.errors import (
    AuthenticationError,
    CryptographicError,
    DecodeError,
    EncodeError,
    ExpiredError,
    HeaderCollisionError,
    InvalidKeyLengthError,
    JOSEError,
    MissingClaimError,
    NotYetValidError,
    PartsLengthError,
    TrustedUnwrapError,
    UnsupportedOperationError,
    ValidationError,
    WrongAlgorithmHeaderError,
    WrongKeyTypeError,
)
from voucher_jose.core.jwa import (
    AesCbcHmacOptions,
    AesGcmOptions,
    ContentEncryptionAlgorithm,
    EcdhEsOptions,
    EncryptionOptions,
    EncryptionResult,
    KeyManagementAlgorithm,
    NONE_ENCRYPTION_OPTIONS,
    NoEncryptionOptions,
)
from voucher_jose.core.jwe import (
    CekAlgorithmHeader,
    Compact,
    CompressionAlgorithm,
    Decrypted,
    Encrypted,
    Header,
    PrivateHeader,
    RegisteredHeader,
)
from voucher_jose.core.jwk import JWK, KeyType

__version__ = "0.1.0"
__all__ = [
    "AesCbcHmacOptions",
    "AesGcmOptions",
    "AuthenticationError",
    "CekAlgorithmHeader",
    "ClaimsSet",
    "Compact",
    "CompactPart",
    "CompressionAlgorithm",
    "Container",
    "ContentEncryptionAlgorithm",
    "CryptographicError",
    "DecodeError",
    "Decrypted",
    "EcdhEsOptions",
    "EncodeError",
    "Encrypted",
    "EncryptionOptions",
    "EncryptionResult",
    "ExpiredError",
    "Header",
    "HeaderCollisionError",
    "InvalidKeyLengthError",
    "JOSEError",
    "JWK",
    "KeyManagementAlgorithm",
    "KeyType",
    "MissingClaimError",
    "NONE_ENCRYPTION_OPTIONS",
    "NoEncryptionOptions",
    "NotYetValidError",
    "PartsLengthError",
    "PrivateHeader",
    "RegisteredHeader",
    "TrustedUnwrapError",
    "UnsupportedOperationError",
    "ValidationError",
    "ValidationOptions",
    "WrongAlgorithmHeaderError",
    "WrongKeyTypeError",
]

logging.getLogger(__name__).addHandler(logging.NullHandler())
