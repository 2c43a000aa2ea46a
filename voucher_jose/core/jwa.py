"""JSON Web Algorithms (RFC 7518) used by JWE.

Key Management (``alg``):
- dir (the management key is the CEK)
- A128KW, A192KW, A256KW (AES Key Wrap, RFC 3394)
- A128GCMKW, A192GCMKW, A256GCMKW (AES-GCM Key Wrap, adds ``iv``/``tag`` headers)
- ECDH-ES, ECDH-ES+A128KW, ECDH-ES+A192KW, ECDH-ES+A256KW (adds ``epk`` header)

Content Encryption (``enc``):
- A128GCM, A192GCM, A256GCM (AES-GCM)
- A128CBC-HS256, A192CBC-HS384, A256CBC-HS512 (AES-CBC with HMAC)

RSA and PBES2 names are recognized so headers that carry them parse, but
using them raises ``UnsupportedOperationError``.

AES-GCM nonces must never repeat under the same key. Nonces handed in
through ``AesGcmOptions`` are used as given; keeping them unique (for
example by treating the nonce as a 96 bit counter) is up to the caller.
"""

import logging
import os
import struct
from dataclasses import dataclass
from enum import Enum

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, hmac as crypto_hmac
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.constant_time import bytes_eq
from cryptography.hazmat.primitives.kdf.concatkdf import ConcatKDFHash
from cryptography.hazmat.primitives.keywrap import InvalidUnwrap, aes_key_unwrap, aes_key_wrap
from cryptography.hazmat.primitives.padding import PKCS7

from voucher_jose.core.errors import (
    AuthenticationError,
    DecodeError,
    InvalidKeyLengthError,
    UnsupportedOperationError,
    ValidationError,
    WrongKeyTypeError,
)
from voucher_jose.core.jwk import JWK

logger = logging.getLogger(__name__)


# ==================== Options and results ====================


class EncryptionOptions:
    """Algorithm specific inputs for one encryption."""

    pass


@dataclass(frozen=True)
class NoEncryptionOptions(EncryptionOptions):
    """No options. Used for direct mode key "wrapping" and AES-KW."""

    pass


@dataclass(frozen=True)
class AesGcmOptions(EncryptionOptions):
    """Nonce for AES-GCM. Must be 96 bits and must not repeat under one key."""

    nonce: bytes

    def __repr__(self) -> str:
        return f"AesGcmOptions(nonce=<{len(self.nonce)} bytes>)"


@dataclass(frozen=True)
class AesCbcHmacOptions(EncryptionOptions):
    """Initialization vector for AES-CBC with HMAC. Must be 128 bits."""

    iv: bytes


@dataclass(frozen=True)
class EcdhEsOptions(EncryptionOptions):
    """Inputs for ECDH-ES key agreement.

    ``ephemeral_key`` is generated on the recipient's curve when omitted.
    ``apu`` and ``apv`` are the Concat KDF party info values.
    """

    ephemeral_key: JWK | None = None
    apu: bytes = b""
    apv: bytes = b""


NONE_ENCRYPTION_OPTIONS = NoEncryptionOptions()


@dataclass
class EncryptionResult:
    """Output of one encryption, or the inputs to the matching decryption."""

    encrypted: bytes = b""
    nonce: bytes = b""
    tag: bytes = b""
    additional_data: bytes = b""
    # ECDH-ES only
    ephemeral_key: JWK | None = None
    party_u_info: bytes = b""
    party_v_info: bytes = b""


# ==================== Content encryption ====================


class ContentEncryptionAlgorithm(str, Enum):
    """Supported JWE content encryption algorithms."""

    A128CBC_HS256 = "A128CBC-HS256"  # AES-128-CBC + HMAC-SHA-256
    A192CBC_HS384 = "A192CBC-HS384"  # AES-192-CBC + HMAC-SHA-384
    A256CBC_HS512 = "A256CBC-HS512"  # AES-256-CBC + HMAC-SHA-512
    A128GCM = "A128GCM"  # AES-128-GCM
    A192GCM = "A192GCM"  # AES-192-GCM
    A256GCM = "A256GCM"  # AES-256-GCM

    @property
    def cek_size(self) -> int:
        return CEK_SIZES[self]

    @property
    def nonce_size(self) -> int:
        return NONCE_SIZES[self]

    @property
    def tag_size(self) -> int:
        return TAG_SIZES[self]

    @property
    def is_gcm(self) -> bool:
        return self in GCM_ALGORITHMS

    def random_encryption_options(self) -> EncryptionOptions:
        """Fresh nonce or IV of the width this algorithm needs."""
        if self.is_gcm:
            return AesGcmOptions(nonce=os.urandom(self.nonce_size))
        return AesCbcHmacOptions(iv=os.urandom(self.nonce_size))

    def encrypt(self, payload: bytes, aad: bytes, cek: bytes, options: EncryptionOptions) -> EncryptionResult:
        """Authenticated encryption of ``payload`` under ``cek``.

        ``aad`` is authenticated but not encrypted.
        """
        if len(cek) != self.cek_size:
            raise InvalidKeyLengthError(self.cek_size, len(cek))

        if self.is_gcm:
            if not isinstance(options, AesGcmOptions):
                raise ValidationError(f"{self.value} requires AesGcmOptions, got {type(options).__name__}")
            if len(options.nonce) != self.nonce_size:
                raise ValidationError(f"{self.value} requires a {self.nonce_size * 8}-bit nonce")
            encrypted, tag = _aes_gcm_encrypt(cek, options.nonce, payload, aad)
            return EncryptionResult(encrypted=encrypted, nonce=options.nonce, tag=tag, additional_data=aad)

        if not isinstance(options, AesCbcHmacOptions):
            raise ValidationError(f"{self.value} requires AesCbcHmacOptions, got {type(options).__name__}")
        if len(options.iv) != self.nonce_size:
            raise ValidationError(f"{self.value} requires a {self.nonce_size * 8}-bit IV")

        # Split CEK into MAC and ENC keys
        half = len(cek) // 2
        mac_key, enc_key = cek[:half], cek[half:]

        padder = PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(payload) + padder.finalize()
        encryptor = Cipher(algorithms.AES(enc_key), modes.CBC(options.iv)).encryptor()
        encrypted = encryptor.update(padded) + encryptor.finalize()

        tag = self._cbc_hmac_tag(mac_key, aad, options.iv, encrypted)
        return EncryptionResult(encrypted=encrypted, nonce=options.iv, tag=tag, additional_data=aad)

    def decrypt(self, result: EncryptionResult, cek: bytes) -> bytes:
        """Authenticated decryption. Nothing is returned unless the tag verifies."""
        if len(cek) != self.cek_size:
            raise InvalidKeyLengthError(self.cek_size, len(cek))
        if len(result.nonce) != self.nonce_size:
            raise DecodeError(f"{self.value} nonce must be {self.nonce_size} bytes, got {len(result.nonce)}")
        if len(result.tag) != self.tag_size:
            raise DecodeError(f"{self.value} tag must be {self.tag_size} bytes, got {len(result.tag)}")

        if self.is_gcm:
            return _aes_gcm_decrypt(cek, result.nonce, result.encrypted, result.tag, result.additional_data)

        half = len(cek) // 2
        mac_key, enc_key = cek[:half], cek[half:]

        # Verify before decrypting
        expected_tag = self._cbc_hmac_tag(mac_key, result.additional_data, result.nonce, result.encrypted)
        if not bytes_eq(result.tag, expected_tag):
            raise AuthenticationError("Decryption failed: authentication tag mismatch")

        if not result.encrypted or len(result.encrypted) % 16:
            raise DecodeError("Ciphertext is not a whole number of AES blocks")
        decryptor = Cipher(algorithms.AES(enc_key), modes.CBC(result.nonce)).decryptor()
        padded = decryptor.update(result.encrypted) + decryptor.finalize()

        unpadder = PKCS7(algorithms.AES.block_size).unpadder()
        try:
            return unpadder.update(padded) + unpadder.finalize()
        except ValueError as e:
            raise AuthenticationError("Decryption failed: invalid padding") from e

    def _cbc_hmac_tag(self, mac_key: bytes, aad: bytes, iv: bytes, ciphertext: bytes) -> bytes:
        al = struct.pack(">Q", len(aad) * 8)  # AAD length in bits
        h = crypto_hmac.HMAC(mac_key, HMAC_HASHES[self]())
        h.update(aad + iv + ciphertext + al)
        mac = h.finalize()
        # Tag is first half of MAC
        return mac[: self.tag_size]


CEK_SIZES = {
    ContentEncryptionAlgorithm.A128CBC_HS256: 32,  # 16 mac + 16 enc
    ContentEncryptionAlgorithm.A192CBC_HS384: 48,  # 24 mac + 24 enc
    ContentEncryptionAlgorithm.A256CBC_HS512: 64,  # 32 mac + 32 enc
    ContentEncryptionAlgorithm.A128GCM: 16,
    ContentEncryptionAlgorithm.A192GCM: 24,
    ContentEncryptionAlgorithm.A256GCM: 32,
}

NONCE_SIZES = {
    ContentEncryptionAlgorithm.A128CBC_HS256: 16,
    ContentEncryptionAlgorithm.A192CBC_HS384: 16,
    ContentEncryptionAlgorithm.A256CBC_HS512: 16,
    ContentEncryptionAlgorithm.A128GCM: 12,
    ContentEncryptionAlgorithm.A192GCM: 12,
    ContentEncryptionAlgorithm.A256GCM: 12,
}

TAG_SIZES = {
    ContentEncryptionAlgorithm.A128CBC_HS256: 16,
    ContentEncryptionAlgorithm.A192CBC_HS384: 24,
    ContentEncryptionAlgorithm.A256CBC_HS512: 32,
    ContentEncryptionAlgorithm.A128GCM: 16,
    ContentEncryptionAlgorithm.A192GCM: 16,
    ContentEncryptionAlgorithm.A256GCM: 16,
}

HMAC_HASHES = {
    ContentEncryptionAlgorithm.A128CBC_HS256: hashes.SHA256,
    ContentEncryptionAlgorithm.A192CBC_HS384: hashes.SHA384,
    ContentEncryptionAlgorithm.A256CBC_HS512: hashes.SHA512,
}

GCM_ALGORITHMS = frozenset(
    {
        ContentEncryptionAlgorithm.A128GCM,
        ContentEncryptionAlgorithm.A192GCM,
        ContentEncryptionAlgorithm.A256GCM,
    }
)


# ==================== Key management ====================


class KeyManagementAlgorithm(str, Enum):
    """JWE key management algorithms."""

    RSA1_5 = "RSA1_5"
    RSA_OAEP = "RSA-OAEP"
    RSA_OAEP_256 = "RSA-OAEP-256"
    A128KW = "A128KW"  # AES-128 Key Wrap
    A192KW = "A192KW"  # AES-192 Key Wrap
    A256KW = "A256KW"  # AES-256 Key Wrap
    DIRECT = "dir"  # Direct encryption
    ECDH_ES = "ECDH-ES"  # ECDH Ephemeral Static
    ECDH_ES_A128KW = "ECDH-ES+A128KW"
    ECDH_ES_A192KW = "ECDH-ES+A192KW"
    ECDH_ES_A256KW = "ECDH-ES+A256KW"
    A128GCMKW = "A128GCMKW"  # AES-128-GCM Key Wrap
    A192GCMKW = "A192GCMKW"  # AES-192-GCM Key Wrap
    A256GCMKW = "A256GCMKW"  # AES-256-GCM Key Wrap
    PBES2_HS256_A128KW = "PBES2-HS256+A128KW"
    PBES2_HS384_A192KW = "PBES2-HS384+A192KW"
    PBES2_HS512_A256KW = "PBES2-HS512+A256KW"

    @property
    def is_direct(self) -> bool:
        return self is KeyManagementAlgorithm.DIRECT

    @property
    def is_ecdh(self) -> bool:
        return self in ECDH_ALGORITHMS

    def _require_supported(self) -> None:
        if self not in SUPPORTED_KEY_MANAGEMENT:
            raise UnsupportedOperationError("key management", f"{self.value} is not implemented")

    def random_encryption_options(self) -> EncryptionOptions:
        """Key wrapping options for callers that did not supply any."""
        if self in AES_GCM_KW_ALGORITHMS:
            return AesGcmOptions(nonce=os.urandom(12))
        if self.is_ecdh:
            return EcdhEsOptions()
        return NONE_ENCRYPTION_OPTIONS

    def resolve_options(self, options: EncryptionOptions, key: JWK) -> EncryptionOptions:
        """Fill in whatever the caller left out that key management needs.

        Only ECDH-ES needs this: an ephemeral key pair on the recipient's curve.
        """
        if not self.is_ecdh:
            return options
        if isinstance(options, NoEncryptionOptions):
            options = EcdhEsOptions()
        if not isinstance(options, EcdhEsOptions):
            raise ValidationError(f"{self.value} requires EcdhEsOptions, got {type(options).__name__}")
        if options.ephemeral_key is None:
            recipient = key.ec_public_key()
            ephemeral = JWK.from_ec_key(ec.generate_private_key(recipient.curve))
            options = EcdhEsOptions(ephemeral_key=ephemeral, apu=options.apu, apv=options.apv)
        return options

    def cek(
        self,
        enc_algorithm: ContentEncryptionAlgorithm,
        key: JWK,
        options: EncryptionOptions = NONE_ENCRYPTION_OPTIONS,
    ) -> bytes:
        """Content encryption key for ``enc_algorithm``.

        Direct mode returns the management key itself. ECDH-ES direct key
        agreement derives it from ``options.ephemeral_key``. All wrapping
        modes generate a fresh random key.
        """
        self._require_supported()

        if self.is_direct:
            cek = key.octet_key()
            if len(cek) != enc_algorithm.cek_size:
                raise InvalidKeyLengthError(enc_algorithm.cek_size, len(cek))
            return cek

        if self is KeyManagementAlgorithm.ECDH_ES:
            if not isinstance(options, EcdhEsOptions) or options.ephemeral_key is None:
                raise ValidationError("ECDH-ES requires an ephemeral key in EcdhEsOptions")
            return self._ecdh_derive(
                options.ephemeral_key.ec_private_key(),
                key.ec_public_key(),
                enc_algorithm,
                options.apu,
                options.apv,
            )

        return os.urandom(enc_algorithm.cek_size)

    def wrap_key(self, cek: bytes, key: JWK, options: EncryptionOptions) -> EncryptionResult:
        """Wrap ``cek`` under the management key.

        Direct mode and ECDH-ES direct key agreement produce an empty
        encrypted key.
        """
        self._require_supported()

        if self.is_direct:
            return EncryptionResult()

        if self in AES_KW_ALGORITHMS:
            kek = self._wrapping_key(key)
            return EncryptionResult(encrypted=aes_key_wrap(kek, cek))

        if self in AES_GCM_KW_ALGORITHMS:
            kek = self._wrapping_key(key)
            if not isinstance(options, AesGcmOptions):
                raise ValidationError(f"{self.value} requires AesGcmOptions, got {type(options).__name__}")
            if len(options.nonce) != 12:
                raise ValidationError(f"{self.value} requires a 96-bit nonce")
            encrypted, tag = _aes_gcm_encrypt(kek, options.nonce, cek, b"")
            return EncryptionResult(encrypted=encrypted, nonce=options.nonce, tag=tag)

        # ECDH-ES family
        if not isinstance(options, EcdhEsOptions) or options.ephemeral_key is None:
            raise ValidationError(f"{self.value} requires an ephemeral key in EcdhEsOptions")
        recipient = key.ec_public_key()
        ephemeral = options.ephemeral_key.ec_private_key()
        if ephemeral.curve.name != recipient.curve.name:
            raise WrongKeyTypeError(recipient.curve.name, ephemeral.curve.name)

        if self is KeyManagementAlgorithm.ECDH_ES:
            encrypted = b""
        else:
            kek = self._ecdh_derive(ephemeral, recipient, None, options.apu, options.apv)
            encrypted = aes_key_wrap(kek, cek)

        return EncryptionResult(
            encrypted=encrypted,
            ephemeral_key=options.ephemeral_key.public_jwk(),
            party_u_info=options.apu,
            party_v_info=options.apv,
        )

    def unwrap_key(
        self,
        result: EncryptionResult,
        enc_algorithm: ContentEncryptionAlgorithm,
        key: JWK,
    ) -> bytes:
        """Recover the CEK from a wrapped key."""
        self._require_supported()

        if self.is_direct:
            if result.encrypted:
                raise DecodeError("Direct encryption must not carry an encrypted key")
            return self.cek(enc_algorithm, key)

        if self in AES_KW_ALGORITHMS:
            kek = self._wrapping_key(key)
            return _aes_key_unwrap(kek, result.encrypted, enc_algorithm)

        if self in AES_GCM_KW_ALGORITHMS:
            kek = self._wrapping_key(key)
            if len(result.encrypted) != enc_algorithm.cek_size:
                raise DecodeError(
                    f"Wrapped key must be {enc_algorithm.cek_size} bytes, got {len(result.encrypted)}"
                )
            if len(result.nonce) != 12:
                raise DecodeError(f"Key wrap nonce must be 12 bytes, got {len(result.nonce)}")
            if len(result.tag) != 16:
                raise DecodeError(f"Key wrap tag must be 16 bytes, got {len(result.tag)}")
            return _aes_gcm_decrypt(kek, result.nonce, result.encrypted, result.tag, b"")

        # ECDH-ES family
        if result.ephemeral_key is None:
            raise DecodeError("Missing 'epk' header for ECDH")
        private_key = key.ec_private_key()
        ephemeral = result.ephemeral_key.ec_public_key()
        if ephemeral.curve.name != private_key.curve.name:
            raise WrongKeyTypeError(private_key.curve.name, ephemeral.curve.name)

        if self is KeyManagementAlgorithm.ECDH_ES:
            if result.encrypted:
                raise DecodeError("ECDH-ES direct key agreement must not carry an encrypted key")
            return self._ecdh_derive(
                private_key, ephemeral, enc_algorithm, result.party_u_info, result.party_v_info
            )

        kek = self._ecdh_derive(private_key, ephemeral, None, result.party_u_info, result.party_v_info)
        return _aes_key_unwrap(kek, result.encrypted, enc_algorithm)

    def _wrapping_key(self, key: JWK) -> bytes:
        kek = key.octet_key()
        expected = KEY_WRAP_SIZES[self]
        if len(kek) != expected:
            raise InvalidKeyLengthError(expected, len(kek))
        return kek

    def _ecdh_derive(
        self,
        private_key: ec.EllipticCurvePrivateKey,
        public_key: ec.EllipticCurvePublicKey,
        enc_algorithm: ContentEncryptionAlgorithm | None,
        apu: bytes,
        apv: bytes,
    ) -> bytes:
        """ECDH followed by Concat KDF (RFC 7518 Section 4.6.2)."""
        shared_key = private_key.exchange(ec.ECDH(), public_key)

        if self is KeyManagementAlgorithm.ECDH_ES:
            alg_id = enc_algorithm.value.encode()
            key_data_len = enc_algorithm.cek_size
        else:
            alg_id = self.value.encode()
            key_data_len = KEY_WRAP_SIZES[self]

        # AlgorithmID || PartyUInfo || PartyVInfo || SuppPubInfo
        other_info = (
            struct.pack(">I", len(alg_id))
            + alg_id
            + struct.pack(">I", len(apu))
            + apu
            + struct.pack(">I", len(apv))
            + apv
            + struct.pack(">I", key_data_len * 8)  # keydatalen in bits
        )

        ckdf = ConcatKDFHash(algorithm=hashes.SHA256(), length=key_data_len, otherinfo=other_info)
        return ckdf.derive(shared_key)


AES_KW_ALGORITHMS = frozenset(
    {
        KeyManagementAlgorithm.A128KW,
        KeyManagementAlgorithm.A192KW,
        KeyManagementAlgorithm.A256KW,
    }
)

AES_GCM_KW_ALGORITHMS = frozenset(
    {
        KeyManagementAlgorithm.A128GCMKW,
        KeyManagementAlgorithm.A192GCMKW,
        KeyManagementAlgorithm.A256GCMKW,
    }
)

ECDH_ALGORITHMS = frozenset(
    {
        KeyManagementAlgorithm.ECDH_ES,
        KeyManagementAlgorithm.ECDH_ES_A128KW,
        KeyManagementAlgorithm.ECDH_ES_A192KW,
        KeyManagementAlgorithm.ECDH_ES_A256KW,
    }
)

SUPPORTED_KEY_MANAGEMENT = (
    frozenset({KeyManagementAlgorithm.DIRECT}) | AES_KW_ALGORITHMS | AES_GCM_KW_ALGORITHMS | ECDH_ALGORITHMS
)

# Key encryption key sizes in bytes
KEY_WRAP_SIZES = {
    KeyManagementAlgorithm.A128KW: 16,
    KeyManagementAlgorithm.A192KW: 24,
    KeyManagementAlgorithm.A256KW: 32,
    KeyManagementAlgorithm.A128GCMKW: 16,
    KeyManagementAlgorithm.A192GCMKW: 24,
    KeyManagementAlgorithm.A256GCMKW: 32,
    KeyManagementAlgorithm.ECDH_ES_A128KW: 16,
    KeyManagementAlgorithm.ECDH_ES_A192KW: 24,
    KeyManagementAlgorithm.ECDH_ES_A256KW: 32,
}


# ==================== Primitives ====================


def _aes_gcm_encrypt(key: bytes, nonce: bytes, plaintext: bytes, aad: bytes) -> tuple[bytes, bytes]:
    ciphertext_and_tag = AESGCM(key).encrypt(nonce, plaintext, aad)
    # Tag is last 16 bytes
    return ciphertext_and_tag[:-16], ciphertext_and_tag[-16:]


def _aes_gcm_decrypt(key: bytes, nonce: bytes, ciphertext: bytes, tag: bytes, aad: bytes) -> bytes:
    try:
        return AESGCM(key).decrypt(nonce, ciphertext + tag, aad)
    except InvalidTag as e:
        logger.debug("AES-GCM tag verification failed")
        raise AuthenticationError("Decryption failed: authentication tag mismatch") from e


def _aes_key_unwrap(kek: bytes, wrapped: bytes, enc_algorithm: ContentEncryptionAlgorithm) -> bytes:
    # RFC 3394 adds one 64-bit block
    expected = enc_algorithm.cek_size + 8
    if len(wrapped) != expected:
        raise DecodeError(f"Wrapped key must be {expected} bytes, got {len(wrapped)}")
    try:
        return aes_key_unwrap(kek, wrapped)
    except InvalidUnwrap as e:
        raise AuthenticationError("Key unwrap failed: integrity check mismatch") from e
