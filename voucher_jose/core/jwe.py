"""JWE (RFC 7516) compact serialization engine.

A ``Compact`` JWE is always in exactly one of two states:

- ``Decrypted``: header and payload in memory. Never serialized.
- ``Encrypted``: the five segment compact serialization
  (header, encrypted key, nonce, ciphertext, tag).

``encrypt`` turns the first into the second and ``decrypt`` the reverse.
Each call returns a new value; nothing is converted in place.

Usually the payload is a signed token (a JWS), so the encrypted JWE is a
signed then encrypted token. Example with AES-GCM key wrapping:

    key = JWK.new_octet_key(bytes(32))
    jwe = Compact.new_decrypted(
        Header.from_registered(
            RegisteredHeader(
                cek_algorithm=KeyManagementAlgorithm.A256GCMKW,
                enc_algorithm=ContentEncryptionAlgorithm.A256GCM,
            )
        ),
        b"payload",
    )
    token = str(jwe.encrypt(key, AesGcmOptions(nonce=next_nonce())))

    decrypted = Compact.new_encrypted(token).decrypt(
        key, KeyManagementAlgorithm.A256GCMKW, ContentEncryptionAlgorithm.A256GCM
    )

When ``cek_algorithm`` is not ``dir``, the options passed to ``encrypt`` are
used to wrap the content encryption key and the content gets fresh random
options. With ``dir`` the options are used for the content itself.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Annotated, Any, Generic, TypeVar

import pydantic
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, PlainSerializer, field_serializer, field_validator

from voucher_jose.config import get_settings
from voucher_jose.core.claims import ClaimsSet, ValidationOptions
from voucher_jose.core.compact import (
    CompactPart,
    Container,
    b64url_decode,
    b64url_encode,
    from_part_bytes,
    to_part_bytes,
)
from voucher_jose.core.errors import (
    DecodeError,
    EncodeError,
    HeaderCollisionError,
    PartsLengthError,
    TrustedUnwrapError,
    UnsupportedOperationError,
    WrongAlgorithmHeaderError,
)
from voucher_jose.core.jwa import (
    ContentEncryptionAlgorithm,
    EncryptionOptions,
    EncryptionResult,
    KeyManagementAlgorithm,
    NONE_ENCRYPTION_OPTIONS,
)
from voucher_jose.core.jwk import JWK

logger = logging.getLogger(__name__)

T = TypeVar("T")
H = TypeVar("H", bound=BaseModel)

JWE_PARTS = 5


# ==================== Header model ====================


@dataclass(frozen=True)
class CompressionAlgorithm:
    """Compression applied to the plaintext (``zip``). Not implemented."""

    name: str

    DEFLATE_NAME = "DEF"

    @classmethod
    def deflate(cls) -> "CompressionAlgorithm":
        return cls(cls.DEFLATE_NAME)

    @property
    def is_deflate(self) -> bool:
        return self.name == self.DEFLATE_NAME


def _base64url_field(value: Any) -> Any:
    if isinstance(value, str):
        return b64url_decode(value)
    return value


def _jwk_field(value: Any) -> Any:
    if isinstance(value, dict):
        return JWK.from_dict(value)
    return value


Base64UrlBytes = Annotated[bytes, BeforeValidator(_base64url_field), PlainSerializer(b64url_encode, return_type=str)]
HeaderJWK = Annotated[JWK, BeforeValidator(_jwk_field), PlainSerializer(lambda jwk: jwk.to_dict(), return_type=dict)]


class RegisteredHeader(BaseModel):
    """Registered JWE header fields (RFC 7516 Section 4.1).

    Key discovery headers (``jku``, ``jwk``, ``x5u``, ``x5c``, ``x5t``) and
    ``crit`` are carried as-is and never acted upon.
    """

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    cek_algorithm: KeyManagementAlgorithm = Field(alias="alg")
    enc_algorithm: ContentEncryptionAlgorithm = Field(alias="enc")
    compression_algorithm: CompressionAlgorithm | None = Field(default=None, alias="zip")
    media_type: str | None = Field(default=None, alias="typ")
    content_type: str | None = Field(default=None, alias="cty")
    web_key_url: str | None = Field(default=None, alias="jku")
    web_key: dict | str | None = Field(default=None, alias="jwk")
    key_id: str | None = Field(default=None, alias="kid")
    x509_url: str | None = Field(default=None, alias="x5u")
    x509_chain: list[str] | None = Field(default=None, alias="x5c")
    x509_fingerprint: str | None = Field(default=None, alias="x5t")
    critical: list[str] | None = Field(default=None, alias="crit")

    @field_validator("compression_algorithm", mode="before")
    @classmethod
    def _parse_compression(cls, value: Any) -> Any:
        if isinstance(value, str):
            return CompressionAlgorithm(value)
        return value

    @field_serializer("compression_algorithm")
    def _dump_compression(self, value: CompressionAlgorithm | None) -> str | None:
        return value.name if value is not None else None

    @classmethod
    def from_settings(cls, **fields: Any) -> "RegisteredHeader":
        """Header using the configured default algorithms unless given."""
        settings = get_settings()
        fields.setdefault("cek_algorithm", settings.default_cek_algorithm)
        fields.setdefault("enc_algorithm", settings.default_enc_algorithm)
        return cls(**fields)


class CekAlgorithmHeader(BaseModel):
    """Header fields owned by the key management algorithm.

    Filled in while encrypting and stripped while decrypting, so callers
    never see them on a decrypted header.
    """

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    # AES-GCM key wrap
    nonce: Base64UrlBytes | None = Field(default=None, alias="iv")
    tag: Base64UrlBytes | None = Field(default=None, alias="tag")
    # ECDH-ES
    ephemeral_key: HeaderJWK | None = Field(default=None, alias="epk")
    party_u_info: Base64UrlBytes | None = Field(default=None, alias="apu")
    party_v_info: Base64UrlBytes | None = Field(default=None, alias="apv")


class PrivateHeader(BaseModel):
    """Caller defined header fields.

    Subclass it to declare typed fields. Unrecognized header names are kept
    as extra fields.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")


def _wire_names(model: type[BaseModel]) -> frozenset[str]:
    return frozenset(info.alias or name for name, info in model.model_fields.items())


REGISTERED_NAMES = _wire_names(RegisteredHeader)
CEK_ALGORITHM_NAMES = _wire_names(CekAlgorithmHeader)
RESERVED_NAMES = REGISTERED_NAMES | CEK_ALGORITHM_NAMES


def _dump(model: BaseModel) -> dict:
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


@dataclass
class Header(CompactPart, Generic[H]):
    """JWE header: registered, key management and private fields.

    On the wire the three groups are one flat JSON object.
    """

    registered: RegisteredHeader
    cek_algorithm: CekAlgorithmHeader = field(default_factory=CekAlgorithmHeader)
    private: H = field(default_factory=PrivateHeader)

    @classmethod
    def from_registered(cls, registered: RegisteredHeader) -> "Header[PrivateHeader]":
        """Header with only registered fields."""
        return cls(registered=registered)

    def to_dict(self) -> dict:
        private = _dump(self.private)
        collisions = RESERVED_NAMES & private.keys()
        if collisions:
            raise HeaderCollisionError(collisions)
        return {**_dump(self.registered), **_dump(self.cek_algorithm), **private}

    @classmethod
    def from_dict(cls, data: dict, private_type: type[H] = PrivateHeader) -> "Header[H]":
        registered = {k: v for k, v in data.items() if k in REGISTERED_NAMES}
        cek_algorithm = {k: v for k, v in data.items() if k in CEK_ALGORITHM_NAMES}
        private = {k: v for k, v in data.items() if k not in RESERVED_NAMES}
        try:
            return cls(
                registered=RegisteredHeader.model_validate(registered),
                cek_algorithm=CekAlgorithmHeader.model_validate(cek_algorithm),
                private=private_type.model_validate(private),
            )
        except pydantic.ValidationError as e:
            raise DecodeError(f"Invalid JWE header: {e}") from e

    def to_bytes(self) -> bytes:
        try:
            return json.dumps(self.to_dict(), separators=(",", ":")).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise EncodeError(f"JWE header is not JSON serializable: {e}") from e

    @classmethod
    def from_bytes(cls, data: bytes, private_type: type[H] = PrivateHeader) -> "Header[H]":
        try:
            value = json.loads(data)
        except ValueError as e:
            raise DecodeError(f"JWE header is not valid JSON: {e}") from e
        if not isinstance(value, dict):
            raise DecodeError("JWE header must be a JSON object")
        return cls.from_dict(value, private_type)

    def copy(self) -> "Header[H]":
        return Header(
            registered=self.registered.model_copy(deep=True),
            cek_algorithm=self.cek_algorithm.model_copy(deep=True),
            private=self.private.model_copy(deep=True),
        )

    def update_cek_algorithm(self, result: EncryptionResult) -> None:
        """Record key wrapping output. Empty values are left out."""
        if result.nonce:
            self.cek_algorithm.nonce = result.nonce
        if result.tag:
            self.cek_algorithm.tag = result.tag
        if result.ephemeral_key is not None:
            self.cek_algorithm.ephemeral_key = result.ephemeral_key
        if result.party_u_info:
            self.cek_algorithm.party_u_info = result.party_u_info
        if result.party_v_info:
            self.cek_algorithm.party_v_info = result.party_v_info

    def extract_cek_encryption_result(self, encrypted_key: bytes) -> EncryptionResult:
        """Build the key unwrapping input and strip the fields it came from."""
        result = EncryptionResult(
            encrypted=encrypted_key,
            nonce=self.cek_algorithm.nonce or b"",
            tag=self.cek_algorithm.tag or b"",
            ephemeral_key=self.cek_algorithm.ephemeral_key,
            party_u_info=self.cek_algorithm.party_u_info or b"",
            party_v_info=self.cek_algorithm.party_v_info or b"",
        )
        self.cek_algorithm = CekAlgorithmHeader()
        return result


# ==================== Engine ====================


class Compact(ABC, Generic[T, H]):
    """A JWE in either its decrypted or its encrypted state.

    Build values with ``new_decrypted`` or ``new_encrypted``. Accessors only
    work on the state that owns the data and raise
    ``UnsupportedOperationError`` otherwise. ``unwrap_decrypted`` and
    ``unwrap_encrypted`` are for call sites that already know the state:
    on the wrong state they raise ``TrustedUnwrapError``, which is a bug in
    the caller and not a token error.
    """

    __slots__ = ()

    @staticmethod
    def new_decrypted(header: Header[H], payload: T) -> "Decrypted[T, H]":
        return Decrypted(header, payload)

    @staticmethod
    def new_encrypted(
        token: str,
        payload_type: type = bytes,
        private_type: type[BaseModel] = PrivateHeader,
    ) -> "Encrypted[T, H]":
        """Wrap a wire string. It is not validated until ``decrypt``."""
        return Encrypted(Container.decode(token), payload_type, private_type)

    @property
    def is_encrypted(self) -> bool:
        return isinstance(self, Encrypted)

    def encrypt(self, key: JWK, options: EncryptionOptions | None = None) -> "Encrypted[T, H]":
        raise UnsupportedOperationError("encrypt", "JWE is already encrypted")

    def decrypt(
        self,
        key: JWK,
        cek_algorithm: KeyManagementAlgorithm,
        enc_algorithm: ContentEncryptionAlgorithm,
    ) -> "Decrypted[T, H]":
        raise UnsupportedOperationError("decrypt", "JWE is already decrypted")

    @abstractmethod
    def into_encrypted(self, key: JWK, options: EncryptionOptions | None = None) -> "Encrypted[T, H]":
        """Encrypt, or return self unchanged if already encrypted."""
        raise NotImplementedError

    @abstractmethod
    def into_decrypted(
        self,
        key: JWK,
        cek_algorithm: KeyManagementAlgorithm,
        enc_algorithm: ContentEncryptionAlgorithm,
    ) -> "Decrypted[T, H]":
        """Decrypt, or return self unchanged if already decrypted."""
        raise NotImplementedError

    def payload(self) -> T:
        raise UnsupportedOperationError("payload")

    def set_payload(self, payload: T) -> None:
        raise UnsupportedOperationError("payload_mut")

    def header(self) -> Header[H]:
        raise UnsupportedOperationError("header")

    def set_header(self, header: Header[H]) -> None:
        raise UnsupportedOperationError("header_mut")

    def encrypted(self) -> Container:
        raise UnsupportedOperationError("encrypted")

    def set_encrypted(self, container: Container) -> None:
        raise UnsupportedOperationError("encrypted_mut")

    def to_string(self) -> str:
        raise UnsupportedOperationError("serialize", "a decrypted JWE cannot be serialized")

    def unwrap_decrypted(self) -> tuple[Header[H], T]:
        raise TrustedUnwrapError("JWE is encrypted")

    def unwrap_encrypted(self) -> Container:
        raise TrustedUnwrapError("JWE is decrypted")

    def validate(self, options: ValidationOptions | None = None) -> None:
        """Validate the temporal claims of a decrypted ``ClaimsSet`` payload."""
        raise UnsupportedOperationError("validate", "JWE is encrypted")


class Decrypted(Compact[T, H]):
    """Header and payload in memory."""

    __slots__ = ("_header", "_payload")

    def __init__(self, header: Header[H], payload: T):
        self._header = header
        self._payload = payload

    def encrypt(self, key: JWK, options: EncryptionOptions | None = None) -> "Encrypted[T, H]":
        """Encrypt into the compact serialization (RFC 7516 Section 5.1).

        ``options`` default to fresh random ones for whichever side uses them.
        """
        cek_algorithm = self._header.registered.cek_algorithm
        enc_algorithm = self._header.registered.enc_algorithm

        # The caller's options go to the content for dir, to key wrapping otherwise
        if cek_algorithm.is_direct:
            key_options = NONE_ENCRYPTION_OPTIONS
            content_options = options if options is not None else enc_algorithm.random_encryption_options()
        else:
            key_options = options if options is not None else cek_algorithm.random_encryption_options()
            content_options = enc_algorithm.random_encryption_options()
        key_options = cek_algorithm.resolve_options(key_options, key)

        # Steps 1-8: determine and wrap the CEK
        cek = cek_algorithm.cek(enc_algorithm, key, key_options)
        encrypted_cek = cek_algorithm.wrap_key(cek, key, key_options)
        header = self._header.copy()
        header.update_cek_algorithm(encrypted_cek)

        # Step 11: compression
        if header.registered.compression_algorithm is not None:
            raise UnsupportedOperationError("compression", header.registered.compression_algorithm.name)
        payload = to_part_bytes(self._payload)

        # Steps 12-14: the encoded protected header is the AAD
        encoded_header = b64url_encode(header.to_bytes())

        # Step 15
        encrypted_payload = enc_algorithm.encrypt(payload, encoded_header.encode("ascii"), cek, content_options)

        compact = Container.with_capacity(JWE_PARTS)
        compact.parts.append(encoded_header)
        compact.push(encrypted_cek.encrypted)
        compact.push(encrypted_payload.nonce)
        compact.push(encrypted_payload.encrypted)
        compact.push(encrypted_payload.tag)

        logger.debug("Encrypted JWE alg=%s enc=%s", cek_algorithm.value, enc_algorithm.value)
        return Encrypted(compact, type(self._payload), type(header.private))

    def into_encrypted(self, key: JWK, options: EncryptionOptions | None = None) -> "Encrypted[T, H]":
        return self.encrypt(key, options)

    def into_decrypted(
        self,
        key: JWK,
        cek_algorithm: KeyManagementAlgorithm,
        enc_algorithm: ContentEncryptionAlgorithm,
    ) -> "Decrypted[T, H]":
        return self

    def payload(self) -> T:
        return self._payload

    def set_payload(self, payload: T) -> None:
        self._payload = payload

    def header(self) -> Header[H]:
        return self._header

    def set_header(self, header: Header[H]) -> None:
        self._header = header

    def unwrap_decrypted(self) -> tuple[Header[H], T]:
        return self._header, self._payload

    def validate(self, options: ValidationOptions | None = None) -> None:
        if not isinstance(self._payload, ClaimsSet):
            raise UnsupportedOperationError("validate", "payload is not a claims set")
        self._payload.validate_claims(options)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Decrypted):
            return NotImplemented
        return self._header == other._header and self._payload == other._payload

    def __repr__(self) -> str:
        registered = self._header.registered
        return (
            f"Decrypted(alg={registered.cek_algorithm.value}, enc={registered.enc_algorithm.value}, "
            f"payload=<{type(self._payload).__name__}>)"
        )


class Encrypted(Compact[T, H]):
    """Compact serialization, ready to send.

    ``payload_type`` and ``private_type`` say what ``decrypt`` rebuilds.
    """

    __slots__ = ("_container", "payload_type", "private_type")

    def __init__(
        self,
        container: Container,
        payload_type: type = bytes,
        private_type: type[BaseModel] = PrivateHeader,
    ):
        self._container = container
        self.payload_type = payload_type
        self.private_type = private_type

    def decrypt(
        self,
        key: JWK,
        cek_algorithm: KeyManagementAlgorithm,
        enc_algorithm: ContentEncryptionAlgorithm,
    ) -> "Decrypted[T, H]":
        """Decrypt the compact serialization (RFC 7516 Section 5.2).

        ``cek_algorithm`` and ``enc_algorithm`` are the algorithms the caller
        expects. A header declaring anything else is refused, so an attacker
        cannot pick a weaker decryption path by editing the header.
        """
        encrypted = self._container
        if len(encrypted) != JWE_PARTS:
            logger.warning("Refusing JWE with %d parts", len(encrypted))
            raise PartsLengthError(actual=len(encrypted), expected=JWE_PARTS)
        max_length = get_settings().max_token_length
        if sum(len(part) for part in encrypted) + JWE_PARTS - 1 > max_length:
            raise DecodeError(f"JWE is longer than {max_length} characters")

        # Steps 1-3
        header = Header.from_bytes(encrypted.part(0), self.private_type)
        encrypted_cek = encrypted.part(1)
        nonce = encrypted.part(2)
        encrypted_payload = encrypted.part(3)
        tag = encrypted.part(4)

        expected_cek = KeyManagementAlgorithm(cek_algorithm)
        expected_enc = ContentEncryptionAlgorithm(enc_algorithm)
        if header.registered.cek_algorithm != expected_cek:
            logger.warning(
                "JWE alg %s does not match expected %s", header.registered.cek_algorithm.value, expected_cek.value
            )
            raise WrongAlgorithmHeaderError("alg", header.registered.cek_algorithm.value, expected_cek.value)
        if header.registered.enc_algorithm != expected_enc:
            logger.warning(
                "JWE enc %s does not match expected %s", header.registered.enc_algorithm.value, expected_enc.value
            )
            raise WrongAlgorithmHeaderError("enc", header.registered.enc_algorithm.value, expected_enc.value)

        # Steps 6-13: recover the CEK
        cek_result = header.extract_cek_encryption_result(encrypted_cek)
        cek = expected_cek.unwrap_key(cek_result, expected_enc, key)

        # Steps 14-15: AAD is the header segment as received
        payload_result = EncryptionResult(
            encrypted=encrypted_payload,
            nonce=nonce,
            tag=tag,
            additional_data=encrypted.raw_part(0).encode("ascii"),
        )
        payload = expected_enc.decrypt(payload_result, cek)

        if header.registered.compression_algorithm is not None:
            raise UnsupportedOperationError("decompression", header.registered.compression_algorithm.name)

        logger.debug("Decrypted JWE alg=%s enc=%s", expected_cek.value, expected_enc.value)
        return Decrypted(header, from_part_bytes(payload, self.payload_type))

    def into_encrypted(self, key: JWK, options: EncryptionOptions | None = None) -> "Encrypted[T, H]":
        return self

    def into_decrypted(
        self,
        key: JWK,
        cek_algorithm: KeyManagementAlgorithm,
        enc_algorithm: ContentEncryptionAlgorithm,
    ) -> "Decrypted[T, H]":
        return self.decrypt(key, cek_algorithm, enc_algorithm)

    def encrypted(self) -> Container:
        return self._container

    def set_encrypted(self, container: Container) -> None:
        self._container = container

    def unwrap_encrypted(self) -> Container:
        return self._container

    def to_string(self) -> str:
        return self._container.encode()

    def __str__(self) -> str:
        return self.to_string()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Encrypted):
            return NotImplemented
        return self._container == other._container

    def __repr__(self) -> str:
        return f"Encrypted({len(self._container)} parts)"
