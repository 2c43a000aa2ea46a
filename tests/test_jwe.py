"""Tests for the JWE header model and compact engine."""

import json
import os

import pytest

from voucher_jose.config import get_settings
from voucher_jose.core.claims import ClaimsSet
from voucher_jose.core.compact import Container, b64url_decode, b64url_encode
from voucher_jose.core.errors import (
    AuthenticationError,
    CryptographicError,
    DecodeError,
    HeaderCollisionError,
    JOSEError,
    PartsLengthError,
    TrustedUnwrapError,
    UnsupportedOperationError,
    WrongAlgorithmHeaderError,
    WrongKeyTypeError,
)
from voucher_jose.core.jwa import (
    AesGcmOptions,
    ContentEncryptionAlgorithm,
    EcdhEsOptions,
    EncryptionResult,
    KeyManagementAlgorithm,
    KEY_WRAP_SIZES,
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
from voucher_jose.core.jwk import JWK

PAYLOAD = "The true sign of intelligence is not knowledge but imagination."

A256GCMKW = KeyManagementAlgorithm.A256GCMKW
A256GCM = ContentEncryptionAlgorithm.A256GCM
A128GCM = ContentEncryptionAlgorithm.A128GCM
DIRECT = KeyManagementAlgorithm.DIRECT


def make_header(alg=A256GCMKW, enc=A256GCM, **fields) -> Header:
    return Header.from_registered(RegisteredHeader(cek_algorithm=alg, enc_algorithm=enc, **fields))


def key_for(alg: KeyManagementAlgorithm, enc: ContentEncryptionAlgorithm) -> tuple[JWK, JWK]:
    """(encryption key, decryption key) for an algorithm pair."""
    if alg.is_ecdh:
        recipient = JWK.generate_ec("P-256")
        return recipient.public_jwk(), recipient
    size = enc.cek_size if alg.is_direct else KEY_WRAP_SIZES[alg]
    key = JWK.new_octet_key(os.urandom(size))
    return key, key


def direct_token(key: JWK, header_json: bytes) -> str:
    """Hand-built A128GCM token for a dir key, with the header bytes kept as given."""
    header_segment = b64url_encode(header_json)
    options = A128GCM.random_encryption_options()
    result = A128GCM.encrypt(b"voucher", header_segment.encode("ascii"), key.octet_key(), options)
    return ".".join(
        [
            header_segment,
            "",
            b64url_encode(result.nonce),
            b64url_encode(result.encrypted),
            b64url_encode(result.tag),
        ]
    )


SUPPORTED_PAIRS = [
    (alg, enc)
    for alg in [
        KeyManagementAlgorithm.DIRECT,
        KeyManagementAlgorithm.A128KW,
        KeyManagementAlgorithm.A192KW,
        KeyManagementAlgorithm.A256KW,
        KeyManagementAlgorithm.A128GCMKW,
        KeyManagementAlgorithm.A192GCMKW,
        KeyManagementAlgorithm.A256GCMKW,
        KeyManagementAlgorithm.ECDH_ES,
        KeyManagementAlgorithm.ECDH_ES_A128KW,
        KeyManagementAlgorithm.ECDH_ES_A256KW,
    ]
    for enc in ContentEncryptionAlgorithm
]


@pytest.fixture
def zero_key():
    """256-bit all-zero symmetric key."""
    return JWK.new_octet_key(bytes(32))


@pytest.fixture
def zero_nonce_options():
    """Fixed 96-bit zero nonce."""
    return AesGcmOptions(nonce=bytes(12))


@pytest.fixture
def encrypted(zero_key, zero_nonce_options):
    """The reference payload encrypted with A256GCMKW and A256GCM."""
    return Compact.new_decrypted(make_header(), PAYLOAD.encode()).encrypt(zero_key, zero_nonce_options)


@pytest.fixture
def fresh_settings(monkeypatch):
    """Clear cached settings around a test that changes the environment."""
    get_settings.cache_clear()
    yield monkeypatch
    get_settings.cache_clear()


class TestHeader:
    """Tests for the three-group header model."""

    def test_flattened_wire_names(self):
        """Test all groups serialize into one flat object."""
        header = make_header(media_type="JOSE", key_id="registrar-1", x509_chain=["MIIB", "MIIC"])
        header.cek_algorithm.nonce = b"\x00" * 12
        header.private = PrivateHeader(device="pledge-42")

        assert header.to_dict() == {
            "alg": "A256GCMKW",
            "enc": "A256GCM",
            "typ": "JOSE",
            "kid": "registrar-1",
            "x5c": ["MIIB", "MIIC"],
            "iv": "AAAAAAAAAAAAAAAA",
            "device": "pledge-42",
        }

    def test_unset_fields_are_omitted(self):
        """Test optional fields never serialize as null."""
        assert make_header().to_dict() == {"alg": "A256GCMKW", "enc": "A256GCM"}

    def test_from_dict_routes_keys(self):
        """Test recognized keys go to their group and the rest to private."""
        header = Header.from_dict({
            "alg": "dir",
            "enc": "A128GCM",
            "cty": "JWT",
            "crit": ["exp"],
            "iv": "AAAAAAAAAAAAAAAA",
            "tag": "AAAAAAAAAAAAAAAAAAAAAA",
            "serial": "00-D0-E5-F2-00-02",
        })

        assert header.registered.cek_algorithm == DIRECT
        assert header.registered.content_type == "JWT"
        assert header.registered.critical == ["exp"]
        assert header.cek_algorithm.nonce == bytes(12)
        assert header.cek_algorithm.tag == bytes(16)
        assert header.private.model_extra == {"serial": "00-D0-E5-F2-00-02"}

    def test_typed_private_header(self):
        """Test a caller-defined private header type."""

        class DeviceHeader(PrivateHeader):
            serial_number: str

        header = Header.from_bytes(b'{"alg":"dir","enc":"A128GCM","serial_number":"SN1"}', DeviceHeader)

        assert isinstance(header.private, DeviceHeader)
        assert header.private.serial_number == "SN1"

    def test_bytes_roundtrip(self):
        """Test to_bytes/from_bytes keeps every group."""
        header = make_header(compression_algorithm=CompressionAlgorithm.deflate(), x509_fingerprint="abc")
        header.cek_algorithm.tag = b"\x01" * 16
        header.private = PrivateHeader(nonce_counter=7)

        assert Header.from_bytes(header.to_bytes()) == header

    def test_compression_names(self):
        """Test DEF maps to deflate and other names are kept."""
        deflate = Header.from_dict({"alg": "dir", "enc": "A128GCM", "zip": "DEF"}).registered.compression_algorithm
        assert deflate.is_deflate
        other = Header.from_dict({"alg": "dir", "enc": "A128GCM", "zip": "LZ4"}).registered.compression_algorithm
        assert other == CompressionAlgorithm("LZ4")
        assert not other.is_deflate

    def test_private_collision_rejected(self):
        """Test private fields may not reuse registered names."""
        header = make_header()
        header.private = PrivateHeader(alg="none")

        with pytest.raises(HeaderCollisionError):
            header.to_dict()

    def test_private_alias_collision_rejected(self):
        """Test collisions through field aliases are caught too."""
        from pydantic import Field

        class KidHeader(PrivateHeader):
            device_key: str = Field(alias="kid")

        header = make_header()
        header.private = KidHeader(kid="mine")

        with pytest.raises(HeaderCollisionError):
            header.to_bytes()

    def test_missing_algorithm(self):
        """Test alg and enc are required."""
        with pytest.raises(DecodeError):
            Header.from_dict({"enc": "A128GCM"})

    def test_unknown_algorithm(self):
        """Test unknown algorithm names fail to decode."""
        with pytest.raises(DecodeError):
            Header.from_dict({"alg": "none", "enc": "A128GCM"})

    def test_not_an_object(self):
        """Test a JSON array is not a header."""
        with pytest.raises(DecodeError):
            Header.from_bytes(b"[]")

    def test_update_skips_empty_fields(self):
        """Test direct mode results leave the header untouched."""
        header = make_header(alg=DIRECT)
        header.update_cek_algorithm(EncryptionResult())

        assert header.cek_algorithm == CekAlgorithmHeader()

    def test_update_sets_nonce_and_tag(self):
        """Test key wrap nonce and tag are recorded."""
        header = make_header()
        header.update_cek_algorithm(EncryptionResult(encrypted=b"k", nonce=b"n" * 12, tag=b"t" * 16))

        assert header.cek_algorithm.nonce == b"n" * 12
        assert header.cek_algorithm.tag == b"t" * 16

    def test_extract_strips_fields(self):
        """Test extraction returns the wrap result and clears the group."""
        header = make_header()
        header.cek_algorithm = CekAlgorithmHeader(nonce=b"n" * 12, tag=b"t" * 16)

        result = header.extract_cek_encryption_result(b"wrapped")

        assert result == EncryptionResult(encrypted=b"wrapped", nonce=b"n" * 12, tag=b"t" * 16)
        assert header.cek_algorithm == CekAlgorithmHeader()

    def test_from_settings_defaults(self, fresh_settings):
        """Test default algorithms come from settings."""
        fresh_settings.setenv("VOUCHER_JOSE_DEFAULT_CEK_ALGORITHM", "A128KW")
        registered = RegisteredHeader.from_settings(key_id="k1")

        assert registered.cek_algorithm == KeyManagementAlgorithm.A128KW
        assert registered.enc_algorithm == A256GCM
        assert registered.key_id == "k1"


class TestReferenceScenario:
    """A256GCMKW/A256GCM with a zero key and a zero key wrap nonce."""

    def test_roundtrip(self, encrypted, zero_key):
        """Test the payload survives encryption and decryption."""
        token = str(encrypted)
        decrypted = Compact.new_encrypted(token).decrypt(zero_key, A256GCMKW, A256GCM)

        assert decrypted.payload().decode("utf-8") == PAYLOAD

    def test_wrong_enc_expected(self, encrypted, zero_key):
        """Test expecting A128GCM is refused."""
        with pytest.raises(WrongAlgorithmHeaderError) as exc_info:
            encrypted.decrypt(zero_key, A256GCMKW, A128GCM)

        assert exc_info.value.field == "enc"

    def test_key_wrap_nonce_in_header(self, encrypted):
        """Test the wire header carries the key wrap nonce and tag."""
        header = encrypted.encrypted().part(0, dict)

        assert header["alg"] == "A256GCMKW"
        assert header["enc"] == "A256GCM"
        assert b64url_decode(header["iv"]) == bytes(12)
        assert len(b64url_decode(header["tag"])) == 16

    def test_content_nonce_is_random(self, encrypted):
        """Test content encryption does not reuse the key wrap nonce."""
        assert encrypted.encrypted().part(2) != bytes(12)
        assert len(encrypted.encrypted().part(2)) == 12

    def test_decrypted_header_is_stripped(self, encrypted, zero_key):
        """Test iv and tag do not reach the caller."""
        header = encrypted.decrypt(zero_key, A256GCMKW, A256GCM).header()

        assert header == make_header()
        assert header.cek_algorithm == CekAlgorithmHeader()


class TestRoundTrip:
    """Round trips over every supported algorithm pair."""

    @pytest.mark.parametrize("alg,enc", SUPPORTED_PAIRS)
    def test_roundtrip(self, alg, enc):
        """Test decrypt(encrypt(x)) gives back header and payload."""
        encryption_key, decryption_key = key_for(alg, enc)
        header = make_header(alg, enc, key_id="k1")
        payload = os.urandom(100)

        encrypted = Compact.new_decrypted(header, payload).encrypt(encryption_key)
        assert len(encrypted.encrypted()) == 5

        decrypted = Compact.new_encrypted(str(encrypted)).decrypt(decryption_key, alg, enc)
        assert decrypted == Compact.new_decrypted(header, payload)

    def test_str_payload(self, zero_key):
        """Test payload type is carried through encryption."""
        encrypted = Compact.new_decrypted(make_header(), PAYLOAD).encrypt(zero_key)
        assert encrypted.decrypt(zero_key, A256GCMKW, A256GCM).payload() == PAYLOAD

    def test_string_algorithm_names(self, encrypted, zero_key):
        """Test expected algorithms may be passed by name."""
        assert encrypted.decrypt(zero_key, "A256GCMKW", "A256GCM").payload() == PAYLOAD.encode()

    def test_private_header_roundtrip(self, zero_key):
        """Test typed private header fields survive the round trip."""

        class DeviceHeader(PrivateHeader):
            serial_number: str

        header = make_header()
        header.private = DeviceHeader(serial_number="SN-0042")
        token = str(Compact.new_decrypted(header, b"voucher").encrypt(zero_key))

        decrypted = Compact.new_encrypted(token, private_type=DeviceHeader).decrypt(zero_key, A256GCMKW, A256GCM)
        assert decrypted.header().private.serial_number == "SN-0042"

    def test_unknown_header_fields_kept(self, zero_key):
        """Test unknown header names reach the private group."""
        header = make_header()
        header.private = PrivateHeader(voucher_type="constrained")
        token = str(Compact.new_decrypted(header, b"voucher").encrypt(zero_key))

        decrypted = Compact.new_encrypted(token).decrypt(zero_key, A256GCMKW, A256GCM)
        assert decrypted.header().private.model_extra == {"voucher_type": "constrained"}

    def test_claims_payload(self, zero_key):
        """Test a claims set payload."""
        claims = ClaimsSet(issuer="masa.example.com", subject="pledge-42", expiry=4102444800, nonce="abc")
        encrypted = Compact.new_decrypted(make_header(), claims).encrypt(zero_key)

        decrypted = encrypted.decrypt(zero_key, A256GCMKW, A256GCM)
        assert decrypted.payload() == claims
        decrypted.validate()

    def test_encrypt_does_not_touch_original(self, zero_key):
        """Test the decrypted value is not modified by encrypting it."""
        original = Compact.new_decrypted(make_header(), b"voucher")
        original.encrypt(zero_key)

        assert original.header().cek_algorithm == CekAlgorithmHeader()


class TestDirectMode:
    """Tests for dir."""

    def test_wrapped_segment_is_empty(self):
        """Test the encrypted key segment decodes to nothing."""
        key = JWK.new_octet_key(os.urandom(16))
        encrypted = Compact.new_decrypted(make_header(DIRECT, A128GCM), b"voucher").encrypt(key)

        assert encrypted.encrypted().part(1) == b""
        assert encrypted.encrypted().raw_part(1) == ""

    def test_options_apply_to_content(self):
        """Test caller options become the content nonce."""
        key = JWK.new_octet_key(os.urandom(16))
        options = AesGcmOptions(nonce=b"\x07" * 12)
        encrypted = Compact.new_decrypted(make_header(DIRECT, A128GCM), b"voucher").encrypt(key, options)

        assert encrypted.encrypted().part(2) == b"\x07" * 12
        assert "iv" not in encrypted.encrypted().part(0, dict)

    def test_wrong_key_size(self):
        """Test a key that does not fit the content algorithm."""
        key = JWK.new_octet_key(os.urandom(32))
        with pytest.raises(JOSEError):
            Compact.new_decrypted(make_header(DIRECT, A128GCM), b"voucher").encrypt(key)

    def test_ec_key_refused(self):
        """Test direct mode with an EC key."""
        with pytest.raises(WrongKeyTypeError):
            Compact.new_decrypted(make_header(DIRECT, A128GCM), b"voucher").encrypt(JWK.generate_ec())


class TestEcdhEsMode:
    """Tests for ECDH-ES through the engine."""

    def test_epk_on_wire_and_stripped(self):
        """Test the ephemeral key travels in the header and is removed on decrypt."""
        recipient = JWK.generate_ec("P-384")
        alg = KeyManagementAlgorithm.ECDH_ES_A128KW
        options = EcdhEsOptions(apu=b"pledge", apv=b"registrar")

        plain = Compact.new_decrypted(make_header(alg, A128GCM), b"voucher")
        encrypted = plain.encrypt(recipient.public_jwk(), options)
        wire_header = encrypted.encrypted().part(0, dict)

        assert wire_header["epk"]["crv"] == "P-384"
        assert "d" not in wire_header["epk"]
        assert b64url_decode(wire_header["apu"]) == b"pledge"

        decrypted = encrypted.decrypt(recipient, alg, A128GCM)
        assert decrypted.payload() == b"voucher"
        assert decrypted.header().cek_algorithm == CekAlgorithmHeader()

    def test_symmetric_key_refused(self):
        """Test ECDH-ES with an octet key."""
        with pytest.raises(WrongKeyTypeError):
            Compact.new_decrypted(make_header(KeyManagementAlgorithm.ECDH_ES, A128GCM), b"x").encrypt(
                JWK.new_octet_key(os.urandom(16))
            )

    def test_wrong_recipient(self):
        """Test another private key cannot decrypt."""
        alg = KeyManagementAlgorithm.ECDH_ES
        encrypted = Compact.new_decrypted(make_header(alg, A128GCM), b"voucher").encrypt(JWK.generate_ec().public_jwk())

        with pytest.raises(AuthenticationError):
            encrypted.decrypt(JWK.generate_ec(), alg, A128GCM)

    @pytest.mark.parametrize("edit,error", [
        (lambda epk: {**epk, "x": JWK.generate_ec("P-256").x}, CryptographicError),
        (lambda epk: {**epk, "x": 5}, DecodeError),
        (lambda epk: {**epk, "y": ["AAAA"]}, DecodeError),
        (lambda epk: {k: v for k, v in epk.items() if k != "y"}, WrongKeyTypeError),
        (lambda epk: {k: v for k, v in epk.items() if k != "kty"}, DecodeError),
        (lambda epk: {**epk, "crv": "P-192"}, JOSEError),
        (lambda epk: {"kty": "oct", "k": "AAAAAAAAAAAAAAAAAAAAAA"}, WrongKeyTypeError),
        (lambda epk: "not a key", DecodeError),
    ])
    def test_malformed_epk(self, edit, error):
        """Test a bad ephemeral key header fails with a package error."""
        recipient = JWK.generate_ec("P-256")
        alg = KeyManagementAlgorithm.ECDH_ES
        encrypted = Compact.new_decrypted(make_header(alg, A128GCM), b"voucher").encrypt(recipient.public_jwk())
        parts = str(encrypted).split(".")
        header = json.loads(b64url_decode(parts[0]))
        header["epk"] = edit(header["epk"])
        parts[0] = b64url_encode(json.dumps(header).encode())

        with pytest.raises(error):
            Compact.new_encrypted(".".join(parts)).decrypt(recipient, alg, A128GCM)


class TestVariants:
    """Tests for state transitions and variant-exclusive access."""

    def test_into_encrypted_is_idempotent(self, encrypted, zero_key):
        """Test into_encrypted returns an encrypted value unchanged."""
        assert encrypted.into_encrypted(zero_key) is encrypted

    def test_into_decrypted_is_idempotent(self, zero_key):
        """Test into_decrypted returns a decrypted value unchanged."""
        decrypted = Compact.new_decrypted(make_header(), b"voucher")
        assert decrypted.into_decrypted(zero_key, A256GCMKW, A256GCM) is decrypted

    def test_into_transitions(self, zero_key):
        """Test into_encrypted/into_decrypted convert when needed."""
        decrypted = Compact.new_decrypted(make_header(), b"voucher")
        encrypted = decrypted.into_encrypted(zero_key)

        assert isinstance(encrypted, Encrypted)
        assert encrypted.into_decrypted(zero_key, A256GCMKW, A256GCM) == decrypted

    def test_strict_encrypt_refused_when_encrypted(self, encrypted, zero_key):
        """Test encrypt on an encrypted value."""
        with pytest.raises(UnsupportedOperationError) as exc_info:
            encrypted.encrypt(zero_key)
        assert exc_info.value.operation == "encrypt"

    def test_strict_decrypt_refused_when_decrypted(self, zero_key):
        """Test decrypt on a decrypted value."""
        with pytest.raises(UnsupportedOperationError) as exc_info:
            Compact.new_decrypted(make_header(), b"voucher").decrypt(zero_key, A256GCMKW, A256GCM)
        assert exc_info.value.operation == "decrypt"

    @pytest.mark.parametrize("accessor", ["payload", "header"])
    def test_decrypted_accessors_on_encrypted(self, encrypted, accessor):
        """Test payload/header are refused on an encrypted value."""
        with pytest.raises(UnsupportedOperationError) as exc_info:
            getattr(encrypted, accessor)()
        assert exc_info.value.operation == accessor

    def test_mutators_on_encrypted(self, encrypted):
        """Test payload/header mutation is refused on an encrypted value."""
        with pytest.raises(UnsupportedOperationError) as exc_info:
            encrypted.set_payload(b"other")
        assert exc_info.value.operation == "payload_mut"
        with pytest.raises(UnsupportedOperationError):
            encrypted.set_header(make_header())

    def test_encrypted_accessors_on_decrypted(self):
        """Test encrypted access is refused on a decrypted value."""
        decrypted = Compact.new_decrypted(make_header(), b"voucher")

        with pytest.raises(UnsupportedOperationError) as exc_info:
            decrypted.encrypted()
        assert exc_info.value.operation == "encrypted"
        with pytest.raises(UnsupportedOperationError) as exc_info:
            decrypted.set_encrypted(Container())
        assert exc_info.value.operation == "encrypted_mut"

    def test_decrypted_mutation(self):
        """Test header and payload can change while decrypted."""
        decrypted = Compact.new_decrypted(make_header(), b"voucher")
        decrypted.set_payload(b"other")
        decrypted.header().registered.key_id = "k2"

        assert decrypted.payload() == b"other"
        assert decrypted.header().registered.key_id == "k2"

    def test_decrypted_cannot_serialize(self):
        """Test only the encrypted variant renders to a wire string."""
        with pytest.raises(UnsupportedOperationError):
            Compact.new_decrypted(make_header(), b"voucher").to_string()

    def test_trusted_unwrap(self, encrypted, zero_key):
        """Test trusted unwrap on the matching variant."""
        assert encrypted.unwrap_encrypted() is encrypted.encrypted()
        header, payload = encrypted.decrypt(zero_key, A256GCMKW, A256GCM).unwrap_decrypted()
        assert payload == PAYLOAD.encode()
        assert header == make_header()

    def test_trusted_unwrap_misuse(self, encrypted):
        """Test trusted unwrap on the wrong variant is a programming error."""
        with pytest.raises(TrustedUnwrapError):
            encrypted.unwrap_decrypted()
        with pytest.raises(TrustedUnwrapError):
            Compact.new_decrypted(make_header(), b"voucher").unwrap_encrypted()
        assert not issubclass(TrustedUnwrapError, JOSEError)

    def test_no_third_state(self):
        """Test the base class cannot be instantiated on its own."""
        with pytest.raises(TypeError):
            Compact()

    def test_variant_types(self, encrypted):
        """Test each value is exactly one state."""
        decrypted = Compact.new_decrypted(make_header(), b"voucher")

        assert isinstance(decrypted, Decrypted) and not isinstance(decrypted, Encrypted)
        assert isinstance(encrypted, Encrypted) and not isinstance(encrypted, Decrypted)
        assert encrypted.is_encrypted
        assert not decrypted.is_encrypted

    def test_validate_requires_decrypted_claims(self, encrypted):
        """Test validate on encrypted values and non-claims payloads."""
        with pytest.raises(UnsupportedOperationError):
            encrypted.validate()
        with pytest.raises(UnsupportedOperationError):
            Compact.new_decrypted(make_header(), b"voucher").validate()


class TestMalformedInput:
    """Tests for wire input rejection."""

    @pytest.mark.parametrize("token,count", [
        ("a.b.c", 3),
        ("a.b.c.d.e.f.g", 7),
    ])
    def test_parts_length(self, token, count, zero_key):
        """Test only five segments are accepted."""
        with pytest.raises(PartsLengthError) as exc_info:
            Compact.new_encrypted(token).decrypt(zero_key, A256GCMKW, A256GCM)

        assert exc_info.value.actual == count
        assert exc_info.value.expected == 5

    def test_new_encrypted_defers_validation(self):
        """Test parsing never fails; decrypt does."""
        assert len(Compact.new_encrypted("garbage").encrypted()) == 1

    def test_bad_base64(self, encrypted, zero_key):
        """Test a malformed segment fails with a decode error."""
        parts = str(encrypted).split(".")
        parts[3] = parts[3] + "!"

        with pytest.raises(DecodeError):
            Compact.new_encrypted(".".join(parts)).decrypt(zero_key, A256GCMKW, A256GCM)

    def test_header_not_json(self, zero_key):
        """Test a header segment that is not JSON."""
        token = ".".join([b64url_encode(b"not json"), "", "", "", ""])

        with pytest.raises(DecodeError):
            Compact.new_encrypted(token).decrypt(zero_key, A256GCMKW, A256GCM)

    def test_wrong_key(self, encrypted):
        """Test another key fails authentication."""
        with pytest.raises(AuthenticationError):
            encrypted.decrypt(JWK.new_octet_key(os.urandom(32)), A256GCMKW, A256GCM)

    def test_tampered_header(self, encrypted, zero_key):
        """Test editing the header breaks authentication."""
        parts = str(encrypted).split(".")
        header = json.loads(b64url_decode(parts[0]))
        header["kid"] = "attacker"
        parts[0] = b64url_encode(json.dumps(header).encode())

        with pytest.raises(AuthenticationError):
            Compact.new_encrypted(".".join(parts)).decrypt(zero_key, A256GCMKW, A256GCM)

    def test_tampered_ciphertext(self, encrypted, zero_key):
        """Test editing the ciphertext breaks authentication."""
        container = encrypted.encrypted()
        ciphertext = container.part(3)
        tampered = Container(list(container))
        tampered.parts[3] = b64url_encode(bytes([ciphertext[0] ^ 1]) + ciphertext[1:])

        with pytest.raises(AuthenticationError):
            Encrypted(tampered).decrypt(zero_key, A256GCMKW, A256GCM)

    def test_short_content_nonce(self, encrypted, zero_key):
        """Test nonce width is checked."""
        parts = str(encrypted).split(".")
        parts[2] = b64url_encode(bytes(8))

        with pytest.raises(DecodeError):
            Compact.new_encrypted(".".join(parts)).decrypt(zero_key, A256GCMKW, A256GCM)

    def test_token_too_long(self, encrypted, zero_key, fresh_settings):
        """Test the configured maximum length."""
        fresh_settings.setenv("VOUCHER_JOSE_MAX_TOKEN_LENGTH", "16")

        with pytest.raises(DecodeError):
            Compact.new_encrypted(str(encrypted)).decrypt(zero_key, A256GCMKW, A256GCM)

    def test_aad_is_header_as_received(self):
        """Test a non-canonical header still authenticates."""
        key = JWK.new_octet_key(os.urandom(16))
        token = direct_token(key, b'{ "enc" : "A128GCM",\n  "alg" : "dir" }')

        assert Compact.new_encrypted(token).decrypt(key, DIRECT, A128GCM).payload() == b"voucher"


class TestAlgorithmConfusion:
    """Tests that declared algorithms must match the expected ones."""

    @pytest.mark.parametrize("declared", list(ContentEncryptionAlgorithm))
    @pytest.mark.parametrize("expected", list(ContentEncryptionAlgorithm))
    def test_enc_mismatch(self, declared, expected):
        """Test any enc other than the expected one is refused."""
        if declared == expected:
            pytest.skip("same algorithm")
        key = JWK.new_octet_key(os.urandom(32))
        encrypted = Compact.new_decrypted(make_header(KeyManagementAlgorithm.A256KW, declared), b"x").encrypt(key)

        with pytest.raises(WrongAlgorithmHeaderError):
            encrypted.decrypt(key, KeyManagementAlgorithm.A256KW, expected)

    def test_alg_mismatch(self, encrypted, zero_key):
        """Test a different key management algorithm is refused."""
        with pytest.raises(WrongAlgorithmHeaderError) as exc_info:
            encrypted.decrypt(zero_key, DIRECT, A256GCM)

        assert exc_info.value.field == "alg"
        assert exc_info.value.actual == "A256GCMKW"
        assert exc_info.value.expected == "dir"

    def test_swapped_header_refused_before_key_use(self, encrypted):
        """Test a header rewritten to dir is refused when A256GCMKW is expected."""
        parts = str(encrypted).split(".")
        parts[0] = b64url_encode(b'{"alg":"dir","enc":"A256GCM"}')
        parts[1] = ""

        with pytest.raises(WrongAlgorithmHeaderError):
            Compact.new_encrypted(".".join(parts)).decrypt(JWK.new_octet_key(bytes(32)), A256GCMKW, A256GCM)


class TestCompression:
    """Tests that compression is refused."""

    def test_encrypt_refused(self, zero_key):
        """Test encrypting with zip set."""
        header = make_header(compression_algorithm=CompressionAlgorithm.deflate())

        with pytest.raises(UnsupportedOperationError) as exc_info:
            Compact.new_decrypted(header, b"voucher").encrypt(zero_key)
        assert exc_info.value.operation == "compression"

    def test_decrypt_refused(self):
        """Test decrypting a token whose header declares zip."""
        key = JWK.new_octet_key(os.urandom(16))
        token = direct_token(key, b'{"alg":"dir","enc":"A128GCM","zip":"DEF"}')

        with pytest.raises(UnsupportedOperationError) as exc_info:
            Compact.new_encrypted(token).decrypt(key, DIRECT, A128GCM)
        assert exc_info.value.operation == "decompression"
