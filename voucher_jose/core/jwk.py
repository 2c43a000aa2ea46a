"""JSON Web Keys (RFC 7517) for the JWE engine.

Key material reaches the engine already loaded and verified by the key store.
Two kinds are handled:

- ``oct``: symmetric keys, used for direct encryption and AES key wrapping
- ``EC``: P-256/P-384/P-521 key pairs, used for ECDH-ES key agreement
"""

import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum

from cryptography.hazmat.primitives.asymmetric import ec

from voucher_jose.core.compact import b64url_decode, b64url_encode
from voucher_jose.core.errors import CryptographicError, DecodeError, JOSEError, WrongKeyTypeError


class KeyType(str, Enum):
    """Supported JWK key types."""

    OCT = "oct"  # Symmetric
    EC = "EC"  # Elliptic curve


# JWK curve name -> (curve class, coordinate size in bytes)
CURVES = {
    "P-256": (ec.SECP256R1, 32),
    "P-384": (ec.SECP384R1, 48),
    "P-521": (ec.SECP521R1, 66),
}

CURVE_NAMES = {
    "secp256r1": "P-256",
    "secp384r1": "P-384",
    "secp521r1": "P-521",
}


def curve_for(crv: str | None) -> tuple[ec.EllipticCurve, int]:
    """Resolve a JWK curve name into a curve instance and coordinate size."""
    try:
        curve_cls, size = CURVES[crv]
    except KeyError:
        raise JOSEError(f"Unsupported curve: {crv}") from None
    return curve_cls(), size


def jwk_curve_name(curve: ec.EllipticCurve) -> str:
    try:
        return CURVE_NAMES[curve.name]
    except KeyError:
        raise JOSEError(f"Unsupported curve: {curve.name}") from None


@dataclass
class JWK:
    """JSON Web Key."""

    kty: str  # Key type
    use: str | None = None  # Use: sig or enc
    key_ops: list[str] | None = None
    alg: str | None = None
    kid: str | None = None
    # EC keys
    crv: str | None = None
    x: str | None = None
    y: str | None = None
    d: str | None = field(default=None, repr=False)  # Private key component
    # Symmetric keys
    k: str | None = field(default=None, repr=False)

    def to_dict(self) -> dict:
        """Convert to dictionary, excluding None values."""
        return {k: v for k, v in self.__dict__.items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict) -> "JWK":
        """Create from dictionary.

        Only the shape is checked here. Whether the key material is usable
        is checked when it is turned into a ``cryptography`` key.
        """
        if "kty" not in data:
            raise DecodeError("JWK is missing 'kty'")
        fields = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        for name, value in fields.items():
            if name == "key_ops":
                if value is not None and not (isinstance(value, list) and all(isinstance(op, str) for op in value)):
                    raise DecodeError("JWK 'key_ops' must be a list of strings")
            elif value is not None and not isinstance(value, str):
                raise DecodeError(f"JWK '{name}' must be a string")
        return cls(**fields)

    # ==================== Construction ====================

    @classmethod
    def new_octet_key(cls, key: bytes, kid: str | None = None, alg: str | None = None) -> "JWK":
        """Wrap raw symmetric key bytes."""
        return cls(kty=KeyType.OCT.value, k=b64url_encode(key), use="enc", kid=kid, alg=alg)

    @classmethod
    def from_ec_key(
        cls,
        key: ec.EllipticCurvePrivateKey | ec.EllipticCurvePublicKey,
        kid: str | None = None,
        use: str = "enc",
    ) -> "JWK":
        """Convert a cryptography EC key into a JWK."""
        if isinstance(key, ec.EllipticCurvePrivateKey):
            numbers = key.public_key().public_numbers()
            private_value = key.private_numbers().private_value
        elif isinstance(key, ec.EllipticCurvePublicKey):
            numbers = key.public_numbers()
            private_value = None
        else:
            raise WrongKeyTypeError("EC key", type(key).__name__)

        crv = jwk_curve_name(key.curve)
        _, size = curve_for(crv)
        return cls(
            kty=KeyType.EC.value,
            crv=crv,
            x=b64url_encode(numbers.x.to_bytes(size, "big")),
            y=b64url_encode(numbers.y.to_bytes(size, "big")),
            d=b64url_encode(private_value.to_bytes(size, "big")) if private_value is not None else None,
            use=use,
            kid=kid,
        )

    @classmethod
    def generate_ec(cls, crv: str = "P-256", kid: str | None = None) -> "JWK":
        """Generate a fresh EC key pair."""
        curve, _ = curve_for(crv)
        return cls.from_ec_key(ec.generate_private_key(curve), kid=kid)

    # ==================== Key access ====================

    @property
    def key_type(self) -> KeyType:
        try:
            return KeyType(self.kty)
        except ValueError:
            raise JOSEError(f"Unsupported key type: {self.kty}") from None

    @property
    def is_private(self) -> bool:
        return self.d is not None or self.k is not None

    def octet_key(self) -> bytes:
        """Raw bytes of a symmetric key."""
        if self.kty != KeyType.OCT.value or self.k is None:
            raise WrongKeyTypeError("oct", self.kty)
        return b64url_decode(self.k)

    def ec_public_key(self) -> ec.EllipticCurvePublicKey:
        if self.kty != KeyType.EC.value or self.x is None or self.y is None:
            raise WrongKeyTypeError("EC", self.kty)
        curve, _ = curve_for(self.crv)
        x = int.from_bytes(b64url_decode(self.x), "big")
        y = int.from_bytes(b64url_decode(self.y), "big")
        try:
            return ec.EllipticCurvePublicNumbers(x, y, curve).public_key()
        except ValueError as e:
            # Off-curve or out-of-range point
            raise CryptographicError(f"Invalid EC public key on {self.crv}: {e}") from e

    def ec_private_key(self) -> ec.EllipticCurvePrivateKey:
        if self.kty != KeyType.EC.value or self.d is None:
            raise WrongKeyTypeError("EC private key", self.kty)
        public_numbers = self.ec_public_key().public_numbers()
        d = int.from_bytes(b64url_decode(self.d), "big")
        try:
            return ec.EllipticCurvePrivateNumbers(d, public_numbers).private_key()
        except ValueError as e:
            raise CryptographicError(f"Invalid EC private key on {self.crv}: {e}") from e

    def public_jwk(self) -> "JWK":
        """Copy of this key without private components."""
        if self.kty == KeyType.OCT.value:
            raise WrongKeyTypeError("EC", self.kty)
        return JWK(kty=self.kty, crv=self.crv, x=self.x, y=self.y, use=self.use, kid=self.kid, alg=self.alg)

    def thumbprint(self) -> str:
        """Compute JWK thumbprint per RFC 7638 (SHA-256)."""
        if self.kty == KeyType.EC.value:
            canonical = {"crv": self.crv, "kty": self.kty, "x": self.x, "y": self.y}
        elif self.kty == KeyType.OCT.value:
            canonical = {"k": self.k, "kty": self.kty}
        else:
            raise JOSEError(f"Unsupported key type for thumbprint: {self.kty}")

        # Lexicographic key order, no whitespace
        canonical_json = json.dumps(canonical, separators=(",", ":"), sort_keys=True)
        return b64url_encode(hashlib.sha256(canonical_json.encode()).digest())
