"""JOSE error taxonomy.

Every recoverable failure raised by this package derives from ``JOSEError``.
``TrustedUnwrapError`` is the one exception that does not: it signals a
programming error in a caller that used a trusted unwrap accessor on the
wrong variant.
"""


class JOSEError(Exception):
    """Base JOSE exception."""

    pass


class UnsupportedOperationError(JOSEError):
    """Operation is not available for this value or is not implemented."""

    def __init__(self, operation: str, detail: str | None = None):
        self.operation = operation
        message = f"Unsupported operation: {operation}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


# Decoding
class DecodeError(JOSEError):
    """Wire data could not be decoded."""

    pass


class PartsLengthError(DecodeError):
    """Compact serialization has the wrong number of segments."""

    def __init__(self, actual: int, expected: int):
        self.actual = actual
        self.expected = expected
        super().__init__(f"Expected {expected} parts in compact serialization, got {actual}")


class EncodeError(JOSEError):
    """Value could not be serialized to bytes."""

    pass


# Validation
class ValidationError(JOSEError):
    """Token or key failed semantic validation."""

    pass


class WrongAlgorithmHeaderError(ValidationError):
    """Header algorithms do not match the ones the caller expects."""

    def __init__(self, field: str, actual: str, expected: str):
        self.field = field
        self.actual = actual
        self.expected = expected
        super().__init__(f"Header '{field}' is {actual}, expected {expected}")


class WrongKeyTypeError(ValidationError):
    """Key type does not fit the requested algorithm."""

    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Wrong key type: expected {expected}, got {actual}")


class InvalidKeyLengthError(ValidationError):
    """Key or CEK has the wrong length for the algorithm."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Invalid key length: expected {expected} bytes, got {actual}")


class HeaderCollisionError(ValidationError):
    """Private header fields reuse a registered header name."""

    def __init__(self, names: set[str]):
        self.names = sorted(names)
        super().__init__(f"Private header fields collide with registered names: {', '.join(self.names)}")


class MissingClaimError(ValidationError):
    """A required claim is absent."""

    def __init__(self, claim: str):
        self.claim = claim
        super().__init__(f"Missing required claim: {claim}")


class ExpiredError(ValidationError):
    """Token is expired."""

    pass


class NotYetValidError(ValidationError):
    """Token is not valid yet."""

    pass


# Primitive failures
class CryptographicError(JOSEError):
    """Underlying cryptographic primitive failed."""

    pass


class AuthenticationError(CryptographicError):
    """Authentication tag did not verify."""

    pass


class TrustedUnwrapError(RuntimeError):
    """Trusted unwrap accessor called on the wrong variant."""

    pass
