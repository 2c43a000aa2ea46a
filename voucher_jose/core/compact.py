"""Compact serialization container.

A compact JOSE object is an ordered sequence of segments, each one the
base64url (no padding) encoding of some value's bytes, joined by ``.``.
The container knows nothing about what each position means; the JWE engine
gives positions their meaning.

Values are turned into bytes through the ``CompactPart`` capability:

- ``bytes`` are taken as-is
- ``str`` is UTF-8 encoded
- ``CompactPart`` subclasses provide ``to_bytes`` / ``from_bytes``
- pydantic models are dumped to / validated from compact JSON
- ``dict`` and ``list`` are dumped to / loaded from compact JSON
"""

import base64
import binascii
import json
import re
from typing import Any, Iterator, TypeVar

import pydantic
from pydantic import BaseModel

from voucher_jose.core.errors import DecodeError, EncodeError

P = TypeVar("P")

_B64URL_SEGMENT = re.compile(r"[A-Za-z0-9_-]*")


def b64url_encode(data: bytes) -> str:
    """Base64url encode without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(data: str) -> bytes:
    """Strict base64url decode of an unpadded segment."""
    if not _B64URL_SEGMENT.fullmatch(data):
        raise DecodeError("Segment is not unpadded base64url")
    padding = 4 - len(data) % 4
    if padding != 4:
        data += "=" * padding
    try:
        return base64.b64decode(data, altchars=b"-_", validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecodeError(f"Invalid base64url segment: {e}") from e


class CompactPart:
    """Capability for values that can travel as one compact segment."""

    def to_bytes(self) -> bytes:
        raise NotImplementedError

    @classmethod
    def from_bytes(cls, data: bytes) -> "CompactPart":
        raise NotImplementedError


def to_part_bytes(value: Any) -> bytes:
    """Canonical byte representation of a segment value."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, str):
        return value.encode("utf-8")
    if isinstance(value, CompactPart):
        return value.to_bytes()
    if isinstance(value, BaseModel):
        return value.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")
    if isinstance(value, (dict, list)):
        try:
            return json.dumps(value, separators=(",", ":")).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise EncodeError(f"Value is not JSON serializable: {e}") from e
    raise EncodeError(f"Cannot serialize {type(value).__name__} to a compact part")


def from_part_bytes(data: bytes, part_type: type[P]) -> P:
    """Rebuild a value of ``part_type`` from segment bytes."""
    if part_type in (bytes, bytearray):
        return part_type(data)
    if part_type is str:
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError(f"Segment is not valid UTF-8: {e}") from e
    if isinstance(part_type, type) and issubclass(part_type, CompactPart):
        return part_type.from_bytes(data)
    if isinstance(part_type, type) and issubclass(part_type, BaseModel):
        try:
            return part_type.model_validate_json(data)
        except pydantic.ValidationError as e:
            raise DecodeError(f"Segment does not match {part_type.__name__}: {e}") from e
    if part_type in (dict, list):
        try:
            value = json.loads(data)
        except ValueError as e:
            raise DecodeError(f"Segment is not valid JSON: {e}") from e
        if not isinstance(value, part_type):
            raise DecodeError(f"Segment is not a JSON {part_type.__name__}")
        return value
    raise DecodeError(f"Cannot deserialize a compact part into {part_type!r}")


class Container:
    """Ordered base64url segments of a compact serialization."""

    def __init__(self, parts: list[str] | None = None):
        self.parts: list[str] = list(parts) if parts else []

    @classmethod
    def with_capacity(cls, capacity: int) -> "Container":
        """Create an empty container meant to hold ``capacity`` segments.

        Lists grow on demand, so ``capacity`` is only a hint.
        """
        return cls()

    @classmethod
    def decode(cls, token: str) -> "Container":
        """Split a wire string into segments. Segments are not validated here."""
        return cls(token.split("."))

    def push(self, value: Any) -> None:
        """Encode ``value`` and append it as the next segment."""
        self.parts.append(b64url_encode(to_part_bytes(value)))

    def part(self, index: int, part_type: type[P] = bytes) -> P:
        """Decode segment ``index`` into ``part_type``."""
        return from_part_bytes(b64url_decode(self.raw_part(index)), part_type)

    def raw_part(self, index: int) -> str:
        """Segment ``index`` exactly as it appears on the wire."""
        try:
            return self.parts[index]
        except IndexError:
            raise DecodeError(f"No compact part at index {index}") from None

    def encode(self) -> str:
        return ".".join(self.parts)

    def __len__(self) -> int:
        return len(self.parts)

    def __iter__(self) -> Iterator[str]:
        return iter(self.parts)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Container):
            return NotImplemented
        return self.parts == other.parts

    def __str__(self) -> str:
        return self.encode()

    def __repr__(self) -> str:
        return f"Container({self.encode()!r})"
