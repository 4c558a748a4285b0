"""Wire messages exchanged by clients, servers and robots, in protobuf encoding."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar

_VARINT = 0
_FIXED64 = 1
_LENGTH_DELIMITED = 2
_FIXED32 = 5

_UINT64_MASK = (1 << 64) - 1
_UINT32_MASK = (1 << 32) - 1

_INT_RANGES = {
    "int32": (-(1 << 31), (1 << 31) - 1),
    "uint32": (0, _UINT32_MASK),
    "uint64": (0, _UINT64_MASK),
}


class DecodeError(ValueError):
    """Raised when bytes are not a valid encoding of the requested message."""


@dataclass(frozen=True)
class _Field:
    number: int
    name: str
    kind: str
    message_type: type | None = None
    repeated: bool = False

    @property
    def wire_type(self) -> int:
        return _LENGTH_DELIMITED if self.kind in ("string", "message") else _VARINT

    def default(self) -> Any:
        if self.repeated:
            return []
        if self.kind == "string":
            return ""
        if self.kind == "message":
            return None
        return 0


@dataclass
class ClickRequest:
    """A request to paint a tile with a country."""

    tile_id: int = 0
    country_id: str = ""

    _fields: ClassVar[tuple[_Field, ...]] = (
        _Field(1, "tile_id", "int32"),
        _Field(2, "country_id", "string"),
    )


@dataclass
class BatchRequest:
    """A request for the ownerships of an inclusive range of tiles."""

    start_tile_id: int = 0
    end_tile_id: int = 0

    _fields: ClassVar[tuple[_Field, ...]] = (
        _Field(1, "start_tile_id", "int32"),
        _Field(2, "end_tile_id", "int32"),
    )


@dataclass
class ClickResponse:
    """The server's acknowledgement of a click."""

    timestamp_ns: int = 0
    click_id: str = ""

    _fields: ClassVar[tuple[_Field, ...]] = (
        _Field(1, "timestamp_ns", "uint64"),
        _Field(2, "click_id", "string"),
    )


@dataclass
class Click:
    """A timestamped click as it travels through the server."""

    tile_id: int = 0
    country_id: str = ""
    timestamp_ns: int = 0
    click_id: str = ""

    _fields: ClassVar[tuple[_Field, ...]] = (
        _Field(1, "tile_id", "int32"),
        _Field(2, "country_id", "string"),
        _Field(3, "timestamp_ns", "uint64"),
        _Field(4, "click_id", "string"),
    )


@dataclass
class Ownership:
    """The country that owns a tile and since when."""

    tile_id: int = 0
    country_id: str = ""
    timestamp_ns: int = 0

    _fields: ClassVar[tuple[_Field, ...]] = (
        _Field(1, "tile_id", "uint32"),
        _Field(2, "country_id", "string"),
        _Field(3, "timestamp_ns", "uint64"),
    )


@dataclass
class OwnershipState:
    """A collection of tile ownerships."""

    ownerships: list[Ownership] = field(default_factory=list)

    _fields: ClassVar[tuple[_Field, ...]] = (
        _Field(1, "ownerships", "message", Ownership, repeated=True),
    )


@dataclass
class UpdateNotification:
    """Broadcast when a tile changes owner."""

    tile_id: int = 0
    country_id: str = ""
    previous_country_id: str = ""

    _fields: ClassVar[tuple[_Field, ...]] = (
        _Field(1, "tile_id", "int32"),
        _Field(2, "country_id", "string"),
        _Field(3, "previous_country_id", "string"),
    )


@dataclass
class LeaderboardEntry:
    """A country and the number of tiles it owns."""

    country_id: str = ""
    score: int = 0

    _fields: ClassVar[tuple[_Field, ...]] = (
        _Field(1, "country_id", "string"),
        _Field(2, "score", "uint32"),
    )


@dataclass
class LeaderboardResponse:
    """Leaderboard entries, highest score first."""

    entries: list[LeaderboardEntry] = field(default_factory=list)

    _fields: ClassVar[tuple[_Field, ...]] = (
        _Field(1, "entries", "message", LeaderboardEntry, repeated=True),
    )


def _varint(value: int) -> bytes:
    value &= _UINT64_MASK
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _encode_field(spec: _Field, value: Any) -> bytes:
    key = _varint((spec.number << 3) | spec.wire_type)
    if spec.kind == "string":
        payload = value.encode("utf-8")
        return key + _varint(len(payload)) + payload
    if spec.kind == "message":
        payload = encode(value)
        return key + _varint(len(payload)) + payload
    low, high = _INT_RANGES[spec.kind]
    if not low <= value <= high:
        raise ValueError(f"{spec.name}={value} does not fit in {spec.kind}")
    return key + _varint(value)


def encode(message: Any) -> bytes:
    """Encode a message into protobuf wire bytes."""
    out = bytearray()
    for spec in message._fields:
        value = getattr(message, spec.name)
        if spec.repeated:
            for item in value:
                out += _encode_field(spec, item)
        elif value != spec.default():
            out += _encode_field(spec, value)
    return bytes(out)


def _read_varint(data: bytes, pos: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise DecodeError("truncated varint")
        if shift >= 70:
            raise DecodeError("varint too long")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        shift += 7
        if not byte & 0x80:
            return result & _UINT64_MASK, pos


def _take(data: bytes, pos: int, size: int) -> tuple[bytes, int]:
    end = pos + size
    if end > len(data):
        raise DecodeError("buffer underflow")
    return data[pos:end], end


def _skip(data: bytes, pos: int, wire_type: int) -> int:
    if wire_type == _VARINT:
        return _read_varint(data, pos)[1]
    if wire_type == _FIXED64:
        return _take(data, pos, 8)[1]
    if wire_type == _FIXED32:
        return _take(data, pos, 4)[1]
    if wire_type == _LENGTH_DELIMITED:
        length, pos = _read_varint(data, pos)
        return _take(data, pos, length)[1]
    raise DecodeError(f"unsupported wire type {wire_type}")


def _scalar(kind: str, raw: int) -> int:
    if kind == "int32":
        raw &= _UINT32_MASK
        return raw - (1 << 32) if raw & 0x80000000 else raw
    if kind == "uint32":
        return raw & _UINT32_MASK
    return raw


def decode(message_type: type, data: bytes) -> Any:
    """Decode protobuf wire bytes into an instance of ``message_type``."""
    data = bytes(data)
    specs = {spec.number: spec for spec in message_type._fields}
    values = {spec.name: spec.default() for spec in message_type._fields}
    pos = 0
    while pos < len(data):
        key, pos = _read_varint(data, pos)
        number, wire_type = key >> 3, key & 0x7
        if number == 0:
            raise DecodeError("invalid field number 0")
        spec = specs.get(number)
        if spec is None:
            pos = _skip(data, pos, wire_type)
            continue
        if wire_type != spec.wire_type:
            raise DecodeError(
                f"invalid wire type {wire_type} for field {message_type.__name__}.{spec.name}"
            )
        if wire_type == _VARINT:
            raw, pos = _read_varint(data, pos)
            value: Any = _scalar(spec.kind, raw)
        else:
            length, pos = _read_varint(data, pos)
            chunk, pos = _take(data, pos, length)
            if spec.kind == "string":
                try:
                    value = chunk.decode("utf-8")
                except UnicodeDecodeError as exc:
                    raise DecodeError(f"invalid string in {spec.name}") from exc
            else:
                value = decode(spec.message_type, chunk)
        if spec.repeated:
            values[spec.name].append(value)
        else:
            values[spec.name] = value
    return message_type(**values)