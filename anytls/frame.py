"""Frame layout of the multiplexed session protocol."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum

PROGRAM_VERSION_NAME = "anytls/0.0.12"

HEADER_SIZE = 1 + 4 + 2
_HEADER = struct.Struct(">BIH")


class Command(IntEnum):
    """Frame commands."""

    WASTE = 0
    SYN = 1
    PSH = 2
    FIN = 3
    SETTINGS = 4
    ALERT = 5
    UPDATE_PADDING_SCHEME = 6
    SYNACK = 7
    HEART_REQUEST = 8
    HEART_RESPONSE = 9
    SERVER_SETTINGS = 10


@dataclass(frozen=True)
class FrameHeader:
    """The fixed seven-byte header preceding every frame."""

    cmd: int
    sid: int
    length: int

    @classmethod
    def decode(cls, data: bytes) -> "FrameHeader":
        if len(data) != HEADER_SIZE:
            raise ValueError(f"frame header must be {HEADER_SIZE} bytes, got {len(data)}")
        cmd, sid, length = _HEADER.unpack(data)
        return cls(cmd, sid, length)

    def encode(self) -> bytes:
        return _HEADER.pack(self.cmd, self.sid & 0xFFFFFFFF, self.length & 0xFFFF)


@dataclass(frozen=True)
class Frame:
    """A command with its stream id and payload."""

    cmd: int
    sid: int
    data: bytes = b""

    def encode(self) -> bytes:
        return FrameHeader(self.cmd, self.sid, len(self.data)).encode() + bytes(self.data)