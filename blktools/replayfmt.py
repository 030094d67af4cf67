"""Record file format: a file header followed by bunches of I/O packets."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import BinaryIO, List, Optional, Tuple

BT_MAX_PKTS = 512

BTVERSION = "1.0.0"
BTVER_MAJOR = 1
BTVER_MINOR = 0
BTVER_SUB = 0

_BUNCH_HDR = struct.Struct("=QQ")
_PKT = struct.Struct("=QQI4x")
_FILE_HDR = struct.Struct("=QQQQ")

BUNCH_HDR_SIZE = _BUNCH_HDR.size
PKT_SIZE = _PKT.size
FILE_HDR_SIZE = _FILE_HDR.size


class FormatError(Exception):
    """Raised for truncated or malformed record files."""


def mk_btversion(mjr: int, mnr: int, sub: int) -> int:
    """Pack a major/minor/sub version triple into one number."""
    return ((mjr & 0xFF) << 16) | ((mnr & 0xFF) << 8) | (sub & 0xFF)


def get_btversion(version: int) -> Tuple[int, int, int]:
    """Split a packed version number into (major, minor, sub)."""
    return (version >> 16) & 0xFF, (version >> 8) & 0xFF, version & 0xFF


CURRENT_VERSION = mk_btversion(BTVER_MAJOR, BTVER_MINOR, BTVER_SUB)


@dataclass
class IoPacket:
    """One I/O: sector, byte count and direction (1 = read, 0 = write)."""

    sector: int
    nbytes: int
    rw: int

    def pack(self) -> bytes:
        """Serialise the packet in native byte order."""
        return _PKT.pack(self.sector, self.nbytes, self.rw)

    @classmethod
    def unpack(cls, data: bytes) -> "IoPacket":
        """Decode one packet."""
        if len(data) != PKT_SIZE:
            raise FormatError(f"packet must be {PKT_SIZE} bytes, got {len(data)}")
        return cls(*_PKT.unpack(data))


@dataclass
class IoBunch:
    """A group of packets to be issued together at ``time_stamp``."""

    time_stamp: int
    pkts: List[IoPacket] = field(default_factory=list)

    @property
    def npkts(self) -> int:
        return len(self.pkts)


@dataclass
class FileHeader:
    """Header at the start of every record file."""

    version: int = CURRENT_VERSION
    genesis: int = 0
    nbunches: int = 0
    total_pkts: int = 0

    def pack(self) -> bytes:
        """Serialise the header in native byte order."""
        return _FILE_HDR.pack(self.version, self.genesis, self.nbunches, self.total_pkts)

    @classmethod
    def unpack(cls, data: bytes) -> "FileHeader":
        """Decode a file header."""
        if len(data) != FILE_HDR_SIZE:
            raise FormatError(f"file header must be {FILE_HDR_SIZE} bytes, got {len(data)}")
        return cls(*_FILE_HDR.unpack(data))


def read_bunch(stream: BinaryIO) -> Optional[IoBunch]:
    """Read the next bunch; None at end of file."""
    raw = stream.read(BUNCH_HDR_SIZE)
    if not raw:
        return None
    if len(raw) != BUNCH_HDR_SIZE:
        raise FormatError(f"Short hdr({len(raw)})")
    npkts, time_stamp = _BUNCH_HDR.unpack(raw)
    if npkts > BT_MAX_PKTS:
        raise FormatError(f"bunch of {npkts} packets exceeds {BT_MAX_PKTS}")
    count = npkts * PKT_SIZE
    body = stream.read(count)
    if len(body) != count:
        raise FormatError(f"Short pkts({len(body)}/{count})")
    pkts = [IoPacket(*fields) for fields in _PKT.iter_unpack(body)]
    return IoBunch(time_stamp, pkts)


def write_bunch(stream: BinaryIO, bunch: IoBunch) -> None:
    """Write a non-empty bunch: its header, then its packets."""
    if not 0 < bunch.npkts <= BT_MAX_PKTS:
        raise FormatError(f"bunch must hold 1 to {BT_MAX_PKTS} packets, not {bunch.npkts}")
    stream.write(_BUNCH_HDR.pack(bunch.npkts, bunch.time_stamp))
    stream.write(b"".join(pkt.pack() for pkt in bunch.pkts))