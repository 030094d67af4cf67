"""Binary block I/O trace records: layout, byte order detection and decoding."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import BinaryIO, Iterator, Optional

BLK_IO_TRACE_MAGIC = 0x65617400
SUPPORTED_VERSION = 0x07
MAGIC_MASK = 0xFFFFFF00

MINORBITS = 20
MINORMASK = (1 << MINORBITS) - 1

BLK_TC_SHIFT = 16
BLK_TC_READ = 1 << 0
BLK_TC_WRITE = 1 << 1
BLK_TC_QUEUE = 1 << 4
BLK_TA_QUEUE = 1

_LAYOUT = "IIQQIIIIIHH"
_ORDERS = {"little": "<", "big": ">"}

TRACE_SIZE = struct.calcsize("<" + _LAYOUT)


class TraceError(Exception):
    """Raised for malformed, truncated or unsupported trace data."""


def _struct_for(byteorder: str) -> struct.Struct:
    try:
        return struct.Struct(_ORDERS[byteorder] + _LAYOUT)
    except KeyError:
        raise ValueError(f"byteorder must be 'little' or 'big', not {byteorder!r}") from None


def tc_act(category: int) -> int:
    """Shift a trace category into the category half of an action word."""
    return category << BLK_TC_SHIFT


@dataclass
class TraceRecord:
    """One trace event, optionally followed by its payload (pdu)."""

    magic: int = BLK_IO_TRACE_MAGIC | SUPPORTED_VERSION
    sequence: int = 0
    time: int = 0
    sector: int = 0
    bytes: int = 0
    action: int = 0
    pid: int = 0
    device: int = 0
    cpu: int = 0
    error: int = 0
    pdu_len: int = 0
    pdu: bytes = b""

    def __post_init__(self) -> None:
        if self.pdu:
            if self.pdu_len == 0:
                self.pdu_len = len(self.pdu)
            elif self.pdu_len != len(self.pdu):
                raise ValueError(
                    f"pdu_len {self.pdu_len} does not match payload of {len(self.pdu)} bytes"
                )

    @property
    def size(self) -> int:
        """Total size of the record on disk, payload included."""
        return TRACE_SIZE + self.pdu_len

    def pack(self, byteorder: str = "little") -> bytes:
        """Serialise the record (and its payload) in the given byte order."""
        header = _struct_for(byteorder).pack(
            self.magic,
            self.sequence,
            self.time,
            self.sector,
            self.bytes,
            self.action,
            self.pid,
            self.device,
            self.cpu,
            self.error,
            self.pdu_len,
        )
        return header + self.pdu


def detect_byteorder(magic_bytes: bytes) -> str:
    """Return 'little' or 'big', whichever makes the first four bytes a valid magic."""
    if len(magic_bytes) < 4:
        raise TraceError("need at least 4 bytes to detect byte order")
    raw = bytes(magic_bytes[:4])
    for order in ("little", "big"):
        if int.from_bytes(raw, order) & MAGIC_MASK == BLK_IO_TRACE_MAGIC:
            return order
    raise TraceError(f"bad trace magic {int.from_bytes(raw, 'little'):x}")


def decode_trace(data: bytes, byteorder: str = "little") -> TraceRecord:
    """Decode one record from the start of ``data``.

    If ``data`` holds more than the fixed header, the payload must be complete.
    """
    if len(data) < TRACE_SIZE:
        raise TraceError(f"short trace: {len(data)} of {TRACE_SIZE} bytes")
    fields = _struct_for(byteorder).unpack_from(data)
    pdu_len = fields[-1]
    pdu = b""
    if len(data) > TRACE_SIZE:
        end = TRACE_SIZE + pdu_len
        if len(data) < end:
            raise TraceError(f"short pdu: {len(data) - TRACE_SIZE} of {pdu_len} bytes")
        pdu = bytes(data[TRACE_SIZE:end])
    return TraceRecord(*fields, pdu=pdu)


def verify_trace(record: TraceRecord) -> None:
    """Raise TraceError if the record's magic or version is not supported."""
    if record.magic & MAGIC_MASK != BLK_IO_TRACE_MAGIC:
        raise TraceError(f"bad trace magic {record.magic:x}")
    version = record.magic & 0xFF
    if version != SUPPORTED_VERSION:
        raise TraceError(f"unsupported trace version {version:x}")


def iter_traces(stream: BinaryIO, byteorder: Optional[str] = None) -> Iterator[TraceRecord]:
    """Yield records from a binary stream until end of file.

    The byte order is detected from the first record when not given.
    """
    while True:
        header = stream.read(TRACE_SIZE)
        if not header:
            return
        if len(header) < TRACE_SIZE:
            raise TraceError(f"short read: {len(header)} of {TRACE_SIZE} bytes")
        if byteorder is None:
            byteorder = detect_byteorder(header)
        pdu_len = _struct_for(byteorder).unpack(header)[-1]
        pdu = stream.read(pdu_len) if pdu_len else b""
        if len(pdu) < pdu_len:
            raise TraceError(f"short pdu read: {len(pdu)} of {pdu_len} bytes")
        yield decode_trace(header + pdu, byteorder)


def major(dev: int) -> int:
    """Major number of a packed device id."""
    return (dev >> MINORBITS) & 0xFFFFFFFF


def minor(dev: int) -> int:
    """Minor number of a packed device id."""
    return dev & MINORMASK


def is_queue_action(action: int) -> bool:
    """True if the action word describes a queue event in the queue category."""
    return (action & 0xFFFF) == BLK_TA_QUEUE and bool(action & tc_act(BLK_TC_QUEUE))


def is_read_action(action: int) -> bool:
    """True if the action word is in the read category."""
    return bool(action & tc_act(BLK_TC_READ))