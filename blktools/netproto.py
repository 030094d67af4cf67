"""Wire header exchanged between a trace client and a trace server."""

from __future__ import annotations

import os
import socket
import struct
import time
from dataclasses import dataclass, field
from typing import Optional

from blktools.trace import BLK_IO_TRACE_MAGIC, MAGIC_MASK, TraceError, detect_byteorder

TRACE_NET_PORT = 8462
NAME_SIZE = 32

# Meaning of the length field when it carries no data.
LEN_OPEN = 0
LEN_CLOSE = 1
LEN_ACK = 2

_LAYOUT = f"I{NAME_SIZE}s7I"
HEADER_SIZE = struct.calcsize("=" + _LAYOUT)
_ORDERS = {"little": "<", "big": ">"}


class ProtocolError(Exception):
    """Raised for malformed or truncated network headers."""


@dataclass
class NetHeader:
    """Header preceding every message; ``length`` is the size of following data."""

    buts_name: str = ""
    cpu: int = 0
    max_cpus: int = 0
    length: int = 0
    cl_id: int = field(default_factory=os.getpid)
    buf_size: int = 0
    buf_nr: int = 0
    page_size: int = 0
    magic: int = BLK_IO_TRACE_MAGIC

    def pack(self) -> bytes:
        """Serialise in native byte order; the name is cut to fit with a NUL."""
        name = self.buts_name.encode("utf-8")[: NAME_SIZE - 1]
        return struct.pack(
            "=" + _LAYOUT,
            self.magic,
            name,
            self.cpu,
            self.max_cpus,
            self.length,
            self.cl_id,
            self.buf_size,
            self.buf_nr,
            self.page_size,
        )

    @classmethod
    def unpack(cls, data: bytes) -> "NetHeader":
        """Decode a header in either byte order, checking its magic."""
        if len(data) != HEADER_SIZE:
            raise ProtocolError(f"header must be {HEADER_SIZE} bytes, got {len(data)}")
        try:
            order = detect_byteorder(data[:4])
        except TraceError as exc:
            raise ProtocolError("received data is bad") from exc
        (magic, raw_name, cpu, max_cpus, length, cl_id,
         buf_size, buf_nr, page_size) = struct.unpack(_ORDERS[order] + _LAYOUT, data)
        if magic & MAGIC_MASK != BLK_IO_TRACE_MAGIC:
            raise ProtocolError("bad data magic")
        name = raw_name.split(b"\0", 1)[0].decode("utf-8", errors="replace")
        return cls(
            buts_name=name,
            cpu=cpu,
            max_cpus=max_cpus,
            length=length,
            cl_id=cl_id,
            buf_size=buf_size,
            buf_nr=buf_nr,
            page_size=page_size,
            magic=magic,
        )


def recv_exact(sock: socket.socket, size: int) -> bytes:
    """Receive up to ``size`` bytes, stopping early only at end of stream."""
    chunks = []
    remaining = size
    while remaining:
        try:
            chunk = sock.recv(remaining)
        except BlockingIOError:
            time.sleep(50e-6)
            continue
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def send_header(sock: socket.socket, header: NetHeader) -> None:
    """Send one header in full."""
    sock.sendall(header.pack())


def recv_header(sock: socket.socket) -> Optional[NetHeader]:
    """Receive one header; None at a clean end of stream."""
    data = recv_exact(sock, HEADER_SIZE)
    if not data:
        return None
    if len(data) < HEADER_SIZE:
        raise ProtocolError(f"header read failed: {len(data)} of {HEADER_SIZE} bytes")
    return NetHeader.unpack(data)