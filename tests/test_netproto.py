import socket
import struct

import pytest

from blktools.netproto import (
    HEADER_SIZE,
    LEN_CLOSE,
    NAME_SIZE,
    NetHeader,
    ProtocolError,
    recv_exact,
    recv_header,
    send_header,
)
from blktools.trace import BLK_IO_TRACE_MAGIC


def _header(**kw):
    base = dict(buts_name="sda", cpu=3, max_cpus=8, length=4096, cl_id=42,
                buf_size=512 * 1024, buf_nr=4, page_size=4096)
    base.update(kw)
    return NetHeader(**base)


def test_pack_size_and_round_trip():
    hdr = _header()
    data = hdr.pack()
    assert len(data) == HEADER_SIZE
    assert NetHeader.unpack(data) == hdr


def test_unpack_foreign_byte_order():
    name = b"sdb".ljust(NAME_SIZE, b"\0")
    data = struct.pack(">I32s7I", BLK_IO_TRACE_MAGIC, name, 1, 2, 3, 4, 5, 6, 7)
    hdr = NetHeader.unpack(data)
    assert (hdr.buts_name, hdr.cpu, hdr.max_cpus, hdr.length) == ("sdb", 1, 2, 3)
    assert (hdr.cl_id, hdr.buf_size, hdr.buf_nr, hdr.page_size) == (4, 5, 6, 7)


def test_long_name_truncated():
    hdr = NetHeader.unpack(_header(buts_name="x" * 40).pack())
    assert hdr.buts_name == "x" * 31


def test_bad_magic():
    data = _header(magic=0xDEADBEEF).pack()
    with pytest.raises(ProtocolError):
        NetHeader.unpack(data)


def test_wrong_size():
    with pytest.raises(ProtocolError):
        NetHeader.unpack(_header().pack()[:-1])


def test_send_and_receive_header():
    a, b = socket.socketpair()
    with a, b:
        send_header(a, _header(length=LEN_CLOSE, cpu=17))
        got = recv_header(b)
    assert got == _header(length=LEN_CLOSE, cpu=17)


def test_recv_header_eof():
    a, b = socket.socketpair()
    with b:
        a.close()
        assert recv_header(b) is None


def test_recv_header_partial():
    a, b = socket.socketpair()
    with b:
        a.sendall(_header().pack()[:10])
        a.close()
        with pytest.raises(ProtocolError):
            recv_header(b)


def test_recv_exact_short_at_eof():
    a, b = socket.socketpair()
    with b:
        a.sendall(b"hello")
        a.close()
        assert recv_exact(b, 100) == b"hello"