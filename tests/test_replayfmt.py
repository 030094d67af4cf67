import io

import pytest

from blktools.replayfmt import (
    BT_MAX_PKTS,
    BUNCH_HDR_SIZE,
    CURRENT_VERSION,
    FILE_HDR_SIZE,
    PKT_SIZE,
    FileHeader,
    FormatError,
    IoBunch,
    IoPacket,
    get_btversion,
    mk_btversion,
    read_bunch,
    write_bunch,
)


def test_mk_btversion_layout():
    assert mk_btversion(1, 0, 0) == 0x10000


def test_version_round_trip():
    assert get_btversion(mk_btversion(1, 2, 3)) == (1, 2, 3)


def test_version_fields_are_masked():
    assert mk_btversion(0x101, 0x102, 0x103) == mk_btversion(1, 2, 3)


def test_current_version_matches_constants():
    assert get_btversion(CURRENT_VERSION) == (1, 0, 0)


def test_packet_size_and_round_trip():
    pkt = IoPacket(sector=123456, nbytes=4096, rw=1)
    data = pkt.pack()
    assert len(data) == 24
    assert IoPacket.unpack(data) == pkt


def test_packet_unpack_wrong_size():
    with pytest.raises(FormatError):
        IoPacket.unpack(b"\0" * (PKT_SIZE - 1))


def test_file_header_round_trip():
    hdr = FileHeader(genesis=99, nbunches=7, total_pkts=21)
    data = hdr.pack()
    assert len(data) == 32
    back = FileHeader.unpack(data)
    assert back == hdr
    assert back.version == CURRENT_VERSION


def test_file_header_unpack_wrong_size():
    with pytest.raises(FormatError):
        FileHeader.unpack(b"\0" * (FILE_HDR_SIZE + 1))


def test_bunch_round_trip():
    bunches = [
        IoBunch(1000, [IoPacket(8, 512, 1), IoPacket(16, 1024, 0)]),
        IoBunch(2000, [IoPacket(32, 4096, 1)]),
    ]
    buf = io.BytesIO()
    for bunch in bunches:
        write_bunch(buf, bunch)
    assert len(buf.getvalue()) == 2 * BUNCH_HDR_SIZE + 3 * PKT_SIZE
    buf.seek(0)
    assert read_bunch(buf) == bunches[0]
    assert read_bunch(buf) == bunches[1]
    assert read_bunch(buf) is None


def test_read_bunch_empty_stream():
    assert read_bunch(io.BytesIO(b"")) is None


def test_read_bunch_short_header():
    with pytest.raises(FormatError):
        read_bunch(io.BytesIO(b"\0" * (BUNCH_HDR_SIZE - 3)))


def test_read_bunch_short_packets():
    buf = io.BytesIO()
    write_bunch(buf, IoBunch(5, [IoPacket(1, 512, 1), IoPacket(2, 512, 1)]))
    truncated = buf.getvalue()[:-1]
    with pytest.raises(FormatError):
        read_bunch(io.BytesIO(truncated))


def test_read_bunch_too_many_packets():
    import struct

    raw = struct.pack("=QQ", BT_MAX_PKTS + 1, 0)
    with pytest.raises(FormatError):
        read_bunch(io.BytesIO(raw))


def test_write_empty_bunch_rejected():
    with pytest.raises(FormatError):
        write_bunch(io.BytesIO(), IoBunch(0, []))


def test_write_oversized_bunch_rejected():
    bunch = IoBunch(0, [IoPacket(i, 512, 1) for i in range(BT_MAX_PKTS + 1)])
    with pytest.raises(FormatError):
        write_bunch(io.BytesIO(), bunch)


def test_bunch_npkts():
    bunch = IoBunch(3, [IoPacket(1, 2, 0), IoPacket(3, 4, 1)])
    assert bunch.npkts == len(bunch.pkts)