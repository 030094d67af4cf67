from blktools.stats import CpuStats, DeviceStats, drop_warning, format_stats
from blktools.trace import TRACE_SIZE


def _report():
    dev = DeviceStats(
        "sda",
        [CpuStats(data_read=5 * TRACE_SIZE, nevents=0),
         CpuStats(data_read=3 * 1024, nevents=0 + 7),
         CpuStats()],
        drops=3,
    )
    return format_stats([dev]).splitlines()


def test_header_line():
    assert _report()[0] == "=== sda ==="


def test_estimated_events_from_data():
    tokens = _report()[1].split()
    assert tokens[:4] == ["CPU", "0:", "5", "events,"]


def test_counted_events_and_kib():
    tokens = _report()[2].split()
    assert tokens == ["CPU", "1:", "7", "events,", "3", "KiB", "data"]


def test_cpu_line_width_is_fixed():
    lines = _report()
    assert len({len(line) for line in lines[1:4]}) == 1


def test_total_line():
    total = _report()[4]
    assert total.startswith("  Total:  ")
    assert "events (dropped 3)," in total
    assert total.split()[1] == "12"
    assert total.split()[-3] == "4"


def test_multiple_devices_in_order():
    text = format_stats([DeviceStats("a", [CpuStats()]), DeviceStats("b", [CpuStats()])])
    headers = [line for line in text.splitlines() if line.startswith("===")]
    assert headers == ["=== a ===", "=== b ==="]


def test_format_does_not_mutate():
    cpu = CpuStats(data_read=2 * TRACE_SIZE)
    format_stats([DeviceStats("x", [cpu])])
    assert cpu.nevents == 0


def test_drop_warning_none_without_drops():
    assert drop_warning(0, 10) is None


def test_drop_warning_without_events():
    msg = drop_warning(5, 0)
    assert "You have 5 (100.0%) dropped events" in msg
    assert "Consider using a larger buffer size (-b) and/or more buffers (-n)" in msg


def test_drop_warning_ratio():
    assert "( 25.0%)" in drop_warning(1, 4)