import threading

import pytest

from blktools.replayer import Replayer, main
from blktools.replayfmt import FileHeader, IoBunch, IoPacket, write_bunch
from blktools.replaysetup import ReplayConfig, ReplayError, find_input_files

FILL = b"\xff"


def write_record(path, bunches, genesis):
    with open(path, "wb") as fp:
        fp.write(
            FileHeader(
                genesis=genesis,
                nbunches=len(bunches),
                total_pkts=sum(b.npkts for b in bunches),
            ).pack()
        )
        for bunch in bunches:
            write_bunch(fp, bunch)


@pytest.fixture
def disk(tmp_path):
    path = tmp_path / "disk.img"
    path.write_bytes(FILL * 8192)
    return path


def make_config(tmp_path, **kwargs):
    kwargs.setdefault("ncpus", 1)
    kwargs.setdefault("no_stalls", True)
    return ReplayConfig(idir=str(tmp_path), **kwargs)


def test_reads_are_replayed_each_iteration(tmp_path, disk):
    bunches = [
        IoBunch(100, [IoPacket(0, 512, 1), IoPacket(1, 512, 1)]),
        IoBunch(200, [IoPacket(4, 1024, 1)]),
    ]
    write_record(tmp_path / "sda.replay.0", bunches, 100)
    config = make_config(tmp_path, iterations=2)
    inputs = find_input_files(["sda"], config)
    replayer = Replayer(config, inputs, device_paths={"sda": str(disk)}, direct=False)
    assert replayer.run() == 2 * 3
    assert replayer.iterations_done == 2
    assert disk.read_bytes() == FILL * 8192


def test_writes_become_reads_unless_enabled(tmp_path, disk):
    write_record(tmp_path / "sda.replay.0", [IoBunch(5, [IoPacket(2, 1024, 0)])], 5)
    config = make_config(tmp_path)
    inputs = find_input_files(["sda"], config)
    Replayer(config, inputs, device_paths={"sda": str(disk)}, direct=False).run()
    assert disk.read_bytes() == FILL * 8192


def test_enabled_writes_reach_the_device(tmp_path, disk):
    write_record(tmp_path / "sda.replay.0", [IoBunch(5, [IoPacket(2, 1024, 0)])], 5)
    config = make_config(tmp_path, write_enabled=True)
    inputs = find_input_files(["sda"], config)
    total = Replayer(config, inputs, device_paths={"sda": str(disk)}, direct=False).run()
    data = disk.read_bytes()
    assert total == 1
    assert data[1024:2048] == b"\0" * 1024
    assert data[:1024] == FILL * 1024
    assert data[2048:] == FILL * (8192 - 2048)


def test_stalls_with_timestamps_near_genesis(tmp_path, disk):
    bunches = [IoBunch(1000, [IoPacket(0, 512, 1)]), IoBunch(2000, [IoPacket(1, 512, 1)])]
    write_record(tmp_path / "sda.replay.0", bunches, 1000)
    config = make_config(tmp_path, no_stalls=False)
    inputs = find_input_files(["sda"], config)
    total = Replayer(config, inputs, device_paths={"sda": str(disk)}, direct=False).run()
    assert total == len(bunches)


def test_genesis_is_earliest_over_inputs(tmp_path, disk):
    write_record(tmp_path / "sda.replay.0", [IoBunch(500, [IoPacket(0, 512, 1)])], 500)
    write_record(tmp_path / "sda.replay.1", [IoBunch(200, [IoPacket(0, 512, 1)])], 200)
    config = make_config(tmp_path, ncpus=2)
    inputs = find_input_files(["sda"], config)
    replayer = Replayer(config, inputs, device_paths={"sda": str(disk)}, direct=False)
    assert replayer.genesis == 200
    assert replayer.run() == 2


def test_stop_event_prevents_replay(tmp_path, disk):
    write_record(tmp_path / "sda.replay.0", [IoBunch(5, [IoPacket(0, 512, 1)])], 5)
    config = make_config(tmp_path, iterations=3)
    inputs = find_input_files(["sda"], config)
    stop = threading.Event()
    stop.set()
    replayer = Replayer(
        config, inputs, device_paths={"sda": str(disk)}, direct=False, stop_event=stop
    )
    assert replayer.run() == 0
    assert replayer.iterations_done == 0


def test_no_inputs_does_nothing(tmp_path):
    replayer = Replayer(make_config(tmp_path), [])
    assert replayer.run() == 0
    assert replayer.genesis == 0


def test_bad_packet_size_raises(tmp_path, disk):
    write_record(tmp_path / "sda.replay.0", [IoBunch(5, [IoPacket(0, 100, 1)])], 5)
    config = make_config(tmp_path)
    inputs = find_input_files(["sda"], config)
    replayer = Replayer(config, inputs, device_paths={"sda": str(disk)}, direct=False)
    with pytest.raises(ReplayError):
        replayer.run()


def test_verbose_progress_marks_iterations(tmp_path, disk):
    import io

    write_record(tmp_path / "sda.replay.0", [IoBunch(5, [IoPacket(0, 512, 1)])], 5)
    config = make_config(tmp_path, iterations=2, verbose=1)
    inputs = find_input_files(["sda"], config)
    out = io.StringIO()
    Replayer(
        config, inputs, device_paths={"sda": str(disk)}, direct=False, progress=out
    ).run()
    assert out.getvalue() == "II\n"


def test_main_without_devices_fails(tmp_path):
    assert main(["-d", str(tmp_path)]) == 1


def test_main_invalid_cpu_count(tmp_path):
    assert main(["-d", str(tmp_path), "-c", "0", "sda"]) == 1


def test_main_device_open_failure(tmp_path):
    write_record(tmp_path / "sda.replay.0", [IoBunch(5, [IoPacket(0, 512, 1)])], 5)
    map_file = tmp_path / "map.txt"
    map_file.write_text("sda no_such_blk_dev\n")
    assert main(["-d", str(tmp_path), "-M", str(map_file), "sda"]) == 2