import pytest

from blktools.replayfmt import FILE_HDR_SIZE, FileHeader, mk_btversion
from blktools.replaysetup import (
    DeviceMap,
    ReplayConfig,
    ReplayError,
    device_path,
    find_input_devices,
    find_input_files,
    load_replay_input,
    parse_args,
)


def _write_record(path, **fields):
    path.write_bytes(FileHeader(**fields).pack())
    return path


def test_device_map_load_and_map(tmp_path):
    mapfile = tmp_path / "maps"
    mapfile.write_text("sda sdb\nsdc   sdd\nlonely\n")
    dmap = DeviceMap()
    dmap.load(str(mapfile))
    assert len(dmap) == 2
    assert dmap.map("sda") == "sdb"
    assert dmap.map("sdc") == "sdd"
    assert dmap.map("lonely") == "lonely"


def test_device_map_first_match_wins(tmp_path):
    mapfile = tmp_path / "maps"
    mapfile.write_text("sda one sda two")
    dmap = DeviceMap()
    dmap.load(str(mapfile))
    assert dmap.map("sda") == "one"


def test_device_map_missing_file(tmp_path):
    with pytest.raises(ReplayError) as info:
        DeviceMap().load(str(tmp_path / "nope"))
    assert info.value.exit_code == 2


def test_device_path_restores_slashes():
    assert device_path("cciss_c0d0") == "/dev/cciss/c0d0"
    assert device_path("sda") == "/dev/sda"


def test_find_input_devices(tmp_path):
    for name in ("sda.replay.0", "sda.replay.1", "sdb.replay.0", "sdc.blktrace.0"):
        (tmp_path / name).write_bytes(b"")
    assert find_input_devices(str(tmp_path)) == ["sda", "sdb"]


def test_find_input_devices_missing_dir(tmp_path):
    with pytest.raises(ReplayError):
        find_input_devices(str(tmp_path / "missing"))


def test_load_replay_input_reads_header(tmp_path):
    path = _write_record(tmp_path / "sda.replay.3", genesis=77, nbunches=2, total_pkts=5)
    config = ReplayConfig(ncpus=4, cpus_to_use=2, iterations=3)
    result = load_replay_input(str(path), "sda", 3, config)
    assert result.genesis == 77
    assert result.header.total_pkts == 5
    assert result.cpu == 3 % 2
    assert result.iterations == 3
    assert result.devnm == "sda"


def test_load_replay_input_empty_file(tmp_path):
    path = tmp_path / "sda.replay.0"
    path.write_bytes(b"\0" * (FILE_HDR_SIZE - 1))
    assert load_replay_input(str(path), "sda", 0, ReplayConfig(ncpus=1)) is None


def test_load_replay_input_no_bunches(tmp_path):
    path = _write_record(tmp_path / "sda.replay.0", nbunches=0)
    assert load_replay_input(str(path), "sda", 0, ReplayConfig(ncpus=1)) is None


def test_load_replay_input_version_mismatch(tmp_path):
    path = _write_record(tmp_path / "sda.replay.0", version=mk_btversion(2, 0, 0), nbunches=1)
    with pytest.raises(ReplayError, match="version mismatch"):
        load_replay_input(str(path), "sda", 0, ReplayConfig(ncpus=1))


def test_load_replay_input_cpu_out_of_range(tmp_path):
    path = _write_record(tmp_path / "sda.replay.5", nbunches=1)
    with pytest.raises(ReplayError):
        load_replay_input(str(path), "sda", 5, ReplayConfig(ncpus=2))


def test_find_input_files_skips_empty(tmp_path):
    _write_record(tmp_path / "sda.replay.0", genesis=10, nbunches=1)
    _write_record(tmp_path / "sda.replay.1", nbunches=0)
    _write_record(tmp_path / "sda.replay.2", genesis=20, nbunches=1)
    config = ReplayConfig(ncpus=4, idir=str(tmp_path))
    inputs = find_input_files(["sda", "sda"], config)
    assert [(i.devnm, i.cpu, i.genesis) for i in inputs] == [("sda", 0, 10), ("sda", 2, 20)]


def test_find_input_files_no_traces(tmp_path):
    config = ReplayConfig(ncpus=1, idir=str(tmp_path))
    with pytest.raises(ReplayError, match="No traces found for sdz"):
        find_input_files(["sdz"], config)


def test_parse_args_defaults(tmp_path):
    config = parse_args(["-d", str(tmp_path), "sda"], 4)
    assert config.devices == ["sda"]
    assert config.cpus_to_use == 4
    assert config.iterations == 1
    assert config.acc_factor == 1
    assert config.ibase == "replay"
    assert not config.write_enabled


def test_parse_args_options(tmp_path):
    mapfile = tmp_path / "maps"
    mapfile.write_text("sda sdq\n")
    config = parse_args(
        ["-c", "2", "-d", str(tmp_path), "-I", "3", "-M", str(mapfile), "-N", "-x", "4",
         "-W", "-v", "-v", "-i", "base", "sda", "sda", "sdb"],
        4,
    )
    assert config.cpus_to_use == 2
    assert config.iterations == 3
    assert config.device_map.map("sda") == "sdq"
    assert config.no_stalls
    assert config.acc_factor == 4
    assert config.write_enabled
    assert config.verbose == 2
    assert config.ibase == "base"
    assert config.devices == ["sda", "sdb"]


@pytest.mark.parametrize("cpus", ["0", "5", "-1"])
def test_parse_args_bad_cpus(tmp_path, cpus):
    with pytest.raises(ReplayError, match="Invalid number of cpus"):
        parse_args(["-d", str(tmp_path), "-c", cpus, "sda"], 4)


def test_parse_args_bad_iterations(tmp_path):
    with pytest.raises(ReplayError, match="iterations"):
        parse_args(["-d", str(tmp_path), "-I", "0", "sda"], 1)


def test_parse_args_bad_acc_factor(tmp_path):
    with pytest.raises(ReplayError, match="acceleration"):
        parse_args(["-d", str(tmp_path), "-x", "fast", "sda"], 1)


def test_parse_args_missing_devices(tmp_path):
    with pytest.raises(ReplayError, match="Missing required input dev"):
        parse_args(["-d", str(tmp_path)], 1)


def test_parse_args_bad_directory(tmp_path):
    with pytest.raises(ReplayError, match="Invalid input directory"):
        parse_args(["-d", str(tmp_path / "missing"), "sda"], 1)


def test_parse_args_unhandled_option(tmp_path):
    with pytest.raises(ReplayError) as info:
        parse_args(["-d", str(tmp_path), "-t", "1", "sda"], 1)
    assert info.value.exit_code == 1


def test_parse_args_find_records(tmp_path):
    (tmp_path / "sdf.replay.0").write_bytes(b"")
    config = parse_args(["-F", "-d", str(tmp_path)], 1)
    assert config.devices == ["sdf"]


def test_parse_args_version(tmp_path, capsys):
    with pytest.raises(SystemExit) as info:
        parse_args(["-V"], 1)
    assert info.value.code == 0
    assert "btreplay -- version 1.0.0" in capsys.readouterr().err