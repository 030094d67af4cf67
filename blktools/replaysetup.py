"""Replay set-up: options, device maps and discovery of record files."""

from __future__ import annotations

import argparse
import itertools
import logging
import os
import re
import sys
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

from blktools.replayfmt import BTVERSION, CURRENT_VERSION, FILE_HDR_SIZE, FileHeader

logger = logging.getLogger(__name__)

ERR_ARGS = 1
ERR_SYSCALL = 2

USAGE = (
    "\n"
    "\t[ -c <cpus> : --cpus=<cpus>           ] Default: 1\n"
    "\t[ -d <dir>  : --input-directory=<dir> ] Default: .\n"
    "\t[ -F        : --find-records          ] Default: Off\n"
    "\t[ -h        : --help                  ] Default: Off\n"
    "\t[ -i <base> : --input-base=<base>     ] Default: replay\n"
    "\t[ -I <iters>: --iterations=<iters>    ] Default: 1\n"
    "\t[ -M <file> : --map-devs=<file>       ] Default: None\n"
    "\t[ -N        : --no-stalls             ] Default: Off\n"
    "\t[ -x        : --acc-factor            ] Default: 1\n"
    "\t[ -v        : --verbose               ] Default: Off\n"
    "\t[ -V        : --version               ] Default: Off\n"
    "\t[ -W        : --write-enable          ] Default: Off\n"
    "\t<dev...>                                Default: None\n"
    "\n"
)


class ReplayError(Exception):
    """A fatal replay error; ``exit_code`` is the process status to use."""

    def __init__(self, message: str, exit_code: int = ERR_ARGS) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class DeviceMap:
    """Mapping from device names on the recording system to replay devices."""

    def __init__(self) -> None:
        self._maps: List[Tuple[str, str]] = []

    def __len__(self) -> int:
        return len(self._maps)

    def load(self, path: str) -> None:
        """Add the whitespace-separated (from, to) pairs found in a file."""
        try:
            with open(path) as fp:
                tokens = fp.read().split()
        except OSError as exc:
            raise ReplayError(f"{path}: Could not open map devs file", ERR_SYSCALL) from exc
        self._maps.extend(zip(tokens[0::2], tokens[1::2]))

    def map(self, devnm: str) -> str:
        """The replay device for ``devnm``; the name itself when unmapped."""
        for from_dev, to_dev in self._maps:
            if from_dev == devnm:
                return to_dev
        return devnm


def device_path(devnm: str) -> str:
    """Device node for a name, with underscores restored to path separators."""
    return "/dev/" + devnm.replace("_", "/")


def find_input_devices(idir: str) -> List[str]:
    """Names of devices that have record files in a directory."""
    try:
        names = sorted(os.listdir(idir))
    except OSError as exc:
        raise ReplayError(f"{idir}: Unable to open {idir}", ERR_ARGS) from exc
    devices: List[str] = []
    for name in names:
        if ".replay." not in name:
            continue
        devnm = name.split(".", 1)[0]
        if devnm not in devices:
            devices.append(devnm)
    return devices


@dataclass
class ReplayConfig:
    """Settings for one replay run."""

    ncpus: int = field(default_factory=lambda: os.cpu_count() or 1)
    cpus_to_use: Optional[int] = None
    idir: str = "."
    ibase: str = "replay"
    iterations: int = 1
    device_map: DeviceMap = field(default_factory=DeviceMap)
    no_stalls: bool = False
    acc_factor: int = 1
    verbose: int = 0
    write_enabled: bool = False
    find_records: bool = False
    devices: List[str] = field(default_factory=list)

    @property
    def worker_cpus(self) -> int:
        """Number of CPUs that replay workers are spread over."""
        return self.cpus_to_use or self.ncpus


@dataclass
class ReplayInput:
    """A non-empty record file to be replayed by one worker."""

    devnm: str
    path: str
    cpu: int
    header: FileHeader
    iterations: int = 1

    @property
    def genesis(self) -> int:
        return self.header.genesis


def load_replay_input(
    path: str, devnm: str, cpu: int, config: ReplayConfig
) -> Optional[ReplayInput]:
    """Check a record file's header; None when the file holds no bunches."""
    if not 0 <= cpu < config.ncpus:
        raise ReplayError(f"{path}: CPU {cpu} out of range (0..{config.ncpus - 1})", ERR_ARGS)
    try:
        fp = open(path, "rb")
    except OSError as exc:
        raise ReplayError(f"{path}: Unable to open", ERR_ARGS) from exc
    with fp:
        try:
            size = os.fstat(fp.fileno()).st_size
        except OSError as exc:
            raise ReplayError(f"{path}: fstat failed", ERR_SYSCALL) from exc
        if size < FILE_HDR_SIZE:
            logger.info("\t%s empty", path)
            return None
        raw = fp.read(FILE_HDR_SIZE)
    if len(raw) != FILE_HDR_SIZE:
        raise ReplayError(f"{path}: Header read failed", ERR_ARGS)
    header = FileHeader.unpack(raw)
    if header.version != CURRENT_VERSION:
        logger.error(
            "%x %x %x %x", header.version, header.genesis, header.nbunches, header.total_pkts
        )
        raise ReplayError(
            f"BT version mismatch: {header.version:x} versus my {CURRENT_VERSION:x}", ERR_ARGS
        )
    if header.nbunches == 0:
        return None
    logger.info("Added %s %d", path, header.genesis)
    return ReplayInput(
        devnm=devnm,
        path=path,
        cpu=cpu % config.worker_cpus,
        header=header,
        iterations=config.iterations,
    )


def find_input_files(devnames: Iterable[str], config: ReplayConfig) -> List[ReplayInput]:
    """Per-CPU record files of each device that hold something to replay."""
    inputs: List[ReplayInput] = []
    seen: List[str] = []
    for devnm in devnames:
        if devnm in seen:
            continue
        seen.append(devnm)
        found = 0
        for cpu in itertools.count():
            path = os.path.join(config.idir, f"{devnm}.{config.ibase}.{cpu}")
            if not os.access(path, os.R_OK):
                break
            found += 1
            replay_input = load_replay_input(path, devnm, cpu, config)
            if replay_input is not None:
                inputs.append(replay_input)
        if not found:
            raise ReplayError(f"No traces found for {devnm}", ERR_ARGS)
    return inputs


def _usage() -> str:
    return f"Usage: btreplay -- version {BTVERSION}\n{USAGE}"


class _Parser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # type: ignore[override]
        sys.stderr.write(_usage())
        raise ReplayError(f"Invalid command line argument: {message}", ERR_ARGS)


class _PrintAndExit(argparse.Action):
    def __init__(self, option_strings, dest, text_factory, **kwargs):
        super().__init__(option_strings, dest, nargs=0, **kwargs)
        self.text_factory = text_factory

    def __call__(self, parser, namespace, values, option_string=None):
        sys.stderr.write(self.text_factory())
        raise SystemExit(0)


_INT = re.compile(r"\s*([+-]?\d+)")
_UNSIGNED = re.compile(r"\s*([+-]?)(\d+)")


def _atoi(text: str) -> int:
    match = _INT.match(text)
    return int(match.group(1)) if match else 0


def _scan_unsigned(text: str) -> Optional[int]:
    match = _UNSIGNED.match(text)
    if not match:
        return None
    value = int(match.group(2))
    if match.group(1) == "-":
        value = -value
    return value & 0xFFFFFFFF


def parse_args(argv: List[str], ncpus: int) -> ReplayConfig:
    """Build a replay configuration from command-line arguments."""
    parser = _Parser(prog="btreplay", add_help=False)
    parser.add_argument("-c", "--cpus", dest="cpus", default=None)
    parser.add_argument("-d", "--input-directory", dest="idir", default=".")
    parser.add_argument("-F", "--find-records", dest="find_records", action="store_true")
    parser.add_argument("-h", "--help", action=_PrintAndExit, text_factory=_usage)
    parser.add_argument("-i", "--input-base", dest="ibase", default="replay")
    parser.add_argument("-I", "--iterations", dest="iterations", default=None)
    parser.add_argument("-M", "--map-devs", dest="map_files", action="append", default=[])
    parser.add_argument("-N", "--no-stalls", dest="no_stalls", action="store_true")
    parser.add_argument("-x", "--acc-factor", dest="acc_factor", default=None)
    parser.add_argument("-v", "--verbose", dest="verbose", action="count", default=0)
    parser.add_argument(
        "-V", "--version", action=_PrintAndExit,
        text_factory=lambda: f"btreplay -- version {BTVERSION}\n",
    )
    parser.add_argument("-W", "--write-enable", dest="write_enabled", action="store_true")
    parser.add_argument("devices", nargs="*")
    ns = parser.parse_intermixed_args(argv)

    config = ReplayConfig(
        ncpus=ncpus,
        idir=ns.idir,
        ibase=ns.ibase,
        no_stalls=ns.no_stalls,
        verbose=ns.verbose,
        write_enabled=ns.write_enabled,
        find_records=ns.find_records,
    )

    if ns.cpus is not None:
        cpus = _atoi(ns.cpus)
        if cpus <= 0 or cpus > ncpus:
            raise ReplayError(f"Invalid number of cpus {cpus} (0<x<{ncpus})", ERR_ARGS)
        config.cpus_to_use = cpus
    if not os.access(ns.idir, os.R_OK | os.X_OK):
        raise ReplayError(f"{ns.idir}: Invalid input directory specified", ERR_ARGS)
    if ns.iterations is not None:
        iterations = _atoi(ns.iterations)
        if iterations <= 0:
            raise ReplayError(f"Invalid number of iterations {iterations}", ERR_ARGS)
        config.iterations = iterations
    for map_file in ns.map_files:
        config.device_map.load(map_file)
    if ns.acc_factor is not None:
        factor = _scan_unsigned(ns.acc_factor)
        if factor is None:
            raise ReplayError("Invalid acceleration factor", ERR_ARGS)
        config.acc_factor = factor

    devices: List[str] = []
    for devnm in ns.devices:
        if devnm not in devices:
            devices.append(devnm)
    if config.find_records:
        for devnm in find_input_devices(config.idir):
            if devnm not in devices:
                devices.append(devnm)
    if not devices:
        raise ReplayError("Missing required input dev name(s)", ERR_ARGS)
    config.devices = devices

    if config.cpus_to_use is None:
        config.cpus_to_use = ncpus
    return config