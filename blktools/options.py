"""Command-line options of the block trace collector."""

from __future__ import annotations

import argparse
import enum
import os
import re
import sys
from dataclasses import dataclass, field
from typing import List, Optional

from blktools.netproto import TRACE_NET_PORT

VERSION = "2.0.0"
PROG = "blktrace"

BUF_SIZE = 512 * 1024
BUF_NR = 4
MAX_BUF_KIB = 16 * 1024
DEFAULT_DEBUGFS = "/sys/kernel/debug"
MAXHOSTNAMELEN = 64
ALL_ACTIONS = 0xFFFFFFFF

USAGE = (
    "\n\n"
    "-d <dev>             | --dev=<dev>\n"
    "[ -r <debugfs path>  | --relay=<debugfs path> ]\n"
    "[ -o <file>          | --output=<file>]\n"
    "[ -D <dir>           | --output-dir=<dir>\n"
    "[ -w <time>          | --stopwatch=<time>]\n"
    "[ -A <action mask>   | --set-mask=<action mask>]\n"
    "[ -b <size>          | --buffer-size]\n"
    "[ -n <number>        | --num-sub-buffers=<number>]\n"
    "[ -l                 | --listen]\n"
    "[ -h <hostname>      | --host=<hostname>]\n"
    "[ -p <port number>   | --port=<port number>]\n"
    "[ -s                 | --no-sendfile]\n"
    "[ -I <devs file>     | --input-devs=<devs file>]\n"
    "[ -v <version>       | --version]\n"
    "[ -V <version>       | --version]\n"
    "\t-d Use specified device. May also be given last after options\n"
    "\t-r Path to mounted debugfs, defaults to /sys/kernel/debug\n"
    "\t-o File(s) to send output to\n"
    "\t-D Directory to prepend to output file names\n"
    "\t-w Stop after defined time, in seconds\n"
    "\t-A Give trace mask as a single value. See documentation\n"
    "\t-b Sub buffer size in KiB (default 512)\n"
    "\t-n Number of sub buffers (default 4)\n"
    "\t-l Run in network listen mode (blktrace server)\n"
    "\t-h Run in network client mode, connecting to the given host\n"
    "\t-p Network port to use (default 8462)\n"
    "\t-s Make the network client NOT use sendfile() to transfer data\n"
    "\t-I Add devices found in <devs file>\n"
    "\t-v Print program version info\n"
    "\t-V Print program version info\n\n"
)


class OptionsError(Exception):
    """Raised for invalid command-line options."""


class NetMode(enum.Enum):
    """Whether the collector works locally, as a server or as a client."""

    NONE = 0
    SERVER = 1
    CLIENT = 2


@dataclass
class TraceOptions:
    """Everything the collector needs to know to run."""

    devices: List[str] = field(default_factory=list)
    debugfs_path: str = DEFAULT_DEBUGFS
    output_name: Optional[str] = None
    output_dir: Optional[str] = None
    act_mask: int = ALL_ACTIONS
    kill_running_trace: bool = False
    stop_watch: int = 0
    buf_size: int = BUF_SIZE
    buf_nr: int = BUF_NR
    net_mode: NetMode = NetMode.NONE
    hostname: str = ""
    net_port: int = TRACE_NET_PORT
    net_use_sendfile: bool = True

    @property
    def use_sendfile(self) -> bool:
        """Client mode sending trace files straight from the kernel buffers."""
        return self.net_mode is NetMode.CLIENT and self.net_use_sendfile

    @property
    def use_send(self) -> bool:
        """Client mode sending buffers that were read into memory first."""
        return self.net_mode is NetMode.CLIENT and not self.net_use_sendfile

    @property
    def piped_output(self) -> bool:
        """Traces go to standard output."""
        return self.net_mode is not NetMode.CLIENT and self.output_name == "-"

    @property
    def use_tracer_devpaths(self) -> bool:
        """Tracers hand buffers to a central collector rather than writing files."""
        return self.piped_output or self.use_send


def usage(prog: str = PROG) -> str:
    """The usage text."""
    return f"Usage: {prog} {USAGE}"


class _Parser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # type: ignore[override]
        sys.stderr.write(usage(self.prog))
        raise OptionsError(message)


class _Version(argparse.Action):
    def __init__(self, option_strings, dest, **kwargs):
        super().__init__(option_strings, dest, nargs=0, **kwargs)

    def __call__(self, parser, namespace, values, option_string=None):
        print(f"{parser.prog} version {VERSION}")
        raise SystemExit(0)


_INT = re.compile(r"\s*([+-]?\d+)")
_UNSIGNED = re.compile(r"\s*([+-]?)(\d+)")
_HEX = re.compile(r"\s*([+-]?)(?:0[xX])?([0-9a-fA-F]+)")


def _atoi(text: str) -> int:
    match = _INT.match(text)
    return int(match.group(1)) if match else 0


def _strtoul(text: str) -> int:
    match = _UNSIGNED.match(text)
    if not match:
        return 0
    value = int(match.group(2))
    if match.group(1) == "-":
        value = (-value) & 0xFFFFFFFFFFFFFFFF
    return value


def _scan_hex(text: str) -> Optional[int]:
    match = _HEX.match(text)
    if not match:
        return None
    value = int(match.group(2), 16)
    if match.group(1) == "-":
        value = -value
    return value & 0xFFFFFFFF


def _read_device_file(path: str) -> List[str]:
    try:
        with open(path) as fp:
            return fp.read().split()
    except OSError as exc:
        raise OptionsError(f"Invalid file for devices {path}") from exc


def parse_args(argv: List[str]) -> TraceOptions:
    """Build collector options from command-line arguments."""
    parser = _Parser(prog=PROG, add_help=False)
    parser.add_argument("-d", "--dev", dest="devspecs", action="append", default=[],
                        type=lambda v: ("dev", v))
    parser.add_argument("-I", "--input-devs", dest="devspecs", action="append",
                        type=lambda v: ("file", v))
    parser.add_argument("-A", "--set-mask", dest="set_masks", action="append", default=[])
    parser.add_argument("-r", "--relay", dest="debugfs_path", default=DEFAULT_DEBUGFS)
    parser.add_argument("-o", "--output", dest="output_name", default=None)
    parser.add_argument("-k", "--kill", dest="kill", action="store_true")
    parser.add_argument("-w", "--stopwatch", dest="stop_watch", default=None)
    parser.add_argument("-v", "--version", action=_Version)
    parser.add_argument("-V", action=_Version)
    parser.add_argument("-b", "--buffer-size", dest="buf_size", default=None)
    parser.add_argument("-n", "--num-sub-buffers", dest="buf_nr", default=None)
    parser.add_argument("-D", "--output-dir", dest="output_dir", default=None)
    parser.add_argument("-l", "--listen", dest="modes", action="append_const",
                        const=NetMode.SERVER)
    parser.add_argument("-h", "--host", dest="hosts", action="append", default=[])
    parser.add_argument("-p", "--port", dest="port", default=None)
    parser.add_argument("-s", "--no-sendfile", dest="no_sendfile", action="store_true")
    parser.add_argument("devices", nargs="*")
    ns = parser.parse_intermixed_args(argv)

    options = TraceOptions(
        debugfs_path=ns.debugfs_path,
        output_name=ns.output_name,
        output_dir=ns.output_dir,
        kill_running_trace=ns.kill,
        net_use_sendfile=not ns.no_sendfile,
    )

    act_mask = 0
    for text in ns.set_masks:
        value = _scan_hex(text)
        if value is None:
            raise OptionsError(f"Invalid set action mask {text}/0x0")
        act_mask = value
    if act_mask:
        options.act_mask = act_mask

    if ns.stop_watch is not None:
        options.stop_watch = _atoi(ns.stop_watch)
        if options.stop_watch <= 0:
            raise OptionsError(f"Invalid stopwatch value ({options.stop_watch} secs)")

    if ns.buf_size is not None:
        kib = _strtoul(ns.buf_size)
        if kib <= 0 or kib > MAX_BUF_KIB:
            raise OptionsError(f"Invalid buffer size ({kib})")
        options.buf_size = kib << 10

    if ns.buf_nr is not None:
        options.buf_nr = _strtoul(ns.buf_nr)
        if options.buf_nr <= 0:
            raise OptionsError(f"Invalid buffer nr ({options.buf_nr})")

    # The last of -l and -h given decides the mode.
    mode_order = []
    for arg in argv:
        if arg in ("-l", "--listen"):
            mode_order.append(NetMode.SERVER)
        elif arg in ("-h", "--host") or arg.startswith("--host=") or (
            arg.startswith("-h") and len(arg) > 2
        ):
            mode_order.append(NetMode.CLIENT)
    if ns.hosts:
        options.hostname = ns.hosts[-1][: MAXHOSTNAMELEN - 1]
    if mode_order:
        options.net_mode = mode_order[-1]
    elif ns.modes:
        options.net_mode = NetMode.SERVER
    elif ns.hosts:
        options.net_mode = NetMode.CLIENT

    if ns.port is not None:
        options.net_port = _atoi(ns.port)

    devices: List[str] = []
    sources = [spec for spec in ns.devspecs]
    for kind, value in sources:
        names = [value] if kind == "dev" else _read_device_file(value)
        for name in names:
            if name not in devices:
                devices.append(name)
    for name in ns.devices:
        if name not in devices:
            devices.append(name)
    options.devices = devices

    if options.net_mode is not NetMode.SERVER and not devices:
        raise OptionsError(usage(PROG))

    if len(devices) > 1 and options.output_name and options.output_name != "-":
        raise OptionsError("-o not supported with multiple devices")

    return options


def output_filename(
    options: TraceOptions, buts_name: str, cpu: int, subdir: Optional[str] = None
) -> str:
    """Path of the per-CPU output file, creating its directory if needed."""
    directory = f"{options.output_dir}/" if options.output_dir else "./"
    if subdir:
        directory += subdir
    try:
        os.stat(directory)
    except FileNotFoundError:
        try:
            os.mkdir(directory, 0o755)
        except FileExistsError:
            pass
        except OSError as exc:
            raise OptionsError(
                f"Destination dir {directory} can't be made: {exc.errno}/{exc.strerror}"
            ) from exc
    except OSError as exc:
        raise OptionsError(
            f"Destination dir {directory} stat failed: {exc.errno}/{exc.strerror}"
        ) from exc
    name = options.output_name or buts_name
    return f"{directory}{name}.blktrace.{cpu}"