"""Convert binary trace files into bunched record files for replay."""

from __future__ import annotations

import argparse
import itertools
import logging
import os
import sys
from dataclasses import dataclass, field
from typing import BinaryIO, Iterator, List, Optional, TextIO

from blktools.replayfmt import (
    BT_MAX_PKTS,
    BTVERSION,
    FileHeader,
    IoBunch,
    IoPacket,
    write_bunch,
)
from blktools.trace import (
    TRACE_SIZE,
    TraceError,
    decode_trace,
    detect_byteorder,
    is_queue_action,
    is_read_action,
)

logger = logging.getLogger(__name__)

ERR_ARGS = 1
ERR_SYSCALL = 2

NSEC_PER_SEC = 1000 * 1000 * 1000

USAGE = (
    "\n"
    "\t[ -d <dir>  : --input-directory=<dir> ] Default: .\n"
    "\t[ -D <dir>  : --output-directory=<dir>] Default: .\n"
    "\t[ -F        : --find-traces           ] Default: Off\n"
    "\t[ -h        : --help                  ] Default: Off\n"
    "\t[ -m <nsec> : --max-bunch-time=<nsec> ] Default: 10 msec\n"
    "\t[ -M <pkts> : --max-pkts=<pkts>       ] Default: 8\n"
    "\t[ -o <base> : --output-base=<base>    ] Default: replay\n"
    "\t[ -v        : --verbose               ] Default: Off\n"
    "\t[ -V        : --version               ] Default: Off\n"
    "\t<dev>...                                Default: None\n"
    "\n"
)


class RecordError(Exception):
    """A fatal recording error; ``exit_code`` is the process status to use."""

    def __init__(self, message: str, exit_code: int = ERR_ARGS) -> None:
        super().__init__(message)
        self.exit_code = exit_code


@dataclass
class RecorderConfig:
    """Settings for one recording run."""

    idir: str = "."
    odir: str = "."
    obase: str = "replay"
    max_bunch_time: int = 10 * 1000 * 1000
    max_pkts: int = 8
    verbose: int = 0
    find_traces: bool = False
    devices: List[str] = field(default_factory=list)


@dataclass
class IoSpec:
    """A queued I/O taken from a trace."""

    time: int
    sector: int
    bytes: int
    rw: int


@dataclass
class InputFile:
    """One per-CPU trace file for a device."""

    devnm: str
    path: str
    cpu: int
    tpkts: int = 0
    genesis: int = 0


def find_trace_inputs(idir: str, devnm: str) -> List[InputFile]:
    """Per-CPU trace files of a device, from CPU 0 up to the first one missing."""
    inputs = []
    for cpu in itertools.count():
        path = os.path.join(idir, f"{devnm}.blktrace.{cpu}")
        if not os.access(path, os.R_OK):
            break
        inputs.append(InputFile(devnm, path, cpu))
    if not inputs:
        raise RecordError(f"No traces found for {devnm}", ERR_ARGS)
    return inputs


def find_trace_devices(idir: str) -> List[str]:
    """Names of devices that have trace files in a directory."""
    try:
        names = sorted(os.listdir(idir))
    except OSError as exc:
        raise RecordError(f"{idir}: Unable to open {idir}", ERR_ARGS) from exc
    devices: List[str] = []
    for name in names:
        if ".blktrace." not in name:
            continue
        devnm = name.split(".", 1)[0]
        if devnm not in devices:
            devices.append(devnm)
    return devices


def read_io_specs(input_file: InputFile) -> Iterator[IoSpec]:
    """Yield the queue events of a trace file, updating its packet count and genesis.

    A truncated trailing record ends the stream with a warning.
    """
    path = input_file.path
    try:
        stream = open(path, "rb")
    except OSError as exc:
        raise RecordError(f"{path}: Unable to open", ERR_ARGS) from exc
    byteorder: Optional[str] = None
    with stream:
        while True:
            try:
                header = stream.read(TRACE_SIZE)
            except OSError as exc:
                raise RecordError(f"{path}: Read failed", ERR_SYSCALL) from exc
            if not header:
                return
            if len(header) < TRACE_SIZE:
                logger.warning("WARNING: Short read on %s (%d)", path, len(header))
                return
            if byteorder is None:
                try:
                    byteorder = detect_byteorder(header)
                except TraceError as exc:
                    raise RecordError(f"{path}: {exc}", ERR_SYSCALL) from exc
            trace = decode_trace(header, byteorder)
            if trace.pdu_len:
                try:
                    pdu = stream.read(trace.pdu_len)
                except OSError as exc:
                    raise RecordError(f"{path}: Read PDU failed", ERR_SYSCALL) from exc
                if len(pdu) < trace.pdu_len:
                    logger.warning("WARNING: Short PDU read on %s (%d)", path, len(pdu))
                    return

            input_file.tpkts += 1
            if not is_queue_action(trace.action):
                continue

            spec = IoSpec(
                time=trace.time,
                sector=trace.sector,
                bytes=trace.bytes,
                rw=1 if is_read_action(trace.action) else 0,
            )
            logger.debug(
                "%2d: %10d+%10d (%d) @ %10x",
                input_file.cpu, spec.sector, spec.bytes // 512, spec.rw, spec.time,
            )
            if input_file.genesis == 0:
                input_file.genesis = spec.time
                logger.debug(
                    "\tSetting new genesis: %x(%d)", input_file.genesis, input_file.cpu
                )
            elif input_file.genesis > spec.time:
                raise RecordError(
                    f"Time inversion? {input_file.genesis} ... {spec.time}", ERR_SYSCALL
                )
            yield spec


class RecordStream:
    """Output record file for one input file, collecting I/Os into bunches."""

    def __init__(self, input_file: InputFile, config: RecorderConfig) -> None:
        self.input_file = input_file
        self.config = config
        self.path = os.path.join(
            config.odir, f"{input_file.devnm}.{config.obase}.{input_file.cpu}"
        )
        self.bunches = 0
        self.pkts = 0
        self.start_time = 0
        self.last_time = 0
        self._cur: Optional[IoBunch] = None
        self._rec: Optional[TextIO] = None
        try:
            self._out: BinaryIO = open(self.path, "wb")
        except OSError as exc:
            raise RecordError(f"{self.path}: Open failed", ERR_SYSCALL) from exc
        self._write_header(FileHeader())
        if config.verbose:
            rec_path = self.path + ".rec"
            try:
                self._rec = open(rec_path, "w")
            except OSError as exc:
                self._out.close()
                raise RecordError(f"{rec_path}: Open failed", ERR_SYSCALL) from exc

    def __enter__(self) -> "RecordStream":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _write_header(self, header: FileHeader) -> None:
        logger.info(
            "\t%s: %x %x %x %x",
            self.path, header.version, header.genesis, header.nbunches, header.total_pkts,
        )
        try:
            self._out.seek(0)
            self._out.write(header.pack())
        except OSError as exc:
            raise RecordError(f"{self.path}: Hdr write failed", ERR_SYSCALL) from exc

    def _bunch_done(self, spec: IoSpec) -> bool:
        assert self._cur is not None
        if self._cur.npkts >= self.config.max_pkts:
            return True
        return spec.time - self.start_time > self.config.max_bunch_time

    def _start_bunch(self, time_stamp: int) -> None:
        self._cur = IoBunch(time_stamp)
        self.start_time = time_stamp

    def _flush(self) -> None:
        cur, self._cur = self._cur, None
        if cur is None or not cur.pkts:
            return
        try:
            write_bunch(self._out, cur)
        except OSError as exc:
            raise RecordError(f"{self.path}: fwrite failed", ERR_SYSCALL) from exc
        if self._rec is not None:
            off = cur.time_stamp - self.input_file.genesis
            self._rec.write("------------------\n")
            self._rec.write(f"{off // NSEC_PER_SEC:4d}.{off % NSEC_PER_SEC:09d} {cur.npkts:3d}\n")
            self._rec.write("------------------\n")
            for pkt in cur.pkts:
                self._rec.write(f"\t{pkt.rw:1d} {pkt.sector:10d}\t{pkt.nbytes // 512:10d}\n")
        self.bunches += 1
        self.pkts += cur.npkts

    def add(self, spec: IoSpec) -> None:
        """Add an I/O, starting a new bunch when the current one is full or too old."""
        if self.last_time and spec.time < self.last_time:
            raise RecordError(
                f"Time inversion? {self.last_time} ... {spec.time}", ERR_SYSCALL
            )
        if self._cur is None:
            self._start_bunch(spec.time)
        elif self._bunch_done(spec):
            self._flush()
            self._start_bunch(spec.time)
        assert self._cur is not None and self._cur.npkts < BT_MAX_PKTS
        self._cur.pkts.append(IoPacket(spec.sector, spec.bytes, spec.rw))
        self.last_time = spec.time

    def close(self) -> None:
        """Flush the last bunch, write the final header and close the files."""
        if self._out.closed:
            return
        try:
            self._flush()
            self._write_header(
                FileHeader(
                    genesis=self.input_file.genesis,
                    nbunches=self.bunches,
                    total_pkts=self.pkts,
                )
            )
        finally:
            self._out.close()
            if self._rec is not None:
                self._rec.close()
        if self.config.verbose and self.bunches:
            logger.info(
                "%s:%d: %d pkts (tot), %d pkts (replay), %d bunches, %.1f pkts/bunch",
                self.input_file.devnm, self.input_file.cpu, self.input_file.tpkts,
                self.pkts, self.bunches, self.pkts / self.bunches,
            )


def record_file(input_file: InputFile, config: RecorderConfig) -> RecordStream:
    """Record one input file into its output file; returns the closed stream."""
    with RecordStream(input_file, config) as stream:
        for spec in read_io_specs(input_file):
            stream.add(spec)
    return stream


def _usage() -> str:
    return f"Usage: btrecord -- version {BTVERSION}\n{USAGE}"


class _Parser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # type: ignore[override]
        sys.stderr.write(_usage())
        raise RecordError(f"Invalid command line: {message}", ERR_ARGS)


class _PrintAndExit(argparse.Action):
    def __init__(self, option_strings, dest, text_factory, **kwargs):
        super().__init__(option_strings, dest, nargs=0, **kwargs)
        self.text_factory = text_factory

    def __call__(self, parser, namespace, values, option_string=None):
        sys.stderr.write(self.text_factory())
        raise SystemExit(0)


def _atoll(text: str) -> int:
    try:
        return int(text.strip())
    except ValueError:
        return 0


def parse_args(argv: List[str]) -> RecorderConfig:
    """Build a configuration from command-line arguments."""
    parser = _Parser(prog="btrecord", add_help=False)
    parser.add_argument("-d", "--input-directory", dest="idir", default=".")
    parser.add_argument("-D", "--output-directory", dest="odir", default=".")
    parser.add_argument("-F", "--find-traces", dest="find_traces", action="store_true")
    parser.add_argument("-h", "--help", action=_PrintAndExit, text_factory=_usage)
    parser.add_argument("-m", "--max-bunch-time", dest="max_bunch_time", type=_atoll,
                        default=10 * 1000 * 1000)
    parser.add_argument("-M", "--max-pkts", dest="max_pkts", type=_atoll, default=8)
    parser.add_argument("-o", "--output-base", dest="obase", default="replay")
    parser.add_argument("-v", "--verbose", dest="verbose", action="count", default=0)
    parser.add_argument(
        "-V", "--version", action=_PrintAndExit,
        text_factory=lambda: f"btrecord -- version {BTVERSION}\n",
    )
    parser.add_argument("devices", nargs="*")
    ns = parser.parse_intermixed_args(argv)

    if not os.access(ns.idir, os.R_OK | os.X_OK):
        raise RecordError(f"{ns.idir}: Invalid input directory specified", ERR_ARGS)
    if not os.access(ns.odir, os.R_OK | os.X_OK):
        raise RecordError(f"{ns.odir}: Invalid output directory specified", ERR_ARGS)
    if ns.max_bunch_time < 1:
        raise RecordError(f"Invalid bunch time {ns.max_bunch_time}", ERR_ARGS)
    if not 1 <= ns.max_pkts <= BT_MAX_PKTS:
        raise RecordError(f"Invalid max pkts {ns.max_pkts}", ERR_ARGS)

    return RecorderConfig(
        idir=ns.idir,
        odir=ns.odir,
        obase=ns.obase,
        max_bunch_time=ns.max_bunch_time,
        max_pkts=ns.max_pkts,
        verbose=ns.verbose,
        find_traces=ns.find_traces,
        devices=list(ns.devices),
    )


def _collect_inputs(config: RecorderConfig) -> List[InputFile]:
    devices: List[str] = []
    inputs: List[InputFile] = []

    def add(devnm: str) -> None:
        if devnm in devices:
            return
        inputs.extend(find_trace_inputs(config.idir, devnm))
        devices.append(devnm)

    for devnm in config.devices:
        add(devnm)
    if config.find_traces:
        for devnm in find_trace_devices(config.idir):
            add(devnm)
    if not inputs:
        raise RecordError("Missing required input file name(s)", ERR_ARGS)
    return inputs


def main(argv: Optional[List[str]] = None) -> int:
    """Command entry point; returns the exit status."""
    args = sys.argv[1:] if argv is None else argv
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(message)s"))
    previous_level = logger.level
    logger.addHandler(handler)
    try:
        config = parse_args(args)
        if config.verbose > 1:
            logger.setLevel(logging.DEBUG)
        elif config.verbose:
            logger.setLevel(logging.INFO)
        else:
            logger.setLevel(logging.WARNING)
        for input_file in _collect_inputs(config):
            record_file(input_file, config)
    except RecordError as exc:
        print(exc, file=sys.stderr)
        return exc.exit_code
    finally:
        logger.removeHandler(handler)
        logger.setLevel(previous_level)
    return 0