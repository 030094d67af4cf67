"""Replay driver: runs one worker per record file, iteration by iteration."""

from __future__ import annotations

import logging
import os
import signal
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import ExitStack
from typing import Callable, Dict, List, Mapping, Optional, TextIO

from blktools.replayengine import NAIOS, ReplayWorker
from blktools.replaysetup import (
    ERR_SYSCALL,
    ReplayConfig,
    ReplayError,
    ReplayInput,
    find_input_files,
    parse_args,
)

_PACKAGE_LOGGER = logging.getLogger("blktools")


class Replayer:
    """Replays a set of record files, all workers starting each iteration together."""

    def __init__(
        self,
        config: ReplayConfig,
        inputs: List[ReplayInput],
        *,
        device_paths: Optional[Mapping[str, str]] = None,
        direct: bool = True,
        stop_event: Optional[threading.Event] = None,
        clock: Optional[Callable[[], int]] = None,
        naios: int = NAIOS,
        pin: bool = False,
        progress: Optional[TextIO] = None,
    ) -> None:
        self.config = config
        self.inputs = list(inputs)
        self.device_paths: Dict[str, str] = dict(device_paths or {})
        self.direct = direct
        self.stop_event = stop_event or threading.Event()
        self.clock = clock or time.monotonic_ns
        self.naios = naios
        self.pin = pin
        self.progress = progress
        self.iterations_done = 0

    @property
    def genesis(self) -> int:
        """Earliest time stamp over all record files."""
        return min((inp.genesis for inp in self.inputs), default=0)

    def _progress_stream(self) -> Optional[TextIO]:
        if not self.config.verbose:
            return None
        return self.progress or sys.stderr

    def run(self) -> int:
        """Replay every iteration; returns the total number of I/Os issued."""
        if not self.inputs:
            return 0
        genesis = self.genesis
        out = self._progress_stream()
        total = 0
        with ExitStack() as stack:
            workers = [
                stack.enter_context(
                    ReplayWorker(
                        inp,
                        self.config,
                        genesis,
                        device=self.device_paths.get(inp.devnm),
                        direct=self.direct,
                        stop_event=self.stop_event,
                        clock=self.clock,
                        naios=self.naios,
                        pin=self.pin,
                    )
                )
                for inp in self.inputs
            ]
            with ThreadPoolExecutor(max_workers=len(workers)) as pool:
                for _ in range(self.config.iterations):
                    if self.stop_event.is_set():
                        break
                    start = self.clock()
                    futures = [pool.submit(worker.run_iteration, start) for worker in workers]
                    errors: List[ReplayError] = []
                    for future in futures:
                        try:
                            total += future.result()
                        except ReplayError as exc:
                            errors.append(exc)
                            self.stop_event.set()
                    if errors:
                        raise errors[0]
                    self.iterations_done += 1
                    if out is not None:
                        out.write("I")
                        out.flush()
        if out is not None:
            out.write("\n")
        return total


def main(argv: Optional[List[str]] = None) -> int:
    """Command entry point; returns the exit status."""
    args = sys.argv[1:] if argv is None else argv
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(message)s"))
    previous_level = _PACKAGE_LOGGER.level
    _PACKAGE_LOGGER.addHandler(handler)
    stop = threading.Event()
    previous_handlers = {}
    try:
        ncpus = os.cpu_count() or 0
        if ncpus == 0:
            raise ReplayError("Insufficient number of CPUs", ERR_SYSCALL)
        config = parse_args(args, ncpus)
        if config.verbose > 1:
            _PACKAGE_LOGGER.setLevel(logging.DEBUG)
        elif config.verbose:
            _PACKAGE_LOGGER.setLevel(logging.INFO)
        else:
            _PACKAGE_LOGGER.setLevel(logging.WARNING)
        inputs = find_input_files(config.devices, config)
        if threading.current_thread() is threading.main_thread():
            for signum in (signal.SIGINT, signal.SIGTERM):
                previous_handlers[signum] = signal.signal(
                    signum, lambda _signum, _frame: stop.set()
                )
        Replayer(config, inputs, stop_event=stop, pin=True).run()
    except ReplayError as exc:
        print(exc, file=sys.stderr)
        return exc.exit_code
    finally:
        for signum, previous in previous_handlers.items():
            signal.signal(signum, previous)
        _PACKAGE_LOGGER.removeHandler(handler)
        _PACKAGE_LOGGER.setLevel(previous_level)
    return 0