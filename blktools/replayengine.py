"""Replay of recorded I/O bunches against a block device."""

from __future__ import annotations

import collections
import logging
import mmap
import os
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Deque, List, Optional, TextIO

from blktools.replayfmt import FILE_HDR_SIZE, FormatError, IoBunch, read_bunch
from blktools.replaysetup import (
    ERR_SYSCALL,
    ReplayConfig,
    ReplayError,
    ReplayInput,
    device_path,
)

logger = logging.getLogger(__name__)

NAIOS = 512
NB_SEC = 512
NS_TICKS = 1000 * 1000 * 1000
PAGESIZE = mmap.PAGESIZE

_IO_THREADS = 16
_WAIT_SLICE = 0.05


def stall_target(timestamp: int, genesis: int, acc_factor: int) -> int:
    """Nanoseconds after the replay start at which a bunch is due."""
    if acc_factor <= 0:
        raise ValueError(f"acceleration factor must be positive, not {acc_factor}")
    return (timestamp - genesis) // acc_factor


def _sec_nsec(value: int) -> str:
    sec = value // NS_TICKS if value >= 0 else -(-value // NS_TICKS)
    return f"{sec}.{abs(value) % NS_TICKS:09d}"


class IoSlot:
    """A reusable page-aligned buffer for one outstanding I/O."""

    def __init__(self) -> None:
        self.nbytes = 0
        self.length = 0
        self.offset = 0
        self.rw = 1
        self._buf: Optional[mmap.mmap] = None

    def prepare(self, rw: int, nbytes: int, offset: int) -> None:
        """Set the slot up for an I/O, growing its buffer when it is too small."""
        if rw not in (0, 1):
            raise ValueError(f"direction must be 0 or 1, not {rw}")
        if nbytes <= 0 or nbytes % NB_SEC:
            raise ValueError(f"I/O size {nbytes} is not a positive multiple of {NB_SEC}")
        if offset < 0:
            raise ValueError(f"negative offset {offset}")
        if self.nbytes < nbytes:
            if self._buf is not None:
                self._buf.close()
            self._buf = mmap.mmap(-1, nbytes)
            self.nbytes = nbytes
        self.rw = rw
        self.length = nbytes
        self.offset = offset
        if rw == 0:
            # Make sure every page is really backed before writing from it.
            assert self._buf is not None
            for index in range(0, nbytes, PAGESIZE):
                self._buf[index] = 0

    def perform(self, fd: int) -> int:
        """Carry out the prepared I/O on ``fd``; returns the bytes transferred."""
        if self._buf is None:
            raise ValueError("slot has not been prepared")
        with memoryview(self._buf) as whole, whole[: self.length] as part:
            if self.rw:
                if hasattr(os, "preadv"):
                    return os.preadv(fd, [part], self.offset)
                return len(os.pread(fd, self.length, self.offset))
            return os.pwrite(fd, part, self.offset)

    def close(self) -> None:
        """Release the buffer."""
        if self._buf is not None:
            self._buf.close()
            self._buf = None
            self.nbytes = 0


class ReplayWorker:
    """Replays one record file against its (mapped) device."""

    def __init__(
        self,
        replay_input: ReplayInput,
        config: ReplayConfig,
        genesis: Optional[int] = None,
        *,
        device: Optional[str] = None,
        direct: bool = True,
        stop_event: Optional[threading.Event] = None,
        clock: Optional[Callable[[], int]] = None,
        naios: int = NAIOS,
        pin: bool = False,
    ) -> None:
        self.replay_input = replay_input
        self.config = config
        self.genesis = replay_input.genesis if genesis is None else genesis
        self.stop_event = stop_event or threading.Event()
        self.clock = clock or time.monotonic_ns
        self.pin = pin
        self.naios = naios
        self.iteration = 0
        self.submitted = 0
        self.completed = 0
        self.reads = 0
        self.writes = 0

        self.device = device or device_path(config.device_map.map(replay_input.devnm))
        flags = os.O_RDWR | getattr(os, "O_NOATIME", 0)
        if direct:
            flags |= getattr(os, "O_DIRECT", 0)
        try:
            self._fd = os.open(self.device, flags)
        except OSError as exc:
            raise ReplayError(f"{self.device}: Failed device open", ERR_SYSCALL) from exc

        try:
            self._input = open(replay_input.path, "rb")
        except OSError as exc:
            os.close(self._fd)
            raise ReplayError(f"{replay_input.path}: Unable to open", ERR_SYSCALL) from exc

        self._report: Optional[TextIO] = None
        if config.verbose > 1:
            rep_path = os.path.join(
                config.idir,
                f"{replay_input.devnm}.{config.ibase}.{replay_input.cpu}.rep",
            )
            try:
                self._report = open(rep_path, "w", buffering=1)
            except OSError as exc:
                self._input.close()
                os.close(self._fd)
                raise ReplayError(f"{rep_path}: Failed to open report", ERR_SYSCALL) from exc

        self._slots: List[IoSlot] = [IoSlot() for _ in range(naios)]
        self._free: Deque[IoSlot] = collections.deque(self._slots)
        self._cond = threading.Condition()
        self._outstanding = 0
        self._error: Optional[ReplayError] = None
        self._executor = ThreadPoolExecutor(max_workers=min(naios, _IO_THREADS))
        self._closed = False

    def __enter__(self) -> "ReplayWorker":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def done(self) -> bool:
        return self.stop_event.is_set()

    def _log(self, text: str) -> None:
        if self._report is not None:
            self._report.write(text)

    def _raise_pending(self) -> None:
        with self._cond:
            error, self._error = self._error, None
        if error is not None:
            raise error

    def _nfree_current(self) -> int:
        with self._cond:
            while not self.done and not self._free:
                self._cond.wait(_WAIT_SLICE)
            return 0 if self.done else len(self._free)

    def _stall(self, timestamp: int, start: int) -> None:
        target = stall_target(timestamp, self.genesis, self.config.acc_factor)
        now = self.clock() - start
        self._log(f"   stall({_sec_nsec(target)}, {_sec_nsec(now)})\n")
        while not self.done and now < target:
            delta = target - now
            self._log(f"++ stall({_sec_nsec(delta)}) ++\n")
            if self.stop_event.wait(delta / NS_TICKS):
                break
            now = self.clock() - start

    def _map(self, pkts) -> List[IoSlot]:
        taken = []
        with self._cond:
            for pkt in pkts:
                rw = pkt.rw
                if not rw and not self.config.write_enabled:
                    rw = 1
                self._log(
                    f"\t{pkt.sector:10d} + {pkt.nbytes // NB_SEC:10d} "
                    f"{'R' if rw else 'W'}{'!' if rw == 1 and pkt.rw == 0 else ' '}\n"
                )
                slot = self._free.popleft()
                try:
                    slot.prepare(rw, pkt.nbytes, pkt.sector * NB_SEC)
                except ValueError as exc:
                    self._free.appendleft(slot)
                    self._free.extend(taken)
                    raise ReplayError(
                        f"{self.replay_input.path}: bad packet: {exc}", ERR_SYSCALL
                    ) from exc
                taken.append(slot)
        return taken

    def _do_io(self, slot: IoSlot) -> None:
        try:
            result = slot.perform(self._fd)
        except OSError as exc:
            result = -(exc.errno or 1)
        if result != slot.length:
            raise ReplayError(
                f"Event failure {result}/0\t"
                f"({slot.offset // NB_SEC} + {slot.length // NB_SEC})",
                ERR_SYSCALL,
            )

    def _complete(self, slot: IoSlot, future: Future) -> None:
        error = future.exception()
        with self._cond:
            self._outstanding -= 1
            self._free.append(slot)
            if error is None:
                self.completed += 1
            elif self._error is None:
                self._error = (
                    error if isinstance(error, ReplayError)
                    else ReplayError(str(error), ERR_SYSCALL)
                )
            self._cond.notify_all()

    def submit_bunch(self, bunch: IoBunch, start: int) -> int:
        """Issue a bunch's I/Os once it is due; returns how many were issued."""
        self._raise_pending()
        issued = 0
        while not self.done and issued < bunch.npkts:
            ntodo = min(self._nfree_current(), bunch.npkts - issued)
            if ntodo == 0:
                break
            slots = self._map(bunch.pkts[issued : issued + ntodo])
            if not self.config.no_stalls:
                self._stall(bunch.time_stamp, start)
            self._log(f"submit({ntodo})\n")
            with self._cond:
                self._outstanding += ntodo
            for slot in slots:
                if slot.rw:
                    self.reads += 1
                else:
                    self.writes += 1
                future = self._executor.submit(self._do_io, slot)
                future.add_done_callback(
                    lambda fut, slot=slot: self._complete(slot, fut)
                )
            issued += ntodo
        self.submitted += issued
        return issued

    def run_iteration(self, start: Optional[int] = None) -> int:
        """Replay the whole record file once; returns the number of I/Os issued."""
        if self._closed:
            raise ReplayError("worker is closed", ERR_SYSCALL)
        if start is None:
            start = self.clock()
        if self.pin and hasattr(os, "sched_setaffinity"):
            try:
                os.sched_setaffinity(0, {self.replay_input.cpu})
            except OSError as exc:
                raise ReplayError("sched_setaffinity: Failed to pin CPU", ERR_SYSCALL) from exc
        self.iteration += 1
        self._log(f"\n=== {self.iteration} ===\n")
        self._input.seek(FILE_HDR_SIZE)
        issued = 0
        while not self.done:
            try:
                bunch = read_bunch(self._input)
            except FormatError as exc:
                raise ReplayError(f"{self.replay_input.path}: {exc}", ERR_SYSCALL) from exc
            if bunch is None:
                break
            issued += self.submit_bunch(bunch, start)
        self._raise_pending()
        return issued

    def _drain(self) -> None:
        with self._cond:
            while self._outstanding:
                self._cond.wait(_WAIT_SLICE)

    def close(self) -> None:
        """Wait for outstanding I/O, then release the device, files and buffers."""
        if self._closed:
            return
        self._closed = True
        try:
            self._drain()
            self._executor.shutdown(wait=True)
        finally:
            for slot in self._slots:
                slot.close()
            self._input.close()
            os.close(self._fd)
            if self._report is not None:
                self._report.close()
        self._raise_pending()