"""Network server that receives trace data from remote collectors."""

from __future__ import annotations

import logging
import mmap
import os
import selectors
import socket
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import BinaryIO, Callable, Dict, Iterable, List, Optional, Sequence, TextIO, Tuple

from blktools.netproto import (
    LEN_ACK,
    LEN_CLOSE,
    LEN_OPEN,
    NetHeader,
    ProtocolError,
    recv_exact,
    recv_header,
    send_header,
)
from blktools.options import TraceOptions, output_filename
from blktools.stats import CpuStats, drop_warning
from blktools.trace import TRACE_SIZE

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.5


def _stats_report(
    entries: Iterable[Tuple[str, Sequence[CpuStats], int]]
) -> Tuple[str, int, int]:
    """Per-device, per-CPU summary; returns (text, total drops, total events)."""
    lines: List[str] = []
    total_drops = 0
    total_events = 0
    for name, cpu_stats, drops in entries:
        lines.append(f"=== {name} ===")
        data_read = 0
        nevents = 0
        for cpu, stats in enumerate(cpu_stats):
            # Estimate events from the data volume when they were not counted.
            events = stats.nevents or stats.data_read // TRACE_SIZE
            lines.append(
                f"  CPU{cpu:3d}: {events:20d} events, "
                f"{(stats.data_read + 1023) >> 10:8d} KiB data"
            )
            data_read += stats.data_read
            nevents += events
        lines.append(
            f"  Total:  {nevents:20d} events (dropped {drops}), "
            f"{(data_read + 1024) >> 10:8d} KiB data"
        )
        total_drops += drops
        total_events += nevents + drops
    text = "\n".join(lines) + "\n" if lines else ""
    return text, total_drops, total_events


def _report_drops(total_drops: int, total_events: int, err: TextIO) -> None:
    if not total_drops:
        return
    message = drop_warning(total_drops, total_events)
    if message:
        err.write(message if message.endswith("\n") else message + "\n")
        err.flush()


@dataclass
class _ServedDevice:
    buts_name: str
    cl_id: int
    connect_time: float
    ncpus: int
    files: List[BinaryIO] = field(default_factory=list)
    stats: List[CpuStats] = field(default_factory=list)
    drops: int = 0

    def close(self) -> None:
        for fp in self.files:
            fp.close()
        self.files.clear()


@dataclass
class _Connection:
    sock: socket.socket
    host: "ClientHost"
    connect_time: float
    ncpus: int = -1


class ClientHost:
    """A remote host: its connections and the devices it traces."""

    def __init__(self, address: str) -> None:
        self.address = address
        self.hostname = address
        self.connections: List[_Connection] = []
        self.devices: Dict[str, _ServedDevice] = {}
        self.cl_opens = 0


class TraceServer:
    """Accepts collector connections and stores their traces per host and run."""

    def __init__(
        self,
        options: TraceOptions,
        *,
        listen_sock: Optional[socket.socket] = None,
        stop_event: Optional[threading.Event] = None,
        out: Optional[TextIO] = None,
        err: Optional[TextIO] = None,
        clock: Callable[[], float] = time.time,
        max_cpus: Optional[int] = None,
    ) -> None:
        self.options = options
        self.listen_sock = listen_sock
        self.stop_event = stop_event or threading.Event()
        self.out = out if out is not None else sys.stdout
        self.err = err if err is not None else sys.stderr
        self.clock = clock
        self.max_cpus = max_cpus or os.cpu_count() or 1
        self.hosts: Dict[str, ClientHost] = {}
        self._conns: Dict[socket.socket, _Connection] = {}
        self._selector: Optional[selectors.BaseSelector] = None

    def _say(self, text: str) -> None:
        print(text, file=self.out, flush=True)

    def _add_connection(self, sock: socket.socket, address: str) -> _Connection:
        host = self.hosts.get(address)
        if host is None:
            host = ClientHost(address)
            self.hosts[address] = host
            self._say(f"server: connection from {host.hostname}")
        conn = _Connection(sock, host, self.clock())
        host.connections.append(conn)
        self._conns[sock] = conn
        return conn

    def _connection_for(self, sock: socket.socket) -> _Connection:
        conn = self._conns.get(sock)
        if conn is not None:
            return conn
        try:
            peer = sock.getpeername()
        except OSError:
            peer = None
        address = peer[0] if isinstance(peer, tuple) else "local"
        return self._add_connection(sock, address)

    def _ack(self, conn: _Connection, buts_name: str) -> None:
        send_header(
            conn.sock,
            NetHeader(
                buts_name=buts_name,
                cpu=0,
                max_cpus=self.max_cpus,
                length=LEN_ACK,
                buf_size=self.options.buf_size,
                buf_nr=self.options.buf_nr,
                page_size=mmap.PAGESIZE,
            ),
        )

    def _find_device(self, conn: _Connection, header: NetHeader) -> _ServedDevice:
        connect_time = conn.connect_time
        for device in conn.host.devices.values():
            if device.buts_name == header.buts_name:
                return device
            if device.cl_id == header.cl_id:
                connect_time = device.connect_time
        device = _ServedDevice(
            buts_name=header.buts_name,
            cl_id=header.cl_id,
            connect_time=connect_time,
            ncpus=conn.ncpus,
        )
        stamp = time.strftime("%Y-%m-%d-%H:%M:%S", time.gmtime(connect_time))
        subdir = f"{conn.host.hostname}-{stamp}/"
        try:
            for cpu in range(device.ncpus):
                path = output_filename(self.options, device.buts_name, cpu, subdir)
                device.files.append(open(path, "w+b"))
                device.stats.append(CpuStats())
        except OSError:
            device.close()
            raise
        conn.host.devices[device.buts_name] = device
        return device

    def _read_data(self, conn: _Connection, device: _ServedDevice, header: NetHeader) -> None:
        if not 0 <= header.cpu < device.ncpus:
            raise ProtocolError(
                f"ncd({conn.host.hostname}): cpu {header.cpu} out of range ({device.ncpus})"
            )
        data = recv_exact(conn.sock, header.length)
        if data:
            fp = device.files[header.cpu]
            fp.write(data)
            fp.flush()
            device.stats[header.cpu].data_read += len(data)

    def _show_stats(self, host: ClientHost) -> None:
        for device in host.devices.values():
            self._say(f"server: end of run for {host.hostname}:{device.buts_name}")
        text, total_drops, total_events = _stats_report(
            (d.buts_name, d.stats, d.drops) for d in host.devices.values()
        )
        self.out.write(text)
        self.out.flush()
        _report_drops(total_drops, total_events, self.err)

    def _close_connection(self, conn: _Connection) -> None:
        if self._selector is not None:
            try:
                self._selector.unregister(conn.sock)
            except (KeyError, ValueError):
                pass
        self._conns.pop(conn.sock, None)
        try:
            conn.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        conn.sock.close()
        if conn in conn.host.connections:
            conn.host.connections.remove(conn)

    def _remove_host(self, host: ClientHost) -> None:
        for device in host.devices.values():
            device.close()
        host.devices.clear()
        for conn in list(host.connections):
            self._close_connection(conn)
        self.hosts.pop(host.address, None)

    def handle_header(self, conn: socket.socket, header: NetHeader) -> bool:
        """Act on one header from a connection; True when its host finished its run."""
        state = self._connection_for(conn)
        if state.ncpus == -1:
            state.ncpus = header.max_cpus
        device = self._find_device(state, header)
        if header.length == LEN_OPEN:
            self._ack(state, device.buts_name)
            state.host.cl_opens += 1
        elif header.length == LEN_CLOSE:
            # The cpu field carries the number of dropped events on close.
            device.drops = header.cpu
            self._ack(state, device.buts_name)
            state.host.cl_opens -= 1
            if state.host.cl_opens == 0:
                self._show_stats(state.host)
                self._remove_host(state.host)
                return True
        else:
            self._read_data(state, device, header)
        return False

    def _open_listener(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(("", self.options.net_port))
            sock.listen(1)
        except OSError:
            sock.close()
            raise
        return sock

    def serve_forever(self) -> int:
        """Serve connections until the stop event is set; returns 0."""
        owned = self.listen_sock is None
        listener = self.listen_sock if self.listen_sock is not None else self._open_listener()
        self._selector = selectors.DefaultSelector()
        self._selector.register(listener, selectors.EVENT_READ, None)
        self._say("server: waiting for connections...")
        try:
            while not self.stop_event.is_set():
                for key, _ in self._selector.select(_POLL_INTERVAL):
                    if key.data is None:
                        try:
                            sock, addr = listener.accept()
                        except OSError as exc:
                            logger.error("accept: %s", exc)
                            continue
                        sock.setblocking(True)
                        self._add_connection(sock, addr[0])
                        self._selector.register(sock, selectors.EVENT_READ, "conn")
                        continue
                    conn = self._conns.get(key.fileobj)
                    if conn is None:
                        continue
                    header = recv_header(conn.sock)
                    if header is None:
                        self._close_connection(conn)
                        continue
                    if self.handle_header(conn.sock, header):
                        # Closing a host invalidates the other pending events.
                        break
        finally:
            self._selector.close()
            self._selector = None
            if owned:
                listener.close()
        return 0