# blktools

Tools for working with Linux block-layer I/O traces. The package decodes
binary trace files and turns the queue events in them into replayable
bunches of I/O. It plays those bunches back against a block device. It also
provides a network server that receives trace data from remote collectors.

## Installation

```
pip install .
```

To run the test suite:

```
pip install .[test]
pytest
```

## Commands

### btrecord

Reads per-CPU trace files named `<dev>.blktrace.<cpu>`. The files are taken
from CPU 0 upward until one is missing. For each of them it writes a record
file `<dev>.<base>.<cpu>`. Only queue events are kept, and they are grouped
into bunches. A bunch ends once it holds `-M` packets, or once the next I/O
comes more than `-m` nanoseconds after the bunch started.

```
btrecord -d traces -D replays sda
btrecord -F -d traces
```

Options:

- `-d`, `--input-directory` — where the trace files are (default `.`)
- `-D`, `--output-directory` — where record files go (default `.`)
- `-F`, `--find-traces` — also record every device with trace files in the input directory
- `-m`, `--max-bunch-time` — maximum bunch span in nanoseconds (default 10 ms)
- `-M`, `--max-pkts` — packets per bunch, 1 to 512 (default 8)
- `-o`, `--output-base` — output base name (default `replay`)
- `-v`, `--verbose` — per-file summaries; give it twice for per-event detail and a `.rec` text dump of each bunch
- `-V`, `--version` — print the version and exit
- `-h`, `--help` — print usage and exit

### btreplay

Plays record files `<dev>.<base>.<cpu>` back against `/dev/<dev>`. In the
device name, underscores stand for `/`. The device is opened read-write
with direct I/O. All files start each iteration together. The original
timing is kept, scaled by the acceleration factor, unless `-N` is given.
Recorded writes are issued as reads unless `-W` enables writing.

```
btreplay -d replays sda
btreplay -d replays -M devmap.txt -I 3 -x 2 sda
```

Options:

- `-c`, `--cpus` — number of CPUs to spread workers over (default all)
- `-d`, `--input-directory` — where record files are (default `.`)
- `-F`, `--find-records` — also replay every device with record files in the input directory
- `-i`, `--input-base` — record file base name (default `replay`)
- `-I`, `--iterations` — number of passes (default 1)
- `-M`, `--map-devs` — device map file; may be given more than once
- `-N`, `--no-stalls` — issue I/O as fast as possible
- `-x`, `--acc-factor` — divide recorded delays by this factor (default 1)
- `-W`, `--write-enable` — really issue recorded writes
- `-v`, `--verbose` — progress output; give it twice for a `.rep` report per file
- `-V`, `--version`, `-h`, `--help`

A device map file holds whitespace-separated pairs `from_dev to_dev`.
Interrupting the command with SIGINT or SIGTERM stops the replay.

## Library use

- `blktools.trace` — trace record layout and decoding: `TraceRecord`,
  `decode_trace`, `iter_traces`, `verify_trace`, `detect_byteorder`,
  `major`, `minor`, `is_queue_action`, `is_read_action`.
- `blktools.replayfmt` — record file format: `FileHeader`, `IoBunch`,
  `IoPacket`, `read_bunch`, `write_bunch`, `mk_btversion`, `get_btversion`.
- `blktools.recorder` — building record files: `RecordStream`,
  `record_file`, `read_io_specs`, `find_trace_inputs`, `find_trace_devices`.
- `blktools.replaysetup` — replay configuration and input discovery:
  `ReplayConfig`, `DeviceMap`, `device_path`, `find_input_files`,
  `load_replay_input`, `parse_args`.
- `blktools.replayengine` — `ReplayWorker`, which replays one record file,
  and `stall_target`.
- `blktools.replayer` — `Replayer`, which runs one worker per record file.
- `blktools.netproto` — the network header: `NetHeader`, `send_header`,
  `recv_header`, `recv_exact`.
- `blktools.options` — collector options: `TraceOptions`, `NetMode`,
  `parse_args`, `output_filename`.
- `blktools.server` — `TraceServer`. It listens on the configured port
  (default 8462) and stores incoming data as
  `<host>-<date>-<time>/<dev>.blktrace.<cpu>` under the output directory.
  When a host finishes, the server prints per-CPU statistics.
  `serve_forever()` runs until its stop event is set.
- `blktools.stats` — `CpuStats`, `DeviceStats`, `format_stats`,
  `drop_warning`.

## What this package does not do

The package cannot collect traces from the kernel. There is no command that
sets up tracing on a device through debugfs, reads the per-CPU trace
buffers, or sends them to a server. Trace files have to come from an
existing tracing tool. `blktools.options` parses that tool's options, but
nothing here acts on them beyond `TraceServer`. The server has no command of
its own; start it from Python with `TraceServer(options).serve_forever()`.