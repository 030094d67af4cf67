"""Block-layer I/O trace decoding, recording, replay and a trace-receiving server."""

__version__ = "0.1.0"