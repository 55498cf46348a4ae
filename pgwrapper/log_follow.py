#!/usr/bin/env python3
"""Follow a log file by name and copy every new byte to an output stream.

Run as a companion process by the supervisor::

    python -m pgwrapper.log_follow /var/lib/postgresql/data/log/postgresql.json

Semantics match ``tail -F`` started at the beginning of the file:

* the file may not exist yet - the follower waits for it;
* when the file shrinks (``log_truncate_on_rotation`` or the wrapper's own
  reset) reading restarts at offset 0 without any diagnostic;
* when the path is replaced by a new inode the new file is opened.

The forwarded stream is written raw, it already consists of one JSON object
per line produced by PostgreSQL.
"""

from __future__ import annotations

import argparse
import os
import signal
import sys
import time
from pathlib import Path
from types import FrameType
from typing import BinaryIO, Callable, Optional

DEFAULT_INTERVAL: float = 0.25
CHUNK_SIZE: int = 65536


def _never() -> bool:
    return False


def follow(
    path: Path,
    out: BinaryIO,
    *,
    interval: float = DEFAULT_INTERVAL,
    stop: Callable[[], bool] = _never,
) -> None:
    """Copy the content of *path* to *out* until *stop* returns *True*.

    Args:
        path (Path): The file to follow.
        out (BinaryIO): Destination stream, flushed after every chunk.
        interval (float): Seconds to sleep when no new data is available.
        stop (Callable[[], bool]): Polled between reads; the production
            process never stops on its own and relies on SIGTERM instead.
    """
    handle: Optional[BinaryIO] = None
    inode: Optional[int] = None
    try:
        while not stop():
            if handle is None:
                try:
                    handle = path.open("rb")
                except FileNotFoundError:
                    time.sleep(interval)
                    continue
                inode = os.fstat(handle.fileno()).st_ino

            data = handle.read(CHUNK_SIZE)
            if data:
                out.write(data)
                out.flush()
                continue

            try:
                current = path.stat()
            except FileNotFoundError:
                # Removed; keep the old handle until a new file shows up.
                time.sleep(interval)
                continue

            if current.st_ino != inode:
                handle.close()
                handle = None
                continue

            if current.st_size < handle.tell():
                handle.seek(0)
                continue

            time.sleep(interval)
    finally:
        if handle is not None:
            handle.close()


def signal_handler(signum: int, frame: Optional[FrameType]) -> None:
    """Exit quietly, the supervisor terminates the follower on shutdown."""

    sys.exit(0)


def parse_arguments(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Follow a log file across truncation and rotation."
    )
    parser.add_argument("path", help="Log file to follow")
    parser.add_argument(
        "--interval",
        type=float,
        default=DEFAULT_INTERVAL,
        help="Polling interval in seconds when idle",
    )
    return parser.parse_args(argv)


def main(argv: Optional[list] = None) -> None:
    """Follow the file given on the command line, writing to stdout."""
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)
    args = parse_arguments(argv)
    try:
        follow(Path(args.path), sys.stdout.buffer, interval=args.interval)
    except BrokenPipeError:
        sys.exit(0)


if __name__ == "__main__":
    main()
