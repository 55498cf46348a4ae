"""Supervise the PostgreSQL child process and its log forwarder.

The supervisor is a single control loop walking through four states::

    LAUNCHING -> WAITING_FOR_LOG -> TAILING -> EXITED
                        |                        ^
                        +------------------------+   (child died early)

The wrapper cannot simply ``exec`` the database: it has to keep running so
that the JSON log file written by ``logging_collector`` can be mirrored to
the container's stderr, which is what the hosting platform collects.  In
exchange it takes over the duties of PID 1 - termination signals are
forwarded to the database and the database's exit status becomes the
container's exit status.
"""

from __future__ import annotations

import contextlib
import enum
import signal
import subprocess
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from types import FrameType
from typing import IO, Any, Callable, Mapping, Sequence

__all__ = [
    "State",
    "SupervisorConfig",
    "Supervisor",
    "FORWARDED_SIGNALS",
    "FORWARDER_GRACE_SECONDS",
    "build_forwarder_command",
    "exit_status",
]

FORWARDED_SIGNALS: tuple[signal.Signals, ...] = (signal.SIGTERM, signal.SIGINT, signal.SIGQUIT)

# Time granted to the forwarder to exit after SIGTERM before it is killed.
FORWARDER_GRACE_SECONDS = 5.0


def _log(message: str) -> None:
    print(f"[wrapper] {message}", file=sys.stderr)


class State(enum.Enum):
    LAUNCHING = "launching"
    WAITING_FOR_LOG = "waiting-for-log"
    TAILING = "tailing"
    EXITED = "exited"


def build_forwarder_command(log_file: Path) -> list[str]:
    """Return the command following *log_file* by name (``tail -F`` style)."""

    return [sys.executable, "-m", "pgwrapper.log_follow", str(log_file)]


def exit_status(returncode: int) -> int:
    """Translate a :class:`subprocess.Popen` return code to a shell status.

    A child killed by signal *N* reports ``-N``; shells expose that as
    ``128 + N`` which is what container runtimes expect as well.
    """

    if returncode < 0:
        return 128 - returncode
    return returncode


@dataclass
class SupervisorConfig:
    """Everything :class:`Supervisor` needs, no ambient state involved.

    ``env`` is the *complete* environment of the database child, usually
    produced by :pyfunc:`pgwrapper.wrapper.build_child_env`.  ``forward_to``
    receives the forwarder's stdout and defaults to the wrapper's stderr.
    """

    command: Sequence[str]
    env: Mapping[str, str]
    log_file: Path
    poll_interval: float = 1.0
    forwarder_command: Sequence[str] | None = None
    forward_to: IO[Any] | int | None = None
    signals: Sequence[signal.Signals] = field(default=FORWARDED_SIGNALS)


class Supervisor:
    """Own the database child and the log forwarder for one container run."""

    def __init__(
        self,
        config: SupervisorConfig,
        *,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.state = State.LAUNCHING
        self.received_signal: int | None = None
        self._popen = popen
        self._sleep = sleep
        self._child: subprocess.Popen | None = None
        self._forwarder: subprocess.Popen | None = None

    # ------------------------------------------------------------------
    #  Signal forwarding
    # ------------------------------------------------------------------

    def _handle_signal(self, signum: int, frame: FrameType | None) -> None:
        # Forward and return: the interrupted wait()/sleep() is resumed so
        # the child still gets reaped before the supervisor exits.
        self.received_signal = signum
        child = self._child
        if child is not None and child.poll() is None:
            _log(f"Received signal {signum}, forwarding to PostgreSQL (pid {child.pid})")
            with contextlib.suppress(ProcessLookupError):
                child.send_signal(signum)

    def _install_handlers(self) -> dict[int, Any]:
        previous = {}
        for signum in self.config.signals:
            previous[signum] = signal.signal(signum, self._handle_signal)
        return previous

    @staticmethod
    def _restore_handlers(previous: Mapping[int, Any]) -> None:
        for signum, handler in previous.items():
            signal.signal(signum, handler)

    # ------------------------------------------------------------------
    #  State handlers
    # ------------------------------------------------------------------

    def _launch(self) -> None:
        cfg = self.config
        self._child = self._popen(list(cfg.command), env=dict(cfg.env))
        if self.received_signal is not None:
            # Signalled while the child was being spawned.
            self._handle_signal(self.received_signal, None)
        self.state = State.WAITING_FOR_LOG

    def _wait_for_log(self) -> int | None:
        """Poll for the log file, return the child's status if it died first."""

        assert self._child is not None
        _log("Waiting for PostgreSQL log file...")
        while not self.config.log_file.exists():
            returncode = self._child.poll()
            if returncode is not None:
                if self.received_signal is None:
                    _log("PostgreSQL process exited unexpectedly")
                self.state = State.EXITED
                return returncode
            self._sleep(self.config.poll_interval)
        self.state = State.TAILING
        return None

    def _start_forwarder(self) -> None:
        cfg = self.config
        command = cfg.forwarder_command or build_forwarder_command(cfg.log_file)
        target = sys.stderr if cfg.forward_to is None else cfg.forward_to
        _log(f"Tailing JSON logs from {cfg.log_file}")
        self._forwarder = self._popen(
            list(command),
            stdout=target,
            stderr=subprocess.DEVNULL,
        )

    def _stop_forwarder(self) -> None:
        forwarder, self._forwarder = self._forwarder, None
        if forwarder is None or forwarder.poll() is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            forwarder.terminate()
        try:
            forwarder.wait(timeout=FORWARDER_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            forwarder.kill()
            forwarder.wait()

    # ------------------------------------------------------------------
    #  Control loop
    # ------------------------------------------------------------------

    def run(self) -> int:
        """Run the database to completion and return its exit status."""

        previous = self._install_handlers()
        try:
            self._launch()
            returncode = self._wait_for_log()
            if returncode is None:
                self._start_forwarder()
                assert self._child is not None
                returncode = self._child.wait()
                self.state = State.EXITED
            status = exit_status(returncode)
            if self.received_signal is not None:
                _log(f"PostgreSQL stopped after signal {self.received_signal}, exit status {status}")
            return status
        finally:
            self._stop_forwarder()
            self._restore_handlers(previous)
