"""
Cancellable child processes.

Wraps an ``asyncio.subprocess.Process`` in a ``CancellableProcess`` whose
``wait()`` races the process against a cancellation check. The check is a
zero-argument callable returning a ``CancelSignal`` to cancel the process
with, or ``None`` to keep waiting. It is called once per poll cycle.
"""

import asyncio
import logging
import os
import signal
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.1


class CancelSignal(Enum):
    """How to signal cancellation to a child process."""

    INTERRUPT = signal.SIGINT
    KILL = signal.SIGKILL

    @property
    def signum(self) -> int:
        return int(self.value)


CancelCheck = Callable[[], Optional[CancelSignal]]


def never_cancel() -> Optional[CancelSignal]:
    return None


@dataclass(frozen=True)
class ExitStatus:
    """
    Result of ``CancellableProcess.wait()``.

    ``returncode`` may be ``None`` if the process was cancelled and has not
    exited yet. It is always set when ``how_cancelled`` is ``None``.
    """

    how_cancelled: Optional[CancelSignal]
    returncode: Optional[int]

    @property
    def cancelled(self) -> bool:
        return self.how_cancelled is not None

    @property
    def success(self) -> bool:
        return self.how_cancelled is None and self.returncode == 0


@dataclass(frozen=True)
class CompletedOutput:
    returncode: int
    stdout: bytes
    stderr: bytes


@dataclass(frozen=True)
class Output:
    """
    Result of ``CancellableProcess.wait_with_output()``.

    ``output`` is ``None`` if the process was cancelled, since it may still be
    running or its pipes may still be open. It is always set when
    ``how_cancelled`` is ``None``.
    """

    how_cancelled: Optional[CancelSignal]
    output: Optional[CompletedOutput]


class CancellableProcess:
    """Child process that can be cancelled while waiting for it to finish."""

    def __init__(self, process: asyncio.subprocess.Process, check_cancel: Optional[CancelCheck] = None,
                 poll_interval: float = DEFAULT_POLL_INTERVAL):
        self._process = process
        self._check_cancel = check_cancel or never_cancel
        self._poll_interval = poll_interval
        self._how_cancelled: Optional[CancelSignal] = None
        self._returncode: Optional[int] = None
        self._output: Optional[CompletedOutput] = None

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def stdin(self):
        return self._process.stdin

    @property
    def stdout(self):
        return self._process.stdout

    @property
    def stderr(self):
        return self._process.stderr

    @property
    def how_cancelled(self) -> Optional[CancelSignal]:
        return self._how_cancelled

    @property
    def returncode(self) -> Optional[int]:
        return self._returncode

    @property
    def running(self) -> bool:
        return self._process.returncode is None

    def _status(self) -> ExitStatus:
        return ExitStatus(how_cancelled=self._how_cancelled, returncode=self._returncode)

    def _settled(self) -> bool:
        return self._returncode is not None or self._how_cancelled is not None

    def send_signal(self, signum: int):
        """
        Send ``signum`` to the child process.

        The process id may be stale if the child has already exited and been
        reaped. Signalling it is then a no-op, not an error.
        """
        if self._process.returncode is not None:
            logger.debug(f"Process {self.pid} already exited, not sending signal {signum}")
            return
        try:
            os.kill(self._process.pid, signum)
        except ProcessLookupError:
            logger.debug(f"Process {self.pid} no longer exists, signal {signum} not delivered")

    def kill(self):
        """Kill the child process if it is still running."""
        self.send_signal(signal.SIGKILL)

    def try_wait(self) -> Optional[ExitStatus]:
        """Return the exit status if the process has exited, without blocking."""
        if self._returncode is None and self._process.returncode is not None:
            self._returncode = self._process.returncode
        if self._returncode is None:
            return None
        return self._status()

    async def _race(self, waiter: asyncio.Future) -> bool:
        # True if the process finished first, False if cancellation won.
        exit_seen = False
        try:
            while True:
                how = self._check_cancel()
                if waiter.done():
                    return True
                draining = False
                if not exit_seen and self._process.returncode is not None:
                    # Exited, the pipes get one poll cycle to drain before cancellation counts.
                    exit_seen = draining = True
                    if self._returncode is None:
                        self._returncode = self._process.returncode
                if how is not None and not draining:
                    self._how_cancelled = how
                    logger.debug(f"Cancelling process {self.pid} with {how.name}")
                    self.send_signal(how.signum)
                    return False
                await asyncio.wait({waiter}, timeout=self._poll_interval)
        finally:
            if not waiter.done():
                waiter.cancel()

    async def wait(self) -> ExitStatus:
        """
        Wait for the process to exit, or for the cancellation check to fire.

        If cancellation wins, the process is signalled once and this returns
        immediately without waiting for the signal to take effect. An exit
        status, once recorded, is final.
        """
        if self._settled():
            return self._status()
        waiter = asyncio.ensure_future(self._process.wait())
        if await self._race(waiter):
            self._returncode = waiter.result()
        return self._status()

    async def wait_with_output(self) -> Output:
        """
        Like ``wait()``, but also collect standard output and error.

        Cancellation is still honoured after the process has exited while its
        pipes are open, e.g. held by a background child. Reading then stops,
        ``output`` is ``None`` and the real exit code stays available through
        ``returncode``.
        """
        if self._how_cancelled is not None:
            return Output(how_cancelled=self._how_cancelled, output=None)
        if self._output is not None:
            return Output(how_cancelled=None, output=self._output)

        waiter = asyncio.ensure_future(self._process.communicate())
        if not await self._race(waiter):
            return Output(how_cancelled=self._how_cancelled, output=None)

        stdout, stderr = waiter.result()
        self._returncode = self._process.returncode
        self._output = CompletedOutput(
            returncode=self._returncode,
            stdout=stdout or b'',
            stderr=stderr or b'',
        )
        return Output(how_cancelled=None, output=self._output)

    async def kill_and_wait(self, grace: float = 0.0, timeout: float = 5.0):
        """
        Kill a still-running process and reap it.

        Args:
            grace: Seconds to let the process exit on its own before killing it
            timeout: Seconds to wait for the process to exit after SIGKILL
        """
        if self._process.returncode is not None:
            return
        if grace > 0:
            try:
                await asyncio.wait_for(self._process.wait(), grace)
                return
            except asyncio.TimeoutError:
                logger.warning(f"Process {self.pid} still running {grace}s after cancellation, killing it")
        self.kill()
        try:
            await asyncio.wait_for(self._process.wait(), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Process {self.pid} did not exit within {timeout}s of SIGKILL")
