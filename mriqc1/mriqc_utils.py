"""
MRIQC utilities for running one participant at a time.

A ``ParticipantJob`` sets up a private working directory holding a shadow
BIDS tree with a single participant, runs mriqc (or any BIDS-App with the
same command-line contract) on it, and removes everything it created when
it is closed.
"""

import asyncio
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

from .bids_utils import ParticipantView, ScopedDatasetView
from .process_utils import (CancelCheck, CancelSignal, CancellableProcess, DEFAULT_POLL_INTERVAL,
                            never_cancel)
from .temp_utils import FileSystemError, ScopedDirectory

logger = logging.getLogger(__name__)

DEFAULT_MRIQC = 'mriqc'
WORK_DIR_PREFIX = 'mriqc1_'
OUTPUT_TAIL_CHARS = 2000
INTERRUPT_GRACE = 10.0


class MriqcError(Exception):
    """Error running mriqc for one participant."""


class TempDirError(MriqcError):
    def __init__(self, work_dir: Path):
        self.work_dir = Path(work_dir)
        super().__init__(f"Couldn't create temporary directory within working directory: {self.work_dir}")


class ProcessSpawnError(MriqcError):
    """The process could not be started or waited on. No output is available."""

    def __init__(self, cmd: str, args: Sequence[str]):
        self.cmd = str(cmd)
        self.cmd_args = [str(a) for a in args]
        super().__init__(f"Error running mriqc.\nCommand line: {self.cmd} {' '.join(self.cmd_args)}")


class ProcessFailedError(MriqcError):
    """The process ran and exited with a non-zero status."""

    def __init__(self, cmd: str, args: Sequence[str], returncode: Optional[int],
                 stdout: bytes = b'', stderr: bytes = b''):
        self.cmd = str(cmd)
        self.cmd_args = [str(a) for a in args]
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        text = stderr.decode('utf-8', errors='replace')[-OUTPUT_TAIL_CHARS:]
        super().__init__(
            f"Error running mriqc, exited with status {returncode}.\n"
            f"Command line: {self.cmd} {' '.join(self.cmd_args)}\n"
            f"Output: {text}"
        )


@dataclass
class ParticipantOptions:
    """Options for ``ParticipantJob.start()``."""

    bids_dir: Path
    out_dir: Path
    participant: str
    mriqc: Path = Path(DEFAULT_MRIQC)
    work_dir: Optional[Path] = None
    extra_args: List[str] = field(default_factory=list)

    def resolved_work_dir(self) -> Path:
        return Path(self.work_dir) if self.work_dir else Path(tempfile.gettempdir())


def build_command_args(shadow_root: Path, out_dir: Path, work_dir: Path, participant: str,
                       extra_args: Sequence[str] = ()) -> List[str]:
    """
    Compose mriqc's command-line arguments for a single participant.

    Returns:
        ``[<bids>, <out>, participant, --work-dir, <work>, --participant-label, <id>, *extra]``
    """
    args = [
        str(shadow_root),
        str(out_dir),
        'participant',
        '--work-dir', str(work_dir),
        '--participant-label', participant,
    ]
    args.extend(str(a) for a in extra_args)
    return args


class ParticipantJob:
    """Resources for an instance of mriqc processing a single participant."""

    def __init__(self, participant: str, temp_dir: ScopedDirectory, view: ScopedDatasetView,
                 participant_view: ParticipantView, process: CancellableProcess,
                 cmd: str, args: List[str]):
        self.participant = participant
        self.temp_dir = temp_dir
        self.view = view
        self.participant_view = participant_view
        self.process = process
        self.cmd = cmd
        self.args = args
        self._closed = False

    @classmethod
    async def start(cls, options: ParticipantOptions, check_cancel: Optional[CancelCheck] = None,
                    poll_interval: float = DEFAULT_POLL_INTERVAL) -> "ParticipantJob":
        """
        Set up the shadow BIDS tree and spawn mriqc for one participant.

        Args:
            options: Job options
            check_cancel: Called periodically while waiting; returning a
                ``CancelSignal`` cancels this instance of mriqc
            poll_interval: Seconds between cancellation checks

        Returns:
            The running job

        Raises:
            TempDirError: If the private working directory could not be created
            BIDSError: If the shadow tree could not be set up, e.g. the participant is missing
            FileSystemError: If a symlink or directory could not be created
            ProcessSpawnError: If mriqc could not be started
        """
        work_root = options.resolved_work_dir()
        cmd = str(options.mriqc)

        try:
            temp_dir = await ScopedDirectory.create_unique(work_root, prefix=WORK_DIR_PREFIX)
        except FileSystemError as exc:
            raise TempDirError(work_root) from exc

        view = None
        participant_view = None
        try:
            view = await ScopedDatasetView.create_in(options.bids_dir, temp_dir)
            participant_view = await ParticipantView.create(options.participant, view)

            args = build_command_args(view.path, options.out_dir, temp_dir.path,
                                      options.participant, options.extra_args)
            logger.debug(f"mriqc command: {cmd} {' '.join(args)}")
            try:
                process = await asyncio.create_subprocess_exec(
                    cmd, *args,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=str(temp_dir.path),
                )
            except OSError as exc:
                raise ProcessSpawnError(cmd, args) from exc
        except BaseException:
            if participant_view is not None:
                participant_view.discard()
            if view is not None:
                view.discard()
            temp_dir.discard()
            raise

        logger.info(f"Started mriqc for participant {options.participant} (pid {process.pid})")
        supervised = CancellableProcess(process, check_cancel or never_cancel, poll_interval)
        return cls(options.participant, temp_dir, view, participant_view, supervised, cmd, args)

    @property
    def work_dir(self) -> Path:
        """Private working directory of this job."""
        return self.temp_dir.path

    @property
    def how_cancelled(self) -> Optional[CancelSignal]:
        return self.process.how_cancelled

    async def wait(self) -> Optional[CancelSignal]:
        """
        Wait for mriqc to finish or to be cancelled, whichever comes first.

        Returns:
            How the process was cancelled, or ``None`` if it finished successfully

        Raises:
            ProcessFailedError: If mriqc exited with a non-zero status
            ProcessSpawnError: If waiting on the process failed
        """
        try:
            result = await self.process.wait_with_output()
        except OSError as exc:
            raise ProcessSpawnError(self.cmd, self.args) from exc

        if result.how_cancelled is not None:
            logger.info(f"mriqc for participant {self.participant} cancelled ({result.how_cancelled.name})")
            return result.how_cancelled

        output = result.output
        if output.returncode != 0:
            raise ProcessFailedError(self.cmd, self.args, output.returncode, output.stdout, output.stderr)
        logger.debug(f"mriqc for participant {self.participant} exited successfully")
        return None

    async def close(self, interrupt_grace: float = INTERRUPT_GRACE):
        """
        Kill mriqc if it is still running and remove all temporary files.

        An interrupted mriqc gets ``interrupt_grace`` seconds to shut down
        before it is killed.
        """
        if self._closed:
            return
        self._closed = True
        grace = interrupt_grace if self.how_cancelled is CancelSignal.INTERRUPT else 0.0
        try:
            await self.process.kill_and_wait(grace=grace)
        finally:
            self.participant_view.discard()
            self.view.discard()
            self.temp_dir.discard()
        logger.debug(f"Cleaned up working directory for participant {self.participant}")

    async def __aenter__(self) -> "ParticipantJob":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()


async def run_participant(options: ParticipantOptions, check_cancel: Optional[CancelCheck] = None,
                          poll_interval: float = DEFAULT_POLL_INTERVAL,
                          interrupt_grace: float = INTERRUPT_GRACE) -> Optional[CancelSignal]:
    """Start a ``ParticipantJob``, wait for it and clean up on every exit path."""
    job = await ParticipantJob.start(options, check_cancel, poll_interval)
    try:
        return await job.wait()
    finally:
        await job.close(interrupt_grace)


def find_executable(mriqc: Path) -> Optional[str]:
    """Resolve ``mriqc`` on PATH unless it already names a file."""
    mriqc = Path(mriqc)
    if os.sep in str(mriqc):
        return str(mriqc) if os.access(mriqc, os.X_OK) else None
    return shutil.which(str(mriqc))
