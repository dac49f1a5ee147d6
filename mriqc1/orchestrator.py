"""
Run mriqc over many participants with a bounded number of parallel jobs.

Participants are admitted in input order, at most ``n_jobs`` at a time. Each
job gets a cancellation check that fires when the run is interrupted, when
the job exceeds its timeout, or when another job failed fatally.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from colorama import Fore, Style

from .bids_utils import BIDSError, participant_dirname
from .mriqc_utils import (DEFAULT_MRIQC, INTERRUPT_GRACE, MriqcError, ParticipantOptions,
                          run_participant)
from .process_utils import DEFAULT_POLL_INTERVAL, CancelSignal
from .temp_utils import FileSystemError

logger = logging.getLogger(__name__)


class JobState(Enum):
    SKIPPED = 'skipped'
    SUCCEEDED = 'succeeded'
    CANCELLED = 'cancelled'
    TIMED_OUT = 'timed_out'
    FAILED = 'failed'

    @property
    def ok(self) -> bool:
        return self is not JobState.FAILED


class RunOutcome(Enum):
    COMPLETED_OK = 'completed_ok'
    COMPLETED_WITH_FAILURE = 'completed_with_failure'
    INTERRUPTED = 'interrupted'

    @property
    def exit_code(self) -> int:
        return {
            RunOutcome.COMPLETED_OK: 0,
            RunOutcome.COMPLETED_WITH_FAILURE: 1,
            RunOutcome.INTERRUPTED: 130,
        }[self]


@dataclass
class JobResult:
    participant: str
    state: JobState
    elapsed: float = 0.0
    error: Optional[BaseException] = None

    @property
    def message(self) -> str:
        return str(self.error) if self.error is not None else ''


@dataclass
class RunSummary:
    outcome: RunOutcome
    results: List[JobResult] = field(default_factory=list)
    not_started: List[str] = field(default_factory=list)

    def count(self, state: JobState) -> int:
        return sum(1 for r in self.results if r.state is state)

    @property
    def failed(self) -> List[JobResult]:
        return [r for r in self.results if r.state is JobState.FAILED]


class InterruptFlag:
    """Flag that goes from unset to set once and is never cleared."""

    def __init__(self):
        self._set = False

    def set(self):
        self._set = True

    def is_set(self) -> bool:
        return self._set


class RunListener:
    """Receives lifecycle events from the orchestrator. Methods do nothing by default."""

    def job_started(self, participant: str):
        pass

    def job_finished(self, result: JobResult):
        pass

    def run_finished(self, summary: RunSummary):
        pass


@dataclass
class RunOptions:
    bids_dir: Path
    out_dir: Path
    mriqc: Path = Path(DEFAULT_MRIQC)
    work_dir: Optional[Path] = None
    extra_args: List[str] = field(default_factory=list)
    n_jobs: int = 1
    resume: bool = False
    timeout: Optional[float] = None
    werror: bool = False
    poll_interval: float = DEFAULT_POLL_INTERVAL
    interrupt_grace: float = INTERRUPT_GRACE

    def __post_init__(self):
        self.bids_dir = Path(self.bids_dir)
        self.out_dir = Path(self.out_dir)
        self.mriqc = Path(self.mriqc)
        if self.work_dir is not None:
            self.work_dir = Path(self.work_dir)
        if int(self.n_jobs) < 1:
            raise ValueError(f"n_jobs must be at least 1, got {self.n_jobs}")
        self.n_jobs = int(self.n_jobs)
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError(f"timeout must be positive, got {self.timeout}")

    def participant_options(self, participant: str) -> ParticipantOptions:
        return ParticipantOptions(
            bids_dir=self.bids_dir,
            out_dir=self.out_dir,
            participant=participant,
            mriqc=self.mriqc,
            work_dir=self.work_dir,
            extra_args=list(self.extra_args),
        )


class JobCancelCheck:
    """
    Cancellation check for one job.

    The supervisor first calls the check right after mriqc is spawned, so the
    timeout clock starts there and excludes setting up the shadow tree.
    """

    def __init__(self, participant: str, interrupted: InterruptFlag, aborted: Callable[[], bool],
                 timeout: Optional[float] = None):
        self.participant = participant
        self.started: Optional[float] = None
        self.timed_out = False
        self._interrupted = interrupted
        self._aborted = aborted
        self._timeout = timeout

    def __call__(self) -> Optional[CancelSignal]:
        if self.started is None:
            self.started = time.monotonic()
        if self._aborted():
            return CancelSignal.KILL
        if self._interrupted.is_set():
            return CancelSignal.INTERRUPT
        if self._timeout is not None and time.monotonic() - self.started > self._timeout:
            if not self.timed_out:
                logger.warning(f"{Fore.YELLOW}⏱️ Participant {self.participant} exceeded timeout "
                               f"of {self._timeout}s, cancelling{Style.RESET_ALL}")
                self.timed_out = True
            return CancelSignal.INTERRUPT
        return None


class Orchestrator:
    """Run mriqc for a list of participants."""

    def __init__(self, options: RunOptions, interrupted: Optional[InterruptFlag] = None,
                 listener: Optional[RunListener] = None):
        self.options = options
        self.interrupted = interrupted or InterruptFlag()
        self.listener = listener or RunListener()
        self._failed = False

    def already_processed(self, participant: str) -> bool:
        return (self.options.out_dir / participant_dirname(participant)).exists()

    def _aborted(self) -> bool:
        return self._failed

    def _stop_admitting(self) -> bool:
        return self._failed or self.interrupted.is_set()

    async def run(self, participants: Iterable[str]) -> RunSummary:
        """
        Process ``participants`` and classify the run.

        Args:
            participants: Participant labels, in admission order

        Returns:
            Per-participant results in input order and the overall outcome
        """
        participants = list(participants)
        results: Dict[int, JobResult] = {}
        not_started: List[str] = []
        slots = asyncio.Semaphore(self.options.n_jobs)
        tasks = []

        logger.info(f"Processing {len(participants)} participants with up to "
                    f"{self.options.n_jobs} parallel jobs")

        try:
            for index, participant in enumerate(participants):
                if self._stop_admitting():
                    not_started = participants[index:]
                    break

                if self.options.resume and self.already_processed(participant):
                    logger.info(f"{Fore.CYAN}⏭️ Skipping participant {participant}, "
                                f"output already exists{Style.RESET_ALL}")
                    result = JobResult(participant, JobState.SKIPPED)
                    results[index] = result
                    self.listener.job_finished(result)
                    continue

                await slots.acquire()
                if self._stop_admitting():
                    slots.release()
                    not_started = participants[index:]
                    break
                tasks.append(asyncio.create_task(self._run_job(index, participant, slots, results)))

            if tasks:
                await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

        if not_started:
            logger.info(f"{len(not_started)} participants were not started: {', '.join(not_started)}")

        summary = RunSummary(
            outcome=self._outcome(),
            results=[results[i] for i in sorted(results)],
            not_started=not_started,
        )
        self.listener.run_finished(summary)
        return summary

    def _outcome(self) -> RunOutcome:
        if self._failed:
            return RunOutcome.COMPLETED_WITH_FAILURE
        if self.interrupted.is_set():
            return RunOutcome.INTERRUPTED
        return RunOutcome.COMPLETED_OK

    async def _run_job(self, index: int, participant: str, slots: asyncio.Semaphore,
                       results: Dict[int, JobResult]):
        check = JobCancelCheck(participant, self.interrupted, self._aborted, self.options.timeout)
        result = JobResult(participant, JobState.FAILED)
        started = time.monotonic()
        self.listener.job_started(participant)
        try:
            how = await run_participant(
                self.options.participant_options(participant),
                check,
                poll_interval=self.options.poll_interval,
                interrupt_grace=self.options.interrupt_grace,
            )
            if how is None:
                result.state = JobState.SUCCEEDED
                logger.info(f"{Fore.GREEN}✅ Participant {participant} finished{Style.RESET_ALL}")
            elif check.timed_out:
                result.state = JobState.TIMED_OUT
            else:
                result.state = JobState.CANCELLED
        except (MriqcError, BIDSError, FileSystemError) as exc:
            result.error = exc
            self._classify_failure(result)
        except Exception as exc:
            logger.exception(f"Unexpected error processing participant {participant}")
            result.error = exc
            self._classify_failure(result)
        finally:
            result.elapsed = time.monotonic() - started
            results[index] = result
            self.listener.job_finished(result)
            slots.release()

    def _classify_failure(self, result: JobResult):
        result.state = JobState.FAILED
        if self.options.werror:
            logger.error(f"{Fore.RED}❌ Error: participant {result.participant}: {result.error}{Style.RESET_ALL}")
            self._failed = True
        else:
            logger.warning(f"{Fore.YELLOW}⚠️ Warning: participant {result.participant}: "
                           f"{result.error}{Style.RESET_ALL}")


def run(options: RunOptions, participants: Iterable[str], interrupted: Optional[InterruptFlag] = None,
        listener: Optional[RunListener] = None) -> RunSummary:
    """Synchronous entry point around ``Orchestrator.run()``."""
    orchestrator = Orchestrator(options, interrupted, listener)
    return asyncio.run(orchestrator.run(participants))
