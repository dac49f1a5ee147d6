#!/usr/bin/env python3
"""
BIDS MRIQC Participant Runner

Run mriqc one participant at a time, in parallel. Specify the number of
parallel instances to throttle system resource usage.

This script:
1. Checks that the BIDS, output and working directories are usable
2. Selects participants from the command line or from the dataset
3. Runs mriqc on a symlinked copy of the dataset holding one participant
4. Cancels running participants on Ctrl+C or when they time out
5. Writes a summary of the run

Author: MRI Lab Graz
License: MIT
"""

import asyncio
import logging
import os
import signal
import sys
import tempfile
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import click
from bids.exceptions import BIDSValidationError
from colorama import Fore, Style, init as colorama_init

from mriqc1 import __version__
from mriqc1.bids_utils import check_basic_structure, discover_participants, unique_labels
from mriqc1.config import ConfigError, deep_update, load_config, resolve_run_options
from mriqc1.mriqc_utils import find_executable
from mriqc1.orchestrator import InterruptFlag, Orchestrator, RunOptions, RunOutcome, RunSummary
from mriqc1.report import TqdmProgress, write_summary

colorama_init(autoreset=True)

logger = logging.getLogger(__name__)

EXIT_USAGE = 2


def setup_logging(log_level: int, log_dir: Optional[Path] = None, log_name: Optional[str] = None,
                  console: bool = True, quiet: bool = False) -> Path:
    """Configure logging for the current run and return the log file path."""

    root_logger = logging.getLogger()
    # Clear existing handlers to avoid duplicate logs when rerunning in the same session
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    handlers: List[logging.Handler] = []

    if log_dir is None:
        log_dir = Path.cwd() / 'logs'
    else:
        log_dir = Path(log_dir)

    log_dir.mkdir(parents=True, exist_ok=True)

    if not log_name:
        log_name = f"mriqc1_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"

    log_file_path = log_dir / log_name

    # File handler: plain log
    file_handler = logging.FileHandler(log_file_path)
    file_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
    handlers.append(file_handler)

    # Console handler: messages already carry their own color/emoji codes
    if console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(logging.Formatter('%(message)s'))
        if quiet:
            console_handler.setLevel(logging.ERROR)
        handlers.append(console_handler)

    for handler in handlers:
        root_logger.addHandler(handler)

    root_logger.setLevel(log_level)
    return log_file_path


def check_directories(options: RunOptions) -> bool:
    """Make sure the BIDS directory is readable and output/work directories are writable."""
    try:
        os.listdir(options.bids_dir)
    except OSError as exc:
        logger.error(f"{Fore.RED}❌ Couldn't read BIDS directory {options.bids_dir}: {exc}{Style.RESET_ALL}")
        return False

    writable = [('Output', options.out_dir)]
    if options.work_dir is not None:
        writable.append(('Working', options.work_dir))
    for label, directory in writable:
        try:
            directory.mkdir(parents=True, exist_ok=True)
            with tempfile.TemporaryDirectory(dir=directory):
                pass
        except OSError as exc:
            logger.error(f"{Fore.RED}❌ {label} directory is not writable: {directory}: {exc}{Style.RESET_ALL}")
            return False
    return True


def select_participants(bids_dir: Path, participant_label) -> List[str]:
    """Use the labels given on the command line, or every participant in the dataset."""
    if participant_label:
        return unique_labels(participant_label)
    logger.info("No participants specified, processing all participants in the dataset")
    return discover_participants(bids_dir)


async def run_with_signals(orchestrator: Orchestrator, participants: List[str]) -> RunSummary:
    """Run the orchestrator with SIGINT/SIGTERM setting its interrupt flag."""
    loop = asyncio.get_running_loop()
    handled = (signal.SIGINT, signal.SIGTERM)

    def on_signal(signum: int):
        if not orchestrator.interrupted.is_set():
            logger.warning(f"{Fore.YELLOW}🛑 Received signal {signum}, "
                           f"waiting for running participants to stop...{Style.RESET_ALL}")
        orchestrator.interrupted.set()

    for signum in handled:
        loop.add_signal_handler(signum, on_signal, signum)
    try:
        return await orchestrator.run(participants)
    finally:
        for signum in handled:
            loop.remove_signal_handler(signum)


@click.command(context_settings=dict(ignore_unknown_options=True))
@click.argument('bids_dir', type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.argument('output_dir', type=click.Path(file_okay=False, path_type=Path))
@click.argument('extra_args', nargs=-1, type=click.UNPROCESSED)
@click.option('--participant-label', multiple=True,
              help='Participant to process (e.g., sub-01 or just 01). Repeat for several; default: all')
@click.option('-n', '--n-jobs', type=click.IntRange(min=1), help='Number of participants to run in parallel')
@click.option('-w', '--work-dir', type=click.Path(file_okay=False, path_type=Path),
              help='Working directory for temporary files (default: system temp directory)')
@click.option('--mriqc', envvar='MRIQC', type=click.Path(path_type=Path), help='Location of mriqc binary')
@click.option('--resume', is_flag=True, help='Skip participants whose output directory already exists')
@click.option('--timeout', type=click.FloatRange(min=0, min_open=True),
              help='Cancel a participant after this many seconds')
@click.option('--werror', is_flag=True,
              help='Convert warnings about failure to process a participant to errors and stop on the first error')
@click.option('--config', type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help='Configuration file (.json, .yml or .yaml)')
@click.option('--log-dir', type=click.Path(file_okay=False, path_type=Path),
              help='Directory to write log files (default: <output_dir>/logs)')
@click.option('-q', '--quiet', is_flag=True, help="Be quiet, don't show progress bar or warnings")
@click.option('--verbose', is_flag=True, help='Verbose output')
@click.version_option(__version__)
def main(bids_dir, output_dir, extra_args, participant_label, n_jobs, work_dir, mriqc,
         resume, timeout, werror, config, log_dir, quiet, verbose):
    """
    Run mriqc on each participant of a BIDS dataset, in parallel.

    BIDS_DIR: Path to BIDS dataset directory

    OUTPUT_DIR: Path to output directory

    EXTRA_ARGS: Arguments after -- are passed through to mriqc

    \b
    Examples:
      # Two participants, two at a time
      bids_mriqc1.py /data/bids /data/mriqc --participant-label 01 --participant-label 02 -n 2

      # Everything, skipping finished participants, passing options to mriqc
      bids_mriqc1.py /data/bids /data/mriqc -n 4 --resume -- -m T1w --no-sub
    """
    log_level = logging.DEBUG if verbose else logging.INFO
    resolved_log_dir = log_dir if log_dir else (output_dir / 'logs')
    log_file_path = setup_logging(log_level, log_dir=resolved_log_dir, quiet=quiet)

    logger.info(f"{Fore.MAGENTA}{'=' * 60}{Style.RESET_ALL}")
    logger.info(f"{Fore.MAGENTA}🧠 MRIQC participant runner{Style.RESET_ALL}")
    logger.info(f"{Fore.MAGENTA}{'=' * 60}{Style.RESET_ALL}")
    logger.info(f"{Fore.CYAN}📁 BIDS directory: {bids_dir}{Style.RESET_ALL}")
    logger.info(f"{Fore.CYAN}📂 Output directory: {output_dir}{Style.RESET_ALL}")
    logger.info(f"{Fore.CYAN}📝 Log file: {log_file_path}{Style.RESET_ALL}")

    # Command-line options override the configuration file
    try:
        run_config = load_config(config)
        overrides = {'run': {}, 'mriqc': {}}
        if n_jobs is not None:
            overrides['run']['n_jobs'] = n_jobs
        if work_dir is not None:
            overrides['run']['work_dir'] = str(work_dir)
        if resume:
            overrides['run']['resume'] = True
        if timeout is not None:
            overrides['run']['timeout_seconds'] = timeout
        if werror:
            overrides['run']['werror'] = True
        if mriqc is not None:
            overrides['mriqc']['executable'] = str(mriqc)
        if extra_args:
            overrides['mriqc']['extra_args'] = list(extra_args)
        deep_update(run_config, overrides)
        options = resolve_run_options(run_config, bids_dir, output_dir)
    except ConfigError as exc:
        logger.error(f"{Fore.RED}❌ {exc}{Style.RESET_ALL}")
        sys.exit(EXIT_USAGE)

    if options.work_dir:
        logger.info(f"{Fore.CYAN}🗂️ Working directory: {options.work_dir}{Style.RESET_ALL}")

    if not check_directories(options):
        sys.exit(EXIT_USAGE)
    if not check_basic_structure(options.bids_dir):
        logger.warning(f"{Fore.YELLOW}⚠️ {options.bids_dir} does not look like a BIDS dataset{Style.RESET_ALL}")
    if find_executable(options.mriqc) is None:
        logger.error(f"{Fore.RED}❌ mriqc executable not found: {options.mriqc}{Style.RESET_ALL}")
        sys.exit(EXIT_USAGE)

    try:
        participants = select_participants(options.bids_dir, participant_label)
    except BIDSValidationError as exc:
        logger.error(f"{Fore.RED}❌ Couldn't index BIDS dataset: {exc}{Style.RESET_ALL}")
        sys.exit(EXIT_USAGE)
    if not participants:
        logger.error(f"{Fore.RED}❌ No participants to process!{Style.RESET_ALL}")
        sys.exit(EXIT_USAGE)
    logger.info(f"Processing participants: {', '.join(participants)}")

    if not quiet:
        click.echo("Running mriqc, this could take a long time. Press Ctrl+C to cancel...", err=True)

    progress = TqdmProgress(len(participants), disable=quiet)
    orchestrator = Orchestrator(options, InterruptFlag(), progress)
    summary = asyncio.run(run_with_signals(orchestrator, participants))

    write_summary(summary, resolved_log_dir)

    logger.info(f"{Fore.MAGENTA}{'=' * 60}{Style.RESET_ALL}")
    if summary.outcome is RunOutcome.COMPLETED_OK and summary.failed:
        failed = ', '.join(r.participant for r in summary.failed)
        logger.warning(f"{Fore.YELLOW}⚠️ Processing completed with warnings, failed participants: "
                       f"{failed}{Style.RESET_ALL}")
    elif summary.outcome is RunOutcome.COMPLETED_OK:
        logger.info(f"{Fore.GREEN}🎉 Processing completed successfully!{Style.RESET_ALL}")
    elif summary.outcome is RunOutcome.INTERRUPTED:
        logger.error(f"{Fore.RED}🛑 Processing interrupted by signal{Style.RESET_ALL}")
    else:
        logger.error(f"{Fore.RED}❌ Processing stopped after a participant failed{Style.RESET_ALL}")
    logger.info(f"{Fore.MAGENTA}{'=' * 60}{Style.RESET_ALL}")

    sys.exit(summary.outcome.exit_code)


if __name__ == '__main__':
    main()
