import asyncio
import json
import logging
import os
import signal

import pytest
from click.testing import CliRunner

from bids_mriqc1 import main, run_with_signals, select_participants
from conftest import listdir
from mriqc1 import __version__
from mriqc1.orchestrator import InterruptFlag, JobState, Orchestrator, RunOptions, RunOutcome


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()


@pytest.fixture
def log_dir(tmp_path):
    return tmp_path / "logs"


def invoke(*args, **kwargs):
    return CliRunner().invoke(main, [str(a) for a in args], **kwargs)


def read_summary(log_dir):
    with open(log_dir / "processing_summary.json") as f:
        return json.load(f)


def test_process_selected_participant(bids_dir, out_dir, work_root, log_dir, stub_mriqc, calls_file):
    result = invoke(bids_dir, out_dir, "--participant-label", "sub-001", "-q", "--log-dir", log_dir,
                    "-w", work_root, "--mriqc", stub_mriqc, "--", "--no-sub", "-m", "T1w")

    assert result.exit_code == 0, result.output
    assert listdir(out_dir) == ["sub-001"]
    assert listdir(work_root) == []
    call = calls_file.read_text().strip()
    assert call.startswith("001 ")
    assert call.endswith("--participant-label 001 --no-sub -m T1w")

    summary = read_summary(log_dir)
    assert summary['outcome'] == 'completed_ok'
    assert [r['participant'] for r in summary['results']] == ["001"]
    assert any(path.suffix == '.log' for path in log_dir.iterdir())


def test_process_all_participants(bids_dir, out_dir, work_root, log_dir, stub_mriqc):
    result = invoke(bids_dir, out_dir, "-n", 2, "-q", "--log-dir", log_dir, "-w", work_root,
                    "--mriqc", stub_mriqc)

    assert result.exit_code == 0, result.output
    assert listdir(out_dir) == ["sub-001", "sub-002"]


def test_mriqc_from_environment(bids_dir, out_dir, work_root, log_dir, stub_mriqc):
    result = invoke(bids_dir, out_dir, "--participant-label", "002", "-q", "--log-dir", log_dir,
                    "-w", work_root, env={"MRIQC": str(stub_mriqc)})

    assert result.exit_code == 0, result.output
    assert listdir(out_dir) == ["sub-002"]


def test_resume(bids_dir, out_dir, work_root, log_dir, stub_mriqc, calls_file):
    (out_dir / "sub-001").mkdir()
    result = invoke(bids_dir, out_dir, "--resume", "-q", "--log-dir", log_dir, "-w", work_root,
                    "--mriqc", stub_mriqc)

    assert result.exit_code == 0, result.output
    assert calls_file.read_text().split()[0] == "002"
    states = {r['participant']: r['state'] for r in read_summary(log_dir)['results']}
    assert states == {"001": "skipped", "002": "succeeded"}


def test_failed_participant_is_a_warning(bids_dir, out_dir, work_root, log_dir, stub_mriqc):
    result = invoke(bids_dir, out_dir, "--participant-label", "003", "--participant-label", "001", "-q",
                    "--log-dir", log_dir, "-w", work_root, "--mriqc", stub_mriqc)

    assert result.exit_code == 0, result.output
    assert listdir(out_dir) == ["sub-001"]
    assert read_summary(log_dir)['failed_participants'] == 1


def test_werror_fails_run(bids_dir, out_dir, work_root, log_dir, stub_mriqc):
    result = invoke(bids_dir, out_dir, "--participant-label", "003", "--participant-label", "001",
                    "--werror", "-q", "--log-dir", log_dir, "-w", work_root, "--mriqc", stub_mriqc)

    assert result.exit_code == 1
    assert listdir(out_dir) == []
    summary = read_summary(log_dir)
    assert summary['outcome'] == 'completed_with_failure'
    assert summary['not_started_participants'] == 1


def test_missing_executable(bids_dir, out_dir, log_dir, tmp_path):
    result = invoke(bids_dir, out_dir, "-q", "--log-dir", log_dir, "--mriqc", tmp_path / "no-such-mriqc")
    assert result.exit_code == 2


def test_invalid_config(bids_dir, out_dir, log_dir, stub_mriqc, tmp_path):
    config_file = tmp_path / "config.yaml"
    config_file.write_text("run:\n  timeout_seconds: -1\n")
    result = invoke(bids_dir, out_dir, "-q", "--log-dir", log_dir, "--mriqc", stub_mriqc,
                    "--config", config_file)
    assert result.exit_code == 2


def test_config_file_supplies_options(bids_dir, out_dir, work_root, log_dir, stub_mriqc, calls_file, tmp_path):
    config_file = tmp_path / "config.yaml"
    config_file.write_text(
        f"mriqc:\n  executable: {stub_mriqc}\n  extra_args: [--nprocs, '1']\n"
        f"run:\n  n_jobs: 2\n  work_dir: {work_root}\n"
    )
    result = invoke(bids_dir, out_dir, "-q", "--log-dir", log_dir, "--config", config_file)

    assert result.exit_code == 0, result.output
    calls = calls_file.read_text().splitlines()
    assert len(calls) == 2
    assert all(call.endswith("--nprocs 1") for call in calls)


def test_no_participants(tmp_path, out_dir, log_dir, stub_mriqc):
    bids = tmp_path / "empty_bids"
    bids.mkdir()
    (bids / "dataset_description.json").write_text('{"Name": "Empty", "BIDSVersion": "1.6.0"}')
    result = invoke(bids, out_dir, "-q", "--log-dir", log_dir, "--mriqc", stub_mriqc)
    assert result.exit_code == 2


def test_invalid_n_jobs(bids_dir, out_dir):
    result = invoke(bids_dir, out_dir, "-n", 0)
    assert result.exit_code == 2


def test_version():
    result = invoke("--version")
    assert result.exit_code == 0
    assert __version__ in result.output


def test_select_participants(bids_dir):
    assert select_participants(bids_dir, ("sub-002", "002", "001")) == ["002", "001"]
    assert select_participants(bids_dir, ()) == ["001", "002"]


@pytest.mark.parametrize("signum", [signal.SIGINT, signal.SIGTERM])
def test_signal_interrupts_run(bids_dir, out_dir, work_root, slow_mriqc, signum):
    options = RunOptions(bids_dir=bids_dir, out_dir=out_dir, mriqc=slow_mriqc, work_dir=work_root,
                         poll_interval=0.05, interrupt_grace=2.0)
    orchestrator = Orchestrator(options, InterruptFlag())

    async def scenario():
        loop = asyncio.get_running_loop()
        loop.call_later(0.3, os.kill, os.getpid(), signum)
        summary = await run_with_signals(orchestrator, ["001", "002"])
        # Nothing is left registered once the run is over
        leftover = [loop.remove_signal_handler(s) for s in (signal.SIGINT, signal.SIGTERM)]
        return summary, leftover

    summary, leftover = asyncio.run(scenario())
    assert orchestrator.interrupted.is_set()
    assert summary.outcome is RunOutcome.INTERRUPTED
    assert [(r.participant, r.state) for r in summary.results] == [("001", JobState.CANCELLED)]
    assert summary.not_started == ["002"]
    assert leftover == [False, False]
    assert listdir(work_root) == []


def test_default_log_dir_is_inside_output(bids_dir, out_dir, work_root, stub_mriqc):
    result = invoke(bids_dir, out_dir, "--participant-label", "001", "-q", "-w", work_root,
                    "--mriqc", stub_mriqc)

    assert result.exit_code == 0, result.output
    log_dir = out_dir / "logs"
    assert read_summary(log_dir)['outcome'] == 'completed_ok'
    assert any(path.suffix == '.log' for path in log_dir.iterdir())
