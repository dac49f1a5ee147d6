import json
import os
import stat
from pathlib import Path

import pytest


def create_sample_bids_structure(bids_dir: Path, participants=('001', '002'), sourcedata=True,
                                 participants_tsv=True, description=True) -> Path:
    """Create a minimal BIDS structure for testing."""
    for participant in participants:
        anat = bids_dir / f"sub-{participant}" / "anat"
        anat.mkdir(parents=True, exist_ok=True)
        (anat / f"sub-{participant}_T1w.nii.gz").touch()

    if description:
        dataset_description = {
            "Name": "Sample Dataset",
            "BIDSVersion": "1.6.0",
            "Authors": ["Test Author"],
        }
        with open(bids_dir / "dataset_description.json", 'w') as f:
            json.dump(dataset_description, f, indent=2)

    if sourcedata:
        (bids_dir / "sourcedata").mkdir(exist_ok=True)
        (bids_dir / "sourcedata" / "raw.txt").write_text("raw")

    if participants_tsv:
        lines = ["participant_id"] + [f"sub-{p}" for p in participants]
        (bids_dir / "participants.tsv").write_text("\n".join(lines) + "\n")

    return bids_dir


def make_tool(directory: Path, name: str, body: str) -> Path:
    """Write an executable shell script standing in for mriqc.

    Arguments follow mriqc's contract:
    $1 bids dir, $2 output dir, $3 participant, $5 work dir, $7 participant label.
    """
    path = directory / name
    path.write_text("#!/bin/sh\n" + body + "\n")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def bids_dir(tmp_path):
    return create_sample_bids_structure(tmp_path / "bids")


@pytest.fixture
def out_dir(tmp_path):
    path = tmp_path / "out"
    path.mkdir()
    return path


@pytest.fixture
def work_root(tmp_path):
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def calls_file(tmp_path):
    return tmp_path / "calls.txt"


@pytest.fixture
def stub_mriqc(tmp_path, calls_file):
    """Records its arguments, checks the participant is visible and writes sub-<id> to the output."""
    return make_tool(tmp_path, "mriqc_stub", f"""
echo "$7 $*" >> "{calls_file}"
test -e "$1/sub-$7" || {{ echo "sub-$7 not found in $1" >&2; exit 3; }}
mkdir -p "$2/sub-$7"
echo "processed $7"
""")


@pytest.fixture
def slow_mriqc(tmp_path):
    """Participant 001 never finishes on its own; everybody else succeeds."""
    return make_tool(tmp_path, "mriqc_slow", """
if [ "$7" = "001" ]; then
    exec sleep 30
fi
mkdir -p "$2/sub-$7"
""")


@pytest.fixture
def failing_mriqc(tmp_path):
    return make_tool(tmp_path, "mriqc_failing", """
echo "starting $7"
echo "something went wrong" >&2
exit 2
""")


def listdir(path: Path):
    return sorted(os.listdir(path))
