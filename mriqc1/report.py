"""
Progress display and run summaries.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, List

import pandas as pd
from tqdm import tqdm

from .orchestrator import JobResult, JobState, RunListener, RunSummary

logger = logging.getLogger(__name__)

SUMMARY_COLUMNS = ['participant', 'state', 'elapsed_seconds', 'message']


class TqdmProgress(RunListener):
    """Progress bar over all participants, listing the ones currently running."""

    def __init__(self, total: int, disable: bool = False):
        self.running: List[str] = []
        self.bar = tqdm(total=total, desc="Running mriqc", unit="participant", disable=disable)

    def _refresh(self):
        self.bar.set_postfix_str(', '.join(self.running), refresh=True)

    def job_started(self, participant: str):
        self.running.append(participant)
        self._refresh()

    def job_finished(self, result: JobResult):
        if result.participant in self.running:
            self.running.remove(result.participant)
        self.bar.update(1)
        self._refresh()

    def run_finished(self, summary: RunSummary):
        self.bar.close()


def summary_records(summary: RunSummary) -> List[Dict]:
    records = [
        {
            'participant': r.participant,
            'state': r.state.value,
            'elapsed_seconds': round(r.elapsed, 2),
            'message': r.message,
        }
        for r in summary.results
    ]
    records.extend(
        {'participant': p, 'state': 'not_started', 'elapsed_seconds': 0.0, 'message': ''}
        for p in summary.not_started
    )
    return records


def write_summary(summary: RunSummary, output_dir: Path, name: str = "processing_summary") -> Path:
    """
    Save the run summary as JSON and TSV.

    Args:
        summary: Result of an orchestrator run
        output_dir: Directory for the summary files
        name: Base file name

    Returns:
        Path to the JSON report
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    records = summary_records(summary)

    total = len(records)
    successful = sum(1 for r in summary.results if r.state.ok)
    report = {
        'processing_date': datetime.now().isoformat(),
        'outcome': summary.outcome.value,
        'total_participants': total,
        'successful_participants': successful,
        'failed_participants': summary.count(JobState.FAILED),
        'skipped_participants': summary.count(JobState.SKIPPED),
        'not_started_participants': len(summary.not_started),
        'results': records,
    }

    json_path = output_dir / f"{name}.json"
    with open(json_path, 'w') as f:
        json.dump(report, f, indent=2)

    tsv_path = output_dir / f"{name}.tsv"
    pd.DataFrame(records, columns=SUMMARY_COLUMNS).to_csv(tsv_path, sep='\t', index=False)

    logger.info(f"Processing complete: {successful}/{total} participants successful")
    logger.info(f"Summary saved to {json_path}")
    return json_path
