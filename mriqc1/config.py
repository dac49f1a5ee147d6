"""
Configuration loading.

Configuration files may be JSON or YAML. Values are merged over
``DEFAULT_CONFIG``; command-line options override both.
"""

import copy
import json
import logging
from pathlib import Path
from typing import Dict, Optional

import yaml

from .mriqc_utils import DEFAULT_MRIQC, INTERRUPT_GRACE
from .orchestrator import RunOptions
from .process_utils import DEFAULT_POLL_INTERVAL

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = {
    'mriqc': {
        'executable': DEFAULT_MRIQC,
        'extra_args': [],
    },
    'run': {
        'n_jobs': 1,
        'work_dir': None,
        'resume': False,
        'timeout_seconds': None,
        'werror': False,
        'poll_interval': DEFAULT_POLL_INTERVAL,
        'interrupt_grace': INTERRUPT_GRACE,
    },
}


class ConfigError(ValueError):
    """Invalid or unreadable configuration."""


def deep_update(base: Dict, updates: Dict) -> Dict:
    """Recursively merge dictionary ``updates`` into ``base``."""

    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = deep_update(base.get(key, {}), value)
        else:
            base[key] = value
    return base


def load_config(config_file: Optional[Path] = None) -> Dict:
    """
    Load configuration, falling back to defaults.

    Args:
        config_file: Optional .json, .yml or .yaml file

    Returns:
        Merged configuration dictionary

    Raises:
        ConfigError: If the file cannot be read or parsed
    """
    config = copy.deepcopy(DEFAULT_CONFIG)
    if config_file is None:
        return config

    config_file = Path(config_file)
    suffix = config_file.suffix.lower()
    try:
        with open(config_file, 'r') as f:
            if suffix == '.json':
                user_config = json.load(f)
            elif suffix in {'.yml', '.yaml'}:
                user_config = yaml.safe_load(f)
            else:
                raise ConfigError(
                    f"Unsupported configuration format '{config_file.suffix}'. "
                    "Use .json, .yml, or .yaml"
                )
    except (OSError, yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Failed to load configuration file {config_file}: {exc}") from exc

    if user_config is None:
        user_config = {}
    if not isinstance(user_config, dict):
        raise ConfigError(f"Configuration file {config_file} must contain a mapping")

    logger.debug(f"Loaded configuration from {config_file}")
    return deep_update(config, user_config)


def resolve_run_options(config: Dict, bids_dir: Path, out_dir: Path) -> RunOptions:
    """Build validated ``RunOptions`` from a merged configuration."""
    mriqc_config = config.get('mriqc', {}) or {}
    run_config = config.get('run', {}) or {}

    extra_args = mriqc_config.get('extra_args') or []
    if isinstance(extra_args, str):
        extra_args = extra_args.split()

    timeout = run_config.get('timeout_seconds')
    work_dir = run_config.get('work_dir')
    try:
        return RunOptions(
            bids_dir=Path(bids_dir),
            out_dir=Path(out_dir),
            mriqc=Path(mriqc_config.get('executable') or DEFAULT_MRIQC),
            work_dir=Path(work_dir) if work_dir else None,
            extra_args=[str(a) for a in extra_args],
            n_jobs=int(run_config.get('n_jobs', 1)),
            resume=bool(run_config.get('resume', False)),
            timeout=float(timeout) if timeout is not None else None,
            werror=bool(run_config.get('werror', False)),
            poll_interval=float(run_config.get('poll_interval', DEFAULT_POLL_INTERVAL)),
            interrupt_grace=float(run_config.get('interrupt_grace', INTERRUPT_GRACE)),
        )
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc
