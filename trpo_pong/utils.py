"""
Utility functions for TRPO training.

This module contains helper functions for:
- Logging setup
- Configuration persistence
- Seeding
- Atomic file writes
"""

import dataclasses
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

import numpy as np
import tensorflow as tf


LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


# ==============================================================================
# Logging
# ==============================================================================

def configure_logging(level: str = "INFO") -> None:
    """
    Configure the root logger for command line use.

    Args:
        level: Name of the log level, e.g. "INFO" or "DEBUG".
    """
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        raise ValueError(f"Unknown log level: {level}")
    logging.basicConfig(level=numeric, format=LOG_FORMAT, stream=sys.stdout, force=True)


# ==============================================================================
# Experiment Management
# ==============================================================================

def _json_default(value: Any) -> Any:
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, (np.integer, np.floating, np.bool_)):
        return value.item()
    raise TypeError(f"{type(value).__name__} is not JSON serializable")


def save_config(config: Any, path: str) -> None:
    """
    Write a training configuration to `path` as JSON.

    Args:
        config: TRPOConfig (any dataclass) or a plain mapping.
        path: Destination file. Parent directories are created.
    """
    if dataclasses.is_dataclass(config):
        config_dict = dataclasses.asdict(config)
    else:
        config_dict = dict(config)

    text = json.dumps(config_dict, indent=2, sort_keys=True, default=_json_default)
    atomic_write_bytes(path, text.encode("utf-8"))


def set_global_seeds(seed: int) -> None:
    """Seed Python, NumPy and TensorFlow in one call."""
    tf.keras.utils.set_random_seed(seed)


# ==============================================================================
# Files
# ==============================================================================

def atomic_write_bytes(path: str, data: bytes) -> None:
    """
    Write a file so readers see either the old or the new content.

    The data goes to a temporary sibling first, which then replaces the
    target in one rename.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    with open(tmp_path, 'wb') as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)
