"""Utility functions for the enrichment pipeline."""

import logging
import os
from pathlib import Path
from typing import Optional, Union

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(log_dir: Optional[Union[str, Path]] = None, level=logging.INFO):
    """Set up logging configuration.

    Safe to call more than once: a console handler and a pipeline.log
    handler for a given directory are only attached once.

    Args:
        log_dir: Directory to store the pipeline.log file
        level: Logging level

    Returns:
        The package logger
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    if log_dir:
        log_file = Path(os.path.abspath(ensure_dir(Path(log_dir)) / 'pipeline.log'))
        attached = any(
            isinstance(h, logging.FileHandler) and Path(h.baseFilename) == log_file
            for h in root_logger.handlers
        )
        if not attached:
            file_handler = logging.FileHandler(log_file, mode='w')
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
            root_logger.addHandler(file_handler)
            # Write a first record so the file exists straight away
            root_logger.info("Logging initialized")

    # FileHandler is a StreamHandler subclass, so match the exact type
    if not any(type(h) is logging.StreamHandler for h in root_logger.handlers):
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
        root_logger.addHandler(console_handler)

    return logging.getLogger('pathgsea')


def ensure_dir(path: Path) -> Path:
    """Ensure a directory exists, creating it if necessary.

    Args:
        path: Directory path

    Returns:
        Path object for the directory
    """
    path.mkdir(parents=True, exist_ok=True)
    return path
