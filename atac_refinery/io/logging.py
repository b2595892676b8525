"""Logging utilities for ATAC-Refinery.

Provides timestamped file loggers and structured run records (JSON lines,
YAML documents) for stage summaries and anomaly reports.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Tuple, Union

import yaml

from ..core.errors import AnomalyReport

PathLike = Union[str, Path]


def get_timestamped_log_path(log_path: PathLike) -> Path:
    """Insert a timestamp before the suffix: run.log -> run_20260101_120000.log"""
    log_path = Path(log_path)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return log_path.parent / f"{log_path.stem}_{timestamp}{log_path.suffix or '.log'}"


def get_logger(
    name: str,
    log_path: PathLike,
    level: int = logging.INFO,
    timestamped: bool = True,
) -> Tuple[logging.Logger, Path]:
    """Return a file logger and the path it writes to.

    Parameters
    ----------
    name : str
        Logger name
    log_path : PathLike
        Base path for the log file
    level : int
        Logging level
    timestamped : bool
        Add a timestamp to the file name instead of overwriting

    Returns
    -------
    Tuple[logging.Logger, Path]
        Logger and actual log path
    """
    path = get_timestamped_log_path(log_path) if timestamped else Path(log_path)
    if not timestamped:
        path.unlink(missing_ok=True)
    path.parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    handler = logging.FileHandler(path, mode="a", encoding="utf-8")
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s | %(levelname)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(handler)
    return logger, path


def _destination(log_path: PathLike) -> Path:
    path = Path(log_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def log_json(log_path: PathLike, record: dict[str, Any]) -> None:
    """Append one JSON line to ``log_path``."""
    with _destination(log_path).open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(record, default=str))
        handle.write("\n")


def log_yaml(
    log_path: PathLike,
    record: dict[str, Any],
    *,
    logger: logging.Logger | None = None,
) -> None:
    """Append a YAML document to ``log_path`` (or to ``logger`` when given)."""
    message = yaml.safe_dump(record, sort_keys=False).rstrip("\n") + "\n---"
    if logger is not None:
        logger.info("%s", message)
        return
    with _destination(log_path).open("a", encoding="utf-8") as handle:
        handle.write(message)
        handle.write("\n")


def write_anomaly_records(log_path: PathLike, reports: Iterable[AnomalyReport]) -> int:
    """Append every anomaly of every report as a JSON line.

    Returns
    -------
    int
        Number of records written
    """
    n = 0
    for report in reports:
        for record in report.to_records():
            log_json(log_path, record)
            n += 1
    return n
