"""Console and file logging for analysis runs."""

import copy
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from ..core.errors import AnomalyReport


class ColoredFormatter(logging.Formatter):
    """Formatter that colors the level name for terminal output."""

    def __init__(self, fmt: str, datefmt: str, colors: dict):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.colors = colors

    def format(self, record: logging.LogRecord) -> str:
        # Copy so file handlers sharing the record see the plain level name
        record = copy.copy(record)
        color = self.colors.get(record.levelname, self.colors["RESET"])
        record.levelname = f"{color}{record.levelname}{self.colors['RESET']}"
        return super().format(record)


class PipelineLogger:
    """Structured logging for analysis stages.

    Console output is colored and concise; when ``log_dir`` is given a
    detailed log file is written as well. Engines log through the standard
    ``logging`` hierarchy, so attaching handlers to the package logger
    captures their messages.

    Parameters
    ----------
    log_dir : str or Path, optional
        Directory for the log file. None logs to the console only.
    log_level : str
        Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    log_name : str
        Logger name. Default: "atac_refinery"

    Attributes
    ----------
    log_file : Path or None
        Path of the run's log file
    logger : logging.Logger
        Underlying logger

    Example
    -------
    >>> plog = PipelineLogger("logs/", log_level="INFO")
    >>> plog.setup()
    >>> plog.log_stage_start("embed", "LSI embedding")
    >>> plog.log_stage_complete("embed", 12.4)
    """

    COLORS = {
        "DEBUG": "\033[0;36m",
        "INFO": "\033[0;34m",
        "WARNING": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "CRITICAL": "\033[1;31m",
        "RESET": "\033[0m",
    }

    def __init__(
        self,
        log_dir: Optional[Union[str, Path]] = None,
        log_level: str = "INFO",
        log_name: str = "atac_refinery",
    ):
        self.log_dir = Path(log_dir) if log_dir is not None else None
        self.log_file: Optional[Path] = None
        if self.log_dir is not None:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            self.log_file = self.log_dir / f"analysis_{timestamp}.log"

        self.log_level = getattr(logging, log_level.upper())
        self.logger = logging.getLogger(log_name)
        self.logger.setLevel(self.log_level)
        self.logger.handlers = []

    def setup(self, console: bool = True) -> None:
        """Attach file and console handlers."""
        if self.log_file is not None:
            file_handler = logging.FileHandler(self.log_file, mode="w")
            file_handler.setLevel(self.log_level)
            file_handler.setFormatter(
                logging.Formatter(
                    fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                    datefmt="%Y-%m-%d %H:%M:%S",
                )
            )
            self.logger.addHandler(file_handler)

        if console:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(self.log_level)
            console_handler.setFormatter(
                ColoredFormatter(
                    fmt="%(asctime)s - %(levelname)s - %(message)s",
                    datefmt="%H:%M:%S",
                    colors=self.COLORS,
                )
            )
            self.logger.addHandler(console_handler)

    def log_stage_start(self, stage_id: str, stage_name: str) -> None:
        self.logger.info("-" * 60)
        self.logger.info("Stage %s: %s", stage_id, stage_name)

    def log_stage_complete(self, stage_id: str, duration: float) -> None:
        self.logger.info(
            "Stage %s completed in %s", stage_id, self.format_duration(duration)
        )

    def log_stage_error(self, stage_id: str, error: str) -> None:
        self.logger.error("Stage %s failed: %s", stage_id, error)

    def log_report(self, report: AnomalyReport) -> None:
        """Summarize a stage's anomaly report in one line per type."""
        if report.is_clean:
            return
        for name, count in sorted(report.summary().items()):
            self.logger.warning("Stage %s: %d x %s", report.stage or "?", count, name)

    @staticmethod
    def format_duration(seconds: float) -> str:
        """Format a duration, e.g. "45.2s", "1m 23s", "2h 15m"."""
        if seconds < 60:
            return f"{seconds:.1f}s"
        if seconds < 3600:
            return f"{int(seconds // 60)}m {int(seconds % 60)}s"
        return f"{int(seconds // 3600)}h {int((seconds % 3600) // 60)}m"
