"""Pipeline entry point for GitHub Actions.

Reads the triggering event from the Actions environment, runs the matching
path (validate on pull request, apply on push to main), writes a job summary,
and exits 0 on success and 1 on failure.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import UTC, datetime
from pathlib import Path

from .config import Config, ConfigurationError, LogFormat
from .pipeline import Pipeline, PipelineRun, TriggerEvent
from .reconciler import Reconciler

# Extra fields whose values must never reach the logs
REDACTED_KEY_FRAGMENTS: tuple[str, ...] = ("secret", "password", "token")

_RESERVED_RECORD_ATTRS = frozenset({
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "stack_info",
    "exc_info",
    "exc_text",
    "thread",
    "threadName",
    "taskName",
    "message",
})


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key in _RESERVED_RECORD_ATTRS:
                continue
            if any(fragment in key.lower() for fragment in REDACTED_KEY_FRAGMENTS):
                value = "***"
            log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_format: LogFormat = LogFormat.JSON, level: str = "INFO") -> None:
    """Configure root logging; JSON for pipelines, plain text for humans."""
    handler = logging.StreamHandler(sys.stderr)
    if log_format == LogFormat.JSON:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def write_step_summary(run: PipelineRun) -> None:
    """Append the run summary to GITHUB_STEP_SUMMARY when running in Actions."""
    summary_path = os.environ.get("GITHUB_STEP_SUMMARY")
    if not summary_path:
        return
    with Path(summary_path).open("a", encoding="utf-8") as f:
        f.write(run.to_markdown())


def main() -> int:
    """Run the pipeline for the current GitHub Actions event.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    try:
        config = Config.from_env()
    except ConfigurationError as e:
        setup_logging()
        logging.getLogger(__name__).error("Configuration error", extra={"error": str(e)})
        return 1

    setup_logging(config.log_format, config.log_level)
    logger = logging.getLogger(__name__)

    event = TriggerEvent.from_github_env()
    logger.info("Starting policy pipeline", extra=event.to_dict())

    pipeline = Pipeline(lambda: Reconciler(config))
    run = pipeline.run(event)
    write_step_summary(run)
    return run.exit_code


def run() -> None:
    """Entry point for the pipeline runner."""
    sys.exit(main())


if __name__ == "__main__":
    run()
