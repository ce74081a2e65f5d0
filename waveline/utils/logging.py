"""loguru configuration for waveline.

Logging stays off unless ``WAVELINE_LOG_LEVEL`` is set::

    # run progress as JSON lines on stdout
    export WAVELINE_LOG_LEVEL=DEBUG
    export WAVELINE_LOG_OUTPUT=stdout
    export WAVELINE_LOG_FORMAT=json

    # human-readable lines on stdout, stderr and in a file
    export WAVELINE_LOG_LEVEL=INFO
    export WAVELINE_LOG_OUTPUT=both
    export WAVELINE_LOG_FILE=orchestrator.log

``WAVELINE_DISABLE_LOGGING=1`` switches logging off even when a level is set.
Records logged through :func:`run_logger` carry ``run_id`` (and ``step_id``)
in ``extra``; the human format prefixes them to the message.
"""

import json
import os
import sys

from loguru import logger

HUMAN_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - {extra[ref]}<level>{message}</level>"
)


class JsonFormatter:
    def __call__(self, record):
        extra = {k: v for k, v in record["extra"].items() if k != "ref"}
        log_record = {
            "time": record["time"].isoformat(),
            "level": record["level"].name,
            "message": record["message"],
            "module": record["module"],
            "function": record["function"],
            "line": record["line"],
            "process": record["process"].name,
            "thread": record["thread"].name,
            "extra": extra,
        }

        if record["exception"] is not None:
            log_record["exception"] = {
                "type": record["exception"].type.__name__,
                "value": str(record["exception"].value),
            }

        # loguru treats the returned string as a format template
        return json.dumps(log_record, default=str).replace("{", "{{").replace("}", "}}") + "\n"


def _run_ref(record):
    extra = record["extra"]
    run_id = extra.get("run_id")
    step_id = extra.get("step_id")
    if run_id is None:
        extra["ref"] = ""
    elif step_id is None:
        extra["ref"] = f"[{run_id}] "
    else:
        extra["ref"] = f"[{run_id}:{step_id}] "


def _sinks(output):
    log_file = os.environ.get("WAVELINE_LOG_FILE", "waveline.log")
    if output == "both":
        return [sys.stdout, sys.stderr, log_file]
    return {"stdout": [sys.stdout], "stderr": [sys.stderr], "file": [log_file]}.get(output, [sys.stderr])


def setup_logger():
    """Set up the logger based on environment variables."""
    logger.remove()

    log_level = os.environ.get("WAVELINE_LOG_LEVEL", "").upper()
    disabled = os.environ.get("WAVELINE_DISABLE_LOGGING", "").lower() in ["true", "1", "yes"]
    if disabled or not log_level:
        logger.disable("waveline")
        return

    logger.enable("waveline")
    logger.configure(patcher=_run_ref)
    log_format = os.environ.get("WAVELINE_LOG_FORMAT", "human").lower()
    fmt = JsonFormatter() if log_format == "json" else HUMAN_FORMAT
    for sink in _sinks(os.environ.get("WAVELINE_LOG_OUTPUT", "stderr").lower()):
        logger.add(sink, format=fmt, level=log_level)


def get_logger():
    """Get the configured logger."""
    return logger


def run_logger(run_id, step_id=None):
    """Logger bound to a run and, optionally, one of its steps."""
    if step_id is None:
        return logger.bind(run_id=run_id)
    return logger.bind(run_id=run_id, step_id=step_id)


setup_logger()
