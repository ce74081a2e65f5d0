import json
from datetime import datetime, timezone
from types import SimpleNamespace

from loguru import logger

from waveline.utils.logging import JsonFormatter, run_logger


def test_json_formatter_escapes_braces() -> None:
    record = {
        "time": datetime(2024, 1, 2, tzinfo=timezone.utc),
        "level": SimpleNamespace(name="INFO"),
        "message": "step {a} done",
        "module": "orchestrator",
        "function": "_drive",
        "line": 10,
        "process": SimpleNamespace(name="MainProcess"),
        "thread": SimpleNamespace(name="MainThread"),
        "extra": {"run_id": "r1", "ref": "[r1] "},
        "exception": None,
    }
    line = JsonFormatter()(record)
    assert line.endswith("\n")
    decoded = json.loads(line.replace("{{", "{").replace("}}", "}"))
    assert decoded["message"] == "step {a} done"
    assert decoded["extra"] == {"run_id": "r1"}
    assert "exception" not in decoded


def test_run_logger_binds_run_and_step() -> None:
    captured = []
    handler_id = logger.add(lambda message: captured.append(message.record["extra"]), format="{message}")
    try:
        run_logger("r1", "train").info("step finished")
        run_logger("r1").info("run finished")
    finally:
        logger.remove(handler_id)
    assert captured[0]["run_id"] == "r1"
    assert captured[0]["step_id"] == "train"
    assert "step_id" not in captured[1]
