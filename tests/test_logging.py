from __future__ import annotations

import json
import logging

from ec2_history.logging import JsonFormatter, PlainFormatter, add_run_log_file, remove_run_log_file


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("ec2_history.test", logging.INFO, __file__, 1, "Region collected", None, None)
    for k, v in extra.items():
        setattr(record, k, v)
    return record


def test_json_formatter_keeps_structured_extras() -> None:
    payload = json.loads(
        JsonFormatter().format(_record(step="region", phase="complete", region="eu-west-1", handle=object()))
    )

    assert payload["message"] == "Region collected"
    assert payload["region"] == "eu-west-1"
    assert payload["step"] == "region"
    assert "handle" not in payload


def test_plain_formatter_prefixes_step_and_region() -> None:
    line = PlainFormatter().format(_record(step="region", phase="error", region="ap-south-1", duration_ms=12))
    assert "[region:error] Region collected region=ap-south-1 (duration_ms=12)" in line


def test_run_log_file_attach_and_detach(tmp_path) -> None:
    path = tmp_path / "logs" / "debug.log"
    root = logging.getLogger()
    previous = root.level
    root.setLevel(logging.INFO)
    try:
        add_run_log_file(path)
        add_run_log_file(path)
        logging.getLogger("ec2_history.test").info("hello run log")
        remove_run_log_file(path)
    finally:
        root.setLevel(previous)

    assert "hello run log" in path.read_text(encoding="utf-8")
    assert not any(
        isinstance(h, logging.FileHandler) and h.baseFilename == str(path.resolve()) for h in root.handlers
    )
