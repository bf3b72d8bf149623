from __future__ import annotations

import json
import logging

import pytest

from graphfeed.infra.logging.setup import close_logger, create_command_logger, log_event, map_log_level


def test_text_log_contains_run_id_component_and_fields(tmp_path):
    logger, path = create_command_logger("write", str(tmp_path), "run-1", "INFO")

    log_event(logger, logging.INFO, "run-1", "stats", "stats.stream", stream="example__orgs", processed=3)
    close_logger(logger)

    text = (tmp_path / "write_run-1.log").read_text(encoding="utf-8")
    assert path.endswith("write_run-1.log")
    assert "runId=run-1 comp=stats msg=stats.stream" in text
    assert "stream=example__orgs processed=3" in text


def test_json_log_lines(tmp_path):
    logger, path = create_command_logger("write", str(tmp_path), "run-2", "DEBUG", log_json=True)

    log_event(logger, logging.WARNING, "run-2", "ingest", "Record error", code="CONVERSION_ERROR", line_no=4)
    close_logger(logger)

    line = json.loads((tmp_path / "write_run-2.log").read_text(encoding="utf-8").splitlines()[0])
    assert line["level"] == "WARNING"
    assert line["runId"] == "run-2"
    assert line["component"] == "ingest"
    assert line["msg"] == "Record error"
    assert line["code"] == "CONVERSION_ERROR"
    assert line["line_no"] == 4


def test_reserved_field_names_are_prefixed(tmp_path):
    logger, _ = create_command_logger("write", str(tmp_path), "run-3", "INFO", log_json=True)

    log_event(logger, logging.INFO, "run-3", "core", "started", name="write")
    close_logger(logger)

    line = json.loads((tmp_path / "write_run-3.log").read_text(encoding="utf-8").splitlines()[0])
    assert line["f_name"] == "write"


def test_map_log_level():
    assert map_log_level("warn") == logging.WARNING
    with pytest.raises(ValueError):
        map_log_level("LOUD")
