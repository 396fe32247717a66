"""Tests for the failure records."""

import json
from datetime import datetime, timezone

from splatrig.pipeline.diagnostics import error_timestamp, save_error

NOW = datetime(2026, 10, 18, 14, 30, 5, 123456, tzinfo=timezone.utc)


def test_timestamp():
    assert error_timestamp(NOW) == "20261018143005123"


def test_record(tmp_path):
    path = save_error("Preprocessing failed: boom", "scan.gvrm", tmp_path / "logs", now=NOW)
    assert path == tmp_path / "logs" / "error_scan_20261018143005123.txt"
    record = json.loads(path.read_text(encoding="utf-8"))
    assert record == {
        "timestamp": "20261018143005123",
        "fileName": "scan.gvrm",
        "message": "Preprocessing failed: boom",
    }


def test_unknown_file(tmp_path, caplog):
    path = save_error("no name", None, tmp_path, now=NOW)
    assert path.name == "error_unknown_20261018143005123.txt"
    assert json.loads(path.read_text())["fileName"] == "unknown"
    assert "no name" in caplog.text


def test_other_suffix_kept(tmp_path):
    assert save_error("x", "scan.ply", tmp_path, now=NOW).name == \
        "error_scan.ply_20261018143005123.txt"
