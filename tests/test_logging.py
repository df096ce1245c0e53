"""Tests for logging setup and helpers."""

from __future__ import annotations

import pytest

from pi_oven import logging as logging_module


@pytest.fixture
def records():
    """Capture loguru records in a list; the default handler is restored afterwards."""
    logging_module.logger.remove()
    captured: list[dict] = []

    def sink(message):
        captured.append(message.record)

    logging_module.logger.add(sink, level="TRACE", enqueue=False)
    yield captured
    logging_module.logger.remove()


def test_get_logger_preserves_context_metadata(records):
    """Test bound logger keeps job_id, tags, and source metadata."""
    log = logging_module.get_logger(job_id="bake-1234", tags=["bake"], source="bake")
    log.info("Context test")

    record = records[0]
    assert record["extra"]["job_id"] == "bake-1234"
    assert record["extra"]["tags"] == ["bake"]
    assert record["extra"]["source"] == "bake"


def test_new_job_id_format():
    job_id = logging_module.new_job_id("bake")

    assert job_id.startswith("bake-")
    assert len(job_id) == len("bake-") + 8
    assert job_id != logging_module.new_job_id("bake")


def test_operation_context_success(records):
    with logging_module.operation_context("bake", job_id="bake-0001", node_id="pi-01") as log:
        log.debug("Cloning bakeform")

    messages = [record["message"] for record in records]
    assert messages == ["Bake started", "Cloning bakeform", "Bake completed"]
    assert records[-1]["level"].name == "SUCCESS"
    assert all(record["extra"]["job_id"] == "bake-0001" for record in records)
    assert records[0]["extra"]["node_id"] == "pi-01"


def test_operation_context_failure_reraises(records):
    with pytest.raises(RuntimeError, match="disk full"):
        with logging_module.operation_context("unbake"):
            raise RuntimeError("disk full")

    failure = records[-1]
    assert failure["message"] == "Unbake failed"
    assert failure["level"].name == "ERROR"
    assert failure["extra"]["error"] == "disk full"
    assert failure["extra"]["error_type"] == "RuntimeError"
    assert failure["extra"]["job_id"].startswith("unbake-")


def test_logger_factory_for_bake(records):
    logging_module.LoggerFactory.for_bake("bake-42", node_id="pi-03").info("hello")

    extra = records[0]["extra"]
    assert extra["job_id"] == "bake-42"
    assert extra["source"] == "bake"
    assert extra["node_id"] == "pi-03"


def test_event_logger_node_transition(records):
    log = logging_module.LoggerFactory.for_nodes()

    logging_module.EventLogger.log_node_transition(log, "pi-01", "available", "provisioning")

    record = records[0]
    assert record["message"] == "Node pi-01: available -> provisioning"
    assert record["extra"]["event_type"] == "node_transition"
    assert record["extra"]["new_status"] == "provisioning"


def _record(level: str, tags: list[str]) -> dict:
    return {
        "message": "x",
        "extra": {"tags": tags},
        "level": logging_module.logger.level(level),
    }


def test_boot_requests_need_debug():
    assert logging_module._combined_filter(_record("DEBUG", ["boot", "request"])) is True
    assert logging_module._combined_filter(_record("TRACE", ["boot", "request"])) is False
    assert logging_module._combined_filter(_record("TRACE", ["boot"])) is True


def test_poll_logs_only_at_trace():
    assert logging_module._combined_filter(_record("TRACE", ["poll"])) is True
    assert logging_module._combined_filter(_record("DEBUG", ["poll"])) is False


def test_setup_logging_creates_log_files(tmp_path):
    log_dir = tmp_path / "logs"

    logging_module.setup_logging(debug=True, log_dir=log_dir)
    logging_module.get_logger(source="test").info("Startup")
    logging_module.logger.complete()
    logging_module.logger.remove()

    assert (log_dir / "operations.log").exists()
    assert (log_dir / "debug.log").exists()
    assert (log_dir / "structured.jsonl").exists()
    assert not (log_dir / "trace.log").exists()
