import json
import logging

from clinicore.utils.logger import JSONFormatter, get_logger


class _Capture(logging.Handler):
    def __init__(self):
        super().__init__(level=logging.DEBUG)
        self.records = []

    def emit(self, record):
        self.records.append(record)


def test_get_logger_namespaces_under_clinicore():
    assert get_logger("audit").logger.name == "clinicore.audit"
    assert get_logger("clinicore.jobs.worker").logger.name == "clinicore.jobs.worker"


def test_json_formatter_merges_fields_and_drops_none():
    logger = get_logger("clinicore.jobs.worker")
    capture = _Capture()
    logger.logger.addHandler(capture)
    try:
        logger.warning("Recovered stalled job", job_id="report-org-1-1", organization_id=None)
    finally:
        logger.logger.removeHandler(capture)

    entry = json.loads(JSONFormatter().format(capture.records[-1]))
    assert entry["message"] == "Recovered stalled job"
    assert entry["level"] == "WARNING"
    assert entry["logger"] == "clinicore.jobs.worker"
    assert entry["job_id"] == "report-org-1-1"
    assert "organization_id" not in entry
    assert "thread_name" in entry
