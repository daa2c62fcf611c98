"""Unit Tests: Structured Logging"""

import io
import json
import logging

import pytest

from partitioned_ann.observability.logging import LogLevel, StructuredLogger, get_logger, setup_logging
from partitioned_ann.tests.conftest import day


@pytest.fixture
def stream():
    buffer = io.StringIO()
    setup_logging(LogLevel.DEBUG, json_output=True, stream=buffer)
    yield buffer
    package_logger = logging.getLogger("partitioned_ann")
    package_logger.handlers.clear()
    package_logger.setLevel(logging.NOTSET)
    package_logger.propagate = True


class TestStructuredLogger:
    """Tests for JSON output and context fields."""

    def test_keyword_fields(self, stream):
        get_logger("partitioned_ann.test").info("Build started", partition=day(1), fencing_token=3)

        line = json.loads(stream.getvalue().splitlines()[-1])

        assert line["message"] == "Build started"
        assert line["level"] == "INFO"
        assert line["partition"] == "ds=2026-01-01"
        assert line["fencing_token"] == 3

    def test_context_fields_are_scoped(self, stream):
        logger = get_logger("partitioned_ann.test")
        with StructuredLogger.context(search_id="search-1"):
            logger.warning("inside")
        logger.warning("outside")

        inside, outside = (json.loads(s) for s in stream.getvalue().splitlines()[-2:])

        assert inside["search_id"] == "search-1"
        assert "search_id" not in outside

    def test_level_filtering(self, stream):
        setup_logging(LogLevel.ERROR, json_output=True, stream=stream)

        get_logger("partitioned_ann.test").info("dropped")

        assert stream.getvalue() == ""

    def test_parse_level(self):
        assert LogLevel.parse(" warning ") is LogLevel.WARNING

    def test_key_value_output(self):
        buffer = io.StringIO()
        setup_logging(LogLevel.INFO, json_output=False, stream=buffer)
        try:
            get_logger("partitioned_ann.test").info("Vacuumed", purged=2, index="docs_idx")
        finally:
            package_logger = logging.getLogger("partitioned_ann")
            package_logger.handlers.clear()
            package_logger.setLevel(logging.NOTSET)
            package_logger.propagate = True

        line = buffer.getvalue().strip()

        assert "INFO" in line
        assert "partitioned_ann.test: Vacuumed" in line
        assert line.endswith("index=docs_idx purged=2")
