"""Unit tests for logging setup and variation tagging."""

import logging

import pytest

from static_engine.utils.logging import (
    add_variation_id,
    clear_variation_context,
    set_variation_context,
    setup_logging,
)

pytestmark = pytest.mark.unit


@pytest.fixture
def root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


class TestVariationContext:
    def test_records_are_tagged_while_a_task_runs(self):
        set_variation_context("ad-1")
        try:
            event = add_variation_id(None, "info", {"event": "Uploading"})
        finally:
            clear_variation_context()

        assert event["variation_id"] == "ad-1"

    def test_no_tag_outside_a_task(self):
        clear_variation_context()

        assert add_variation_id(None, "info", {"event": "Worker pool started"}) == {
            "event": "Worker pool started"
        }


class TestSetupLogging:
    def test_single_stderr_handler_and_level(self, root_logger):
        setup_logging("debug", json_output=True)

        assert len(root_logger.handlers) == 1
        assert root_logger.level == logging.DEBUG

    def test_client_libraries_are_quieted(self, root_logger):
        setup_logging("INFO")

        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("aiosqlite").level == logging.WARNING
