# backend/tests/unit/test_logging.py

import logging

import pytest
import structlog

from leadflow.models.execution import Execution
from leadflow.utils.logging import HANDLER_NAME, add_service, bind_execution, mask_phone_numbers, setup_logging


@pytest.fixture
def root_logger():
    root = logging.getLogger()
    level, handlers = root.level, list(root.handlers)
    yield root
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
    root.setLevel(level)
    structlog.reset_defaults()


def test_phone_numbers_keep_last_four_digits():
    event = mask_phone_numbers(None, "info", {
        "event": "WhatsApp message sent to 5511999990001, wamid: wamid.HBgM",
        "to_phone": "5511999990001",
    })
    assert event["event"] == "WhatsApp message sent to *********0001, wamid: wamid.HBgM"
    assert event["to_phone"] == "*********0001"


def test_short_numbers_and_ids_are_left_alone():
    event = mask_phone_numbers(None, "info", {"event": "step 12 of flow f-1234567890abc", "execution_id": "e-5511999990001"})
    assert event["event"] == "step 12 of flow f-1234567890abc"
    assert event["execution_id"] == "e-5511999990001"


def test_service_tag_does_not_override_explicit_value():
    processor = add_service("scheduler")
    assert processor(None, "info", {"event": "x"})["service"] == "scheduler"
    assert processor(None, "info", {"event": "x", "service": "api"})["service"] == "api"


def test_setup_replaces_only_its_own_handler(root_logger):
    foreign = logging.NullHandler()
    root_logger.addHandler(foreign)

    setup_logging(service="worker", level="debug")
    setup_logging(service="worker", level="warning")

    ours = [h for h in root_logger.handlers if h.get_name() == HANDLER_NAME]
    assert len(ours) == 1
    assert foreign in root_logger.handlers
    assert root_logger.level == logging.WARNING
    assert logging.getLogger("pymongo").level == logging.WARNING


def test_unknown_level_falls_back_to_info(root_logger):
    setup_logging(level="chatty")
    assert root_logger.level == logging.INFO


def test_bind_execution_scopes_context():
    execution = Execution(company_id="company-1", flow_id="f1", contact_id="contact-1", current_node_id="s")

    with bind_execution(execution):
        bound = structlog.contextvars.get_contextvars()
        assert bound["execution_id"] == execution.id
        assert bound["flow_id"] == "f1"

    assert "execution_id" not in structlog.contextvars.get_contextvars()
