"""
בדיקות ללוגים המובנים - correlation id, הקשר dispatch והסתרת credentials.
"""
import json
import logging
from io import StringIO

import pytest

from app.core import logging as app_logging
from app.core.logging import (
    JSONFormatter,
    bind_dispatch_context,
    generate_correlation_id,
    get_correlation_id,
    get_logger,
    redact,
    set_correlation_id,
    setup_logging,
)


@pytest.fixture
def capture():
    """מחזיר (logger, פונקציה שקוראת את שורות ה-JSON שנכתבו)"""
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(JSONFormatter())

    logger = get_logger("tests.capture")
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)

    def lines() -> list[dict]:
        return [json.loads(line) for line in stream.getvalue().splitlines()]

    yield logger, lines
    logger.removeHandler(handler)


class TestCorrelationId:

    @pytest.mark.unit
    def test_generated_id_is_short_hex(self):
        cid = generate_correlation_id()
        assert len(cid) == 8
        int(cid, 16)

    @pytest.mark.unit
    def test_set_keeps_given_id(self):
        assert set_correlation_id("trace-42") == "trace-42"
        assert get_correlation_id() == "trace-42"

    @pytest.mark.unit
    def test_set_without_id_generates_one(self):
        assert len(set_correlation_id(None)) == 8

    @pytest.mark.unit
    def test_written_into_every_line(self, capture):
        logger, lines = capture
        set_correlation_id("req-7")

        logger.info("Message queued")

        assert lines()[0]["correlation_id"] == "req-7"


class TestJSONFormatter:

    @pytest.mark.unit
    def test_basic_fields(self, capture):
        logger, lines = capture

        logger.warning("Connector probe failed")

        entry = lines()[0]
        assert entry["level"] == "WARNING"
        assert entry["message"] == "Connector probe failed"
        assert entry["logger"] == "tests.capture"
        assert entry["service"] == "api"
        assert "timestamp" in entry

    @pytest.mark.unit
    def test_exception_is_included(self, capture):
        logger, lines = capture

        try:
            raise TimeoutError("provider did not answer")
        except TimeoutError:
            logger.exception("Dispatch crashed")

        entry = lines()[0]
        assert entry["level"] == "ERROR"
        assert "TimeoutError" in entry["exception"]

    @pytest.mark.unit
    def test_extra_data_under_extra(self, capture):
        logger, lines = capture

        logger.info("Webhook reconciled", extra_data={"provider": "whatsapp", "updated": 2})

        assert lines()[0]["extra"] == {"provider": "whatsapp", "updated": 2}


class TestDispatchContext:

    @pytest.mark.unit
    def test_bound_fields_on_every_record(self, capture):
        logger, lines = capture

        with bind_dispatch_context(message_id="m-1", attempt=2):
            logger.info("Sending")
            logger.info("Sent")

        assert [(e["message_id"], e["attempt"]) for e in lines()] == [("m-1", 2), ("m-1", 2)]

    @pytest.mark.unit
    def test_context_is_reset_after_block(self, capture):
        logger, lines = capture

        with bind_dispatch_context(message_id="m-1"):
            with bind_dispatch_context(attempt=3):
                logger.info("inner")
            logger.info("outer")
        logger.info("after")

        inner, outer, after = lines()
        assert inner["message_id"] == "m-1" and inner["attempt"] == 3
        assert outer["message_id"] == "m-1" and "attempt" not in outer
        assert "message_id" not in after


class TestRedaction:
    """credentials לא מגיעים ללוג"""

    @pytest.mark.unit
    def test_redacts_sensitive_keys(self):
        data = {
            "botToken": "123456:ABC",
            "authToken": "twilio-secret",
            "Authorization": "Bearer pk_live_x_sk_live_y",
            "connector_id": "c1",
        }

        assert redact(data) == {
            "botToken": "***",
            "authToken": "***",
            "Authorization": "***",
            "connector_id": "c1",
        }

    @pytest.mark.unit
    def test_redacts_nested(self):
        data = {"connector": {"credentials": {"accessToken": "x"}}, "items": [{"api_key": "k"}]}

        assert redact(data) == {"connector": {"credentials": "***"}, "items": [{"api_key": "***"}]}

    @pytest.mark.unit
    def test_logger_redacts_extra_data(self, capture):
        logger, lines = capture

        logger.info("Probe", extra_data={"accessToken": "EAAG-secret", "provider": "whatsapp"})

        assert lines()[0]["extra"] == {"accessToken": "***", "provider": "whatsapp"}


class TestSetupLogging:

    @pytest.fixture(autouse=True)
    def restore_root(self):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        yield
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
        app_logging._service_name = "api"

    @pytest.mark.unit
    def test_quiets_http_client_loggers(self):
        setup_logging(level="DEBUG", json_format=True)

        assert logging.getLogger("httpx").level == logging.WARNING
        assert isinstance(logging.getLogger().handlers[0].formatter, JSONFormatter)

    @pytest.mark.unit
    def test_worker_service_name(self, capture):
        logger, lines = capture
        setup_logging(level="INFO", json_format=True, service="worker")

        logger.info("Worker ready")

        assert lines()[0]["service"] == "worker"
