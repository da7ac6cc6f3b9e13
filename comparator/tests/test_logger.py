import json
import logging
import unittest

from comparator.common.config import LoggingConfig
from comparator.common.logger import (
    ContextAdapter,
    JsonFormatter,
    bind_context,
    configure_from_settings,
    configure_logger,
    log_execution_time
)


class ListHandler(logging.Handler):

    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


class TestLogger(unittest.TestCase):

    def setUp(self):
        self.logger = configure_logger("comparator.test_logger", level="DEBUG", console_output=False)
        self.handler = ListHandler()
        self.logger.addHandler(self.handler)

    def tearDown(self):
        self.logger.removeHandler(self.handler)

    def last_payload(self):
        return json.loads(JsonFormatter().format(self.handler.records[-1]))

    def test_json_formatter_merges_bound_context(self):
        log = bind_context(self.logger, service="ai-provider").bind(circuit="ai-provider:invoke:claude")
        log.warning("Retrying", extra={"data": {"attempt": 2}})

        payload = self.last_payload()
        self.assertEqual(payload["message"], "Retrying")
        self.assertEqual(payload["level"], "WARNING")
        self.assertEqual(payload["logger"], "comparator.test_logger")
        self.assertEqual(payload["service"], "ai-provider")
        self.assertEqual(payload["circuit"], "ai-provider:invoke:claude")
        self.assertEqual(payload["attempt"], 2)
        self.assertTrue(payload["timestamp"].endswith("+00:00"))

    def test_call_data_overrides_bound_context(self):
        log = ContextAdapter(self.logger, {"namespace": "messages"})
        log.info("evicted", extra={"data": {"namespace": "search"}})
        self.assertEqual(self.last_payload()["namespace"], "search")
        self.assertEqual(log.context, {"namespace": "messages"})

    def test_json_formatter_includes_exception(self):
        try:
            raise KeyError("c1")
        except KeyError:
            self.logger.exception("lookup failed")

        payload = self.last_payload()
        self.assertEqual(payload["exception"]["type"], "KeyError")
        self.assertIn("Traceback", payload["exception"]["traceback"])

    def test_log_execution_time(self):
        @log_execution_time(self.logger, operation="fetch_entity")
        def work():
            return 7

        self.assertEqual(work(), 7)
        record = self.handler.records[-1]
        self.assertEqual(record.levelno, logging.DEBUG)
        self.assertEqual(record.data["operation"], "fetch_entity")
        self.assertEqual(record.data["outcome"], "ok")
        self.assertGreaterEqual(record.data["duration_ms"], 0)

    def test_log_execution_time_slow_call_warns(self):
        @log_execution_time(self.logger, slow_threshold=-1)
        def work():
            return None

        work()
        self.assertEqual(self.handler.records[-1].levelno, logging.WARNING)

    def test_log_execution_time_reraises(self):
        @log_execution_time(self.logger)
        def fail():
            raise RuntimeError("boom")

        with self.assertRaises(RuntimeError):
            fail()
        record = self.handler.records[-1]
        self.assertEqual(record.levelno, logging.ERROR)
        self.assertEqual(record.data["outcome"], "error")

    def test_configure_from_settings(self):
        logger = configure_from_settings(
            LoggingConfig(level="warning", use_json=True),
            name="comparator.test_settings"
        )
        self.assertEqual(logger.level, logging.WARNING)
        self.assertEqual(len(logger.handlers), 1)
        self.assertIsInstance(logger.handlers[0].formatter, JsonFormatter)
        self.assertFalse(logger.propagate)

    def test_unknown_level(self):
        with self.assertRaises(ValueError):
            configure_logger("comparator.test_bad_level", level="LOUD", console_output=False)
