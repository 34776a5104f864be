from __future__ import annotations

import json
import logging
import sys
import unittest

from supply_portal.logging_setup import JsonFormatter
from supply_portal.request_context import clear_request_context, set_request_context


def _record(msg: str, args: tuple, exc_info=None) -> logging.LogRecord:
    return logging.LogRecord(
        name='supply_portal.services.order_service',
        level=logging.INFO if exc_info is None else logging.ERROR,
        pathname=__file__,
        lineno=12,
        msg=msg,
        args=args,
        exc_info=exc_info,
    )


class JsonFormatterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.formatter = JsonFormatter('%(message)s')

    def tearDown(self) -> None:
        clear_request_context()

    def test_message_args_are_interpolated(self) -> None:
        record = _record('Fan-out %s for %s: %d/%d delivered', ('ORDER_NEW', '7', 2, 3))
        record.order_id = 7
        record.event_type = 'ORDER_NEW'

        payload = json.loads(self.formatter.format(record))

        self.assertEqual(payload['message'], 'Fan-out ORDER_NEW for 7: 2/3 delivered')
        self.assertEqual(payload['level'], 'INFO')
        self.assertEqual(payload['module'], 'supply_portal.services.order_service')
        self.assertEqual(payload['order_id'], 7)
        self.assertEqual(payload['event_type'], 'ORDER_NEW')
        self.assertNotIn('discrepancy_id', payload)

    def test_request_context_is_stamped(self) -> None:
        set_request_context(request_id='req-1', user_id='f1-owner')

        payload = json.loads(self.formatter.format(_record('Created order %s', ('PO-1',))))

        self.assertEqual(payload['message'], 'Created order PO-1')
        self.assertEqual(payload['request_id'], 'req-1')
        self.assertEqual(payload['user_id'], 'f1-owner')

    def test_exception_is_included(self) -> None:
        try:
            raise RuntimeError('notification store down')
        except RuntimeError:
            record = _record('Notification write failed for user %s', ('v1',), exc_info=sys.exc_info())

        payload = json.loads(self.formatter.format(record))

        self.assertEqual(payload['message'], 'Notification write failed for user v1')
        self.assertEqual(payload['level'], 'ERROR')
        self.assertIn('RuntimeError: notification store down', payload['exc_info'])

    def test_handler_emits_through_the_formatter(self) -> None:
        logger = logging.getLogger('supply_portal.tests.json_formatter')
        logger.propagate = False
        lines: list[str] = []

        class _ListHandler(logging.Handler):
            def emit(self, record: logging.LogRecord) -> None:
                lines.append(self.format(record))

        handler = _ListHandler()
        handler.setFormatter(self.formatter)
        logger.addHandler(handler)
        try:
            logger.warning('Order number %s already taken, retrying', 'PO-1')
        finally:
            logger.removeHandler(handler)

        self.assertEqual(json.loads(lines[0])['message'], 'Order number PO-1 already taken, retrying')


if __name__ == '__main__':
    unittest.main()
