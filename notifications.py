"""
Change notifications

A content-free "something changed, re-read" signal per record type. The
engine never relies on delivery: listeners may be dropped or called twice
and readers still rebuild their views from the database.
"""

import logging
import threading
from collections import defaultdict

logger = logging.getLogger(__name__)

TOKENS = 'queue_tokens'
TABLES = 'restaurant_tables'
ASSIGNMENTS = 'table_assignments'

RECORD_TYPES = (TOKENS, TABLES, ASSIGNMENTS)


class ChangeNotifier:
    def __init__(self):
        self._listeners = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, record_type, callback):
        if record_type not in RECORD_TYPES:
            raise ValueError(f'Unknown record type: {record_type}')
        with self._lock:
            self._listeners[record_type].append(callback)

    def unsubscribe(self, record_type, callback):
        with self._lock:
            if callback in self._listeners[record_type]:
                self._listeners[record_type].remove(callback)

    def publish(self, *record_types):
        """Fire every listener of the given record types once per type.

        Called after commit, so a failing listener is logged and skipped;
        the write it reports on has already happened.
        """
        for record_type in dict.fromkeys(record_types):
            with self._lock:
                listeners = list(self._listeners[record_type])
            for callback in listeners:
                try:
                    callback(record_type)
                except Exception:
                    logger.exception('Change listener failed for %s', record_type)
