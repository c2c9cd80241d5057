"""
Persistent store helpers - unit of work and write serialization
"""

import logging
import threading
from contextlib import contextmanager, ExitStack

from sqlalchemy.exc import SQLAlchemyError

from models import db
from errors import StoreFailure

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT = 5


@contextmanager
def atomic():
    """Run a block of reads and writes as one transaction.

    Commits when the block exits normally. Any exception rolls the whole
    block back; database errors surface as StoreFailure with the original
    error chained as its cause.
    """
    session = db.session
    try:
        yield session
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.exception('Store operation failed')
        raise StoreFailure(f'Store operation failed: {e.__class__.__name__}') from e
    except BaseException:
        session.rollback()
        raise


@contextmanager
def reading():
    """Reads that do not commit; database errors surface as StoreFailure."""
    session = db.session
    try:
        yield session
    except SQLAlchemyError as e:
        session.rollback()
        logger.exception('Store read failed')
        raise StoreFailure(f'Store read failed: {e.__class__.__name__}') from e


class _NamedLock:
    __slots__ = ('lock', 'users')

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class LockRegistry:
    """Named in-process locks, created on first use.

    Several keys are always acquired in sorted order so two callers locking
    overlapping sets of tables cannot deadlock. A lock lives only while
    someone holds or waits for it, so keys of deleted tokens and past days
    do not pile up.
    """

    def __init__(self, timeout=DEFAULT_LOCK_TIMEOUT):
        self.timeout = timeout
        self._locks = {}
        self._guard = threading.Lock()

    def __len__(self):
        with self._guard:
            return len(self._locks)

    def _checkout(self, key):
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _NamedLock()
            entry.users += 1
            return entry

    def _checkin(self, key, entry):
        with self._guard:
            entry.users -= 1
            if entry.users == 0:
                self._locks.pop(key, None)

    @contextmanager
    def hold(self, *keys):
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                entry = self._checkout(key)
                stack.callback(self._checkin, key, entry)
                if not entry.lock.acquire(timeout=self.timeout):
                    logger.warning('Timed out waiting for lock %s', key)
                    raise StoreFailure(f'Timed out waiting for {key}')
                stack.callback(entry.lock.release)
            yield
